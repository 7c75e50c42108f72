"""Platform support events (subs, cheers, memberships, Super Chats).

Transports publish events into an :class:`EventHub`; sinks subscribe once at
start-up.  :class:`LedgerEventSink` turns every event into a token award.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, List

from token_ledger import TokenLedger, VIPAccount

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionEvent:
    user_id: str
    display_name: str
    tier: str = "1000"
    months: Optional[int] = None
    count: int = 1


@dataclass(frozen=True)
class BitsEvent:
    user_id: str
    display_name: str
    bits: int


@dataclass(frozen=True)
class MembershipEvent:
    channel_id: str
    display_name: str
    level_name: Optional[str] = None


@dataclass(frozen=True)
class SuperChatEvent:
    channel_id: str
    display_name: str
    amount_micros: int
    currency: str = "USD"


class SupportEventSink:
    """Receiver of support events; every hook returns the credited account or None."""

    def on_subscription(self, event: SubscriptionEvent) -> Optional[VIPAccount]:
        return None

    def on_bits(self, event: BitsEvent) -> Optional[VIPAccount]:
        return None

    def on_membership(self, event: MembershipEvent) -> Optional[VIPAccount]:
        return None

    def on_super_chat(self, event: SuperChatEvent) -> Optional[VIPAccount]:
        return None


class SupportEventSource:
    def subscribe(self, sink: SupportEventSink) -> None:
        raise NotImplementedError


class EventHub(SupportEventSource):
    def __init__(self) -> None:
        self._sinks: List[SupportEventSink] = []

    def subscribe(self, sink: SupportEventSink) -> None:
        if sink not in self._sinks:
            self._sinks.append(sink)

    def unsubscribe(self, sink: SupportEventSink) -> None:
        if sink in self._sinks:
            self._sinks.remove(sink)

    def _dispatch(self, hook: str, event) -> Optional[VIPAccount]:
        credited: Optional[VIPAccount] = None
        for sink in list(self._sinks):
            try:
                result = getattr(sink, hook)(event)
            except Exception:
                logger.exception("support event sink %r failed on %s", sink, hook)
                continue
            if result is not None:
                credited = result
        return credited

    def publish_subscription(self, event: SubscriptionEvent) -> Optional[VIPAccount]:
        return self._dispatch("on_subscription", event)

    def publish_bits(self, event: BitsEvent) -> Optional[VIPAccount]:
        return self._dispatch("on_bits", event)

    def publish_membership(self, event: MembershipEvent) -> Optional[VIPAccount]:
        return self._dispatch("on_membership", event)

    def publish_super_chat(self, event: SuperChatEvent) -> Optional[VIPAccount]:
        return self._dispatch("on_super_chat", event)


class LedgerEventSink(SupportEventSink):
    def __init__(self, ledger: TokenLedger):
        self.ledger = ledger

    def on_subscription(self, event: SubscriptionEvent) -> Optional[VIPAccount]:
        return self.ledger.handle_subscription(
            event.user_id, event.display_name, event.tier, months=event.months, count=event.count
        )

    def on_bits(self, event: BitsEvent) -> Optional[VIPAccount]:
        return self.ledger.handle_bits(event.user_id, event.display_name, event.bits)

    def on_membership(self, event: MembershipEvent) -> Optional[VIPAccount]:
        return self.ledger.handle_membership(event.channel_id, event.display_name, event.level_name)

    def on_super_chat(self, event: SuperChatEvent) -> Optional[VIPAccount]:
        return self.ledger.handle_super_chat(
            event.channel_id, event.display_name, event.amount_micros, event.currency
        )
