from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field, fields, replace, asdict
from datetime import datetime
from threading import RLock
from typing import Optional, List, Dict, Any

from models import normalize_platform
from snapshot_store import SnapshotStore, LEDGER_SNAPSHOT

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100
TRANSACTION_KINDS = ("subscription", "bits", "superchat", "manual", "spent")

SUBSCRIPTION_TIERS = {
    "prime": ("twitch_prime", "Prime"),
    "1000": ("twitch_tier1", "Tier 1"),
    "2000": ("twitch_tier2", "Tier 2"),
    "3000": ("twitch_tier3", "Tier 3"),
}


class LedgerError(Exception):
    pass


class NoAccount(LedgerError):
    def __init__(self):
        super().__init__("No VIP tokens found")


class InsufficientBalance(LedgerError):
    def __init__(self, balance: int, needed: int):
        super().__init__(f"Not enough tokens (have {balance}, need {needed})")
        self.balance = balance
        self.needed = needed


@dataclass
class Transaction:
    kind: str
    amount: int
    description: str
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "kind": self.kind,
            "amount": self.amount,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        ts = data.get("timestamp")
        try:
            timestamp = datetime.fromisoformat(ts) if isinstance(ts, str) else datetime.utcnow()
        except ValueError:
            timestamp = datetime.utcnow()
        kind = data.get("kind") or data.get("type") or "manual"
        return cls(
            kind=kind if kind in TRANSACTION_KINDS else "manual",
            amount=int(data.get("amount") or 0),
            description=str(data.get("description") or ""),
            timestamp=timestamp,
        )


@dataclass
class VIPAccount:
    platform: str
    platform_user_id: str
    display_name: str
    tokens: int = 0
    total_earned: int = 0
    history: List[Transaction] = field(default_factory=list)
    last_updated: datetime = field(default_factory=datetime.utcnow)
    placeholder: bool = False

    @property
    def key(self) -> str:
        return account_key(self.platform, self.platform_user_id)

    def copy(self) -> "VIPAccount":
        return replace(self, history=list(self.history))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "platform_user_id": self.platform_user_id,
            "display_name": self.display_name,
            "tokens": self.tokens,
            "total_earned": self.total_earned,
            "history": [t.to_dict() for t in self.history],
            "last_updated": self.last_updated.isoformat(),
            "placeholder": self.placeholder,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VIPAccount":
        updated = data.get("last_updated")
        try:
            last_updated = datetime.fromisoformat(updated) if isinstance(updated, str) else datetime.utcnow()
        except ValueError:
            last_updated = datetime.utcnow()
        return cls(
            platform=normalize_platform(data.get("platform") or "twitch"),
            platform_user_id=str(data.get("platform_user_id") or ""),
            display_name=str(data.get("display_name") or ""),
            tokens=max(0, int(data.get("tokens") or 0)),
            total_earned=max(0, int(data.get("total_earned") or 0)),
            history=[Transaction.from_dict(t) for t in (data.get("history") or [])][-HISTORY_LIMIT:],
            last_updated=last_updated,
            placeholder=bool(data.get("placeholder")),
        )


@dataclass
class TokenRates:
    twitch_tier1: int = 1
    twitch_tier2: int = 2
    twitch_tier3: int = 4
    twitch_prime: int = 1
    bits_threshold: int = 250
    tokens_per_bits_threshold: int = 1
    youtube_member: int = 1
    super_chat_threshold: float = 2.50
    tokens_per_super_chat: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


RATE_FIELDS = {f.name for f in fields(TokenRates)}


@dataclass
class SpendResult:
    success: bool
    remaining_balance: int
    error: Optional[LedgerError] = None


def account_key(platform: str, user_id: str) -> str:
    return f"{platform}:{user_id}"


def _apply_rates(current: TokenRates, changes: Dict[str, Any]) -> TokenRates:
    """Return a copy of ``current`` with ``changes`` coerced and range-checked."""
    updated = replace(current)
    for name, value in changes.items():
        if value is None:
            continue
        as_float = isinstance(getattr(updated, name), float)
        try:
            value = float(value) if as_float else int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be a number") from None
        if value < 0:
            raise ValueError(f"{name} cannot be negative")
        if name in ("bits_threshold", "super_chat_threshold") and value <= 0:
            raise ValueError(f"{name} must be positive")
        setattr(updated, name, value)
    return updated


def _clean_username(username: str) -> str:
    return (username or "").strip().lstrip("@").strip()


class TokenLedger:
    """Per-viewer balances of priority tokens.

    One re-entrant lock guards every account so award/spend/migration are
    atomic.  Callers only ever receive copies of accounts.
    """

    def __init__(self, store: Optional[SnapshotStore] = None, *, rates: Optional[TokenRates] = None):
        self.store = store
        self._lock = RLock()
        self._accounts: Dict[str, VIPAccount] = {}
        self._rates = rates or TokenRates()
        self._load()

    def _load(self) -> None:
        if not self.store:
            return
        data = self.store.load(LEDGER_SNAPSHOT)
        if data:
            try:
                self._merge(data)
            except ValueError:
                logger.exception("stored token rates are invalid; keeping defaults")
                self._merge({"users": data.get("users")})
            logger.info("loaded %d VIP accounts", len(self._accounts))

    def _persist(self) -> None:
        if self.store:
            self.store.save(LEDGER_SNAPSHOT, self.export_data())

    # ---- identity ----
    def _locate_placeholder(self, platform: str, display_name: str) -> Optional[str]:
        lowered = display_name.lower()
        for key, account in self._accounts.items():
            if account.placeholder and account.platform == platform and account.display_name.lower() == lowered:
                return key
        return None

    def _get_or_create(self, platform: str, user_id: str, display_name: str) -> VIPAccount:
        key = account_key(platform, user_id)
        account = self._accounts.get(key)
        if account is not None:
            if display_name:
                account.display_name = display_name
            return account

        old_key = self._locate_placeholder(platform, display_name) if display_name else None
        if old_key is not None:
            old = self._accounts[old_key]
            merged = replace(
                old,
                platform_user_id=user_id,
                display_name=display_name,
                history=list(old.history),
                last_updated=datetime.utcnow(),
                placeholder=False,
            )
            del self._accounts[old_key]
            self._accounts[key] = merged
            logger.info("migrated VIP account %s from %s to %s", display_name, old_key, key)
            return merged

        account = VIPAccount(platform=platform, platform_user_id=user_id, display_name=display_name or user_id)
        self._accounts[key] = account
        return account

    @staticmethod
    def _append(account: VIPAccount, kind: str, amount: int, description: str) -> None:
        account.history.append(Transaction(kind=kind, amount=amount, description=description))
        if len(account.history) > HISTORY_LIMIT:
            del account.history[:-HISTORY_LIMIT]
        account.last_updated = datetime.utcnow()

    def ensure_account(self, platform: str, user_id: str, display_name: str) -> VIPAccount:
        platform = normalize_platform(platform)
        with self._lock:
            account = self._get_or_create(platform, str(user_id), display_name)
            self._persist()
            return account.copy()

    # ---- queries ----
    def get_balance(self, platform: str, user_id: str) -> int:
        with self._lock:
            account = self._accounts.get(account_key(normalize_platform(platform), str(user_id)))
            return account.tokens if account else 0

    def get_account(self, platform: str, user_id: str) -> Optional[VIPAccount]:
        with self._lock:
            account = self._accounts.get(account_key(normalize_platform(platform), str(user_id)))
            return account.copy() if account else None

    def all_accounts(self) -> List[VIPAccount]:
        with self._lock:
            return sorted(
                (a.copy() for a in self._accounts.values()),
                key=lambda a: (-a.tokens, a.display_name.lower()),
            )

    def search_accounts(self, query: str) -> List[VIPAccount]:
        needle = (query or "").strip().lower()
        if not needle:
            return self.all_accounts()
        return [
            a for a in self.all_accounts()
            if needle in a.display_name.lower() or needle in a.platform_user_id.lower()
        ]

    def find_account(self, name_or_id: str, platform: Optional[str] = None) -> Optional[VIPAccount]:
        """Exact, case-insensitive match on display name or platform id."""
        needle = _clean_username(name_or_id).lower()
        if not needle:
            return None
        with self._lock:
            for account in self._accounts.values():
                if platform and account.platform != platform:
                    continue
                if account.display_name.lower() == needle or account.platform_user_id.lower() == needle:
                    return account.copy()
        return None

    # ---- mutations ----
    def award(
        self,
        platform: str,
        user_id: str,
        display_name: str,
        amount: int,
        kind: str = "manual",
        description: str = "",
    ) -> VIPAccount:
        if int(amount) <= 0:
            raise ValueError("award amount must be positive")
        if kind not in TRANSACTION_KINDS or kind == "spent":
            raise ValueError(f"invalid award kind: {kind}")
        platform = normalize_platform(platform)
        amount = int(amount)
        with self._lock:
            account = self._get_or_create(platform, str(user_id), display_name)
            account.tokens += amount
            account.total_earned += amount
            self._append(account, kind, amount, description)
            self._persist()
            logger.info(
                "awarded %d tokens to %s (%s) - %s",
                amount,
                account.display_name,
                platform,
                description,
            )
            return account.copy()

    def spend(self, platform: str, user_id: str, amount: int = 1) -> SpendResult:
        if int(amount) <= 0:
            raise ValueError("spend amount must be positive")
        platform = normalize_platform(platform)
        with self._lock:
            account = self._accounts.get(account_key(platform, str(user_id)))
            if account is None:
                return SpendResult(False, 0, NoAccount())
            if account.tokens < amount:
                return SpendResult(False, account.tokens, InsufficientBalance(account.tokens, amount))
            account.tokens -= amount
            self._append(account, "spent", -amount, "VIP request")
            self._persist()
            logger.info(
                "%s spent %d token(s), %d remaining",
                account.display_name,
                amount,
                account.tokens,
            )
            return SpendResult(True, account.tokens)

    def set_balance(
        self,
        platform: str,
        user_id: str,
        display_name: str,
        tokens: int,
        description: str = "Manual adjustment",
    ) -> VIPAccount:
        tokens = int(tokens)
        if tokens < 0:
            raise ValueError("token balance cannot be negative")
        platform = normalize_platform(platform)
        with self._lock:
            account = self._get_or_create(platform, str(user_id), display_name)
            return self._set_balance(account, tokens, description)

    def _set_balance(self, account: VIPAccount, tokens: int, description: str) -> VIPAccount:
        diff = tokens - account.tokens
        if diff:
            account.tokens = tokens
            if diff > 0:
                account.total_earned += diff
            self._append(account, "manual", diff, description)
        self._persist()
        return account.copy()

    # ---- username-addressed admin paths ----
    def _find_or_create_by_username(self, username: str, platform: str) -> VIPAccount:
        name = _clean_username(username)
        if not name:
            raise ValueError("username is required")
        lowered = name.lower()
        for account in self._accounts.values():
            if account.platform == platform and account.display_name.lower() == lowered:
                return account
        key = account_key(platform, lowered)
        account = self._accounts.get(key)
        if account is None:
            account = VIPAccount(platform=platform, platform_user_id=lowered, display_name=name, placeholder=True)
            self._accounts[key] = account
            logger.info("created placeholder VIP account %s", key)
        return account

    def find_or_create_by_username(self, username: str, platform: str = "twitch") -> VIPAccount:
        platform = normalize_platform(platform)
        with self._lock:
            account = self._find_or_create_by_username(username, platform)
            self._persist()
            return account.copy()

    def award_by_username(
        self,
        username: str,
        amount: int,
        platform: str = "twitch",
        description: str = "Manual award",
    ) -> VIPAccount:
        platform = normalize_platform(platform)
        with self._lock:
            account = self._find_or_create_by_username(username, platform)
            return self.award(
                platform,
                account.platform_user_id,
                account.display_name,
                amount,
                "manual",
                description,
            )

    def set_balance_by_username(
        self,
        username: str,
        tokens: int,
        platform: str = "twitch",
        description: str = "Set via GUI",
    ) -> VIPAccount:
        tokens = int(tokens)
        if tokens < 0:
            raise ValueError("token balance cannot be negative")
        platform = normalize_platform(platform)
        with self._lock:
            account = self._find_or_create_by_username(username, platform)
            return self._set_balance(account, tokens, description)

    # ---- rates ----
    def get_rates(self) -> TokenRates:
        with self._lock:
            return replace(self._rates)

    def set_rates(self, **changes: Any) -> TokenRates:
        unknown = set(changes) - RATE_FIELDS
        if unknown:
            raise ValueError(f"unknown rate(s): {', '.join(sorted(unknown))}")
        with self._lock:
            updated = _apply_rates(self._rates, changes)
            self._rates = updated
            self._persist()
            logger.info("token rates updated: %s", changes)
            return replace(updated)

    def tokens_for_bits(self, bits: int) -> int:
        rates = self.get_rates()
        if bits < rates.bits_threshold:
            return 0
        return (bits // rates.bits_threshold) * rates.tokens_per_bits_threshold

    def tokens_for_super_chat(self, amount: float) -> int:
        rates = self.get_rates()
        if amount < rates.super_chat_threshold:
            return 0
        return math.floor(amount / rates.super_chat_threshold) * rates.tokens_per_super_chat

    # ---- earning rules ----
    def handle_subscription(
        self,
        user_id: str,
        display_name: str,
        tier: str,
        months: Optional[int] = None,
        count: int = 1,
    ) -> Optional[VIPAccount]:
        rate_name, tier_name = SUBSCRIPTION_TIERS.get(str(tier).lower(), ("twitch_tier1", "Unknown"))
        tokens = getattr(self.get_rates(), rate_name) * max(1, int(count))
        if tokens <= 0:
            return None
        if count > 1:
            description = f"Gifted {count} Twitch {tier_name} subscriptions"
        else:
            month_str = f" ({months} months)" if months and months > 1 else ""
            description = f"Twitch {tier_name} subscription{month_str}"
        return self.award("twitch", user_id, display_name, tokens, "subscription", description)

    def handle_bits(self, user_id: str, display_name: str, bits: int) -> Optional[VIPAccount]:
        tokens = self.tokens_for_bits(bits)
        if tokens <= 0:
            logger.info("%s cheered %d bits (below threshold)", display_name, bits)
            return None
        return self.award("twitch", user_id, display_name, tokens, "bits", f"Cheered {bits} bits")

    def handle_membership(self, channel_id: str, display_name: str, level_name: Optional[str] = None) -> Optional[VIPAccount]:
        tokens = self.get_rates().youtube_member
        if tokens <= 0:
            return None
        level = f" ({level_name})" if level_name else ""
        return self.award("youtube", channel_id, display_name, tokens, "subscription", f"YouTube membership{level}")

    def handle_super_chat(
        self,
        channel_id: str,
        display_name: str,
        amount_micros: int,
        currency: str = "USD",
    ) -> Optional[VIPAccount]:
        amount = amount_micros / 1_000_000
        tokens = self.tokens_for_super_chat(amount)
        if tokens <= 0:
            logger.info("%s sent %s%.2f Super Chat (below threshold)", display_name, currency, amount)
            return None
        return self.award(
            "youtube",
            channel_id,
            display_name,
            tokens,
            "superchat",
            f"Super Chat {currency}{amount:.2f}",
        )

    # ---- import / export ----
    def export_data(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "users": {key: a.to_dict() for key, a in self._accounts.items()},
                "rates": self._rates.to_dict(),
            }

    def _merge(self, data: Dict[str, Any]) -> int:
        rates = data.get("rates") or {}
        if not isinstance(rates, dict):
            raise ValueError("rates must be an object")
        known = {k: v for k, v in rates.items() if k in RATE_FIELDS}
        # Rates are checked before any account is merged.
        updated = _apply_rates(self._rates, known) if known else None
        imported = 0
        for key, raw in (data.get("users") or {}).items():
            try:
                account = VIPAccount.from_dict(raw)
            except (TypeError, AttributeError, ValueError):
                logger.warning("skipping unreadable VIP account %s", key)
                continue
            self._accounts[account.key] = account
            imported += 1
        if updated is not None:
            self._rates = updated
        return imported

    def import_data(self, data: Dict[str, Any]) -> int:
        with self._lock:
            imported = self._merge(data)
            self._persist()
            return imported
