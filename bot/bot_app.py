from __future__ import annotations
import os, asyncio, json
from typing import Optional, Dict, List, Mapping
from dataclasses import dataclass, field

import aiohttp
from twitchio import eventsub
from twitchio.ext import commands

from app_config import load_commands

# ---- Env ----
# Full URL of the backend API, defaulting to the docker-compose service name.
BACKEND_URL = os.getenv('BACKEND_URL', 'http://api:7070')
# Token used for privileged requests to the backend.
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', 'change-me')
COMMANDS_FILE = os.getenv('COMMANDS_FILE')

# EventSub tiers arrive as "1000"/"2000"/"3000"; IRC-era tooling also sends "Prime".
KNOWN_TIERS = {'prime', '1000', '2000', '3000'}


# ---- Backend client ----
class BackendError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message

class Backend:
    def __init__(self, base_url: str, admin_token: str):
        self.base = base_url.rstrip('/')
        self.headers = { 'X-Admin-Token': admin_token, 'Content-Type': 'application/json' }
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        async with self.session.request(method, url, headers=self.headers, data=json.dumps(payload) if payload else None) as r:
            content_type = r.headers.get('content-type', '')
            is_json = content_type.startswith('application/json')
            if r.status >= 400:
                detail: object = ''
                if is_json:
                    try:
                        data = await r.json()
                    except (aiohttp.ContentTypeError, ValueError):
                        data = None
                    if isinstance(data, dict) and 'detail' in data:
                        detail = data['detail']
                    else:
                        detail = data or ''
                if not detail:
                    detail = await r.text()
                if isinstance(detail, list):
                    detail = ', '.join(str(item) for item in detail)
                raise BackendError(r.status, detail or f"{method} {path} failed")
            if is_json:
                return await r.json()
            return await r.text()

    async def dispatch_chat(
        self,
        text: str,
        *,
        user_id: str,
        display_name: str,
        is_moderator: bool = False,
        is_broadcaster: bool = False,
    ) -> Optional[str]:
        data = await self._req('POST', "/chat/dispatch", {
            'text': text,
            'caller': {
                'user_id': user_id,
                'display_name': display_name,
                'platform': 'twitch',
                'is_moderator': bool(is_moderator),
                'is_broadcaster': bool(is_broadcaster),
            },
        })
        return data.get('reply') if isinstance(data, dict) else None

    async def post_support_event(self, kind: str, payload: Dict[str, object]) -> Dict[str, object]:
        return await self._req('POST', f"/events/{kind}", payload)

    async def push_bot_log(
        self,
        *,
        level: str = 'info',
        message: str,
        metadata: Optional[Dict[str, object]] = None,
    ) -> Dict[str, object]:
        payload = {
            'level': level,
            'message': message,
            'metadata': metadata or {},
            'source': 'bot',
        }
        return await self._req('POST', "/bot/logs", payload)


backend = Backend(BACKEND_URL, ADMIN_TOKEN)


@dataclass
class BotSettings:
    token: Optional[str]
    refresh_token: Optional[str]
    client_id: Optional[str]
    client_secret: Optional[str]
    bot_user_id: Optional[str]
    channel_id: Optional[str]
    channel_login: Optional[str] = None
    scopes: List[str] = field(default_factory=list)

    def missing(self) -> List[str]:
        required = {
            'TWITCH_BOT_TOKEN': self.token,
            'TWITCH_REFRESH_TOKEN': self.refresh_token,
            'TWITCH_CLIENT_ID': self.client_id,
            'TWITCH_CLIENT_SECRET': self.client_secret,
            'BOT_USER_ID': self.bot_user_id,
            'TWITCH_CHANNEL_ID': self.channel_id,
        }
        return [name for name, value in required.items() if not value]


def _format_token(token: Optional[str]) -> Optional[str]:
    return token.removeprefix('oauth:') if token else token


def settings_from_env(env: Optional[Mapping[str, str]] = None) -> BotSettings:
    env = os.environ if env is None else env
    scopes = (env.get('TWITCH_SCOPES') or '').replace(',', ' ').split()
    return BotSettings(
        token=_format_token(env.get('TWITCH_BOT_TOKEN')),
        refresh_token=env.get('TWITCH_REFRESH_TOKEN'),
        client_id=env.get('TWITCH_CLIENT_ID'),
        client_secret=env.get('TWITCH_CLIENT_SECRET'),
        bot_user_id=env.get('BOT_USER_ID') or env.get('TWITCH_BOT_USER_ID'),
        channel_id=env.get('TWITCH_CHANNEL_ID'),
        channel_login=env.get('TWITCH_CHANNEL_LOGIN'),
        scopes=scopes,
    )


async def push_console_event(
    level: str,
    message: str,
    *,
    event: Optional[str] = None,
    metadata: Optional[Dict[str, object]] = None,
):
    meta = dict(metadata or {})
    if event:
        meta.setdefault('event', event)
    try:
        await backend.push_bot_log(level=level, message=message, metadata=meta)
    except (BackendError, aiohttp.ClientError, asyncio.TimeoutError):
        # Console streaming is best-effort; the bot keeps running while the
        # backend is unavailable.
        pass


def _user_fields(user: object) -> Optional[Dict[str, str]]:
    if user is None:
        return None
    user_id = getattr(user, 'id', None)
    if not user_id:
        return None
    name = getattr(user, 'display_name', None) or getattr(user, 'name', None) or str(user_id)
    return {'user_id': str(user_id), 'display_name': str(name)}


def _tier_of(payload: object) -> str:
    tier = str(getattr(payload, 'tier', '') or '1000')
    return tier if tier.lower() in KNOWN_TIERS else '1000'


class SongBot(commands.Bot):
    def __init__(self, settings: BotSettings, *, commands_file: Optional[str] = None):
        missing = settings.missing()
        if missing:
            raise RuntimeError(f"missing bot settings: {', '.join(missing)}")
        self.commands_map = load_commands(commands_file if commands_file is not None else COMMANDS_FILE)
        prefix = self.commands_map['prefix'][0]
        super().__init__(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            bot_id=str(settings.bot_user_id),
            prefix=prefix,
            fetch_client_user=False,
        )
        self.settings = settings
        self.bot_user_id = str(settings.bot_user_id)
        self.channel_id = str(settings.channel_id)
        self.channel_label = settings.channel_login or self.channel_id
        self.prefix_text = prefix
        self.ready_event = asyncio.Event()
        self._subscribed = False

    async def load_tokens(self, path: Optional[str] = None) -> None:
        await super().add_token(self.settings.token, self.settings.refresh_token)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens live in the environment; nothing is written back.
        return None

    async def event_ready(self) -> None:
        await self._subscribe_channel()
        self.ready_event.set()
        await push_console_event('info', f'Bot ready in {self.channel_label}', event='lifecycle')

    def _subscriptions(self) -> List[object]:
        broadcaster = self.channel_id
        return [
            eventsub.ChatMessageSubscription(broadcaster_user_id=broadcaster, user_id=self.bot_user_id),
            eventsub.ChannelSubscribeSubscription(broadcaster_user_id=broadcaster),
            eventsub.ChannelSubscribeMessageSubscription(broadcaster_user_id=broadcaster),
            eventsub.ChannelSubscriptionGiftSubscription(broadcaster_user_id=broadcaster),
            eventsub.ChannelCheerSubscription(broadcaster_user_id=broadcaster),
        ]

    async def _subscribe_channel(self) -> None:
        if self._subscribed:
            return
        for payload in self._subscriptions():
            try:
                await self.subscribe_websocket(payload=payload, as_bot=True)
            except Exception as exc:
                await push_console_event(
                    'error',
                    f'Failed to subscribe {type(payload).__name__}: {exc}',
                    event='eventsub',
                    metadata={'channel': self.channel_label},
                )
        self._subscribed = True

    async def shutdown(self) -> None:
        try:
            await super().close()
        finally:
            await backend.close()

    async def _send_message(
        self,
        message: str,
        *,
        metadata: Optional[Dict[str, object]] = None,
        reply_to: Optional[str] = None,
    ) -> None:
        try:
            partial = self.create_partialuser(self.channel_id, self.settings.channel_login)
            await partial.send_message(
                message,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
                reply_to_message_id=reply_to,
            )
            await push_console_event(
                'info',
                f'Sent message to {self.channel_label}',
                event='message',
                metadata={**(metadata or {}), 'sent_text': message, 'channel': self.channel_label},
            )
        except Exception as exc:
            await push_console_event(
                'error',
                f'Failed to send message to {self.channel_label}: {exc}',
                event='message',
                metadata={**(metadata or {}), 'channel': self.channel_label, 'error': str(exc)},
            )

    async def event_message(self, message) -> None:
        chatter = message.chatter
        if getattr(chatter, 'id', None) == self.bot_user_id:
            return
        content = (message.text or '').strip()
        if not content.startswith(self.prefix_text):
            return
        caller = _user_fields(chatter)
        if caller is None:
            return
        try:
            reply = await backend.dispatch_chat(
                content,
                is_moderator=bool(getattr(chatter, 'moderator', False)),
                is_broadcaster=bool(getattr(chatter, 'broadcaster', False)),
                **caller,
            )
        except BackendError as exc:
            await push_console_event(
                'error',
                f'Command dispatch failed: {exc}',
                event='command',
                metadata={'status': exc.status, 'text': content},
            )
            return
        if reply:
            await self._send_message(reply, metadata={'event': 'command'}, reply_to=getattr(message, 'id', None))

    async def _forward_event(self, kind: str, payload: Dict[str, object]) -> None:
        try:
            ack = await backend.post_support_event(kind, payload)
        except BackendError as exc:
            await push_console_event(
                'error',
                f'Failed to record {kind} event: {exc}',
                event=kind,
                metadata=payload,
            )
            return
        announcement = ack.get('announcement') if isinstance(ack, dict) else None
        if announcement:
            await self._send_message(announcement, metadata={'event': kind})

    async def event_subscription(self, payload) -> None:
        # Gift recipients are skipped; the gifter is credited by the gift event.
        if getattr(payload, 'gift', False):
            return
        user = _user_fields(getattr(payload, 'user', None))
        if user is None:
            return
        await self._forward_event('subscription', {**user, 'tier': _tier_of(payload)})

    async def event_subscription_message(self, payload) -> None:
        user = _user_fields(getattr(payload, 'user', None))
        if user is None:
            return
        months = getattr(payload, 'cumulative_months', None) or getattr(payload, 'months', None)
        await self._forward_event('subscription', {**user, 'tier': _tier_of(payload), 'months': months})

    async def event_subscription_gift(self, payload) -> None:
        if getattr(payload, 'anonymous', False):
            return
        user = _user_fields(getattr(payload, 'user', None))
        if user is None:
            return
        count = int(getattr(payload, 'total', 1) or 1)
        await self._forward_event('subscription', {**user, 'tier': _tier_of(payload), 'count': count})

    async def event_cheer(self, payload) -> None:
        if getattr(payload, 'anonymous', False):
            return
        user = _user_fields(getattr(payload, 'user', None))
        bits = int(getattr(payload, 'bits', 0) or 0)
        if user is None or bits <= 0:
            return
        await self._forward_event('bits', {**user, 'bits': bits})


# ---- entry ----
async def main():
    await backend.start()
    settings = settings_from_env()
    missing = settings.missing()
    if missing:
        await push_console_event('error', f"Bot not started; missing {', '.join(missing)}", event='config')
        await backend.close()
        return
    bot = SongBot(settings)
    try:
        await bot.start()
    finally:
        await bot.shutdown()

if __name__ == '__main__':
    asyncio.run(main())
