from __future__ import annotations
import asyncio
import logging
import math
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Dict, List, Tuple, Callable, Awaitable

from app_config import load_commands, load_messages
from catalog_resolver import CatalogResolver
from models import SongCandidate, normalize_platform
from queue_engine import QueueEngine, SubmitVerdict, AdmissionDenied, DuplicateRequest
from token_ledger import TokenLedger, LedgerError, SpendResult

logger = logging.getLogger(__name__)

Reply = Callable[[str], Awaitable[None]]

BY_RE = re.compile(r"^(.+?)\s+by\s+(.+)$", re.I)
BY_SEPARATOR_RE = re.compile(r"\s+by\s+", re.I)
UPPER_RE = re.compile(r"[A-Z]")


class Permission(IntEnum):
    OPEN = 0
    MODERATOR = 1
    BROADCASTER = 2


@dataclass
class ChatIdentity:
    user_id: str
    display_name: str
    platform: str = "twitch"
    is_moderator: bool = False
    is_broadcaster: bool = False

    @property
    def tier(self) -> Permission:
        if self.is_broadcaster:
            return Permission.BROADCASTER
        if self.is_moderator:
            return Permission.MODERATOR
        return Permission.OPEN


@dataclass
class CommandContext:
    caller: ChatIdentity
    args: List[str]
    reply: Reply
    raw_args: str = ""

    @property
    def text(self) -> str:
        return self.raw_args or " ".join(self.args)


# ---- free-text parsing ----

def is_explicit_format(text: str) -> bool:
    return " - " in text or bool(BY_SEPARATOR_RE.search(text))


def parse_request(text: str) -> Tuple[str, str]:
    """Split ``"Artist - Title"`` or ``"Title by Artist"`` into (artist, title)."""
    text = (text or "").strip()
    if " - " in text:
        artist, _, title = text.partition(" - ")
        return artist.strip(), title.strip()
    match = BY_RE.match(text)
    if match:
        return match.group(2).strip(), match.group(1).strip()
    return "", text


def guess_artist_title(text: str) -> Tuple[str, str]:
    text = (text or "").strip()
    words = text.split()
    if len(words) < 2:
        return "", text
    if not UPPER_RE.search(text):
        return words[0], " ".join(words[1:])
    if len(words) == 2 and words[0][:1].isupper() and not words[1][:1].isupper():
        return words[0], words[1]
    return "", text


def target_of(text: str) -> Tuple[str, str]:
    if is_explicit_format(text):
        return parse_request(text)
    return guess_artist_title(text)


# ---- scoring ----

def _tier_score(candidate: str, wanted: str) -> int:
    if not wanted:
        return 0
    if candidate == wanted:
        return 10
    if wanted in candidate:
        return 5
    if candidate and candidate in wanted:
        return 3
    return 0


def score_candidate(candidate: SongCandidate, artist: str, title: str) -> int:
    wanted_artist = (artist or "").lower().strip()
    wanted_title = (title or "").lower().strip()
    cand_artist = candidate.artist.lower().strip()
    cand_title = candidate.title.lower().strip()

    score = _tier_score(cand_artist, wanted_artist) + _tier_score(cand_title, wanted_title)
    score += 2 * sum(1 for w in wanted_title.split() if len(w) > 2 and w in cand_title)

    combined = [w for w in f"{wanted_artist} {wanted_title}".split() if len(w) > 2]
    haystack = f"{cand_artist} {cand_title}"
    matched = sum(1 for w in combined if w in haystack)
    score += 2 * matched
    if combined and matched >= max(2, math.ceil(len(combined) * 0.7)):
        score += 5
    return score


def find_best_match(candidates: List[SongCandidate], artist: str, title: str) -> Optional[SongCandidate]:
    best: Optional[SongCandidate] = None
    best_score = -1
    for candidate in candidates:
        score = score_candidate(candidate, artist, title)
        if score > best_score:
            best, best_score = candidate, score
    return best


# ---- router ----

TEST_SUB_TIERS = {
    "prime": ("prime", "Prime"),
    "1": ("1000", "Tier 1"),
    "2": ("2000", "Tier 2"),
    "3": ("3000", "Tier 3"),
}


class CommandRouter:
    HANDLER_TIERS: Dict[str, Permission] = {
        "request": Permission.OPEN,
        "viprequest": Permission.OPEN,
        "list": Permission.OPEN,
        "song": Permission.OPEN,
        "position": Permission.OPEN,
        "remove": Permission.OPEN,
        "help": Permission.OPEN,
        "tokens": Permission.OPEN,
        "next": Permission.MODERATOR,
        "played": Permission.MODERATOR,
        "skip": Permission.MODERATOR,
        "givevip": Permission.MODERATOR,
        "testsub": Permission.MODERATOR,
        "testbits": Permission.MODERATOR,
        "testsuperchat": Permission.MODERATOR,
        "clear": Permission.BROADCASTER,
    }

    def __init__(
        self,
        queue: QueueEngine,
        resolver: CatalogResolver,
        ledger: TokenLedger,
        *,
        commands: Optional[Dict[str, List[str]]] = None,
        messages: Optional[Dict[str, str]] = None,
        catalog_timeout: float = 15.0,
        vip_cost: int = 1,
        public_url: str = "http://localhost:7070",
    ):
        self.queue = queue
        self.resolver = resolver
        self.ledger = ledger
        self.commands_map = commands or load_commands(None)
        self.messages = messages or load_messages(None)
        self.prefix = self.commands_map.get("prefix", ["!"])[0]
        self.catalog_timeout = catalog_timeout
        self.vip_cost = vip_cost
        self.public_url = public_url.rstrip("/")
        self._table: Dict[str, Tuple[str, Permission, Callable[[CommandContext], Awaitable[None]]]] = {}
        for name, tier in self.HANDLER_TIERS.items():
            handler = getattr(self, f"handle_{name}")
            for alias in self.commands_map.get(name, [name]):
                self._table[alias.lower()] = (name, tier, handler)

    def _msg(self, key: str, **values) -> str:
        return self.messages[key].format(**values)

    @property
    def aliases(self) -> List[str]:
        return sorted(self._table)

    async def dispatch(self, command: str, args: List[str], caller: ChatIdentity, reply: Reply) -> bool:
        entry = self._table.get((command or "").lower())
        if entry is None:
            return False
        name, tier, handler = entry
        if caller.tier < tier:
            if tier == Permission.BROADCASTER:
                await reply(self._msg("clear_denied"))
            return True
        ctx = CommandContext(caller=caller, args=list(args), reply=reply, raw_args=" ".join(args))
        try:
            await handler(ctx)
        except Exception:
            logger.exception("command %s failed for %s", name, caller.display_name)
            try:
                await reply(self._msg("internal_error"))
            except Exception:
                logger.exception("failed to deliver apology for %s", name)
        return True

    async def process_message(self, raw_text: str, caller: ChatIdentity) -> Optional[str]:
        """Handle one chat line; returns the reply text, or None for no reply."""
        content = (raw_text or "").strip()
        if not content.startswith(self.prefix):
            return None
        cmd, _, rest = content[len(self.prefix):].partition(" ")
        if not cmd:
            return None
        replies: List[str] = []

        async def collect(text: str) -> None:
            replies.append(text)

        caller.platform = normalize_platform(caller.platform)
        await self.dispatch(cmd, rest.split(), caller, collect)
        if not replies:
            return None
        return " ".join(replies)

    # ---- request path ----
    def _denial_text(self, verdict: SubmitVerdict) -> str:
        if verdict.reason == "cooldown":
            return self._msg("cooldown", seconds=verdict.retry_after)
        return self._msg("limit_reached", limit=verdict.limit)

    async def _search_chain(self, queries: List[str]) -> List[SongCandidate]:
        for query in queries:
            result = await self.resolver.search(query)
            if result.found and result.candidates:
                return result.candidates
        return []

    async def resolve_candidates(self, text: str, artist: str, title: str) -> List[SongCandidate]:
        queries: List[str] = [text]
        if artist:
            queries.append(f"{artist} {title}".strip())
        if title and title != text:
            queries.append(title)
        ordered = list(dict.fromkeys(q for q in queries if q))
        try:
            return await asyncio.wait_for(self._search_chain(ordered), timeout=self.catalog_timeout)
        except asyncio.TimeoutError:
            logger.warning("catalog search timed out for %r; accepting unvalidated request", text)
            return []

    async def _submit_request(self, ctx: CommandContext, priority: bool) -> None:
        caller = ctx.caller
        user = caller.display_name
        text = ctx.text.strip()

        if priority:
            account = self.ledger.ensure_account(caller.platform, caller.user_id, caller.display_name)
            if account.tokens < self.vip_cost:
                await ctx.reply(self._msg("vip_no_tokens", user=user))
                return
        if not text:
            await ctx.reply(self._msg("viprequest_usage" if priority else "request_usage"))
            return

        verdict = self.queue.can_submit(caller.user_id, caller.platform)
        if not verdict.allowed:
            await ctx.reply(self._msg("request_denied", user=user, reason=self._denial_text(verdict)))
            return

        artist, title = target_of(text)
        if not title:
            await ctx.reply(self._msg("request_unparsed", user=user))
            return

        candidates = await self.resolve_candidates(text, artist, title)
        song = find_best_match(candidates, artist, title) if candidates else None
        if song is None:
            logger.info("no catalog match for %r; queueing as typed", text)
            song = SongCandidate(artist=artist or "Unknown Artist", title=title or text)

        if self.queue.is_duplicate(song.artist, song.title):
            await ctx.reply(self._msg("request_duplicate", user=user, artist=song.artist, title=song.title))
            return

        spent: List[SpendResult] = []

        def charge() -> None:
            result = self.ledger.spend(caller.platform, caller.user_id, self.vip_cost)
            if not result.success:
                raise result.error
            spent.append(result)

        try:
            request = self.queue.admit(
                song,
                caller.user_id,
                caller.display_name,
                caller.platform,
                priority=priority,
                charge=charge if priority else None,
            )
        except AdmissionDenied as exc:
            await ctx.reply(self._msg("request_denied", user=user, reason=self._denial_text(exc.verdict)))
            return
        except DuplicateRequest:
            await ctx.reply(self._msg("request_duplicate", user=user, artist=song.artist, title=song.title))
            return
        except LedgerError as exc:
            await ctx.reply(self._msg("vip_spend_failed", user=user, error=str(exc)))
            return

        position = self.queue.position_of(request.id)
        if priority:
            await ctx.reply(self._msg(
                "vip_added",
                user=user,
                artist=song.artist,
                title=song.title,
                position=position,
                tokens=spent[0].remaining_balance if spent else 0,
            ))
        else:
            await ctx.reply(self._msg(
                "request_added",
                user=user,
                artist=song.artist,
                title=song.title,
                position=position,
                length=self.queue.queue_length(),
            ))

    async def handle_request(self, ctx: CommandContext) -> None:
        await self._submit_request(ctx, priority=False)

    async def handle_viprequest(self, ctx: CommandContext) -> None:
        await self._submit_request(ctx, priority=True)

    # ---- viewer commands ----
    async def handle_list(self, ctx: CommandContext) -> None:
        length = self.queue.queue_length()
        user = ctx.caller.display_name
        if length == 0:
            await ctx.reply(self._msg("list_empty", user=user))
        else:
            await ctx.reply(self._msg("list_link", user=user, length=length, url=f"{self.public_url}/queue"))

    async def handle_song(self, ctx: CommandContext) -> None:
        user = ctx.caller.display_name
        playing = self.queue.now_playing()
        if playing:
            await ctx.reply(self._msg(
                "song_playing",
                user=user,
                artist=playing.song.artist,
                title=playing.song.title,
                requester=playing.requester_display_name,
            ))
            return
        nxt = self.queue.peek_next()
        if nxt:
            await ctx.reply(self._msg(
                "song_next",
                user=user,
                artist=nxt.song.artist,
                title=nxt.song.title,
                requester=nxt.requester_display_name,
            ))
        else:
            await ctx.reply(self._msg("song_none", user=user))

    async def handle_position(self, ctx: CommandContext) -> None:
        caller = ctx.caller
        mine = self.queue.requests_of(caller.display_name, caller.platform)
        if not mine:
            await ctx.reply(self._msg("position_none", user=caller.display_name))
            return
        positions = ", ".join(f'"{r.song.title}" (#{pos})' for r, pos in mine)
        await ctx.reply(self._msg("position_list", user=caller.display_name, positions=positions))

    async def handle_remove(self, ctx: CommandContext) -> None:
        caller = ctx.caller
        removed = self.queue.remove_last_request_of(caller.display_name, caller.platform)
        if removed:
            await ctx.reply(self._msg(
                "remove_success",
                user=caller.display_name,
                artist=removed.song.artist,
                title=removed.song.title,
            ))
        else:
            await ctx.reply(self._msg("remove_none", user=caller.display_name))

    async def handle_help(self, ctx: CommandContext) -> None:
        await ctx.reply(self._msg("help", user=ctx.caller.display_name))

    async def handle_tokens(self, ctx: CommandContext) -> None:
        caller = ctx.caller
        account = self.ledger.ensure_account(caller.platform, caller.user_id, caller.display_name)
        if account.total_earned > 0:
            await ctx.reply(self._msg(
                "tokens_earned",
                user=caller.display_name,
                tokens=account.tokens,
                total=account.total_earned,
            ))
        else:
            await ctx.reply(self._msg("tokens_none", user=caller.display_name, tokens=account.tokens))

    # ---- moderator commands ----
    async def handle_next(self, ctx: CommandContext) -> None:
        _, promoted = self.queue.advance()
        if promoted:
            await ctx.reply(self._msg(
                "next_playing",
                artist=promoted.song.artist,
                title=promoted.song.title,
                requester=promoted.requester_display_name,
            ))
        else:
            await ctx.reply(self._msg("queue_empty"))

    async def handle_played(self, ctx: CommandContext) -> None:
        done = self.queue.complete_currently_playing()
        if done is None:
            await ctx.reply(self._msg("played_none"))
            return
        nxt = self.queue.peek_next()
        if nxt:
            await ctx.reply(self._msg("played_next", artist=nxt.song.artist, title=nxt.song.title))
        else:
            await ctx.reply(self._msg("played_empty"))

    async def handle_skip(self, ctx: CommandContext) -> None:
        if ctx.args and ctx.args[0].isdigit():
            skipped = self.queue.remove_pending_at_index(int(ctx.args[0]) - 1)
        else:
            skipped = self.queue.skip_current()
        if skipped:
            await ctx.reply(self._msg("skipped", artist=skipped.song.artist, title=skipped.song.title))
        else:
            await ctx.reply(self._msg("skip_none"))

    async def handle_clear(self, ctx: CommandContext) -> None:
        count = self.queue.clear_all()
        await ctx.reply(self._msg("cleared", count=count))

    async def handle_givevip(self, ctx: CommandContext) -> None:
        if len(ctx.args) < 2:
            await ctx.reply(self._msg("givevip_usage"))
            return
        target = ctx.args[0].lstrip("@")
        try:
            amount = int(ctx.args[1])
        except ValueError:
            amount = 0
        if amount <= 0:
            await ctx.reply(self._msg("givevip_invalid"))
            return
        description = f"Gifted by {ctx.caller.display_name}"
        existing = self.ledger.find_account(target)
        if existing:
            account = self.ledger.award(
                existing.platform,
                existing.platform_user_id,
                existing.display_name,
                amount,
                "manual",
                description,
            )
            key = "givevip_existing"
        else:
            account = self.ledger.award_by_username(target, amount, ctx.caller.platform, description)
            key = "givevip_created"
        await ctx.reply(self._msg(key, amount=amount, name=account.display_name, tokens=account.tokens))

    async def handle_testsub(self, ctx: CommandContext) -> None:
        caller = ctx.caller
        arg = ctx.args[0].lower() if ctx.args else "1"
        tier, tier_name = TEST_SUB_TIERS.get(arg, TEST_SUB_TIERS["1"])
        account = self.ledger.handle_subscription(caller.user_id, caller.display_name, tier)
        tokens = account.tokens if account else self.ledger.get_balance("twitch", caller.user_id)
        await ctx.reply(self._msg("testsub", tier=tier_name, user=caller.display_name, tokens=tokens))

    async def handle_testbits(self, ctx: CommandContext) -> None:
        caller = ctx.caller
        try:
            bits = int(ctx.args[0]) if ctx.args else 0
        except ValueError:
            bits = 0
        bits = bits or 250
        if bits <= 0:
            await ctx.reply(self._msg("testbits_invalid"))
            return
        account = self.ledger.handle_bits(caller.user_id, caller.display_name, bits)
        if account is None:
            await ctx.reply(self._msg("testbits_below", bits=bits))
            return
        await ctx.reply(self._msg(
            "testbits",
            bits=bits,
            user=caller.display_name,
            earned=self.ledger.tokens_for_bits(bits),
            tokens=account.tokens,
        ))

    async def handle_testsuperchat(self, ctx: CommandContext) -> None:
        caller = ctx.caller
        try:
            amount = float(ctx.args[0]) if ctx.args else 0.0
        except ValueError:
            amount = 0.0
        amount = amount or 5.0
        if amount <= 0:
            await ctx.reply(self._msg("testsuperchat_invalid"))
            return
        account = self.ledger.handle_super_chat(
            caller.user_id, caller.display_name, int(round(amount * 1_000_000)), "USD"
        )
        if account is None:
            await ctx.reply(self._msg("testsuperchat_below", amount=amount))
            return
        await ctx.reply(self._msg(
            "testsuperchat",
            amount=amount,
            user=caller.display_name,
            earned=self.ledger.tokens_for_super_chat(amount),
            tokens=account.tokens,
        ))
