from __future__ import annotations
import logging
import math
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import RLock
from typing import Optional, List, Dict, Tuple, Callable, Any

from models import SongCandidate, normalize_platform
from snapshot_store import SnapshotStore, QUEUE_SNAPSHOT

logger = logging.getLogger(__name__)

PENDING = "pending"
PLAYING = "playing"
COMPLETED = "completed"
SKIPPED = "skipped"
TERMINAL_STATUSES = (COMPLETED, SKIPPED)
STATUSES = (PENDING, PLAYING, COMPLETED, SKIPPED)


@dataclass
class QueuedRequest:
    song: SongCandidate
    requester_id: str
    requester_display_name: str
    platform: str
    priority: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    submitted_at: datetime = field(default_factory=datetime.utcnow)
    status: str = PENDING
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "song": self.song.to_dict(),
            "requester_id": self.requester_id,
            "requester_display_name": self.requester_display_name,
            "platform": self.platform,
            "submitted_at": self.submitted_at.isoformat(),
            "status": self.status,
            "priority": self.priority,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueuedRequest":
        status = data.get("status") or PENDING
        if status not in STATUSES:
            status = PENDING
        finished = data.get("finished_at")
        return cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            song=SongCandidate.from_dict(data.get("song") or {}),
            requester_id=str(data.get("requester_id") or ""),
            requester_display_name=str(data.get("requester_display_name") or ""),
            platform=normalize_platform(data.get("platform") or "twitch"),
            submitted_at=_parse_timestamp(data.get("submitted_at")) or datetime.utcnow(),
            status=status,
            priority=bool(data.get("priority")),
            finished_at=_parse_timestamp(finished) if finished else None,
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


@dataclass
class SubmitVerdict:
    allowed: bool
    reason: Optional[str] = None  # "cooldown" or "limit"
    retry_after: int = 0
    limit: int = 0


@dataclass
class DisplayState:
    pending: List[QueuedRequest]
    now_playing: Optional[QueuedRequest]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending": [r.to_dict() for r in self.pending],
            "now_playing": self.now_playing.to_dict() if self.now_playing else None,
        }


class AdmissionDenied(Exception):
    def __init__(self, verdict: SubmitVerdict):
        super().__init__(verdict.reason or "denied")
        self.verdict = verdict

    @property
    def retry_after(self) -> int:
        return self.verdict.retry_after


class DuplicateRequest(Exception):
    def __init__(self, song: SongCandidate):
        super().__init__(f"{song.label} is already queued")
        self.song = song


class QueueEngine:
    """Ordered request queue with a priority lane, cooldowns and per-user limits.

    The active list holds every non-terminal request (pending entries plus at
    most one playing entry).  Terminal requests go to ``history`` and never come
    back.  All public methods take ``_lock``; mutators hand a snapshot to the
    store and fire ``on_change`` before releasing it, so ``on_change`` must not
    block.
    """

    def __init__(
        self,
        store: Optional[SnapshotStore] = None,
        *,
        max_requests_per_user: int = 3,
        cooldown_seconds: float = 10,
        clock: Callable[[], float] = time.monotonic,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.store = store
        self.max_requests_per_user = max_requests_per_user
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.on_change = on_change
        self._lock = RLock()
        self._active: List[QueuedRequest] = []
        self._history: List[QueuedRequest] = []
        self._cooldowns: Dict[Tuple[str, str], float] = {}
        self._dirty = False
        self._load()

    # ---- persistence ----
    def _load(self) -> None:
        if not self.store:
            return
        data = self.store.load(QUEUE_SNAPSHOT)
        if not data:
            return
        playing_seen = False
        for raw in data.get("history") or []:
            try:
                self._history.append(QueuedRequest.from_dict(raw))
            except (TypeError, AttributeError, ValueError):
                logger.warning("dropping unreadable history entry %r", raw)
        for raw in data.get("requests") or []:
            try:
                req = QueuedRequest.from_dict(raw)
            except (TypeError, AttributeError, ValueError):
                logger.warning("dropping unreadable queue entry %r", raw)
                continue
            if req.is_terminal:
                self._history.append(req)
                continue
            if req.status == PLAYING:
                if playing_seen:
                    req.status = PENDING
                playing_seen = True
            self._active.append(req)
        logger.info(
            "loaded queue snapshot: %d active, %d history",
            len(self._active),
            len(self._history),
        )

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "requests": [r.to_dict() for r in self._active],
                "history": [r.to_dict() for r in self._history],
            }

    def _mark_dirty(self) -> None:
        self._dirty = True

    def _flush_changes(self) -> None:
        # Called with _lock held so snapshots reach the writer in mutation order.
        if not self._dirty:
            return
        self._dirty = False
        if self.store:
            self.store.save(QUEUE_SNAPSHOT, self.snapshot())
        if self.on_change:
            try:
                self.on_change()
            except Exception:
                logger.exception("queue change listener failed")

    # ---- helpers ----
    def _pending(self) -> List[QueuedRequest]:
        return [r for r in self._active if r.status == PENDING]

    def _playing(self) -> Optional[QueuedRequest]:
        for r in self._active:
            if r.status == PLAYING:
                return r
        return None

    def _find(self, request_id: str) -> Optional[QueuedRequest]:
        for r in self._active:
            if r.id == request_id:
                return r
        return None

    def _finish(self, req: QueuedRequest, status: str) -> QueuedRequest:
        self._active.remove(req)
        req.status = status
        req.finished_at = datetime.utcnow()
        self._history.append(req)
        self._mark_dirty()
        return replace(req)

    # ---- admission ----
    def can_submit(self, requester_id: str, platform: str) -> SubmitVerdict:
        platform = normalize_platform(platform)
        with self._lock:
            last = self._cooldowns.get((platform, requester_id))
            if last is not None:
                elapsed = self.clock() - last
                if elapsed < self.cooldown_seconds:
                    remaining = max(1, math.ceil(self.cooldown_seconds - elapsed))
                    return SubmitVerdict(False, "cooldown", retry_after=remaining)
            active = sum(
                1 for r in self._active
                if r.requester_id == requester_id and r.platform == platform
            )
            if active >= self.max_requests_per_user:
                return SubmitVerdict(False, "limit", limit=self.max_requests_per_user)
            return SubmitVerdict(True)

    def enqueue(
        self,
        song: SongCandidate,
        requester_id: str,
        display_name: str,
        platform: str,
        priority: bool = False,
    ) -> QueuedRequest:
        platform = normalize_platform(platform)
        with self._lock:
            req = QueuedRequest(
                song=song,
                requester_id=requester_id,
                requester_display_name=display_name,
                platform=platform,
                priority=priority,
            )
            self._insert(req)
            self._cooldowns[(platform, requester_id)] = self.clock()
            self._mark_dirty()
            logger.info(
                "queued %s for %s (%s)%s",
                song.label,
                display_name,
                platform,
                " [priority]" if priority else "",
            )
            created = replace(req)
            self._flush_changes()
        return created

    def _insert(self, req: QueuedRequest) -> None:
        if not req.priority:
            self._active.append(req)
            return
        last_priority = None
        first_pending = None
        for idx, r in enumerate(self._active):
            if r.status != PENDING:
                continue
            if first_pending is None:
                first_pending = idx
            if r.priority:
                last_priority = idx
        if last_priority is not None:
            self._active.insert(last_priority + 1, req)
        elif first_pending is not None:
            self._active.insert(first_pending, req)
        else:
            self._active.append(req)

    def admit(
        self,
        song: SongCandidate,
        requester_id: str,
        display_name: str,
        platform: str,
        priority: bool = False,
        charge: Optional[Callable[[], Any]] = None,
    ) -> QueuedRequest:
        """Check, charge and enqueue as one critical section.

        Raises :class:`AdmissionDenied` or :class:`DuplicateRequest` before
        ``charge`` runs; any exception raised by ``charge`` propagates and
        leaves the queue untouched.
        """
        with self._lock:
            verdict = self.can_submit(requester_id, platform)
            if not verdict.allowed:
                raise AdmissionDenied(verdict)
            if self.is_duplicate(song.artist, song.title):
                raise DuplicateRequest(song)
            if charge is not None:
                charge()
            return self.enqueue(song, requester_id, display_name, platform, priority)

    # ---- queries ----
    def position_of(self, request_id: str) -> Optional[int]:
        with self._lock:
            for idx, r in enumerate(self._pending(), start=1):
                if r.id == request_id:
                    return idx
            return None

    def is_duplicate(self, artist: str, title: str) -> bool:
        artist_l = (artist or "").strip().lower()
        title_l = (title or "").strip().lower()
        with self._lock:
            return any(
                r.song.artist.strip().lower() == artist_l and r.song.title.strip().lower() == title_l
                for r in self._pending()
            )

    def peek_next(self) -> Optional[QueuedRequest]:
        with self._lock:
            pending = self._pending()
            return replace(pending[0]) if pending else None

    def pending(self) -> List[QueuedRequest]:
        with self._lock:
            return [replace(r) for r in self._pending()]

    def now_playing(self) -> Optional[QueuedRequest]:
        with self._lock:
            playing = self._playing()
            return replace(playing) if playing else None

    def history(self, limit: Optional[int] = None) -> List[QueuedRequest]:
        with self._lock:
            items = self._history if limit is None else self._history[-limit:]
            return [replace(r) for r in items]

    def queue_length(self) -> int:
        with self._lock:
            return len(self._pending())

    def display_state(self) -> DisplayState:
        with self._lock:
            return DisplayState(pending=self.pending(), now_playing=self.now_playing())

    def requests_of(self, display_name: str, platform: str) -> List[Tuple[QueuedRequest, int]]:
        """Pending requests of a viewer with their 1-based positions."""
        platform = normalize_platform(platform)
        name = (display_name or "").lower()
        with self._lock:
            return [
                (replace(r), idx)
                for idx, r in enumerate(self._pending(), start=1)
                if r.platform == platform and r.requester_display_name.lower() == name
            ]

    # ---- transitions ----
    def promote_next_to_playing(self) -> Optional[QueuedRequest]:
        with self._lock:
            if self._playing() is not None:
                return None
            pending = self._pending()
            if not pending:
                return None
            nxt = pending[0]
            nxt.status = PLAYING
            self._mark_dirty()
            promoted = replace(nxt)
            self._flush_changes()
        return promoted

    def complete_currently_playing(self) -> Optional[QueuedRequest]:
        with self._lock:
            playing = self._playing()
            if playing is None:
                return None
            done = self._finish(playing, COMPLETED)
            self._flush_changes()
        return done

    def skip(self, request_id: str) -> Optional[QueuedRequest]:
        with self._lock:
            req = self._find(request_id)
            if req is None:
                return None
            skipped = self._finish(req, SKIPPED)
            self._flush_changes()
        return skipped

    def skip_current(self) -> Optional[QueuedRequest]:
        """Skip the playing entry, or the next pending one when nothing plays."""
        with self._lock:
            target = self._playing() or next(iter(self._pending()), None)
            if target is None:
                return None
            skipped = self._finish(target, SKIPPED)
            self._flush_changes()
        return skipped

    def advance(self) -> Tuple[Optional[QueuedRequest], Optional[QueuedRequest]]:
        """Complete the playing entry (if any) and promote the next pending one."""
        with self._lock:
            done = self.complete_currently_playing()
            promoted = self.promote_next_to_playing()
            self._flush_changes()
        return done, promoted

    def clear_all(self) -> int:
        with self._lock:
            pending = self._pending()
            for req in pending:
                self._finish(req, SKIPPED)
            self._flush_changes()
        if pending:
            logger.info("cleared %d pending requests", len(pending))
        return len(pending)

    def reorder(self, from_index: int, to_index: int) -> bool:
        """Move a pending entry by pending index; lane order is not re-applied."""
        with self._lock:
            pending = self._pending()
            if not (0 <= from_index < len(pending)) or not (0 <= to_index < len(pending)):
                logger.warning(
                    "ignoring reorder %s -> %s (pending length %d)",
                    from_index,
                    to_index,
                    len(pending),
                )
                return False
            if from_index == to_index:
                return True
            moved = pending.pop(from_index)
            pending.insert(to_index, moved)
            others = [r for r in self._active if r.status != PENDING]
            self._active = others + pending
            self._mark_dirty()
            self._flush_changes()
        return True

    def remove_last_request_of(self, display_name: str, platform: str) -> Optional[QueuedRequest]:
        platform = normalize_platform(platform)
        name = (display_name or "").lower()
        with self._lock:
            latest: Optional[QueuedRequest] = None
            for r in self._pending():
                if r.platform != platform or r.requester_display_name.lower() != name:
                    continue
                if latest is None or r.submitted_at >= latest.submitted_at:
                    latest = r
            if latest is None:
                return None
            removed = self._finish(latest, SKIPPED)
            self._flush_changes()
        return removed

    def remove_pending_at_index(self, index: int) -> Optional[QueuedRequest]:
        with self._lock:
            pending = self._pending()
            if not (0 <= index < len(pending)):
                return None
            removed = self._finish(pending[index], SKIPPED)
            self._flush_changes()
        return removed
