"""Song lookup against the CustomsForge / Ignition4 chart catalog.

A search walks the query variants and, for each variant, an ordered chain of
:class:`SearchStrategy` objects; the first strategy that yields a candidate
wins.  Results are cached for thirty minutes per normalised query.

Catalog access is cookie based.  ``login`` signs into the community forum and
then completes the API front end's authorisation handshake; when the second
phase cannot be verified the forum cookies are still kept (``partial``
session) because the listing and page scrapes work better with them.
"""

from __future__ import annotations
import asyncio
import html
import json
import logging
import re
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Optional, List, Dict, Tuple, Any, Iterable, Callable
from urllib.parse import quote, urlencode

import aiohttp
from bs4 import BeautifulSoup
from cachetools import TTLCache

from models import SongCandidate

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36"
)
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
JSON_ACCEPT = "application/json, text/javascript, */*; q=0.01"

CACHE_TTL_SECONDS = 30 * 60
MAX_REDIRECTS = 10
SESSION_COOKIES = ("ips4_member_id", "ips4_loggedIn")
REDIRECT_STATUSES = (301, 302, 303, 307, 308)

ANONYMOUS = "anonymous"
PARTIAL = "partial"
AUTHENTICATED = "authenticated"

LOOKUP_SEPARATORS = (" - ", " – ", " — ")
PUNCTUATION_RE = re.compile(r"[\"'`~!@#$%^&*()_+=\[\]{}\\|:;,.<>/?-]+")
CSRF_RE = re.compile(r"csrfKey=([a-f0-9]+)", re.I)
CSRF_INPUT_RE = re.compile(r"name=[\"']csrfKey[\"']\s+value=[\"']([^\"']+)[\"']", re.I)
TAG_RE = re.compile(r"<[^>]*>")
SNAPSHOT_ARTIST_KEY = re.compile(r"artist", re.I)
SNAPSHOT_TITLE_KEY = re.compile(r"(title|song|track|name)", re.I)
LAYOUT_SELECTORS = (
    ".ipsDataItem",
    'li[data-role="activityItem"]',
    "article.ipsContained",
    ".cDownloadsCat",
    '[itemtype*="SoftwareApplication"]',
)
LISTING_COLUMNS = (
    ("add", "add", "false", "false"),
    ("artistName", "artist.name", "true", "true"),
    ("titleName", "title", "true", "true"),
    ("albumName", "album", "true", "true"),
    ("tuning", "tuning", "false", "true"),
    ("memberName", "author.name", "true", "true"),
    ("created_at", "created_at", "false", "true"),
    ("updated_at", "updated_at", "false", "true"),
)


class UpstreamUnavailable(RuntimeError):
    """Network or HTTP failure while talking to the catalog."""


@dataclass
class SearchResult:
    found: bool
    candidates: List[SongCandidate] = field(default_factory=list)
    total_results: int = 0


@dataclass
class CatalogResponse:
    status: int
    url: str
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    cookies: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("location") or None

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    def json(self) -> Any:
        return json.loads(self.text)


def _split_set_cookie(raw: str) -> Optional[Tuple[str, str]]:
    pair = raw.split(";", 1)[0]
    name, sep, value = pair.partition("=")
    name = name.strip()
    if not sep or not name:
        return None
    return name, value.strip()


class CatalogHttp:
    """Thin aiohttp wrapper: no automatic redirects, cookies managed by the caller."""

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession(
                cookie_jar=aiohttp.DummyCookieJar(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": USER_AGENT},
            )

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
        data: Optional[Dict[str, str]] = None,
    ) -> CatalogResponse:
        if not self.session:
            await self.start()
        hdrs = dict(headers or {})
        if cookies:
            hdrs["Cookie"] = "; ".join(f"{k}={v}" for k, v in cookies.items())
        try:
            async with self.session.request(method, url, headers=hdrs, data=data, allow_redirects=False) as r:
                text = await r.text(errors="replace")
                parsed = [_split_set_cookie(c) for c in r.headers.getall("Set-Cookie", [])]
                return CatalogResponse(
                    status=r.status,
                    url=str(r.url),
                    text=text,
                    headers={k.lower(): v for k, v in r.headers.items()},
                    cookies=[c for c in parsed if c],
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamUnavailable(f"{method} {url} failed: {exc!r}") from exc


class CatalogSession:
    def __init__(self) -> None:
        self.state = ANONYMOUS
        self.cookies: Dict[str, str] = {}

    def reset(self) -> None:
        self.state = ANONYMOUS
        self.cookies = {}

    def absorb(self, response: CatalogResponse) -> None:
        # Later cookies replace earlier ones with the same name.
        for name, value in response.cookies:
            self.cookies.pop(name, None)
            self.cookies[name] = value

    def has_member_cookie(self) -> bool:
        return any(name in self.cookies for name in SESSION_COOKIES)


# ---- query helpers ----

def query_variants(query: str) -> List[str]:
    trimmed = (query or "").strip()
    normalized = re.sub(r"\s+", " ", trimmed)
    lower = normalized.lower()
    title_case = " ".join(w[:1].upper() + w[1:].lower() if w else w for w in normalized.split(" "))
    no_punct = re.sub(r"\s+", " ", PUNCTUATION_RE.sub(" ", normalized)).strip()
    variants: List[str] = []
    seen = set()
    for v in (trimmed, normalized, title_case, lower, no_punct):
        if not v or v.lower() in seen:
            continue
        seen.add(v.lower())
        variants.append(v)
    return variants


def query_tokens(query: str) -> List[str]:
    return [w for w in (query or "").lower().split() if len(w) > 2]


def matches_query(text: str, query: str) -> bool:
    words = query_tokens(query)
    if not words:
        return True
    lowered = text.lower()
    return any(w in lowered for w in words)


def split_lookup_query(query: str) -> Tuple[Optional[str], str]:
    """Split a query into (artist, title) for the suggestion lookup.

    ``"Artist - Title"`` (any dash) and ``"Title by Artist"`` are recognised;
    four or more bare words are read as a two-word artist followed by the
    title; anything shorter is a title on its own.
    """
    q = (query or "").strip()
    lowered = q.lower()
    for sep in LOOKUP_SEPARATORS:
        idx = lowered.find(sep)
        if idx > 0:
            return q[:idx].strip() or None, q[idx + len(sep):].strip()
    # "Title by Artist", matching the chat request parser.
    idx = lowered.find(" by ")
    if idx > 0:
        return q[idx + 4:].strip() or None, q[:idx].strip()
    words = q.split()
    if len(words) >= 4:
        return " ".join(words[:2]), " ".join(words[2:])
    return None, q


def build_listing_query(term: str = "") -> str:
    params: List[Tuple[str, str]] = [
        ("draw", "1"),
        ("start", "0"),
        ("length", "25"),
        ("order[0][column]", "7"),
        ("order[0][dir]", "desc"),
        ("search[value]", term),
        ("search[regex]", "false"),
    ]
    for i, (data, name, searchable, orderable) in enumerate(LISTING_COLUMNS):
        params.extend([
            (f"columns[{i}][data]", data),
            (f"columns[{i}][name]", name),
            (f"columns[{i}][searchable]", searchable),
            (f"columns[{i}][orderable]", orderable),
            (f"columns[{i}][search][value]", ""),
            (f"columns[{i}][search][regex]", "false"),
        ])
    return urlencode(params)


def strip_html(value: Any) -> str:
    text = TAG_RE.sub(" ", str(value if value is not None else ""))
    return re.sub(r"\s+", " ", html.unescape(text)).strip()


class CandidateCollector:
    """Accumulates relevant, de-duplicated candidates for one query."""

    def __init__(self, query: str, base_url: str):
        self.query = query
        self.base_url = base_url.rstrip("/")
        self.items: List[SongCandidate] = []
        self._seen = set()

    def absolute(self, href: Optional[str]) -> Optional[str]:
        if not href:
            return None
        if href.startswith("http"):
            return href
        if not href.startswith("/"):
            href = "/" + href
        return f"{self.base_url}{href}"

    def add(self, artist: str, title: str, href: Optional[str] = None, album: Optional[str] = None) -> bool:
        artist = (artist or "").strip() or "Unknown Artist"
        title = (title or "").strip()
        if len(title) <= 1:
            return False
        if not matches_query(f"{artist} {title}", self.query):
            return False
        key = (artist.lower(), title.lower())
        if key in self._seen:
            return False
        self._seen.add(key)
        self.items.append(SongCandidate(artist=artist, title=title, album=album or None, catalog_url=self.absolute(href)))
        return True

    def __len__(self) -> int:
        return len(self.items)


# ---- payload / document parsing ----

def parse_listing_payload(payload: Any, query: str, base_url: str) -> Tuple[List[SongCandidate], int]:
    rows = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        return [], 0
    collector = CandidateCollector(query, base_url)
    for row in rows:
        if not isinstance(row, dict):
            continue
        artist = strip_html(row.get("artistName") or row.get("artist.name") or row.get("artist") or "")
        title = strip_html(row.get("titleName") or row.get("title") or "")
        if not title:
            continue
        album = strip_html(row.get("albumName") or row.get("album") or "") or None
        href = None
        for key in ("file_pc_link", "file_mac_link", "url", "permalink"):
            value = row.get(key)
            if isinstance(value, str) and value:
                href = value
                break
        collector.add(artist, title, href, album)
    total = payload.get("recordsFiltered")
    if not isinstance(total, int):
        total = len(collector)
    return collector.items, total


def _split_label(label: str) -> Tuple[str, str]:
    if " - " in label:
        artist, _, rest = label.partition(" - ")
        return artist.strip(), rest.strip()
    return "", label


def _table_stage(soup: BeautifulSoup, collector: CandidateCollector) -> None:
    for tr in soup.select("table tbody tr"):
        tds = tr.find_all("td")
        if len(tds) < 2:
            continue
        artist = tds[0].get_text(" ", strip=True)
        title = tds[1].get_text(" ", strip=True)
        link = tr.find("a", href=True)
        if artist and title:
            collector.add(artist, title, link["href"] if link else None)


def _collect_snapshot(obj: Any, collector: CandidateCollector) -> None:
    if isinstance(obj, list):
        for item in obj:
            _collect_snapshot(item, collector)
        return
    if not isinstance(obj, dict):
        return
    keys = list(obj.keys())
    artist_key = next((k for k in keys if SNAPSHOT_ARTIST_KEY.search(k)), None)
    title_key = next((k for k in keys if k != artist_key and SNAPSHOT_TITLE_KEY.search(k)), None)
    if artist_key and title_key:
        artist = obj[artist_key]
        title = obj[title_key]
        if isinstance(artist, str) and isinstance(title, str) and len(artist) <= 120 and len(title) <= 200:
            collector.add(artist, title)
    for key in keys:
        _collect_snapshot(obj[key], collector)


def _snapshot_stage(soup: BeautifulSoup, collector: CandidateCollector) -> None:
    for el in soup.find_all(attrs={"wire:snapshot": True}):
        raw = el.get("wire:snapshot") or ""
        try:
            parsed = json.loads(raw)
        except ValueError:
            try:
                parsed = json.loads(html.unescape(raw))
            except ValueError:
                logger.debug("skipping unreadable component snapshot")
                continue
        _collect_snapshot(parsed, collector)


def _link_label(link) -> str:
    return (link.get("title") or link.get_text(" ", strip=True) or "").strip()


def _layout_stage(soup: BeautifulSoup, collector: CandidateCollector) -> None:
    for selector in LAYOUT_SELECTORS:
        for item in soup.select(selector):
            label = ""
            href = ""
            for link in (
                item.select_one("a[data-ipshover]"),
                item.select_one('a[href*="/file/"]'),
                item.find("a"),
            ):
                if link is not None:
                    label = _link_label(link)
                    href = link.get("href") or ""
                    if label:
                        break
            if not label:
                heading = item.select_one("h4, h3, strong, .ipsType_break")
                if heading is not None:
                    label = heading.get_text(" ", strip=True)
                    inner = heading.find("a", href=True) or item.find("a", href=True)
                    href = inner["href"] if inner else ""
            if len(label) <= 3:
                continue
            artist, title = _split_label(label)
            collector.add(artist, title, href or None)


def _file_link_stage(soup: BeautifulSoup, collector: CandidateCollector) -> None:
    for link in soup.select('a[href*="/file/"]'):
        label = _link_label(link)
        if len(label) <= 3:
            continue
        artist, title = _split_label(label)
        collector.add(artist, title, (link.get("href") or "").strip() or None)


DOCUMENT_STAGES: Tuple[Callable[[BeautifulSoup, CandidateCollector], None], ...] = (
    _table_stage,
    _snapshot_stage,
    _layout_stage,
    _file_link_stage,
)


def parse_search_document(document: str, query: str, base_url: str) -> List[SongCandidate]:
    soup = BeautifulSoup(document or "", "html.parser")
    for stage in DOCUMENT_STAGES:
        collector = CandidateCollector(query, base_url)
        stage(soup, collector)
        if collector.items:
            logger.debug("document stage %s produced %d candidates", stage.__name__, len(collector))
            return collector.items
    return []


# ---- strategies ----

class SearchStrategy:
    name = "strategy"

    def available(self, resolver: "CatalogResolver") -> bool:
        return True

    async def search(self, resolver: "CatalogResolver", query: str) -> Tuple[List[SongCandidate], int]:
        raise NotImplementedError


def _suggestion_match(items: Iterable[Any], wanted: str) -> Optional[str]:
    wanted = wanted.lower().strip()
    for item in items:
        if isinstance(item, dict):
            text = str(item.get("text") or item.get("name") or "").strip()
        elif isinstance(item, str):
            text = item.strip()
        else:
            continue
        lowered = text.lower()
        if not lowered:
            continue
        if lowered == wanted or wanted in lowered or lowered in wanted:
            return text
    return None


class ExactLookupStrategy(SearchStrategy):
    """Resolve artist and title separately against the suggestion indices."""

    name = "exact-lookup"

    def available(self, resolver: "CatalogResolver") -> bool:
        return resolver.session.state == AUTHENTICATED

    async def _suggest(self, resolver: "CatalogResolver", index: str, name: str) -> Optional[str]:
        url = f"{resolver.api_url}/cdlc/search/{index}?search={quote(name)}"
        resp = await resolver.fetch(url, accept="application/json", xhr=True)
        if not resp.ok:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        items = data.get("results") if isinstance(data, dict) else data
        if not isinstance(items, list):
            return None
        return _suggestion_match(items, name)

    async def search(self, resolver, query):
        artist, title = split_lookup_query(query)
        if not artist or not title:
            return [], 0
        found_artist = await self._suggest(resolver, "artists", artist)
        if not found_artist:
            logger.debug("no artist suggestion matches %r", artist)
            return [], 0
        found_title = await self._suggest(resolver, "titles", title)
        if not found_title:
            logger.debug("no title suggestion matches %r", title)
            return [], 0
        return [SongCandidate(artist=found_artist, title=found_title)], 1


class ListingStrategy(SearchStrategy):
    """Server-side filtered DataTables listing."""

    name = "listing"

    async def search(self, resolver, query):
        url = f"{resolver.api_url}/?{build_listing_query(query)}"
        resp = await resolver.fetch(
            url,
            accept=JSON_ACCEPT,
            xhr=True,
            referer=f"{resolver.api_url}/?search={quote(query)}",
        )
        if not resp.ok:
            raise UpstreamUnavailable(f"listing request returned HTTP {resp.status}")
        text = resp.text.strip()
        if "application/json" not in resp.content_type and not (text.startswith("{") and '"data"' in text):
            return [], 0
        try:
            payload = resp.json()
        except ValueError:
            logger.warning("listing response was not valid JSON")
            return [], 0
        return parse_listing_payload(payload, query, resolver.api_url)


class DocumentScrapeStrategy(SearchStrategy):
    name = "document-scrape"

    async def search(self, resolver, query):
        url = f"{resolver.api_url}/?search={quote(query)}"
        resp = await resolver.fetch(url, accept=HTML_ACCEPT)
        if not resp.ok:
            raise UpstreamUnavailable(f"search page returned HTTP {resp.status}")
        candidates = parse_search_document(resp.text, query, resolver.api_url)
        return candidates, len(candidates)


def default_strategies() -> List[SearchStrategy]:
    return [ExactLookupStrategy(), ListingStrategy(), DocumentScrapeStrategy()]


# ---- resolver ----

class CatalogResolver:
    def __init__(
        self,
        username: str = "",
        password: str = "",
        *,
        base_url: str = "https://customsforge.com",
        api_url: str = "https://ignition4.customsforge.com",
        http: Optional[CatalogHttp] = None,
        strategies: Optional[List[SearchStrategy]] = None,
        cache_ttl: float = CACHE_TTL_SECONDS,
        cache_size: int = 512,
        timer: Callable[[], float] = time.monotonic,
        timeout: float = 15.0,
    ):
        self.username = username
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.api_url = api_url.rstrip("/")
        self.http = http or CatalogHttp(timeout=timeout)
        self.strategies = strategies if strategies is not None else default_strategies()
        self.session = CatalogSession()
        self._cache: TTLCache = TTLCache(maxsize=cache_size, ttl=cache_ttl, timer=timer)
        self._cache_lock = Lock()
        self._login_lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @property
    def session_state(self) -> str:
        return self.session.state

    def is_authenticated(self) -> bool:
        return self.session.state == AUTHENTICATED

    async def close(self) -> None:
        await self.http.close()

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        accept: str = HTML_ACCEPT,
        xhr: bool = False,
        referer: Optional[str] = None,
        data: Optional[Dict[str, str]] = None,
        origin: Optional[str] = None,
    ) -> CatalogResponse:
        headers = {"Accept": accept, "Accept-Language": "en-US,en;q=0.9"}
        if xhr:
            headers["X-Requested-With"] = "XMLHttpRequest"
        if referer:
            headers["Referer"] = referer
        if origin:
            headers["Origin"] = origin
        if data is not None:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        cookies = dict(self.session.cookies) if self.session.cookies else None
        return await self.http.request(method, url, headers=headers, cookies=cookies, data=data)

    # ---- login ----
    async def login(self, force: bool = False) -> bool:
        if not self.has_credentials:
            logger.info("no catalog credentials configured; using anonymous search")
            return False
        async with self._login_lock:
            if self.session.state == AUTHENTICATED and not force:
                return True
            try:
                return await self._login()
            except UpstreamUnavailable as exc:
                logger.warning("catalog login failed: %s", exc)
                return False

    def _absolute(self, location: str, default_base: str) -> str:
        if location.startswith("http"):
            return location
        if location.startswith("/"):
            return f"{default_base}{location}"
        return f"{self.api_url}/{location}"

    @staticmethod
    def _extract_csrf(document: str) -> str:
        match = CSRF_RE.search(document) or CSRF_INPUT_RE.search(document)
        return match.group(1) if match else ""

    async def _login(self) -> bool:
        self.session.reset()
        logger.info("logging into catalog as %s", self.username)

        main = await self.fetch(f"{self.base_url}/")
        self.session.absorb(main)
        csrf = self._extract_csrf(main.text)

        resp = await self.fetch(
            f"{self.base_url}/login/",
            method="POST",
            data={
                "login__standard_submitted": "1",
                "csrfKey": csrf,
                "auth": self.username,
                "password": self.password,
                "remember_me": "1",
                "remember_me_checkbox": "1",
                "_processLogin": "usernamepassword",
                "signin_anonymous": "0",
            },
            origin=self.base_url,
            referer=f"{self.base_url}/login/",
        )
        self.session.absorb(resp)
        hops = 0
        while resp.location and hops < MAX_REDIRECTS:
            hops += 1
            resp = await self.fetch(self._absolute(resp.location, self.base_url))
            self.session.absorb(resp)

        if not self.session.has_member_cookie():
            logger.warning("catalog forum login failed; check credentials")
            self.session.reset()
            return False
        self.session.state = PARTIAL
        logger.info("catalog forum login ok, completing authorisation")

        start = await self.fetch(f"{self.api_url}/login")
        self.session.absorb(start)
        next_url = start.location
        hops = 0
        while next_url and hops < MAX_REDIRECTS:
            hops += 1
            full_url = self._absolute(next_url, self.base_url)
            step = await self.fetch(full_url)
            self.session.absorb(step)
            if step.status == 200 and "oauth/authorize" in full_url:
                if "authorize_yes" not in step.text and "Allow" not in step.text:
                    break
                auth_csrf = CSRF_INPUT_RE.search(step.text)
                confirm = await self.fetch(
                    full_url,
                    method="POST",
                    data={"csrfKey": auth_csrf.group(1) if auth_csrf else csrf, "authorize_yes": "1"},
                    origin=self.base_url,
                    referer=full_url,
                )
                self.session.absorb(confirm)
                next_url = confirm.location
            elif step.status in REDIRECT_STATUSES:
                next_url = step.location
            else:
                break

        probe = await self.fetch(
            f"{self.api_url}/cdlc/search/artists?search=test",
            accept="application/json",
            xhr=True,
        )
        if probe.status == 200:
            self.session.state = AUTHENTICATED
            logger.info("catalog login successful")
            return True
        logger.warning("catalog API probe returned %s; keeping partial session", probe.status)
        return False

    # ---- search ----
    def _cache_get(self, key: str) -> Optional[SearchResult]:
        with self._cache_lock:
            return self._cache.get(key)

    def _cache_put(self, key: str, result: SearchResult) -> None:
        with self._cache_lock:
            self._cache[key] = result

    async def search(self, query: str) -> SearchResult:
        key = (query or "").lower().strip()
        if not key:
            return SearchResult(False)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        result = SearchResult(False)
        attempts = 0
        failures = 0
        for variant in query_variants(query):
            for strategy in self.strategies:
                if not strategy.available(self):
                    continue
                attempts += 1
                try:
                    candidates, total = await strategy.search(self, variant)
                except UpstreamUnavailable as exc:
                    failures += 1
                    logger.warning("%s strategy unavailable for %r: %s", strategy.name, variant, exc)
                    continue
                except Exception:
                    failures += 1
                    logger.exception("%s strategy failed for %r", strategy.name, variant)
                    continue
                if candidates:
                    logger.info(
                        "%s found %d candidate(s) for %r",
                        strategy.name,
                        len(candidates),
                        variant,
                    )
                    result = SearchResult(True, list(candidates), max(total, len(candidates)))
                    break
            if result.found:
                break

        if result.found or failures < attempts:
            self._cache_put(key, result)
        return result
