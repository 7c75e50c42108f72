import json
import sys
import unittest
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from catalog_resolver import (
    ANONYMOUS,
    AUTHENTICATED,
    PARTIAL,
    CatalogResolver,
    CatalogResponse,
    DocumentScrapeStrategy,
    ExactLookupStrategy,
    ListingStrategy,
    SearchStrategy,
    UpstreamUnavailable,
)
from models import SongCandidate

FORUM = "https://forum.test"
API = "https://api.test"
AUTHORIZE = f"{FORUM}/oauth/authorize/?client_id=abc"


def resp(status: int = 200, text: str = "", *, location: Optional[str] = None,
         cookies: Optional[List[Tuple[str, str]]] = None, content_type: str = "text/html") -> CatalogResponse:
    headers = {"content-type": content_type}
    if location:
        headers["location"] = location
    return CatalogResponse(status=status, url="", text=text, headers=headers, cookies=list(cookies or []))


def json_resp(data, status: int = 200) -> CatalogResponse:
    return resp(status, json.dumps(data), content_type="application/json")


class FakeHttp:
    def __init__(self, handler: Callable[[str, str, Optional[Dict[str, str]]], CatalogResponse]):
        self.handler = handler
        self.calls: List[Tuple[str, str, Dict[str, str], Optional[Dict[str, str]]]] = []
        self.closed = False

    async def request(self, method, url, *, headers=None, cookies=None, data=None):
        self.calls.append((method, url, dict(cookies or {}), data))
        return self.handler(method, url, data)

    async def close(self):
        self.closed = True


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class StubStrategy(SearchStrategy):
    def __init__(self, name: str, results=None, error: Optional[Exception] = None, available: bool = True):
        self.name = name
        self.results = results or {}
        self.error = error
        self._available = available
        self.calls: List[str] = []

    def available(self, resolver) -> bool:
        return self._available

    async def search(self, resolver, query):
        self.calls.append(query)
        if self.error is not None:
            raise self.error
        candidates = self.results.get(query, [])
        return candidates, len(candidates)


def login_handler(probe_status: int = 200, member_cookie: bool = True):
    def handler(method: str, url: str, data):
        if method == "GET" and url == f"{FORUM}/":
            return resp(text='<a href="/logout/?csrfKey=abc123">', cookies=[("ips4_IPSSessionFront", "s1")])
        if method == "POST" and url == f"{FORUM}/login/":
            cookies = [("ips4_member_id", "7"), ("ips4_login_key", "k")] if member_cookie else []
            return resp(302 if member_cookie else 200, location="/" if member_cookie else None, cookies=cookies)
        if method == "GET" and url == f"{API}/login":
            return resp(302, location=AUTHORIZE, cookies=[("ignition_session", "i1")])
        if method == "GET" and url == AUTHORIZE:
            return resp(text='<form><input name="csrfKey" value="def456"><button name="authorize_yes">Allow</button></form>')
        if method == "POST" and url == AUTHORIZE:
            return resp(302, location=f"{API}/callback?code=1")
        if method == "GET" and url == f"{API}/callback?code=1":
            return resp(302, location=f"{API}/", cookies=[("ignition_session", "i2")])
        if method == "GET" and url == f"{API}/":
            return resp(text="<html>home</html>")
        if url.startswith(f"{API}/cdlc/search/artists"):
            return json_resp({"results": []}, status=probe_status)
        raise UpstreamUnavailable(f"unexpected {method} {url}")

    return handler


class CatalogLoginTests(unittest.IsolatedAsyncioTestCase):
    def _resolver(self, http: FakeHttp, username: str = "user", password: str = "pw") -> CatalogResolver:
        return CatalogResolver(username, password, base_url=FORUM, api_url=API, http=http)

    async def test_login_without_credentials_is_a_noop(self) -> None:
        http = FakeHttp(login_handler())
        resolver = self._resolver(http, username="", password="")
        self.assertFalse(await resolver.login())
        self.assertEqual(http.calls, [])
        self.assertEqual(resolver.session_state, ANONYMOUS)

    async def test_full_login_reaches_authenticated(self) -> None:
        http = FakeHttp(login_handler())
        resolver = self._resolver(http)
        self.assertTrue(await resolver.login())
        self.assertTrue(resolver.is_authenticated())

        login_post = next(c for c in http.calls if c[0] == "POST" and c[1] == f"{FORUM}/login/")
        self.assertEqual(login_post[3]["csrfKey"], "abc123")
        self.assertEqual(login_post[3]["auth"], "user")
        confirm = next(c for c in http.calls if c[0] == "POST" and c[1] == AUTHORIZE)
        self.assertEqual(confirm[3], {"csrfKey": "def456", "authorize_yes": "1"})
        self.assertEqual(resolver.session.cookies["ignition_session"], "i2")
        self.assertIn("ips4_member_id", http.calls[-1][2])

    async def test_second_login_reuses_authenticated_session(self) -> None:
        http = FakeHttp(login_handler())
        resolver = self._resolver(http)
        await resolver.login()
        count = len(http.calls)
        self.assertTrue(await resolver.login())
        self.assertEqual(len(http.calls), count)
        self.assertTrue(await resolver.login(force=True))
        self.assertGreater(len(http.calls), count)

    async def test_failed_probe_keeps_partial_session(self) -> None:
        http = FakeHttp(login_handler(probe_status=401))
        resolver = self._resolver(http)
        self.assertFalse(await resolver.login())
        self.assertEqual(resolver.session_state, PARTIAL)
        self.assertIn("ips4_member_id", resolver.session.cookies)

    async def test_rejected_credentials_reset_session(self) -> None:
        http = FakeHttp(login_handler(member_cookie=False))
        resolver = self._resolver(http)
        self.assertFalse(await resolver.login())
        self.assertEqual(resolver.session_state, ANONYMOUS)
        self.assertEqual(resolver.session.cookies, {})

    async def test_network_failure_during_login(self) -> None:
        def handler(method, url, data):
            raise UpstreamUnavailable("connection refused")

        resolver = self._resolver(FakeHttp(handler))
        with self.assertLogs("catalog_resolver", level="WARNING"):
            self.assertFalse(await resolver.login())
        self.assertEqual(resolver.session_state, ANONYMOUS)

    async def test_close_closes_http(self) -> None:
        http = FakeHttp(login_handler())
        await self._resolver(http).close()
        self.assertTrue(http.closed)


class CatalogSearchTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.song = SongCandidate("Muse", "Uprising")

    def _resolver(self, strategies) -> CatalogResolver:
        http = FakeHttp(lambda m, u, d: resp(404))
        return CatalogResolver(api_url=API, http=http, strategies=strategies, timer=self.clock)

    async def test_first_strategy_with_candidates_wins(self) -> None:
        first = StubStrategy("first", {"muse uprising": [self.song]})
        second = StubStrategy("second", {"muse uprising": [SongCandidate("Other", "Song")]})
        result = await self._resolver([first, second]).search("muse uprising")
        self.assertTrue(result.found)
        self.assertEqual(result.candidates, [self.song])
        self.assertEqual(second.calls, [])

    async def test_falls_through_strategies_then_variants(self) -> None:
        first = StubStrategy("first")
        second = StubStrategy("second", {"muse uprising": [self.song]})
        result = await self._resolver([first, second]).search("muse  uprising!")
        self.assertTrue(result.found)
        self.assertEqual(first.calls, ["muse  uprising!", "muse uprising!", "muse uprising"])
        self.assertEqual(len(second.calls), len(first.calls))

    async def test_unavailable_strategies_are_skipped(self) -> None:
        hidden = StubStrategy("hidden", {"muse": [self.song]}, available=False)
        result = await self._resolver([hidden]).search("muse")
        self.assertFalse(result.found)
        self.assertEqual(hidden.calls, [])

    async def test_results_are_cached_for_thirty_minutes(self) -> None:
        strategy = StubStrategy("only", {"muse": [self.song]})
        resolver = self._resolver([strategy])
        await resolver.search("muse")
        await resolver.search("  MUSE ")
        self.assertEqual(strategy.calls, ["muse"])
        self.clock.now += 1799
        await resolver.search("muse")
        self.assertEqual(len(strategy.calls), 1)
        self.clock.now += 2
        await resolver.search("muse")
        self.assertEqual(len(strategy.calls), 2)

    async def test_negative_results_are_cached(self) -> None:
        strategy = StubStrategy("only")
        resolver = self._resolver([strategy])
        self.assertFalse((await resolver.search("nothing")).found)
        self.assertFalse((await resolver.search("nothing")).found)
        self.assertEqual(strategy.calls, ["nothing"])

    async def test_upstream_failures_are_not_cached(self) -> None:
        strategy = StubStrategy("broken", error=UpstreamUnavailable("down"))
        resolver = self._resolver([strategy])
        with self.assertLogs("catalog_resolver", level="WARNING"):
            self.assertFalse((await resolver.search("muse")).found)
            await resolver.search("muse")
        self.assertEqual(strategy.calls, ["muse", "muse"])

    async def test_empty_query(self) -> None:
        strategy = StubStrategy("only")
        result = await self._resolver([strategy]).search("   ")
        self.assertFalse(result.found)
        self.assertEqual(strategy.calls, [])


class StrategyTests(unittest.IsolatedAsyncioTestCase):
    def _resolver(self, handler, strategies) -> CatalogResolver:
        return CatalogResolver(api_url=API, http=FakeHttp(handler), strategies=strategies)

    async def test_exact_lookup_requires_authenticated_session(self) -> None:
        def handler(method, url, data):
            if url == f"{API}/cdlc/search/artists?search=Green%20Day":
                return json_resp({"results": [{"text": "Green Day"}]})
            if url == f"{API}/cdlc/search/titles?search=Basket%20Case":
                return json_resp(["Basket Case (Live)", "Basket Case"])
            return resp(404)

        strategy = ExactLookupStrategy()
        resolver = self._resolver(handler, [strategy])
        self.assertFalse(strategy.available(resolver))
        resolver.session.state = AUTHENTICATED
        result = await resolver.search("Green Day - Basket Case")
        self.assertTrue(result.found)
        self.assertEqual(result.candidates, [SongCandidate("Green Day", "Basket Case (Live)")])

    async def test_exact_lookup_needs_both_parts(self) -> None:
        calls = []

        def handler(method, url, data):
            calls.append(url)
            return json_resp({"results": []})

        resolver = self._resolver(handler, [ExactLookupStrategy()])
        resolver.session.state = AUTHENTICATED
        candidates, total = await ExactLookupStrategy().search(resolver, "Uprising")
        self.assertEqual((candidates, total), ([], 0))
        self.assertEqual(calls, [])
        candidates, _ = await ExactLookupStrategy().search(resolver, "Muse - Uprising")
        self.assertEqual(candidates, [])
        self.assertEqual(len(calls), 1)

    async def test_listing_strategy_parses_json(self) -> None:
        def handler(method, url, data):
            self.assertTrue(url.startswith(f"{API}/?draw=1"))
            return json_resp({"recordsFiltered": 3, "data": [{"artistName": "Muse", "titleName": "Uprising"}]})

        candidates, total = await ListingStrategy().search(self._resolver(handler, []), "muse")
        self.assertEqual([c.title for c in candidates], ["Uprising"])
        self.assertEqual(total, 3)

    async def test_listing_strategy_ignores_html(self) -> None:
        resolver = self._resolver(lambda m, u, d: resp(text="<html>login</html>"), [])
        self.assertEqual(await ListingStrategy().search(resolver, "muse"), ([], 0))

    async def test_listing_strategy_raises_on_http_error(self) -> None:
        resolver = self._resolver(lambda m, u, d: resp(503), [])
        with self.assertRaises(UpstreamUnavailable):
            await ListingStrategy().search(resolver, "muse")

    async def test_document_scrape_fallback(self) -> None:
        def handler(method, url, data):
            if url.startswith(f"{API}/?draw=1"):
                return resp(text="<html></html>")
            self.assertEqual(url, f"{API}/?search=muse")
            return resp(text="<table><tbody><tr><td>Muse</td><td>Uprising</td></tr></tbody></table>")

        resolver = self._resolver(handler, [ListingStrategy(), DocumentScrapeStrategy()])
        result = await resolver.search("muse")
        self.assertTrue(result.found)
        self.assertEqual(result.candidates[0].artist, "Muse")

    async def test_session_cookies_are_sent(self) -> None:
        http = FakeHttp(lambda m, u, d: resp())
        resolver = CatalogResolver(api_url=API, http=http, strategies=[])
        resolver.session.cookies = {"ips4_member_id": "7"}
        await resolver.fetch(f"{API}/")
        self.assertEqual(http.calls[-1][2], {"ips4_member_id": "7"})


if __name__ == "__main__":
    unittest.main()
