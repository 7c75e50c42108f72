import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from catalog_resolver import (
    CandidateCollector,
    build_listing_query,
    matches_query,
    parse_listing_payload,
    parse_search_document,
    query_variants,
    split_lookup_query,
    strip_html,
)

BASE = "https://ignition.test"


class QueryHelperTests(unittest.TestCase):
    def test_variants_are_distinct_ignoring_case(self) -> None:
        variants = query_variants("  Green   Day - Basket Case! ")
        self.assertEqual(
            variants,
            ["Green   Day - Basket Case!", "Green Day - Basket Case!", "Green Day Basket Case"],
        )

    def test_variants_of_empty_query(self) -> None:
        self.assertEqual(query_variants("   "), [])

    def test_split_lookup_query(self) -> None:
        self.assertEqual(split_lookup_query("Green Day - Basket Case"), ("Green Day", "Basket Case"))
        self.assertEqual(split_lookup_query("Muse – Uprising"), ("Muse", "Uprising"))
        self.assertEqual(split_lookup_query("Basket Case by Green Day"), ("Green Day", "Basket Case"))
        self.assertEqual(split_lookup_query("Green Day Basket Case"), ("Green Day", "Basket Case"))
        self.assertEqual(split_lookup_query("Muse Uprising"), (None, "Muse Uprising"))

    def test_matches_query_ignores_short_words(self) -> None:
        self.assertTrue(matches_query("Muse - Uprising", "muse xx"))
        self.assertFalse(matches_query("Metallica - One", "green day"))
        self.assertTrue(matches_query("anything", "a b"))

    def test_listing_query_encodes_columns(self) -> None:
        encoded = build_listing_query("muse")
        self.assertIn("search%5Bvalue%5D=muse", encoded)
        self.assertIn("columns%5B7%5D%5Bdata%5D=updated_at", encoded)
        self.assertIn("order%5B0%5D%5Bdir%5D=desc", encoded)

    def test_strip_html(self) -> None:
        self.assertEqual(strip_html("<b>AC&amp;DC</b>\n <i>live</i>"), "AC&DC live")
        self.assertEqual(strip_html(None), "")


class CandidateCollectorTests(unittest.TestCase):
    def test_defaults_and_filters(self) -> None:
        collector = CandidateCollector("song title", BASE + "/")
        self.assertTrue(collector.add("", "Song Title", "file/1"))
        self.assertFalse(collector.add("Someone", "X"))
        self.assertFalse(collector.add("unknown artist", "SONG TITLE"))
        self.assertFalse(collector.add("Other", "Unrelated"))
        self.assertEqual(len(collector), 1)
        item = collector.items[0]
        self.assertEqual(item.artist, "Unknown Artist")
        self.assertEqual(item.catalog_url, BASE + "/file/1")


class ListingPayloadTests(unittest.TestCase):
    def test_rows_are_cleaned_filtered_and_deduplicated(self) -> None:
        payload = {
            "recordsFiltered": 12,
            "data": [
                {
                    "artistName": '<a href="/a">Green Day</a>',
                    "titleName": "Basket Case",
                    "albumName": "Dookie",
                    "file_pc_link": "/file/1",
                },
                {"artistName": "Green Day", "titleName": "basket case"},
                {"artistName": "Metallica", "titleName": "One"},
                {"artistName": "Green Day", "titleName": ""},
                "junk",
            ],
        }
        candidates, total = parse_listing_payload(payload, "green day basket case", BASE)
        self.assertEqual(total, 12)
        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].artist, "Green Day")
        self.assertEqual(candidates[0].album, "Dookie")
        self.assertEqual(candidates[0].catalog_url, BASE + "/file/1")

    def test_total_falls_back_to_candidate_count(self) -> None:
        payload = {"data": [{"artist": "Muse", "title": "Uprising"}]}
        candidates, total = parse_listing_payload(payload, "muse", BASE)
        self.assertEqual(total, 1)
        self.assertEqual(candidates[0].title, "Uprising")

    def test_unexpected_payload(self) -> None:
        self.assertEqual(parse_listing_payload(["data"], "muse", BASE), ([], 0))
        self.assertEqual(parse_listing_payload({"data": "nope"}, "muse", BASE), ([], 0))


class SearchDocumentTests(unittest.TestCase):
    def test_table_rows(self) -> None:
        document = """
        <table><tbody>
          <tr><td>Muse</td><td>Uprising</td><td><a href="/file/9">download</a></td></tr>
          <tr><td>only one cell</td></tr>
        </tbody></table>
        """
        candidates = parse_search_document(document, "muse uprising", BASE)
        self.assertEqual([(c.artist, c.title) for c in candidates], [("Muse", "Uprising")])
        self.assertEqual(candidates[0].catalog_url, BASE + "/file/9")

    def test_component_snapshot(self) -> None:
        document = """<div wire:snapshot='{"data": {"songs": [{"artist": "Muse", "title": "Hysteria"}]}}'></div>"""
        candidates = parse_search_document(document, "muse hysteria", BASE)
        self.assertEqual([(c.artist, c.title) for c in candidates], [("Muse", "Hysteria")])

    def test_forum_layout_items(self) -> None:
        document = """
        <div class="ipsDataItem">
          <h4><a href="/file/5-muse-starlight" data-ipshover>Muse - Starlight</a></h4>
        </div>
        """
        candidates = parse_search_document(document, "starlight", BASE)
        self.assertEqual([(c.artist, c.title) for c in candidates], [("Muse", "Starlight")])
        self.assertEqual(candidates[0].catalog_url, BASE + "/file/5-muse-starlight")

    def test_bare_file_links(self) -> None:
        document = '<p><a href="/file/3-basket-case">Green Day - Basket Case</a> <a href="/file/4">DL</a></p>'
        candidates = parse_search_document(document, "basket case", BASE)
        self.assertEqual([(c.artist, c.title) for c in candidates], [("Green Day", "Basket Case")])

    def test_first_productive_stage_wins(self) -> None:
        document = """
        <table><tbody><tr><td>Muse</td><td>Uprising</td></tr></tbody></table>
        <a href="/file/7">Muse - Uprising (Live)</a>
        """
        candidates = parse_search_document(document, "muse uprising", BASE)
        self.assertEqual([c.title for c in candidates], ["Uprising"])

    def test_irrelevant_document(self) -> None:
        self.assertEqual(parse_search_document("<html><body>No results</body></html>", "muse", BASE), [])
        self.assertEqual(parse_search_document("", "muse", BASE), [])


if __name__ == "__main__":
    unittest.main()
