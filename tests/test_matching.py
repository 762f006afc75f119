from richmerge.matching import (
    CoalescedText,
    ensure_lookup,
    find_next_match,
    iter_matches,
    normalize_for_matching,
    normalize_key,
    prepare_rich_lookup,
)


class TestNormalize:
    def test_whitespace_runs_collapse(self):
        assert normalize_for_matching("a\r\n  b\t\tc").text == "a b c"

    def test_whitespace_between_tags_removed(self):
        assert normalize_for_matching("<p>a</p>\n    <p>b</p>").text == "<p>a</p><p>b</p>"

    def test_entities_decoded(self):
        assert normalize_for_matching("&lt;b&gt;x&amp;y&lt;/b&gt;").text == "<b>x&y</b>"

    def test_nbsp_is_not_whitespace(self):
        assert normalize_for_matching("a\u00a0 b").text == "a\u00a0 b"

    def test_offsets_point_into_raw_text(self):
        norm = normalize_for_matching("x   <b>y</b>")
        assert norm.text == "x <b>y</b>"
        assert norm.raw_offset(2) == 4
        assert norm.raw_end(2) == 4
        assert norm.raw_offset(len(norm.text)) == len("x   <b>y</b>")

    def test_key_is_stripped(self):
        assert normalize_key("  <p>x</p>\n") == "<p>x</p>"


class TestFindMatch:
    def test_earliest_wins(self):
        lookup = {"<i>z</i>": "i", "<b>a</b>": "b"}
        match = find_next_match("<b>a</b> <i>z</i>", lookup)
        assert match.position == 0
        assert match.fragment == "b"

    def test_longest_wins_at_same_position(self):
        lookup = {"<b>a</b>": "short", "<b>a</b> tail": "long"}
        match = find_next_match("X <b>a</b> tail", lookup)
        assert match.position == 2
        assert match.fragment == "long"
        assert match.end == len("X <b>a</b> tail")

    def test_no_match(self):
        assert find_next_match("plain", {"<b>a</b>": "b"}) is None

    def test_iter_matches_is_monotonic(self):
        lookup = {"<b>a</b>": "b"}
        matches = list(iter_matches("<b>a</b>-<b>a</b>", lookup))
        assert [m.position for m in matches] == [0, 9]


class TestCoalescedText:
    def test_spans_track_sources(self):
        coalesced = CoalescedText()
        coalesced.add("r0", "ab")
        coalesced.add("r1", "cd")
        assert coalesced.text == "abcd"
        assert [s.source for s in coalesced.overlapping(1, 3)] == ["r0", "r1"]
        assert [s.source for s in coalesced.overlapping(2, 4)] == ["r1"]


class TestLookup:
    def test_only_html_values_kept(self):
        lookup = prepare_rich_lookup({
            "body": "<p>x</p>",
            "name": "plain",
            "count": 5,
            "rows": [{"cell": "<b>y</b>"}, {"cell": "no"}],
        })
        assert lookup == {"<p>x</p>": "<p>x</p>", "<b>y</b>": "<b>y</b>"}

    def test_key_normalized_value_kept(self):
        fragment = "<p>a</p>\n<p>b</p>"
        lookup = prepare_rich_lookup([fragment])
        assert lookup == {"<p>a</p><p>b</p>": fragment}

    def test_first_value_wins(self):
        lookup = prepare_rich_lookup(["<p>a</p> ", "<p>a</p>"])
        assert list(lookup.values()) == ["<p>a</p>"]

    def test_empty(self):
        assert prepare_rich_lookup(None) == {}
        assert prepare_rich_lookup({}) == {}

    def test_ensure_lookup_accepts_prepared_or_raw(self):
        prepared = prepare_rich_lookup(["<b>x</b>"])
        assert ensure_lookup(prepared) == prepared
        assert ensure_lookup({"field": "<b>x</b>"}) == prepared
