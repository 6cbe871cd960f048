"""Tests for the searcher module."""

import random
from datetime import datetime, timezone

import pytest

from convo_search.indexer import build_index
from convo_search.models import ConversationRecord, QueryStatus
from convo_search.searcher import (
    MAX_LIMIT,
    NO_MATCH,
    SearchEngine,
    extract_snippet,
    longest_run,
    result_to_dict,
    status_message,
)


def record(record_id, title, body="", day=1):
    return ConversationRecord(
        id=record_id,
        title=title,
        created_at=datetime(2024, 1, day, tzinfo=timezone.utc),
        body=body,
    )


@pytest.fixture
def engine(scenario_records):
    return SearchEngine(build_index(scenario_records))


def ids(outcome):
    return [r.conversation_id for r in outcome.results]


def test_title_match_returns_only_matching_record(engine):
    """Query "rust" hits record 1's title and nothing in record 2."""
    outcome = engine.query("rust")

    assert outcome.status is QueryStatus.OK
    assert ids(outcome) == ["1"]
    assert outcome.total == 1
    # full title coverage (2.0) plus the "ru" of "rules" in the body
    assert outcome.results[0].score == pytest.approx(2.333333)


def test_body_only_matches_tie_break_on_recency(engine):
    """Query "ro" hits both bodies ("borrow", "goroutines") and neither title."""
    outcome = engine.query("ro")

    assert ids(outcome) == ["2", "1"]
    assert outcome.results[0].score == outcome.results[1].score == 1.0


def test_tie_break_prefers_newer_then_lower_id():
    newer_first = SearchEngine(
        build_index([record("1", "x", "borrow", day=9), record("2", "y", "goroutines", day=1)])
    )
    same_day = SearchEngine(
        build_index([record("b", "x", "borrow"), record("a", "y", "goroutines")])
    )

    assert ids(newer_first.query("ro")) == ["1", "2"]
    assert ids(same_day.query("ro")) == ["a", "b"]


def test_missing_dates_rank_last():
    undated = ConversationRecord(id="0", title="x", created_at=None, body="borrow")
    engine = SearchEngine(build_index([undated, record("9", "y", "borrow")]))

    assert ids(engine.query("ro")) == ["9", "0"]


def test_title_match_counts_as_title(engine):
    """"an" is in the title "Go channels" and nowhere in record 1."""
    outcome = engine.query("an")

    assert ids(outcome) == ["2"]
    # title coverage 1.0 * 2 + body coverage 1.0 ("and")
    assert outcome.results[0].score == 3.0


def test_title_outranks_body():
    engine = SearchEngine(
        build_index(
            [
                record("a", "python tips", "", day=1),
                record("b", "misc", "python tips", day=20),
            ]
        )
    )
    outcome = engine.query("python")

    assert ids(outcome) == ["a", "b"]
    assert outcome.results[0].score > outcome.results[1].score


def test_contiguous_match_outranks_scattered():
    engine = SearchEngine(
        build_index(
            [
                record("scattered", "one", "ab xx cd bc", day=20),
                record("contiguous", "two", "abcd", day=1),
            ]
        )
    )
    outcome = engine.query("abcd")

    assert ids(outcome) == ["contiguous", "scattered"]
    assert outcome.results[0].score == 1.0
    assert outcome.results[1].score == pytest.approx(0.666667)


def test_query_too_short_is_not_an_error(engine):
    outcome = engine.query("r")

    assert outcome.status is QueryStatus.TOO_SHORT
    assert outcome.results == ()
    assert outcome.total == 0
    assert status_message(outcome, engine.ngram_size) == "Query must be at least 2 characters"


def test_too_short_respects_ngram_size(scenario_records):
    engine = SearchEngine(build_index(scenario_records, ngram_size=3))

    assert engine.query("ru").status is QueryStatus.TOO_SHORT
    assert ids(engine.query("rus")) == ["1"]


def test_empty_query(engine):
    outcome = engine.query("   ")

    assert outcome.status is QueryStatus.EMPTY_QUERY
    assert outcome.results == ()


def test_no_matching_ngrams(engine):
    outcome = engine.query("zzzz")

    assert outcome.status is QueryStatus.OK
    assert outcome.results == ()
    assert status_message(outcome, engine.ngram_size) == "No results found"


def test_case_insensitive(engine):
    assert ids(engine.query("RUST")) == ids(engine.query("rust"))


def test_every_title_substring_finds_its_record():
    titles = ["Rust ownership", "Go channels", "О гравитации", "Ĳssel & Straße", "数据库 索引"]
    records = [record(str(i), title, day=i + 1) for i, title in enumerate(titles)]
    engine = SearchEngine(build_index(records))

    for rec in records:
        for start in range(len(rec.title)):
            for end in range(start + 2, len(rec.title) + 1):
                substring = rec.title[start:end]
                if not substring.strip() or len(substring.strip()) < 2:
                    continue
                found = ids(engine.query(substring, limit=MAX_LIMIT))
                assert rec.id in found, f"{substring!r} did not find {rec.title!r}"


def test_limit_truncates_but_total_does_not():
    records = [record(f"r{i:02d}", f"note {i}", "shared text", day=i + 1) for i in range(12)]
    engine = SearchEngine(build_index(records))

    outcome = engine.query("shared", limit=3)

    assert len(outcome.results) == 3
    assert outcome.total == 12
    # newest first among equal scores
    assert ids(outcome) == ["r11", "r10", "r09"]


def test_limit_is_clamped(engine):
    assert engine.query("ro", limit=0).results == ()
    assert engine.query("ro", limit=0).total == 2
    assert len(engine.query("ro", limit=10_000).results) == 2


def test_limit_follows_configured_max():
    records = [record(f"r{i:03d}", f"note {i}", "shared text") for i in range(600)]
    index = build_index(records)

    assert len(SearchEngine(index).query("shared", limit=600).results) == MAX_LIMIT

    wide = SearchEngine(index, max_limit=1000)
    outcome = wide.query("shared", limit=600)
    assert outcome.total == 600
    assert len(outcome.results) == 600


def test_identical_results_across_build_orders():
    records = [
        record(f"id{i}", f"topic {i % 3}", f"body text number {i}", day=i % 5 + 1)
        for i in range(20)
    ]
    shuffled = random.Random(7).sample(records, len(records))
    first = SearchEngine(build_index(records))
    second = SearchEngine(build_index(shuffled))

    for query in ("topic", "text", "number 1", "pic 2", "xy"):
        assert first.query(query) == second.query(query)


def test_snippet_window_and_ellipses():
    """Test an interior match is clipped on both sides."""
    body = "А" * 300 + "гравитация" + "Б" * 300
    index = build_index([record("1", "Длинный текст", body)])
    engine = SearchEngine(index, snippet_window=80)

    snippet = engine.query("грав").results[0].snippet

    assert snippet.leading_ellipsis and snippet.trailing_ellipsis
    assert len(snippet.text) <= len("грав") + 2 * 80
    assert snippet.text[snippet.highlight_start : snippet.highlight_end] == "грав"
    assert snippet.render().startswith("...") and snippet.render().endswith("...")


def test_snippet_at_body_start_has_no_leading_ellipsis(engine):
    snippet = engine.query("borrow").results[0].snippet

    assert not snippet.leading_ellipsis
    assert not snippet.trailing_ellipsis
    assert snippet.text == "borrow checker rules"
    assert snippet.text[snippet.highlight_start : snippet.highlight_end] == "borrow"


def test_snippet_for_title_only_match():
    index = build_index([record("1", "Rust ownership", "x" * 500)])
    engine = SearchEngine(index, snippet_window=10)

    snippet = engine.query("rust").results[0].snippet

    assert snippet.text == "x" * 20
    assert snippet.highlight_start == snippet.highlight_end == 0
    assert snippet.trailing_ellipsis and not snippet.leading_ellipsis


def test_snippet_span_falls_back_to_literal_query(engine):
    rec = engine.index.records["1"]

    assert engine.snippet_span(rec, NO_MATCH, "Checker") == (7, 14)
    assert engine.snippet_span(rec, NO_MATCH, "absent") is None


def test_extract_snippet_bounds():
    snippet = extract_snippet("0123456789", (4, 6), window=2)

    assert snippet.text == "234567"
    assert (snippet.highlight_start, snippet.highlight_end) == (2, 4)
    assert snippet.render() == "...234567..."
    assert snippet.highlight_span() == (5, 7)


def test_longest_run():
    offsets = {"ab": (0, 10), "bc": (1, 20), "cd": (2, 11)}

    assert longest_run(["ab", "bc", "cd"], offsets) == (3, 0)
    assert longest_run(["ab", "zz", "cd"], offsets) == (1, 0)
    assert longest_run(["zz"], offsets) == (0, -1)


def test_informativeness_filter():
    """A very common n-gram stops flooding results once filtered."""
    records = [
        record("cat", "Note 1", "the cat"),
        record("dog", "Note 2", "the dog"),
        record("bird", "Note 3", "the bird"),
    ]
    index = build_index(records)
    unfiltered = SearchEngine(index)
    filtered = SearchEngine(index, max_document_ratio=0.5)

    assert unfiltered.query("e c").total == 3
    assert ids(filtered.query("e c")) == ["cat"]


def test_informativeness_filter_keeps_all_when_everything_is_common():
    records = [record(str(i), "Note", f"the {i}") for i in range(3)]
    filtered = SearchEngine(build_index(records), max_document_ratio=0.5)

    assert filtered.query("he").total == 3


def test_result_to_dict(engine):
    data = result_to_dict(engine.query("borrow").results[0])

    assert data["conversation_id"] == "1"
    assert data["title"] == "Rust ownership"
    assert data["snippet"] == "borrow checker rules"
    assert data["highlight"] == [0, 6]
    assert data["date"] == "2024-01-01T00:00:00+00:00"
