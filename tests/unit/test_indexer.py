"""Tests for the indexer module."""

import random
from unittest.mock import patch

import pytest

from convo_search.errors import IndexPersistenceFailure, MalformedArchive
from convo_search.indexer import (
    build_index,
    fingerprint_records,
    load_or_build,
    prepare_index,
)
from convo_search.models import ConversationRecord, Posting
from convo_search.storage import index_exists


def test_build_index_postings(scenario_records):
    """Test every title and body n-gram gets a posting."""
    index = build_index(scenario_records, ngram_size=2)

    assert index.record_count == 2
    assert index.title_postings["ru"] == {"1": (0,)}
    assert index.body_postings["ro"] == {"1": (3,), "2": (2,)}
    assert index.postings("ro", "body") == [Posting("1", 3), Posting("2", 2)]
    assert index.document_frequency("ro") == 2
    assert index.records["2"].title == "Go channels"


def test_offsets_are_sorted():
    record = ConversationRecord(id="a", title="", created_at=None, body="abab ab")
    index = build_index([record])

    assert index.body_postings["ab"]["a"] == (0, 2, 5)


def test_build_is_order_independent(scenario_records):
    """Building from any input order yields the same index."""
    shuffled = list(reversed(scenario_records))
    first = build_index(scenario_records)
    second = build_index(shuffled)

    assert first.fingerprint == second.fingerprint
    assert first.title_postings == second.title_postings
    assert first.body_postings == second.body_postings
    assert list(first.records) == list(second.records)


def test_fingerprint_changes_with_content(scenario_records):
    base = fingerprint_records(scenario_records, 2)
    edited = [scenario_records[0], ConversationRecord("2", "Go channels", None, "changed")]

    assert fingerprint_records(list(reversed(scenario_records)), 2) == base
    assert fingerprint_records(edited, 2) != base
    assert fingerprint_records(scenario_records, 3) != base


def test_duplicate_ids_rejected(scenario_records):
    with pytest.raises(ValueError):
        build_index(scenario_records + [scenario_records[0]])


def test_load_or_build_persists_then_reuses(temp_dir, scenario_records):
    index_path = temp_dir / "index.db"

    built = load_or_build(scenario_records, index_path)
    assert index_exists(index_path)
    assert built.persisted is True

    with patch("convo_search.indexer.build_index") as rebuild:
        loaded = load_or_build(random.sample(scenario_records, 2), index_path)
        rebuild.assert_not_called()

    assert loaded.fingerprint == built.fingerprint
    assert loaded.body_postings == built.body_postings


def test_load_or_build_rebuilds_when_stale(temp_dir, scenario_records):
    index_path = temp_dir / "index.db"
    load_or_build(scenario_records, index_path)

    rebuilt = load_or_build(scenario_records[:1], index_path)

    assert set(rebuilt.records) == {"1"}


def test_persistence_failure_keeps_memory_index(temp_dir, scenario_records, caplog):
    """A failed write is a warning, not an error."""
    with patch(
        "convo_search.indexer.save_index", side_effect=IndexPersistenceFailure("disk full")
    ):
        index = load_or_build(scenario_records, temp_dir / "index.db")

    assert index.record_count == 2
    assert index.persisted is False
    assert "restart will rebuild" in caplog.text


def test_prepare_index_from_archive(archive_file):
    from convo_search.config import get_settings

    index = prepare_index(get_settings())

    assert set(index.records) == {"1", "2", "3"}
    assert index_exists(get_settings().index_path)


def test_prepare_index_without_archive_fails():
    from convo_search.config import get_settings

    with pytest.raises(MalformedArchive):
        prepare_index(get_settings())
