"""Inverted n-gram index builder."""

import hashlib
import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from pathlib import Path

from convo_search.config import Settings
from convo_search.errors import IndexMissingOrStale, IndexPersistenceFailure
from convo_search.loader import load_archive_file
from convo_search.models import ConversationRecord, Index, PostingMap
from convo_search.storage import FORMAT_VERSION, load_index, save_index
from convo_search.tokenizer import DEFAULT_NGRAM_SIZE, tokenize

logger = logging.getLogger(__name__)


def fingerprint_records(records: Iterable[ConversationRecord], ngram_size: int) -> str:
    """Content fingerprint of a record set, independent of input order."""
    digest = hashlib.sha256()
    digest.update(f"v{FORMAT_VERSION}:n{ngram_size}\n".encode())
    for record in sorted(records, key=lambda r: r.id):
        row = [
            record.id,
            record.title,
            record.created_at.isoformat() if record.created_at else None,
            record.updated_at.isoformat() if record.updated_at else None,
            record.message_count,
            record.body,
        ]
        digest.update(json.dumps(row, ensure_ascii=False).encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


def add_postings(postings: PostingMap, record_id: str, text: str, ngram_size: int) -> None:
    """Append every n-gram occurrence in `text` to the posting map."""
    per_ngram: dict[str, list[int]] = {}
    for ngram, offset in tokenize(text, ngram_size):
        per_ngram.setdefault(ngram, []).append(offset)
    # tokenize walks left to right, so offsets are already ascending
    for ngram, offsets in per_ngram.items():
        postings.setdefault(ngram, {})[record_id] = tuple(offsets)


def build_index(
    records: Iterable[ConversationRecord],
    ngram_size: int = DEFAULT_NGRAM_SIZE,
    on_record: Callable[[ConversationRecord], None] | None = None,
) -> Index:
    """Build an index generation from a full record set.

    Records are indexed in id order, so the same set always yields the same
    postings whatever order it arrives in.

    Args:
        records: All conversation records. Ids must be unique.
        ngram_size: Characters per n-gram.
        on_record: Optional progress callback, called after each record.
    """
    ordered = sorted(records, key=lambda r: r.id)

    by_id: dict[str, ConversationRecord] = {}
    title_postings: PostingMap = {}
    body_postings: PostingMap = {}

    for record in ordered:
        if record.id in by_id:
            raise ValueError(f"Duplicate record id: {record.id}")
        by_id[record.id] = record
        add_postings(title_postings, record.id, record.title, ngram_size)
        add_postings(body_postings, record.id, record.body, ngram_size)
        if on_record is not None:
            on_record(record)

    index = Index(
        ngram_size=ngram_size,
        fingerprint=fingerprint_records(ordered, ngram_size),
        records=by_id,
        title_postings=title_postings,
        body_postings=body_postings,
        built_at=datetime.now(tz=timezone.utc),
    )
    logger.info(
        "Built index: %d records, %d distinct n-grams", index.record_count, index.ngram_count
    )
    return index


def persist_index(index: Index, index_path: Path) -> bool:
    """Save an index, downgrading a write failure to a warning.

    Returns True if the index was written.
    """
    try:
        save_index(index, index_path)
    except IndexPersistenceFailure as e:
        logger.warning("%s. Serving from memory; a restart will rebuild the index.", e)
        return False
    logger.info("Saved index to %s", index_path)
    return True


def load_or_build(
    records: list[ConversationRecord],
    index_path: Path,
    ngram_size: int = DEFAULT_NGRAM_SIZE,
    force: bool = False,
    on_record: Callable[[ConversationRecord], None] | None = None,
) -> Index:
    """Load the persisted index if it matches `records`, else rebuild it.

    A rebuilt index whose write failed comes back with `persisted` False.
    """
    if not force:
        fingerprint = fingerprint_records(records, ngram_size)
        try:
            index = load_index(index_path, expected_fingerprint=fingerprint)
        except IndexMissingOrStale as e:
            logger.info("Rebuilding index: %s", e)
        else:
            logger.info("Using persisted index at %s", index_path)
            return index

    index = build_index(records, ngram_size, on_record=on_record)
    index.persisted = persist_index(index, index_path)
    return index


def prepare_index(
    settings: Settings,
    force: bool = False,
    on_record: Callable[[ConversationRecord], None] | None = None,
) -> Index:
    """Load the archive and return a ready index generation.

    MalformedArchive propagates: with no archive there is nothing to serve.
    """
    report = load_archive_file(settings.archive_path)
    if report.skipped:
        logger.warning(
            "Skipped %d malformed conversations in %s", report.skipped, settings.archive_path
        )
    return load_or_build(
        report.records,
        settings.index_path,
        ngram_size=settings.ngram_size,
        force=force,
        on_record=on_record,
    )
