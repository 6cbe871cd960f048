"""SQLite persistence for index generations."""

import contextlib
import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from convo_search.errors import IndexMissingOrStale, IndexPersistenceFailure
from convo_search.models import BODY_FIELD, TITLE_FIELD, ConversationRecord, Index, PostingMap

# Bump when the on-disk layout changes; older files are treated as stale
FORMAT_VERSION = "1"


def get_connection(path: Path) -> sqlite3.Connection:
    """Get a connection to an index database."""
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Initialize the database schema."""
    conn.executescript("""
        -- Record metadata and stored bodies
        CREATE TABLE IF NOT EXISTS records (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            created_at TEXT,
            updated_at TEXT,
            message_count INTEGER NOT NULL DEFAULT 0,
            body TEXT NOT NULL
        );

        -- One row per (ngram, field, record)
        CREATE TABLE IF NOT EXISTS postings (
            ngram TEXT NOT NULL,
            field TEXT NOT NULL,
            record_id TEXT NOT NULL,
            offsets TEXT NOT NULL,  -- JSON array, ascending
            PRIMARY KEY (ngram, field, record_id)
        );

        -- Metadata table for tracking index state
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
    """)
    conn.commit()


def temp_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".tmp")


def index_exists(path: Path) -> bool:
    """Check if a persisted index exists."""
    return Path(path).exists()


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a metadata value."""
    conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        (key, value),
    )


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a metadata value."""
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row["value"] if row else None


def save_record(conn: sqlite3.Connection, record: ConversationRecord) -> None:
    conn.execute(
        """
        INSERT INTO records (id, title, created_at, updated_at, message_count, body)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            record.id,
            record.title,
            _isoformat(record.created_at),
            _isoformat(record.updated_at),
            record.message_count,
            record.body,
        ),
    )


def save_postings(conn: sqlite3.Connection, field_name: str, postings: PostingMap) -> None:
    conn.executemany(
        "INSERT INTO postings (ngram, field, record_id, offsets) VALUES (?, ?, ?, ?)",
        (
            (ngram, field_name, record_id, json.dumps(list(offsets)))
            for ngram, per_record in postings.items()
            for record_id, offsets in per_record.items()
        ),
    )


def save_index(index: Index, path: Path) -> None:
    """Persist a complete index generation.

    The generation is written to a temporary file next to `path` and then
    moved over it, so the live file always holds a whole generation.

    Raises IndexPersistenceFailure if anything goes wrong.
    """
    path = Path(path)
    tmp_path = temp_path_for(path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.unlink(missing_ok=True)

        conn = get_connection(tmp_path)
        try:
            init_schema(conn)
            for record in index.records.values():
                save_record(conn, record)
            save_postings(conn, TITLE_FIELD, index.title_postings)
            save_postings(conn, BODY_FIELD, index.body_postings)

            built_at = index.built_at or datetime.now(tz=timezone.utc)
            set_metadata(conn, "format_version", FORMAT_VERSION)
            set_metadata(conn, "fingerprint", index.fingerprint)
            set_metadata(conn, "ngram_size", str(index.ngram_size))
            set_metadata(conn, "last_indexed", built_at.isoformat())
            set_metadata(conn, "record_count", str(index.record_count))
            conn.commit()
        finally:
            conn.close()

        os.replace(tmp_path, path)
    except (sqlite3.Error, OSError) as e:
        with contextlib.suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise IndexPersistenceFailure(f"Could not write index to {path}: {e}") from e


def read_postings(conn: sqlite3.Connection, field_name: str) -> PostingMap:
    postings: PostingMap = {}
    rows = conn.execute(
        "SELECT ngram, record_id, offsets FROM postings WHERE field = ? ORDER BY ngram, record_id",
        (field_name,),
    )
    for row in rows:
        postings.setdefault(row["ngram"], {})[row["record_id"]] = tuple(
            json.loads(row["offsets"])
        )
    return postings


def read_records(conn: sqlite3.Connection) -> dict[str, ConversationRecord]:
    rows = conn.execute("SELECT * FROM records ORDER BY id").fetchall()
    return {
        row["id"]: ConversationRecord(
            id=row["id"],
            title=row["title"],
            created_at=_parse_iso(row["created_at"]),
            body=row["body"],
            updated_at=_parse_iso(row["updated_at"]),
            message_count=row["message_count"],
        )
        for row in rows
    }


def load_index(path: Path, expected_fingerprint: str | None = None) -> Index:
    """Load a persisted index generation.

    Raises IndexMissingOrStale if there is no usable index at `path` or its
    fingerprint doesn't match `expected_fingerprint`.
    """
    path = Path(path)
    if not path.exists():
        raise IndexMissingOrStale(f"No index at {path}")

    try:
        conn = sqlite3.connect(f"{path.resolve().as_uri()}?mode=ro", uri=True)
        conn.row_factory = sqlite3.Row
        try:
            version = get_metadata(conn, "format_version")
            if version != FORMAT_VERSION:
                raise IndexMissingOrStale(
                    f"Index format {version!r} does not match {FORMAT_VERSION!r}"
                )

            fingerprint = get_metadata(conn, "fingerprint") or ""
            if expected_fingerprint is not None and fingerprint != expected_fingerprint:
                raise IndexMissingOrStale("Index fingerprint does not match the archive")

            return Index(
                ngram_size=int(get_metadata(conn, "ngram_size") or 0),
                fingerprint=fingerprint,
                records=read_records(conn),
                title_postings=read_postings(conn, TITLE_FIELD),
                body_postings=read_postings(conn, BODY_FIELD),
                built_at=_parse_iso(get_metadata(conn, "last_indexed")),
                persisted=True,
            )
        finally:
            conn.close()
    except (sqlite3.Error, ValueError) as e:
        raise IndexMissingOrStale(f"Unreadable index at {path}: {e}") from e


def delete_index(path: Path) -> bool:
    """Delete the persisted index so the next start rebuilds it.

    Safe to call repeatedly. Returns True if an index file was removed.
    """
    path = Path(path)
    temp_path_for(path).unlink(missing_ok=True)
    if not path.exists():
        return False
    path.unlink()
    return True


def get_index_stats(path: Path) -> dict[str, Any]:
    """Get index statistics.

    Raises IndexMissingOrStale if the file at `path` is not a readable index.
    """
    path = Path(path)
    if not index_exists(path):
        return {
            "record_count": 0,
            "ngram_count": 0,
            "posting_count": 0,
            "index_path": str(path),
            "index_size_human": _format_size(0),
            "last_indexed": None,
            "fingerprint": None,
        }

    try:
        conn = get_connection(path)
        try:
            record_count = conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
            ngram_count = conn.execute(
                "SELECT COUNT(DISTINCT ngram) FROM postings"
            ).fetchone()[0]
            posting_count = conn.execute("SELECT COUNT(*) FROM postings").fetchone()[0]
            last_indexed = get_metadata(conn, "last_indexed")
            fingerprint = get_metadata(conn, "fingerprint")
        finally:
            conn.close()
    except sqlite3.Error as e:
        raise IndexMissingOrStale(f"Unreadable index at {path}: {e}") from e

    return {
        "record_count": record_count,
        "ngram_count": ngram_count,
        "posting_count": posting_count,
        "index_path": str(path),
        "index_size_human": _format_size(path.stat().st_size),
        "last_indexed": last_indexed,
        "fingerprint": fingerprint,
    }


def _format_size(size_bytes: int) -> str:
    """Format byte size as human-readable string."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
