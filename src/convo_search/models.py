"""Data models for convo-search."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NamedTuple


@dataclass(frozen=True)
class Message:
    """A single message within a conversation."""

    role: str  # "user" | "assistant" | "thinking" | ...
    content: str
    timestamp: datetime | None = None


@dataclass(frozen=True)
class ConversationRecord:
    """A normalized conversation, ready for indexing."""

    id: str
    title: str
    created_at: datetime | None
    body: str = ""
    updated_at: datetime | None = None
    message_count: int = 0


@dataclass
class LoadReport:
    """Outcome of loading an archive: the usable records plus what was skipped."""

    records: list[ConversationRecord] = field(default_factory=list)
    skipped: int = 0
    warnings: list[str] = field(default_factory=list)


class Posting(NamedTuple):
    """One occurrence of an n-gram."""

    record_id: str
    offset: int


# ngram -> record id -> ascending offsets
PostingMap = dict[str, dict[str, tuple[int, ...]]]

TITLE_FIELD = "title"
BODY_FIELD = "body"


@dataclass
class Index:
    """One immutable index generation.

    Built once, then only read. A rebuild produces a new Index rather than
    patching this one.
    """

    ngram_size: int
    fingerprint: str
    records: dict[str, ConversationRecord]
    title_postings: PostingMap
    body_postings: PostingMap
    built_at: datetime | None = None
    # whether this generation is also on disk
    persisted: bool = field(default=False, compare=False)

    def field_postings(self, field_name: str) -> PostingMap:
        if field_name == TITLE_FIELD:
            return self.title_postings
        if field_name == BODY_FIELD:
            return self.body_postings
        raise ValueError(f"Unknown field: {field_name}")

    def postings(self, ngram: str, field_name: str = BODY_FIELD) -> list[Posting]:
        """Get the posting list for an n-gram, ordered by (record id, offset)."""
        per_record = self.field_postings(field_name).get(ngram, {})
        return [
            Posting(record_id, offset)
            for record_id in sorted(per_record)
            for offset in per_record[record_id]
        ]

    def document_frequency(self, ngram: str) -> int:
        """Number of records containing the n-gram in title or body."""
        ids = set(self.title_postings.get(ngram, ())) | set(self.body_postings.get(ngram, ()))
        return len(ids)

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def ngram_count(self) -> int:
        return len(set(self.title_postings) | set(self.body_postings))


@dataclass(frozen=True)
class Snippet:
    """A bounded excerpt of a record body around the best match."""

    text: str
    highlight_start: int = 0
    highlight_end: int = 0
    leading_ellipsis: bool = False
    trailing_ellipsis: bool = False

    def render(self, marker: str = "...") -> str:
        prefix = marker if self.leading_ellipsis else ""
        suffix = marker if self.trailing_ellipsis else ""
        return f"{prefix}{self.text}{suffix}"

    def highlight_span(self, marker: str = "...") -> tuple[int, int]:
        """Highlight boundaries within the rendered string."""
        shift = len(marker) if self.leading_ellipsis else 0
        return self.highlight_start + shift, self.highlight_end + shift


@dataclass(frozen=True)
class SearchResult:
    """A ranked search hit."""

    conversation_id: str
    title: str
    score: float
    snippet: Snippet
    date: datetime | None = None


class QueryStatus(str, Enum):
    OK = "ok"
    EMPTY_QUERY = "empty_query"
    TOO_SHORT = "too_short"


@dataclass(frozen=True)
class QueryOutcome:
    """Everything a query produced: status, untruncated total and the ranked page."""

    query: str
    status: QueryStatus
    total: int = 0
    results: tuple[SearchResult, ...] = ()
