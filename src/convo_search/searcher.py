"""N-gram query engine: matching, ranking and snippet extraction."""

import math
import time
from dataclasses import dataclass
from datetime import timezone
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from convo_search.models import (
    ConversationRecord,
    Index,
    QueryOutcome,
    QueryStatus,
    SearchResult,
    Snippet,
)
from convo_search.tokenizer import fold, query_ngrams, tokenize

console = Console()

# Weights for combining per-field coverage; a title hit must outrank the same body hit
TITLE_WEIGHT = 2.0
BODY_WEIGHT = 1.0

DEFAULT_LIMIT = 50
MAX_LIMIT = 500
SNIPPET_WINDOW = 80
ELLIPSIS = "..."


@dataclass(frozen=True)
class FieldMatch:
    """How a query matched one field of one record."""

    matched: int  # distinct query n-grams present
    run_length: int  # longest run of consecutive query n-grams, in n-grams
    run_start: int  # offset where that run starts (earliest on ties)


NO_MATCH = FieldMatch(0, 0, -1)


def longest_run(
    sequence: list[str], offsets_for: dict[str, tuple[int, ...]]
) -> tuple[int, int]:
    """Find the longest run of consecutive query n-grams at consecutive offsets.

    Query n-gram i sits at query offset i, so a contiguous match places it at
    document offset start + i. Returns (length, start); (0, -1) if none.
    """
    best_length, best_start = 0, -1
    # offset of the previous n-gram in a live run -> where that run started
    live: dict[int, int] = {}

    for ngram in sequence:
        extended: dict[int, int] = {}
        for offset in offsets_for.get(ngram, ()):
            start = live.get(offset - 1, offset)
            extended[offset] = start
            length = offset - start + 1
            if length > best_length or (length == best_length and start < best_start):
                best_length, best_start = length, start
        # an n-gram with no occurrences ends every live run
        live = extended

    return best_length, best_start


def match_field(
    record_id: str,
    sequence: list[str],
    active: list[str],
    postings: dict[str, dict[str, tuple[int, ...]]],
) -> FieldMatch:
    offsets_for = {
        ngram: postings[ngram][record_id]
        for ngram in set(sequence)
        if ngram in postings and record_id in postings[ngram]
    }
    matched = sum(1 for ngram in active if ngram in offsets_for)
    if not matched:
        return NO_MATCH
    run_length, run_start = longest_run(sequence, offsets_for)
    return FieldMatch(matched, run_length, run_start)


def coverage(match: FieldMatch, distinct: int, sequence_length: int) -> float:
    """Fraction of the query a field covers, in [0, 1]."""
    if not match.matched:
        return 0.0
    return (match.matched / distinct + match.run_length / sequence_length) / 2


def recency_key(record: ConversationRecord) -> float:
    # missing dates sort after every real date
    if record.created_at is None:
        return math.inf
    created = record.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return -created.timestamp()


def extract_snippet(
    body: str,
    span: tuple[int, int] | None,
    window: int = SNIPPET_WINDOW,
) -> Snippet:
    """Cut a window of `window` characters either side of `span` out of `body`.

    With no span the snippet starts at the beginning of the body and has no
    highlight.
    """
    if span is None:
        end = min(len(body), 2 * window)
        return Snippet(
            text=body[:end].replace("\n", " "),
            trailing_ellipsis=end < len(body),
        )

    match_start, match_end = span
    start = max(0, match_start - window)
    end = min(len(body), match_end + window)
    return Snippet(
        text=body[start:end].replace("\n", " "),
        highlight_start=match_start - start,
        highlight_end=match_end - start,
        leading_ellipsis=start > 0,
        trailing_ellipsis=end < len(body),
    )


class SearchEngine:
    """Answers queries against one immutable index generation.

    Holds no mutable state besides its reference to the index, so a single
    engine can serve any number of threads at once.
    """

    def __init__(
        self,
        index: Index,
        snippet_window: int = SNIPPET_WINDOW,
        max_document_ratio: float | None = None,
        max_limit: int = MAX_LIMIT,
    ) -> None:
        self._index = index
        self.snippet_window = snippet_window
        self.max_document_ratio = max_document_ratio
        self.max_limit = max_limit

    @property
    def index(self) -> Index:
        return self._index

    @property
    def ngram_size(self) -> int:
        return self._index.ngram_size

    def informative_ngrams(self, ngrams: list[str]) -> list[str]:
        """Drop n-grams found in too many records.

        If every n-gram is too common, all of them are kept so that the query
        can still match.
        """
        if self.max_document_ratio is None or not self._index.record_count:
            return ngrams
        limit = self.max_document_ratio * self._index.record_count
        kept = [g for g in ngrams if self._index.document_frequency(g) <= limit]
        return kept or ngrams

    def candidates(self, ngrams: list[str]) -> set[str]:
        """Ids of records containing any of the n-grams in title or body."""
        ids: set[str] = set()
        for ngram in ngrams:
            ids.update(self._index.title_postings.get(ngram, ()))
            ids.update(self._index.body_postings.get(ngram, ()))
        return ids

    def snippet_span(
        self, record: ConversationRecord, body_match: FieldMatch, query: str
    ) -> tuple[int, int] | None:
        if body_match.run_length:
            end = body_match.run_start + body_match.run_length + self.ngram_size - 1
            return body_match.run_start, end
        # n-grams didn't line up; fall back to the literal query
        position = fold(record.body).find(fold(query))
        if position >= 0:
            return position, position + len(query)
        return None

    def query(self, text: str, limit: int = DEFAULT_LIMIT) -> QueryOutcome:
        """Run a query and return ranked results.

        Deterministic for a fixed index and input.
        """
        query = text.strip()
        if not query:
            return QueryOutcome(query=query, status=QueryStatus.EMPTY_QUERY)
        if len(query) < self.ngram_size:
            return QueryOutcome(query=query, status=QueryStatus.TOO_SHORT)

        limit = max(0, min(limit, self.max_limit))
        sequence = [ngram for ngram, _ in tokenize(query, self.ngram_size)]
        active = self.informative_ngrams(query_ngrams(query, self.ngram_size))

        scored: list[tuple[float, ConversationRecord, FieldMatch]] = []
        for record_id in self.candidates(active):
            title_match = match_field(record_id, sequence, active, self._index.title_postings)
            body_match = match_field(record_id, sequence, active, self._index.body_postings)
            if not (title_match.matched or body_match.matched):
                continue
            score = TITLE_WEIGHT * coverage(title_match, len(active), len(sequence))
            score += BODY_WEIGHT * coverage(body_match, len(active), len(sequence))
            record = self._index.records[record_id]
            scored.append((round(score, 6), record, body_match))

        scored.sort(key=lambda item: (-item[0], recency_key(item[1]), item[1].id))

        results = tuple(
            SearchResult(
                conversation_id=record.id,
                title=record.title,
                score=score,
                snippet=extract_snippet(
                    record.body,
                    self.snippet_span(record, body_match, query),
                    self.snippet_window,
                ),
                date=record.created_at,
            )
            for score, record, body_match in scored[:limit]
        )
        return QueryOutcome(
            query=query,
            status=QueryStatus.OK,
            total=len(scored),
            results=results,
        )


STATUS_MESSAGES = {
    QueryStatus.OK: None,
    QueryStatus.EMPTY_QUERY: "Enter a search query",
    QueryStatus.TOO_SHORT: "Query must be at least {n} characters",
}


def status_message(outcome: QueryOutcome, ngram_size: int) -> str | None:
    """Human-readable explanation for a non-OK outcome, or for zero hits."""
    if outcome.status is QueryStatus.OK:
        return None if outcome.total else "No results found"
    return STATUS_MESSAGES[outcome.status].format(n=ngram_size)


def result_to_dict(result: SearchResult) -> dict[str, Any]:
    """Serialize a result for JSON output."""
    return {
        "conversation_id": result.conversation_id,
        "title": result.title,
        "snippet": result.snippet.render(ELLIPSIS),
        "highlight": list(result.snippet.highlight_span(ELLIPSIS)),
        "score": result.score,
        "date": result.date.isoformat() if result.date else None,
    }


def highlight_snippet(snippet: Snippet) -> Text:
    """Render a snippet with its match highlighted."""
    rendered = Text(snippet.render(ELLIPSIS))
    start, end = snippet.highlight_span(ELLIPSIS)
    if end > start:
        rendered.stylize("bold yellow", start, end)
    return rendered


def format_human_output(outcome: QueryOutcome, ngram_size: int, search_time_ms: float) -> None:
    """Format results for human-readable output."""
    message = status_message(outcome, ngram_size)
    if message:
        console.print(f"[yellow]{message}[/yellow]")
        return

    for i, result in enumerate(outcome.results, 1):
        header = Text()
        header.append(f"[{i}] ", style="bold cyan")
        header.append(result.title, style="green")
        if result.date:
            header.append(f" | {result.date.date().isoformat()}", style="dim")
        header.append(f" | {result.score:.3f}", style="dim")

        panel = Panel(
            highlight_snippet(result.snippet),
            title=header,
            subtitle=f"id {result.conversation_id}",
            subtitle_align="left",
        )
        console.print(panel)
        console.print()

    console.print("─" * 50)
    console.print(
        f"Showing {len(outcome.results)} of {outcome.total} results in {search_time_ms:.1f}ms"
    )


def format_json_output(outcome: QueryOutcome, search_time_ms: float) -> None:
    """Format results as JSON for programmatic use."""
    output = {
        "query": outcome.query,
        "status": outcome.status.value,
        "total": outcome.total,
        "time_ms": round(search_time_ms, 3),
        "results": [result_to_dict(r) for r in outcome.results],
    }
    console.print_json(data=output)


def perform_search(
    query: str,
    archive_path: Path | None = None,
    limit: int = DEFAULT_LIMIT,
    json_output: bool = False,
) -> None:
    """Perform a search from the command line and display results."""
    from convo_search.config import get_settings
    from convo_search.indexer import prepare_index

    settings = get_settings()
    if archive_path is not None:
        settings = settings.model_copy(update={"archive_path": archive_path})

    index = prepare_index(settings)
    engine = SearchEngine(
        index,
        snippet_window=settings.snippet_window,
        max_document_ratio=settings.max_document_ratio,
        max_limit=settings.max_limit,
    )

    start_time = time.perf_counter()
    outcome = engine.query(query, limit)
    search_time_ms = (time.perf_counter() - start_time) * 1000

    if json_output:
        format_json_output(outcome, search_time_ms)
    else:
        format_human_output(outcome, engine.ngram_size, search_time_ms)
