"""Bounded result cache in front of a search engine."""

from functools import lru_cache

from convo_search.models import Index, QueryOutcome
from convo_search.searcher import DEFAULT_LIMIT, SearchEngine

DEFAULT_CACHE_SIZE = 128


class CachedSearchEngine:
    """Wrap a SearchEngine with an LRU cache keyed by (query, limit).

    The cache lives and dies with the wrapped engine, and an engine serves a
    single index generation, so swapping generations never returns stale hits.
    Outcomes are frozen dataclasses and safe to share between callers.
    """

    def __init__(self, engine: SearchEngine, maxsize: int = DEFAULT_CACHE_SIZE) -> None:
        self.engine = engine
        self._cached_query = lru_cache(maxsize=maxsize)(engine.query)

    @property
    def index(self) -> Index:
        return self.engine.index

    @property
    def ngram_size(self) -> int:
        return self.engine.ngram_size

    def query(self, text: str, limit: int = DEFAULT_LIMIT) -> QueryOutcome:
        return self._cached_query(text, limit)

    def cache_info(self):
        return self._cached_query.cache_info()

    def cache_clear(self) -> None:
        self._cached_query.cache_clear()
