"""Error taxonomy for convo-search."""


class ConvoSearchError(Exception):
    """Base class for all convo-search errors."""


class MalformedArchive(ConvoSearchError):
    """The archive's top-level structure cannot be parsed. Nothing to index."""


class MalformedRecord(ConvoSearchError):
    """A single archive entry is unusable. The loader skips it and continues."""

    def __init__(self, position: int, reason: str) -> None:
        super().__init__(f"entry {position}: {reason}")
        self.position = position
        self.reason = reason


class IndexPersistenceFailure(ConvoSearchError):
    """Writing the index to disk failed. The in-memory index is still usable."""


class IndexMissingOrStale(ConvoSearchError):
    """No persisted index matches the current record set."""


class IndexUnavailable(ConvoSearchError):
    """The query service has no index generation to search yet."""
