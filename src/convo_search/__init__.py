"""convo-search: n-gram search over exported chat conversations."""

__version__ = "0.1.0"
