"""Character n-gram tokenizer shared by indexing and querying."""

from collections.abc import Iterator

DEFAULT_NGRAM_SIZE = 2


def fold_char(char: str) -> str:
    """Case-fold a single character without changing its length."""
    folded = char.casefold()
    if len(folded) == 1:
        return folded
    # e.g. "ß" casefolds to "ss"; keep offsets aligned instead
    lowered = char.lower()
    if len(lowered) == 1:
        return lowered
    return char


def fold(text: str) -> str:
    """Case-fold text character by character.

    The result always has the same length as the input, so an offset into the
    folded text is also an offset into the original.
    """
    if text.isascii():
        return text.lower()
    return "".join(fold_char(c) for c in text)


def tokenize(text: str, n: int = DEFAULT_NGRAM_SIZE) -> Iterator[tuple[str, int]]:
    """Yield (ngram, offset) pairs from a sliding window of n characters.

    Text shorter than n characters yields nothing.
    """
    if n < 1:
        raise ValueError(f"n-gram size must be positive, got {n}")
    folded = fold(text)
    for offset in range(len(folded) - n + 1):
        yield folded[offset : offset + n], offset


def query_ngrams(text: str, n: int = DEFAULT_NGRAM_SIZE) -> list[str]:
    """Distinct n-grams of a query, in order of first occurrence."""
    seen: dict[str, None] = {}
    for ngram, _ in tokenize(text, n):
        seen.setdefault(ngram, None)
    return list(seen)
