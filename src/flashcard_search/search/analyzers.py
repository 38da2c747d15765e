"""Analyzer utilities for card text.

Mirrors the composable tokenizer/filter design used across the search stack:
a character normalizer folds case and diacritics, a regex tokenizer emits word
runs and token filters drop noise. ``tokenize`` and ``trigrams`` are the two
entry points used by indexing and ranking.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
import re
from typing import Protocol
import unicodedata


DEFAULT_MIN_TERM_LENGTH = 2
DEFAULT_MAX_TERM_LENGTH = 40

# Leading boundary is two spaces so the first character gets its own window
_TRIGRAM_PREFIX = "  "
_TRIGRAM_SUFFIX = " "


@dataclass
class Token:
    """Represents a token emitted by analyzers."""

    text: str
    position: int
    start_char: int
    end_char: int


class Tokenizer(Protocol):
    """Protocol implemented by tokenizers."""

    def __call__(self, text: str) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class TokenFilter(Protocol):
    """Protocol implemented by token filters."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


def fold_text(text: str) -> str:
    """Lowercase ``text`` and strip diacritics (``tigré`` -> ``tigre``)."""

    decomposed = unicodedata.normalize("NFKD", text.lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


class RegexTokenizer:
    """Regex-based tokenizer that yields word tokens."""

    def __init__(self, pattern: str = r"[a-z0-9]+", flags: int = 0) -> None:
        self.pattern = re.compile(pattern, flags)

    def __call__(self, text: str) -> Iterator[Token]:
        for position, match in enumerate(self.pattern.finditer(text)):
            yield Token(
                text=match.group(0),
                position=position,
                start_char=match.start(),
                end_char=match.end(),
            )


class LengthFilter:
    """Drops tokens outside ``min_length <= len(token) < max_length``."""

    def __init__(self, min_length: int = DEFAULT_MIN_TERM_LENGTH, max_length: int = DEFAULT_MAX_TERM_LENGTH) -> None:
        self.min_length = min_length
        self.max_length = max_length

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if self.min_length <= len(token.text) < self.max_length:
                yield token


class AnalyzerPipeline:
    """Composable analyzer pipeline (folding + tokenizer + filters)."""

    def __init__(self, tokenizer: Tokenizer, filters: Sequence[TokenFilter] | None = None) -> None:
        self.tokenizer = tokenizer
        self.filters = list(filters or [])

    def __call__(self, text: str) -> list[Token]:
        stream: Iterable[Token] = self.tokenizer(fold_text(text))
        for token_filter in self.filters:
            stream = token_filter(stream)
        tokens = list(stream)
        for idx, token in enumerate(tokens):  # normalize positions post-filtering
            token.position = idx
        return tokens


class CardTextAnalyzer:
    """Default analyzer for card front/back text."""

    def __init__(
        self,
        *,
        min_length: int = DEFAULT_MIN_TERM_LENGTH,
        max_length: int = DEFAULT_MAX_TERM_LENGTH,
    ) -> None:
        self.pipeline = AnalyzerPipeline(RegexTokenizer(), [LengthFilter(min_length, max_length)])

    def __call__(self, text: str) -> list[Token]:
        return self.pipeline(text)


_DEFAULT_ANALYZER = CardTextAnalyzer()


def tokenize(text: str | None, analyzer: CardTextAnalyzer | None = None) -> list[str]:
    """Split free text into index terms, keeping order and duplicates.

    >>> tokenize("Animal fidèle, très fidèle!")
    ['animal', 'fidele', 'tres', 'fidele']
    """

    if not text:
        return []
    active = analyzer or _DEFAULT_ANALYZER
    return [token.text for token in active(text)]


def trigrams(term: str) -> list[str]:
    """Return the overlapping 3-character windows of a padded term.

    >>> trigrams("ab")
    ['  a', ' ab', 'ab ']
    """

    padded = f"{_TRIGRAM_PREFIX}{term}{_TRIGRAM_SUFFIX}"
    return [padded[i : i + 3] for i in range(len(padded) - 2)]


def card_terms(front_text: str | None, back_text: str | None, analyzer: CardTextAnalyzer | None = None) -> list[str]:
    """Terms of a card: front terms followed by back terms."""

    return [*tokenize(front_text, analyzer), *tokenize(back_text, analyzer)]


def unique_trigrams(terms: Iterable[str]) -> list[str]:
    """Distinct trigrams over ``terms`` in first-seen order."""

    seen: dict[str, None] = {}
    for term in terms:
        for tri in trigrams(term):
            seen.setdefault(tri, None)
    return list(seen)
