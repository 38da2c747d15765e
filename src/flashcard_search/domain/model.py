"""Domain models for the card search engine.

Following Cosmic Python principles:
- Value Objects are immutable (frozen=True)
- No infrastructure dependencies

Index rows (IndexEntry, TrigramEntry, TermStat) are the only shapes written to
the persisted index tables.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Card(BaseModel):
    """A flashcard as owned by the card-management subsystem.

    The engine only reads cards; missing text is normalized to "".
    """

    model_config = ConfigDict(frozen=True)

    id: str
    front_text: str = ""
    back_text: str = ""
    deck_id: str = ""

    @field_validator("front_text", "back_text", "deck_id", mode="before")
    @classmethod
    def _none_to_empty(cls, value: object) -> object:
        return "" if value is None else value


class IndexEntry(BaseModel):
    """One posting: a distinct term of a card and its frequency in that card."""

    model_config = ConfigDict(frozen=True)

    term: str
    card_id: str
    tf: int = Field(default=1, ge=1)


class TrigramEntry(BaseModel):
    """One trigram posting of a card."""

    model_config = ConfigDict(frozen=True)

    tri: str
    card_id: str


class TermStat(BaseModel):
    """Number of distinct cards containing ``term``."""

    model_config = ConfigDict(frozen=True)

    term: str
    doc_freq: int = Field(ge=0)


class RankingMode(str, Enum):
    """Result ordering strategies."""

    NONE = "none"
    TFIDF = "tfidf"
    FUZZY = "fuzzy"


class SearchOptions(BaseModel):
    """Per-query options."""

    model_config = ConfigDict(frozen=True)

    ranking: RankingMode = RankingMode.TFIDF
    deck_id: str | None = None
    limit: int | None = Field(default=None, ge=1)


class RebuildResult(BaseModel):
    """Outcome of a full (or aborted) rebuild."""

    model_config = ConfigDict(frozen=True)

    indexed_cards: int
    parallel: bool = False
    entries: int = 0
    trigrams: int = 0
    aborted: bool = False
    threads: int | None = None


class PrimeResult(BaseModel):
    """Outcome of a priming pass."""

    model_config = ConfigDict(frozen=True)

    indexed_cards: int
    primed: bool
