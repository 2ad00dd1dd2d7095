"""
Data Models
===========
Pydantic models for card records, recognized card attributes and the
per-unit / per-group / per-run reports produced by a harvest.
"""

from __future__ import annotations

import html
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

# Filesystem keys keep only these characters (lower-cased)
_KEY_CHARACTERS = set(
    "abcdefghijklmnopqrstuvwxyz1234567890ABCDEFGHIJKLMNOPQRSTUVWXYZ"
)
_KEY_SEPARATOR = "-"

# Upper bound on nested entity decoding passes (e.g. "&amp;amp;comma;")
_MAX_DECODE_PASSES = 8


# ─── Enums ────────────────────────────────────────────────────────────────────


class CardCategory(str, Enum):
    """Gameplay role tags used by the card listing."""
    WARCASTER = "warcaster"
    WARLOCK = "warlock"
    WARJACK = "warjack"
    WARBEAST = "warbeast"
    UNIT = "unit"
    SOLO = "solo"


COMMANDER_CATEGORIES = frozenset({CardCategory.WARCASTER, CardCategory.WARLOCK})

_CATEGORY_ALIASES = {
    "warbeasts": CardCategory.WARBEAST.value,
    "warjacks": CardCategory.WARJACK.value,
    "units": CardCategory.UNIT.value,
    "solos": CardCategory.SOLO.value,
}


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# ─── Helpers ──────────────────────────────────────────────────────────────────


def normalize_category(tag: str) -> str:
    """Lower-case a category tag and fold known plural aliases."""
    value = tag.strip().lower()
    return _CATEGORY_ALIASES.get(value, value)


def decode_title(value: str) -> str:
    """
    Decode HTML entities until the text stops changing.

    The listing occasionally double-escapes commas as "&amp;comma;", so
    "&comma;" is unescaped explicitly on every pass. Decoding to a fixed
    point makes the function idempotent.
    """
    decoded = value
    for _ in range(_MAX_DECODE_PASSES):
        unescaped = html.unescape(decoded).replace("&comma;", ",")
        if unescaped == decoded:
            break
        decoded = unescaped
    return decoded


def make_card_key(title: str) -> str:
    """
    Build a filesystem key from a card title.

    Whitespace and separators collapse into a single "-", other characters
    outside ASCII letters and digits are dropped.
    E.g. "Kreoss, Grand Exemplar" -> "kreoss-grand-exemplar"
    """
    parts: list[str] = []
    last_was_separator = False
    for char in title:
        if char.isspace() or char == _KEY_SEPARATOR:
            if not last_was_separator:
                parts.append(_KEY_SEPARATOR)
                last_was_separator = True
        elif char in _KEY_CHARACTERS:
            parts.append(char.lower())
            last_was_separator = False
    return "".join(parts)


# ─── Card Models ──────────────────────────────────────────────────────────────


class CardRecord(BaseModel):
    """
    One catalog entry identifying a card to fetch and recognize.
    Immutable once constructed.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(ge=0)
    category: str
    group: str
    title: str

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("category must be a non-empty string")
        return normalize_category(value)

    @field_validator("group")
    @classmethod
    def _require_group(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("group must be a non-empty string")
        return value.strip()

    @field_validator("title")
    @classmethod
    def _decode_title(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must be a non-empty string")
        return decode_title(value)

    @property
    def key(self) -> str:
        return make_card_key(self.title)

    @property
    def is_commander(self) -> bool:
        return self.category in {c.value for c in COMMANDER_CATEGORIES}


class CardAttributes(BaseModel):
    """
    Attributes recognized from a card render.

    Fields stay None unless recognition produced a value. Assignment is
    validated, so an out-of-domain value raises a ValidationError.
    """
    model_config = ConfigDict(validate_assignment=True)

    cost: Optional[int] = Field(default=None, ge=0)
    cost_min: Optional[int] = Field(default=None, ge=0)
    cost_max: Optional[int] = Field(default=None, ge=0)
    bonus_cost: Optional[int] = Field(
        default=None, ge=0,
        description="Battlegroup points granted by a commander",
    )
    size_min: Optional[int] = Field(default=None, ge=0)
    size_max: Optional[int] = Field(default=None, ge=0)
    field_allowance: Optional[int] = Field(
        default=None, ge=-1,
        description="1 for character cards, 999 for unlimited",
    )
    focus: Optional[int] = Field(default=None, ge=0)
    fury: Optional[int] = Field(default=None, ge=0)
    attachment: bool = False

    def set_cost(self, value: int) -> None:
        self.cost = value

    def set_cost_min(self, value: int) -> None:
        self.cost_min = value

    def set_cost_max(self, value: int) -> None:
        self.cost_max = value

    def set_bonus_cost(self, value: int) -> None:
        self.bonus_cost = value

    def set_commander_cost(self, value: int) -> None:
        """A commander's printed cost is its battlegroup bonus; it costs 0."""
        self.bonus_cost = value
        self.cost = 0

    def set_size_min(self, value: int) -> None:
        self.size_min = value

    def set_size_max(self, value: int) -> None:
        self.size_max = value

    def set_field_allowance(self, value: int) -> None:
        self.field_allowance = value

    def set_focus(self, value: int) -> None:
        if self.fury is not None:
            raise ValueError("card already carries a fury pool")
        self.focus = value

    def set_fury(self, value: int) -> None:
        if self.focus is not None:
            raise ValueError("card already carries a focus pool")
        self.fury = value

    def set_attachment(self) -> None:
        self.attachment = True


class CardResult(BaseModel):
    """Finished output of one card unit: fetch, extract and recognize."""
    model_config = ConfigDict(frozen=True)

    record: CardRecord
    key: str
    attributes: CardAttributes
    images: list[str] = Field(min_length=1)


class Catalog(BaseModel):
    """Card records in listing order plus group display names."""
    records: list[CardRecord] = Field(default_factory=list)
    group_names: dict[str, str] = Field(default_factory=dict)

    def group_name(self, group: str) -> str:
        return self.group_names.get(group, group)


# ─── Report Models ────────────────────────────────────────────────────────────


class UnitOutcome(BaseModel):
    """Success or failure of a single card unit."""
    key: str
    card_id: int
    title: str
    succeeded: bool
    error_type: Optional[str] = None
    error: Optional[str] = None
    result: Optional[CardResult] = None


class GroupReport(BaseModel):
    """Joined outcomes of every card unit in one group."""
    group: str
    outcomes: list[UnitOutcome] = Field(default_factory=list)
    peak_in_flight: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return len(self.outcomes)

    @computed_field
    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @computed_field
    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def results(self) -> list[CardResult]:
        return [o.result for o in self.outcomes if o.result is not None]


class HarvestReport(BaseModel):
    """Run-level report aggregated from every group."""
    groups: list[GroupReport] = Field(default_factory=list)
    started_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    finished_at: Optional[str] = None

    @computed_field
    @property
    def total(self) -> int:
        return sum(g.total for g in self.groups)

    @computed_field
    @property
    def failed(self) -> int:
        return sum(g.failed for g in self.groups)

    @computed_field
    @property
    def status(self) -> RunStatus:
        if self.failed == 0:
            return RunStatus.SUCCESS
        if self.failed < self.total:
            return RunStatus.PARTIAL
        return RunStatus.FAILED
