"""
Region Map
==========
Declarative tables mapping each card category to the fixed card regions
that are read by OCR, and the attribute each region feeds.

Coordinates are (left, top, right, bottom) pixels on the recognition
canvas: the extracted render is letterboxed onto the canvas before any
region is read. Each named layout is one fixed coordinate system; layouts
are selected by name and never mixed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .models import CardAttributes, CardCategory

# A predicate maps trimmed OCR text to a sentinel value, or None.
TokenPredicate = Callable[[str], Optional[int]]
AttributeSetter = Callable[[CardAttributes, int], None]

FIELD_ALLOWANCE_CHARACTER = 1
FIELD_ALLOWANCE_UNLIMITED = 999

ATTACHMENT_MARKER = "ATTACHMENT"


class Segmentation(str, Enum):
    """Layout hint passed to the recognizer for a region."""
    WORD = "word"
    LINE = "line"
    BLOCK = "block"
    CHARACTER = "character"

    @property
    def psm(self) -> int:
        """Tesseract page segmentation mode for this hint."""
        return _PSM[self]


_PSM = {
    Segmentation.BLOCK: 6,
    Segmentation.LINE: 7,
    Segmentation.WORD: 8,
    Segmentation.CHARACTER: 10,
}


def exact_token(token: str, sentinel: int) -> TokenPredicate:
    """Build a predicate returning `sentinel` when text equals `token`."""
    folded = token.casefold()

    def predicate(text: str) -> Optional[int]:
        return sentinel if text.casefold() == folded else None

    predicate.__name__ = f"token_{token.lower()}"
    return predicate


CANNOT_FIELD = exact_token("C", FIELD_ALLOWANCE_CHARACTER)
UNLIMITED = exact_token("U", FIELD_ALLOWANCE_UNLIMITED)


@dataclass(frozen=True)
class Box:
    left: int
    top: int
    right: int
    bottom: int

    def __post_init__(self):
        if self.left < 0 or self.top < 0:
            raise ValueError(f"Box origin must be non-negative: {self}")
        if self.right <= self.left or self.bottom <= self.top:
            raise ValueError(f"Box must have a positive area: {self}")

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.left, self.top, self.right, self.bottom)


@dataclass(frozen=True)
class RegionRule:
    """One card region, how to segment it, and which attribute it sets."""
    box: Box
    segmentation: Segmentation
    setter: AttributeSetter
    predicates: tuple[TokenPredicate, ...] = ()


@dataclass(frozen=True)
class UnitTableLayout:
    """
    Two-phase layout for unit cards.

    The header is checked for the attachment marker first. Attachments carry
    a single cost; other units print a small size/cost table.
    """
    header: Box
    attachment_cost: RegionRule
    table: Box


@dataclass(frozen=True)
class CategoryLayout:
    rules: tuple[RegionRule, ...] = ()
    unit_table: Optional[UnitTableLayout] = None


@dataclass(frozen=True)
class RegionMap:
    name: str
    canvas: tuple[int, int]
    layouts: dict[str, CategoryLayout] = field(default_factory=dict)
    default: CategoryLayout = field(default_factory=CategoryLayout)

    def layout_for(self, category: str) -> CategoryLayout:
        return self.layouts.get(category, self.default)


# ─── Mk III layout (750x1050 renders on a 2000x2800 canvas) ────────────────────

_MK3_COST = Box(1620, 2690, 1725, 2745)
_MK3_FIELD_ALLOWANCE = RegionRule(
    box=Box(1830, 2690, 1890, 2745),
    segmentation=Segmentation.WORD,
    setter=CardAttributes.set_field_allowance,
    predicates=(CANNOT_FIELD, UNLIMITED),
)
# Focus / fury sit in the first stat bubble of the stat line
_MK3_POOL = Box(262, 2290, 352, 2380)

_MK3_COMMANDER_COST = RegionRule(
    box=_MK3_COST,
    segmentation=Segmentation.WORD,
    setter=CardAttributes.set_commander_cost,
)
_MK3_MODEL_COST = RegionRule(
    box=_MK3_COST,
    segmentation=Segmentation.WORD,
    setter=CardAttributes.set_cost,
)

_MK3_DEFAULT = CategoryLayout(rules=(_MK3_MODEL_COST, _MK3_FIELD_ALLOWANCE))

MK3 = RegionMap(
    name="mk3",
    canvas=(2000, 2800),
    layouts={
        CardCategory.WARCASTER.value: CategoryLayout(rules=(
            _MK3_COMMANDER_COST,
            RegionRule(_MK3_POOL, Segmentation.CHARACTER, CardAttributes.set_focus),
            _MK3_FIELD_ALLOWANCE,
        )),
        CardCategory.WARLOCK.value: CategoryLayout(rules=(
            _MK3_COMMANDER_COST,
            RegionRule(_MK3_POOL, Segmentation.CHARACTER, CardAttributes.set_fury),
            _MK3_FIELD_ALLOWANCE,
        )),
        CardCategory.WARBEAST.value: CategoryLayout(rules=(
            _MK3_MODEL_COST,
            RegionRule(_MK3_POOL, Segmentation.CHARACTER, CardAttributes.set_fury),
            _MK3_FIELD_ALLOWANCE,
        )),
        CardCategory.WARJACK.value: _MK3_DEFAULT,
        CardCategory.SOLO.value: _MK3_DEFAULT,
        CardCategory.UNIT.value: CategoryLayout(
            rules=(_MK3_FIELD_ALLOWANCE,),
            unit_table=UnitTableLayout(
                header=Box(405, 205, 1750, 260),
                attachment_cost=RegionRule(
                    box=Box(1640, 2690, 1705, 2745),
                    segmentation=Segmentation.WORD,
                    setter=CardAttributes.set_cost,
                ),
                table=Box(1105, 2640, 1710, 2740),
            ),
        ),
    },
    default=_MK3_DEFAULT,
)

REGION_MAPS: dict[str, RegionMap] = {MK3.name: MK3}


def get_region_map(name: str) -> RegionMap:
    try:
        return REGION_MAPS[name]
    except KeyError:
        raise ValueError(
            f"Unknown region layout '{name}'. "
            f"Available: {', '.join(sorted(REGION_MAPS))}"
        ) from None
