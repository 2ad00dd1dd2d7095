"""
Group Index
===========
Writes the `__cardindex.json` manifest of one group folder: every card
that finished its unit, grouped by category, with recognized attributes
and image filenames.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import CardCategory, CardResult

logger = logging.getLogger(__name__)

INDEX_FILENAME = "__cardindex.json"


class IndexCard(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    key: str
    title: str
    images: list[str]
    cost: Optional[int] = None
    cost_min: Optional[int] = None
    cost_max: Optional[int] = None
    bonus_cost: Optional[int] = None
    size_min: Optional[int] = None
    size_max: Optional[int] = None
    field_allowance: Optional[int] = None
    focus: Optional[int] = None
    fury: Optional[int] = None
    attachment: Optional[bool] = None

    @classmethod
    def from_result(cls, result: CardResult) -> "IndexCard":
        attributes = result.attributes.model_dump()
        attributes["attachment"] = attributes["attachment"] or None
        return cls(
            id=result.record.id,
            key=result.key,
            title=result.record.title,
            images=list(result.images),
            **attributes,
        )


class GroupIndex(BaseModel):
    """
    Per-group manifest. Commander and battlegroup lists are left out when
    empty; units and solos are always present.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    group_name: str
    warcasters: Optional[list[IndexCard]] = None
    warlocks: Optional[list[IndexCard]] = None
    warbeasts: Optional[list[IndexCard]] = None
    warjacks: Optional[list[IndexCard]] = None
    units: list[IndexCard] = Field(default_factory=list)
    solos: list[IndexCard] = Field(default_factory=list)
    others: Optional[list[IndexCard]] = None

    @property
    def group_type(self) -> str:
        if self.warcasters and self.warjacks:
            return "Warmachine"
        if self.warlocks and self.warbeasts:
            return "Hordes"
        return "Unknown"

    @classmethod
    def build(cls, group_name: str, results: Iterable[CardResult]) -> "GroupIndex":
        buckets: dict[str, list[IndexCard]] = {}
        for result in results:
            buckets.setdefault(result.record.category, []).append(
                IndexCard.from_result(result)
            )

        known = {c.value for c in CardCategory}
        others = [
            card
            for category, cards in buckets.items()
            if category not in known
            for card in cards
        ]

        return cls(
            group_name=group_name,
            warcasters=buckets.get(CardCategory.WARCASTER.value) or None,
            warlocks=buckets.get(CardCategory.WARLOCK.value) or None,
            warbeasts=buckets.get(CardCategory.WARBEAST.value) or None,
            warjacks=buckets.get(CardCategory.WARJACK.value) or None,
            units=buckets.get(CardCategory.UNIT.value, []),
            solos=buckets.get(CardCategory.SOLO.value, []),
            others=others or None,
        )

    def to_json_dict(self) -> dict:
        data = self.model_dump(by_alias=True, exclude_none=True)
        data["groupType"] = self.group_type
        return data


def write_group_index(
    group_dir: str | Path,
    group_name: str,
    results: Iterable[CardResult],
) -> Path:
    """Write `__cardindex.json` into the group folder and return its path."""
    index = GroupIndex.build(group_name, results)
    path = Path(group_dir) / INDEX_FILENAME

    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(index.to_json_dict(), f, indent=2, ensure_ascii=False)
    except OSError as e:
        logger.error(f"An error occurred writing the card index to {path}: {e}")
        raise

    logger.info(f"Saved card index: {path}")
    return path
