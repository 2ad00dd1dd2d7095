"""
Card Recognizer
===============
Reads costs, unit sizes, field allowance and focus/fury pools from fixed
regions of an extracted card render.

Pipeline:
    Card Image → Canvas (letterbox) → CategoryLayout → OCR per region →
    Token predicates / integer parsing → CardAttributes

A region that yields no text, or text that does not parse, leaves its
attribute unset. Only OCR engine failures and out-of-domain values abort
the card.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Protocol, Sequence

from PIL import Image

from .models import CardAttributes
from .regions import (
    ATTACHMENT_MARKER,
    Box,
    RegionMap,
    RegionRule,
    Segmentation,
    TokenPredicate,
    UnitTableLayout,
)

logger = logging.getLogger(__name__)

# ─── Parsing Patterns ─────────────────────────────────────────────────────────

# Plain printed integer, e.g. "7" or "+28" on commander cards
INTEGER_PATTERN = re.compile(r"^\+?(\d+)$")

# Numbers inside a unit cost table line, e.g. "Leader and 5 Grunts 16"
UNIT_COST_PATTERN = re.compile(r"(?:^|\D)\s*(\d+)")

# Blank lines at these positions are layout noise above the table
_LEADING_BLANK_LINES = 2
_MAX_TABLE_VALUES = 2


class RegionReader(Protocol):
    def read_region(
        self, image: Image.Image, box: Box, segmentation: Segmentation
    ) -> str: ...


def parse_region_text(
    text: Optional[str],
    predicates: Sequence[TokenPredicate] = (),
) -> Optional[int]:
    """
    Turn raw OCR text into an attribute value.

    Predicates run in order and the first positive sentinel wins. Without a
    predicate match the text must be a plain non-negative integer.
    Returns None when nothing matched.
    """
    if not text:
        return None

    formatted = text.strip()
    if not formatted:
        return None

    for predicate in predicates:
        sentinel = predicate(formatted)
        if sentinel is not None and sentinel > 0:
            return sentinel

    match = INTEGER_PATTERN.match(formatted)
    if match:
        return int(match.group(1))
    return None


def parse_unit_table(text: str) -> tuple[list[int], list[int]]:
    """
    Scan a unit cost table.

    A line with one number is a cost, a line with two numbers is a
    (size, cost) pair. Lines with any other count are dropped.

    Returns:
        (costs, sizes), each holding at most two values as printed.
    """
    costs: list[int] = []
    sizes: list[int] = []

    for index, line in enumerate(text.split("\n")):
        if not line.strip():
            if index < _LEADING_BLANK_LINES:
                continue
            break

        numbers = [int(n) for n in UNIT_COST_PATTERN.findall(line)]
        if len(numbers) == 1:
            if len(costs) < _MAX_TABLE_VALUES:
                costs.append(numbers[0])
        elif len(numbers) == 2:
            if len(sizes) < _MAX_TABLE_VALUES:
                sizes.append(numbers[0])
            if len(costs) < _MAX_TABLE_VALUES:
                costs.append(numbers[1])
        else:
            logger.debug(f"Dropping unit table line {index}: {line!r}")

    return costs, sizes


def fit_to_canvas(image: Image.Image, canvas: tuple[int, int]) -> Image.Image:
    """Scale the image to fit the canvas, centered, keeping aspect ratio."""
    width, height = canvas
    scale = min(width / image.width, height / image.height)
    scaled_size = (round(image.width * scale), round(image.height * scale))

    output = Image.new("RGB", canvas, "white")
    scaled = image.convert("RGB").resize(scaled_size, Image.Resampling.LANCZOS)
    output.paste(
        scaled,
        ((width - scaled_size[0]) // 2, (height - scaled_size[1]) // 2),
    )
    return output


class CardRecognizer:
    """
    Applies a RegionMap to card images.

    Stateless between cards; safe to share between worker threads when
    the reader is.
    """

    def __init__(self, reader: RegionReader, region_map: RegionMap):
        self.reader = reader
        self.region_map = region_map

    def recognize(self, image_path: str | Path, category: str) -> CardAttributes:
        """
        Recognize the attributes of one card render.

        Raises:
            RecognitionError: If OCR fails on any region.
            ValueError: If a recognized value is outside its domain.
        """
        layout = self.region_map.layout_for(category)
        attributes = CardAttributes()

        with Image.open(image_path) as source:
            canvas = fit_to_canvas(source, self.region_map.canvas)

        if layout.unit_table:
            self._recognize_unit_costs(canvas, layout.unit_table, attributes)

        for rule in layout.rules:
            self._apply_rule(canvas, rule, attributes)

        logger.debug(
            f"Recognized {Path(image_path).name} ({category}): "
            f"{attributes.model_dump(exclude_none=True)}"
        )
        return attributes

    def _read(self, image: Image.Image, box: Box, segmentation: Segmentation) -> str:
        return self.reader.read_region(image, box, segmentation) or ""

    def _apply_rule(
        self,
        image: Image.Image,
        rule: RegionRule,
        attributes: CardAttributes,
    ) -> Optional[int]:
        text = self._read(image, rule.box, rule.segmentation)
        value = parse_region_text(text, rule.predicates)
        if value is None:
            if text.strip():
                logger.debug(
                    f"Unparsed text {text.strip()!r} in region {rule.box.as_tuple()}"
                )
            return None
        rule.setter(attributes, value)
        return value

    def _recognize_unit_costs(
        self,
        image: Image.Image,
        layout: UnitTableLayout,
        attributes: CardAttributes,
    ) -> None:
        header = self._read(image, layout.header, Segmentation.LINE)

        if ATTACHMENT_MARKER.casefold() in header.casefold():
            attributes.set_attachment()
            self._apply_rule(image, layout.attachment_cost, attributes)
            return

        table = self._read(image, layout.table, Segmentation.BLOCK)
        if not table.strip():
            return

        costs, sizes = parse_unit_table(table)

        if len(costs) == 1:
            attributes.set_cost(costs[0])
        elif len(costs) == 2:
            attributes.set_cost_min(costs[0])
            attributes.set_cost_max(costs[1])

        # Printed sizes count grunts only; the leader adds one model
        if len(sizes) == 2:
            attributes.set_size_min(sizes[0] + 1)
            attributes.set_size_max(sizes[1] + 1)
