"""
Card Pipeline
=============
One card unit after its fetch: extract the card renders, recognize the
first one, and return the finished CardResult.

A unit owns its record, attributes and output files end to end. Images
written by a unit that fails are removed again.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO

from .image_extractor import ImageExtractor, discard
from .models import CardRecord, CardResult
from .recognizer import CardRecognizer

logger = logging.getLogger(__name__)


class CardPipeline:
    """Extract → recognize for cards of one group folder."""

    def __init__(
        self,
        extractor: ImageExtractor,
        recognizer: CardRecognizer,
        output_dir: str | Path,
    ):
        self.extractor = extractor
        self.recognizer = recognizer
        self.output_dir = Path(output_dir)

    def process_card(
        self,
        record: CardRecord,
        key: str,
        body: BinaryIO | bytes,
    ) -> CardResult:
        """
        Process one fetched card document.

        Raises:
            ImageExtractionError: If no card render can be extracted.
            RecognitionError: If OCR fails on the render.
            ValueError: If a recognized value is outside its domain.
        """
        images = self.extractor.extract(body, self.output_dir, key)

        try:
            attributes = self.recognizer.recognize(
                self.output_dir / images[0], record.category
            )
            result = CardResult(
                record=record,
                key=key,
                attributes=attributes,
                images=images,
            )
        except Exception:
            discard(self.output_dir, images)
            raise

        logger.info(
            f"Processed {record.title}: {len(images)} image(s), "
            f"{attributes.model_dump(exclude_none=True, exclude_defaults=True)}"
        )
        return result
