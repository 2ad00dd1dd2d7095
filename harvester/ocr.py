"""
OCR Engine
==========
Thin Tesseract wrapper that reads single card regions.

Tesseract runs as a separate process per call, so one engine instance is
safe to share between worker threads.
"""

from __future__ import annotations

import logging
from typing import Optional

import pytesseract
from PIL import Image
from pytesseract import TesseractError, TesseractNotFoundError

from .regions import Box, Segmentation

logger = logging.getLogger(__name__)


class OCREngineError(RuntimeError):
    """Raised when the OCR engine cannot be initialized."""


class RecognitionError(RuntimeError):
    """Raised when the OCR engine fails on a region."""


class TesseractEngine:
    """Reads text from rectangular image regions with Tesseract."""

    def __init__(
        self,
        lang: str = "eng",
        tesseract_cmd: Optional[str] = None,
        extra_config: str = "",
    ):
        self.lang = lang
        self.extra_config = extra_config

        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = str(tesseract_cmd)

        try:
            self.version = str(pytesseract.get_tesseract_version())
        except (TesseractNotFoundError, OSError) as e:
            raise OCREngineError(f"Tesseract is not available: {e}") from e

        logger.info(f"Tesseract {self.version} ready (lang={self.lang})")

    def read_region(
        self,
        image: Image.Image,
        box: Box,
        segmentation: Segmentation,
    ) -> str:
        """
        OCR exactly one region of the image.

        Returns:
            Raw recognized text; empty when nothing was recognized.

        Raises:
            RecognitionError: If Tesseract itself fails.
        """
        crop = image.crop(box.as_tuple())
        config = f"--psm {segmentation.psm}"
        if self.extra_config:
            config = f"{config} {self.extra_config}"

        try:
            text = pytesseract.image_to_string(crop, lang=self.lang, config=config)
        except TesseractError as e:
            logger.error(f"OCR failed for region {box.as_tuple()}: {e}")
            raise RecognitionError(
                f"OCR failed for region {box.as_tuple()}: {e}"
            ) from e

        return text or ""
