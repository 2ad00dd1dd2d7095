"""
Harvest Engine
==============
Main orchestrator combining catalog download, fetch coordination, image
extraction, recognition and group index output into one harvest run.

Usage:
    engine = HarvestEngine(HarvestConfig(output_dir="cards"))
    report = engine.run()
    # report is a HarvestReport with one GroupReport per group

Architecture:
    Listing → Catalog → (per group) FetchCoordinator → CardPipeline
    [ImageExtractor → CardRecognizer] → CardResult → __cardindex.json
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

import requests

from .catalog import fetch_catalog
from .fetcher import DEFAULT_CONCURRENCY, DEFAULT_TIMEOUT, FetchCoordinator, validate_base_url
from .image_extractor import DEFAULT_IMAGE_HEIGHT, DEFAULT_IMAGE_WIDTH, ImageExtractor
from .index import write_group_index
from .models import CardRecord, Catalog, CardResult, GroupReport, HarvestReport
from .ocr import TesseractEngine
from .pipeline import CardPipeline
from .recognizer import CardRecognizer
from .regions import get_region_map

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://cards.privateerpress.com"


@dataclass
class HarvestConfig:
    """Configuration for the harvest engine."""

    # Remote site
    base_url: str = field(
        default_factory=lambda: os.environ.get("HARVESTER_BASE_URL", DEFAULT_BASE_URL)
    )
    request_timeout: float = DEFAULT_TIMEOUT

    # Output
    output_dir: str = "cards"
    groups: tuple[str, ...] = ()

    # Concurrency
    concurrency: int = DEFAULT_CONCURRENCY
    workers: Optional[int] = None

    # Extraction
    image_width: int = DEFAULT_IMAGE_WIDTH
    image_height: int = DEFAULT_IMAGE_HEIGHT
    image_ext: str = "jpg"

    # Recognition
    layout: str = "mk3"
    ocr_lang: str = "eng"
    tesseract_cmd: Optional[str] = field(
        default_factory=lambda: os.environ.get("HARVESTER_TESSERACT_CMD")
    )

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None


class HarvestEngine:
    """
    Main harvest engine.

    Orchestrates the full run:
        1. Configuration checks
        2. OCR engine start-up
        3. Catalog download
        4. Per group: fetch, extract and recognize every card
        5. Per group: index output

    Card failures are isolated to their unit and reported; configuration,
    OCR start-up and catalog failures abort the run.
    """

    def __init__(self, config: Optional[HarvestConfig] = None):
        self.config = config or HarvestConfig()
        self._setup_logging()

    def _setup_logging(self):
        """Configure logging based on config."""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        # Configure root logger for the harvester package
        package_logger = logging.getLogger("harvester")
        package_logger.setLevel(log_level)

        formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        # Console handler
        if not package_logger.handlers:
            console = logging.StreamHandler()
            console.setLevel(log_level)
            console.setFormatter(formatter)
            package_logger.addHandler(console)

        # File handler
        if self.config.log_file:
            log_dir = Path(self.config.log_file).parent
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(
                self.config.log_file, encoding="utf-8"
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            package_logger.addHandler(file_handler)

    # ─── Building Blocks ──────────────────────────────────────────────────

    def validate(self) -> Path:
        """
        Check configuration before any work starts.

        Raises:
            ValueError: If the base URL or limits are invalid.
            FileNotFoundError: If the output directory does not exist.
        """
        validate_base_url(self.config.base_url)
        get_region_map(self.config.layout)

        if self.config.concurrency < 1:
            raise ValueError(
                f"Concurrency must be at least 1, got {self.config.concurrency}"
            )

        output_dir = Path(self.config.output_dir)
        if not output_dir.is_dir():
            raise FileNotFoundError(f"Output directory does not exist: {output_dir}")
        return output_dir

    def create_extractor(self) -> ImageExtractor:
        return ImageExtractor(
            width=self.config.image_width,
            height=self.config.image_height,
            default_ext=self.config.image_ext,
        )

    def create_recognizer(self) -> CardRecognizer:
        """Start the OCR engine. Raises OCREngineError when unavailable."""
        ocr = TesseractEngine(
            lang=self.config.ocr_lang,
            tesseract_cmd=self.config.tesseract_cmd,
        )
        return CardRecognizer(ocr, get_region_map(self.config.layout))

    # ─── Harvest Run ──────────────────────────────────────────────────────

    def run(
        self,
        catalog: Optional[Catalog] = None,
        session: Optional[requests.Session] = None,
        progress_callback: Optional[Callable[[str, int, int], None]] = None,
    ) -> HarvestReport:
        """
        Harvest every card of the catalog.

        Args:
            catalog: Pre-parsed catalog; downloaded from base_url when None.
            session: Optional requests session for connection reuse.
            progress_callback: Callback(group, completed, total) per card.

        Returns:
            HarvestReport with per-group, per-card outcomes.
        """
        output_dir = self.validate()
        recognizer = self.create_recognizer()
        extractor = self.create_extractor()

        if catalog is None:
            catalog = fetch_catalog(
                self.config.base_url,
                session=session,
                timeout=self.config.request_timeout,
            )

        groups = group_records(catalog.records, self.config.groups)
        report = HarvestReport()

        logger.info(
            f"Harvesting {sum(len(g) for g in groups.values())} card(s) "
            f"in {len(groups)} group(s) into {output_dir}"
        )

        coordinator = FetchCoordinator(
            self.config.base_url,
            concurrency=self.config.concurrency,
            workers=self.config.workers,
            session=session,
            timeout=self.config.request_timeout,
        )
        try:
            for group, records in groups.items():
                group_dir = output_dir / safe_dirname(group)
                group_dir.mkdir(parents=True, exist_ok=True)

                pipeline = CardPipeline(extractor, recognizer, group_dir)
                callback = None
                if progress_callback:
                    callback = lambda done, total, g=group: progress_callback(g, done, total)

                group_report = coordinator.run(
                    group, records, pipeline.process_card, progress_callback=callback
                )
                self._write_index(group_dir, catalog.group_name(group), group_report)
                report.groups.append(group_report)
        finally:
            coordinator.close()

        report.finished_at = datetime.now(timezone.utc).isoformat()
        logger.info(
            f"Harvest {report.status.value}: "
            f"{report.total - report.failed}/{report.total} card(s) succeeded"
        )
        return report

    def _write_index(self, group_dir: Path, group_name: str, report: GroupReport):
        results = report.results()
        if not results:
            logger.warning(f"Group '{report.group}': no cards to index")
            return
        write_group_index(group_dir, group_name, results)

    # ─── Offline Processing ───────────────────────────────────────────────

    def process_document(
        self,
        pdf_path: str,
        category: str,
        output_dir: Optional[str] = None,
        key: Optional[str] = None,
    ) -> CardResult:
        """
        Extract and recognize a card PDF already on disk.

        Raises:
            FileNotFoundError: If the PDF does not exist.
        """
        path = Path(pdf_path)
        if not path.exists():
            raise FileNotFoundError(f"PDF not found: {pdf_path}")

        out = Path(output_dir or self.config.output_dir)
        out.mkdir(parents=True, exist_ok=True)

        record = CardRecord(
            id=0,
            category=category,
            group=out.name or "local",
            title=path.stem,
        )
        pipeline = CardPipeline(self.create_extractor(), self.create_recognizer(), out)
        with open(path, "rb") as f:
            return pipeline.process_card(record, key or record.key, f)


def safe_dirname(name: str) -> str:
    """Sanitize a group tag for filesystem use."""
    return "".join(
        c if c.isalnum() or c in "-_ " else "_"
        for c in name
    ).strip().replace(" ", "_")[:100] or "unknown"


def group_records(
    records: list[CardRecord],
    only: tuple[str, ...] = (),
) -> dict[str, dict[str, CardRecord]]:
    """
    Group records by group tag, keyed by card key, keeping listing order.

    Cards sharing a key within a group get their id appended so that no two
    units write the same files.
    """
    wanted = {g.lower() for g in only}
    groups: dict[str, dict[str, CardRecord]] = {}

    for record in records:
        if wanted and record.group.lower() not in wanted:
            continue

        cards = groups.setdefault(record.group, {})
        key = record.key or f"card-{record.id}"
        if key in cards:
            logger.warning(
                f"Duplicate card key '{key}' in group '{record.group}'; "
                f"using '{key}-{record.id}'"
            )
            key = f"{key}-{record.id}"
        cards[key] = record

    return groups
