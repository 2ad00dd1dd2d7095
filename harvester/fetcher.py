"""
Fetch Coordinator
=================
Downloads one card PDF per card record with a bounded number of requests
in flight, and runs each card's unit (fetch → extract → recognize) on a
worker thread.

Concurrency:
    - A single AdmissionGate bounds in-flight requests for the whole run
    - A gate slot is released as soon as response headers arrive, so body
      download, extraction and OCR overlap with other cards' requests
    - Units are independent: a failed card never cancels its siblings
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import BinaryIO, Callable, Mapping, Optional
from urllib.parse import urljoin, urlparse

import requests

from .models import CardRecord, CardResult, GroupReport, UnitOutcome

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3
DEFAULT_TIMEOUT = 60
USER_AGENT = "card-harvester/1.0"

# process_card(record, key, body_stream) -> CardResult
CardProcessor = Callable[[CardRecord, str, BinaryIO], CardResult]


class FetchError(RuntimeError):
    """Raised when a card document cannot be retrieved."""


class GateClosedError(RuntimeError):
    """Raised when a fetch slot is requested after shutdown."""


def validate_base_url(base_url: str) -> str:
    """Return the base URL if it is an absolute http(s) URL."""
    parsed = urlparse(base_url or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Base URL must be an absolute http(s) URL: {base_url!r}")
    return base_url


def build_card_url(base_url: str, card_id: int) -> str:
    """Card PDF address: one copy of card `card_id`."""
    return urljoin(base_url, f"?card_items_to_pdf={card_id},1")


class AdmissionGate:
    """
    Counting gate shared by all workers.

    Unlike a bare semaphore it can be closed: waiting and future acquirers
    fail with GateClosedError instead of blocking.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"Concurrency limit must be at least 1, got {limit}")
        self.limit = limit
        self._in_flight = 0
        self._peak = 0
        self._closed = False
        self._condition = threading.Condition()

    @property
    def in_flight(self) -> int:
        with self._condition:
            return self._in_flight

    @property
    def peak(self) -> int:
        with self._condition:
            return self._peak

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def acquire(self):
        with self._condition:
            while not self._closed and self._in_flight >= self.limit:
                self._condition.wait()
            if self._closed:
                raise GateClosedError("Fetch gate is closed")
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)

    def release(self):
        with self._condition:
            if self._in_flight == 0:
                raise RuntimeError("Fetch gate released more often than acquired")
            self._in_flight -= 1
            self._condition.notify()

    def reset_peak(self):
        """Start a new peak window at the current in-flight count."""
        with self._condition:
            self._peak = self._in_flight

    def close(self):
        with self._condition:
            self._closed = True
            self._condition.notify_all()


class FetchCoordinator:
    """
    Runs card units for a group with bounded fetch concurrency.

    Usage:
        coordinator = FetchCoordinator(base_url, concurrency=3)
        report = coordinator.run("cygnar", {"stryker": record}, pipeline.process_card)
    """

    def __init__(
        self,
        base_url: str,
        concurrency: int = DEFAULT_CONCURRENCY,
        workers: Optional[int] = None,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = validate_base_url(base_url)
        self.gate = AdmissionGate(concurrency)
        self.workers = workers or concurrency * 2
        if self.workers < 1:
            raise ValueError(f"Worker count must be at least 1, got {self.workers}")
        self.timeout = timeout

        self._owns_session = session is None
        self.session = session or requests.Session()
        if self._owns_session:
            self.session.headers["User-Agent"] = USER_AGENT

    def run(
        self,
        group: str,
        records: Mapping[str, CardRecord],
        process_card: CardProcessor,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> GroupReport:
        """
        Run one unit per keyed record and join them all.

        Args:
            group: Group tag, used for logging and the report.
            records: Card key → record, in processing order.
            process_card: Runs extraction and recognition on a fetched body.
            progress_callback: Optional callable(completed, total).

        Returns:
            GroupReport with one outcome per record, in input order.
        """
        total = len(records)
        outcomes: dict[str, UnitOutcome] = {}
        self.gate.reset_peak()
        logger.info(f"Group '{group}': {total} card(s), {self.gate.limit} fetch slot(s)")

        with ThreadPoolExecutor(
            max_workers=self.workers,
            thread_name_prefix=f"harvest-{group}",
        ) as pool:
            futures = {
                pool.submit(self._run_unit, key, record, process_card): (key, record)
                for key, record in records.items()
            }

            try:
                for done, future in enumerate(as_completed(futures), start=1):
                    key, record = futures[future]
                    outcomes[key] = self._outcome(key, record, future)
                    if progress_callback:
                        progress_callback(done, total)
            except BaseException:
                # Interrupted: queued units never start, running ones finish
                self.gate.close()
                for future in futures:
                    future.cancel()
                raise

        report = GroupReport(
            group=group,
            outcomes=[outcomes[key] for key in records],
            peak_in_flight=self.gate.peak,
        )
        logger.info(
            f"Group '{group}': {report.succeeded}/{report.total} card(s) succeeded"
        )
        return report

    def shutdown(self):
        """Stop admitting new fetches; in-flight units run to completion."""
        logger.info("Closing fetch gate")
        self.gate.close()

    def close(self):
        self.shutdown()
        if self._owns_session:
            self.session.close()

    # ─── Unit Execution ───────────────────────────────────────────────────

    def _run_unit(
        self, key: str, record: CardRecord, process_card: CardProcessor
    ) -> CardResult:
        url = build_card_url(self.base_url, record.id)
        logger.info(f"Acquiring {record.title}")

        self.gate.acquire()
        try:
            response = self._get(url)
        finally:
            self.gate.release()

        try:
            if not response.ok:
                raise FetchError(
                    f"GET {url} returned {response.status_code} {response.reason}"
                )
            response.raw.decode_content = True
            return process_card(record, key, response.raw)
        finally:
            response.close()

    def _get(self, url: str) -> requests.Response:
        try:
            return self.session.get(url, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"GET {url} failed: {e}") from e

    def _outcome(self, key: str, record: CardRecord, future) -> UnitOutcome:
        try:
            result = future.result()
        except Exception as e:
            logger.error(f"Card '{key}' ({record.id}) failed: {type(e).__name__}: {e}")
            logger.debug(f"Traceback for card '{key}'", exc_info=e)
            return UnitOutcome(
                key=key,
                card_id=record.id,
                title=record.title,
                succeeded=False,
                error_type=type(e).__name__,
                error=str(e),
            )

        return UnitOutcome(
            key=key,
            card_id=record.id,
            title=record.title,
            succeeded=True,
            result=result,
        )
