"""
Image Extractor
===============
Pulls the full-resolution card render out of a card PDF using PyMuPDF
(fitz). Walks pages → /Resources → /XObject and copies the raw stream of
every image XObject with the expected pixel size, without re-encoding.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import BinaryIO, Iterator, Union

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_WIDTH = 750
DEFAULT_IMAGE_HEIGHT = 1050

# Raw stream filter → file extension the bytes are valid as
FILTER_EXTENSIONS = {
    "/DCTDecode": "jpg",
    "/JPXDecode": "jp2",
}

# "12 0 R"
REFERENCE_PATTERN = re.compile(r"^(\d+)\s+(\d+)\s+R$")

# Entries of an inline dictionary: "/Im0 12 0 R", "/Im1 <<...>>", "/Name /Value"
DICT_ENTRY_PATTERN = re.compile(
    r"/([^\s/<>\[\]()]+)\s*(\d+\s+\d+\s+R|<<.*?>>|\[.*?\]|/?[^\s/<>\[\]()]+)",
    re.DOTALL,
)

# Parent-chain depth limit when looking for inherited resources
_MAX_PAGE_TREE_DEPTH = 32

DocumentSource = Union[bytes, bytearray, BinaryIO]


class ImageExtractionError(RuntimeError):
    """Raised when a document cannot be opened or lacks its resource graph."""


class NoQualifyingImageError(ImageExtractionError):
    """Raised when a document holds no image with the expected size."""


class ImageExtractor:
    """
    Extracts card renders from card PDFs.

    Only images of exactly `width` x `height` pixels qualify; thumbnails,
    icons and other assets are skipped silently. Numbering counts
    qualifying images only: key-1, key-2, ...
    """

    def __init__(
        self,
        width: int = DEFAULT_IMAGE_WIDTH,
        height: int = DEFAULT_IMAGE_HEIGHT,
        default_ext: str = "jpg",
    ):
        if width <= 0 or height <= 0:
            raise ValueError(f"Image size must be positive, got {width}x{height}")
        self.width = width
        self.height = height
        self.default_ext = default_ext

    def extract(
        self,
        source: DocumentSource,
        output_dir: str | Path,
        key: str,
    ) -> list[str]:
        """
        Extract every qualifying image of a card PDF.

        Args:
            source: PDF bytes or a binary stream holding them.
            output_dir: Directory the images are written into.
            key: Card key used as the filename prefix.

        Returns:
            Filenames (relative to output_dir) in structural order.

        Raises:
            ImageExtractionError: If the document is unreadable or has no
                resource / XObject dictionaries.
            NoQualifyingImageError: If no image matched the expected size.
        """
        data = source.read() if hasattr(source, "read") else bytes(source)
        output_dir = Path(output_dir)

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ImageExtractionError(f"Unreadable document for '{key}': {e}") from e

        # Non-PDF content (e.g. an HTML error page) may open as another format
        if not doc.is_pdf or doc.xref_length() == 0:
            doc.close()
            raise ImageExtractionError(f"Document for '{key}' is not a PDF")

        filenames: list[str] = []
        try:
            with doc:
                for xref in self._iter_xobject_references(doc, key):
                    if not self._is_card_image(doc, xref):
                        continue

                    ext = self._extension_for(doc, xref)
                    filename = f"{key}-{len(filenames) + 1}.{ext}"
                    self._write_atomic(output_dir / filename, doc.xref_stream_raw(xref))
                    filenames.append(filename)
        except Exception:
            discard(output_dir, filenames)
            raise

        if not filenames:
            raise NoQualifyingImageError(
                f"No {self.width}x{self.height} image found for '{key}'"
            )

        logger.debug(f"Extracted {len(filenames)} image(s) for '{key}'")
        return filenames

    # ─── Structural Walk ──────────────────────────────────────────────────

    def _iter_xobject_references(self, doc: fitz.Document, key: str) -> Iterator[int]:
        """
        Yield the xref of every indirect /XObject entry in order.

        Every entry counts, even when two entries reference the same
        object. A resource holder shared by several pages through
        inheritance is walked once. Non-reference entries are skipped.
        """
        if doc.page_count == 0:
            raise ImageExtractionError(f"Document for '{key}' has no pages")

        walked: set[int] = set()
        found_dictionary = False

        for page in doc:
            holder = self._find_resources_holder(doc, page.xref)
            if holder is None:
                continue

            # Pages sharing one resources object contribute its entries once
            resources_type, resources = doc.xref_get_key(holder, "Resources")
            match = REFERENCE_PATTERN.match(resources.strip())
            identity = int(match.group(1)) if resources_type == "xref" and match else holder
            if identity in walked:
                continue
            walked.add(identity)

            xobjects = doc.xref_get_key(holder, "Resources/XObject")
            entries = self._dict_entries(doc, xobjects)
            if entries is None:
                continue
            found_dictionary = True

            for name, (value_type, value) in entries:
                if value_type != "xref":
                    logger.debug(f"Skipping inline XObject /{name}")
                    continue
                match = REFERENCE_PATTERN.match(value.strip())
                if match:
                    yield int(match.group(1))

        if not found_dictionary:
            raise ImageExtractionError(
                f"Document for '{key}' has no /Resources /XObject dictionary"
            )

    def _find_resources_holder(self, doc: fitz.Document, page_xref: int) -> int | None:
        """Return the page-tree node carrying the page's (inherited) /Resources."""
        node = page_xref
        for _ in range(_MAX_PAGE_TREE_DEPTH):
            value_type, _value = doc.xref_get_key(node, "Resources")
            if value_type != "null":
                return node

            parent_type, parent = doc.xref_get_key(node, "Parent")
            if parent_type != "xref":
                return None
            match = REFERENCE_PATTERN.match(parent.strip())
            if not match:
                return None
            node = int(match.group(1))
        return None

    def _dict_entries(
        self, doc: fitz.Document, item: tuple[str, str]
    ) -> list[tuple[str, tuple[str, str]]] | None:
        """List (name, (type, value)) entries of a dictionary value, or None."""
        value_type, value = item

        if value_type == "xref":
            match = REFERENCE_PATTERN.match(value.strip())
            if not match:
                return None
            xref = int(match.group(1))
            return [(k, doc.xref_get_key(xref, k)) for k in doc.xref_get_keys(xref)]

        if value_type == "dict":
            entries = []
            for name, raw in DICT_ENTRY_PATTERN.findall(value):
                raw = raw.strip()
                kind = "xref" if REFERENCE_PATTERN.match(raw) else "inline"
                entries.append((name, (kind, raw)))
            return entries

        return None

    # ─── Predicates ───────────────────────────────────────────────────────

    def _is_card_image(self, doc: fitz.Document, xref: int) -> bool:
        if not 0 < xref < doc.xref_length():
            return False

        if not doc.xref_object(xref, compressed=True).lstrip().startswith("<<"):
            return False

        if doc.xref_get_key(xref, "Subtype") != ("name", "/Image"):
            return False

        width = self._int_key(doc, xref, "Width")
        height = self._int_key(doc, xref, "Height")
        return width == self.width and height == self.height

    def _int_key(self, doc: fitz.Document, xref: int, key: str) -> int | None:
        value_type, value = doc.xref_get_key(xref, key)
        if value_type != "int":
            return None
        return int(value)

    def _extension_for(self, doc: fitz.Document, xref: int) -> str:
        value_type, value = doc.xref_get_key(xref, "Filter")
        if value_type == "name":
            return FILTER_EXTENSIONS.get(value, self.default_ext)
        return self.default_ext

    # ─── Output ───────────────────────────────────────────────────────────

    def _write_atomic(self, path: Path, payload: bytes):
        """Write via a temporary file so readers never see a partial image."""
        tmp_path = path.with_name(f".{path.name}.part")
        with open(tmp_path, "wb") as f:
            f.write(payload)
        os.replace(tmp_path, path)


def discard(output_dir: str | Path, filenames: list[str]) -> int:
    """Delete images written by a unit that did not complete."""
    count = 0
    for name in filenames:
        path = Path(output_dir) / name
        if path.exists():
            path.unlink()
            count += 1
    if count:
        logger.info(f"Discarded {count} image(s) in {output_dir}")
    return count
