"""
Card Harvester
==============
Harvests card renders and printed card statistics from a remote card
database.

Architecture:
    - Catalog Source: Parses the card listing into card records
    - Fetch Coordinator: Downloads one PDF per card behind an admission gate
    - Image Extractor: Pulls the full-resolution card render out of the PDF
    - Recognizer: Reads costs, sizes and allowances from fixed card regions
    - Index Sink: Writes a per-group JSON index of the recognized cards

Version: 1.0.0
"""

__version__ = "1.0.0"
