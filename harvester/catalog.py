"""
Catalog Source
==============
Downloads the card listing page and turns it into card records.

The listing renders one `<carditem>` element per card, e.g.
    <carditem :card="1342" faction="cygnar" job="warcaster" title="Stryker">
and a tab bar naming each faction:
    <div id="general-faction-tabs"> <a class="mdl-tabs__tab" href="#cygnar"
    title="Cygnar"> ...
"""

from __future__ import annotations

import html
import logging
import re
from typing import Optional

import requests

from .models import Catalog, CardRecord

logger = logging.getLogger(__name__)

CARD_ITEM_PATTERN = re.compile(r"<carditem\b([^>]*)>", re.IGNORECASE)
FACTION_TABS_PATTERN = re.compile(
    r"<div[^>]*\bid=[\"']general-faction-tabs[\"'][^>]*>(.*)",
    re.IGNORECASE | re.DOTALL,
)
ANCHOR_PATTERN = re.compile(r"<a\b([^>]*)>", re.IGNORECASE)
ATTRIBUTE_PATTERN = re.compile(r"([:\w-]+)\s*=\s*([\"'])(.*?)\2", re.DOTALL)

TAB_CLASS = "mdl-tabs__tab"


def _attributes(tag_body: str) -> dict[str, str]:
    """Attribute name → raw value for one tag."""
    return {
        name.lower(): value
        for name, _quote, value in ATTRIBUTE_PATTERN.findall(tag_body)
    }


def _card_id(raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def parse_card_items(page: str) -> list[CardRecord]:
    """Card records in listing order. Malformed items are logged and skipped."""
    records: list[CardRecord] = []

    for match in CARD_ITEM_PATTERN.finditer(page):
        attrs = _attributes(match.group(1))
        try:
            records.append(CardRecord(
                id=_card_id(attrs.get(":card", "0")),
                group=attrs.get("faction") or "unknown",
                category=attrs.get("job") or "job",
                title=attrs.get("title") or "unknown",
            ))
        except ValueError as e:
            logger.warning(f"Skipping malformed card item {match.group(0)!r}: {e}")

    return records


def parse_group_names(page: str) -> dict[str, str]:
    """Group tag → display name from the faction tab bar."""
    section = FACTION_TABS_PATTERN.search(page)
    if not section:
        logger.warning("Faction tab bar not found in listing")
        return {}

    names: dict[str, str] = {}
    for anchor in ANCHOR_PATTERN.finditer(section.group(1)):
        attrs = _attributes(anchor.group(1))
        if TAB_CLASS not in attrs.get("class", "").split():
            continue

        href = attrs.get("href", "")
        title = html.unescape(attrs.get("title", ""))
        if not href.startswith("#") or not title:
            continue
        names[href[1:]] = title

    return names


def parse_catalog(page: str) -> Catalog:
    records = parse_card_items(page)
    group_names = parse_group_names(page)
    logger.info(
        f"Catalog: {len(records)} card(s) in {len(group_names)} named group(s)"
    )
    return Catalog(records=records, group_names=group_names)


def fetch_catalog(
    base_url: str,
    session: Optional[requests.Session] = None,
    timeout: float = 60,
) -> Catalog:
    """
    Download and parse the card listing.

    Raises:
        requests.HTTPError: If the listing cannot be downloaded.
    """
    logger.info(f"Downloading card listing from {base_url}")
    getter = session or requests
    try:
        response = getter.get(base_url, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(f"An error occurred downloading the listing from {base_url}: {e}")
        raise

    return parse_catalog(response.text)
