"""
Catalog Store — read-only access to the tool inventory and product URL lookup.

Both documents are plain text files substituted verbatim into the
recommendation prompt. They are read on every recommendation request; there is
no cache and no locking, so edits to the files take effect immediately.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from toolhire import config

logger = logging.getLogger(__name__)

CATALOG_UNAVAILABLE_MESSAGE = (
    "Error: Unable to access tool information or product URLs. Please try again later."
)


class CatalogUnavailable(Exception):
    """A catalog document is missing or unreadable."""


@dataclass(frozen=True)
class CatalogDocuments:
    tool_information: str
    product_urls: str


def read_document(filename: str, catalog_dir: Path | None = None) -> str:
    path = Path(catalog_dir or config.CATALOG_DIR) / filename
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.error(f"[catalog] Error reading from {path}: {e}")
        raise CatalogUnavailable(f"Catalog document unavailable: {filename}") from e


def read_catalog(catalog_dir: Path | None = None) -> CatalogDocuments:
    return CatalogDocuments(
        tool_information=read_document(config.TOOL_INFORMATION_FILE, catalog_dir),
        product_urls=read_document(config.PRODUCT_URLS_FILE, catalog_dir),
    )
