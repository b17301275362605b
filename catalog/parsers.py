"""Catalog file parsing.

Provider catalogs arrive as CSV with at least ``providerCode``, ``sku``,
``name``, ``description`` and ``category`` columns, plus any number of extra
columns (``tags``, ``brand``, ``color`` ...).
"""
from __future__ import annotations

import logging
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)


class ParseError(Exception):
    """Raised when a catalog file cannot be read."""
    pass


def read_catalog_rows(path: str | Path) -> list[dict[str, str]]:
    """Read a catalog CSV into ordered row maps.

    Every cell is read as a string; empty cells become ``""`` rather than NaN
    so that required-field checks see them as blank.

    Args:
        path: Location of the stored upload

    Returns:
        List of dictionaries (one per row, in file order)

    Raises:
        ParseError: If the file is missing or is not valid CSV
    """
    try:
        df = pd.read_csv(path, dtype=str, keep_default_na=False, encoding="utf-8")
    except pd.errors.EmptyDataError:
        logger.info(f"Catalog file {path} has no data")
        return []
    except Exception as e:
        logger.error(f"CSV parsing failed for {path}: {e}")
        raise ParseError(f"Failed to parse CSV: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    logger.info(f"Parsed catalog CSV with {len(df)} rows and {len(df.columns)} columns")
    return df.to_dict("records")
