"""Precondition checks run before any catalog version is created.

Checks short-circuit in order: provider exists, file has rows, every row has
the required fields, every row belongs to the uploading provider.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from catalog import models
from catalog.errors import PreconditionError
from catalog.parsers import ParseError, read_catalog_rows
from catalog.providers import ProviderDirectory

logger = logging.getLogger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = ("providerCode", "sku", "name", "description", "category")

RowReader = Callable[[str], list[dict[str, str]]]


@dataclass
class ValidatedCatalog:
    provider: models.Provider
    items: list[dict[str, str]]


def normalize_code(code: str) -> str:
    return code.strip().casefold()


def _blank(value: object) -> bool:
    return value is None or not str(value).strip()


def check_rows(provider: models.Provider, rows: list[dict[str, str]]) -> None:
    """Raise ``PreconditionError`` for the first offending row."""
    if not rows:
        raise PreconditionError("CSV file is empty or invalid")

    for row in rows:
        for field_name in REQUIRED_FIELDS:
            if _blank(row.get(field_name)):
                raise PreconditionError(
                    f"Missing required field {field_name} in item with SKU {row.get('sku') or ''}".rstrip()
                )

    expected = normalize_code(provider.code)
    for row in rows:
        if normalize_code(row["providerCode"]) != expected:
            raise PreconditionError(
                f"Invalid provider code {row['providerCode']} in item with SKU {row['sku']}. "
                f"Expected provider code: {provider.code}"
            )


class PreconditionValidator:
    def __init__(self, providers: ProviderDirectory, read_rows: RowReader = read_catalog_rows) -> None:
        self._providers = providers
        self._read_rows = read_rows

    async def validate(self, provider_id: str, file_ref: str) -> ValidatedCatalog:
        """Return the provider and its parsed rows, or raise ``PreconditionError``."""
        provider = await self._providers.get_by_id_or_code(provider_id)
        if provider is None:
            raise PreconditionError("Provider not found")

        try:
            rows = await asyncio.to_thread(self._read_rows, file_ref)
        except ParseError as e:
            raise PreconditionError(f"CSV file is empty or invalid: {e}") from e

        check_rows(provider, rows)
        logger.info(f"Catalog {file_ref} passed preconditions for provider {provider.code} ({len(rows)} items)")
        return ValidatedCatalog(provider=provider, items=rows)
