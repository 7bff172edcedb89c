"""Registry of import types and their converters."""

from __future__ import annotations

from score_etl import convert_fervidex, convert_mer_iidx
from score_etl.catalog import CatalogLookup
from score_etl.converter import Converter
from score_etl.failures import UnknownImportTypeError

CONVERTERS: dict[str, type[Converter]] = {
    convert_fervidex.IMPORT_TYPE: convert_fervidex.FervidexConverter,
    convert_mer_iidx.IMPORT_TYPE: convert_mer_iidx.MerIIDXConverter,
}


def get_converter(import_type: str, catalog: CatalogLookup) -> Converter:
    try:
        converter_cls = CONVERTERS[import_type]
    except KeyError:
        raise UnknownImportTypeError(
            f"Unknown import type {import_type!r}. Known: {sorted(CONVERTERS)}"
        ) from None
    return converter_cls(catalog)
