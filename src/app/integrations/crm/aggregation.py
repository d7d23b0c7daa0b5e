"""Reduce matched CRM records into one text value per mapped custom field."""

from __future__ import annotations

import math
from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog

from src.app.integrations.schemas import AggregationFunction, CrmRecord, FieldMapping

logger = structlog.get_logger(__name__)


def to_number(value: Any) -> float | None:
    """Parse a CRM property value as a finite number, else None."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def format_number(value: float) -> str:
    """Render without a trailing ``.0`` for whole numbers."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def round_cents(value: float) -> float:
    """Round to two decimals, halves away from zero."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def present_values(records: Sequence[CrmRecord], crm_property: str) -> list[Any]:
    """Property values across records, dropping missing and empty ones."""
    values = []
    for record in records:
        value = record.properties.get(crm_property)
        if value is None or value == "":
            continue
        values.append(value)
    return values


def reduce_values(values: list[Any], aggregation: str) -> str:
    """Apply one aggregation to non-empty values. Unknown names count."""
    try:
        function = AggregationFunction(aggregation)
    except ValueError:
        logger.warning("aggregation.unknown_function", aggregation=aggregation)
        function = AggregationFunction.COUNT

    if function is AggregationFunction.COUNT:
        return str(len(values))
    if function is AggregationFunction.COUNT_UNIQUE:
        return str(len({str(v) for v in values}))
    if function is AggregationFunction.SUM:
        return format_number(sum(to_number(v) or 0.0 for v in values))

    numbers = [n for n in (to_number(v) for v in values) if n is not None]
    if not numbers:
        return "0"
    if function is AggregationFunction.AVG:
        return format_number(round_cents(sum(numbers) / len(numbers)))
    if function is AggregationFunction.MAX:
        return format_number(max(numbers))
    return format_number(min(numbers))


def aggregate(
    records: Sequence[CrmRecord], field_mappings: Sequence[FieldMapping]
) -> dict[str, str]:
    """Compute ``{custom_field_id: value}`` for every mapping bound to a field."""
    result: dict[str, str] = {}
    for mapping in field_mappings:
        if not mapping.custom_field_id:
            continue
        values = present_values(records, mapping.crm_property)
        result[mapping.custom_field_id] = reduce_values(values, mapping.aggregation)
    return result
