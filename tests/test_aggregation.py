"""Aggregation tests: reduction functions and mapping application."""

from __future__ import annotations

from src.app.integrations.crm.aggregation import (
    aggregate,
    format_number,
    reduce_values,
    to_number,
)
from src.app.integrations.schemas import CrmRecord, FieldMapping


def _records(*amounts) -> list[CrmRecord]:
    return [
        CrmRecord(id=str(i), properties={"amount": amount, "dealstage": stage})
        for i, (amount, stage) in enumerate(amounts)
    ]


# ── Numbers ──────────────────────────────────────────────────────────────────


def test_to_number():
    assert to_number("10") == 10.0
    assert to_number("1.5") == 1.5
    assert to_number("abc") is None
    assert to_number(None) is None
    assert to_number("inf") is None
    assert to_number(True) is None


def test_format_number_drops_trailing_zero():
    assert format_number(30.0) == "30"
    assert format_number(12.5) == "12.5"


# ── Reductions ───────────────────────────────────────────────────────────────


class TestReduceValues:
    def test_sum(self):
        assert reduce_values(["10", "20"], "sum") == "30"

    def test_sum_treats_non_numeric_as_zero(self):
        assert reduce_values(["10", "n/a", "5.5"], "sum") == "15.5"

    def test_count(self):
        assert reduce_values(["10", "20"], "count") == "2"

    def test_avg_rounded_to_two_places(self):
        assert reduce_values(["10", "15"], "avg") == "12.5"
        assert reduce_values(["1", "1", "2"], "avg") == "1.33"

    def test_avg_rounds_halves_up(self):
        assert reduce_values(["0.125"], "avg") == "0.13"
        assert reduce_values(["0.005"], "avg") == "0.01"

    def test_count_unique(self):
        assert reduce_values(["closedwon", "closedwon", "qualified"], "count_unique") == "2"

    def test_max_and_min(self):
        assert reduce_values(["10", "30", "20"], "max") == "30"
        assert reduce_values(["10", "30", "20"], "min") == "10"

    def test_max_min_avg_without_numbers_is_zero(self):
        for function in ("max", "min", "avg"):
            assert reduce_values(["n/a"], function) == "0"
            assert reduce_values([], function) == "0"

    def test_unknown_function_counts(self):
        assert reduce_values(["a", "b", "c"], "median") == "3"

    def test_empty_sum_and_count(self):
        assert reduce_values([], "sum") == "0"
        assert reduce_values([], "count") == "0"


# ── Mapping Application ──────────────────────────────────────────────────────


class TestAggregate:
    def test_one_value_per_bound_mapping(self):
        records = _records(("10", "closedwon"), ("20", "qualified"))
        mappings = [
            FieldMapping(crm_property="amount", aggregation="sum", custom_field_id="cf-rev"),
            FieldMapping(crm_property="dealstage", aggregation="count", custom_field_id="cf-n"),
            FieldMapping(crm_property="amount", aggregation="avg", custom_field_name="Unsaved"),
        ]

        assert aggregate(records, mappings) == {"cf-rev": "30", "cf-n": "2"}

    def test_missing_and_empty_values_are_skipped(self):
        records = [
            CrmRecord(id="1", properties={"amount": "10"}),
            CrmRecord(id="2", properties={"amount": ""}),
            CrmRecord(id="3", properties={}),
        ]
        mapping = FieldMapping(crm_property="amount", aggregation="count", custom_field_id="cf")
        assert aggregate(records, [mapping]) == {"cf": "1"}

    def test_no_records(self):
        mapping = FieldMapping(crm_property="amount", aggregation="sum", custom_field_id="cf")
        assert aggregate([], [mapping]) == {"cf": "0"}
