#!/usr/bin/env python3
"""
Tests for the query schema migration engine.

Covers each migration step on its own, the step order, and idempotence of
the full pipeline over old and current record shapes.
"""

import copy
import logging

import pytest

from migration.dimension_filters import migrate_dimension_filters
from migration.engine import (
    MIGRATION_STEPS,
    QueryMigrationEngine,
    migrate_default_namespace,
    migrate_macro_tokens,
    migrate_query,
    migrate_time_grains,
    remaining_legacy_fields,
)
from migration.field_renamer import APP_INSIGHTS_KEY_RENAMES, COLLISION_POLICY, rename_fields


def legacy_record():
    """A record as persisted by an old release, with every legacy field set"""
    return {
        "refId": "A",
        "queryType": "Azure Monitor",
        "subscription": "sub-1",
        "azureMonitor": {
            "resourceGroup": "rg",
            "resourceName": "vm-1",
            "metricDefinition": "Microsoft.Compute/virtualMachines",
            "metricName": "Percentage CPU",
            "timeGrain": "5",
            "timeGrainUnit": "minute",
            "dimension": "Location",
            "dimensionFilter": "eastus",
            "timeGrains": [
                {"text": "auto", "value": "auto"},
                {"text": "1 minute", "value": "PT1M"},
                {"text": "1 hour", "value": "PT1H"},
            ],
            "customField": {"kept": True},
        },
        "azureLogAnalytics": {
            "query": "Perf | where TimeGenerated > $__from and TimeGenerated < $__to\n| take 10",
            "resultFormat": "time_series",
            "workspace": "ws-1",
        },
        "appInsights": {
            "metricName": "requests/count",
            "timeGrain": "10",
            "timeGrainUnit": "minute",
            "xaxis": "timestamp",
            "yaxis": "count",
            "spliton": "client_City",
            "groupBy": "client/city",
            "groupByOptions": ["client/city", "client/os"],
            "filter": "client/os eq 'Linux'",
            "timeGrains": [{"text": "5 minutes", "value": "PT5M"}],
        },
        "insightsAnalytics": {"query": "requests | take 5", "resultFormat": "table"},
        "datasource": {"uid": "azure"},
    }


def test_step_order_is_explicit():
    assert [step_id for step_id, _ in MIGRATION_STEPS] == [
        "time_grains",
        "macro_tokens",
        "default_namespace",
        "app_insights_keys",
        "app_insights_dimensions",
        "metrics_dimension_filters",
    ]
    assert QueryMigrationEngine().step_ids == [step_id for step_id, _ in MIGRATION_STEPS]


def test_full_legacy_record_migrates_to_canonical_shape():
    migrated = migrate_query(legacy_record())

    azure_monitor = migrated["azureMonitor"]
    assert azure_monitor["timeGrain"] == "PT5M"
    assert "timeGrainUnit" not in azure_monitor
    assert "timeGrains" not in azure_monitor
    assert azure_monitor["allowedTimeGrainsMs"] == [60000, 3600000]
    assert azure_monitor["metricNamespace"] == "Microsoft.Compute/virtualMachines"
    assert azure_monitor["dimensionFilters"] == [
        {"dimension": "Location", "operator": "eq", "filter": "eastus"}
    ]
    assert "dimension" not in azure_monitor
    assert "dimensionFilter" not in azure_monitor
    assert azure_monitor["customField"] == {"kept": True}

    logs = migrated["azureLogAnalytics"]
    assert logs["query"] == "Perf | where TimeGenerated > $__timeFrom() and TimeGenerated < $__timeTo()\n| take 10"

    app_insights = migrated["appInsights"]
    assert app_insights["timeGrain"] == "PT10M"
    assert app_insights["timeGrainCount"] == "10"
    assert "timeGrainUnit" not in app_insights
    assert app_insights["allowedTimeGrainsMs"] == [300000]
    assert app_insights["timeColumn"] == "timestamp"
    assert app_insights["valueColumn"] == "count"
    assert app_insights["segmentColumn"] == "client_City"
    assert app_insights["dimension"] == ["client/city"]
    assert app_insights["dimensions"] == ["client/city", "client/os"]
    assert app_insights["dimensionFilter"] == "client/os eq 'Linux'"
    for old_key in APP_INSIGHTS_KEY_RENAMES:
        assert old_key not in app_insights

    assert migrated["insightsAnalytics"] == {"query": "requests | take 5", "resultFormat": "table"}
    assert migrated["datasource"] == {"uid": "azure"}
    assert remaining_legacy_fields(migrated) == []


def test_migration_does_not_mutate_input():
    record = legacy_record()
    snapshot = copy.deepcopy(record)
    migrate_query(record)
    assert record == snapshot


def test_migration_is_idempotent():
    records = [
        legacy_record(),
        {"refId": "B"},
        {"refId": "C", "azureMonitor": {"timeGrain": "auto", "timeGrainUnit": "hour"}},
        {"refId": "D", "appInsights": {"timeGrain": "3", "timeGrainUnit": "fortnight"}},
        {"refId": "E", "azureMonitor": {"dimension": "None", "dimensionFilter": ""}},
        {"refId": "F", "appInsights": {"dimension": "", "groupBy": ""}},
    ]
    for record in records:
        once = migrate_query(record)
        assert migrate_query(once) == once


def test_second_run_reports_no_applied_steps():
    engine = QueryMigrationEngine()
    first = engine.migrate_with_report(legacy_record())
    assert first.changed
    assert set(first.applied_steps) == {step_id for step_id, _ in MIGRATION_STEPS}

    second = engine.migrate_with_report(first.record)
    assert second.applied_steps == []
    assert second.record == first.record


def test_missing_sub_records_are_tolerated():
    assert migrate_query({"refId": "A", "queryType": "Azure Monitor"}) == {
        "refId": "A",
        "queryType": "Azure Monitor",
    }
    assert migrate_query({"refId": "A", "azureMonitor": None}) == {"refId": "A", "azureMonitor": None}


def test_non_dict_record_is_rejected():
    with pytest.raises(ValueError):
        migrate_query(["not", "a", "record"])


# Time grains

def test_auto_time_grain_drops_unit_without_conversion():
    record = {"azureMonitor": {"timeGrain": "auto", "timeGrainUnit": "minute"}}
    migrate_time_grains(record)
    assert record["azureMonitor"] == {"timeGrain": "auto"}


def test_metrics_time_grain_day_unit():
    record = {"azureMonitor": {"timeGrain": "1", "timeGrainUnit": "day"}}
    migrate_time_grains(record)
    assert record["azureMonitor"] == {"timeGrain": "P1D"}


def test_already_iso_time_grain_only_drops_unit():
    record = {"azureMonitor": {"timeGrain": "PT15M", "timeGrainUnit": "minute"}}
    migrate_time_grains(record)
    assert record["azureMonitor"] == {"timeGrain": "PT15M"}


def test_invalid_time_grain_is_left_for_a_later_load():
    record = {"azureMonitor": {"timeGrain": "abc", "timeGrainUnit": "minute"}}
    migrated = migrate_query(record)
    assert migrated["azureMonitor"]["timeGrain"] == "abc"
    assert migrated["azureMonitor"]["timeGrainUnit"] == "minute"
    assert remaining_legacy_fields(migrated) == ["azureMonitor.timeGrainUnit"]


def test_app_insights_uses_existing_time_grain_count():
    record = {"appInsights": {"timeGrain": "PT1M", "timeGrainCount": "15", "timeGrainUnit": "minute"}}
    migrate_time_grains(record)
    assert record["appInsights"] == {"timeGrain": "PT15M", "timeGrainCount": "15"}

    record = {"appInsights": {"timeGrain": "PT30M", "timeGrainUnit": "minute"}}
    migrate_time_grains(record)
    assert record["appInsights"] == {"timeGrain": "PT30M"}

    record = {"appInsights": {"timeGrain": "1", "timeGrainCount": "15", "timeGrainUnit": "minute"}}
    migrate_time_grains(record)
    assert record["appInsights"] == {"timeGrain": "PT15M", "timeGrainCount": "15"}


def test_app_insights_backfills_time_grain_count():
    record = {"appInsights": {"timeGrain": "2", "timeGrainUnit": "hour"}}
    migrate_time_grains(record)
    assert record["appInsights"] == {"timeGrain": "PT2H", "timeGrainCount": "2"}


def test_app_insights_invalid_unit_leaves_fields_untouched():
    record = {"appInsights": {"timeGrain": "3", "timeGrainUnit": "fortnight"}}
    migrate_time_grains(record)
    assert record["appInsights"] == {"timeGrain": "3", "timeGrainUnit": "fortnight"}


def test_existing_allowed_time_grains_are_not_overwritten():
    record = {"azureMonitor": {
        "timeGrains": [{"text": "1 hour", "value": "PT1H"}],
        "allowedTimeGrainsMs": [60000],
    }}
    migrate_time_grains(record)
    assert record["azureMonitor"] == {"allowedTimeGrainsMs": [60000]}


def test_empty_legacy_time_grains_are_dropped():
    record = {"azureMonitor": {"timeGrains": []}}
    migrate_time_grains(record)
    assert record["azureMonitor"] == {}


# Macro tokens

def test_macro_rewrite():
    record = {"azureLogAnalytics": {"query": "| where $__from and x"}}
    migrate_macro_tokens(record)
    assert record["azureLogAnalytics"]["query"] == "| where $__timeFrom() and x"


def test_macro_rewrite_is_case_insensitive_and_keeps_whitespace():
    record = {"azureLogAnalytics": {"query": "x > $__FROM\tand x < $__To\n"}}
    migrate_macro_tokens(record)
    assert record["azureLogAnalytics"]["query"] == "x > $__timeFrom()\tand x < $__timeTo()\n"


def test_macro_rewrite_leaves_longer_identifiers_alone():
    for query in ("$__fromage", "| where $__toDate and $__from", "$__timeFrom() and $__timeTo()"):
        record = {"azureLogAnalytics": {"query": query}}
        migrate_macro_tokens(record)
        assert record["azureLogAnalytics"]["query"] == query


def test_macro_rewrite_skips_missing_query():
    record = {"azureLogAnalytics": {"workspace": "ws"}}
    migrate_macro_tokens(record)
    assert record == {"azureLogAnalytics": {"workspace": "ws"}}


# Default namespace

def test_namespace_defaults_to_metric_definition():
    record = {"azureMonitor": {"metricDefinition": "Microsoft.Compute/virtualMachines", "metricNamespace": None}}
    migrate_default_namespace(record)
    assert record["azureMonitor"]["metricNamespace"] == "Microsoft.Compute/virtualMachines"


def test_namespace_placeholder_is_replaced():
    record = {"azureMonitor": {"metricDefinition": "Microsoft.Web/sites", "metricNamespace": "select"}}
    migrate_default_namespace(record)
    assert record["azureMonitor"]["metricNamespace"] == "Microsoft.Web/sites"


def test_resolved_namespace_is_never_overwritten():
    record = {"azureMonitor": {
        "metricDefinition": "Microsoft.Compute/virtualMachines",
        "metricNamespace": "Microsoft.Compute/virtualMachineScaleSets",
    }}
    snapshot = copy.deepcopy(record)
    migrate_default_namespace(record)
    assert record == snapshot


def test_namespace_without_metric_definition_is_left_alone():
    record = {"azureMonitor": {"metricNamespace": "select"}}
    migrate_default_namespace(record)
    assert record == {"azureMonitor": {"metricNamespace": "select"}}


def test_custom_namespace_placeholder():
    engine = QueryMigrationEngine(namespace_placeholder="none")
    migrated = engine.migrate({"azureMonitor": {"metricDefinition": "ns", "metricNamespace": "none"}})
    assert migrated["azureMonitor"]["metricNamespace"] == "ns"
    assert migrate_query({"azureMonitor": {"metricDefinition": "ns", "metricNamespace": "none"}},
                         namespace_placeholder="none")["azureMonitor"]["metricNamespace"] == "ns"


# Key renames and dimensions

def test_rename_collision_keeps_legacy_value():
    assert COLLISION_POLICY == "legacy_wins"
    record = {"xaxis": "legacy_time", "timeColumn": "new_time"}
    rename_fields(record)
    assert record == {"timeColumn": "legacy_time"}


def test_rename_drops_empty_legacy_values():
    record = {"groupBy": "", "dimension": ["client/city"], "filter": None}
    rename_fields(record)
    assert record == {"dimension": ["client/city"]}

    record = {"xaxis": "", "timeColumn": "t"}
    rename_fields(record)
    assert record == {"timeColumn": "t"}


def test_app_insights_dimension_shapes():
    assert migrate_query({"appInsights": {}})["appInsights"]["dimension"] == []
    assert migrate_query({"appInsights": {"dimension": "cloud/role"}})["appInsights"]["dimension"] == ["cloud/role"]
    assert migrate_query({"appInsights": {"dimension": ["a", "b"]}})["appInsights"]["dimension"] == ["a", "b"]


# Dimension filters

def test_dimension_filter_scenario():
    item = {"dimension": "Location", "dimensionFilter": "eastus", "dimensionFilters": None}
    assert migrate_dimension_filters(item) == {
        "dimensionFilters": [{"dimension": "Location", "operator": "eq", "filter": "eastus"}]
    }


def test_none_dimension_sentinel_adds_nothing():
    item = {"dimension": "None", "dimensionFilter": ""}
    assert migrate_dimension_filters(item) == {"dimensionFilters": []}


def test_dimension_filter_appends_to_existing_filters():
    item = {
        "dimension": "Location",
        "dimensionFilters": [{"dimension": "Tier", "operator": "ne", "filter": "free"}],
    }
    migrate_dimension_filters(item)
    assert item["dimensionFilters"] == [
        {"dimension": "Tier", "operator": "ne", "filter": "free"},
        {"dimension": "Location", "operator": "eq", "filter": "*"},
    ]


def test_dimension_filters_already_current_is_noop():
    item = {"dimensionFilters": [{"dimension": "Tier", "operator": "eq", "filter": "*"}]}
    snapshot = copy.deepcopy(item)
    migrate_dimension_filters(item)
    migrate_dimension_filters(item)
    assert item == snapshot


def test_stray_dimension_filter_is_dropped():
    item = {"dimensionFilter": "*", "dimensionFilters": []}
    assert migrate_dimension_filters(item) == {"dimensionFilters": []}


def test_empty_legacy_filter_is_kept_as_is():
    item = {"dimension": "Location", "dimensionFilter": ""}
    assert migrate_dimension_filters(item) == {
        "dimensionFilters": [{"dimension": "Location", "operator": "eq", "filter": ""}]
    }

    item = {"dimension": "Location", "dimensionFilter": None}
    assert migrate_dimension_filters(item)["dimensionFilters"][0]["filter"] == "*"


def test_leftover_fields_are_not_warned_by_the_engine(caplog):
    with caplog.at_level(logging.DEBUG, logger="migration.engine"):
        result = QueryMigrationEngine().migrate_with_report(
            {"refId": "A", "azureMonitor": {"timeGrain": "soon", "timeGrainUnit": "minute"}}
        )

    assert result.remaining_legacy_fields == ["azureMonitor.timeGrainUnit"]
    leftovers = [r for r in caplog.records if "still has legacy fields" in r.getMessage()]
    assert [r.levelno for r in leftovers] == [logging.DEBUG]
