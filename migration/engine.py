"""
Query schema migration engine

Upgrades a stored Azure Monitor query record (one dashboard panel target) from
any historical shape to the current schema. Steps run in a fixed, explicit
order; each one checks for its legacy fields before acting, so running the
pipeline on an already-current record changes nothing.

Usage:
    from migration.engine import migrate_query

    record = migrate_query(stored_record)
"""

import copy
import logging
import re
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Sequence, Tuple

from api.models import SUB_RECORD_MODELS, legacy_field_names
from migration.dimension_filters import migrate_dimension_filters
from migration.field_renamer import APP_INSIGHTS_KEY_RENAMES, rename_fields
from utils.time_grain import (
    AUTO,
    InvalidDurationInput,
    is_iso8601_duration,
    time_grains_to_ms,
    to_iso8601,
)

logger = logging.getLogger(__name__)

MigrationStepFunc = Callable[[Dict[str, Any]], None]
MigrationStep = Tuple[str, MigrationStepFunc]

# Editor dropdown value meaning "nothing chosen yet"
NAMESPACE_PLACEHOLDER = "select"

# `$__from` / `$__to` only when followed by whitespace; `$__fromage` is left alone
FROM_MACRO_PATTERN = re.compile(r'\$__from(?=\s)', re.IGNORECASE)
TO_MACRO_PATTERN = re.compile(r'\$__to(?=\s)', re.IGNORECASE)


def _sub_record(record: Dict[str, Any], key: str):
    value = record.get(key)
    return value if isinstance(value, dict) else None


def _convert_time_grain(item: Dict[str, Any], count, sub_record_key: str) -> bool:
    """Replace item["timeGrain"] with an ISO duration; False if count/unit are unusable"""
    try:
        item["timeGrain"] = to_iso8601(count, item["timeGrainUnit"])
        return True
    except InvalidDurationInput as e:
        logger.warning(
            f"Leaving {sub_record_key}.timeGrain unmigrated: {e}",
            extra={"time_grain": item.get("timeGrain"), "time_grain_unit": item.get("timeGrainUnit")}
        )
        return False


def _migrate_unit_time_grain(item: Dict[str, Any], sub_record_key: str, backfill_count: bool) -> None:
    if not item.get("timeGrainUnit"):
        item.pop("timeGrainUnit", None)
        return

    time_grain = item.get("timeGrain")
    count = item.get("timeGrainCount") if backfill_count else None
    # A grain that is already ISO only needs rebuilding when a separate count exists
    if time_grain != AUTO and (count or not is_iso8601_duration(time_grain)):
        if not _convert_time_grain(item, count or time_grain, sub_record_key):
            # Keep the unit so a later load can retry
            return
        if backfill_count and not count:
            item["timeGrainCount"] = time_grain

    del item["timeGrainUnit"]


def _migrate_allowed_time_grains(item: Dict[str, Any]) -> None:
    if "timeGrains" not in item:
        return

    old_time_grains = item["timeGrains"]
    if old_time_grains and not item.get("allowedTimeGrainsMs"):
        item["allowedTimeGrainsMs"] = time_grains_to_ms(old_time_grains)

    if item.get("allowedTimeGrainsMs") or not old_time_grains:
        del item["timeGrains"]


def migrate_time_grains(record: Dict[str, Any]) -> None:
    """Count+unit time grains -> ISO-8601, and legacy grain lists -> allowedTimeGrainsMs"""
    azure_monitor = _sub_record(record, "azureMonitor")
    if azure_monitor is not None:
        _migrate_unit_time_grain(azure_monitor, "azureMonitor", backfill_count=False)
        _migrate_allowed_time_grains(azure_monitor)

    app_insights = _sub_record(record, "appInsights")
    if app_insights is not None:
        _migrate_unit_time_grain(app_insights, "appInsights", backfill_count=True)
        _migrate_allowed_time_grains(app_insights)


def migrate_macro_tokens(record: Dict[str, Any]) -> None:
    """Rewrite legacy $__from / $__to macros in Log Analytics queries"""
    logs = _sub_record(record, "azureLogAnalytics")
    if logs is None or not isinstance(logs.get("query"), str):
        return

    query = FROM_MACRO_PATTERN.sub("$__timeFrom()", logs["query"])
    logs["query"] = TO_MACRO_PATTERN.sub("$__timeTo()", query)


def migrate_default_namespace(record: Dict[str, Any], placeholder: str = NAMESPACE_PLACEHOLDER) -> None:
    """Use metricDefinition as the namespace when none has been chosen"""
    azure_monitor = _sub_record(record, "azureMonitor")
    if azure_monitor is None or not azure_monitor.get("metricDefinition"):
        return

    namespace = azure_monitor.get("metricNamespace")
    if namespace and namespace != placeholder:
        return

    azure_monitor["metricNamespace"] = azure_monitor["metricDefinition"]


def migrate_app_insights_keys(record: Dict[str, Any]) -> None:
    app_insights = _sub_record(record, "appInsights")
    if app_insights is not None:
        rename_fields(app_insights, APP_INSIGHTS_KEY_RENAMES)


def migrate_app_insights_dimensions(record: Dict[str, Any]) -> None:
    """appInsights.dimension is always a list"""
    app_insights = _sub_record(record, "appInsights")
    if app_insights is None:
        return

    dimension = app_insights.get("dimension")
    if not dimension:
        app_insights["dimension"] = []
    elif isinstance(dimension, str):
        app_insights["dimension"] = [dimension]


def migrate_metrics_dimension_filters(record: Dict[str, Any]) -> None:
    azure_monitor = _sub_record(record, "azureMonitor")
    if azure_monitor is not None:
        migrate_dimension_filters(azure_monitor)


# Order is part of the contract: later steps never re-trigger an earlier step's guard
MIGRATION_STEPS: List[MigrationStep] = [
    ("time_grains", migrate_time_grains),
    ("macro_tokens", migrate_macro_tokens),
    ("default_namespace", migrate_default_namespace),
    ("app_insights_keys", migrate_app_insights_keys),
    ("app_insights_dimensions", migrate_app_insights_dimensions),
    ("metrics_dimension_filters", migrate_metrics_dimension_filters),
]


def remaining_legacy_fields(record: Dict[str, Any]) -> List[str]:
    """Dotted paths of legacy fields still present (e.g. azureMonitor.timeGrainUnit)"""
    remaining = []
    for key in SUB_RECORD_MODELS:
        item = _sub_record(record, key)
        if item is None:
            continue
        remaining.extend(f"{key}.{name}" for name in legacy_field_names(key) if name in item)
    return remaining


@dataclass
class MigrationResult:
    record: Dict[str, Any]
    applied_steps: List[str] = field(default_factory=list)
    remaining_legacy_fields: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.applied_steps)


class QueryMigrationEngine:
    """Runs the ordered migration steps over a copy of a query record"""

    def __init__(
        self,
        steps: Sequence[MigrationStep] = None,
        namespace_placeholder: str = NAMESPACE_PLACEHOLDER
    ):
        self.namespace_placeholder = namespace_placeholder
        if steps is None:
            steps = [
                (step_id, partial(fn, placeholder=namespace_placeholder))
                if fn is migrate_default_namespace else (step_id, fn)
                for step_id, fn in MIGRATION_STEPS
            ]
        self.steps = list(steps)

    @property
    def step_ids(self) -> List[str]:
        return [step_id for step_id, _ in self.steps]

    def migrate_with_report(self, record: Dict[str, Any]) -> MigrationResult:
        """
        Migrate a copy of record and report which steps changed it.

        The input is never mutated; callers replace their reference with
        result.record.
        """
        if not isinstance(record, dict):
            raise ValueError(f"Query record must be an object, got {type(record).__name__}")

        start = time.perf_counter()
        migrated = copy.deepcopy(record)
        applied = []

        for step_id, step_fn in self.steps:
            before = copy.deepcopy(migrated)
            step_fn(migrated)
            if migrated != before:
                applied.append(step_id)

        result = MigrationResult(
            record=migrated,
            applied_steps=applied,
            remaining_legacy_fields=remaining_legacy_fields(migrated),
            duration_ms=(time.perf_counter() - start) * 1000,
        )

        if result.remaining_legacy_fields:
            logger.debug(
                f"Query {record.get('refId')} still has legacy fields after migration",
                extra={"remaining_legacy_fields": result.remaining_legacy_fields}
            )
        elif applied:
            logger.debug(f"Query {record.get('refId')} migrated: {', '.join(applied)}")

        return result

    def migrate(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return self.migrate_with_report(record).record


_default_engine = QueryMigrationEngine()


def migrate_query(record: Dict[str, Any], namespace_placeholder: str = NAMESPACE_PLACEHOLDER) -> Dict[str, Any]:
    """Migrate a stored query record to the current schema (returns a new dict)"""
    if namespace_placeholder == NAMESPACE_PLACEHOLDER:
        return _default_engine.migrate(record)
    return QueryMigrationEngine(namespace_placeholder=namespace_placeholder).migrate(record)
