"""
Dashboard-level migration.

Walks every panel of a dashboard JSON document (including panels nested in
collapsed rows) and migrates each Azure Monitor target. Targets from other
datasources are left untouched.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from api.models import AzureQueryTypeEnum
from migration.engine import QueryMigrationEngine

logger = logging.getLogger(__name__)

SUB_RECORD_KEYS = ("azureMonitor", "azureLogAnalytics", "appInsights", "insightsAnalytics")
QUERY_TYPES = {query_type.value for query_type in AzureQueryTypeEnum}


@dataclass
class DashboardMigrationReport:
    targets_seen: int = 0
    targets_migrated: int = 0
    # "<panel id>/<refId>" -> applied step ids
    changes: Dict[str, List[str]] = field(default_factory=dict)
    remaining_legacy_fields: Dict[str, List[str]] = field(default_factory=dict)


def is_azure_target(target: Any) -> bool:
    """True if a panel target looks like an Azure Monitor query record"""
    if not isinstance(target, dict):
        return False
    if target.get("queryType") in QUERY_TYPES:
        return True
    return any(isinstance(target.get(key), dict) for key in SUB_RECORD_KEYS)


def iter_panels(panels: Optional[List[Any]]) -> Iterator[Dict[str, Any]]:
    """Yield panels depth-first, descending into row panels"""
    for panel in panels or []:
        if not isinstance(panel, dict):
            continue
        yield panel
        yield from iter_panels(panel.get("panels"))


def migrate_dashboard(
    dashboard: Dict[str, Any],
    engine: Optional[QueryMigrationEngine] = None
) -> Tuple[Dict[str, Any], DashboardMigrationReport]:
    """
    Migrate every Azure Monitor target in a dashboard.

    Args:
        dashboard: Grafana dashboard JSON (the input is not modified)
        engine: Migration engine to use (default engine when omitted)

    Returns:
        (migrated dashboard copy, report)
    """
    engine = engine or QueryMigrationEngine()
    migrated = copy.deepcopy(dashboard)
    report = DashboardMigrationReport()

    # Exported dashboards wrap the model in {"dashboard": {...}}
    root = migrated.get("dashboard") if isinstance(migrated.get("dashboard"), dict) else migrated

    for panel in iter_panels(root.get("panels")):
        targets = panel.get("targets")
        if not isinstance(targets, list):
            continue

        for index, target in enumerate(targets):
            if not is_azure_target(target):
                continue

            report.targets_seen += 1
            result = engine.migrate_with_report(target)
            targets[index] = result.record

            key = f"{panel.get('id')}/{target.get('refId', index)}"
            if result.changed:
                report.targets_migrated += 1
                report.changes[key] = result.applied_steps
            if result.remaining_legacy_fields:
                report.remaining_legacy_fields[key] = result.remaining_legacy_fields

    logger.info(
        f"Dashboard migrated: {report.targets_migrated}/{report.targets_seen} targets changed",
        extra={"dashboard_uid": root.get("uid"), "targets_seen": report.targets_seen}
    )
    return migrated, report
