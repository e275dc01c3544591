"""
Pure edit helpers for canonical query records.

Each helper returns an edited copy; the input record is left unchanged.
"""

import copy
from typing import Any, Dict

from utils.time_grain import UnsupportedDuration, time_grain_unit, to_iso8601

Record = Dict[str, Any]


def add_dimension_filter(record: Record) -> Record:
    """Append an empty `eq` filter to azureMonitor.dimensionFilters"""
    edited = copy.deepcopy(record)
    azure_monitor = edited.setdefault("azureMonitor", {})
    azure_monitor.setdefault("dimensionFilters", []).append({
        "dimension": "",
        "operator": "eq",
        "filter": "",
    })
    return edited


def remove_dimension_filter(record: Record, index: int) -> Record:
    """
    Drop the dimension filter at index.

    Raises:
        IndexError: If there is no filter at index
    """
    edited = copy.deepcopy(record)
    filters = edited.get("azureMonitor", {}).get("dimensionFilters", [])
    if not 0 <= index < len(filters):
        raise IndexError(f"No dimension filter at index {index}")
    del filters[index]
    return edited


def remove_group_by(record: Record, index: int) -> Record:
    """Drop one appInsights group-by dimension"""
    edited = copy.deepcopy(record)
    dimensions = edited.get("appInsights", {}).get("dimension", [])
    if not 0 <= index < len(dimensions):
        raise IndexError(f"No group-by dimension at index {index}")
    del dimensions[index]
    return edited


def set_time_grain_type(record: Record, time_grain_type: str) -> Record:
    """
    Switch the appInsights time grain between "auto" and "specific".

    "specific" starts at one minute; anything else clears count and unit.
    """
    edited = copy.deepcopy(record)
    app_insights = edited.setdefault("appInsights", {})
    app_insights["timeGrainType"] = time_grain_type

    if time_grain_type == "specific":
        app_insights["timeGrainCount"] = "1"
        app_insights["timeGrainUnit"] = "minute"
        app_insights["timeGrain"] = to_iso8601("1", "minute")
    else:
        app_insights["timeGrainCount"] = ""
        app_insights["timeGrainUnit"] = ""

    return edited


def update_app_insights_time_grain(record: Record) -> Record:
    """
    Recompute appInsights.timeGrain from timeGrainCount and its unit.

    The unit is timeGrainUnit when present. Migrated records no longer carry
    it, so the unit of the current ISO timeGrain is used instead. Without a
    count, or with an "auto" grain and no unit, the record is returned as is.

    Raises:
        InvalidDurationInput: If the count/unit pair is not a valid duration
    """
    edited = copy.deepcopy(record)
    app_insights = edited.get("appInsights")
    if not isinstance(app_insights, dict) or not app_insights.get("timeGrainCount"):
        return edited

    unit = app_insights.get("timeGrainUnit")
    if not unit:
        try:
            unit = time_grain_unit(app_insights.get("timeGrain"))
        except UnsupportedDuration:
            return edited

    app_insights["timeGrain"] = to_iso8601(app_insights["timeGrainCount"], unit)
    return edited
