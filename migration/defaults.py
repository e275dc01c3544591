"""
Default query template applied to freshly loaded records.

Defaults are supplied by the caller (store, API); the migration engine never
fills them in on its own.
"""

import copy
from typing import Any, Dict, Optional

# Editor dropdown value meaning "nothing chosen yet"
DEFAULT_DROPDOWN_VALUE = "select"

DEFAULT_LOGS_QUERY = "\n".join([
    "//change this example to create your own time series query",
    "<table name>                                                              "
    "//the table to query (e.g. Usage, Heartbeat, Perf)",
    "| where $__timeFilter(TimeGenerated)                                      "
    "//this is a macro used to show the full chart's time range, choose the datetime column here",
    "| summarize count() by <group by column>, bin(TimeGenerated, $__interval) "
    "//change \"group by column\" to a column in your table, such as \"Computer\". "
    "The $__interval macro is used to auto-select the time grain. Can also use 1h, 5m etc.",
    "| order by TimeGenerated asc",
])

DEFAULT_QUERY: Dict[str, Any] = {
    "queryType": "Azure Monitor",
    "azureMonitor": {
        "timeGrain": "auto",
        "top": "10",
        "aggOptions": [],
        "dimensionFilters": [],
        "allowedTimeGrainsMs": [],
    },
    "azureLogAnalytics": {
        "query": DEFAULT_LOGS_QUERY,
        "resultFormat": "time_series",
        "workspace": "",
    },
    "appInsights": {
        "metricName": DEFAULT_DROPDOWN_VALUE,
        "timeGrain": "auto",
    },
    "insightsAnalytics": {
        "query": "",
        "resultFormat": "time_series",
    },
}


def _fill_defaults(target: Dict[str, Any], defaults: Dict[str, Any]) -> None:
    for key, value in defaults.items():
        if key not in target or target[key] is None:
            target[key] = copy.deepcopy(value)
        elif isinstance(target[key], dict) and isinstance(value, dict):
            _fill_defaults(target[key], value)


def apply_defaults(record: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Deep-fill missing keys from the default template (returns a new dict).

    Existing values are never overwritten, including empty strings and lists.
    """
    filled = copy.deepcopy(record)
    _fill_defaults(filled, DEFAULT_QUERY if defaults is None else defaults)
    return filled
