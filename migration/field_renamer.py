"""
Table-driven key renames for stored query sub-records.
"""

import logging
from typing import Dict, Mapping

logger = logging.getLogger(__name__)

# Old Application Insights keys -> names shared with the other query types
APP_INSIGHTS_KEY_RENAMES: Dict[str, str] = {
    "xaxis": "timeColumn",
    "yaxis": "valueColumn",
    "spliton": "segmentColumn",
    "groupBy": "dimension",
    "groupByOptions": "dimensions",
    "filter": "dimensionFilter",
}

# When both the old and the new key are present, the old key's value is kept:
# it is the one last edited in the legacy editor. An empty old value never
# wins; it is dropped and the new key keeps its value.
COLLISION_POLICY = "legacy_wins"


def _is_empty(value) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def rename_fields(record: dict, renames: Mapping[str, str] = APP_INSIGHTS_KEY_RENAMES) -> dict:
    """
    Move values from old keys to new keys in place and drop the old keys.

    Empty old values (None, "", [], {}) are dropped without touching the new key.

    Returns:
        The same record, for chaining
    """
    for old_key, new_key in renames.items():
        if old_key not in record:
            continue

        value = record.pop(old_key)
        if _is_empty(value):
            continue

        if new_key in record and record[new_key] != value:
            logger.debug(f"Key collision {old_key} -> {new_key}: keeping legacy value")
        record[new_key] = value

    return record
