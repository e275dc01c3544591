"""
Dimension filter migration for the azureMonitor sub-record.

Old releases stored a single `dimension`/`dimensionFilter` pair; the current
shape is an ordered `dimensionFilters` list.
"""

NO_DIMENSION = "None"

# Old editor default for a filter that was never set ("all values")
DEFAULT_FILTER = "*"


def migrate_dimension_filters(item: dict) -> dict:
    """
    Fold a legacy dimension/dimensionFilter pair into dimensionFilters (in place).

    A "None" dimension is the old "no filter" sentinel and is dropped without
    adding an entry.
    """
    if not isinstance(item.get("dimensionFilters"), list):
        item["dimensionFilters"] = []

    old_dimension = item.pop("dimension", None)
    old_filter = item.pop("dimensionFilter", None)

    if old_dimension and old_dimension != NO_DIMENSION:
        item["dimensionFilters"].append({
            "dimension": old_dimension,
            "operator": "eq",
            "filter": DEFAULT_FILTER if old_filter is None else old_filter,
        })

    return item
