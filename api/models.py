"""
Pydantic models for stored query records and API contracts

Canonical models describe the current query schema. Legacy models extend them
with the fields older releases persisted; the difference between the two is
the set of fields migration consumes and removes.

Every record model allows extra fields so unknown keys survive a round trip.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Union, Literal
from datetime import datetime
from enum import Enum


class AzureQueryTypeEnum(str, Enum):
    metrics = "Azure Monitor"
    logs = "Azure Log Analytics"
    app_insights = "Application Insights"
    insights_analytics = "Insights Analytics"


class DimensionFilterOperatorEnum(str, Enum):
    eq = "eq"
    ne = "ne"


class ResultFormatEnum(str, Enum):
    time_series = "time_series"
    table = "table"


class RecordModel(BaseModel):
    """Base for persisted records: unknown keys pass through untouched"""
    model_config = ConfigDict(extra="allow", use_enum_values=True)


# Query sub-records
class DimensionFilter(RecordModel):
    dimension: str = ""
    operator: DimensionFilterOperatorEnum = DimensionFilterOperatorEnum.eq
    filter: Optional[str] = ""


class MetricsQuery(RecordModel):
    """Canonical azureMonitor sub-record"""
    resourceGroup: Optional[str] = None
    resourceName: Optional[str] = None
    metricDefinition: Optional[str] = None
    metricNamespace: Optional[str] = None
    metricName: Optional[str] = None
    aggregation: Optional[str] = None
    top: Optional[str] = None
    timeGrain: Optional[Union[str, int]] = Field(default="auto", description="ISO-8601 duration or 'auto'")
    dimensionFilters: List[DimensionFilter] = Field(default_factory=list)
    allowedTimeGrainsMs: List[int] = Field(default_factory=list)


class LegacyMetricsQuery(MetricsQuery):
    """azureMonitor sub-record as persisted by older releases"""
    timeGrainUnit: Optional[str] = None
    dimension: Optional[str] = None
    dimensionFilter: Optional[str] = None
    timeGrains: Optional[List[Dict[str, Any]]] = None


class AppInsightsQuery(RecordModel):
    """Canonical appInsights sub-record"""
    metricName: Optional[str] = None
    dimension: List[str] = Field(default_factory=list)
    dimensions: Optional[List[str]] = None
    dimensionFilter: Optional[str] = None
    aggregation: Optional[str] = None
    aggOptions: Optional[List[str]] = None
    timeGrain: Optional[Union[str, int]] = "auto"
    timeGrainCount: Optional[Union[str, int]] = None
    timeGrainType: Optional[str] = None
    allowedTimeGrainsMs: List[int] = Field(default_factory=list)
    timeColumn: Optional[str] = None
    valueColumn: Optional[str] = None
    segmentColumn: Optional[str] = None


class LegacyAppInsightsQuery(AppInsightsQuery):
    """appInsights sub-record as persisted by older releases"""
    dimension: Optional[Union[str, List[str]]] = None
    timeGrainUnit: Optional[str] = None
    timeGrains: Optional[List[Dict[str, Any]]] = None
    xaxis: Optional[str] = None
    yaxis: Optional[str] = None
    spliton: Optional[str] = None
    groupBy: Optional[str] = None
    groupByOptions: Optional[List[str]] = None
    filter: Optional[str] = None


class LogsQuery(RecordModel):
    """azureLogAnalytics sub-record"""
    query: Optional[str] = None
    resultFormat: Optional[ResultFormatEnum] = None
    workspace: Optional[str] = None


class InsightsAnalyticsQuery(RecordModel):
    query: Optional[str] = None
    resultFormat: Optional[ResultFormatEnum] = None


class QueryRecord(RecordModel):
    """Top-level persisted query (one panel target)"""
    refId: Optional[str] = None
    queryType: Optional[AzureQueryTypeEnum] = None
    subscription: Optional[str] = ""
    azureMonitor: Optional[MetricsQuery] = None
    azureLogAnalytics: Optional[LogsQuery] = None
    appInsights: Optional[AppInsightsQuery] = None
    insightsAnalytics: Optional[InsightsAnalyticsQuery] = None


# Sub-record key -> (canonical model, legacy model)
SUB_RECORD_MODELS = {
    "azureMonitor": (MetricsQuery, LegacyMetricsQuery),
    "appInsights": (AppInsightsQuery, LegacyAppInsightsQuery),
}


def legacy_field_names(sub_record_key: str) -> List[str]:
    """Fields the legacy model declares that the canonical model does not"""
    if sub_record_key not in SUB_RECORD_MODELS:
        return []
    canonical, legacy = SUB_RECORD_MODELS[sub_record_key]
    return [name for name in legacy.model_fields if name not in canonical.model_fields]


# API Models
class MigrateQueryRequest(BaseModel):
    """Query record in any historical shape"""
    query: Dict[str, Any] = Field(..., description="Stored query record (panel target)")


class MigrateQueryResponse(BaseModel):
    query: Dict[str, Any]
    applied_steps: List[str]
    remaining_legacy_fields: List[str]


class MigrateDashboardResponse(BaseModel):
    dashboard: Dict[str, Any]
    targets_seen: int
    targets_migrated: int
    changes: Dict[str, List[str]]


class SaveQueryResponse(BaseModel):
    dashboard_uid: str
    panel_id: int
    ref_id: str
    saved: bool


class StoredQueryResponse(BaseModel):
    dashboard_uid: str
    panel_id: int
    ref_id: str
    query: Dict[str, Any]
    updated_at: Optional[str] = None


class ClosestTimeGrainRequest(BaseModel):
    target: str = Field(..., min_length=1, description="Target interval, e.g. '2m'")
    candidates: List[str] = Field(default_factory=list, description="Allowed intervals; empty uses default ladder")


class ClosestTimeGrainResponse(BaseModel):
    target: str
    closest: str


class AutoTimeGrainRequest(BaseModel):
    time_grain: str = Field(..., description="Query time grain; only 'auto' resolves to an interval")
    allowed_time_grains_ms: List[int] = Field(default_factory=list)


class AutoTimeGrainResponse(BaseModel):
    time_grain: str
    interval: str


class TimeGrainDisplayResponse(BaseModel):
    value: str
    display: str
    representable: bool


class HealthResponse(BaseModel):
    """Health check response model"""
    status: Literal["healthy", "unhealthy"]
    service: str
    version: str
    timestamp: datetime


# Error Models
class ErrorResponse(BaseModel):
    """Standard error response model"""
    error: str
    detail: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)
