"""停止時レポートのデータモデル。"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ReportModel(BaseModel):
    """レポートJSONはcamelCaseキーで出力する。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PlatformSummary(_ReportModel):
    type: str
    technology: str
    status: str
    last_check: datetime | None = None
    last_sync: datetime | None = None


class IntegrationSummary(_ReportModel):
    type: str
    platforms: list[str]
    protocol: str
    realtime: bool


class SynchronizerSummary(_ReportModel):
    name: str
    targets: list[str]
    strategy: str
    watch_paths: list[str]


class ReportStatistics(_ReportModel):
    available_platforms: int
    total_platforms: int
    active_integrations: int
    active_synchronizers: int


class OrchestrationReport(_ReportModel):
    """オーケストレーション状態のスナップショット。"""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    orchestration_status: bool
    platforms: dict[str, PlatformSummary]
    integrations: dict[str, IntegrationSummary]
    synchronizers: dict[str, SynchronizerSummary]
    statistics: ReportStatistics
