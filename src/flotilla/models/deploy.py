"""デプロイパイプライン関連のデータモデル。"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

from flotilla.models.build import CommandResult

Urgency = Literal["low", "high"]
PipelineState = Literal["pending", "running", "succeeded", "failed", "rolling_back", "rolled_back"]


class DeploymentTrigger(BaseModel):
    """デプロイのきっかけ。"""

    platform_id: str
    reason: str
    urgency: Urgency


class PipelineStep(BaseModel):
    """パイプラインの単一ステップ。"""

    name: str
    command: str


class DeploymentPipeline(BaseModel):
    """デプロイ1回分のパイプライン。実行後に破棄され、永続化しない。"""

    platform_id: str
    steps: list[PipelineStep]
    rollback_on_failure: bool
    environment: str
    urgency: Urgency = "low"
    reason: str = ""
    state: PipelineState = "pending"
    current_step: int | None = None


class PipelineResult(BaseModel):
    """パイプライン実行結果。"""

    platform_id: str
    success: bool
    state: PipelineState
    failed_step: str | None = None
    rolled_back: bool = False
    error: str | None = None
    steps: list[CommandResult] = Field(default_factory=list)
    finished_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
