"""プラットフォーム関連のデータモデル。"""

from datetime import datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

PlatformType = Literal["library", "web", "mobile", "desktop", "cloud", "extension"]
PlatformStatus = Literal["unknown", "available", "unavailable", "error"]


class Platform(BaseModel):
    """共有ライブラリを利用する個々のプロジェクト。

    status / last_check / details はヘルスチェックのみが更新し、
    last_sync はデプロイ成功時のみ更新される。
    """

    id: str
    type: PlatformType
    technology: str = ""
    path: Path
    build_command: str
    test_command: str
    deploy_command: str
    health_check: str = ""
    validate_command: str = ""
    rollback_command: str = ""
    typecheck_command: str = ""
    artifacts: list[str] = Field(default_factory=list)
    environments: list[str] = Field(default_factory=list)
    dependents: list[str] = Field(default_factory=list)
    status: PlatformStatus = "unknown"
    last_check: datetime | None = None
    last_sync: datetime | None = None
    details: str | None = None

    @property
    def is_available(self) -> bool:
        return self.status == "available"


class HealthReport(BaseModel):
    """ヘルスチェック結果。"""

    platform_id: str
    healthy: bool
    status: PlatformStatus
    details: str
