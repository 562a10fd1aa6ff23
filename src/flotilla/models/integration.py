"""連携チャネル関連のデータモデル。"""

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ChannelId = Literal["data-sync", "auth-sync", "config-sync", "asset-sync", "analytics-sync"]


class ChannelConfig(BaseModel):
    """連携チャネル定義（YAMLから読み込み）。"""

    id: ChannelId
    type: str
    platforms: list[str]
    protocol: str = ""
    realtime: bool = False


class IntegrationEvent(BaseModel):
    """チャネルに届いた連携イベント。同一idの再配信は破棄される。"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: str
    platform: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class IntegrationStatus(BaseModel):
    """プラットフォームが報告する同期状態。"""

    platform: str
    last_sync: datetime | None = None
    pending_actions: int = 0
    errors: list[str] = Field(default_factory=list)


class HandlerResult(BaseModel):
    """チャネルハンドラーの実行結果。"""

    channel: str
    action: str
    success: bool = True
    notified: list[str] = Field(default_factory=list)
    message: str | None = None
