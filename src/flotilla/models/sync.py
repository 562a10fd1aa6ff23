"""ファイル同期関連のデータモデル。"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

ChangeKind = Literal["add", "modify", "delete"]


class ChangeEvent(BaseModel):
    """ファイルシステムの変更イベント。デバウンス後に一度だけ消費される。"""

    kind: ChangeKind
    path: str
    synchronizer_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SynchronizerConfig(BaseModel):
    """監視パスとターゲットプラットフォームの対応定義（YAMLから読み込み）。"""

    id: str
    name: str
    watch_paths: list[str]
    targets: list[str]
    strategy: str


class DependencyChange(BaseModel):
    """package.jsonの依存関係の差分。"""

    change_type: Literal["add", "update", "remove"]
    package: str
    version: str | None = None
    previous: str | None = None


class SyncResult(BaseModel):
    """シンクロナイザーハンドラーの実行結果。

    ターゲット単位の失敗はfailedに記録し、バッチ全体は中断しない。
    """

    synchronizer_id: str
    paths: list[str] = Field(default_factory=list)
    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    cascaded: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed
