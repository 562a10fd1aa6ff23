"""コマンド実行・ビルド関連のデータモデル。"""

from datetime import UTC, datetime

from pydantic import BaseModel, Field


class CommandResult(BaseModel):
    """子プロセスの実行結果。"""

    command: str
    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class BuildResult(BaseModel):
    """単一プラットフォームのビルド結果。"""

    platform_id: str
    success: bool
    skipped: bool = False
    reason: str | None = None
    command: CommandResult | None = None
    finished_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CascadeResult(BaseModel):
    """カスケードビルドの結果。orderはビルドした順のプラットフォームID。"""

    origin: str
    order: list[str] = Field(default_factory=list)
    results: dict[str, bool] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(self.results.values())
