"""オーケストレーションレポートのファイル保存。"""

import json
from pathlib import Path

from pydantic import ValidationError

from flotilla.models.errors import StorageError
from flotilla.models.report import OrchestrationReport


class ReportStore:
    """ローカルファイルシステムにレポートJSONを保存する。"""

    def __init__(self, report_path: Path) -> None:
        self._report_path = report_path

    @property
    def report_path(self) -> Path:
        return self._report_path

    async def save_report(self, report: OrchestrationReport) -> Path:
        """レポートをcamelCaseのJSONとして書き出す。

        Raises:
            StorageError: 書き込みに失敗した場合。
        """
        try:
            self._report_path.parent.mkdir(parents=True, exist_ok=True)
            self._report_path.write_text(report.model_dump_json(indent=2, by_alias=True), encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Failed to write report: {self._report_path}: {e}") from e
        return self._report_path

    async def load_report(self) -> OrchestrationReport | None:
        """前回のレポートを読み込む。存在しない場合はNoneを返す。

        Raises:
            StorageError: レポートが壊れている場合。
        """
        if not self._report_path.exists():
            return None
        try:
            data = json.loads(self._report_path.read_text(encoding="utf-8"))
            return OrchestrationReport.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise StorageError(f"Invalid report file: {self._report_path}") from e
