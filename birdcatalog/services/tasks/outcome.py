from __future__ import annotations

import logging
from birdcatalog.db.models.run import RunStatus
from birdcatalog.services.engine.events import FileStatus

logger = logging.getLogger("birdcatalog.tasks.outcome")


class FileTally:
    """
    run 하나의 파일별 결과 집계.
    같은 파일이 여러 번 보고되면 failed 가 우선 (ingestion 실패 후 processed 가 와도 failed 유지).
    보고용 목록은 max_tracked 개까지만 보관.
    """

    def __init__(self, max_tracked: int = 100):
        self.max_tracked = max_tracked
        self.total_files = 0
        self.detections = 0
        self._status: dict[str, FileStatus] = {}
        self._truncated: set[FileStatus] = set()

    def _set(self, file: str, status: FileStatus) -> None:
        if self._status.get(file) == FileStatus.failed:
            return
        self._status[file] = status

    def mark_processed(self, file: str) -> None:
        self._set(file, FileStatus.processed)

    def mark_skipped(self, file: str) -> None:
        self._set(file, FileStatus.skipped)

    def mark_failed(self, file: str) -> None:
        self._status[file] = FileStatus.failed

    def _files(self, status: FileStatus) -> list[str]:
        files = [f for f, s in self._status.items() if s == status]
        if len(files) > self.max_tracked:
            if status not in self._truncated:
                self._truncated.add(status)
                logger.warning(
                    "%d %s files, only the first %d are listed", len(files), status.value, self.max_tracked
                )
            files = files[: self.max_tracked]
        return files

    def _count(self, status: FileStatus) -> int:
        return sum(1 for s in self._status.values() if s == status)

    @property
    def processed(self) -> int:
        return self._count(FileStatus.processed)

    @property
    def failed(self) -> int:
        return self._count(FileStatus.failed)

    @property
    def skipped(self) -> int:
        return self._count(FileStatus.skipped)

    @property
    def failed_files(self) -> list[str]:
        return self._files(FileStatus.failed)

    @property
    def skipped_files(self) -> list[str]:
        return self._files(FileStatus.skipped)


def derive_terminal_status(exit_ok: bool, tally: FileTally) -> RunStatus:
    """
    - 비정상 종료/취소 → failed
    - 실패 파일 있음 + 처리된 파일 있음 → completed_with_errors
    - 실패 파일만 있음 → failed
    - 그 외 → completed (skipped 는 상태에 영향 없음)
    """
    if not exit_ok:
        return RunStatus.failed
    if tally.failed > 0:
        return RunStatus.completed_with_errors if tally.processed > 0 else RunStatus.failed
    return RunStatus.completed
