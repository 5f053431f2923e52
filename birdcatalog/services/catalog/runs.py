from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.orm import Session

from birdcatalog.db.models.detection import Detection
from birdcatalog.db.models.location import Location
from birdcatalog.db.models.run import ACTIVE_STATUSES, TERMINAL_STATUSES, AnalysisRun, RunStatus

logger = logging.getLogger("birdcatalog.catalog.runs")

STALE_RUN_MESSAGE = "Run did not finish before the application stopped"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def _active() -> list[str]:
    return [s.value for s in ACTIVE_STATUSES]


def create_run(
    db: Session,
    source_path: str,
    model: str,
    min_confidence: float,
    location_id: Optional[int] = None,
    settings_json: Optional[str] = None,
    timezone_offset_min: Optional[int] = None,
) -> AnalysisRun:
    run = AnalysisRun(
        location_id=location_id,
        source_path=source_path,
        model=model,
        min_confidence=min_confidence,
        settings_json=settings_json,
        timezone_offset_min=timezone_offset_min,
        status=RunStatus.pending.value,
        started_at=_utcnow(),
    )
    db.add(run)
    db.commit()
    return run


def _expire_runs(db: Session, run_ids: Optional[set[int]] = None) -> None:
    # bulk UPDATE 는 세션에 올라온 객체를 갱신하지 않으므로 다음 접근 때 다시 읽게 한다
    for obj in list(db.identity_map.values()):
        if isinstance(obj, AnalysisRun) and (run_ids is None or inspect(obj).identity[0] in run_ids):
            db.expire(obj)


def get_run_state(db: Session, run_id: int) -> Optional[tuple[str, Optional[str]]]:
    """저장된 (status, error_log). 세션 캐시가 아니라 DB 에서 읽는다."""
    row = db.execute(select(AnalysisRun.status, AnalysisRun.error_log).where(AnalysisRun.id == run_id)).first()
    return (row[0], row[1]) if row is not None else None


def mark_running(db: Session, run_id: int) -> bool:
    res = db.execute(
        update(AnalysisRun)
        .where(AnalysisRun.id == run_id, AnalysisRun.status == RunStatus.pending.value)
        .values(status=RunStatus.running.value)
    )
    db.commit()
    _expire_runs(db, {run_id})
    return res.rowcount > 0


def finalize_run(
    db: Session,
    run_id: int,
    status: RunStatus | str,
    error_log: Optional[str] = None,
) -> bool:
    """
    종료 상태 기록. pending/running 인 경우에만 갱신되므로 run 당 한 번만 성공한다.
    이미 종료된 run 이면 False.
    """
    status = RunStatus(status)
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"{status.value} is not a terminal status")

    # 열린 읽기 트랜잭션을 닫는다. 그 사이 다른 연결이 쓴 경우 옛 스냅샷에서는 쓸 수 없다 (WAL)
    db.commit()
    res = db.execute(
        update(AnalysisRun)
        .where(AnalysisRun.id == run_id, AnalysisRun.status.in_(_active()))
        .values(status=status.value, completed_at=_utcnow(), error_log=error_log)
    )
    db.commit()
    _expire_runs(db, {run_id})
    if res.rowcount == 0:
        logger.warning("run=%s already terminal, ignoring transition to %s", run_id, status.value)
        return False
    logger.info("run=%s -> %s", run_id, status.value)
    return True


def recover_stale_runs(db: Session) -> int:
    """
    카탈로그 lease 를 쥔 상태에서만 호출. 그때 남은 pending/running run 은 죽은 프로세스의 것이므로 failed 로 닫는다.
    """
    res = db.execute(
        update(AnalysisRun)
        .where(AnalysisRun.status.in_(_active()))
        .values(
            status=RunStatus.failed.value,
            completed_at=_utcnow(),
            error_log=func.coalesce(AnalysisRun.error_log, STALE_RUN_MESSAGE),
        )
    )
    db.commit()
    _expire_runs(db)
    if res.rowcount:
        logger.warning("Marked %d stale run(s) as failed", res.rowcount)
    return res.rowcount


def delete_run(db: Session, run_id: int) -> bool:
    """run 삭제. audio_files/detections 는 FK cascade 로 함께 지워진다."""
    res = db.execute(delete(AnalysisRun).where(AnalysisRun.id == run_id))
    db.commit()
    return res.rowcount > 0


def delete_completed_runs_for_source(db: Session, source_path: str, model: str) -> int:
    """같은 source + model 로 완료된 이전 run 을 새 run 이 대체한다."""
    res = db.execute(
        delete(AnalysisRun)
        .where(
            AnalysisRun.source_path == source_path,
            AnalysisRun.model == model,
            AnalysisRun.status == RunStatus.completed.value,
        )
    )
    db.commit()
    return res.rowcount


def list_runs_with_stats(db: Session) -> list[dict]:
    counts = (
        select(Detection.run_id.label("run_id"), func.count().label("cnt"))
        .group_by(Detection.run_id)
        .subquery()
    )
    stmt = (
        select(
            AnalysisRun,
            func.coalesce(counts.c.cnt, 0),
            Location.name,
            Location.latitude,
            Location.longitude,
        )
        .outerjoin(counts, counts.c.run_id == AnalysisRun.id)
        .outerjoin(Location, Location.id == AnalysisRun.location_id)
        .order_by(AnalysisRun.started_at.desc(), AnalysisRun.id.desc())
    )
    out = []
    for run, detection_count, location_name, lat, lon in db.execute(stmt):
        out.append(
            {
                "id": run.id,
                "location_id": run.location_id,
                "source_path": run.source_path,
                "model": run.model,
                "min_confidence": run.min_confidence,
                "settings_json": run.settings_json,
                "status": run.status,
                "started_at": run.started_at,
                "completed_at": run.completed_at,
                "timezone_offset_min": run.timezone_offset_min,
                "error_log": run.error_log,
                "detection_count": detection_count,
                "location_name": location_name,
                "latitude": lat,
                "longitude": lon,
            }
        )
    return out
