"""
카탈로그(DB 파일) 단위 분석 lease.

AnalysisLease 는 한 프로세스 안의 스레드끼리만 막는다. 같은 DB 를 여는 다른 프로세스
(CLI 두 개, CLI + API 서버)도 막기 위해 analysis_lease 테이블의 한 행에 holder 를 기록한다.

- 점유: holder 가 비어 있거나 죽은 프로세스일 때만, 읽은 값 그대로일 경우에만 교체 (compare-and-swap)
- 죽음 판정: 같은 호스트에서 pid 가 없거나, pid 는 있지만 시작 시각이 다르면 (pid 재사용)
- stale run 복구는 lease 를 쥔 상태에서만 한다 (살아있는 다른 프로세스의 run 을 건드리지 않도록)
"""
from __future__ import annotations

import datetime as dt
import functools
import logging
import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import psutil
from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, sessionmaker

from birdcatalog.core.errors import AnalysisAlreadyRunning
from birdcatalog.db.models.analysis_lease import AnalysisLeaseRow
from birdcatalog.db.session import session_scope
from birdcatalog.services.catalog.runs import recover_stale_runs

logger = logging.getLogger("birdcatalog.catalog.lease")

LEASE_ID = 1


@dataclass(frozen=True)
class ProcessIdentity:
    pid: int
    started: float
    host: str


@functools.lru_cache(maxsize=None)
def _identity(pid: int) -> ProcessIdentity:
    return ProcessIdentity(pid=pid, started=psutil.Process(pid).create_time(), host=socket.gethostname())


def current_process() -> ProcessIdentity:
    return _identity(os.getpid())


def holder_alive(pid: Optional[int], started: Optional[float], host: Optional[str]) -> bool:
    if pid is None:
        return False
    # 다른 호스트의 프로세스는 확인할 수 없다
    if host and host != socket.gethostname():
        return True
    try:
        created = psutil.Process(pid).create_time()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    return started is None or abs(created - started) < 1.0


def _holder(db: Session):
    return db.execute(
        select(AnalysisLeaseRow.holder_pid, AnalysisLeaseRow.holder_started, AnalysisLeaseRow.holder_host)
        .where(AnalysisLeaseRow.id == LEASE_ID)
    ).one()


def claim_catalog_lease(db: Session, owner: str, me: Optional[ProcessIdentity] = None) -> bool:
    """lease 점유 시도. 살아있는 다른 holder(같은 프로세스의 다른 스레드 포함)가 있으면 False."""
    me = me or current_process()
    db.execute(sqlite_insert(AnalysisLeaseRow).values(id=LEASE_ID).on_conflict_do_nothing())
    db.commit()

    pid, started, host = _holder(db)
    # 읽기 트랜잭션을 닫고 새 스냅샷에서 CAS 한다
    db.commit()
    if holder_alive(pid, started, host):
        logger.info("Analysis lease held by pid=%s host=%s", pid, host)
        return False
    if pid is not None:
        logger.warning("Taking over analysis lease from dead process pid=%s host=%s", pid, host)

    res = db.execute(
        update(AnalysisLeaseRow)
        .where(
            AnalysisLeaseRow.id == LEASE_ID,
            AnalysisLeaseRow.holder_pid.is_not_distinct_from(pid),
            AnalysisLeaseRow.holder_started.is_not_distinct_from(started),
        )
        .values(
            holder_pid=me.pid,
            holder_started=me.started,
            holder_host=me.host,
            owner=owner,
            acquired_at=dt.datetime.now(dt.timezone.utc).replace(tzinfo=None),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def release_catalog_lease(db: Session, me: Optional[ProcessIdentity] = None) -> bool:
    me = me or current_process()
    res = db.execute(
        update(AnalysisLeaseRow)
        .where(
            AnalysisLeaseRow.id == LEASE_ID,
            AnalysisLeaseRow.holder_pid == me.pid,
            AnalysisLeaseRow.holder_host == me.host,
        )
        .values(holder_pid=None, holder_started=None, holder_host=None, owner=None, acquired_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


@contextmanager
def catalog_lease(session_factory: sessionmaker, owner: str) -> Iterator[None]:
    with session_scope(session_factory) as db:
        if not claim_catalog_lease(db, owner):
            raise AnalysisAlreadyRunning("Another process is running an analysis on this catalog.")
    try:
        yield
    finally:
        with session_scope(session_factory) as db:
            release_catalog_lease(db)


def recover_if_idle(session_factory: sessionmaker) -> Optional[int]:
    """
    다른 프로세스가 분석 중이 아니면 stale run 을 failed 로 닫고 건수를 돌려준다.
    분석 중인 프로세스가 있으면 None (그 run 들은 살아있다).
    """
    try:
        with catalog_lease(session_factory, owner="recovery"):
            with session_scope(session_factory) as db:
                return recover_stale_runs(db)
    except AnalysisAlreadyRunning:
        logger.info("Another process holds the analysis lease, skipping stale-run recovery")
        return None
