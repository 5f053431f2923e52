from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from birdcatalog.core.config import settings
from birdcatalog.db.base import Base

logger = logging.getLogger("birdcatalog.db")


def _sqlite_url(db_path: str | Path) -> str:
    db_path = str(db_path)
    if db_path.startswith("sqlite:"):
        return db_path
    return f"sqlite:///{db_path}"


def create_sqlite_engine(db_path: str | Path) -> Engine:
    """
    SQLite 엔진 생성.
    - WAL 저널 (단일 writer / 다중 reader)
    - 커넥션마다 foreign_keys=ON
    - 드라이버 자동 트랜잭션을 끄고 BEGIN 을 직접 발행 (DDL 도 트랜잭션 안에서 실행되도록)
    """
    engine = create_engine(
        _sqlite_url(db_path),
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


class DatabaseManager:
    def __init__(self, db_path: str | Path | None = None):
        self.db_path = db_path or settings.DB_PATH
        if not str(self.db_path).startswith("sqlite:"):
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_sqlite_engine(self.db_path)
        self.session_factory = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    def init_schema(self) -> None:
        """테이블 생성 → 뷰 보장 → 마이그레이션. 마이그레이션 실패는 MigrationFailure 로 올라간다."""
        # 모델 등록 (metadata 채우기)
        from birdcatalog.db.models import analysis_lease, audio_file, detection, location, run, schema_migration  # noqa: F401
        from birdcatalog.db.migrations import ensure_views, run_migrations

        logger.info("Initializing DB at %s", self.db_path)
        Base.metadata.create_all(self.engine)
        applied = run_migrations(self.engine)
        ensure_views(self.engine)
        logger.info("DB ready (applied %d migration(s))", len(applied))

    def dispose(self) -> None:
        self.engine.dispose()


_manager: Optional[DatabaseManager] = None


def init_db(db_path: str | Path | None = None) -> DatabaseManager:
    global _manager
    if _manager is not None:
        _manager.dispose()
    _manager = DatabaseManager(db_path)
    _manager.init_schema()
    return _manager


def get_manager() -> DatabaseManager:
    if _manager is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _manager


def close_db() -> None:
    global _manager
    if _manager is not None:
        _manager.dispose()
        _manager = None


def get_db() -> Iterator[Session]:
    """FastAPI 의존성: 요청 스코프 세션"""
    db = get_manager().session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Iterator[Session]:
    db = (factory or get_manager().session_factory)()
    try:
        yield db
    finally:
        db.close()
