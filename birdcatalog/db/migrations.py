"""
카탈로그 스키마 마이그레이션.

- schema_migrations 원장(ledger)에 적용된 버전을 기록한다
- 버전 오름차순, 각 버전은 정확히 한 번, 각자 자기 트랜잭션 안에서 실행
- 목표 상태가 이미 만들어져 있으면 파괴적 작업 없이 원장에만 기록한다
- 컬럼 변경이 필요한 경우 copy-and-swap (새 테이블 → 복사 → DROP → RENAME → 인덱스/뷰 재생성)
- copy-and-swap 동안에만 foreign key 검사를 끄고, 예외가 나도 반드시 다시 켠다
"""
from __future__ import annotations

import logging
import re
from contextlib import contextmanager, nullcontext
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from birdcatalog.core.errors import MigrationFailure

logger = logging.getLogger("birdcatalog.db.migrations")


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    description: str
    # 목표 상태가 이미 달성되어 있는지 (True 면 apply 생략, 원장에만 기록)
    is_applied: Callable[[Connection], bool]
    apply: Callable[[Connection], None]
    suspends_foreign_keys: bool = False


LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version    INTEGER NOT NULL PRIMARY KEY,
    applied_at DATETIME NOT NULL DEFAULT (CURRENT_TIMESTAMP)
)
"""

VIEWS = {
    "species_summary": """
CREATE VIEW IF NOT EXISTS species_summary AS
SELECT
    scientific_name,
    COUNT(DISTINCT location_id) AS location_count,
    COUNT(*) AS detection_count,
    MAX(detected_at) AS last_detected,
    AVG(confidence) AS avg_confidence
FROM detections
GROUP BY scientific_name
""",
}


# ────────────────────────────────────────────────────────────────────────────
# introspection helpers
# ────────────────────────────────────────────────────────────────────────────
def _table_exists(conn: Connection, table: str) -> bool:
    row = conn.exec_driver_sql(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).first()
    return row is not None


def _columns(conn: Connection, table: str) -> list[str]:
    return [r[1] for r in conn.exec_driver_sql(f"PRAGMA table_info('{table}')").fetchall()]


def _table_sql(conn: Connection, table: str) -> str:
    row = conn.exec_driver_sql(
        "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).first()
    return row[0] if row and row[0] else ""


def _has_unique_index(conn: Connection, table: str, columns: list[str]) -> bool:
    for idx in conn.exec_driver_sql(f"PRAGMA index_list('{table}')").fetchall():
        name, unique = idx[1], idx[2]
        if not unique:
            continue
        cols = [r[2] for r in conn.exec_driver_sql(f"PRAGMA index_info('{name}')").fetchall()]
        if cols == columns:
            return True
    return False


def drop_views(conn: Connection) -> None:
    for name in VIEWS:
        conn.exec_driver_sql(f"DROP VIEW IF EXISTS {name}")


def create_views(conn: Connection) -> None:
    for ddl in VIEWS.values():
        conn.exec_driver_sql(ddl)


def ensure_views(engine: Engine) -> None:
    with engine.begin() as conn:
        create_views(conn)


@contextmanager
def foreign_keys_suspended(conn: Connection) -> Iterator[None]:
    """
    PRAGMA foreign_keys 는 트랜잭션 안에서는 무시되므로, 트랜잭션 밖에서 끄고
    블록이 어떻게 끝나든 finally 에서 다시 켠다.
    """
    if conn.in_transaction():
        raise RuntimeError("foreign keys can only be toggled outside a transaction")
    raw = conn.connection.dbapi_connection
    raw.execute("PRAGMA foreign_keys=OFF")
    try:
        yield
    finally:
        raw.execute("PRAGMA foreign_keys=ON")


def _assert_foreign_keys_consistent(conn: Connection) -> None:
    violations = conn.exec_driver_sql("PRAGMA foreign_key_check").fetchall()
    if violations:
        raise RuntimeError(f"foreign key check failed after migration: {violations[:5]}")


def _column_ddl(info_row, fks: dict[str, tuple[str, str, str]]) -> str:
    _, name, col_type, notnull, default, pk = info_row
    parts = [f'"{name}"', col_type or ""]
    if pk:
        parts.append("PRIMARY KEY")
        if (col_type or "").upper() == "INTEGER":
            parts.append("AUTOINCREMENT")
    elif notnull:
        parts.append("NOT NULL")
    if default is not None:
        parts.append(f"DEFAULT ({default})")
    if name in fks:
        ref_table, ref_col, on_delete = fks[name]
        parts.append(f"REFERENCES {ref_table}({ref_col})")
        if on_delete and on_delete.upper() != "NO ACTION":
            parts.append(f"ON DELETE {on_delete}")
    return " ".join(p for p in parts if p)


def _swap_in(conn: Connection, table: str, create_new_sql: str, columns: Iterable[str], select_sql: str) -> None:
    """`{table}_new` 를 만들고 데이터를 옮긴 뒤 원래 이름으로 바꾼다. 뷰는 호출 측에서 다시 만든다."""
    cols = ", ".join(columns)
    drop_views(conn)
    conn.exec_driver_sql(f"DROP TABLE IF EXISTS {table}_new")
    conn.exec_driver_sql(create_new_sql)
    conn.exec_driver_sql(f"INSERT INTO {table}_new ({cols}) {select_sql}")
    conn.exec_driver_sql(f"DROP TABLE {table}")
    conn.exec_driver_sql(f"ALTER TABLE {table}_new RENAME TO {table}")


def _rebuild_without_columns(conn: Connection, table: str, dropped: set[str]) -> None:
    info = conn.exec_driver_sql(f"PRAGMA table_info('{table}')").fetchall()
    fks = {
        r[3]: (r[2], r[4], r[6])
        for r in conn.exec_driver_sql(f"PRAGMA foreign_key_list('{table}')").fetchall()
    }
    kept = [r for r in info if r[1] not in dropped]
    ddl = ",\n    ".join(_column_ddl(r, fks) for r in kept)
    names = [f'"{r[1]}"' for r in kept]
    _swap_in(
        conn,
        table,
        f"CREATE TABLE {table}_new (\n    {ddl}\n)",
        names,
        f"SELECT {', '.join(names)} FROM {table}",
    )


# ────────────────────────────────────────────────────────────────────────────
# 1) detections.common_name 제거 (이름은 표시 계층에서 라벨로 해석)
# ────────────────────────────────────────────────────────────────────────────
def _m1_is_applied(conn: Connection) -> bool:
    return not _table_exists(conn, "detections") or "common_name" not in _columns(conn, "detections")


def _m1_apply(conn: Connection) -> None:
    _rebuild_without_columns(conn, "detections", {"common_name"})
    for stmt in DETECTION_INDEXES:
        conn.exec_driver_sql(stmt)
    create_views(conn)


# ────────────────────────────────────────────────────────────────────────────
# 2) detections.source_file(자유 텍스트) → audio_files 외래키
# ────────────────────────────────────────────────────────────────────────────
DETECTIONS_V2_DDL = """
CREATE TABLE detections_new (
    id              INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
    run_id          INTEGER NOT NULL REFERENCES analysis_runs(id) ON DELETE CASCADE,
    location_id     INTEGER REFERENCES locations(id),
    audio_file_id   INTEGER NOT NULL REFERENCES audio_files(id) ON DELETE CASCADE,
    start_time      FLOAT NOT NULL,
    end_time        FLOAT NOT NULL,
    scientific_name VARCHAR(255) NOT NULL,
    confidence      FLOAT NOT NULL,
    clip_path       TEXT,
    detected_at     DATETIME NOT NULL DEFAULT (CURRENT_TIMESTAMP),
    CONSTRAINT ck_detections_confidence CHECK (confidence >= 0 AND confidence <= 1),
    CONSTRAINT ck_detections_time_order CHECK (start_time <= end_time)
)
"""

DETECTION_INDEXES = [
    "CREATE INDEX IF NOT EXISTS ix_detections_run_id ON detections(run_id)",
    "CREATE INDEX IF NOT EXISTS ix_detections_location_id ON detections(location_id)",
    "CREATE INDEX IF NOT EXISTS ix_detections_scientific_name ON detections(scientific_name)",
    "CREATE INDEX IF NOT EXISTS ix_detections_confidence ON detections(confidence)",
]

AUDIO_FILES_DDL = """
CREATE TABLE IF NOT EXISTS audio_files (
    id                      INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
    run_id                  INTEGER NOT NULL REFERENCES analysis_runs(id) ON DELETE CASCADE,
    file_path               TEXT NOT NULL,
    file_name               VARCHAR(255) NOT NULL,
    recording_start         VARCHAR(40),
    timezone_offset_min     INTEGER,
    duration_sec            FLOAT,
    sample_rate             INTEGER,
    channels                INTEGER,
    audiomoth_device_id     VARCHAR(32),
    audiomoth_gain          VARCHAR(32),
    audiomoth_battery_v     FLOAT,
    audiomoth_temperature_c FLOAT,
    created_at              DATETIME NOT NULL DEFAULT (CURRENT_TIMESTAMP)
)
"""

_PATH_SEP = re.compile(r"[\\/]")


def _m2_is_applied(conn: Connection) -> bool:
    if not _table_exists(conn, "detections"):
        return True
    cols = _columns(conn, "detections")
    return "audio_file_id" in cols and "source_file" not in cols


def _m2_apply(conn: Connection) -> None:
    conn.exec_driver_sql(AUDIO_FILES_DDL)
    cols = _columns(conn, "detections")

    if "source_file" in cols:
        pairs = conn.exec_driver_sql(
            """
            SELECT DISTINCT d.run_id, d.source_file FROM detections d
            WHERE NOT EXISTS (
                SELECT 1 FROM audio_files af
                WHERE af.run_id = d.run_id AND af.file_path = d.source_file
            )
            """
        ).fetchall()
        for run_id, source_file in pairs:
            conn.execute(
                text(
                    "INSERT INTO audio_files (run_id, file_path, file_name) "
                    "VALUES (:run_id, :file_path, :file_name)"
                ),
                {"run_id": run_id, "file_path": source_file, "file_name": _PATH_SEP.split(source_file)[-1]},
            )
        logger.info("Created %d audio_files row(s) from detections.source_file", len(pairs))
        lookup = (
            "(SELECT MIN(af.id) FROM audio_files af "
            "WHERE af.run_id = d.run_id AND af.file_path = d.source_file)"
        )
        audio_file_expr = f"COALESCE(d.audio_file_id, {lookup})" if "audio_file_id" in cols else lookup
    else:
        audio_file_expr = "d.audio_file_id"

    target = [
        "id", "run_id", "location_id", "audio_file_id", "start_time", "end_time",
        "scientific_name", "confidence", "clip_path", "detected_at",
    ]
    _swap_in(
        conn,
        "detections",
        DETECTIONS_V2_DDL,
        target,
        f"""
        SELECT d.id, d.run_id, d.location_id, {audio_file_expr}, d.start_time, d.end_time,
               d.scientific_name, d.confidence, d.clip_path, COALESCE(d.detected_at, CURRENT_TIMESTAMP)
        FROM detections d
        """,
    )
    for stmt in DETECTION_INDEXES + ["CREATE INDEX IF NOT EXISTS ix_detections_audio_file_id ON detections(audio_file_id)"]:
        conn.exec_driver_sql(stmt)
    create_views(conn)


# ────────────────────────────────────────────────────────────────────────────
# 3) analysis_runs.status CHECK 에 completed_with_errors 추가
# ────────────────────────────────────────────────────────────────────────────
RUNS_V3_DDL = """
CREATE TABLE analysis_runs_new (
    id                  INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
    location_id         INTEGER REFERENCES locations(id),
    source_path         TEXT NOT NULL,
    model               VARCHAR(128) NOT NULL,
    min_confidence      FLOAT NOT NULL DEFAULT (0.1),
    settings_json       TEXT,
    status              VARCHAR(32) NOT NULL DEFAULT ('pending'),
    started_at          DATETIME,
    completed_at        DATETIME,
    timezone_offset_min INTEGER,
    CONSTRAINT ck_analysis_runs_status
        CHECK (status IN ('pending','running','completed','failed','completed_with_errors'))
)
"""

_RUNS_V3_COLUMNS = [
    "id", "location_id", "source_path", "model", "min_confidence", "settings_json",
    "status", "started_at", "completed_at", "timezone_offset_min",
]


def _m3_is_applied(conn: Connection) -> bool:
    sql = _table_sql(conn, "analysis_runs")
    if not sql:
        return True
    # CHECK 가 없으면 제약 자체가 없으므로 이미 허용됨
    return "completed_with_errors" in sql or "CHECK" not in sql.upper()


def _m3_apply(conn: Connection) -> None:
    existing = set(_columns(conn, "analysis_runs"))
    cols = [c for c in _RUNS_V3_COLUMNS if c in existing]
    _swap_in(
        conn,
        "analysis_runs",
        RUNS_V3_DDL,
        cols,
        f"SELECT {', '.join(cols)} FROM analysis_runs",
    )
    create_views(conn)


# ────────────────────────────────────────────────────────────────────────────
# 4) audio_files (run_id, file_path) 유일성
# ────────────────────────────────────────────────────────────────────────────
def _m4_is_applied(conn: Connection) -> bool:
    if not _table_exists(conn, "audio_files"):
        return True
    return _has_unique_index(conn, "audio_files", ["run_id", "file_path"])


def _m4_apply(conn: Connection) -> None:
    groups = conn.exec_driver_sql(
        """
        SELECT run_id, file_path, MIN(id) FROM audio_files
        GROUP BY run_id, file_path HAVING COUNT(*) > 1
        """
    ).fetchall()
    for run_id, file_path, keep_id in groups:
        params = {"run_id": run_id, "file_path": file_path, "keep": keep_id}
        conn.execute(
            text(
                "UPDATE detections SET audio_file_id = :keep WHERE audio_file_id IN ("
                "SELECT id FROM audio_files WHERE run_id = :run_id AND file_path = :file_path AND id != :keep)"
            ),
            params,
        )
        conn.execute(
            text("DELETE FROM audio_files WHERE run_id = :run_id AND file_path = :file_path AND id != :keep"),
            params,
        )
    if groups:
        logger.info("Merged %d duplicated audio file group(s)", len(groups))
    conn.exec_driver_sql(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_audio_files_run_path ON audio_files(run_id, file_path)"
    )


# ────────────────────────────────────────────────────────────────────────────
# 5) analysis_runs.error_log
# ────────────────────────────────────────────────────────────────────────────
def _m5_is_applied(conn: Connection) -> bool:
    return "error_log" in _columns(conn, "analysis_runs")


def _m5_apply(conn: Connection) -> None:
    conn.exec_driver_sql("ALTER TABLE analysis_runs ADD COLUMN error_log TEXT")


MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        name="drop_detection_common_name",
        description="Remove common_name from detections (resolved by the label service instead)",
        is_applied=_m1_is_applied,
        apply=_m1_apply,
        suspends_foreign_keys=True,
    ),
    Migration(
        version=2,
        name="detections_audio_file_fk",
        description="Replace detections.source_file with a foreign key to audio_files",
        is_applied=_m2_is_applied,
        apply=_m2_apply,
        suspends_foreign_keys=True,
    ),
    Migration(
        version=3,
        name="runs_status_completed_with_errors",
        description="Allow completed_with_errors in analysis_runs.status",
        is_applied=_m3_is_applied,
        apply=_m3_apply,
        suspends_foreign_keys=True,
    ),
    Migration(
        version=4,
        name="audio_files_unique_run_path",
        description="Merge duplicated audio_files rows and enforce (run_id, file_path) uniqueness",
        is_applied=_m4_is_applied,
        apply=_m4_apply,
    ),
    Migration(
        version=5,
        name="runs_error_log",
        description="Add analysis_runs.error_log for failure diagnostics",
        is_applied=_m5_is_applied,
        apply=_m5_apply,
    ),
]


def validate_migration_order(migrations: list[Migration]) -> None:
    versions = [m.version for m in migrations]
    if versions != sorted(versions):
        raise ValueError("Migrations must be ordered by version number")
    if len(versions) != len(set(versions)):
        raise ValueError("Migration versions must be unique")


def applied_versions(engine: Engine) -> list[int]:
    with engine.connect() as conn:
        if not _table_exists(conn, "schema_migrations"):
            return []
        return [r[0] for r in conn.exec_driver_sql("SELECT version FROM schema_migrations ORDER BY version")]


def _record(conn: Connection, version: int) -> None:
    conn.execute(text("INSERT INTO schema_migrations (version) VALUES (:v)"), {"v": version})


def run_migrations(engine: Engine, migrations: list[Migration] | None = None) -> list[int]:
    """
    대기 중인 마이그레이션을 오름차순으로 적용하고, 이번에 기록한 버전 목록을 돌려준다.
    실패하면 MigrationFailure (해당 버전 트랜잭션은 롤백, 원장에도 남지 않음).
    """
    migrations = list(MIGRATIONS if migrations is None else migrations)
    validate_migration_order(migrations)
    recorded: list[int] = []

    with engine.connect() as conn:
        with conn.begin():
            conn.exec_driver_sql(LEDGER_DDL)
            done = {r[0] for r in conn.exec_driver_sql("SELECT version FROM schema_migrations")}

        pending = [m for m in migrations if m.version not in done]
        if not pending:
            logger.debug("Schema is up to date (versions=%s)", sorted(done))
            return recorded
        logger.info("Running %d pending migration(s)", len(pending))

        for m in pending:
            try:
                # 이미 목표 상태면 원장에만 기록한다. FK 는 끄지 않는다
                with conn.begin():
                    applied = m.is_applied(conn)
                    if applied:
                        logger.info("Migration %d (%s): target state present, recording only", m.version, m.name)
                        _record(conn, m.version)
                if not applied:
                    guard = foreign_keys_suspended(conn) if m.suspends_foreign_keys else nullcontext()
                    with guard:
                        with conn.begin():
                            logger.info("Applying migration %d: %s - %s", m.version, m.name, m.description)
                            m.apply(conn)
                            if m.suspends_foreign_keys:
                                _assert_foreign_keys_consistent(conn)
                            _record(conn, m.version)
            except Exception as e:
                logger.error("Migration %d (%s) failed: %s", m.version, m.name, e)
                raise MigrationFailure(m.version, m.name, e) from e
            recorded.append(m.version)

    return recorded
