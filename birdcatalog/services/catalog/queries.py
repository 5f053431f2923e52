from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import delete, func, select, text
from sqlalchemy.orm import Session, selectinload

from birdcatalog.db.models.audio_file import AudioFile
from birdcatalog.db.models.detection import Detection
from birdcatalog.db.models.location import Location
from birdcatalog.db.models.run import AnalysisRun
from birdcatalog.schemas.catalog import DETECTION_SORT_COLUMNS, DetectionFilter

logger = logging.getLogger("birdcatalog.catalog.queries")

SPECIES_SEARCH_LIMIT = 20


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _conditions(f: DetectionFilter) -> list:
    conds = []
    if f.scientific_names:
        in_list = Detection.scientific_name.in_(f.scientific_names)
        if f.species:
            conds.append(in_list | Detection.scientific_name.like(f"%{escape_like(f.species)}%", escape="\\"))
        else:
            conds.append(in_list)
    elif f.species:
        conds.append(Detection.scientific_name.like(f"%{escape_like(f.species)}%", escape="\\"))
    if f.location_id:
        conds.append(Detection.location_id == f.location_id)
    if f.min_confidence:
        conds.append(Detection.confidence >= f.min_confidence)
    if f.run_id:
        conds.append(Detection.run_id == f.run_id)
    return conds


def _sort_key(f: DetectionFilter):
    # 허용된 컬럼만. 그 외는 detected_at
    col = f.sort_column if f.sort_column in DETECTION_SORT_COLUMNS else "detected_at"
    if col in ("file_name", "recording_start"):
        key = getattr(AudioFile, col)
    else:
        key = getattr(Detection, col)
    return key.asc() if f.sort_dir == "asc" else key.desc()


def get_detections(db: Session, f: DetectionFilter) -> tuple[list[Detection], int]:
    conds = _conditions(f)
    total = db.execute(select(func.count()).select_from(Detection).where(*conds)).scalar_one()
    stmt = (
        select(Detection)
        .outerjoin(AudioFile, Detection.audio_file_id == AudioFile.id)
        .options(selectinload(Detection.audio_file))
        .where(*conds)
        .order_by(_sort_key(f), Detection.id)
        .limit(f.limit)
        .offset(f.offset)
    )
    return list(db.execute(stmt).scalars()), total


def get_species_summary(db: Session) -> list[dict]:
    res = db.execute(text("SELECT * FROM species_summary ORDER BY detection_count DESC"))
    return [dict(r) for r in res.mappings()]


def search_species(db: Session, query: str, scientific_names: Optional[list[str]] = None) -> list[dict]:
    params = {"q": f"%{escape_like(query)}%", "limit": SPECIES_SEARCH_LIMIT}
    where = "scientific_name LIKE :q ESCAPE '\\'"
    if scientific_names:
        names = {f"n{i}": n for i, n in enumerate(scientific_names)}
        where += f" OR scientific_name IN ({', '.join(':' + k for k in names)})"
        params.update(names)
    res = db.execute(
        text(f"SELECT * FROM species_summary WHERE {where} ORDER BY detection_count DESC LIMIT :limit"),
        params,
    )
    return [dict(r) for r in res.mappings()]


def get_species_locations(db: Session, scientific_name: str) -> list[dict]:
    stmt = (
        select(
            Detection.location_id,
            Location.latitude,
            Location.longitude,
            Location.name,
            func.count().label("detection_count"),
        )
        .join(Location, Detection.location_id == Location.id)
        .where(Detection.scientific_name == scientific_name)
        .group_by(Detection.location_id, Location.latitude, Location.longitude, Location.name)
        .order_by(func.count().desc())
    )
    return [dict(r) for r in db.execute(stmt).mappings()]


def get_location_species(db: Session, location_id: int) -> list[dict]:
    stmt = (
        select(
            Detection.scientific_name,
            func.count().label("detection_count"),
            func.max(Detection.detected_at).label("last_detected"),
            func.avg(Detection.confidence).label("avg_confidence"),
        )
        .where(Detection.location_id == location_id)
        .group_by(Detection.scientific_name)
        .order_by(func.count().desc())
    )
    out = []
    for r in db.execute(stmt).mappings():
        row = dict(r)
        row["location_count"] = 1
        if row["last_detected"] is not None:
            row["last_detected"] = str(row["last_detected"])
        out.append(row)
    return out


def get_catalog_stats(db: Session) -> dict:
    return {
        "total_detections": db.execute(select(func.count()).select_from(Detection)).scalar_one(),
        "total_species": db.execute(select(func.count(func.distinct(Detection.scientific_name)))).scalar_one(),
        "total_locations": db.execute(select(func.count()).select_from(Location)).scalar_one(),
    }


def clear_database(db: Session) -> dict:
    """모든 검출/run/지점 삭제 후 VACUUM. 삭제 전 건수를 돌려준다."""
    counts = {
        "detections": db.execute(select(func.count()).select_from(Detection)).scalar_one(),
        "runs": db.execute(select(func.count()).select_from(AnalysisRun)).scalar_one(),
        "locations": db.execute(select(func.count()).select_from(Location)).scalar_one(),
    }
    try:
        db.execute(delete(Detection))
        db.execute(delete(AudioFile))
        db.execute(delete(AnalysisRun))
        db.execute(delete(Location))
        db.commit()
    except Exception:
        db.rollback()
        raise

    # VACUUM 은 트랜잭션 밖에서만 가능
    with db.get_bind().connect() as conn:
        conn.connection.dbapi_connection.execute("VACUUM")
    logger.info("Catalog cleared: %s", counts)
    return counts
