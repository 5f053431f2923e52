from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from birdcatalog.db.models.audio_file import AudioFile
from birdcatalog.db.models.detection import Detection
from birdcatalog.services.audio.io import AudioFileMetadata
from birdcatalog.services.engine.events import RawDetection
from birdcatalog.services.engine.results import load_result_file

logger = logging.getLogger("birdcatalog.catalog.ingest")


@dataclass
class ImportResult:
    audio_file_id: int
    detections: int
    source_file: str


def _basename(path: str) -> str:
    return re.split(r"[\\/]", path)[-1]


def _find_audio_file_id(db: Session, run_id: int, file_path: str) -> Optional[int]:
    stmt = select(AudioFile.id).where(AudioFile.run_id == run_id, AudioFile.file_path == file_path)
    return db.execute(stmt).scalar_one_or_none()


def ensure_audio_file(
    db: Session,
    run_id: int,
    file_path: str,
    metadata: Optional[AudioFileMetadata] = None,
) -> int:
    """
    (run, file_path) 에 해당하는 audio_files 행 id. 없으면 만든다.
    같은 인자로 여러 번 불러도 행은 하나 (unique 제약 충돌 시 다시 조회).
    """
    existing = _find_audio_file_id(db, run_id, file_path)
    if existing is not None:
        return existing

    columns = (metadata or AudioFileMetadata()).as_columns()
    row = AudioFile(run_id=run_id, file_path=file_path, file_name=_basename(file_path), **columns)
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_audio_file_id(db, run_id, file_path)
        if existing is None:
            raise
        return existing
    return row.id


def insert_detections(
    db: Session,
    run_id: int,
    location_id: Optional[int],
    audio_file_id: int,
    detections: Sequence[RawDetection],
) -> int:
    """파일 하나의 검출 전체를 한 트랜잭션으로. 중간 실패 시 아무 행도 남지 않는다."""
    if not detections:
        return 0
    rows = [
        {
            "run_id": run_id,
            "location_id": location_id,
            "audio_file_id": audio_file_id,
            "start_time": d.start_time,
            "end_time": d.end_time,
            "scientific_name": d.scientific_name,
            "confidence": d.confidence,
        }
        for d in detections
    ]
    try:
        db.execute(insert(Detection), rows)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return len(rows)


def import_result_file(
    db: Session,
    run_id: int,
    location_id: Optional[int],
    audio_file: str,
    result_path: str | Path,
    metadata: Optional[AudioFileMetadata] = None,
    retries: int = 3,
    base_delay: float = 0.1,
) -> ImportResult:
    """
    디렉터리 모드: 결과 JSON 읽기(재시도) → 검증 → audio_files 보장 → 검출 삽입.
    읽기/검증 실패는 audio_files 행을 만들기 전에 올라간다.
    """
    result = load_result_file(result_path, retries=retries, base_delay=base_delay)
    audio_file_id = ensure_audio_file(db, run_id, audio_file, metadata)
    count = insert_detections(db, run_id, location_id, audio_file_id, result.detections)
    return ImportResult(audio_file_id=audio_file_id, detections=count, source_file=result.source_file)


def update_detection_clip_path(db: Session, detection_id: int, clip_path: str) -> bool:
    res = db.execute(update(Detection).where(Detection.id == detection_id).values(clip_path=clip_path))
    db.commit()
    return res.rowcount > 0
