from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from birdcatalog.core.errors import ResultFileMalformed, ResultFileReadFailure
from birdcatalog.services.engine.events import RawDetection

logger = logging.getLogger("birdcatalog.engine.results")


class ResultFile(BaseModel):
    """디렉터리 모드에서 파일별로 쓰이는 결과 JSON (<stem>.BirdNET.json)"""

    source_file: str
    analysis_date: Optional[str] = None
    model: Optional[str] = None
    settings: Optional[dict[str, Any]] = None
    detections: list[RawDetection]
    summary: Optional[dict[str, Any]] = None


def read_result_file(path: str | Path, retries: int = 3, base_delay: float = 0.1) -> str:
    """
    엔진이 아직 파일을 다 쓰지 못했을 수 있으므로 OSError 는 지수 백오프로 재시도.
    retries 는 총 시도 횟수 (3 이면 0.1s, 0.2s 대기). 모두 실패하면 ResultFileReadFailure.
    """
    path = Path(path)
    last_err: Optional[OSError] = None
    for attempt in range(max(retries, 1)):
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            last_err = e
            if attempt < retries - 1:
                delay = base_delay * (2 ** attempt)
                logger.debug("read %s failed (%s), retry in %.2fs", path, e, delay)
                time.sleep(delay)
    raise ResultFileReadFailure(f"Failed to read result file {path}: {last_err}") from last_err


def parse_result_file(text: str, path: str | Path | None = None) -> ResultFile:
    where = f" {path}" if path else ""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ResultFileMalformed(f"Result file{where} is not valid JSON: {e.msg}") from None
    try:
        return ResultFile.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors())
        raise ResultFileMalformed(f"Result file{where} failed validation: {fields}") from None


def load_result_file(path: str | Path, retries: int = 3, base_delay: float = 0.1) -> ResultFile:
    return parse_result_file(read_result_file(path, retries, base_delay), path)
