from __future__ import annotations

import datetime as dt
import enum
import os
import re
import shutil
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

# 윤년 기준으로 계산해야 2/29 도 day-of-year 로 변환된다
LEAP_YEAR_FOR_DOY = 2024
RESULT_FILE_SUFFIX = ".BirdNET.json"

RECORDING_STAMP = re.compile(r"^(\d{4})(\d{2})(\d{2})_(\d{2})(\d{2})(\d{2})$")


class TransportMode(str, enum.Enum):
    inline = "inline"          # 진행 + 검출 모두 stdout (--stdout)
    directory = "directory"    # stdout 은 진행만, 결과는 파일별 JSON (--output-dir)


@dataclass
class EngineOptions:
    model: str
    min_confidence: float
    execution_provider: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    month: Optional[int] = None
    day: Optional[int] = None
    day_of_year: Optional[int] = None
    quiet: bool = True
    output_dir: Optional[str] = None

    @property
    def mode(self) -> TransportMode:
        return TransportMode.directory if self.output_dir else TransportMode.inline

    def as_settings(self) -> dict:
        d = asdict(self)
        d.pop("output_dir", None)
        d["mode"] = self.mode.value
        return d


def choose_mode(source_path: str | Path, requested: Optional[TransportMode] = None) -> TransportMode:
    if requested is not None:
        return TransportMode(requested)
    return TransportMode.directory if Path(source_path).is_dir() else TransportMode.inline


def _stem(name: str) -> str:
    base = re.split(r"[\\/]", name)[-1]
    return os.path.splitext(base)[0]


def parse_recording_start(filename: str) -> Optional[dt.datetime]:
    """AudioMoth 식 파일명 YYYYMMDD_HHMMSS → naive datetime (달력상 잘못된 값이면 None)"""
    m = RECORDING_STAMP.match(_stem(filename))
    if not m:
        return None
    try:
        return dt.datetime(*(int(g) for g in m.groups()))
    except ValueError:
        return None


def day_of_year(month: int, day: int) -> int:
    return dt.date(LEAP_YEAR_FOR_DOY, month, day).timetuple().tm_yday


def resolve_calendar(
    source_path: str | Path,
    month: Optional[int] = None,
    day: Optional[int] = None,
) -> tuple[Optional[int], Optional[int], Optional[int]]:
    """
    (month, day, day_of_year) 결정.
    명시 값 우선, 없으면 소스 이름의 녹음 타임스탬프에서 보충.
    BirdNET 계열은 month/day, BSG 계열은 day-of-year 를 쓰므로 둘 다 돌려준다.
    """
    if month is None or day is None:
        parsed = parse_recording_start(str(source_path))
        if parsed is not None:
            month = month if month is not None else parsed.month
            day = day if day is not None else parsed.day

    doy = None
    if month is not None and day is not None:
        try:
            doy = day_of_year(month, day)
        except ValueError:
            doy = None
    return month, day, doy


def result_path_for(output_dir: str | Path, audio_file: str) -> Path:
    return Path(output_dir) / f"{_stem(audio_file)}{RESULT_FILE_SUFFIX}"


def create_output_dir(base_dir: str | None = None) -> str:
    if base_dir:
        os.makedirs(base_dir, exist_ok=True)
    return tempfile.mkdtemp(prefix="birda-", dir=base_dir or None)


def remove_output_dir(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)
