from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

import soundfile as sf

from birdcatalog.services.engine.protocol import parse_recording_start

logger = logging.getLogger("birdcatalog.audio")

_DEVICE_ARTIST = re.compile(r"AudioMoth\s+([A-Fa-f0-9]+)")
_DEVICE_COMMENT = re.compile(r"by AudioMoth\s+([A-Fa-f0-9]+)")
_RECORDED_AT = re.compile(
    r"Recorded at (\d{2}:\d{2}:\d{2}) (\d{2})/(\d{2})/(\d{4}) \(UTC([+-]\d{1,2}(?::\d{2})?)?\)"
)
_GAIN = re.compile(r"at ([\w-]+) gain")
_BATTERY = re.compile(r"battery was (?:greater than |less than )?([\d.]+)V")
_TEMPERATURE = re.compile(r"temperature was (-?[\d.]+)C")
_TZ = re.compile(r"^([+-])(\d{1,2})(?::(\d{2}))?$")


@dataclass
class AudioMothMeta:
    device_id: str
    gain: str = "unknown"
    battery_v: Optional[float] = None
    temperature_c: Optional[float] = None
    recorded_at: Optional[str] = None
    timezone_offset_min: Optional[int] = None


@dataclass
class AudioFileMetadata:
    """audio_files 행에 들어가는 메타데이터 (모두 선택)"""

    recording_start: Optional[str] = None
    timezone_offset_min: Optional[int] = None
    duration_sec: Optional[float] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    audiomoth_device_id: Optional[str] = None
    audiomoth_gain: Optional[str] = None
    audiomoth_battery_v: Optional[float] = None
    audiomoth_temperature_c: Optional[float] = None

    def as_columns(self) -> dict:
        return asdict(self)


def parse_timezone_offset(tz: Optional[str]) -> int:
    """"+3", "-5", "+5:30" → UTC 기준 분. 없으면 0 (bare "(UTC)")"""
    if not tz:
        return 0
    m = _TZ.match(tz)
    if not m:
        return 0
    sign = 1 if m.group(1) == "+" else -1
    return sign * (int(m.group(2)) * 60 + int(m.group(3) or 0))


def format_iso_offset(offset_min: int) -> str:
    if offset_min == 0:
        return "Z"
    sign = "+" if offset_min >= 0 else "-"
    h, m = divmod(abs(offset_min), 60)
    return f"{sign}{h:02d}:{m:02d}"


def format_iso_timestamp(value: dt.datetime, offset_min: int) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%S") + format_iso_offset(offset_min)


def parse_audiomoth_comment(comment: Optional[str], artist: Optional[str] = None) -> Optional[AudioMothMeta]:
    """
    AudioMoth WAV 의 comment/artist 태그 파싱.
    "Recorded at 11:38:05 01/01/2025 (UTC+1) by AudioMoth 24E144... at medium gain
     while battery was greater than 4.9V and temperature was 16.1C."
    AudioMoth 녹음이 아니면 None.
    """
    device = None
    if artist:
        m = _DEVICE_ARTIST.search(artist)
        device = m.group(1) if m else None
    if device is None and comment:
        m = _DEVICE_COMMENT.search(comment)
        device = m.group(1) if m else None
    if device is None:
        return None

    meta = AudioMothMeta(device_id=device)
    if not comment:
        return meta

    m = _RECORDED_AT.search(comment)
    if m:
        time_s, dd, mm, yyyy, tz = m.groups()
        meta.timezone_offset_min = parse_timezone_offset(tz)
        meta.recorded_at = f"{yyyy}-{mm}-{dd}T{time_s}{format_iso_offset(meta.timezone_offset_min)}"

    m = _GAIN.search(comment)
    if m:
        meta.gain = m.group(1)
    m = _BATTERY.search(comment)
    if m:
        meta.battery_v = float(m.group(1))
    m = _TEMPERATURE.search(comment)
    if m:
        meta.temperature_c = float(m.group(1))
    return meta


def read_audio_info(path: str) -> tuple[Optional[float], Optional[int], Optional[int], dict]:
    """
    메타만 읽기 (빠름). (duration_sec, sample_rate, channels, tags)
    libsndfile 이 못 여는 포맷이면 전부 None.
    """
    in_path = Path(path)
    if not in_path.is_file():
        return None, None, None, {}
    try:
        info = sf.info(str(in_path))
        with sf.SoundFile(str(in_path)) as f:
            tags = f.copy_metadata()
    except (RuntimeError, OSError) as e:
        logger.debug("soundfile could not read %s: %s", in_path, e)
        return None, None, None, {}

    sr = int(info.samplerate)
    duration = (info.frames / sr) if sr > 0 else None
    return duration, sr or None, int(info.channels), tags


def build_file_metadata(file_path: str, run_timezone_offset: Optional[int] = None) -> AudioFileMetadata:
    """
    녹음 시작 시각 우선순위: AudioMoth 태그 > 파일명 (YYYYMMDD_HHMMSS, 오프셋 없으면 UTC)
    """
    duration, sr, channels, tags = read_audio_info(file_path)
    moth = parse_audiomoth_comment(tags.get("comment"), tags.get("artist"))

    recording_start = None
    tz_offset = run_timezone_offset
    if moth is not None and moth.recorded_at:
        recording_start = moth.recorded_at
        tz_offset = moth.timezone_offset_min
    else:
        parsed = parse_recording_start(file_path)
        if parsed is not None:
            if tz_offset is None:
                tz_offset = 0
            recording_start = format_iso_timestamp(parsed, tz_offset)

    return AudioFileMetadata(
        recording_start=recording_start,
        timezone_offset_min=tz_offset,
        duration_sec=duration,
        sample_rate=sr,
        channels=channels,
        audiomoth_device_id=moth.device_id if moth else None,
        audiomoth_gain=moth.gain if moth else None,
        audiomoth_battery_v=moth.battery_v if moth else None,
        audiomoth_temperature_c=moth.temperature_c if moth else None,
    )
