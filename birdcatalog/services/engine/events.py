from __future__ import annotations

import enum
import json
import logging
from typing import Any, Callable, Iterable, Iterator, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from birdcatalog.core.errors import ProtocolDecodeNoise

logger = logging.getLogger("birdcatalog.engine.events")


class EventType(str, enum.Enum):
    pipeline_started = "pipeline_started"
    file_started = "file_started"
    progress = "progress"
    file_completed = "file_completed"
    pipeline_completed = "pipeline_completed"
    detections = "detections"


class FileStatus(str, enum.Enum):
    processed = "processed"
    failed = "failed"
    skipped = "skipped"


# ── payloads ────────────────────────────────────────────────────────────────
class PipelineStartedPayload(BaseModel):
    total_files: int = 0
    model: str | None = None
    min_confidence: float | None = None


class FileStartedPayload(BaseModel):
    file: str
    index: int | None = None
    samples: int | None = None
    estimated_segments: int | None = None


class FileProgress(BaseModel):
    path: str
    segments_done: int = 0
    segments_total: int = 0
    percent: float = 0.0


class ProgressPayload(BaseModel):
    file: FileProgress


class FileCompletedPayload(BaseModel):
    file: str
    status: FileStatus
    detections: int = 0
    duration_ms: float = 0.0


class PipelineCompletedPayload(BaseModel):
    status: str
    files_processed: int = 0
    files_failed: int = 0
    total_detections: int = 0
    duration_ms: float = 0.0
    realtime_factor: float | None = None


class RawDetection(BaseModel):
    species: str | None = None
    scientific_name: str
    common_name: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    start_time: float
    end_time: float

    @model_validator(mode="after")
    def _check_time_order(self):
        if self.start_time > self.end_time:
            raise ValueError(f"start_time {self.start_time} > end_time {self.end_time}")
        return self


class DetectionsPayload(BaseModel):
    file: str
    detections: list[RawDetection] = []


_EVENT_NAMES = frozenset(e.value for e in EventType)

PAYLOAD_MODELS: dict[EventType, type[BaseModel]] = {
    EventType.pipeline_started: PipelineStartedPayload,
    EventType.file_started: FileStartedPayload,
    EventType.progress: ProgressPayload,
    EventType.file_completed: FileCompletedPayload,
    EventType.pipeline_completed: PipelineCompletedPayload,
    EventType.detections: DetectionsPayload,
}


class Envelope(BaseModel):
    spec_version: str = ""
    timestamp: str = ""
    event: EventType
    payload: dict[str, Any] = {}

    def typed_payload(self) -> BaseModel:
        """payload 를 이벤트별 모델로 검증. 의미 검증은 소비하는 쪽 책임이라 여기서 지연 수행한다."""
        return PAYLOAD_MODELS[self.event].model_validate(self.payload)


def parse_envelope(line: str) -> Envelope:
    try:
        obj = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolDecodeNoise(line, f"not JSON ({e.msg})") from None
    if not isinstance(obj, dict):
        raise ProtocolDecodeNoise(line, "not a JSON object")
    event = obj.get("event")
    if not isinstance(event, str) or event not in _EVENT_NAMES:
        raise ProtocolDecodeNoise(line, f"unknown event {event!r}")
    try:
        return Envelope.model_validate(obj)
    except ValidationError as e:
        raise ProtocolDecodeNoise(line, f"bad envelope ({e.error_count()} error(s))") from None


class EventStreamDecoder:
    """
    stdout 라인 → Envelope 스트림.
    파싱 안 되는 라인은 엔진 잡음으로 보고 로그/진단 버퍼로 넘긴 뒤 계속 진행한다.
    순서는 입력 라인 순서 그대로.
    """

    def __init__(self, on_noise: Optional[Callable[[str], None]] = None):
        self.on_noise = on_noise
        self.envelope_count = 0
        self.noise_count = 0

    def decode_line(self, line: str) -> Optional[Envelope]:
        line = line.strip()
        if not line:
            return None
        try:
            envelope = parse_envelope(line)
        except ProtocolDecodeNoise as noise:
            self.noise_count += 1
            msg = f"[non-json stdout]: {noise.line}"
            logger.warning(msg)
            if self.on_noise is not None:
                self.on_noise(msg)
            return None
        self.envelope_count += 1
        logger.debug("[event] %s: %s", envelope.event.value, envelope.payload)
        return envelope

    def decode(self, lines: Iterable[str]) -> Iterator[Envelope]:
        for line in lines:
            envelope = self.decode_line(line)
            if envelope is not None:
                yield envelope
