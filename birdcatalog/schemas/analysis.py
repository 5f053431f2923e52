from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from birdcatalog.core.config import settings
from birdcatalog.services.engine.protocol import TransportMode
from birdcatalog.services.engine.supervisor import EXECUTION_PROVIDER_FLAGS


class AnalysisRequest(BaseModel):
    source_path: str = Field(min_length=1)
    model: str = Field(default_factory=lambda: settings.DEFAULT_MODEL, min_length=1)
    min_confidence: float = Field(default_factory=lambda: settings.DEFAULT_CONFIDENCE, ge=0.0, le=1.0)
    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    day: Optional[int] = Field(default=None, ge=1, le=31)
    location_name: Optional[str] = None
    timezone_offset_min: Optional[int] = None
    execution_provider: Optional[str] = Field(default_factory=lambda: settings.DEFAULT_EXECUTION_PROVIDER)
    # None 이면 소스가 디렉터리인지로 결정
    mode: Optional[TransportMode] = None

    @field_validator("execution_provider")
    @classmethod
    def _known_provider(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.lower()
        if v not in EXECUTION_PROVIDER_FLAGS:
            raise ValueError(f"unknown execution provider {v!r}")
        return v

    @model_validator(mode="after")
    def _coords_together(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self


class AnalysisOutcome(BaseModel):
    run_id: int
    status: str
    mode: TransportMode
    detections: int = 0
    files_total: int = 0
    files_processed: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    failed_files: List[str] = []
    skipped_files: List[str] = []
    error: Optional[str] = None
    # 실패한 디렉터리 모드 run 의 결과 디렉터리 (디버깅용으로 남겨둠)
    output_dir: Optional[str] = None


class ClipRequest(BaseModel):
    detection_id: Optional[int] = None
    audio_path: str = Field(min_length=1)
    start_time: float = Field(ge=0.0)
    end_time: float = Field(ge=0.0)
    output_dir: Optional[str] = None

    @model_validator(mode="after")
    def _time_order(self):
        if self.start_time > self.end_time:
            raise ValueError("start_time must not be after end_time")
        return self


class ClipResult(BaseModel):
    clip_path: str
    detection_id: Optional[int] = None


class EngineInfo(BaseModel):
    path: str
    version: str
    min_version: str
    meets_minimum: bool
