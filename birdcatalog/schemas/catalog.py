from __future__ import annotations

import datetime as dt
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DETECTION_SORT_COLUMNS = ("scientific_name", "confidence", "start_time", "file_name", "recording_start", "detected_at")


class DetectionFilter(BaseModel):
    species: Optional[str] = None
    scientific_names: List[str] = []
    location_id: Optional[int] = None
    run_id: Optional[int] = None
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    sort_column: Optional[str] = None
    sort_dir: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=100, ge=1, le=10_000)
    offset: int = Field(default=0, ge=0)


class AudioFileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    run_id: int
    file_path: str
    file_name: str
    recording_start: Optional[str] = None
    timezone_offset_min: Optional[int] = None
    duration_sec: Optional[float] = None
    sample_rate: Optional[int] = None
    channels: Optional[int] = None
    audiomoth_device_id: Optional[str] = None
    audiomoth_gain: Optional[str] = None
    audiomoth_battery_v: Optional[float] = None
    audiomoth_temperature_c: Optional[float] = None
    created_at: Optional[dt.datetime] = None


class DetectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    run_id: int
    location_id: Optional[int] = None
    audio_file_id: int
    start_time: float
    end_time: float
    scientific_name: str
    confidence: float
    clip_path: Optional[str] = None
    detected_at: Optional[dt.datetime] = None
    audio_file: Optional[AudioFileOut] = None


class DetectionPage(BaseModel):
    detections: List[DetectionOut]
    total: int


class SpeciesSummary(BaseModel):
    scientific_name: str
    location_count: int
    detection_count: int
    last_detected: Optional[str] = None
    avg_confidence: float


class SpeciesLocation(BaseModel):
    location_id: int
    latitude: float
    longitude: float
    name: Optional[str] = None
    detection_count: int


class LocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: Optional[str] = None
    latitude: float
    longitude: float
    description: Optional[str] = None
    created_at: Optional[dt.datetime] = None


class LocationWithCounts(LocationOut):
    # with_counts=false 목록에서는 집계하지 않으므로 None
    detection_count: Optional[int] = None
    species_count: Optional[int] = None


class RunWithStats(BaseModel):
    id: int
    location_id: Optional[int] = None
    source_path: str
    model: str
    min_confidence: float
    settings_json: Optional[str] = None
    status: str
    started_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None
    timezone_offset_min: Optional[int] = None
    error_log: Optional[str] = None
    detection_count: int = 0
    location_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class CatalogStats(BaseModel):
    total_detections: int
    total_species: int
    total_locations: int


class ClearResult(BaseModel):
    detections: int
    runs: int
    locations: int
