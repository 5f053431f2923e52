from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from birdcatalog.db.base import Base

class AudioFile(Base):
    __tablename__ = "audio_files"
    __table_args__ = (
        UniqueConstraint("run_id", "file_path", name="uq_audio_files_run_path"),
        Index("idx_audio_files_path", "file_path"),
        Index("idx_audio_files_device", "audiomoth_device_id"),
        Index("idx_audio_files_recording_start", "recording_start"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("analysis_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    file_path = Column(Text, nullable=False)
    file_name = Column(String(255), nullable=False)
    # ISO8601 문자열 (오프셋 포함) 그대로 보관
    recording_start = Column(String(40))
    timezone_offset_min = Column(Integer)
    duration_sec = Column(Float)
    sample_rate = Column(Integer)
    channels = Column(Integer)
    audiomoth_device_id = Column(String(32))
    audiomoth_gain = Column(String(32))
    audiomoth_battery_v = Column(Float)
    audiomoth_temperature_c = Column(Float)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    run = relationship("AnalysisRun", back_populates="audio_files")
    detections = relationship(
        "Detection", back_populates="audio_file", cascade="all, delete-orphan", passive_deletes=True
    )
