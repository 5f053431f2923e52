from sqlalchemy import CheckConstraint, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from birdcatalog.db.base import Base

class Detection(Base):
    __tablename__ = "detections"
    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_detections_confidence"),
        CheckConstraint("start_time <= end_time", name="ck_detections_time_order"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("analysis_runs.id", ondelete="CASCADE"), nullable=False, index=True)
    location_id = Column(Integer, ForeignKey("locations.id"), index=True)
    audio_file_id = Column(Integer, ForeignKey("audio_files.id", ondelete="CASCADE"), nullable=False, index=True)
    start_time = Column(Float, nullable=False)
    end_time = Column(Float, nullable=False)
    scientific_name = Column(String(255), nullable=False, index=True)
    confidence = Column(Float, nullable=False, index=True)
    clip_path = Column(Text)
    detected_at = Column(DateTime, nullable=False, server_default=func.now())

    audio_file = relationship("AudioFile", back_populates="detections")
