import enum

from sqlalchemy import CheckConstraint, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from birdcatalog.db.base import Base

class RunStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    completed_with_errors = "completed_with_errors"


TERMINAL_STATUSES = frozenset({RunStatus.completed, RunStatus.failed, RunStatus.completed_with_errors})
ACTIVE_STATUSES = frozenset({RunStatus.pending, RunStatus.running})


class AnalysisRun(Base):
    __tablename__ = "analysis_runs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','running','completed','failed','completed_with_errors')",
            name="ck_analysis_runs_status",
        ),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    location_id = Column(Integer, ForeignKey("locations.id"))
    source_path = Column(Text, nullable=False)
    model = Column(String(128), nullable=False)
    min_confidence = Column(Float, nullable=False, default=0.1)
    settings_json = Column(Text)
    status = Column(String(32), nullable=False, default=RunStatus.pending.value)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    timezone_offset_min = Column(Integer)
    # 실패한 run 의 stderr 꼬리 / 오류 메시지
    error_log = Column(Text)

    location = relationship("Location")
    audio_files = relationship(
        "AudioFile", back_populates="run", cascade="all, delete-orphan", passive_deletes=True
    )
