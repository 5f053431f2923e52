from sqlalchemy import CheckConstraint, Column, DateTime, Float, Integer, String, Text
from birdcatalog.db.base import Base

class AnalysisLeaseRow(Base):
    """카탈로그 당 한 행(id=1). 분석 중인 프로세스가 자신을 기록해 두는 자리."""

    __tablename__ = "analysis_lease"
    __table_args__ = (CheckConstraint("id = 1", name="ck_analysis_lease_single_row"),)

    id = Column(Integer, primary_key=True, autoincrement=False)
    holder_pid = Column(Integer)
    # pid 재사용 구분용 (psutil create_time)
    holder_started = Column(Float)
    holder_host = Column(String(255))
    owner = Column(Text)
    acquired_at = Column(DateTime)
