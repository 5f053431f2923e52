from sqlalchemy import Column, DateTime, Integer
from sqlalchemy.sql import func
from birdcatalog.db.base import Base

class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version = Column(Integer, primary_key=True, autoincrement=False)
    applied_at = Column(DateTime, nullable=False, server_default=func.now())
