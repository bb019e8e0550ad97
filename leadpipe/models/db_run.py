"""
Durable run record — mirrors the Redis Run for cross-run reporting.
"""
from sqlalchemy import Column, Text, Integer, DateTime, JSON, Boolean
from sqlalchemy.sql import func

from leadpipe.database import Base


class DbRun(Base):
    __tablename__ = 'runs'

    id = Column(Text, primary_key=True)
    name = Column(Text, default='')
    status = Column(Text, nullable=False, default='queued')
    pipeline = Column(JSON, default=list)
    current_step = Column(Text, default='')
    step_status = Column(JSON, default=dict)
    input_count = Column(Integer, default=0)
    output_count = Column(Integer, default=0)
    tagged_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    use_file_storage = Column(Boolean, default=False)
    totals = Column(JSON, nullable=True)
    summary = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)
