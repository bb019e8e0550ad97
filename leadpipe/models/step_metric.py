"""
Per-step usage metrics for a finished run, including derived sub-steps.
"""
from sqlalchemy import Column, Text, Integer, BigInteger, DateTime, JSON, Boolean, ForeignKey, Index
from sqlalchemy.sql import func

from leadpipe.database import Base


class StepMetricRecord(Base):
    __tablename__ = 'step_metrics'

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Text, ForeignKey('runs.id', ondelete='CASCADE'), nullable=False)
    step_id = Column(Text, nullable=False)
    api_tool = Column(Text, default='')
    is_substep = Column(Boolean, default=False)
    parent_step = Column(Text, nullable=True)
    tokens_used = Column(BigInteger, default=0)
    credits_used = Column(BigInteger, default=0)
    api_calls = Column(Integer, default=0)
    cache_hits = Column(Integer, default=0)
    errors = Column(Integer, default=0)
    processing_time_ms = Column(BigInteger, default=0)
    input_count = Column(Integer, default=0)
    output_count = Column(Integer, default=0)
    filtered_count = Column(Integer, default=0)
    specific_metrics = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('ix_step_metrics_run_id', 'run_id'),
        Index('ix_step_metrics_step_id', 'step_id'),
    )
