"""
Enrichment cache table — one payload per (domain, business key).

Domains separate independent caches sharing the table, e.g. 'people' keyed by
profile URL and 'organizations' keyed by organization id.
"""
from sqlalchemy import Column, Text, Integer, DateTime, UniqueConstraint

from leadpipe.database import Base


class EnrichmentCacheEntry(Base):
    __tablename__ = 'enrichment_cache'

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain = Column(Text, nullable=False)
    cache_key = Column(Text, nullable=False)
    payload = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('domain', 'cache_key', name='uq_enrichment_cache_domain_key'),
    )
