"""
Raw Store Models

Append-only capture of every item fetched by a connector.
One row per (source, entity, external_id) when the connector supplies an id.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from datetime import datetime

from growth_engine.models.base import Base


class RawEvent(Base):
    """
    Raw connector payload

    Written by ingest_raw(), read in id order by the staging normalizer.
    """
    __tablename__ = "raw_events"
    __table_args__ = (
        UniqueConstraint("source", "entity", "external_id", name="uq_raw_events_source_entity_external_id"),
    )

    id = Column(Integer, primary_key=True, index=True)

    source = Column(String, index=True, nullable=False)  # shopify, meta, google_ads, ga4, klaviyo, stripe, tiktok
    entity = Column(String, index=True, nullable=False)  # orders, customers, insights, traffic, charges, ...
    external_id = Column(String, index=True, nullable=True)
    cursor = Column(String, nullable=True)

    payload_json = Column(JSON, nullable=False)

    fetched_at = Column(DateTime, default=datetime.utcnow, index=True)
