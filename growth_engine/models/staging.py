"""
Staging Models

Canonical, source-agnostic rows produced by the staging normalizer.
Every table is upserted by its natural key, so re-running normalization
over the same raw data leaves row counts and values unchanged.
"""
from sqlalchemy import Column, Integer, String, Date, DateTime, JSON, Boolean, Text, Numeric, UniqueConstraint
from datetime import datetime

from growth_engine.models.base import Base


class StgOrder(Base):
    """
    Normalized order

    revenue_net is always recomputed as gross - discounts - refunds.
    """
    __tablename__ = "stg_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String, unique=True, index=True, nullable=False)

    order_date = Column(DateTime, index=True, nullable=False)
    customer_id = Column(String, index=True, nullable=True)
    email = Column(String, index=True, nullable=True)

    # Amounts
    revenue_gross = Column(Numeric(12, 2), default=0)
    discounts = Column(Numeric(12, 2), default=0)
    refunds = Column(Numeric(12, 2), default=0)
    revenue_net = Column(Numeric(12, 2), default=0)
    currency = Column(String, default="USD")

    # Attribution
    source_name = Column(String, nullable=True)
    landing_site = Column(Text, nullable=True)
    referring_site = Column(Text, nullable=True)
    utm_source = Column(String, index=True, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    gclid = Column(String, nullable=True)
    fbclid = Column(String, nullable=True)
    channel_raw = Column(String, index=True, nullable=False)  # meta, google, organic, email, affiliate, direct, other

    region = Column(String, nullable=True)
    is_new_customer = Column(Boolean, default=False)
    line_items_json = Column(JSON, nullable=True)

    # Filled by the payment enrichment pass
    payment_method = Column(String, nullable=True)  # card_visa, paypal, ...
    payment_status = Column(String, nullable=True)  # succeeded, failed, pending

    payload_shape = Column(String, nullable=True)  # graphql, rest, synthetic
    normalized_at = Column(DateTime, default=datetime.utcnow)


class StgCustomer(Base):
    """Normalized customer"""
    __tablename__ = "stg_customers"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String, unique=True, index=True, nullable=False)

    email = Column(String, index=True, nullable=True)
    first_order_date = Column(DateTime, nullable=True)
    region = Column(String, nullable=True)
    total_orders = Column(Integer, default=0)
    total_revenue = Column(Numeric(12, 2), default=0)

    normalized_at = Column(DateTime, default=datetime.utcnow)


class StgSpend(Base):
    """Daily ad spend per campaign (Meta, Google Ads, TikTok)"""
    __tablename__ = "stg_spend"
    __table_args__ = (
        UniqueConstraint("date", "source", "campaign_id", name="uq_stg_spend_date_source_campaign"),
    )

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, index=True, nullable=False)
    source = Column(String, index=True, nullable=False)
    campaign_id = Column(String, index=True, nullable=False)
    campaign_name = Column(String, nullable=True)

    spend = Column(Numeric(12, 2), default=0)
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    conversions = Column(Integer, default=0)
    conversion_value = Column(Numeric(12, 2), default=0)

    normalized_at = Column(DateTime, default=datetime.utcnow)


class StgTraffic(Base):
    """Daily sessions and funnel counts per analytics channel group"""
    __tablename__ = "stg_traffic"
    __table_args__ = (
        UniqueConstraint("date", "source", "channel_raw", name="uq_stg_traffic_date_source_channel"),
    )

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, index=True, nullable=False)
    source = Column(String, index=True, nullable=False)
    channel_raw = Column(String, nullable=False)  # GA4 label, e.g. "Paid Social"
    channel = Column(String, index=True, nullable=False)  # mapped slug

    sessions = Column(Integer, default=0)
    pdp_views = Column(Integer, default=0)
    add_to_cart = Column(Integer, default=0)
    checkouts = Column(Integer, default=0)
    purchases = Column(Integer, default=0)

    normalized_at = Column(DateTime, default=datetime.utcnow)


class StgEmail(Base):
    """Daily email campaign / flow performance"""
    __tablename__ = "stg_email"
    __table_args__ = (
        UniqueConstraint("date", "source", "campaign_id", name="uq_stg_email_date_source_campaign"),
    )

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, index=True, nullable=False)
    source = Column(String, index=True, nullable=False)
    campaign_id = Column(String, index=True, nullable=False)
    campaign_name = Column(String, nullable=True)
    campaign_type = Column(String, nullable=True)  # campaign, flow

    sends = Column(Integer, default=0)
    opens = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    bounces = Column(Integer, default=0)
    unsubscribes = Column(Integer, default=0)
    conversions = Column(Integer, default=0)
    revenue = Column(Numeric(12, 2), default=0)

    normalized_at = Column(DateTime, default=datetime.utcnow)
