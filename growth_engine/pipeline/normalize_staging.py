"""
Staging Normalizer

Reads raw_events per source/entity in bounded id-ordered batches, reconciles
the payload layouts each connector has produced over time into canonical
rows, and upserts them into the stg_* tables by natural key.

Failure semantics:
- A malformed record (bad date, bad number, no usable id) is skipped with a
  warning; the rest of its batch is applied.
- Any other error rolls the whole batch back and is raised as
  BatchFailedError. Replaying is safe: applied rows upsert to themselves.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_

from growth_engine.config import get_settings
from growth_engine.models.base import SessionLocal
from growth_engine.models.raw import RawEvent
from growth_engine.models.staging import StgOrder, StgCustomer, StgSpend, StgTraffic, StgEmail
from growth_engine.pipeline.channel_mapping import map_channel_from_order, map_ga4_channel_to_slug
from growth_engine.pipeline.errors import BatchFailedError, MalformedRecordError
from growth_engine.pipeline.extractors import (
    FieldSpec,
    detect_order_shape,
    path,
    parse_tags,
    read_fields,
    strip_gid,
    to_date,
    to_datetime,
    to_decimal,
    to_int,
    to_text,
)
from growth_engine.utils.logger import log
from growth_engine.utils.url_parsing import parse_landing_site

CENTS = Decimal("0.01")
MICROS = Decimal("1000000")


# ---------------------------------------------------------------------------
# Shape-specific extractors
# ---------------------------------------------------------------------------

def _rest_refund_total(payload: Dict[str, Any]) -> Optional[str]:
    """Legacy REST orders carry refunds[].transactions[]; sum the refund amounts."""
    refunds = payload.get("refunds")
    if not isinstance(refunds, list):
        return None
    total = Decimal("0")
    for refund in refunds:
        if not isinstance(refund, dict):
            continue
        for txn in refund.get("transactions") or []:
            if isinstance(txn, dict) and txn.get("kind", "refund") == "refund":
                total += to_decimal(txn.get("amount"), "refunds")
    return str(total)


def _graphql_refunds_from_current(payload: Dict[str, Any]) -> Optional[str]:
    """GraphQL without totalRefundedSet: refunded = total - current total."""
    total = path("totalPriceSet", "shopMoney", "amount")(payload)
    current = path("currentTotalPriceSet", "shopMoney", "amount")(payload)
    if total is None or current is None:
        return None
    refunded = to_decimal(total, "total_price") - to_decimal(current, "current_total_price")
    return str(max(refunded, Decimal("0")))


def _graphql_line_items(payload: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    edges = path("lineItems", "edges")(payload)
    if not isinstance(edges, list):
        return None
    items = []
    for edge in edges:
        node = edge.get("node") if isinstance(edge, dict) else None
        if not isinstance(node, dict):
            continue
        items.append({
            "id": strip_gid(node.get("id")),
            "title": node.get("title"),
            "quantity": to_int(node.get("quantity"), "quantity") or 1,
            "price": str(to_decimal(path("originalUnitPriceSet", "shopMoney", "amount")(node), "price")),
            "product_type": path("product", "productType")(node),
        })
    return items


def _rest_line_items(payload: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    raw_items = payload.get("line_items")
    if not isinstance(raw_items, list):
        return None
    items = []
    for item in raw_items:
        if not isinstance(item, dict):
            continue
        items.append({
            "id": strip_gid(item.get("id")),
            "title": item.get("title"),
            "quantity": to_int(item.get("quantity"), "quantity") or 1,
            "price": str(to_decimal(item.get("price"), "price")),
            "product_type": item.get("product_type"),
        })
    return items


def _meta_purchase(key: str) -> Callable[[Dict[str, Any]], Any]:
    """Meta reports purchases inside actions / action_values lists."""
    def _extract(payload: Dict[str, Any]) -> Any:
        entries = payload.get(key)
        if not isinstance(entries, list):
            return None
        for entry in entries:
            if isinstance(entry, dict) and entry.get("action_type") == "purchase":
                return entry.get("value")
        return None
    return _extract


# ---------------------------------------------------------------------------
# Field specs (order of extractors = order shapes are tried)
# ---------------------------------------------------------------------------

ORDER_FIELDS = {
    "order_number": FieldSpec(path("order_number"), path("name")),
    "raw_id": FieldSpec(path("id")),
    "created_at": FieldSpec(path("createdAt"), path("created_at"), path("processed_at")),
    "customer_id": FieldSpec(path("customer", "id"), path("customer_id")),
    "email": FieldSpec(path("customer", "email"), path("email"), path("contact_email")),
    "revenue_gross": FieldSpec(path("totalPriceSet", "shopMoney", "amount"), path("total_price"), default="0"),
    "discounts": FieldSpec(path("totalDiscountsSet", "shopMoney", "amount"), path("total_discounts"), default="0"),
    "refunds": FieldSpec(
        path("totalRefundedSet", "shopMoney", "amount"),
        path("total_refunds"),
        _rest_refund_total,
        _graphql_refunds_from_current,
        default="0",
    ),
    "currency": FieldSpec(path("totalPriceSet", "shopMoney", "currencyCode"), path("currency")),
    "source_name": FieldSpec(path("sourceName"), path("source_name")),
    "landing_site": FieldSpec(path("landingPageUrl"), path("landing_site")),
    "referring_site": FieldSpec(path("referrerUrl"), path("referring_site")),
    "region": FieldSpec(path("shippingAddress", "provinceCode"), path("shipping_address", "province_code")),
    "tags": FieldSpec(path("tags")),
    "line_items": FieldSpec(_graphql_line_items, _rest_line_items),
    "last_visit": FieldSpec(
        path("customerJourneySummary", "lastVisit"),
        path("customer_journey_summary", "last_visit"),
    ),
}

CUSTOMER_FIELDS = {
    "customer_id": FieldSpec(path("id")),
    "email": FieldSpec(path("email")),
    "created_at": FieldSpec(path("createdAt"), path("created_at")),
    "region": FieldSpec(path("defaultAddress", "provinceCode"), path("default_address", "province_code")),
    "total_orders": FieldSpec(path("numberOfOrders"), path("orders_count"), default=0),
    "total_revenue": FieldSpec(path("amountSpent", "amount"), path("total_spent"), default="0"),
}

SPEND_FIELDS = {
    "date": FieldSpec(path("date_start"), path("segments", "date"), path("stat_time_day"), path("date")),
    "campaign_id": FieldSpec(path("campaign", "id"), path("campaign_id"), default=""),
    "campaign_name": FieldSpec(path("campaign", "name"), path("campaign_name"), default=""),
    "spend": FieldSpec(path("spend")),
    "spend_micros": FieldSpec(path("metrics", "costMicros"), path("metrics", "cost_micros")),
    "impressions": FieldSpec(path("metrics", "impressions"), path("impressions"), default=0),
    "clicks": FieldSpec(path("metrics", "clicks"), path("clicks"), default=0),
    "conversions": FieldSpec(
        path("metrics", "conversions"), _meta_purchase("actions"), path("conversions"), default=0,
    ),
    "conversion_value": FieldSpec(
        path("metrics", "conversionsValue"),
        path("metrics", "conversions_value"),
        _meta_purchase("action_values"),
        path("conversion_value"),
        default="0",
    ),
}

TRAFFIC_FIELDS = {
    "date": FieldSpec(path("date"), path("dimensionValues", 0, "value")),
    "channel_raw": FieldSpec(path("sessionDefaultChannelGroup"), path("dimensionValues", 1, "value"), default="Other"),
    "sessions": FieldSpec(path("sessions"), path("metricValues", 0, "value"), default=0),
    "pdp_views": FieldSpec(path("screenPageViews"), path("itemViews"), path("metricValues", 1, "value"), default=0),
    "add_to_cart": FieldSpec(path("addToCarts"), path("metricValues", 2, "value"), default=0),
    "checkouts": FieldSpec(path("checkouts"), path("metricValues", 3, "value"), default=0),
    "purchases": FieldSpec(path("ecommercePurchases"), path("metricValues", 4, "value"), default=0),
}

EMAIL_FIELDS = {
    "campaign_id": FieldSpec(path("id")),
    "campaign_name": FieldSpec(path("name"), path("attributes", "name")),
    "campaign_type": FieldSpec(path("campaign_type"), path("type")),
    "send_time": FieldSpec(
        path("send_time"),
        path("attributes", "send_time"),
        path("attributes", "scheduled_at"),
        path("attributes", "created_at"),
    ),
    "sends": FieldSpec(path("stats", "sends"), path("statistics", "recipients"), path("statistics", "delivered"), default=0),
    "opens": FieldSpec(path("stats", "opens"), path("statistics", "opens"), default=0),
    "clicks": FieldSpec(path("stats", "clicks"), path("statistics", "clicks"), default=0),
    "bounces": FieldSpec(path("stats", "bounces"), path("statistics", "bounced"), default=0),
    "unsubscribes": FieldSpec(path("stats", "unsubscribes"), path("statistics", "unsubscribes"), default=0),
    "conversions": FieldSpec(path("stats", "conversions"), path("statistics", "conversions"), default=0),
    "revenue": FieldSpec(path("stats", "revenue"), path("statistics", "conversion_value"), default="0"),
}

CHARGE_FIELDS = {
    "order_ref": FieldSpec(
        path("metadata", "order_id"),
        path("metadata", "order_number"),
        path("metadata", "shopify_order_number"),
    ),
    "method_type": FieldSpec(path("payment_method_details", "type")),
    "card_brand": FieldSpec(path("payment_method_details", "card", "brand")),
    "status": FieldSpec(path("status")),
}

SPEND_SOURCES = [("meta", "insights"), ("google_ads", "campaign_performance"), ("tiktok", "insights")]
EMAIL_SOURCES = [("klaviyo", "campaigns"), ("klaviyo", "flows")]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class EntityStats:
    """Per-entity counts for one normalization pass"""
    processed: int = 0
    skipped: int = 0
    skipped_ids: List[int] = field(default_factory=list)


@dataclass
class NormalizeResult:
    """Summary of a full normalize_staging() pass"""
    orders: EntityStats = field(default_factory=EntityStats)
    customers: EntityStats = field(default_factory=EntityStats)
    spend: EntityStats = field(default_factory=EntityStats)
    traffic: EntityStats = field(default_factory=EntityStats)
    email: EntityStats = field(default_factory=EntityStats)
    payments_matched: int = 0
    payments_unmatched: int = 0

    def to_dict(self) -> Dict[str, Any]:
        counts = {
            name: {"processed": stats.processed, "skipped": stats.skipped}
            for name, stats in (
                ("orders", self.orders),
                ("customers", self.customers),
                ("spend", self.spend),
                ("traffic", self.traffic),
                ("email", self.email),
            )
        }
        counts["payments"] = {"matched": self.payments_matched, "unmatched": self.payments_unmatched}
        return counts


# ---------------------------------------------------------------------------
# Normalizer
# ---------------------------------------------------------------------------

class StagingNormalizer:
    """
    Normalizes raw_events into stg_* tables.

    Not safe to run concurrently with itself against the same tables;
    callers serialize runs.
    """

    def __init__(self, session_factory=None, batch_size: Optional[int] = None, default_currency: Optional[str] = None):
        settings = get_settings()
        self.session_factory = session_factory or SessionLocal
        self.batch_size = batch_size or settings.normalize_batch_size
        self.default_currency = default_currency or settings.default_currency

    def run(self) -> NormalizeResult:
        """Normalize every entity, then enrich orders with payment data."""
        log.info("Starting staging normalization")
        result = NormalizeResult()

        result.orders = self.normalize_orders()
        result.customers = self.normalize_customers()
        result.spend = self.normalize_spend()
        result.traffic = self.normalize_traffic()
        result.email = self.normalize_email()
        result.payments_matched, result.payments_unmatched = self.enrich_payments()

        log.info(f"Staging normalization complete: {result.to_dict()}")
        return result

    # -- batch loop ---------------------------------------------------------

    def _process(self, stage: str, sources: Sequence[Tuple[str, str]], handler) -> EntityStats:
        """
        Page through raw_events for the given (source, entity) pairs by id.

        Each page is one transaction. handler(db, raw, cache) writes the row;
        cache holds rows upserted earlier in the same page so duplicate keys
        within a page resolve to one row.
        """
        stats = EntityStats()
        condition = or_(*[and_(RawEvent.source == s, RawEvent.entity == e) for s, e in sources])
        last_id = 0

        while True:
            db = self.session_factory()
            batch_last_id = None
            try:
                rows = (
                    db.query(RawEvent)
                    .filter(condition, RawEvent.id > last_id)
                    .order_by(RawEvent.id)
                    .limit(self.batch_size)
                    .all()
                )
                if not rows:
                    break
                batch_last_id = rows[-1].id

                cache: Dict[tuple, Any] = {}
                for raw in rows:
                    try:
                        if not isinstance(raw.payload_json, dict):
                            raise MalformedRecordError("Payload is not an object")
                        handler(db, raw, cache)
                        stats.processed += 1
                    except MalformedRecordError as e:
                        stats.skipped += 1
                        stats.skipped_ids.append(raw.id)
                        log.warning(
                            f"Skipping {raw.source}/{raw.entity} raw#{raw.id} "
                            f"(external_id={raw.external_id}): {e}"
                        )

                db.commit()
                last_id = batch_last_id
            except Exception as e:
                db.rollback()
                log.error(f"{stage}: batch after raw#{last_id} failed, rolled back: {e}")
                raise BatchFailedError(stage, last_id + 1, batch_last_id, e) from e
            finally:
                db.close()

        log.info(f"{stage}: {stats.processed} normalized, {stats.skipped} skipped")
        return stats

    @staticmethod
    def _upsert(db, model, key: Dict[str, Any], values: Dict[str, Any], cache: Dict[tuple, Any]):
        """Read-then-write upsert on a natural key inside the caller's transaction."""
        cache_key = (model.__tablename__,) + tuple(key[k] for k in sorted(key))
        row = cache.get(cache_key)
        if row is None:
            row = db.query(model).filter_by(**key).first()
        if row is None:
            row = model(**key)
            db.add(row)
        for attr, value in values.items():
            setattr(row, attr, value)
        cache[cache_key] = row
        return row

    # -- orders -------------------------------------------------------------

    def normalize_orders(self) -> EntityStats:
        return self._process("orders", [("shopify", "orders")], self._normalize_order)

    def _normalize_order(self, db, raw: RawEvent, cache) -> None:
        payload = raw.payload_json
        f = read_fields(payload, ORDER_FIELDS)

        order_id = _resolve_order_id(f["order_number"], f["raw_id"], raw.external_id)
        order_date = to_datetime(f["created_at"], "created_at")

        # Round each component first so the stored columns still add up
        revenue_gross = to_decimal(f["revenue_gross"], "total_price").quantize(CENTS)
        discounts = to_decimal(f["discounts"], "total_discounts").quantize(CENTS)
        refunds = to_decimal(f["refunds"], "refunds").quantize(CENTS)
        currency = to_text(f["currency"], "currency") or self.default_currency
        revenue_net = revenue_gross - discounts - refunds

        # Structured last-visit attribution beats UTM parsed from the landing URL
        parsed = parse_landing_site(f["landing_site"])
        last_visit = f["last_visit"] if isinstance(f["last_visit"], dict) else {}
        visit_utm = last_visit.get("utmParameters") or last_visit.get("utm_parameters") or {}
        if not isinstance(visit_utm, dict):
            visit_utm = {}
        utm_source = visit_utm.get("source") or parsed["utm_source"]
        utm_medium = visit_utm.get("medium") or parsed["utm_medium"]
        utm_campaign = visit_utm.get("campaign") or parsed["utm_campaign"]

        channel = map_channel_from_order(
            source_name=f["source_name"],
            utm_source=utm_source,
            utm_medium=utm_medium,
            referring_site=f["referring_site"],
            gclid=parsed["gclid"],
            fbclid=parsed["fbclid"],
            shopify_source=last_visit.get("source"),
            shopify_source_type=last_visit.get("sourceType") or last_visit.get("source_type"),
        )

        tags = [t.lower() for t in parse_tags(f["tags"])]

        self._upsert(db, StgOrder, {"order_id": order_id}, {
            "order_date": order_date,
            "customer_id": strip_gid(f["customer_id"]),
            "email": f["email"],
            "revenue_gross": revenue_gross,
            "discounts": discounts,
            "refunds": refunds,
            "revenue_net": revenue_net,
            "currency": currency.upper(),
            "source_name": f["source_name"],
            "landing_site": f["landing_site"] or None,
            "referring_site": f["referring_site"] or None,
            "utm_source": utm_source or None,
            "utm_medium": utm_medium or None,
            "utm_campaign": utm_campaign or None,
            "gclid": parsed["gclid"],
            "fbclid": parsed["fbclid"],
            "channel_raw": channel,
            "region": f["region"],
            "is_new_customer": "new_customer" in tags,
            "line_items_json": f["line_items"],
            "payload_shape": detect_order_shape(payload),
        }, cache)

    # -- customers ----------------------------------------------------------

    def normalize_customers(self) -> EntityStats:
        return self._process("customers", [("shopify", "customers")], self._normalize_customer)

    def _normalize_customer(self, db, raw: RawEvent, cache) -> None:
        f = read_fields(raw.payload_json, CUSTOMER_FIELDS)
        customer_id = strip_gid(f["customer_id"]) or raw.external_id
        if not customer_id:
            raise MalformedRecordError("Customer has no id", "id")

        first_order_date = to_datetime(f["created_at"], "created_at") if f["created_at"] else None

        self._upsert(db, StgCustomer, {"customer_id": customer_id}, {
            "email": f["email"],
            "first_order_date": first_order_date,
            "region": f["region"],
            "total_orders": to_int(f["total_orders"], "orders_count"),
            "total_revenue": to_decimal(f["total_revenue"], "total_spent"),
        }, cache)

    # -- spend --------------------------------------------------------------

    def normalize_spend(self) -> EntityStats:
        return self._process("spend", SPEND_SOURCES, self._normalize_spend_row)

    def _normalize_spend_row(self, db, raw: RawEvent, cache) -> None:
        f = read_fields(raw.payload_json, SPEND_FIELDS)
        day = to_date(f["date"], "date")

        if f["spend_micros"] is not None:
            spend = (to_decimal(f["spend_micros"], "cost_micros") / MICROS).quantize(CENTS)
        else:
            spend = to_decimal(f["spend"], "spend")

        self._upsert(db, StgSpend, {"date": day, "source": raw.source, "campaign_id": str(f["campaign_id"])}, {
            "campaign_name": f["campaign_name"],
            "spend": spend,
            "impressions": to_int(f["impressions"], "impressions"),
            "clicks": to_int(f["clicks"], "clicks"),
            "conversions": to_int(f["conversions"], "conversions"),
            "conversion_value": to_decimal(f["conversion_value"], "conversion_value"),
        }, cache)

    # -- traffic ------------------------------------------------------------

    def normalize_traffic(self) -> EntityStats:
        return self._process("traffic", [("ga4", "traffic")], self._normalize_traffic_row)

    def _normalize_traffic_row(self, db, raw: RawEvent, cache) -> None:
        f = read_fields(raw.payload_json, TRAFFIC_FIELDS)
        day = to_date(f["date"], "date")
        channel_raw = str(f["channel_raw"])

        self._upsert(db, StgTraffic, {"date": day, "source": raw.source, "channel_raw": channel_raw}, {
            "channel": map_ga4_channel_to_slug(channel_raw),
            "sessions": to_int(f["sessions"], "sessions"),
            "pdp_views": to_int(f["pdp_views"], "pdp_views"),
            "add_to_cart": to_int(f["add_to_cart"], "add_to_cart"),
            "checkouts": to_int(f["checkouts"], "checkouts"),
            "purchases": to_int(f["purchases"], "purchases"),
        }, cache)

    # -- email --------------------------------------------------------------

    def normalize_email(self) -> EntityStats:
        return self._process("email", EMAIL_SOURCES, self._normalize_email_row)

    def _normalize_email_row(self, db, raw: RawEvent, cache) -> None:
        f = read_fields(raw.payload_json, EMAIL_FIELDS)
        campaign_id = f["campaign_id"] or raw.external_id
        if not campaign_id:
            raise MalformedRecordError("Email campaign has no id", "id")
        day = to_date(f["send_time"], "send_time")

        campaign_type = f["campaign_type"] or ("flow" if raw.entity == "flows" else "campaign")

        self._upsert(db, StgEmail, {"date": day, "source": raw.source, "campaign_id": str(campaign_id)}, {
            "campaign_name": f["campaign_name"],
            "campaign_type": str(campaign_type).lower(),
            "sends": to_int(f["sends"], "sends"),
            "opens": to_int(f["opens"], "opens"),
            "clicks": to_int(f["clicks"], "clicks"),
            "bounces": to_int(f["bounces"], "bounces"),
            "unsubscribes": to_int(f["unsubscribes"], "unsubscribes"),
            "conversions": to_int(f["conversions"], "conversions"),
            "revenue": to_decimal(f["revenue"], "revenue"),
        }, cache)

    # -- payments -----------------------------------------------------------

    def enrich_payments(self) -> Tuple[int, int]:
        """
        Copy payment method / status from Stripe charges onto staged orders.

        Charges and orders are not 1:1; a charge whose order is unknown is
        counted and otherwise ignored.

        Returns:
            (matched, unmatched)
        """
        counts = {"matched": 0, "unmatched": 0}

        def _apply(db, raw: RawEvent, cache) -> None:
            if self._apply_charge(db, raw, cache):
                counts["matched"] += 1
            else:
                counts["unmatched"] += 1

        self._process("payments", [("stripe", "charges")], _apply)
        log.info(f"payments: {counts['matched']} charges matched to orders, {counts['unmatched']} without an order")
        return counts["matched"], counts["unmatched"]

    @staticmethod
    def _apply_charge(db, raw: RawEvent, cache) -> bool:
        f = read_fields(raw.payload_json, CHARGE_FIELDS)
        order_id = _order_id_from_charge_ref(f["order_ref"])
        if not order_id:
            return False

        cache_key = ("stg_orders", order_id)
        order = cache.get(cache_key) or db.query(StgOrder).filter(StgOrder.order_id == order_id).first()
        if order is None:
            return False
        cache[cache_key] = order

        status = f["status"]
        # A later failed retry must not mask a successful charge
        if order.payment_status == "succeeded" and status != "succeeded":
            return True

        method = f["method_type"]
        if method == "card" and f["card_brand"]:
            method = f"card_{str(f['card_brand']).lower()}"

        order.payment_method = method
        order.payment_status = status
        return True


def _resolve_order_id(order_number: Any, raw_id: Any, external_id: Optional[str]) -> str:
    """order_number, GraphQL name '#1001', gid tail, then the connector's external id."""
    if order_number is not None and order_number != "":
        text = str(order_number).strip().lstrip("#")
        if text:
            return text
    tail = strip_gid(raw_id)
    if tail:
        return tail
    if external_id:
        return str(external_id)
    raise MalformedRecordError("Order has no usable id", "id")


def _order_id_from_charge_ref(ref: Any) -> Optional[str]:
    """'order_1001' or '1001' or '#1001' -> '1001'."""
    if ref is None or ref == "":
        return None
    text = str(ref).strip()
    if text.startswith("order_"):
        text = text[len("order_"):]
    return text.lstrip("#") or None


def normalize_staging(session_factory=None, batch_size: Optional[int] = None) -> NormalizeResult:
    """Run a full normalization pass with default settings."""
    return StagingNormalizer(session_factory=session_factory, batch_size=batch_size).run()
