"""
Staging normalization tests.

Guards against:
1. Payload layouts drifting apart (GraphQL vs REST vs synthetic orders)
2. revenue_net diverging from gross - discounts - refunds
3. Replays creating duplicates or changing values
4. One bad record aborting its batch
5. Partial batches surviving a real failure
6. A failed Stripe retry masking a successful charge
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from growth_engine.models import RawEvent, StgCustomer, StgEmail, StgOrder, StgSpend, StgTraffic
from growth_engine.pipeline.errors import BatchFailedError
from growth_engine.pipeline.normalize_staging import StagingNormalizer, normalize_staging
from growth_engine.pipeline.raw_store import RawRecord, ingest_raw
from growth_engine.pipeline.validate import validate_staging

from payloads import (
    ga4_flat_row,
    ga4_report_row,
    google_ads_row,
    graphql_customer,
    graphql_order,
    klaviyo_api_campaign,
    klaviyo_campaign,
    klaviyo_flow,
    meta_insight,
    rest_customer,
    rest_order,
    stripe_charge,
    synthetic_order,
    tiktok_insight,
)


def _load(session_factory, *records, batch_size=None):
    ingest_raw(list(records), session_factory=session_factory)
    return StagingNormalizer(session_factory=session_factory, batch_size=batch_size).run()


def _order(db, order_id):
    return db.query(StgOrder).filter(StgOrder.order_id == order_id).one()


# ────────────────────────────────────────────
# Orders
# ────────────────────────────────────────────

class TestOrderShapes:

    def test_graphql_order(self, db, session_factory):
        _load(session_factory, graphql_order(1001))
        order = _order(db, "1001")

        assert order.payload_shape == "graphql"
        assert order.order_date == datetime(2024, 3, 4, 15, 30)
        assert order.customer_id == "777"
        assert order.email == "ana@example.com"
        assert order.revenue_gross == Decimal("150.00")
        assert order.discounts == Decimal("10.00")
        # refunded = total - current total
        assert order.refunds == Decimal("25.00")
        assert order.revenue_net == Decimal("115.00")
        assert order.currency == "USD"
        assert order.utm_source == "google"
        assert order.utm_medium == "cpc"
        assert order.channel_raw == "google"
        assert order.region == "CA"
        assert order.is_new_customer is True
        assert order.line_items_json == [
            {"id": "1", "title": "Linen Shirt", "quantity": 2, "price": "70.00", "product_type": "apparel"},
        ]

    def test_graphql_explicit_refunded_set_wins(self, db, session_factory):
        _load(session_factory, graphql_order(1002, totalRefundedSet={"shopMoney": {"amount": "40.00"}}))
        order = _order(db, "1002")
        assert order.refunds == Decimal("40.00")
        assert order.revenue_net == Decimal("100.00")

    def test_rest_order(self, db, session_factory):
        _load(session_factory, rest_order(2001))
        order = _order(db, "2001")

        assert order.payload_shape == "rest"
        assert order.order_date == datetime(2024, 3, 5, 14, 0)
        assert order.customer_id == "888"
        assert order.revenue_gross == Decimal("200.00")
        assert order.discounts == Decimal("20.00")
        # Only refund transactions count, not voids
        assert order.refunds == Decimal("15.50")
        assert order.revenue_net == Decimal("164.50")
        assert order.currency == "USD"
        assert order.channel_raw == "meta"
        assert order.landing_site.startswith("/products/mug")
        assert order.is_new_customer is False
        assert order.line_items_json[0]["quantity"] == 4

    def test_synthetic_order(self, db, session_factory):
        _load(session_factory, synthetic_order(3001))
        order = _order(db, "3001")

        assert order.payload_shape == "synthetic"
        assert order.customer_id == "42"
        assert order.revenue_net == Decimal("94.99")
        assert order.utm_campaign == "Welcome_Series"
        assert order.channel_raw == "email"
        assert order.is_new_customer is True
        assert order.referring_site is None

    def test_last_visit_utm_beats_landing_url(self, db, session_factory):
        journey = {"lastVisit": {"source": "facebook", "sourceType": "SOCIAL",
                                 "utmParameters": {"source": "facebook", "medium": "paid_social",
                                                   "campaign": "spring_sale"}}}
        _load(session_factory, synthetic_order(3002, customerJourneySummary=journey))
        order = _order(db, "3002")

        assert order.utm_source == "facebook"
        assert order.utm_campaign == "spring_sale"
        assert order.channel_raw == "meta"

    def test_gclid_in_landing_url_is_google(self, db, session_factory):
        _load(session_factory, rest_order(2002, landing_site="/?gclid=Cj0KCQ&utm_source=facebook"))
        order = _order(db, "2002")
        assert order.gclid == "Cj0KCQ"
        assert order.channel_raw == "google"

    def test_missing_currency_uses_default(self, db, session_factory):
        _load(session_factory, rest_order(2003, currency=None))
        assert _order(db, "2003").currency == "USD"

    def test_sub_cent_amounts_still_add_up(self, db, session_factory):
        _load(session_factory, synthetic_order(3003, total_price="10.006", total_discounts="0.017"))
        order = _order(db, "3003")

        assert order.revenue_gross == Decimal("10.01")
        assert order.discounts == Decimal("0.02")
        assert order.revenue_net == Decimal("9.99")
        assert order.revenue_net == order.revenue_gross - order.discounts - order.refunds
        identity = {r.check: r.passed for r in validate_staging(session_factory=session_factory)}
        assert identity["revenue_identity"] is True

    def test_order_id_falls_back_to_gid_tail(self, db, session_factory):
        record = graphql_order(1003, name=None)
        _load(session_factory, record)
        assert db.query(StgOrder).one().order_id == str(5550000 + 1003)


# ────────────────────────────────────────────
# Idempotency and batching
# ────────────────────────────────────────────

class TestReplay:

    def test_second_run_changes_nothing(self, db, session_factory):
        records = [graphql_order(1001), rest_order(2001), synthetic_order(3001), meta_insight(), ga4_flat_row()]
        _load(session_factory, *records)
        first = {o.order_id: (o.revenue_net, o.channel_raw, o.normalized_at) for o in db.query(StgOrder).all()}

        normalize_staging(session_factory=session_factory)
        db.expire_all()
        second = {o.order_id: (o.revenue_net, o.channel_raw, o.normalized_at) for o in db.query(StgOrder).all()}

        assert first == second
        assert db.query(StgSpend).count() == 1
        assert db.query(StgTraffic).count() == 1

    def test_refetched_raw_updates_staging(self, db, session_factory):
        _load(session_factory, rest_order(2001))
        _load(session_factory, rest_order(2001, total_price="300.00"))

        order = _order(db, "2001")
        assert db.query(StgOrder).count() == 1
        assert order.revenue_gross == Decimal("300.00")
        assert order.revenue_net == Decimal("264.50")

    def test_duplicate_keys_inside_one_batch_collapse(self, db, session_factory):
        first = RawRecord(source="shopify", entity="orders", payload=rest_order(2001).payload)
        second = RawRecord(source="shopify", entity="orders", payload=rest_order(2001, total_price="210.00").payload)

        result = _load(session_factory, first, second)

        assert result.orders.processed == 2
        assert db.query(StgOrder).count() == 1
        assert _order(db, "2001").revenue_gross == Decimal("210.00")

    def test_pages_through_small_batches(self, db, session_factory):
        records = [rest_order(n) for n in range(2001, 2008)]
        result = _load(session_factory, *records, batch_size=2)

        assert result.orders.processed == 7
        assert db.query(StgOrder).count() == 7


class TestFailures:

    def test_bad_date_skips_only_that_record(self, db, session_factory):
        bad = rest_order(2002, created_at="not-a-date")
        result = _load(session_factory, rest_order(2001), bad, rest_order(2003))

        assert result.orders.processed == 2
        assert result.orders.skipped == 1
        bad_raw = db.query(RawEvent).filter(RawEvent.external_id == bad.external_id).one()
        assert result.orders.skipped_ids == [bad_raw.id]
        assert {o.order_id for o in db.query(StgOrder).all()} == {"2001", "2003"}

    def test_bad_amount_is_skipped(self, db, session_factory):
        result = _load(session_factory, rest_order(2001, total_price="twelve"), rest_order(2002))
        assert result.orders.skipped == 1
        assert db.query(StgOrder).count() == 1

    def test_non_text_currency_skips_only_that_record(self, db, session_factory):
        result = _load(session_factory, synthetic_order(3001), synthetic_order(3002, currency=840))

        assert result.orders.processed == 1
        assert result.orders.skipped == 1
        assert {o.order_id for o in db.query(StgOrder).all()} == {"3001"}

    def test_non_object_payload_is_skipped(self, db, session_factory):
        result = _load(session_factory, RawRecord(source="ga4", entity="traffic", external_id="x", payload=["oops"]))
        assert result.traffic.skipped == 1

    def test_unexpected_error_rolls_back_batch_and_raises(self, db, session_factory, monkeypatch):
        original = StagingNormalizer._normalize_spend_row

        def exploding(self, db_, raw, cache):
            if raw.payload_json.get("campaign_id") == "boom":
                raise RuntimeError("disk full")
            return original(self, db_, raw, cache)

        monkeypatch.setattr(StagingNormalizer, "_normalize_spend_row", exploding)
        ingest_raw(
            [meta_insight("a"), meta_insight("b"), meta_insight("c"), meta_insight("boom")],
            session_factory=session_factory,
        )
        ids = [r.id for r in db.query(RawEvent).order_by(RawEvent.id).all()]

        with pytest.raises(BatchFailedError) as exc:
            StagingNormalizer(session_factory=session_factory, batch_size=2).normalize_spend()

        assert exc.value.stage == "spend"
        assert (exc.value.first_id, exc.value.last_id) == (ids[1] + 1, ids[3])
        assert isinstance(exc.value.cause, RuntimeError)
        # First batch committed; "c" went down with "boom"
        assert {s.campaign_id for s in db.query(StgSpend).all()} == {"a", "b"}

    def test_replay_after_failure_completes(self, db, session_factory, monkeypatch):
        original = StagingNormalizer._normalize_spend_row
        calls = {"n": 0}

        def flaky(self, db_, raw, cache):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("connection reset")
            return original(self, db_, raw, cache)

        monkeypatch.setattr(StagingNormalizer, "_normalize_spend_row", flaky)
        ingest_raw([meta_insight("a"), meta_insight("b")], session_factory=session_factory)
        normalizer = StagingNormalizer(session_factory=session_factory)

        with pytest.raises(BatchFailedError):
            normalizer.normalize_spend()
        assert db.query(StgSpend).count() == 0

        stats = normalizer.normalize_spend()
        assert stats.processed == 2
        assert db.query(StgSpend).count() == 2


# ────────────────────────────────────────────
# Customers / spend / traffic / email
# ────────────────────────────────────────────

def test_customers_both_shapes(db, session_factory):
    result = _load(session_factory, rest_customer(888), graphql_customer(777))

    assert result.customers.processed == 2
    rest = db.query(StgCustomer).filter_by(customer_id="888").one()
    assert rest.total_orders == 3
    assert rest.total_revenue == Decimal("420.50")
    assert rest.first_order_date == datetime(2023, 11, 1, 10, 0)
    assert rest.region == "NY"

    gql = db.query(StgCustomer).filter_by(customer_id="777").one()
    assert gql.total_orders == 2
    assert gql.total_revenue == Decimal("310.00")
    assert gql.region == "CA"


def test_customer_without_created_at_is_kept(db, session_factory):
    _load(session_factory, rest_customer(889, created_at=None))
    assert db.query(StgCustomer).one().first_order_date is None


class TestSpend:

    def test_meta_reads_purchase_actions(self, db, session_factory):
        _load(session_factory, meta_insight())
        row = db.query(StgSpend).one()

        assert row.source == "meta"
        assert row.date == date(2024, 3, 4)
        assert row.campaign_id == "meta_camp_001"
        assert row.spend == Decimal("250.75")
        assert row.impressions == 12000
        assert row.clicks == 300
        assert row.conversions == 6
        assert row.conversion_value == Decimal("540.00")

    @pytest.mark.parametrize("snake_case", [False, True])
    def test_google_ads_micros(self, db, session_factory, snake_case):
        _load(session_factory, google_ads_row(snake_case=snake_case))
        row = db.query(StgSpend).one()

        assert row.source == "google_ads"
        assert row.campaign_id == "gads_camp_001"
        assert row.campaign_name == "Brand_Search"
        assert row.spend == Decimal("123.45")
        assert row.clicks == 400
        assert row.conversions == 12
        assert row.conversion_value == Decimal("1300.50")

    def test_tiktok(self, db, session_factory):
        _load(session_factory, tiktok_insight())
        row = db.query(StgSpend).one()
        assert row.source == "tiktok"
        assert row.spend == Decimal("80.10")
        assert row.conversions == 3

    def test_same_campaign_different_sources_stay_apart(self, db, session_factory):
        _load(session_factory, meta_insight(campaign_id="shared"), tiktok_insight(campaign_id="shared"))
        assert db.query(StgSpend).count() == 2


class TestTraffic:

    def test_flat_row(self, db, session_factory):
        _load(session_factory, ga4_flat_row())
        row = db.query(StgTraffic).one()

        assert row.channel_raw == "Paid Social"
        assert row.channel == "meta"
        assert (row.sessions, row.pdp_views, row.add_to_cart, row.checkouts, row.purchases) == (1000, 650, 130, 80, 50)

    def test_item_views_fallback(self, db, session_factory):
        _load(session_factory, ga4_flat_row(screenPageViews=None, itemViews="400"))
        assert db.query(StgTraffic).one().pdp_views == 400

    def test_report_row(self, db, session_factory):
        _load(session_factory, ga4_report_row())
        row = db.query(StgTraffic).one()

        assert row.date == date(2024, 3, 5)
        assert row.channel == "organic"
        assert (row.sessions, row.pdp_views, row.purchases) == (500, 300, 20)


class TestEmail:

    def test_campaign_with_stats(self, db, session_factory):
        _load(session_factory, klaviyo_campaign())
        row = db.query(StgEmail).one()

        assert row.date == date(2024, 3, 4)
        assert row.campaign_type == "campaign"
        assert (row.sends, row.opens, row.clicks, row.bounces) == (5000, 2000, 300, 40)
        assert row.revenue == Decimal("1650.25")

    def test_api_campaign(self, db, session_factory):
        _load(session_factory, klaviyo_api_campaign())
        row = db.query(StgEmail).one()

        assert row.campaign_name == "Spring Launch"
        assert row.date == date(2024, 3, 5)
        assert row.sends == 8000
        assert row.bounces == 55
        assert row.revenue == Decimal("2405.00")

    def test_flow(self, db, session_factory):
        _load(session_factory, klaviyo_flow())
        row = db.query(StgEmail).one()
        assert row.campaign_type == "flow"
        assert row.campaign_id == "flow_abandoned"

    def test_flow_without_type_defaults_by_entity(self, db, session_factory):
        record = klaviyo_flow()
        del record.payload["campaign_type"]
        _load(session_factory, record)
        assert db.query(StgEmail).one().campaign_type == "flow"


# ────────────────────────────────────────────
# Payments
# ────────────────────────────────────────────

class TestPayments:

    def test_charge_enriches_order(self, db, session_factory):
        result = _load(session_factory, synthetic_order(3001), stripe_charge("ch_1", "order_3001"))

        assert (result.payments_matched, result.payments_unmatched) == (1, 0)
        order = _order(db, "3001")
        assert order.payment_method == "card_visa"
        assert order.payment_status == "succeeded"

    def test_unmatched_charge_is_counted_not_fatal(self, db, session_factory):
        result = _load(
            session_factory,
            synthetic_order(3001),
            stripe_charge("ch_1", "order_9999"),
            stripe_charge("ch_2", None),
        )

        assert (result.payments_matched, result.payments_unmatched) == (0, 2)
        assert _order(db, "3001").payment_method is None

    def test_failed_retry_does_not_mask_success(self, db, session_factory):
        _load(
            session_factory,
            synthetic_order(3001),
            stripe_charge("ch_1", "order_3001", status="succeeded", brand="amex"),
            stripe_charge("ch_2", "#3001", status="failed", brand="visa"),
        )
        order = _order(db, "3001")
        assert order.payment_status == "succeeded"
        assert order.payment_method == "card_amex"

    def test_non_card_method(self, db, session_factory):
        _load(session_factory, synthetic_order(3001), stripe_charge("ch_1", "3001", method="afterpay_clearpay"))
        assert _order(db, "3001").payment_method == "afterpay_clearpay"


# ────────────────────────────────────────────
# Validation
# ────────────────────────────────────────────

class TestValidation:

    def test_clean_data_passes_every_check(self, session_factory):
        _load(
            session_factory,
            graphql_order(1001), rest_order(2001), synthetic_order(3001),
            meta_insight(), google_ads_row(), ga4_flat_row(), ga4_report_row(),
        )
        results = validate_staging(session_factory=session_factory)

        assert [r.check for r in results] == [
            "no_negative_spend",
            "revenue_identity",
            "revenue_net_lte_gross",
            "known_channels",
            "funnel_monotonic",
        ]
        assert all(r.passed for r in results), [r.message for r in results if not r.passed]

    def test_bad_rows_fail_their_checks(self, db, session_factory):
        _load(session_factory, meta_insight(spend="-5.00"), ga4_flat_row(ecommercePurchases="500"))
        db.add(StgOrder(
            order_id="broken",
            order_date=datetime(2024, 3, 1),
            revenue_gross=Decimal("100.00"),
            discounts=Decimal("0"),
            refunds=Decimal("0"),
            revenue_net=Decimal("120.00"),
            channel_raw="tiktok_ads",
        ))
        db.commit()

        failed = {r.check for r in validate_staging(session_factory=session_factory) if not r.passed}
        assert failed == {
            "no_negative_spend",
            "revenue_identity",
            "revenue_net_lte_gross",
            "known_channels",
            "funnel_monotonic",
        }
