"""
Raw store tests: upsert on (source, entity, external_id), append without
an external id, batch atomicity and the explicit reset.
"""
import pytest

from sqlalchemy.orm import Session

from growth_engine.models import RawEvent, StgOrder, get_db
from growth_engine.pipeline.errors import BatchFailedError
from growth_engine.pipeline.normalize_staging import normalize_staging
from growth_engine.pipeline.raw_store import RawRecord, ingest_raw, reset_pipeline_data

from payloads import meta_insight, rest_order


def test_from_dict_accepts_camel_case():
    record = RawRecord.from_dict({"source": "shopify", "entity": "orders", "externalId": 1001, "payload": {"a": 1}})
    assert record.external_id == "1001"
    assert record.payload == {"a": 1}
    assert record.cursor is None


def test_from_dict_snake_case_and_missing_payload():
    record = RawRecord.from_dict({"source": "ga4", "entity": "traffic", "external_id": "x", "cursor": "c1"})
    assert record.external_id == "x"
    assert record.payload == {}
    assert record.cursor == "c1"


def test_from_dict_empty_external_id_is_none():
    record = RawRecord.from_dict({"source": "shopify", "entity": "orders", "externalId": ""})
    assert record.external_id is None


class TestIngest:

    def test_refetch_updates_in_place(self, db, session_factory):
        ingest_raw([rest_order(2001)], session_factory=session_factory)
        updated = rest_order(2001, total_price="250.00")
        updated.cursor = "page-2"
        ingest_raw([updated], session_factory=session_factory)

        rows = db.query(RawEvent).all()
        assert len(rows) == 1
        assert rows[0].payload_json["total_price"] == "250.00"
        assert rows[0].cursor == "page-2"

    def test_same_item_twice_in_one_batch(self, db, session_factory):
        written = ingest_raw(
            [meta_insight(spend="10.00"), meta_insight(spend="12.00")],
            session_factory=session_factory,
        )

        assert written == 2
        rows = db.query(RawEvent).all()
        assert len(rows) == 1
        assert rows[0].payload_json["spend"] == "12.00"

    def test_records_without_external_id_always_append(self, db, session_factory):
        record = RawRecord(source="shopify", entity="orders", payload={"order_number": 1})
        ingest_raw([record, record], session_factory=session_factory)
        ingest_raw([record], session_factory=session_factory)

        assert db.query(RawEvent).count() == 3

    def test_empty_external_id_appends_like_a_missing_one(self, db, session_factory):
        ingest_raw([
            RawRecord(source="shopify", entity="orders", external_id="", payload={"order_number": 1}),
            RawRecord(source="shopify", entity="orders", external_id="", payload={"order_number": 2}),
        ], session_factory=session_factory)

        rows = db.query(RawEvent).all()
        assert len(rows) == 2
        assert {r.external_id for r in rows} == {None}

    def test_same_external_id_different_entity_is_distinct(self, db, session_factory):
        ingest_raw([
            RawRecord(source="klaviyo", entity="campaigns", external_id="abc", payload={}),
            RawRecord(source="klaviyo", entity="flows", external_id="abc", payload={}),
        ], session_factory=session_factory)

        assert db.query(RawEvent).count() == 2

    def test_small_batches(self, db, session_factory):
        records = [meta_insight(campaign_id=f"c{i}") for i in range(7)]
        assert ingest_raw(records, session_factory=session_factory, batch_size=3) == 7
        assert db.query(RawEvent).count() == 7

    def test_failed_batch_rolls_back_and_keeps_earlier_batches(self, db, session_factory):
        # A non-JSON-serializable payload fails on flush
        bad = RawRecord(source="meta", entity="insights", external_id="bad", payload={"spend": object()})
        records = [meta_insight(campaign_id="c1"), meta_insight(campaign_id="c2"), meta_insight(campaign_id="c3"), bad]

        with pytest.raises(BatchFailedError) as exc:
            ingest_raw(records, session_factory=session_factory, batch_size=2)

        assert exc.value.stage == "ingest_raw"
        assert (exc.value.first_id, exc.value.last_id) == (2, 3)
        assert {r.external_id for r in db.query(RawEvent).all()} == {"c1_2024-03-04", "c2_2024-03-04"}


class TestReset:

    def test_reset_clears_staging_and_raw(self, db, session_factory):
        ingest_raw([rest_order(2001)], session_factory=session_factory)
        normalize_staging(session_factory=session_factory)

        deleted = reset_pipeline_data(session_factory=session_factory)

        assert deleted["stg_orders"] == 1
        assert deleted["raw_events"] == 1
        assert db.query(StgOrder).count() == 0
        assert db.query(RawEvent).count() == 0

    def test_reset_can_keep_raw(self, db, session_factory):
        ingest_raw([rest_order(2001)], session_factory=session_factory)
        normalize_staging(session_factory=session_factory)

        deleted = reset_pipeline_data(session_factory=session_factory, include_raw=False)

        assert "raw_events" not in deleted
        assert db.query(StgOrder).count() == 0
        assert db.query(RawEvent).count() == 1


def test_get_db_yields_and_closes_a_session():
    gen = get_db()
    session = next(gen)
    assert isinstance(session, Session)
    gen.close()
