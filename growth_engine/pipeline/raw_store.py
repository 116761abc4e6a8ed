"""
Raw Store

Writes connector records into raw_events and provides the explicit
data-reset operation. Records with an external id are upserted on
(source, entity, external_id); records without one are always appended.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from growth_engine.config import get_settings
from growth_engine.models.base import SessionLocal
from growth_engine.models.raw import RawEvent
from growth_engine.models.staging import StgOrder, StgCustomer, StgSpend, StgTraffic, StgEmail
from growth_engine.pipeline.errors import BatchFailedError
from growth_engine.utils.logger import log


@dataclass
class RawRecord:
    """One fetched external item, as handed over by a connector."""
    source: str
    entity: str
    payload: Dict[str, Any] = field(default_factory=dict)
    external_id: Optional[str] = None
    cursor: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawRecord":
        """Build from a dict using either snake_case or camelCase keys."""
        external_id = data.get("external_id", data.get("externalId"))
        return cls(
            source=data["source"],
            entity=data["entity"],
            payload=data.get("payload") or {},
            external_id=str(external_id) if external_id not in (None, "") else None,
            cursor=data.get("cursor"),
        )


def ingest_raw(
    records: Iterable[RawRecord],
    session_factory=None,
    batch_size: Optional[int] = None,
) -> int:
    """
    Ingest raw records into raw_events.

    Each batch is one transaction. Re-fetching an item refreshes its
    cursor, payload and fetched_at in place.

    Returns:
        Number of records written (inserted or updated).
    """
    session_factory = session_factory or SessionLocal
    batch_size = batch_size or get_settings().raw_ingest_batch_size
    records = list(records)

    log.info(f"Ingesting {len(records)} raw records")

    loaded = 0
    for start in range(0, len(records), batch_size):
        batch = records[start:start + batch_size]
        db = session_factory()
        try:
            # Same item can appear twice in one batch; the later copy wins
            seen: Dict[tuple, RawEvent] = {}
            for record in batch:
                # An empty id is no identity at all
                if not record.external_id:
                    db.add(_new_raw_event(record))
                    loaded += 1
                    continue

                key = (record.source, record.entity, str(record.external_id))
                existing = seen.get(key)
                if existing is None:
                    existing = db.query(RawEvent).filter(
                        RawEvent.source == record.source,
                        RawEvent.entity == record.entity,
                        RawEvent.external_id == str(record.external_id),
                    ).first()

                if existing:
                    existing.cursor = record.cursor
                    existing.payload_json = record.payload
                    existing.fetched_at = datetime.utcnow()
                else:
                    existing = _new_raw_event(record)
                    db.add(existing)
                seen[key] = existing
                loaded += 1

            db.commit()
        except Exception as e:
            db.rollback()
            log.error(f"Raw ingest batch starting at record {start} failed: {e}")
            raise BatchFailedError("ingest_raw", start, start + len(batch) - 1, e) from e
        finally:
            db.close()

        log.info(f"  Batch {start // batch_size + 1}: {loaded} records ingested")

    log.info(f"Raw ingestion complete: {loaded} records")
    return loaded


def _new_raw_event(record: RawRecord) -> RawEvent:
    return RawEvent(
        source=record.source,
        entity=record.entity,
        external_id=str(record.external_id) if record.external_id else None,
        cursor=record.cursor,
        payload_json=record.payload,
        fetched_at=datetime.utcnow(),
    )


def reset_pipeline_data(session_factory=None, include_raw: bool = True) -> Dict[str, int]:
    """
    Delete staging rows, and raw rows when include_raw is set.

    Returns:
        {table_name: deleted_count}
    """
    session_factory = session_factory or SessionLocal
    models: List = [StgOrder, StgCustomer, StgSpend, StgTraffic, StgEmail]
    if include_raw:
        models.append(RawEvent)

    deleted: Dict[str, int] = {}
    db = session_factory()
    try:
        for model in models:
            deleted[model.__tablename__] = db.query(model).delete(synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    log.warning(f"Pipeline data reset: {deleted}")
    return deleted
