"""
Pipeline Runner

Raw ingest -> staging normalization -> staging validation, as one call.
The data mode is an explicit argument; nothing below reads it from
settings or the environment.
"""
from typing import Any, Dict, Iterable

from growth_engine.pipeline.normalize_staging import StagingNormalizer
from growth_engine.pipeline.raw_store import RawRecord, ingest_raw
from growth_engine.pipeline.validate import validate_staging
from growth_engine.utils.logger import log


def run_pipeline(
    records: Iterable[RawRecord],
    demo_mode: bool,
    session_factory=None,
    validate: bool = True,
) -> Dict[str, Any]:
    """
    Ingest connector records and rebuild staging from the raw store.

    demo_mode is informational only: it sets the summary's mode label and
    the log line. Demo and live payloads take the same path through ingest
    and normalization.

    Returns:
        Dict with keys: mode, ingested, staging, validation
    """
    mode = "demo" if demo_mode else "live"
    log.info(f"Pipeline run starting ({mode} mode)")

    ingested = ingest_raw(records, session_factory=session_factory)
    staging = StagingNormalizer(session_factory=session_factory).run()

    summary: Dict[str, Any] = {
        "mode": mode,
        "ingested": ingested,
        "staging": staging.to_dict(),
        "validation": [],
    }

    if validate:
        summary["validation"] = [
            {"check": r.check, "passed": r.passed, "message": r.message}
            for r in validate_staging(session_factory=session_factory)
        ]

    log.info(f"Pipeline run complete ({mode} mode): {ingested} raw records ingested")
    return summary
