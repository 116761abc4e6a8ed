"""
Run the ingestion + staging pipeline over a JSON dump of connector records.

The file holds a list of raw records:
    [{"source": "shopify", "entity": "orders", "externalId": "1001", "payload": {...}}, ...]

Usage:
    python3 scripts/run_pipeline.py records.json
    python3 scripts/run_pipeline.py records.json --reset
"""
import argparse
import json
import sys
from pathlib import Path

from growth_engine.config import get_settings
from growth_engine.models.base import init_db
from growth_engine.pipeline import BatchFailedError, RawRecord, reset_pipeline_data, run_pipeline
from growth_engine.utils.logger import log


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("records_file", type=Path)
    parser.add_argument("--reset", action="store_true", help="clear raw and staging tables first")
    args = parser.parse_args()

    settings = get_settings()
    init_db()

    if args.reset:
        reset_pipeline_data()

    with args.records_file.open() as fh:
        records = [RawRecord.from_dict(item) for item in json.load(fh)]

    try:
        summary = run_pipeline(records, demo_mode=settings.demo_mode)
    except BatchFailedError as e:
        log.error(f"Pipeline run failed: {e}")
        return 1

    log.info("=" * 60)
    log.info(f"Mode:      {summary['mode']}")
    log.info(f"Ingested:  {summary['ingested']}")
    for entity, counts in summary["staging"].items():
        log.info(f"  {entity:<10} {counts}")
    for check in summary["validation"]:
        status = "PASS" if check["passed"] else "FAIL"
        log.info(f"  [{status}] {check['check']}: {check['message']}")

    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
