"""
Ingestion and staging normalization pipeline
"""
from growth_engine.pipeline.channel_mapping import map_channel_from_order, map_ga4_channel_to_slug
from growth_engine.pipeline.errors import PipelineError, MalformedRecordError, BatchFailedError
from growth_engine.pipeline.normalize_staging import StagingNormalizer, NormalizeResult, normalize_staging
from growth_engine.pipeline.raw_store import RawRecord, ingest_raw, reset_pipeline_data
from growth_engine.pipeline.runner import run_pipeline
from growth_engine.pipeline.validate import ValidationResult, validate_staging

__all__ = [
    "map_channel_from_order",
    "map_ga4_channel_to_slug",
    "PipelineError",
    "MalformedRecordError",
    "BatchFailedError",
    "StagingNormalizer",
    "NormalizeResult",
    "normalize_staging",
    "RawRecord",
    "ingest_raw",
    "reset_pipeline_data",
    "run_pipeline",
    "ValidationResult",
    "validate_staging",
]
