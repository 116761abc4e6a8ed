"""
Pipeline exceptions
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for ingestion / normalization failures"""


class MalformedRecordError(PipelineError):
    """A single raw record cannot be normalized (bad date, bad number, missing key).

    Caught per record by the normalizer: the record is skipped and logged,
    the rest of the batch continues.
    """

    def __init__(self, message: str, field_name: Optional[str] = None, raw_value=None):
        super().__init__(message)
        self.field_name = field_name
        self.raw_value = raw_value


class BatchFailedError(PipelineError):
    """A batch transaction failed and was rolled back.

    Nothing from the batch is visible. Re-running the stage replays it;
    rows already applied by earlier batches are no-op upserts.
    """

    def __init__(self, stage: str, first_id: Optional[int], last_id: Optional[int], cause: Exception):
        super().__init__(f"{stage} batch [{first_id}..{last_id}] failed: {type(cause).__name__}: {cause}")
        self.stage = stage
        self.first_id = first_id
        self.last_id = last_id
        self.cause = cause
