"""
Error taxonomy for the ingestion pipeline.

  ParseError          One batch line could not be decoded. Recorded, skipped.
  ResolutionError     Provider/material lookup or write failed. Aborts only
                      the current invoice's transaction.
  IntegrityViolation  A uniqueness constraint was hit while creating a
                      material (concurrent batch race). Retried once.
  SystemicError       The source or the store is unusable. Aborts the job.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ParseError(PipelineError):
    def __init__(self, reason: str, line_number: Optional[int] = None):
        self.reason = reason
        self.line_number = line_number
        where = f"line {line_number}: " if line_number is not None else ""
        super().__init__(f"{where}{reason}")


class ResolutionError(PipelineError):
    pass


class IntegrityViolation(PipelineError):
    pass


class SystemicError(PipelineError):
    pass


class NotFoundError(PipelineError):
    """A referenced provider, invoice, alert or job does not exist."""
