from decimal import Decimal
from typing import Optional, List, Literal

from pydantic import BaseModel, Field


JobStatus = Literal["PENDING", "PROCESSING", "COMPLETED", "FAILED", "CANCELLED"]


class ParseFailure(BaseModel):
    """A batch result line that could not be decoded into an invoice record."""
    line_number: int
    reason: str
    preview: Optional[str] = None      # First 500 characters of the raw line


class InvoiceFailure(BaseModel):
    """An invoice (or unparsable line) that was not persisted."""
    line_number: Optional[int] = None
    key: Optional[str] = None
    invoice_code: Optional[str] = None
    stage: Literal["parse", "ingest"] = "ingest"
    reason: str


class IngestionOutcome(BaseModel):
    """Result of ingesting one invoice record inside its own transaction."""
    invoice_id: str
    invoice_code: str
    provider_id: str
    status: Literal["created", "duplicate"]
    item_count: int = 0
    total_amount: Decimal = Decimal("0")
    alerts_created: int = 0
    materials_created: int = 0
    provider_created: bool = False


class BatchJobReport(BaseModel):
    """
    User-facing summary of one batch job.

    attempted counts every non-blank line of the source that was reached
    before the job stopped: attempted == succeeded + failed.
    duplicates are included in succeeded; parse_errors in failed.
    """
    job_id: str
    status: JobStatus
    source: Optional[str] = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    duplicates: int = 0
    parse_errors: int = 0
    failures: List[InvoiceFailure] = Field(default_factory=list)
    started_at: Optional[str] = None      # ISO 8601 datetime
    completed_at: Optional[str] = None
