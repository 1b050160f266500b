"""
Batch ingestion orchestrator.

IngestionService drives one batch job over a results source:

  1. StreamingBatchParser  -- decode lines lazily, isolating bad ones
  2. InvoiceIngestor       -- one transaction per invoice
  3. Job bookkeeping       -- counts, failure reasons, final status in SQLite

Invoices are ingested sequentially; independent jobs may run concurrently
(each in its own thread or process) alongside analytics reads.

Cancellation is cooperative: between records the driver checks the job's
cancel flag (set via request_cancel(), e.g. from the API) and an optional
threading.Event (set e.g. by a SIGINT handler). Invoices already committed
stay committed and the job ends CANCELLED.
"""
import logging
import signal
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from config import Config
from models.extraction import ExtractedInvoiceRecord, ParsedRecord
from models.result import BatchJobReport, IngestionOutcome, InvoiceFailure
from .batch_parser import Source, StreamingBatchParser
from .database import (
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    Database,
)
from .errors import NotFoundError, PipelineError, SystemicError
from .ingestion import InvoiceIngestor

logger = logging.getLogger(__name__)

# Persist running counts every N records so pollers see progress
PROGRESS_EVERY = 25


class IngestionService:
    """
    Entry point for ingesting batch extraction results.

    Args:
        config: Pipeline configuration (defaults to Config()).
        db:     Store handle. Built from config.db_path when omitted.
    """

    def __init__(self, config: Optional[Config] = None, db: Optional[Database] = None):
        self.config = config or Config()
        self.db = db or Database(self.config.db_path, timeout=self.config.transaction_timeout_seconds)
        self.ingestor = InvoiceIngestor(self.db, self.config)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ingest_record(
        self, record: ExtractedInvoiceRecord, tenant_id: Optional[str] = None
    ) -> IngestionOutcome:
        """Ingest a single already-decoded invoice outside any batch job."""
        return self.ingestor.ingest(record, tenant_id or self.config.tenant_id)

    def create_job(self, source: Optional[str] = None, tenant_id: Optional[str] = None) -> str:
        return self.db.create_job(tenant_id or self.config.tenant_id, source)

    def request_cancel(self, job_id: str) -> bool:
        return self.db.request_cancel(job_id)

    def get_job(self, job_id: str) -> Optional[dict]:
        return self.db.get_job(job_id)

    def list_jobs(self, tenant_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        return self.db.list_jobs(tenant_id or self.config.tenant_id, limit)

    def run_batch(
        self,
        source: Source,
        tenant_id: Optional[str] = None,
        job_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchJobReport:
        """
        Ingest every invoice in *source* and return the job report.

        Raises:
            SystemicError: the source could not be read, the store is
                unavailable, or ingestion hit an unexpected error. The job
                is marked FAILED before raising.
        """
        tenant_id = tenant_id or self.config.tenant_id
        source_name = str(source) if isinstance(source, (str, Path)) else getattr(source, "name", None)
        if job_id is None:
            job_id = self.db.create_job(tenant_id, source_name)
        elif self.db.get_job(job_id) is None:
            raise NotFoundError(f"Batch job not found: {job_id}")
        self.db.start_job(job_id)

        report = BatchJobReport(
            job_id=job_id,
            status="PROCESSING",
            source=source_name,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        parser = StreamingBatchParser(source)
        logger.info("Batch job %s started: %s", job_id, parser.source_name)

        try:
            status = self._drain(parser, report, tenant_id, job_id, cancel_event)
        except SystemicError as e:
            logger.error("Batch job %s aborted: %s", job_id, e)
            self._collect_parse_failures(parser, report)
            self._finish(report, JOB_FAILED, reason=str(e))
            raise
        except sqlite3.Error as e:
            logger.error("Batch job %s aborted: store error: %s", job_id, e, exc_info=True)
            self._collect_parse_failures(parser, report)
            self._finish(report, JOB_FAILED, reason=str(e))
            raise SystemicError(f"Store error during batch job {job_id}: {e}") from e
        except Exception as e:
            logger.error("Batch job %s aborted: unexpected error: %s", job_id, e, exc_info=True)
            self._collect_parse_failures(parser, report)
            self._finish(report, JOB_FAILED, reason=str(e))
            raise SystemicError(f"Unexpected error during batch job {job_id}: {e}") from e

        self._finish(report, status)
        return report

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _drain(
        self,
        parser: StreamingBatchParser,
        report: BatchJobReport,
        tenant_id: str,
        job_id: str,
        cancel_event: Optional[threading.Event],
    ) -> str:
        records = parser.records()
        try:
            for record in records:
                self._collect_parse_failures(parser, report)

                if self._cancelled(job_id, cancel_event):
                    logger.info(
                        "Batch job %s cancelled after %d invoice(s); stopping before line %d",
                        job_id, report.succeeded, record.line_number,
                    )
                    return JOB_CANCELLED

                self._ingest_one(record, report, tenant_id, job_id)

                if report.attempted % PROGRESS_EVERY == 0:
                    self.db.update_job_progress(job_id, self._counts(report))
        finally:
            records.close()

        self._collect_parse_failures(parser, report)
        return JOB_COMPLETED

    def _ingest_one(
        self, record: ParsedRecord, report: BatchJobReport, tenant_id: str, job_id: str
    ) -> None:
        report.attempted += 1
        invoice_code = record.invoice.invoice_code
        logger.info("[%d] %s", record.line_number, record.key or invoice_code)
        try:
            outcome = self.ingestor.ingest(record.invoice, tenant_id, batch_job_id=job_id)
        except SystemicError:
            self._record_failure(report, record, "store unavailable")
            raise
        except PipelineError as e:
            logger.error("Failed to ingest %s: %s", invoice_code, e, exc_info=True)
            self._record_failure(report, record, str(e))
        except Exception as e:
            self._record_failure(report, record, f"unexpected error: {e}")
            raise
        else:
            report.succeeded += 1
            if outcome.status == "duplicate":
                report.duplicates += 1

    @staticmethod
    def _record_failure(report: BatchJobReport, record: ParsedRecord, reason: str) -> None:
        report.failed += 1
        report.failures.append(InvoiceFailure(
            line_number=record.line_number,
            key=record.key,
            invoice_code=record.invoice.invoice_code,
            reason=reason,
        ))

    def _cancelled(self, job_id: str, cancel_event: Optional[threading.Event]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return self.db.is_cancel_requested(job_id)

    def _collect_parse_failures(self, parser: StreamingBatchParser, report: BatchJobReport) -> None:
        """Fold parser failures not yet seen into the report."""
        for failure in parser.failures[report.parse_errors:]:
            report.attempted += 1
            report.failed += 1
            report.parse_errors += 1
            report.failures.append(InvoiceFailure(
                line_number=failure.line_number,
                stage="parse",
                reason=failure.reason,
            ))

    @staticmethod
    def _counts(report: BatchJobReport) -> dict:
        return {
            "attempted": report.attempted,
            "succeeded": report.succeeded,
            "failed": report.failed,
            "duplicates": report.duplicates,
            "parse_errors": report.parse_errors,
        }

    def _finish(self, report: BatchJobReport, status: str, reason: Optional[str] = None) -> None:
        report.status = status
        report.completed_at = datetime.now(timezone.utc).isoformat()
        errors = [f.model_dump() for f in report.failures]
        if reason:
            errors.append(InvoiceFailure(reason=f"job aborted: {reason}").model_dump())
        try:
            self.db.finish_job(report.job_id, status, self._counts(report), errors)
        except sqlite3.Error as e:
            # The job row stays PROCESSING; the caller still gets the report or error
            logger.error("Could not record final status of job %s: %s", report.job_id, e)
        logger.info(
            "Batch job %s %s: %d attempted, %d succeeded (%d duplicates), %d failed",
            report.job_id, status.lower(), report.attempted, report.succeeded,
            report.duplicates, report.failed,
        )


@contextmanager
def cancel_on_signal() -> Iterator[threading.Event]:
    """
    Yield an Event that is set by SIGINT/SIGTERM, restoring the previous
    handlers on exit. Only usable from the main thread.
    """
    event = threading.Event()

    def _request_shutdown(signum, frame):  # noqa: ANN001
        event.set()
        logger.info("Shutdown signal received; finishing current invoice then stopping.")

    previous = {
        sig: signal.signal(sig, _request_shutdown) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield event
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
