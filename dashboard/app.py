"""
Material & Supplier Analytics: FastAPI backend.

Exposes the analytics service, batch ingestion jobs, price alerts and a few
catalog maintenance operations over HTTP. The app is built by create_app()
around an injected Database, so tests and the CLI can share one store.

Endpoints
---------
  GET    /api/health                          → liveness + store reachability
  GET    /api/stats                           → headline counts for the tenant
  GET    /api/analytics/materials             → material analytics (?page= for paginated mode)
  GET    /api/analytics/materials/totals      → totals over the whole filtered set
  GET    /api/analytics/suppliers             → supplier analytics (?page= for paginated mode)
  GET    /api/analytics/work-orders/{wo}      → spend on one work order
  GET    /api/export                          → flat CSV of the filtered line items
  POST   /api/batches                         → upload a JSONL results file, ingest in background
  GET    /api/batches                         → recent batch jobs
  GET    /api/batches/{id}                    → one job with counts and failure reasons
  POST   /api/batches/{id}/cancel             → request cooperative cancellation
  GET    /api/alerts                          → price alerts (?status=)
  PATCH  /api/alerts/{id}/status              → approve / reject / reopen an alert
  POST   /api/providers/merge                 → fold one provider into another
  GET    /api/invoices/{id}                   → one invoice with its items
  DELETE /api/invoices/{id}                   → delete an invoice (items cascade)
"""
import logging
import re
import shutil
import sqlite3
import tempfile
from datetime import date
from pathlib import Path
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from config import Config
from dashboard.models import AlertStatusUpdate, BatchCancelResponse, ProviderMerge
from dashboard.services.export import export_filename, render_csv
from models.analytics import AnalyticsFilters
from pipeline.analytics import AnalyticsService
from pipeline.database import ALL_ALERT_STATUSES, Database
from pipeline.errors import NotFoundError, PipelineError, SystemicError
from pipeline.processor import IngestionService

logger = logging.getLogger(__name__)


def create_app(config: Optional[Config] = None, db: Optional[Database] = None) -> FastAPI:
    """
    Build the API around one store handle.

    Args:
        config: Configuration (defaults to Config()).
        db:     Store handle. Opened from config.db_path when omitted.
    """
    config = config or Config()
    db = db or Database(config.db_path, timeout=config.transaction_timeout_seconds)
    analytics = AnalyticsService(db, config)
    ingestion = IngestionService(config, db)

    app = FastAPI(title="Material & Supplier Analytics", docs_url=None, redoc_url=None)
    app.state.config = config
    app.state.db = db

    @app.exception_handler(SystemicError)
    @app.exception_handler(sqlite3.OperationalError)
    async def store_unavailable(request, exc):
        logger.error("Store unavailable during %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": f"Store unavailable: {exc}"})

    def _filters(**params) -> AnalyticsFilters:
        params["tenant_id"] = params.get("tenant_id") or config.tenant_id
        try:
            return AnalyticsFilters(**params)
        except ValidationError as e:
            raise HTTPException(400, str(e))

    def _run_batch(path: Path, tenant_id: str, job_id: str) -> None:
        try:
            ingestion.run_batch(path, tenant_id=tenant_id, job_id=job_id)
        except PipelineError as e:
            # Job row is already FAILED with the reason
            logger.error("Background batch job %s failed: %s", job_id, e)

    # ── Service ──────────────────────────────────────────────────────────────

    @app.get("/api/health")
    def health():
        try:
            db.ping()
        except sqlite3.Error as e:
            raise HTTPException(503, f"Store unavailable: {e}")
        return {
            "status":    "ok",
            "db_path":   str(db.db_path),
            "tenant_id": config.tenant_id,
        }

    @app.get("/api/stats")
    def stats(tenant_id: Optional[str] = Query(default=None)):
        return analytics.get_dashboard_stats(tenant_id)

    # ── Analytics ────────────────────────────────────────────────────────────

    @app.get("/api/analytics/materials")
    def material_analytics(
        tenant_id: Optional[str] = Query(default=None),
        material_id: Optional[str] = Query(default=None),
        category: Optional[str] = Query(default=None),
        work_order: Optional[str] = Query(default=None),
        supplier_id: Optional[str] = Query(default=None),
        supplier_type: Optional[str] = Query(default=None),
        tax_id: Optional[str] = Query(default=None),
        search: Optional[str] = Query(default=None),
        start_date: Optional[date] = Query(default=None),
        end_date: Optional[date] = Query(default=None),
        sort_by: Optional[str] = Query(default=None),
        sort_order: Optional[str] = Query(default=None),
        page: Optional[int] = Query(default=None, ge=1),
        page_size: Optional[int] = Query(default=None, ge=1),
    ):
        filters = _filters(
            tenant_id=tenant_id, material_id=material_id, category=category,
            work_order=work_order, supplier_id=supplier_id, supplier_type=supplier_type,
            tax_id=tax_id, material_search=search, start_date=start_date, end_date=end_date,
            sort_by=sort_by, sort_order=sort_order,
        )
        try:
            if page is None:
                return analytics.get_material_analytics(filters)
            return analytics.get_material_analytics_paginated(filters, page, page_size)
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.get("/api/analytics/materials/totals")
    def material_totals(
        tenant_id: Optional[str] = Query(default=None),
        category: Optional[str] = Query(default=None),
        work_order: Optional[str] = Query(default=None),
        supplier_id: Optional[str] = Query(default=None),
        search: Optional[str] = Query(default=None),
        start_date: Optional[date] = Query(default=None),
        end_date: Optional[date] = Query(default=None),
    ):
        filters = _filters(
            tenant_id=tenant_id, category=category, work_order=work_order,
            supplier_id=supplier_id, material_search=search,
            start_date=start_date, end_date=end_date,
        )
        return analytics.get_material_filter_totals(filters)

    @app.get("/api/analytics/suppliers")
    def supplier_analytics(
        tenant_id: Optional[str] = Query(default=None),
        supplier_id: Optional[str] = Query(default=None),
        supplier_type: Optional[str] = Query(default=None),
        tax_id: Optional[str] = Query(default=None),
        material_id: Optional[str] = Query(default=None),
        category: Optional[str] = Query(default=None),
        work_order: Optional[str] = Query(default=None),
        search: Optional[str] = Query(default=None),
        start_date: Optional[date] = Query(default=None),
        end_date: Optional[date] = Query(default=None),
        sort_by: Optional[str] = Query(default=None),
        sort_order: Optional[str] = Query(default=None),
        monthly: bool = Query(default=False),
        page: Optional[int] = Query(default=None, ge=1),
        page_size: Optional[int] = Query(default=None, ge=1),
    ):
        filters = _filters(
            tenant_id=tenant_id, supplier_id=supplier_id, supplier_type=supplier_type,
            tax_id=tax_id, material_id=material_id, category=category,
            work_order=work_order, material_search=search,
            start_date=start_date, end_date=end_date,
            sort_by=sort_by, sort_order=sort_order, include_monthly_breakdown=monthly,
        )
        try:
            if page is None:
                return analytics.get_supplier_analytics(filters)
            return analytics.get_supplier_analytics_paginated(filters, page, page_size)
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.get("/api/analytics/work-orders/{work_order}")
    def work_order_analytics(work_order: str, tenant_id: Optional[str] = Query(default=None)):
        try:
            return analytics.get_work_order_analytics(work_order, tenant_id)
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.get("/api/export")
    def export_csv(
        tenant_id: Optional[str] = Query(default=None),
        category: Optional[str] = Query(default=None),
        work_order: Optional[str] = Query(default=None),
        supplier_id: Optional[str] = Query(default=None),
        search: Optional[str] = Query(default=None),
        start_date: Optional[date] = Query(default=None),
        end_date: Optional[date] = Query(default=None),
    ):
        filters = _filters(
            tenant_id=tenant_id, category=category, work_order=work_order,
            supplier_id=supplier_id, material_search=search,
            start_date=start_date, end_date=end_date,
        )
        rows = analytics.get_export_rows(filters)
        filename = export_filename(filters.tenant_id)
        logger.info("Exporting %d rows as %s", len(rows), filename)
        return Response(
            content=render_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # ── Batch jobs ───────────────────────────────────────────────────────────

    @app.post("/api/batches", status_code=202)
    def upload_batch(
        background_tasks: BackgroundTasks,
        file: UploadFile = File(...),
        tenant_id: Optional[str] = Query(default=None),
    ):
        """
        Accept a JSONL batch results file and ingest it in the background.

        The upload is saved under UPLOAD_DIR with a sanitised name; poll
        GET /api/batches/{id} for progress.
        """
        upload_dir = Path(config.upload_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile("wb", dir=upload_dir, suffix=".part", delete=False) as fh:
            shutil.copyfileobj(file.file, fh)
        partial = Path(fh.name)
        size = partial.stat().st_size
        if size == 0:
            partial.unlink()
            raise HTTPException(400, "Uploaded file is empty")

        raw_stem = Path(file.filename or "batch").stem
        safe_stem = re.sub(r"[^\w\-.]", "_", raw_stem).strip("_") or "batch"
        tenant_id = tenant_id or config.tenant_id
        try:
            job_id = ingestion.create_job(source=file.filename, tenant_id=tenant_id)
        except sqlite3.Error:
            partial.unlink()
            raise

        dest = upload_dir / f"{safe_stem}_{job_id}.jsonl"
        partial.replace(dest)
        logger.info("Batch upload saved: %s (%d bytes) -> job %s", dest, size, job_id)

        background_tasks.add_task(_run_batch, dest, tenant_id, job_id)
        return {"job_id": job_id, "status": "PENDING", "size": size}

    @app.get("/api/batches")
    def list_batches(
        tenant_id: Optional[str] = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
    ):
        return ingestion.list_jobs(tenant_id, limit)

    @app.get("/api/batches/{job_id}")
    def get_batch(job_id: str):
        job = ingestion.get_job(job_id)
        if job is None:
            raise HTTPException(404, f"Batch job not found: {job_id}")
        return job

    @app.post("/api/batches/{job_id}/cancel", response_model=BatchCancelResponse)
    def cancel_batch(job_id: str):
        try:
            requested = ingestion.request_cancel(job_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return BatchCancelResponse(job_id=job_id, cancel_requested=requested)

    # ── Price alerts ─────────────────────────────────────────────────────────

    @app.get("/api/alerts")
    def list_alerts(
        tenant_id: Optional[str] = Query(default=None),
        status: Optional[str] = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
    ):
        if status and status.upper() not in ALL_ALERT_STATUSES:
            raise HTTPException(400, f"Status must be one of: {sorted(ALL_ALERT_STATUSES)}")
        return db.list_price_alerts(
            tenant_id or config.tenant_id,
            status=status.upper() if status else None,
            limit=limit,
            offset=offset,
        )

    @app.patch("/api/alerts/{alert_id}/status")
    def update_alert_status(alert_id: str, body: AlertStatusUpdate):
        status = body.status.strip().upper()
        if status not in ALL_ALERT_STATUSES:
            raise HTTPException(400, f"Status must be one of: {sorted(ALL_ALERT_STATUSES)}")
        try:
            db.update_alert_status(alert_id, status)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return {"id": alert_id, "status": status}

    # ── Catalog maintenance ──────────────────────────────────────────────────

    @app.post("/api/providers/merge")
    def merge_providers(body: ProviderMerge):
        try:
            return db.merge_providers(body.source_id, body.target_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        except ValueError as e:
            raise HTTPException(400, str(e))

    @app.get("/api/invoices/{invoice_id}")
    def get_invoice(invoice_id: str):
        invoice = db.get_invoice(invoice_id)
        if invoice is None:
            raise HTTPException(404, f"Invoice not found: {invoice_id}")
        return invoice

    @app.delete("/api/invoices/{invoice_id}")
    def delete_invoice(invoice_id: str):
        try:
            db.delete_invoice(invoice_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return {"id": invoice_id, "deleted": True}

    return app
