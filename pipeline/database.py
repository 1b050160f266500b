"""
SQLite persistence layer for the material & supplier analytics pipeline.

A single database file (output/matlytics.db) holds the catalog (providers,
materials, product groups), invoices with their line items, per-provider
price history, price alerts and batch job bookkeeping.

Money and quantities
--------------------
  Decimals are stored as INTEGER scaled by 10^4 (see to_units / from_units)
  so SUM() in SQL is exact and never drifts the way REAL columns would.

Transactions
------------
  Database.transaction() opens a dedicated connection, issues BEGIN IMMEDIATE
  and yields a Transaction. Leaving the block commits; any exception rolls
  everything back and is re-raised. One invoice == one transaction.

  The busy timeout (Config.transaction_timeout_seconds) bounds how long a
  transaction waits for the write lock held by another batch job. Readers
  never wait on writers (WAL journal).
"""
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Iterator, Optional

from .errors import NotFoundError
from .normalize import fold

logger = logging.getLogger(__name__)

JOB_PENDING    = "PENDING"
JOB_PROCESSING = "PROCESSING"
JOB_COMPLETED  = "COMPLETED"
JOB_FAILED     = "FAILED"
JOB_CANCELLED  = "CANCELLED"
FINAL_JOB_STATUSES = {JOB_COMPLETED, JOB_FAILED, JOB_CANCELLED}

ALERT_PENDING  = "PENDING"
ALERT_APPROVED = "APPROVED"
ALERT_REJECTED = "REJECTED"
ALL_ALERT_STATUSES = {ALERT_PENDING, ALERT_APPROVED, ALERT_REJECTED}

UNIT_SCALE = 4
_UNITS = 10 ** UNIT_SCALE
_QUANTUM = Decimal(1).scaleb(-UNIT_SCALE)      # Decimal("0.0001")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS providers (
    id            TEXT PRIMARY KEY,
    tenant_id     TEXT NOT NULL,
    name          TEXT NOT NULL,
    tax_id        TEXT NOT NULL,              -- normalised, see normalize_tax_id()
    type          TEXT NOT NULL DEFAULT 'MATERIAL_SUPPLIER',
    email         TEXT,
    phone         TEXT,
    address       TEXT,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_providers_tenant_tax_id ON providers (tenant_id, tax_id);

CREATE TABLE IF NOT EXISTS product_groups (
    id                 TEXT PRIMARY KEY,
    tenant_id          TEXT NOT NULL,
    standardized_name  TEXT NOT NULL,
    created_at         TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_product_groups_name ON product_groups (tenant_id, standardized_name);

CREATE TABLE IF NOT EXISTS materials (
    id                TEXT PRIMARY KEY,
    tenant_id         TEXT NOT NULL,
    code              TEXT NOT NULL,          -- normalised code, or a name slug
    name              TEXT NOT NULL,
    normalized_name   TEXT NOT NULL,
    category          TEXT,
    unit              TEXT,
    reference_code    TEXT,                   -- normalised code seen on the invoice
    product_group_id  TEXT REFERENCES product_groups (id) ON DELETE SET NULL,
    is_active         INTEGER NOT NULL DEFAULT 1,
    created_at        TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_materials_tenant_code ON materials (tenant_id, code);
CREATE INDEX IF NOT EXISTS idx_materials_reference ON materials (tenant_id, reference_code);
CREATE INDEX IF NOT EXISTS idx_materials_name      ON materials (tenant_id, normalized_name);

CREATE TABLE IF NOT EXISTS material_alt_codes (
    material_id  TEXT NOT NULL REFERENCES materials (id) ON DELETE CASCADE,
    code         TEXT NOT NULL,
    PRIMARY KEY (material_id, code)
);

CREATE INDEX IF NOT EXISTS idx_alt_codes_code ON material_alt_codes (code);

CREATE TABLE IF NOT EXISTS material_providers (
    material_id      TEXT NOT NULL REFERENCES materials (id) ON DELETE CASCADE,
    provider_id      TEXT NOT NULL REFERENCES providers (id) ON DELETE CASCADE,
    last_price       INTEGER NOT NULL,
    last_price_date  TEXT NOT NULL,           -- YYYY-MM-DD
    PRIMARY KEY (material_id, provider_id)
);

CREATE TABLE IF NOT EXISTS invoices (
    id            TEXT PRIMARY KEY,
    provider_id   TEXT NOT NULL REFERENCES providers (id),
    invoice_code  TEXT NOT NULL,
    issue_date    TEXT NOT NULL,              -- YYYY-MM-DD
    total_amount  INTEGER NOT NULL DEFAULT 0,
    batch_job_id  TEXT,
    created_at    TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_invoices_provider_code ON invoices (provider_id, invoice_code);
CREATE INDEX IF NOT EXISTS idx_invoices_issue_date ON invoices (issue_date);

CREATE TABLE IF NOT EXISTS invoice_items (
    id           TEXT PRIMARY KEY,
    invoice_id   TEXT NOT NULL REFERENCES invoices (id) ON DELETE CASCADE,
    material_id  TEXT NOT NULL REFERENCES materials (id),
    quantity     INTEGER NOT NULL,
    unit_price   INTEGER NOT NULL,
    total_price  INTEGER NOT NULL,
    work_order   TEXT,
    description  TEXT,
    item_date    TEXT NOT NULL,               -- YYYY-MM-DD
    line_number  INTEGER
);

CREATE INDEX IF NOT EXISTS idx_items_invoice    ON invoice_items (invoice_id);
CREATE INDEX IF NOT EXISTS idx_items_material   ON invoice_items (material_id, item_date);
CREATE INDEX IF NOT EXISTS idx_items_work_order ON invoice_items (work_order);

CREATE TABLE IF NOT EXISTS price_alerts (
    id              TEXT PRIMARY KEY,
    material_id     TEXT NOT NULL REFERENCES materials (id) ON DELETE CASCADE,
    provider_id     TEXT NOT NULL REFERENCES providers (id) ON DELETE CASCADE,
    invoice_id      TEXT REFERENCES invoices (id) ON DELETE SET NULL,
    effective_date  TEXT NOT NULL,
    old_price       INTEGER NOT NULL,
    new_price       INTEGER NOT NULL,
    percentage      INTEGER NOT NULL,
    severity        TEXT NOT NULL,            -- LOW | MEDIUM | HIGH
    status          TEXT NOT NULL DEFAULT 'PENDING',
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_price_alerts_key
    ON price_alerts (material_id, provider_id, effective_date);
CREATE INDEX IF NOT EXISTS idx_price_alerts_status ON price_alerts (status);

CREATE TABLE IF NOT EXISTS batch_jobs (
    id                TEXT PRIMARY KEY,
    tenant_id         TEXT NOT NULL,
    source            TEXT,
    status            TEXT NOT NULL DEFAULT 'PENDING',
    attempted         INTEGER NOT NULL DEFAULT 0,
    succeeded         INTEGER NOT NULL DEFAULT 0,
    failed            INTEGER NOT NULL DEFAULT 0,
    duplicates        INTEGER NOT NULL DEFAULT 0,
    parse_errors      INTEGER NOT NULL DEFAULT 0,
    cancel_requested  INTEGER NOT NULL DEFAULT 0,
    errors            TEXT,                   -- JSON list of InvoiceFailure dicts
    created_at        TEXT NOT NULL,
    started_at        TEXT,
    completed_at      TEXT
);

CREATE INDEX IF NOT EXISTS idx_batch_jobs_created ON batch_jobs (created_at DESC);
"""


# ------------------------------------------------------------------
# Value helpers
# ------------------------------------------------------------------

def quantize(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_QUANTUM, rounding=ROUND_HALF_UP)


def to_units(value: Decimal) -> int:
    """Decimal -> scaled integer for storage."""
    return int(quantize(value).scaleb(UNIT_SCALE))


def from_units(units: Optional[int]) -> Decimal:
    """Scaled integer from storage -> Decimal (0 for NULL)."""
    return Decimal(units or 0).scaleb(-UNIT_SCALE)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(d: date) -> str:
    return d.isoformat()


def _open(db_path: Path, timeout: float, isolation_level: Optional[str] = "") -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), timeout=timeout, isolation_level=isolation_level)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.create_function("fold", 1, fold, deterministic=True)
    return conn


# ------------------------------------------------------------------
# Transaction scope
# ------------------------------------------------------------------

_MATERIAL_COLUMNS = (
    "m.id, m.code, m.name, m.normalized_name, m.reference_code, m.rowid AS seq"
)


class Transaction:
    """
    One open write transaction. Everything the ingestion path writes goes
    through these methods so the call chain shares one commit/rollback.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._savepoints = 0

    def execute(self, sql: str, params=()) -> sqlite3.Cursor:
        return self.conn.execute(sql, params)

    def fetch_one(self, sql: str, params=()) -> Optional[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params=()) -> list[sqlite3.Row]:
        return self.conn.execute(sql, params).fetchall()

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Nested scope: an exception rolls back to the savepoint and re-raises."""
        self._savepoints += 1
        name = f"sp_{self._savepoints}"
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except Exception:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            self.conn.execute(f"RELEASE SAVEPOINT {name}")

    # -- Providers -----------------------------------------------------

    def find_provider(self, tenant_id: str, tax_ids: list[str]) -> Optional[sqlite3.Row]:
        if not tax_ids:
            return None
        marks = ",".join("?" * len(tax_ids))
        return self.fetch_one(
            f"SELECT * FROM providers WHERE tenant_id = ? AND tax_id IN ({marks}) "
            "ORDER BY rowid LIMIT 1",
            [tenant_id, *tax_ids],
        )

    def insert_provider(
        self,
        tenant_id: str,
        name: str,
        tax_id: str,
        provider_type: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> str:
        provider_id = _new_id()
        now = _now()
        self.execute(
            """
            INSERT INTO providers (id, tenant_id, name, tax_id, type, email, phone, address,
                                   created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (provider_id, tenant_id, name, tax_id, provider_type, email, phone, address, now, now),
        )
        return provider_id

    def update_provider_details(
        self,
        provider_id: str,
        name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> None:
        """Refresh name; keep stored contact fields the invoice does not carry."""
        self.execute(
            """
            UPDATE providers SET
                name       = ?,
                email      = COALESCE(?, email),
                phone      = COALESCE(?, phone),
                address    = COALESCE(?, address),
                updated_at = ?
            WHERE id = ?
            """,
            (name, email, phone, address, _now(), provider_id),
        )

    # -- Invoices ------------------------------------------------------

    def find_invoice(self, provider_id: str, invoice_code: str) -> Optional[sqlite3.Row]:
        return self.fetch_one(
            "SELECT * FROM invoices WHERE provider_id = ? AND invoice_code = ?",
            (provider_id, invoice_code),
        )

    def insert_invoice(
        self,
        provider_id: str,
        invoice_code: str,
        issue_date: date,
        batch_job_id: Optional[str] = None,
    ) -> str:
        invoice_id = _new_id()
        self.execute(
            """
            INSERT INTO invoices (id, provider_id, invoice_code, issue_date, total_amount,
                                  batch_job_id, created_at)
            VALUES (?, ?, ?, ?, 0, ?, ?)
            """,
            (invoice_id, provider_id, invoice_code, _iso(issue_date), batch_job_id, _now()),
        )
        return invoice_id

    def set_invoice_total(self, invoice_id: str, total: Decimal) -> None:
        self.execute(
            "UPDATE invoices SET total_amount = ? WHERE id = ?",
            (to_units(total), invoice_id),
        )

    def insert_invoice_item(
        self,
        invoice_id: str,
        material_id: str,
        quantity: Decimal,
        unit_price: Decimal,
        total_price: Decimal,
        item_date: date,
        work_order: Optional[str] = None,
        description: Optional[str] = None,
        line_number: Optional[int] = None,
    ) -> str:
        item_id = _new_id()
        self.execute(
            """
            INSERT INTO invoice_items (id, invoice_id, material_id, quantity, unit_price,
                                       total_price, work_order, description, item_date,
                                       line_number)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item_id, invoice_id, material_id,
                to_units(quantity), to_units(unit_price), to_units(total_price),
                work_order, description, _iso(item_date), line_number,
            ),
        )
        return item_id

    # -- Materials -----------------------------------------------------

    def find_materials_by_code(self, tenant_id: str, code: str) -> list[sqlite3.Row]:
        """Exact code hits: primary code first, then reference code, then alternatives."""
        return self.fetch_all(
            f"""
            SELECT {_MATERIAL_COLUMNS}, 0 AS rank FROM materials m
             WHERE m.tenant_id = :tenant AND m.code = :code
            UNION ALL
            SELECT {_MATERIAL_COLUMNS}, 1 AS rank FROM materials m
             WHERE m.tenant_id = :tenant AND m.reference_code = :code
            UNION ALL
            SELECT {_MATERIAL_COLUMNS}, 2 AS rank FROM materials m
              JOIN material_alt_codes a ON a.material_id = m.id
             WHERE m.tenant_id = :tenant AND a.code = :code
            ORDER BY rank, seq
            """,
            {"tenant": tenant_id, "code": code},
        )

    def find_materials_with_overlapping_code(
        self, tenant_id: str, code: str, min_length: int
    ) -> list[sqlite3.Row]:
        """Materials whose code, reference or alternative code contains or is contained in *code*."""
        return self.fetch_all(
            f"""
            SELECT {_MATERIAL_COLUMNS}, m.code AS matched_code FROM materials m
             WHERE m.tenant_id = :tenant AND length(m.code) >= :min
               AND (instr(m.code, :code) > 0 OR instr(:code, m.code) > 0)
            UNION
            SELECT {_MATERIAL_COLUMNS}, m.reference_code AS matched_code FROM materials m
             WHERE m.tenant_id = :tenant AND length(m.reference_code) >= :min
               AND (instr(m.reference_code, :code) > 0 OR instr(:code, m.reference_code) > 0)
            UNION
            SELECT {_MATERIAL_COLUMNS}, a.code AS matched_code FROM materials m
              JOIN material_alt_codes a ON a.material_id = m.id
             WHERE m.tenant_id = :tenant AND length(a.code) >= :min
               AND (instr(a.code, :code) > 0 OR instr(:code, a.code) > 0)
            ORDER BY seq
            """,
            {"tenant": tenant_id, "code": code, "min": min_length},
        )

    def find_materials_by_name_terms(
        self, tenant_id: str, normalized_name: str, words: list[str]
    ) -> list[sqlite3.Row]:
        """Name candidates: exact, containment either way, or sharing any of *words*."""
        clauses = [
            "m.normalized_name = ?",
            "instr(m.normalized_name, ?) > 0",
            "instr(?, m.normalized_name) > 0",
        ]
        params: list = [tenant_id, normalized_name, normalized_name, normalized_name]
        for word in words:
            clauses.append("instr(m.normalized_name, ?) > 0")
            params.append(word)
        return self.fetch_all(
            f"SELECT {_MATERIAL_COLUMNS} FROM materials m "
            f"WHERE m.tenant_id = ? AND ({' OR '.join(clauses)}) ORDER BY seq",
            params,
        )

    def insert_material(
        self,
        tenant_id: str,
        code: str,
        name: str,
        normalized_name: str,
        reference_code: Optional[str] = None,
        category: Optional[str] = None,
        unit: Optional[str] = None,
    ) -> str:
        material_id = _new_id()
        self.execute(
            """
            INSERT INTO materials (id, tenant_id, code, name, normalized_name, category, unit,
                                   reference_code, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
            """,
            (material_id, tenant_id, code, name, normalized_name, category, unit,
             reference_code, _now()),
        )
        return material_id

    def add_alternative_code(self, material_id: str, code: str) -> bool:
        cur = self.execute(
            "INSERT OR IGNORE INTO material_alt_codes (material_id, code) VALUES (?, ?)",
            (material_id, code),
        )
        return cur.rowcount > 0

    # -- Price history -------------------------------------------------

    def get_material_provider(
        self, material_id: str, provider_id: str
    ) -> Optional[tuple[Decimal, date]]:
        row = self.fetch_one(
            "SELECT last_price, last_price_date FROM material_providers "
            "WHERE material_id = ? AND provider_id = ?",
            (material_id, provider_id),
        )
        if row is None:
            return None
        return from_units(row["last_price"]), date.fromisoformat(row["last_price_date"])

    def upsert_material_provider(
        self, material_id: str, provider_id: str, price: Decimal, price_date: date
    ) -> bool:
        """
        Record the latest observed price. An observation older than the stored
        one is ignored. Returns True if the row was written.
        """
        cur = self.execute(
            """
            INSERT INTO material_providers (material_id, provider_id, last_price, last_price_date)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (material_id, provider_id) DO UPDATE SET
                last_price      = excluded.last_price,
                last_price_date = excluded.last_price_date
            WHERE excluded.last_price_date >= material_providers.last_price_date
            """,
            (material_id, provider_id, to_units(price), _iso(price_date)),
        )
        return cur.rowcount > 0

    def insert_price_alert(
        self,
        material_id: str,
        provider_id: str,
        effective_date: date,
        old_price: Decimal,
        new_price: Decimal,
        percentage: Decimal,
        severity: str,
        invoice_id: Optional[str] = None,
    ) -> bool:
        """Insert unless an alert already exists for the same key. Returns True if inserted."""
        now = _now()
        cur = self.execute(
            """
            INSERT INTO price_alerts (id, material_id, provider_id, invoice_id, effective_date,
                                      old_price, new_price, percentage, severity, status,
                                      created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', ?, ?)
            ON CONFLICT (material_id, provider_id, effective_date) DO NOTHING
            """,
            (
                _new_id(), material_id, provider_id, invoice_id, _iso(effective_date),
                to_units(old_price), to_units(new_price), to_units(percentage), severity,
                now, now,
            ),
        )
        return cur.rowcount > 0


class Database:
    """Thin wrapper around an SQLite database file for pipeline state."""

    def __init__(self, db_path: Path, timeout: float = 30) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self):
        conn = _open(self.db_path, self.timeout)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Explicit write transaction: commit on normal exit, rollback on any
        exception (which is re-raised).
        """
        conn = _open(self.db_path, self.timeout, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.debug("Database schema ready: %s", self.db_path)

    def ping(self) -> bool:
        with self._conn() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ------------------------------------------------------------------
    # Read helpers (analytics)
    # ------------------------------------------------------------------

    def fetch_all(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._conn() as conn:
            return conn.execute(sql, params).fetchall()

    def fetch_one(self, sql: str, params=()) -> Optional[sqlite3.Row]:
        with self._conn() as conn:
            return conn.execute(sql, params).fetchone()

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------

    def create_job(self, tenant_id: str, source: Optional[str] = None) -> str:
        job_id = _new_id()
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO batch_jobs (id, tenant_id, source, status, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (job_id, tenant_id, source, JOB_PENDING, _now()),
            )
        return job_id

    def start_job(self, job_id: str) -> None:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE batch_jobs SET status = ?, started_at = ? WHERE id = ?",
                (JOB_PROCESSING, _now(), job_id),
            )
        if cur.rowcount == 0:
            raise NotFoundError(f"Batch job not found: {job_id}")

    def update_job_progress(self, job_id: str, counts: dict) -> None:
        """counts: attempted / succeeded / failed / duplicates / parse_errors."""
        with self._conn() as conn:
            conn.execute(
                """
                UPDATE batch_jobs SET
                    attempted = :attempted, succeeded = :succeeded, failed = :failed,
                    duplicates = :duplicates, parse_errors = :parse_errors
                WHERE id = :id
                """,
                {**counts, "id": job_id},
            )

    def finish_job(self, job_id: str, status: str, counts: dict, errors: list[dict]) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                UPDATE batch_jobs SET
                    status = :status,
                    attempted = :attempted, succeeded = :succeeded, failed = :failed,
                    duplicates = :duplicates, parse_errors = :parse_errors,
                    errors = :errors, completed_at = :completed_at
                WHERE id = :id
                """,
                {
                    **counts,
                    "status": status,
                    "errors": json.dumps(errors),
                    "completed_at": _now(),
                    "id": job_id,
                },
            )
        logger.info("Batch job %s finished: %s", job_id, status)

    def request_cancel(self, job_id: str) -> bool:
        """
        Flag a job for cancellation. Returns False if the job already finished.
        """
        with self._conn() as conn:
            row = conn.execute("SELECT status FROM batch_jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"Batch job not found: {job_id}")
            if row["status"] in FINAL_JOB_STATUSES:
                return False
            conn.execute("UPDATE batch_jobs SET cancel_requested = 1 WHERE id = ?", (job_id,))
        logger.info("Cancellation requested for batch job %s", job_id)
        return True

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT cancel_requested FROM batch_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return bool(row and row["cancel_requested"])

    def get_job(self, job_id: str) -> Optional[dict]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM batch_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        job = dict(row)
        job["errors"] = json.loads(job["errors"]) if job["errors"] else []
        job["cancel_requested"] = bool(job["cancel_requested"])
        return job

    def list_jobs(self, tenant_id: Optional[str] = None, limit: int = 50) -> list[dict]:
        sql = ("SELECT id, tenant_id, source, status, attempted, succeeded, failed, duplicates, "
               "parse_errors, created_at, started_at, completed_at FROM batch_jobs")
        params: list = []
        if tenant_id:
            sql += " WHERE tenant_id = ?"
            params.append(tenant_id)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self._conn() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def get_invoice(self, invoice_id: str) -> Optional[dict]:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT i.*, p.name AS provider_name, p.tax_id AS provider_tax_id
                  FROM invoices i JOIN providers p ON p.id = i.provider_id
                 WHERE i.id = ?
                """,
                (invoice_id,),
            ).fetchone()
            if row is None:
                return None
            items = conn.execute(
                """
                SELECT ii.*, m.code AS material_code, m.name AS material_name
                  FROM invoice_items ii JOIN materials m ON m.id = ii.material_id
                 WHERE ii.invoice_id = ?
                 ORDER BY ii.line_number, ii.rowid
                """,
                (invoice_id,),
            ).fetchall()
        invoice = dict(row)
        invoice["total_amount"] = from_units(invoice["total_amount"])
        invoice["items"] = [
            {
                **dict(it),
                "quantity": from_units(it["quantity"]),
                "unit_price": from_units(it["unit_price"]),
                "total_price": from_units(it["total_price"]),
            }
            for it in items
        ]
        return invoice

    def count_invoices(self, tenant_id: str) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM invoices i JOIN providers p ON p.id = i.provider_id "
                "WHERE p.tenant_id = ?",
                (tenant_id,),
            ).fetchone()
        return row[0]

    def delete_invoice(self, invoice_id: str) -> None:
        """Delete an invoice; its line items cascade. Price history is left as observed."""
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM invoices WHERE id = ?", (invoice_id,))
        if cur.rowcount == 0:
            raise NotFoundError(f"Invoice not found: {invoice_id}")
        logger.info("Deleted invoice %s", invoice_id)

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def get_provider(self, provider_id: str) -> Optional[dict]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return dict(row) if row else None

    def list_providers(self, tenant_id: str) -> list[dict]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT p.*, COUNT(i.id) AS invoice_count
                  FROM providers p LEFT JOIN invoices i ON i.provider_id = p.id
                 WHERE p.tenant_id = ?
                 GROUP BY p.id
                 ORDER BY fold(p.name), p.id
                """,
                (tenant_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    def merge_providers(self, source_id: str, target_id: str) -> dict:
        """
        Fold *source* into *target*: invoices, price history and alerts move
        to the target, then the source is deleted. All-or-nothing.

        Raises NotFoundError for unknown ids and ValueError when the two
        providers cannot be merged (same id, different tenants, or both hold
        an invoice with the same code).
        """
        if source_id == target_id:
            raise ValueError("Cannot merge a provider into itself")

        with self.transaction() as tx:
            source = tx.fetch_one("SELECT * FROM providers WHERE id = ?", (source_id,))
            target = tx.fetch_one("SELECT * FROM providers WHERE id = ?", (target_id,))
            if source is None:
                raise NotFoundError(f"Provider not found: {source_id}")
            if target is None:
                raise NotFoundError(f"Provider not found: {target_id}")
            if source["tenant_id"] != target["tenant_id"]:
                raise ValueError("Providers belong to different tenants")

            clash = tx.fetch_all(
                """
                SELECT s.invoice_code FROM invoices s
                  JOIN invoices t ON t.invoice_code = s.invoice_code AND t.provider_id = ?
                 WHERE s.provider_id = ?
                """,
                (target_id, source_id),
            )
            if clash:
                codes = ", ".join(r["invoice_code"] for r in clash)
                raise ValueError(f"Both providers have invoices with code(s): {codes}")

            invoices_moved = tx.execute(
                "UPDATE invoices SET provider_id = ? WHERE provider_id = ?",
                (target_id, source_id),
            ).rowcount

            # Most recent observation wins when both providers priced a material
            tx.execute(
                """
                INSERT INTO material_providers (material_id, provider_id, last_price, last_price_date)
                SELECT material_id, ?, last_price, last_price_date
                  FROM material_providers WHERE provider_id = ?
                ON CONFLICT (material_id, provider_id) DO UPDATE SET
                    last_price      = excluded.last_price,
                    last_price_date = excluded.last_price_date
                WHERE excluded.last_price_date > material_providers.last_price_date
                """,
                (target_id, source_id),
            )
            tx.execute("DELETE FROM material_providers WHERE provider_id = ?", (source_id,))

            alerts_moved = tx.execute(
                "UPDATE OR IGNORE price_alerts SET provider_id = ? WHERE provider_id = ?",
                (target_id, source_id),
            ).rowcount
            alerts_dropped = tx.execute(
                "DELETE FROM price_alerts WHERE provider_id = ?", (source_id,)
            ).rowcount

            tx.execute("DELETE FROM providers WHERE id = ?", (source_id,))

        logger.info(
            "Merged provider %s into %s: %d invoices, %d alerts moved (%d duplicates dropped)",
            source_id, target_id, invoices_moved, alerts_moved, alerts_dropped,
        )
        return {
            "source_id": source_id,
            "target_id": target_id,
            "invoices_moved": invoices_moved,
            "alerts_moved": alerts_moved,
            "alerts_dropped": alerts_dropped,
        }

    # ------------------------------------------------------------------
    # Price alerts
    # ------------------------------------------------------------------

    def list_price_alerts(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict]:
        clauses = ["p.tenant_id = ?"]
        params: list = [tenant_id]
        if status:
            clauses.append("a.status = ?")
            params.append(status)
        params += [limit, offset]
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT a.*, m.code AS material_code, m.name AS material_name,
                       p.name AS provider_name, p.tax_id AS provider_tax_id,
                       i.invoice_code
                  FROM price_alerts a
                  JOIN materials m ON m.id = a.material_id
                  JOIN providers p ON p.id = a.provider_id
                  LEFT JOIN invoices i ON i.id = a.invoice_id
                 WHERE {' AND '.join(clauses)}
                 ORDER BY a.effective_date DESC, a.created_at DESC
                 LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()
        alerts = []
        for r in rows:
            alert = dict(r)
            for key in ("old_price", "new_price", "percentage"):
                alert[key] = from_units(alert[key])
            alerts.append(alert)
        return alerts

    def update_alert_status(self, alert_id: str, status: str) -> None:
        if status not in ALL_ALERT_STATUSES:
            raise ValueError(f"Invalid alert status: {status!r}")
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE price_alerts SET status = ?, updated_at = ? WHERE id = ?",
                (status, _now(), alert_id),
            )
        if cur.rowcount == 0:
            raise NotFoundError(f"Price alert not found: {alert_id}")
        logger.info("Price alert %s -> %s", alert_id, status)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self, tenant_id: str) -> dict:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM invoices i JOIN providers p ON p.id = i.provider_id
                      WHERE p.tenant_id = :t)                                   AS invoices,
                    (SELECT COUNT(*) FROM providers WHERE tenant_id = :t)       AS providers,
                    (SELECT COUNT(*) FROM materials WHERE tenant_id = :t)       AS materials,
                    (SELECT COUNT(*) FROM price_alerts a JOIN providers p ON p.id = a.provider_id
                      WHERE p.tenant_id = :t AND a.status = 'PENDING')          AS pending_alerts,
                    (SELECT COALESCE(SUM(i.total_amount), 0) FROM invoices i
                       JOIN providers p ON p.id = i.provider_id
                      WHERE p.tenant_id = :t)                                   AS total_spent
                """,
                {"t": tenant_id},
            ).fetchone()
        stats = dict(row)
        stats["total_spent"] = from_units(stats["total_spent"])
        return stats
