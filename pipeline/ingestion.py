"""
Per-invoice ingestion.

InvoiceIngestor.ingest() persists one decoded invoice record in a single
transaction:

  1. ProviderResolver   -- find or create the provider by tax identifier
  2. Duplicate check    -- same provider + invoice code already stored
  3. Invoice row
  4. Per line item      -- MaterialResolver, InvoiceItem (total = qty x price),
                           PriceAlertPolicy (alert + monotonic price history)
  5. Invoice total      -- exact sum of the item totals

Any exception rolls the whole invoice back; nothing partial is ever stored.
"""
import logging
import sqlite3
from decimal import Decimal
from typing import Optional

from config import Config
from models.extraction import ExtractedInvoiceRecord, ExtractedItem
from models.result import IngestionOutcome
from .database import Database, quantize
from .errors import PipelineError, ResolutionError, SystemicError
from .material_resolver import MaterialResolver
from .normalize import normalize_work_order
from .price_alerts import PriceAlertPolicy
from .provider_resolver import ProviderResolver

logger = logging.getLogger(__name__)


def line_total(item: ExtractedItem) -> Decimal:
    return quantize(item.quantity * item.unit_price)


def _item_sort_key(record: ExtractedInvoiceRecord):
    def key(indexed: tuple[int, ExtractedItem]):
        index, item = indexed
        return (item.item_date or record.issue_date, item.line_number or 0, index)
    return key


class InvoiceIngestor:
    """
    Ingest decoded invoice records into the store, one transaction each.

    The store handle is injected; the ingestor holds no connection state of
    its own and is safe to share between sequential calls.
    """

    def __init__(self, db: Database, config: Optional[Config] = None):
        self.db = db
        self.config = config or Config()
        self.providers = ProviderResolver(self.config.tax_id_country_prefix)
        self.materials = MaterialResolver(self.config.name_match_min_score)
        self.alerts = PriceAlertPolicy(self.config.price_alert_threshold)

    def ingest(
        self,
        record: ExtractedInvoiceRecord,
        tenant_id: Optional[str] = None,
        batch_job_id: Optional[str] = None,
    ) -> IngestionOutcome:
        """
        Persist one invoice atomically.

        Raises:
            ResolutionError: the invoice could not be stored; nothing was written.
            SystemicError:   the store itself is unavailable.
        """
        tenant_id = tenant_id or self.config.tenant_id
        try:
            with self.db.transaction() as tx:
                provider = self.providers.resolve(tx, tenant_id, record.provider)

                existing = tx.find_invoice(provider.provider_id, record.invoice_code)
                if existing is not None:
                    logger.info(
                        "Invoice %s from %s already stored; skipping",
                        record.invoice_code, provider.name,
                    )
                    return IngestionOutcome(
                        invoice_id=existing["id"],
                        invoice_code=record.invoice_code,
                        provider_id=provider.provider_id,
                        status="duplicate",
                    )

                invoice_id = tx.insert_invoice(
                    provider.provider_id, record.invoice_code, record.issue_date, batch_job_id,
                )

                total = Decimal("0")
                alerts_created = 0
                materials_created = 0
                ordered = sorted(enumerate(record.items), key=_item_sort_key(record))
                for _, item in ordered:
                    material = self.materials.resolve(
                        tx,
                        tenant_id,
                        item.material_name,
                        description=item.description,
                        code=item.code,
                        category=item.category,
                        unit=item.unit,
                    )
                    materials_created += int(material.created)

                    item_date = item.item_date or record.issue_date
                    amount = line_total(item)
                    tx.insert_invoice_item(
                        invoice_id,
                        material.material_id,
                        quantize(item.quantity),
                        quantize(item.unit_price),
                        amount,
                        item_date,
                        work_order=normalize_work_order(item.work_order),
                        description=item.description,
                        line_number=item.line_number,
                    )
                    total += amount

                    alert = self.alerts.apply(
                        tx,
                        material.material_id,
                        provider.provider_id,
                        quantize(item.unit_price),
                        item_date,
                        invoice_id=invoice_id,
                    )
                    alerts_created += int(alert is not None)

                tx.set_invoice_total(invoice_id, total)

                if record.total_amount is not None and quantize(record.total_amount) != total:
                    logger.debug(
                        "Invoice %s printed total %s differs from item sum %s",
                        record.invoice_code, record.total_amount, total,
                    )
        except sqlite3.OperationalError as e:
            raise SystemicError(f"Store unavailable while ingesting {record.invoice_code}: {e}") from e
        except sqlite3.DatabaseError as e:
            raise ResolutionError(f"Invoice {record.invoice_code}: {e}") from e
        except PipelineError:
            raise
        except (ValueError, ArithmeticError) as e:
            raise ResolutionError(f"Invoice {record.invoice_code}: {e}") from e

        logger.info(
            "Stored invoice %s from %s: %d items, total %s, %d alert(s)",
            record.invoice_code, provider.name, len(record.items), total, alerts_created,
        )
        return IngestionOutcome(
            invoice_id=invoice_id,
            invoice_code=record.invoice_code,
            provider_id=provider.provider_id,
            status="created",
            item_count=len(record.items),
            total_amount=total,
            alerts_created=alerts_created,
            materials_created=materials_created,
            provider_created=provider.created,
        )
