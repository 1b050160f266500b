"""
Price history and price-change alerts.

For every ingested line the last known unit price of the (material,
provider) pair is compared with the new one. An increase above the
threshold raises a PriceAlert keyed by (material, provider, effective
date); at most one alert exists per key, later hits are no-ops.

Severity tiers (percentage increase):
  LOW     threshold < pct <= 10
  MEDIUM  10 < pct <= 20
  HIGH    pct > 20
"""
import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from models.catalog import PriceChange
from .database import Transaction

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = Decimal("5")
MEDIUM_ABOVE = Decimal("10")
HIGH_ABOVE = Decimal("20")
# Reported when the previous price was zero and any increase is unbounded
ZERO_BASE_PERCENTAGE = Decimal("9999")


def percentage_change(old_price: Decimal, new_price: Decimal) -> Decimal:
    if old_price == 0:
        return ZERO_BASE_PERCENTAGE if new_price > 0 else Decimal("0")
    pct = (new_price - old_price) / old_price * 100
    return pct.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def severity_for(percentage: Decimal) -> str:
    if percentage > HIGH_ABOVE:
        return "HIGH"
    if percentage > MEDIUM_ABOVE:
        return "MEDIUM"
    return "LOW"


class PriceAlertPolicy:
    def __init__(self, threshold: Decimal | float | str = DEFAULT_THRESHOLD):
        self.threshold = Decimal(str(threshold))

    def evaluate(
        self,
        material_id: str,
        provider_id: str,
        old_price: Optional[Decimal],
        new_price: Decimal,
        effective_date: date,
    ) -> Optional[PriceChange]:
        """Return the qualifying price change, or None."""
        if old_price is None or new_price <= old_price:
            return None
        pct = percentage_change(old_price, new_price)
        if pct <= self.threshold:
            return None
        return PriceChange(
            material_id=material_id,
            provider_id=provider_id,
            effective_date=effective_date,
            old_price=old_price,
            new_price=new_price,
            percentage=pct,
            severity=severity_for(pct),
        )

    def apply(
        self,
        tx: Transaction,
        material_id: str,
        provider_id: str,
        new_price: Decimal,
        effective_date: date,
        invoice_id: Optional[str] = None,
    ) -> Optional[PriceChange]:
        """
        Compare against the stored price, insert an alert if warranted, then
        record the observation (only if it is not older than the stored one).

        Returns the alert that was inserted, or None.
        """
        previous = tx.get_material_provider(material_id, provider_id)
        old_price = previous[0] if previous else None

        change = self.evaluate(material_id, provider_id, old_price, new_price, effective_date)
        inserted = None
        if change is not None:
            change.invoice_id = invoice_id
            created = tx.insert_price_alert(
                material_id,
                provider_id,
                effective_date,
                change.old_price,
                change.new_price,
                change.percentage,
                change.severity,
                invoice_id=invoice_id,
            )
            if created:
                logger.info(
                    "Price alert %s: material=%s provider=%s %s -> %s (+%s%%)",
                    change.severity, material_id, provider_id,
                    change.old_price, change.new_price, change.percentage,
                )
                inserted = change
            else:
                logger.debug(
                    "Price alert already recorded for %s/%s on %s",
                    material_id, provider_id, effective_date,
                )

        tx.upsert_material_provider(material_id, provider_id, new_price, effective_date)
        return inserted
