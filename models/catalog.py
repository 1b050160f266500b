from datetime import date
from decimal import Decimal
from typing import Optional, Literal

from pydantic import BaseModel


ProviderType = Literal["MATERIAL_SUPPLIER", "MACHINERY_RENTAL"]
AlertSeverity = Literal["LOW", "MEDIUM", "HIGH"]
AlertStatus = Literal["PENDING", "APPROVED", "REJECTED"]

PROVIDER_TYPES = ("MATERIAL_SUPPLIER", "MACHINERY_RENTAL")
ALERT_STATUSES = ("PENDING", "APPROVED", "REJECTED")


class ResolvedProvider(BaseModel):
    """The provider an invoice was attributed to."""
    provider_id: str
    name: str
    tax_id: str                       # Normalised, e.g. "B12345678"
    type: ProviderType
    created: bool = False


class ResolvedMaterial(BaseModel):
    """The catalog material a line item was resolved to."""
    material_id: str
    code: str
    name: str
    match_method: str                 # code_exact | code_similar | name | created
    created: bool = False


class PriceChange(BaseModel):
    """A qualifying unit-price increase for a (material, provider) pair."""
    material_id: str
    provider_id: str
    effective_date: date
    old_price: Decimal
    new_price: Decimal
    percentage: Decimal
    severity: AlertSeverity
    invoice_id: Optional[str] = None
