from datetime import date
from decimal import Decimal
from typing import Generic, Optional, List, Literal, TypeVar

from pydantic import BaseModel, Field, field_validator

T = TypeVar("T")

MaterialSortKey = Literal["cost", "quantity", "last_purchase", "name"]
SupplierSortKey = Literal["spent", "invoices", "materials", "last_invoice", "name"]
SortOrder = Literal["asc", "desc"]


class AnalyticsFilters(BaseModel):
    """
    Filter and sort inputs shared by material and supplier analytics.

    Text filters are matched case-insensitively as substrings; work-order
    text is normalised the same way stored work orders are.
    """
    tenant_id: Optional[str] = None          # Defaults to Config.tenant_id
    material_id: Optional[str] = None
    category: Optional[str] = None
    work_order: Optional[str] = None
    supplier_id: Optional[str] = None
    supplier_type: Optional[str] = None
    tax_id: Optional[str] = None
    material_search: Optional[str] = None    # Name, code or reference code
    start_date: Optional[date] = None        # Inclusive
    end_date: Optional[date] = None          # Inclusive
    sort_by: Optional[str] = None            # Per-entity default when None
    sort_order: Optional[SortOrder] = None   # "desc" except for name sorts
    include_monthly_breakdown: bool = False

    @field_validator(
        "category", "work_order", "material_search", "tax_id",
        "material_id", "supplier_id", "supplier_type",
    )
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class PricePoint(BaseModel):
    """One observed unit price for a material."""
    purchase_date: date
    unit_price: Decimal
    quantity: Decimal
    provider_id: str
    provider_name: str
    invoice_code: str


class SupplierShare(BaseModel):
    """A provider's share of spend on one material."""
    provider_id: str
    name: str
    tax_id: str
    total_cost: Decimal
    total_quantity: Decimal
    invoice_count: int


class MaterialAnalytics(BaseModel):
    material_id: str
    code: str
    name: str
    reference_code: Optional[str] = None
    category: Optional[str] = None
    unit: Optional[str] = None
    is_active: bool = True
    product_group: Optional[str] = None
    total_quantity: Decimal
    total_cost: Decimal
    average_unit_price: Decimal              # total_cost / total_quantity, 0 when quantity is 0
    invoice_count: int
    supplier_count: int
    last_purchase_date: Optional[date] = None
    work_orders: List[str] = Field(default_factory=list)
    price_evolution: List[PricePoint] = Field(default_factory=list)   # Oldest first
    top_suppliers: List[SupplierShare] = Field(default_factory=list)  # By cost, descending


class MaterialShare(BaseModel):
    """A material's share of spend with one provider."""
    material_id: str
    code: str
    name: str
    total_quantity: Decimal
    total_cost: Decimal
    average_unit_price: Decimal
    item_count: int


class MonthlySpend(BaseModel):
    month: str                               # YYYY-MM
    total: Decimal
    invoice_count: int


class SupplierAnalytics(BaseModel):
    provider_id: str
    name: str
    tax_id: str
    type: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    total_spent: Decimal
    invoice_count: int
    material_count: int
    work_order_count: int
    average_invoice_amount: Decimal
    last_invoice_date: Optional[date] = None
    work_orders: List[str] = Field(default_factory=list)
    monthly_spending: Optional[List[MonthlySpend]] = None             # Oldest month first
    top_materials_by_quantity: List[MaterialShare] = Field(default_factory=list)
    top_materials_by_cost: List[MaterialShare] = Field(default_factory=list)


class Page(BaseModel, Generic[T]):
    items: List[T]
    total_count: int
    page: int
    page_size: int
    total_pages: int


class MaterialFilterTotals(BaseModel):
    total_quantity: Decimal
    total_cost: Decimal
    average_unit_price: Decimal
    material_count: int
    supplier_count: int


class WorkOrderAnalytics(BaseModel):
    work_order: str
    total_cost: Decimal
    item_count: int
    invoice_count: int
    first_date: Optional[date] = None
    last_date: Optional[date] = None
    materials: List[MaterialShare] = Field(default_factory=list)       # By cost, descending
    suppliers: List[SupplierShare] = Field(default_factory=list)       # By cost, descending
