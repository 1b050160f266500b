from datetime import date
from decimal import Decimal
from typing import Optional, List

from pydantic import AliasChoices, BaseModel, Field, field_validator


class ProviderInfo(BaseModel):
    """Provider (supplier) details as returned by the extraction service."""
    name: str = Field(min_length=1)
    tax_id: str = Field(validation_alias=AliasChoices("tax_id", "cif", "taxId"))
    type: Optional[str] = None         # MATERIAL_SUPPLIER | MACHINERY_RENTAL
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None

    @field_validator("name", "tax_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class ExtractedItem(BaseModel):
    """A single invoice line as returned by the extraction service."""
    material_name: str = Field(
        validation_alias=AliasChoices("material_name", "materialName", "name")
    )
    description: Optional[str] = None
    code: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("code", "materialCode", "material_code"),
    )
    quantity: Decimal
    unit_price: Decimal = Field(validation_alias=AliasChoices("unit_price", "unitPrice"))
    total_price: Optional[Decimal] = Field(   # As printed; the stored total is recomputed
        default=None,
        validation_alias=AliasChoices("total_price", "totalPrice"),
    )
    work_order: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("work_order", "workOrder"),
    )
    item_date: Optional[date] = Field(
        default=None,
        validation_alias=AliasChoices("item_date", "itemDate"),
    )
    line_number: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("line_number", "lineNumber"),
    )
    unit: Optional[str] = None           # e.g. "ud", "m2", "kg"
    category: Optional[str] = None

    @field_validator("material_name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("material name must not be blank")
        return v

    @field_validator("code", "work_order", "description")
    @classmethod
    def _blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class ExtractedInvoiceRecord(BaseModel):
    """
    One invoice as decoded from the inner payload of a batch result line.

    Both snake_case and camelCase keys are accepted; unknown keys are ignored.
    Monetary values and quantities are Decimals.
    """
    invoice_code: str = Field(validation_alias=AliasChoices("invoice_code", "invoiceCode"))
    issue_date: date = Field(validation_alias=AliasChoices("issue_date", "issueDate"))
    provider: ProviderInfo
    items: List[ExtractedItem] = Field(min_length=1)
    total_amount: Optional[Decimal] = Field(   # As printed on the invoice
        default=None,
        validation_alias=AliasChoices("total_amount", "totalAmount"),
    )

    @field_validator("invoice_code")
    @classmethod
    def _code_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("invoice code must not be blank")
        return v


class ParsedRecord(BaseModel):
    """A successfully decoded line of a batch result source."""
    line_number: int                  # 1-based physical line number
    key: Optional[str] = None         # Request key assigned when the batch was submitted
    invoice: ExtractedInvoiceRecord
