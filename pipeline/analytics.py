"""
Material and supplier analytics.

Two modes over the same statistics:

  Full mode       load every matching item / invoice, group in memory and
                  build the complete breakdown for every entity.
  Paginated mode  phase 1 ranks entities with a single GROUP BY query and
                  slices out the requested page of ids; phase 2 loads detail
                  for those ids only and builds the same breakdown.

Both modes order entities identically: by the sort key, then by entity id
ascending. Name sorts compare fold(name), the same Python function being
registered in SQLite, so page boundaries never disagree with full mode.

All amounts are summed as scaled integers in SQL and as Decimals in Python.
"""
import logging
import math
from collections import defaultdict
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from config import Config
from models.analytics import (
    AnalyticsFilters,
    MaterialAnalytics,
    MaterialFilterTotals,
    MaterialShare,
    MonthlySpend,
    Page,
    PricePoint,
    SupplierAnalytics,
    SupplierShare,
    WorkOrderAnalytics,
)
from .database import Database, from_units
from .normalize import fold, normalize_code, normalize_search, normalize_tax_id, normalize_work_order

logger = logging.getLogger(__name__)

TOP_MATERIALS = 10

_ZERO = Decimal("0")
_PRICE_QUANTUM = Decimal("0.0001")

# sort key -> (SQL rank expression alias, Python key)
_MATERIAL_SORTS = {
    "cost":          ("cost",          lambda a: a.total_cost),
    "quantity":      ("quantity",      lambda a: a.total_quantity),
    "last_purchase": ("last_purchase", lambda a: a.last_purchase_date or date.min),
    "name":          ("name_key",      lambda a: fold(a.name)),
}
_SUPPLIER_SORTS = {
    "spent":         ("spent",         lambda s: s.total_spent),
    "invoices":      ("invoices",      lambda s: s.invoice_count),
    "materials":     ("materials",     lambda s: s.material_count),
    "last_invoice":  ("last_invoice",  lambda s: s.last_invoice_date or date.min),
    "name":          ("name_key",      lambda s: fold(s.name)),
}

_ITEM_FROM = """
  FROM invoice_items ii
  JOIN invoices i   ON i.id = ii.invoice_id
  JOIN providers p  ON p.id = i.provider_id
  JOIN materials m  ON m.id = ii.material_id
"""

_INVOICE_FROM = """
  FROM invoices i
  JOIN providers p ON p.id = i.provider_id
"""

_ITEM_DETAIL_COLUMNS = """
       ii.id AS item_id, ii.material_id, ii.invoice_id, ii.quantity, ii.unit_price,
       ii.total_price, ii.work_order, ii.item_date,
       i.invoice_code, i.issue_date, i.total_amount, i.provider_id,
       p.name AS provider_name, p.tax_id AS provider_tax_id, p.type AS provider_type,
       m.code AS material_code, m.name AS material_name, m.reference_code,
       m.category, m.unit, m.is_active
"""


def average_price(total_cost: Decimal, total_quantity: Decimal) -> Decimal:
    """Cost per unit; 0 (never NaN or an error) when nothing was bought."""
    if total_quantity == 0:
        return _ZERO
    return (total_cost / total_quantity).quantize(_PRICE_QUANTUM, rounding=ROUND_HALF_UP)


def _d(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _page_bounds(page: int, page_size: int, max_page_size: int) -> tuple[int, int]:
    page = max(1, int(page))
    page_size = min(max(1, int(page_size)), max_page_size)
    return page, page_size


def _sort(entities: list, key_fn, descending: bool, id_attr: str) -> list:
    # Two stable passes: id ascending, then the key. reverse=True keeps the
    # id order within equal keys, which is what ORDER BY key DESC, id ASC does.
    entities.sort(key=lambda e: getattr(e, id_attr))
    entities.sort(key=key_fn, reverse=descending)
    return entities


class AnalyticsService:
    """Read-only analytics over persisted invoices. Safe to call during ingestion."""

    def __init__(self, db: Database, config: Optional[Config] = None):
        self.db = db
        self.config = config or Config()

    # ------------------------------------------------------------------
    # Material analytics
    # ------------------------------------------------------------------

    def get_material_analytics(self, filters: Optional[AnalyticsFilters] = None) -> list[MaterialAnalytics]:
        filters = filters or AnalyticsFilters()
        sort_key, descending = self._material_sort(filters)
        where, params = self._item_conditions(filters)
        rows = self.db.fetch_all(
            f"SELECT {_ITEM_DETAIL_COLUMNS} {_ITEM_FROM} WHERE {where} "
            "ORDER BY ii.item_date, ii.rowid",
            params,
        )
        materials = self._build_materials(rows)
        return _sort(materials, _MATERIAL_SORTS[sort_key][1], descending, "material_id")

    def get_material_analytics_paginated(
        self,
        filters: Optional[AnalyticsFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page[MaterialAnalytics]:
        filters = filters or AnalyticsFilters()
        page, page_size = _page_bounds(
            page, page_size or self.config.default_page_size, self.config.max_page_size
        )
        sort_key, descending = self._material_sort(filters)
        where, params = self._item_conditions(filters)

        total_count = self.db.fetch_one(
            f"SELECT COUNT(DISTINCT ii.material_id) {_ITEM_FROM} WHERE {where}", params
        )[0]

        # Phase 1: rank and slice without loading detail
        order_col = _MATERIAL_SORTS[sort_key][0]
        direction = "DESC" if descending else "ASC"
        ranked = self.db.fetch_all(
            f"""
            SELECT ii.material_id AS id,
                   SUM(ii.total_price) AS cost,
                   SUM(ii.quantity)    AS quantity,
                   MAX(ii.item_date)   AS last_purchase,
                   fold(m.name)        AS name_key
            {_ITEM_FROM}
            WHERE {where}
            GROUP BY ii.material_id
            ORDER BY {order_col} {direction}, ii.material_id ASC
            LIMIT ? OFFSET ?
            """,
            [*params, page_size, (page - 1) * page_size],
        )
        page_ids = [r["id"] for r in ranked]

        # Phase 2: hydrate only the page
        items: list[MaterialAnalytics] = []
        if page_ids:
            marks = ",".join("?" * len(page_ids))
            rows = self.db.fetch_all(
                f"SELECT {_ITEM_DETAIL_COLUMNS} {_ITEM_FROM} "
                f"WHERE {where} AND ii.material_id IN ({marks}) "
                "ORDER BY ii.item_date, ii.rowid",
                [*params, *page_ids],
            )
            by_id = {a.material_id: a for a in self._build_materials(rows)}
            items = [by_id[i] for i in page_ids if i in by_id]

        logger.debug(
            "Material analytics page %d/%d (%d of %d)",
            page, math.ceil(total_count / page_size), len(items), total_count,
        )
        return Page[MaterialAnalytics](
            items=items,
            total_count=total_count,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total_count / page_size),
        )

    def get_material_filter_totals(self, filters: Optional[AnalyticsFilters] = None) -> MaterialFilterTotals:
        """Headline numbers for the whole filtered set (all pages)."""
        filters = filters or AnalyticsFilters()
        where, params = self._item_conditions(filters)
        row = self.db.fetch_one(
            f"""
            SELECT COALESCE(SUM(ii.quantity), 0)    AS quantity,
                   COALESCE(SUM(ii.total_price), 0) AS cost,
                   COUNT(DISTINCT ii.material_id)   AS materials,
                   COUNT(DISTINCT i.provider_id)    AS suppliers
            {_ITEM_FROM}
            WHERE {where}
            """,
            params,
        )
        quantity = from_units(row["quantity"])
        cost = from_units(row["cost"])
        return MaterialFilterTotals(
            total_quantity=quantity,
            total_cost=cost,
            average_unit_price=average_price(cost, quantity),
            material_count=row["materials"],
            supplier_count=row["suppliers"],
        )

    # ------------------------------------------------------------------
    # Supplier analytics
    # ------------------------------------------------------------------

    def get_supplier_analytics(self, filters: Optional[AnalyticsFilters] = None) -> list[SupplierAnalytics]:
        filters = filters or AnalyticsFilters()
        sort_key, descending = self._supplier_sort(filters)
        where, params = self._invoice_conditions(filters)
        suppliers = self._load_suppliers(where, params, filters.include_monthly_breakdown)
        return _sort(suppliers, _SUPPLIER_SORTS[sort_key][1], descending, "provider_id")

    def get_supplier_analytics_paginated(
        self,
        filters: Optional[AnalyticsFilters] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> Page[SupplierAnalytics]:
        filters = filters or AnalyticsFilters()
        page, page_size = _page_bounds(
            page, page_size or self.config.default_page_size, self.config.max_page_size
        )
        sort_key, descending = self._supplier_sort(filters)
        where, params = self._invoice_conditions(filters)

        total_count = self.db.fetch_one(
            f"SELECT COUNT(DISTINCT i.provider_id) {_INVOICE_FROM} WHERE {where}", params
        )[0]

        order_col = _SUPPLIER_SORTS[sort_key][0]
        direction = "DESC" if descending else "ASC"
        ranked = self.db.fetch_all(
            f"""
            WITH inv AS (
                SELECT i.id, i.provider_id, i.total_amount, i.issue_date
                {_INVOICE_FROM}
                WHERE {where}
            )
            SELECT inv.provider_id           AS id,
                   SUM(inv.total_amount)     AS spent,
                   COUNT(*)                  AS invoices,
                   MAX(inv.issue_date)       AS last_invoice,
                   fold(p.name)              AS name_key,
                   (SELECT COUNT(DISTINCT ii.material_id)
                      FROM invoice_items ii
                      JOIN inv AS inv2 ON inv2.id = ii.invoice_id
                     WHERE inv2.provider_id = inv.provider_id) AS materials
              FROM inv
              JOIN providers p ON p.id = inv.provider_id
             GROUP BY inv.provider_id
             ORDER BY {order_col} {direction}, inv.provider_id ASC
             LIMIT ? OFFSET ?
            """,
            [*params, page_size, (page - 1) * page_size],
        )
        page_ids = [r["id"] for r in ranked]

        items: list[SupplierAnalytics] = []
        if page_ids:
            marks = ",".join("?" * len(page_ids))
            by_id = {
                s.provider_id: s
                for s in self._load_suppliers(
                    f"{where} AND i.provider_id IN ({marks})",
                    [*params, *page_ids],
                    filters.include_monthly_breakdown,
                )
            }
            items = [by_id[i] for i in page_ids if i in by_id]

        return Page[SupplierAnalytics](
            items=items,
            total_count=total_count,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total_count / page_size),
        )

    # ------------------------------------------------------------------
    # Work orders, exports, dashboard
    # ------------------------------------------------------------------

    def get_work_order_analytics(self, work_order: str, tenant_id: Optional[str] = None) -> WorkOrderAnalytics:
        """Spend on one work order, broken down by material and by supplier."""
        normalized = normalize_work_order(work_order)
        if not normalized:
            raise ValueError("Work order must not be blank")
        rows = self.db.fetch_all(
            f"SELECT {_ITEM_DETAIL_COLUMNS} {_ITEM_FROM} "
            "WHERE m.tenant_id = ? AND fold(ii.work_order) = ? "
            "ORDER BY ii.item_date, ii.rowid",
            (tenant_id or self.config.tenant_id, fold(normalized)),
        )
        total = sum((from_units(r["total_price"]) for r in rows), _ZERO)
        dates = [r["item_date"] for r in rows]
        materials = self._material_shares(rows)
        materials.sort(key=lambda s: s.material_id)
        materials.sort(key=lambda s: s.total_cost, reverse=True)
        return WorkOrderAnalytics(
            work_order=normalized,
            total_cost=total,
            item_count=len(rows),
            invoice_count=len({r["invoice_id"] for r in rows}),
            first_date=_d(min(dates)) if dates else None,
            last_date=_d(max(dates)) if dates else None,
            materials=materials,
            suppliers=self._supplier_shares(rows),
        )

    def get_export_rows(self, filters: Optional[AnalyticsFilters] = None) -> list[dict]:
        """
        Flat item-level projection of the filtered data, one dict per line
        item, ordered by material name then invoice date.
        """
        filters = filters or AnalyticsFilters()
        where, params = self._item_conditions(filters)
        rows = self.db.fetch_all(
            f"SELECT {_ITEM_DETAIL_COLUMNS} {_ITEM_FROM} WHERE {where} "
            "ORDER BY fold(m.name), i.issue_date, ii.rowid",
            params,
        )
        return [
            {
                "invoice_code": r["invoice_code"],
                "provider_name": r["provider_name"],
                "provider_tax_id": r["provider_tax_id"],
                "provider_type": r["provider_type"],
                "issue_date": _d(r["issue_date"]),
                "invoice_total": from_units(r["total_amount"]),
                "material_code": r["material_code"],
                "material_name": r["material_name"],
                "category": r["category"],
                "quantity": from_units(r["quantity"]),
                "unit_price": from_units(r["unit_price"]),
                "total_price": from_units(r["total_price"]),
                "work_order": r["work_order"],
                "item_date": _d(r["item_date"]),
            }
            for r in rows
        ]

    def get_dashboard_stats(self, tenant_id: Optional[str] = None) -> dict:
        return self.db.get_stats(tenant_id or self.config.tenant_id)

    # ------------------------------------------------------------------
    # Filters and sorting
    # ------------------------------------------------------------------

    def _material_sort(self, filters: AnalyticsFilters) -> tuple[str, bool]:
        return self._resolve_sort(filters, _MATERIAL_SORTS, "cost")

    def _supplier_sort(self, filters: AnalyticsFilters) -> tuple[str, bool]:
        return self._resolve_sort(filters, _SUPPLIER_SORTS, "spent")

    @staticmethod
    def _resolve_sort(filters: AnalyticsFilters, table: dict, default: str) -> tuple[str, bool]:
        sort_key = filters.sort_by or default
        if sort_key not in table:
            raise ValueError(f"Unknown sort key {sort_key!r}; expected one of {sorted(table)}")
        order = filters.sort_order or ("asc" if sort_key == "name" else "desc")
        return sort_key, order == "desc"

    def _item_match_conditions(self, filters: AnalyticsFilters) -> tuple[list[str], list]:
        """Conditions on a single line item (aliases ii, m)."""
        clauses: list[str] = []
        params: list = []
        if filters.material_id:
            clauses.append("ii.material_id = ?")
            params.append(filters.material_id)
        if filters.category:
            clauses.append("instr(fold(m.category), ?) > 0")
            params.append(fold(filters.category))
        if filters.work_order:
            clauses.append("instr(fold(ii.work_order), ?) > 0")
            params.append(fold(normalize_work_order(filters.work_order)))
        search = normalize_search(filters.material_search)
        if search:
            options = [
                "instr(fold(m.name), ?) > 0",
                "instr(fold(m.code), ?) > 0",
                "instr(fold(m.reference_code), ?) > 0",
            ]
            params += [search, search, search]
            code = normalize_code(search)
            if code:
                options += ["instr(m.code, ?) > 0", "instr(m.reference_code, ?) > 0"]
                params += [code, code]
            clauses.append(f"({' OR '.join(options)})")
        return clauses, params

    def _provider_conditions(self, filters: AnalyticsFilters) -> tuple[list[str], list]:
        clauses = ["p.tenant_id = ?"]
        params: list = [filters.tenant_id or self.config.tenant_id]
        if filters.supplier_id:
            clauses.append("i.provider_id = ?")
            params.append(filters.supplier_id)
        if filters.supplier_type:
            clauses.append("p.type = ?")
            params.append(filters.supplier_type.upper())
        if filters.tax_id:
            clauses.append("instr(p.tax_id, ?) > 0")
            params.append(normalize_tax_id(filters.tax_id, self.config.tax_id_country_prefix))
        return clauses, params

    def _item_conditions(self, filters: AnalyticsFilters) -> tuple[str, list]:
        """WHERE clause over _ITEM_FROM; dates apply to the item date."""
        clauses, params = self._provider_conditions(filters)
        item_clauses, item_params = self._item_match_conditions(filters)
        clauses += item_clauses
        params += item_params
        if filters.start_date:
            clauses.append("ii.item_date >= ?")
            params.append(filters.start_date.isoformat())
        if filters.end_date:
            clauses.append("ii.item_date <= ?")
            params.append(filters.end_date.isoformat())
        return " AND ".join(clauses), params

    def _invoice_conditions(self, filters: AnalyticsFilters) -> tuple[str, list]:
        """
        WHERE clause over _INVOICE_FROM; dates apply to the issue date and
        item-level filters select invoices having at least one matching item.
        """
        clauses, params = self._provider_conditions(filters)
        if filters.start_date:
            clauses.append("i.issue_date >= ?")
            params.append(filters.start_date.isoformat())
        if filters.end_date:
            clauses.append("i.issue_date <= ?")
            params.append(filters.end_date.isoformat())
        item_clauses, item_params = self._item_match_conditions(filters)
        if item_clauses:
            clauses.append(
                "EXISTS (SELECT 1 FROM invoice_items ii JOIN materials m ON m.id = ii.material_id "
                f"WHERE ii.invoice_id = i.id AND {' AND '.join(item_clauses)})"
            )
            params += item_params
        return " AND ".join(clauses), params

    # ------------------------------------------------------------------
    # Breakdown builders
    # ------------------------------------------------------------------

    def _build_materials(self, rows: list) -> list[MaterialAnalytics]:
        """Group item rows (oldest first) by material and build each breakdown."""
        grouped: dict[str, list] = defaultdict(list)
        for r in rows:
            grouped[r["material_id"]].append(r)

        groups = {}
        if grouped:
            marks = ",".join("?" * len(grouped))
            for g in self.db.fetch_all(
                "SELECT m.id, g.standardized_name FROM materials m "
                "JOIN product_groups g ON g.id = m.product_group_id "
                f"WHERE m.id IN ({marks})",
                list(grouped),
            ):
                groups[g["id"]] = g["standardized_name"]

        materials = []
        for material_id, items in grouped.items():
            first = items[0]
            quantity = sum((from_units(r["quantity"]) for r in items), _ZERO)
            cost = sum((from_units(r["total_price"]) for r in items), _ZERO)
            materials.append(MaterialAnalytics(
                material_id=material_id,
                code=first["material_code"],
                name=first["material_name"],
                reference_code=first["reference_code"],
                category=first["category"],
                unit=first["unit"],
                is_active=bool(first["is_active"]),
                product_group=groups.get(material_id),
                total_quantity=quantity,
                total_cost=cost,
                average_unit_price=average_price(cost, quantity),
                invoice_count=len({r["invoice_id"] for r in items}),
                supplier_count=len({r["provider_id"] for r in items}),
                last_purchase_date=_d(max(r["item_date"] for r in items)),
                work_orders=sorted({r["work_order"] for r in items if r["work_order"]}),
                price_evolution=[
                    PricePoint(
                        purchase_date=_d(r["item_date"]),
                        unit_price=from_units(r["unit_price"]),
                        quantity=from_units(r["quantity"]),
                        provider_id=r["provider_id"],
                        provider_name=r["provider_name"],
                        invoice_code=r["invoice_code"],
                    )
                    for r in items
                ],
                top_suppliers=self._supplier_shares(items),
            ))
        return materials

    @staticmethod
    def _supplier_shares(items: list) -> list[SupplierShare]:
        by_provider: dict[str, list] = defaultdict(list)
        for r in items:
            by_provider[r["provider_id"]].append(r)
        shares = [
            SupplierShare(
                provider_id=provider_id,
                name=rows[0]["provider_name"],
                tax_id=rows[0]["provider_tax_id"],
                total_cost=sum((from_units(r["total_price"]) for r in rows), _ZERO),
                total_quantity=sum((from_units(r["quantity"]) for r in rows), _ZERO),
                invoice_count=len({r["invoice_id"] for r in rows}),
            )
            for provider_id, rows in by_provider.items()
        ]
        shares.sort(key=lambda s: s.provider_id)
        shares.sort(key=lambda s: s.total_cost, reverse=True)
        return shares

    @staticmethod
    def _material_shares(items: list) -> list[MaterialShare]:
        by_material: dict[str, list] = defaultdict(list)
        for r in items:
            by_material[r["material_id"]].append(r)
        shares = []
        for material_id, rows in by_material.items():
            quantity = sum((from_units(r["quantity"]) for r in rows), _ZERO)
            cost = sum((from_units(r["total_price"]) for r in rows), _ZERO)
            shares.append(MaterialShare(
                material_id=material_id,
                code=rows[0]["material_code"],
                name=rows[0]["material_name"],
                total_quantity=quantity,
                total_cost=cost,
                average_unit_price=average_price(cost, quantity),
                item_count=len(rows),
            ))
        return shares

    def _load_suppliers(self, where: str, params: list, monthly: bool) -> list[SupplierAnalytics]:
        invoices = self.db.fetch_all(
            f"""
            SELECT i.id, i.provider_id, i.invoice_code, i.issue_date, i.total_amount,
                   p.name, p.tax_id, p.type, p.email, p.phone, p.address
            {_INVOICE_FROM}
            WHERE {where}
            ORDER BY i.issue_date, i.rowid
            """,
            params,
        )
        items = self.db.fetch_all(
            f"""
            SELECT ii.invoice_id, ii.material_id, ii.quantity, ii.total_price, ii.work_order,
                   m.code AS material_code, m.name AS material_name
              FROM invoice_items ii
              JOIN materials m ON m.id = ii.material_id
             WHERE ii.invoice_id IN (SELECT i.id {_INVOICE_FROM} WHERE {where})
             ORDER BY ii.item_date, ii.rowid
            """,
            params,
        )

        invoices_by_provider: dict[str, list] = defaultdict(list)
        provider_of_invoice: dict[str, str] = {}
        for inv in invoices:
            invoices_by_provider[inv["provider_id"]].append(inv)
            provider_of_invoice[inv["id"]] = inv["provider_id"]
        items_by_provider: dict[str, list] = defaultdict(list)
        for it in items:
            provider_id = provider_of_invoice.get(it["invoice_id"])
            if provider_id is not None:
                items_by_provider[provider_id].append(it)

        suppliers = []
        for provider_id, invs in invoices_by_provider.items():
            first = invs[0]
            provider_items = items_by_provider.get(provider_id, [])
            spent = sum((from_units(inv["total_amount"]) for inv in invs), _ZERO)
            work_orders = sorted({it["work_order"] for it in provider_items if it["work_order"]})

            shares = self._material_shares(provider_items)
            shares.sort(key=lambda s: s.material_id)
            by_quantity = sorted(shares, key=lambda s: s.total_quantity, reverse=True)
            by_cost = sorted(shares, key=lambda s: s.total_cost, reverse=True)

            monthly_spending = None
            if monthly:
                months: dict[str, list] = defaultdict(list)
                for inv in invs:
                    months[inv["issue_date"][:7]].append(inv)
                monthly_spending = [
                    MonthlySpend(
                        month=month,
                        total=sum((from_units(inv["total_amount"]) for inv in month_invs), _ZERO),
                        invoice_count=len(month_invs),
                    )
                    for month, month_invs in sorted(months.items())
                ]

            suppliers.append(SupplierAnalytics(
                provider_id=provider_id,
                name=first["name"],
                tax_id=first["tax_id"],
                type=first["type"],
                email=first["email"],
                phone=first["phone"],
                address=first["address"],
                total_spent=spent,
                invoice_count=len(invs),
                material_count=len(shares),
                work_order_count=len(work_orders),
                average_invoice_amount=(spent / len(invs)).quantize(_PRICE_QUANTUM, rounding=ROUND_HALF_UP),
                last_invoice_date=_d(max(inv["issue_date"] for inv in invs)),
                work_orders=work_orders,
                monthly_spending=monthly_spending,
                top_materials_by_quantity=by_quantity[:TOP_MATERIALS],
                top_materials_by_cost=by_cost[:TOP_MATERIALS],
            ))
        return suppliers
