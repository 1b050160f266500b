"""
Integration tests for material and supplier analytics.

Dataset (tenant "test-tenant"):

  Alfa  F-1 2024-01-10  CEM-001 10 x 5.00 (OT-1), ARE-001 2 x 3 (OT-2)
  Alfa  F-2 2024-02-05  CEM-001  4 x 5.50 (OT-1)
  Beta  G-1 2024-01-20  CEM-001  1 x 6.00,        YES-001 3 x 2 (ot-1)
  Beta  G-2 2024-03-01  GRA-001  0 x 7.00
  Gamma H-1 2024-03-01  YES-001  6 x 2.00
"""
import math
from datetime import date
from decimal import Decimal

import pytest

from models.analytics import AnalyticsFilters
from pipeline.analytics import AnalyticsService, average_price
from pipeline.ingestion import InvoiceIngestor

ALFA, BETA, GAMMA = "B11111111", "B22222222", "B33333333"


def _item(name, code, quantity, price, **extra) -> dict:
    return {"materialName": name, "materialCode": code, "quantity": quantity, "unitPrice": price, **extra}


@pytest.fixture
def seeded(test_db, test_config, make_record) -> dict:
    ingestor = InvoiceIngestor(test_db, test_config)
    records = [
        make_record("F-1", "2024-01-10", [
            _item("Cemento gris", "CEM-001", 10, "5.00", workOrder="OT-1"),
            _item("Arena fina", "ARE-001", 2, 3, workOrder="OT-2", category="Aridos"),
        ], tax_id=ALFA, provider_name="Alfa Suministros"),
        make_record("F-2", "2024-02-05", [
            _item("Cemento gris", "CEM-001", 4, "5.50", workOrder="OT-1"),
        ], tax_id=ALFA, provider_name="Alfa Suministros"),
        make_record("G-1", "2024-01-20", [
            _item("Cemento gris", "CEM-001", 1, "6.00"),
            _item("Yeso blanco", "YES-001", 3, 2, workOrder="ot-1"),
        ], tax_id=BETA, provider_name="Beta Materiales"),
        make_record("G-2", "2024-03-01", [
            _item("Grava gruesa", "GRA-001", 0, "7.00"),
        ], tax_id=BETA, provider_name="Beta Materiales"),
        make_record("H-1", "2024-03-01", [
            _item("Yeso blanco", "YES-001", 6, "2.00"),
        ], tax_id=GAMMA, provider_name="Gamma Obras"),
        make_record("Z-1", "2024-03-01", [
            _item("Cemento gris", "CEM-001", 100, "1.00"),
        ], tax_id=ALFA, provider_name="Other tenant"),
    ]
    for record in records[:-1]:
        ingestor.ingest(record)
    ingestor.ingest(records[-1], tenant_id="other-tenant")

    def material(code):
        return test_db.fetch_one(
            "SELECT id FROM materials WHERE code = ? AND tenant_id = ?", (code, test_config.tenant_id)
        )["id"]

    def provider(tax_id):
        return test_db.fetch_one(
            "SELECT id FROM providers WHERE tax_id = ? AND tenant_id = ?", (tax_id, test_config.tenant_id)
        )["id"]

    return {
        "CEM": material("CEM001"), "ARE": material("ARE001"),
        "YES": material("YES001"), "GRA": material("GRA001"),
        "ALFA": provider(ALFA), "BETA": provider(BETA), "GAMMA": provider(GAMMA),
    }


@pytest.fixture
def service(test_db, test_config) -> AnalyticsService:
    return AnalyticsService(test_db, test_config)


@pytest.mark.integration
class TestMaterialAnalytics:
    """Tests for full-mode material analytics."""

    def test_totals_and_breakdown(self, service, seeded):
        """Test aggregates and breakdown for one material."""
        by_id = {m.material_id: m for m in service.get_material_analytics()}
        cem = by_id[seeded["CEM"]]

        assert cem.code == "CEM001"
        assert cem.total_quantity == Decimal("15")
        assert cem.total_cost == Decimal("78")
        assert cem.average_unit_price == Decimal("5.2")
        assert cem.invoice_count == 3
        assert cem.supplier_count == 2
        assert cem.last_purchase_date == date(2024, 2, 5)
        assert cem.work_orders == ["OT-1"]
        assert [p.purchase_date for p in cem.price_evolution] == [
            date(2024, 1, 10), date(2024, 1, 20), date(2024, 2, 5),
        ]
        assert [p.unit_price for p in cem.price_evolution] == [
            Decimal("5"), Decimal("6"), Decimal("5.5"),
        ]
        assert [s.provider_id for s in cem.top_suppliers] == [seeded["ALFA"], seeded["BETA"]]
        assert cem.top_suppliers[0].total_cost == Decimal("72")

    def test_default_sort_is_cost_descending(self, service, seeded):
        """Test the default order."""
        ids = [m.material_id for m in service.get_material_analytics()]
        assert ids == [seeded["CEM"], seeded["YES"], seeded["ARE"], seeded["GRA"]]

    def test_zero_quantity_average_is_zero(self, service, seeded):
        """Test a material bought with zero quantity has a zero average."""
        gra = next(m for m in service.get_material_analytics() if m.material_id == seeded["GRA"])
        assert gra.total_quantity == 0
        assert gra.average_unit_price == 0

    def test_name_sort_ascending(self, service, seeded):
        """Test name sort defaults to ascending."""
        names = [m.name for m in service.get_material_analytics(AnalyticsFilters(sort_by="name"))]
        assert names == ["Arena fina", "Cemento gris", "Grava gruesa", "Yeso blanco"]

    def test_work_order_filter_is_case_insensitive(self, service, seeded):
        """Test work order text matches regardless of case."""
        rows = service.get_material_analytics(AnalyticsFilters(work_order="ot 1"))
        by_id = {m.material_id: m for m in rows}
        assert set(by_id) == {seeded["CEM"], seeded["YES"]}
        assert by_id[seeded["CEM"]].total_quantity == Decimal("14")
        assert by_id[seeded["YES"]].total_quantity == Decimal("3")

    def test_search_and_category_filters(self, service, seeded):
        """Test name search and category substring filters."""
        by_name = service.get_material_analytics(AnalyticsFilters(material_search="CEMENTO"))
        assert [m.material_id for m in by_name] == [seeded["CEM"]]
        by_code = service.get_material_analytics(AnalyticsFilters(material_search="are-001"))
        assert [m.material_id for m in by_code] == [seeded["ARE"]]
        by_category = service.get_material_analytics(AnalyticsFilters(category="arid"))
        assert [m.material_id for m in by_category] == [seeded["ARE"]]

    def test_date_and_supplier_filters(self, service, seeded):
        """Test date range and supplier restrict the items counted."""
        rows = service.get_material_analytics(AnalyticsFilters(start_date=date(2024, 2, 1)))
        by_id = {m.material_id: m for m in rows}
        assert by_id[seeded["CEM"]].total_quantity == Decimal("4")

        rows = service.get_material_analytics(AnalyticsFilters(supplier_id=seeded["GAMMA"]))
        assert [(m.material_id, m.total_quantity) for m in rows] == [(seeded["YES"], Decimal("6"))]

    def test_tenant_isolation(self, service, seeded):
        """Test another tenant's invoices are invisible."""
        cem = next(m for m in service.get_material_analytics() if m.material_id == seeded["CEM"])
        assert cem.total_quantity == Decimal("15")
        other = service.get_material_analytics(AnalyticsFilters(tenant_id="other-tenant"))
        assert len(other) == 1
        assert other[0].total_quantity == Decimal("100")

    def test_unknown_sort_key(self, service, seeded):
        """Test an unknown sort key is rejected."""
        with pytest.raises(ValueError):
            service.get_material_analytics(AnalyticsFilters(sort_by="colour"))

    def test_filter_totals(self, service, seeded):
        """Test headline totals over the whole filtered set."""
        totals = service.get_material_filter_totals()
        assert totals.total_quantity == Decimal("26")
        assert totals.total_cost == Decimal("102")
        assert totals.material_count == 4
        assert totals.supplier_count == 3
        assert totals.average_unit_price == average_price(Decimal("102"), Decimal("26"))


@pytest.mark.integration
class TestMaterialPagination:
    """Paginated mode must agree with full mode."""

    @pytest.mark.parametrize("sort_by", ["cost", "quantity", "last_purchase", "name"])
    @pytest.mark.parametrize("sort_order", ["asc", "desc"])
    @pytest.mark.parametrize("page_size", [1, 2, 3, 5])
    def test_pages_concatenate_to_full_mode(self, service, seeded, sort_by, sort_order, page_size):
        """Test pages are disjoint and concatenate to the full-mode list."""
        filters = AnalyticsFilters(sort_by=sort_by, sort_order=sort_order)
        full = service.get_material_analytics(filters)

        pages = []
        first = service.get_material_analytics_paginated(filters, 1, page_size)
        assert first.total_count == 4
        assert first.total_pages == math.ceil(4 / page_size)
        for page in range(1, first.total_pages + 1):
            pages.extend(service.get_material_analytics_paginated(filters, page, page_size).items)

        assert len({m.material_id for m in pages}) == len(pages)
        assert [m.model_dump() for m in pages] == [m.model_dump() for m in full]

    def test_page_past_end_is_empty(self, service, seeded):
        """Test a page beyond the last one is empty but reports the total."""
        page = service.get_material_analytics_paginated(AnalyticsFilters(), 9, 2)
        assert page.items == []
        assert page.total_count == 4

    def test_page_size_is_capped(self, service, seeded, test_config):
        """Test oversize requests are clamped to the configured maximum."""
        page = service.get_material_analytics_paginated(AnalyticsFilters(), 1, 10_000)
        assert page.page_size == test_config.max_page_size

    def test_paginated_filters(self, service, seeded):
        """Test filters apply to both the count and the page."""
        page = service.get_material_analytics_paginated(AnalyticsFilters(work_order="OT-1"), 1, 10)
        assert page.total_count == 2
        assert {m.material_id for m in page.items} == {seeded["CEM"], seeded["YES"]}


@pytest.mark.integration
class TestSupplierAnalytics:
    """Tests for supplier analytics in both modes."""

    def test_totals(self, service, seeded):
        """Test spend, counts and breakdowns per supplier."""
        by_id = {s.provider_id: s for s in service.get_supplier_analytics()}
        alfa = by_id[seeded["ALFA"]]
        assert alfa.total_spent == Decimal("78")
        assert alfa.invoice_count == 2
        assert alfa.material_count == 2
        assert alfa.work_order_count == 2
        assert alfa.average_invoice_amount == Decimal("39")
        assert alfa.last_invoice_date == date(2024, 2, 5)
        assert [m.material_id for m in alfa.top_materials_by_quantity] == [seeded["CEM"], seeded["ARE"]]
        assert alfa.monthly_spending is None

        beta = by_id[seeded["BETA"]]
        assert beta.total_spent == Decimal("12")
        assert beta.material_count == 3

    def test_default_sort_ties_break_by_id(self, service, seeded):
        """Test equal spend falls back to provider id ascending."""
        ids = [s.provider_id for s in service.get_supplier_analytics()]
        tied = sorted([seeded["BETA"], seeded["GAMMA"]])
        assert ids == [seeded["ALFA"], *tied]

    def test_monthly_breakdown(self, service, seeded):
        """Test monthly spend is grouped by issue month, oldest first."""
        rows = service.get_supplier_analytics(
            AnalyticsFilters(supplier_id=seeded["ALFA"], include_monthly_breakdown=True)
        )
        assert len(rows) == 1
        months = [(m.month, m.total, m.invoice_count) for m in rows[0].monthly_spending]
        assert months == [("2024-01", Decimal("56"), 1), ("2024-02", Decimal("22"), 1)]

    def test_material_filter_selects_invoices(self, service, seeded):
        """Test item-level filters select whole invoices containing a match."""
        rows = service.get_supplier_analytics(AnalyticsFilters(material_id=seeded["CEM"]))
        by_id = {s.provider_id: s for s in rows}
        assert set(by_id) == {seeded["ALFA"], seeded["BETA"]}
        assert by_id[seeded["BETA"]].invoice_count == 1
        assert by_id[seeded["BETA"]].total_spent == Decimal("12")

    def test_tax_id_filter(self, service, seeded):
        """Test tax id filtering accepts any spelling."""
        rows = service.get_supplier_analytics(AnalyticsFilters(tax_id="es-b-33333333"))
        assert [s.provider_id for s in rows] == [seeded["GAMMA"]]

    @pytest.mark.parametrize("sort_by", ["spent", "invoices", "materials", "last_invoice", "name"])
    @pytest.mark.parametrize("sort_order", ["asc", "desc"])
    @pytest.mark.parametrize("page_size", [1, 2])
    def test_pages_concatenate_to_full_mode(self, service, seeded, sort_by, sort_order, page_size):
        """Test supplier pages agree with full mode."""
        filters = AnalyticsFilters(sort_by=sort_by, sort_order=sort_order, include_monthly_breakdown=True)
        full = service.get_supplier_analytics(filters)
        first = service.get_supplier_analytics_paginated(filters, 1, page_size)
        assert first.total_count == 3

        pages = []
        for page in range(1, first.total_pages + 1):
            pages.extend(service.get_supplier_analytics_paginated(filters, page, page_size).items)
        assert [s.model_dump() for s in pages] == [s.model_dump() for s in full]


@pytest.mark.integration
class TestWorkOrdersAndExport:
    """Tests for work order analytics and export rows."""

    def test_work_order_analytics(self, service, seeded):
        """Test spend on a work order regardless of how it was typed."""
        wo = service.get_work_order_analytics("ot 1")
        assert wo.work_order == "ot-1"
        assert wo.item_count == 3
        assert wo.invoice_count == 3
        assert wo.total_cost == Decimal("78")
        assert wo.first_date == date(2024, 1, 10)
        assert wo.last_date == date(2024, 2, 5)
        assert [m.material_id for m in wo.materials] == [seeded["CEM"], seeded["YES"]]

    def test_blank_work_order_rejected(self, service, seeded):
        """Test a blank work order is not treated as 'no work order'."""
        with pytest.raises(ValueError):
            service.get_work_order_analytics("   ")

    def test_export_rows(self, service, seeded):
        """Test export rows are flat and ordered by material name."""
        rows = service.get_export_rows()
        assert len(rows) == 7
        assert [r["material_name"] for r in rows][:2] == ["Arena fina", "Cemento gris"]
        assert rows[0]["total_price"] == Decimal("6")
        assert rows[0]["provider_tax_id"] == ALFA

    def test_dashboard_stats(self, service, seeded):
        """Test headline counts."""
        stats = service.get_dashboard_stats()
        assert stats["invoices"] == 5
        assert stats["providers"] == 3
        assert stats["materials"] == 4
        assert stats["total_spent"] == Decimal("102")
