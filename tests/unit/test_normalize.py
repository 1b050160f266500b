"""
Unit tests for text normalisation helpers.
"""
import re

import pytest

from pipeline.normalize import (
    codes_similar,
    extract_material_code,
    fold,
    is_valid_standard_code,
    names_similar,
    normalize_code,
    normalize_name,
    normalize_search,
    normalize_tax_id,
    normalize_work_order,
    slugify_material_name,
    standard_material_code,
    tax_id_variants,
)


@pytest.mark.unit
class TestMaterialCodes:
    """Tests for material code normalisation and matching."""

    def test_normalize_code_strips_separators(self):
        """Test that separators are removed and case is upper."""
        assert normalize_code("cem-001") == "CEM001"
        assert normalize_code("REF: 12.345_a") == "REF12345A"
        assert normalize_code(None) == ""

    def test_normalize_code_is_idempotent(self):
        """Test that normalising twice gives the same result."""
        for raw in ["ab-12 34", "REF:99", "x_y.z", ""]:
            once = normalize_code(raw)
            assert normalize_code(once) == once

    def test_extract_code_from_name(self):
        """Test pulling a prefixed code out of free text."""
        assert extract_material_code("Tornillo hexagonal REF: 4455-A") == "REF4455"

    def test_extract_code_from_description(self):
        """Test that the description is searched too."""
        assert extract_material_code("Tornillo", "sku_ab99 caja 100") == "SKUAB99"

    def test_extract_code_none_when_absent(self):
        """Test that text without a prefixed code yields None."""
        assert extract_material_code("Arena fina lavada") is None

    def test_codes_similar_containment_needs_length(self):
        """Test containment only counts when both codes are long enough."""
        assert codes_similar("ABC12345", "ABC1234567")
        assert not codes_similar("ABC12", "ABC123")
        assert codes_similar("abc-12", "ABC12")
        assert codes_similar("REF-123", "ref123")
        assert not codes_similar("REF-123", "COD-999")

    def test_date_like_code_is_not_standard(self):
        """Test that YYYYMMDD values are rejected as catalog codes."""
        assert not is_valid_standard_code("20240315")
        assert is_valid_standard_code("CEM001")
        assert not is_valid_standard_code("AB")

    def test_standard_code_falls_back_to_slug(self):
        """Test the name slug is used when no usable code exists."""
        assert standard_material_code("Cemento Portland", "CEM-001") == "CEM001"
        assert standard_material_code("Cemento Pórtland 25kg", None) == "cemento-portland-25kg"

    def test_non_latin_slug(self):
        """Test letters outside ASCII survive slugging."""
        assert standard_material_code("Τσιμέντο Portland", None) == "τσιμεντο-portland"
        assert slugify_material_name("水泥 42.5") == "水泥-425"

    def test_symbol_only_name_gets_hashed_code(self):
        """Test a name with nothing to slug still yields a stable code."""
        code = standard_material_code("!!!", None)
        assert re.fullmatch(r"MAT-[0-9A-F]{12}", code)
        assert standard_material_code(" !!! ", None) == code
        assert standard_material_code("???", None) != code

    def test_slug_is_truncated(self):
        """Test that slugs never exceed the maximum length."""
        slug = slugify_material_name("palabra " * 20)
        assert len(slug) <= 45
        assert not slug.endswith("-")


@pytest.mark.unit
class TestMaterialNames:
    """Tests for material name normalisation and similarity."""

    def test_normalize_name(self):
        """Test accents, case and punctuation are removed."""
        assert normalize_name("  Hormigón  H-25/B ") == "hormigon h25b"
        assert normalize_name("Τσιμέντο_Γκρι") == "τσιμεντογκρι"
        assert normalize_name("!!!") == ""

    def test_exact_names_similar(self):
        """Test equal names after normalisation are similar."""
        assert names_similar("Arena Fina", "arena  fina")

    def test_containment_similar(self):
        """Test one long name containing the other is similar."""
        assert names_similar("Cemento Portland", "Cemento Portland 25kg saco")

    def test_shared_words_similar(self):
        """Test two shared significant words make names similar."""
        assert names_similar("Ladrillo hueco doble", "Ladrillo doble rojo")

    def test_unrelated_names_not_similar(self):
        """Test names with one shared word are not similar."""
        assert not names_similar("Ladrillo hueco", "Ladrillo macizo")


@pytest.mark.unit
class TestFiltersAndTaxIds:
    """Tests for filter text and tax identifier normalisation."""

    def test_fold(self):
        """Test casefold handles None and special characters."""
        assert fold(None) == ""
        assert fold("STRASSE") == fold("straße")

    def test_normalize_search(self):
        """Test search text is trimmed and folded; blank becomes None."""
        assert normalize_search("  Cemento ") == "cemento"
        assert normalize_search("   ") is None

    def test_normalize_work_order(self):
        """Test internal whitespace becomes hyphens and case is kept."""
        assert normalize_work_order(" OT 2024  15 ") == "OT-2024-15"
        assert normalize_work_order("  ") is None

    def test_normalize_tax_id_strips_prefix_and_separators(self):
        """Test country prefix and separators are removed."""
        assert normalize_tax_id("ES-B12345678") == "B12345678"
        assert normalize_tax_id("b-12345678") == "B12345678"
        assert normalize_tax_id(" 12345678-z ") == "12345678Z"
        assert normalize_tax_id("") == ""

    def test_tax_id_variants(self):
        """Test equivalent spellings start with the canonical form."""
        variants = tax_id_variants("B12345678")
        assert variants[0] == "B12345678"
        assert "B-12345678" in variants
        assert "ESB12345678" in variants
        assert len(variants) == len(set(variants))
