"""
Integration tests for provider and material resolution.
"""
import pytest

from models.extraction import ProviderInfo
from pipeline.errors import ResolutionError
from pipeline.material_resolver import MaterialResolver
from pipeline.provider_resolver import ProviderResolver

TENANT = "test-tenant"


@pytest.mark.integration
class TestProviderResolver:
    """Tests for ProviderResolver against a real store."""

    def test_creates_then_matches_equivalent_tax_ids(self, test_db):
        """Test prefixed and hyphenated spellings resolve to one provider."""
        resolver = ProviderResolver("ES")
        with test_db.transaction() as tx:
            first = resolver.resolve(tx, TENANT, ProviderInfo(name="Garcia SL", tax_id="B12345678"))
            second = resolver.resolve(tx, TENANT, ProviderInfo(name="Garcia SL", tax_id="ES-B12345678"))
            third = resolver.resolve(tx, TENANT, ProviderInfo(name="Garcia SL", tax_id="b-1234 5678"))

        assert first.created
        assert not second.created and not third.created
        assert first.provider_id == second.provider_id == third.provider_id
        assert first.tax_id == "B12345678"

    def test_matches_legacy_unnormalised_row(self, test_db):
        """Test a stored hyphenated tax id is still found."""
        with test_db.transaction() as tx:
            legacy_id = tx.insert_provider(TENANT, "Legacy SA", "A-87654321", "MATERIAL_SUPPLIER")
            resolved = ProviderResolver().resolve(tx, TENANT, ProviderInfo(name="Legacy SA", tax_id="A87654321"))
        assert resolved.provider_id == legacy_id

    def test_contact_fields_are_kept_when_missing(self, test_db):
        """Test an invoice without contact data does not erase stored data."""
        resolver = ProviderResolver()
        with test_db.transaction() as tx:
            created = resolver.resolve(
                tx, TENANT, ProviderInfo(name="Garcia SL", tax_id="B12345678", email="a@garcia.example")
            )
            resolver.resolve(tx, TENANT, ProviderInfo(name="Garcia S.L.", tax_id="B12345678"))

        provider = test_db.get_provider(created.provider_id)
        assert provider["email"] == "a@garcia.example"
        assert provider["name"] == "Garcia S.L."

    def test_tenants_are_isolated(self, test_db):
        """Test the same tax id in two tenants gives two providers."""
        resolver = ProviderResolver()
        with test_db.transaction() as tx:
            a = resolver.resolve(tx, "tenant-a", ProviderInfo(name="X", tax_id="B12345678"))
            b = resolver.resolve(tx, "tenant-b", ProviderInfo(name="X", tax_id="B12345678"))
        assert a.provider_id != b.provider_id

    def test_unknown_type_defaults(self, test_db):
        """Test unrecognised provider types fall back to material supplier."""
        with test_db.transaction() as tx:
            rental = ProviderResolver().resolve(
                tx, TENANT, ProviderInfo(name="Gruas", tax_id="B11111111", type="machinery rental")
            )
            other = ProviderResolver().resolve(
                tx, TENANT, ProviderInfo(name="Otro", tax_id="B22222222", type="catering")
            )
        assert rental.type == "MACHINERY_RENTAL"
        assert other.type == "MATERIAL_SUPPLIER"

    def test_blank_tax_id_rejected(self, test_db):
        """Test a tax id with no usable characters is a resolution error."""
        with pytest.raises(ResolutionError):
            with test_db.transaction() as tx:
                ProviderResolver().resolve(tx, TENANT, ProviderInfo(name="X", tax_id="--"))


@pytest.mark.integration
class TestMaterialResolver:
    """Tests for MaterialResolver against a real store."""

    def test_exact_code_match(self, test_db):
        """Test the same code under a different name is the same material."""
        resolver = MaterialResolver()
        with test_db.transaction() as tx:
            first = resolver.resolve(tx, TENANT, "Cemento gris", code="CEM-001")
            second = resolver.resolve(tx, TENANT, "Saco cemento 25kg", code="cem001")
        assert first.created
        assert second.match_method == "code_exact"
        assert second.material_id == first.material_id

    def test_similar_code_match_records_alternative(self, test_db):
        """Test a containing code matches and is remembered as an alternative."""
        resolver = MaterialResolver()
        with test_db.transaction() as tx:
            first = resolver.resolve(tx, TENANT, "Perfil acero", code="ABC12345")
            similar = resolver.resolve(tx, TENANT, "Perfil acero galvanizado", code="ABC1234567")
            again = resolver.resolve(tx, TENANT, "Otro nombre", code="ABC1234567")

        assert similar.match_method == "code_similar"
        assert similar.material_id == first.material_id
        assert again.match_method == "code_exact"
        assert again.material_id == first.material_id

    def test_code_extracted_from_name(self, test_db):
        """Test a prefixed code in the name is used for matching."""
        resolver = MaterialResolver()
        with test_db.transaction() as tx:
            first = resolver.resolve(tx, TENANT, "Tornillo REF: 4455")
            second = resolver.resolve(tx, TENANT, "Tornillos caja", description="ref 4455")
        assert first.code == "REF4455"
        assert second.material_id == first.material_id

    def test_name_match_without_code(self, test_db):
        """Test a contained name resolves to the existing material."""
        resolver = MaterialResolver()
        with test_db.transaction() as tx:
            first = resolver.resolve(tx, TENANT, "Arena fina lavada")
            second = resolver.resolve(tx, TENANT, "Arena fina lavada 0-4")
        assert first.code == "arena-fina-lavada"
        assert second.match_method == "name"
        assert second.material_id == first.material_id

    def test_name_match_prefers_best_score(self, test_db):
        """Test the closest of several name candidates wins."""
        resolver = MaterialResolver()
        with test_db.transaction() as tx:
            older = resolver.resolve(tx, TENANT, "Ladrillo macizo rojo")
            closer = resolver.resolve(tx, TENANT, "Ladrillo hueco doble")
            match = resolver.resolve(tx, TENANT, "Ladrillo hueco doble rojo")
        assert older.material_id != closer.material_id
        assert match.match_method == "name"
        assert match.material_id == closer.material_id

    def test_non_latin_name(self, test_db):
        """Test a Greek name gets a slug code and is matched again by name."""
        resolver = MaterialResolver()
        with test_db.transaction() as tx:
            first = resolver.resolve(tx, TENANT, "Τσιμέντο Portland")
            second = resolver.resolve(tx, TENANT, "ΤΣΙΜΈΝΤΟ PORTLAND")
        assert first.created
        assert first.code == "τσιμεντο-portland"
        assert second.match_method == "name"
        assert second.material_id == first.material_id

    def test_symbol_only_name_gets_stable_code(self, test_db):
        """Test a name with no letters or digits is created once and then reused."""
        resolver = MaterialResolver()
        with test_db.transaction() as tx:
            first = resolver.resolve(tx, TENANT, "!!!")
            second = resolver.resolve(tx, TENANT, "!!!")
            other = resolver.resolve(tx, TENANT, "???")
        assert first.created
        assert first.code.startswith("MAT-")
        assert not second.created
        assert second.material_id == first.material_id
        assert other.material_id != first.material_id

    def test_create_race_is_retried_once(self, test_db, monkeypatch):
        """Test a unique-code conflict re-resolves to the existing material."""
        resolver = MaterialResolver()
        with test_db.transaction() as tx:
            existing = resolver.resolve(tx, TENANT, "Cemento gris", code="CEM-001")

        real_find = MaterialResolver.find
        calls = {"n": 0}

        def stale_find(self, *args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                return None    # the concurrent insert is not visible yet
            return real_find(self, *args, **kwargs)

        monkeypatch.setattr(MaterialResolver, "find", stale_find)
        with test_db.transaction() as tx:
            resolved = resolver.resolve(tx, TENANT, "Cemento gris", code="CEM-001")

        assert calls["n"] == 2
        assert resolved.material_id == existing.material_id
        assert not resolved.created
        rows = test_db.fetch_all("SELECT id FROM materials WHERE code = 'CEM001'")
        assert len(rows) == 1
