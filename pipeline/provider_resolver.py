"""
Provider resolution.

Identifies the invoice's provider by tax identifier, within the tenant:
  1. Canonical tax id exact match (stored tax ids are always canonical)
  2. Equivalent spellings (hyphenated / country-prefixed), for rows that
     predate normalisation
  3. Otherwise a new provider is created

An existing provider gets its name and any contact fields carried by the
invoice refreshed.
"""
import logging
from typing import Optional

from models.catalog import PROVIDER_TYPES, ResolvedProvider
from models.extraction import ProviderInfo
from .database import Transaction
from .errors import ResolutionError
from .normalize import normalize_tax_id, tax_id_variants

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TYPE = "MATERIAL_SUPPLIER"


def _provider_type(raw: Optional[str]) -> str:
    if not raw:
        return DEFAULT_PROVIDER_TYPE
    value = raw.strip().upper().replace("-", "_").replace(" ", "_")
    return value if value in PROVIDER_TYPES else DEFAULT_PROVIDER_TYPE


class ProviderResolver:
    def __init__(self, country_prefix: str = "ES"):
        self.country_prefix = country_prefix

    def resolve(self, tx: Transaction, tenant_id: str, info: ProviderInfo) -> ResolvedProvider:
        tax_id = normalize_tax_id(info.tax_id, self.country_prefix)
        if not tax_id:
            raise ResolutionError(f"Provider {info.name!r} has no usable tax identifier")

        row = tx.find_provider(tenant_id, tax_id_variants(info.tax_id, self.country_prefix))
        if row is not None:
            tx.update_provider_details(
                row["id"], info.name, email=info.email, phone=info.phone, address=info.address,
            )
            logger.debug("Provider matched by tax id: %s -> %s", tax_id, row["name"])
            return ResolvedProvider(
                provider_id=row["id"],
                name=info.name,
                tax_id=row["tax_id"],
                type=row["type"],
            )

        provider_type = _provider_type(info.type)
        provider_id = tx.insert_provider(
            tenant_id,
            info.name,
            tax_id,
            provider_type,
            email=info.email,
            phone=info.phone,
            address=info.address,
        )
        logger.info("Created provider %s (%s)", info.name, tax_id)
        return ResolvedProvider(
            provider_id=provider_id,
            name=info.name,
            tax_id=tax_id,
            type=provider_type,
            created=True,
        )
