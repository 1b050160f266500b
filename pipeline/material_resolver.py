"""
Material resolution.

Maps a free-text line item (name, description, optional code) onto a
catalog material, trying strategies in priority order within the tenant:
  1. Code exact match        (primary, reference or alternative code)
  2. Code similar match      (both >= 6 chars, one contains the other)
  3. Name match              (normalised name equal / contained, or two
                              shared significant words; ranked with rapidfuzz),
                              then the code a new material would be given
  4. Create a new material

Resolution reads then writes, so it must run inside the invoice's
transaction. Concurrent batch jobs can still race to create the same
material; the (tenant, code) unique index turns that into an IntegrityError,
which is retried exactly once by re-resolving against the now-visible row.
"""
import logging
import sqlite3
from typing import Optional

from rapidfuzz import fuzz

from models.catalog import ResolvedMaterial
from .database import Transaction
from .errors import IntegrityViolation, ResolutionError
from .normalize import (
    MIN_SIMILAR_CODE_LENGTH,
    codes_similar,
    extract_material_code,
    names_similar,
    normalize_code,
    normalize_name,
    significant_words,
    standard_material_code,
)

logger = logging.getLogger(__name__)


class MaterialResolver:
    """
    Resolve or create catalog materials.

    Args:
        name_match_min_score: rapidfuzz token_sort_ratio floor (0-100) for a
            name candidate to be accepted. 0 accepts every candidate the
            name rules already matched.
    """

    def __init__(self, name_match_min_score: int = 0):
        self.name_match_min_score = name_match_min_score

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(
        self,
        tx: Transaction,
        tenant_id: str,
        name: str,
        description: Optional[str] = None,
        code: Optional[str] = None,
        category: Optional[str] = None,
        unit: Optional[str] = None,
    ) -> ResolvedMaterial:
        normalized = normalize_code(code) or extract_material_code(name, description)
        normalized = normalized or None

        try:
            return self._resolve_or_create(tx, tenant_id, name, normalized, category, unit)
        except IntegrityViolation as first:
            logger.warning("Material create raced (%s); retrying resolution once", first)
        try:
            return self._resolve_or_create(tx, tenant_id, name, normalized, category, unit)
        except IntegrityViolation as second:
            raise ResolutionError(
                f"Could not resolve material {name!r} after retry: {second}"
            ) from second

    def find(
        self,
        tx: Transaction,
        tenant_id: str,
        name: str,
        code: Optional[str] = None,
    ) -> Optional[ResolvedMaterial]:
        """Lookup only; returns None when no existing material matches."""
        if code:
            match = self._match_code_exact(tx, tenant_id, code) or self._match_code_similar(
                tx, tenant_id, code
            )
            if match:
                return match
        return self._match_name(tx, tenant_id, name) or self._match_derived_code(
            tx, tenant_id, name, code
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve_or_create(
        self,
        tx: Transaction,
        tenant_id: str,
        name: str,
        code: Optional[str],
        category: Optional[str],
        unit: Optional[str],
    ) -> ResolvedMaterial:
        match = self.find(tx, tenant_id, name, code)
        if match:
            if code and match.match_method != "code_exact":
                if tx.add_alternative_code(match.material_id, code):
                    logger.debug("Recorded alternative code %s for %s", code, match.code)
            return match
        return self._create(tx, tenant_id, name, code, category, unit)

    def _match_code_exact(self, tx: Transaction, tenant_id: str, code: str) -> Optional[ResolvedMaterial]:
        rows = tx.find_materials_by_code(tenant_id, code)
        if not rows:
            return None
        row = rows[0]
        logger.debug("Material matched by code: %s -> %s", code, row["name"])
        return ResolvedMaterial(
            material_id=row["id"], code=row["code"], name=row["name"], match_method="code_exact",
        )

    def _match_code_similar(self, tx: Transaction, tenant_id: str, code: str) -> Optional[ResolvedMaterial]:
        if len(code) < MIN_SIMILAR_CODE_LENGTH:
            return None
        rows = tx.find_materials_with_overlapping_code(tenant_id, code, MIN_SIMILAR_CODE_LENGTH)
        candidates: dict[str, object] = {}
        for row in rows:
            if row["id"] not in candidates and codes_similar(code, row["matched_code"]):
                candidates[row["id"]] = row
        if not candidates:
            return None
        # Rows arrive oldest first; the oldest similar material wins
        row = next(iter(candidates.values()))
        if len(candidates) > 1:
            logger.warning(
                "Code %s is similar to %d materials; using oldest (%s)",
                code, len(candidates), row["code"],
            )
        logger.info("Material matched by similar code: %s -> %s", code, row["code"])
        return ResolvedMaterial(
            material_id=row["id"], code=row["code"], name=row["name"], match_method="code_similar",
        )

    def _match_name(self, tx: Transaction, tenant_id: str, name: str) -> Optional[ResolvedMaterial]:
        normalized = normalize_name(name)
        if not normalized:
            return None
        words = sorted(significant_words(normalized))
        rows = tx.find_materials_by_name_terms(tenant_id, normalized, words)

        best_score = -1.0
        best_row = None
        for row in rows:
            if not names_similar(normalized, row["normalized_name"]):
                continue
            if row["normalized_name"] == normalized:
                best_row, best_score = row, 100.0
                break
            score = fuzz.token_sort_ratio(normalized, row["normalized_name"])
            # Strictly greater keeps the oldest row on ties
            if score > best_score:
                best_score = score
                best_row = row

        if best_row is None or best_score < self.name_match_min_score:
            return None
        logger.info(
            "Material matched by name: '%s' -> '%s' (score=%d)",
            name, best_row["name"], best_score,
        )
        return ResolvedMaterial(
            material_id=best_row["id"], code=best_row["code"], name=best_row["name"],
            match_method="name",
        )

    def _match_derived_code(
        self, tx: Transaction, tenant_id: str, name: str, code: Optional[str]
    ) -> Optional[ResolvedMaterial]:
        """Match on the code _create would assign, for names the name rules cannot compare."""
        derived = standard_material_code(name, code)
        if derived == code:
            return None
        rows = tx.find_materials_by_code(tenant_id, derived)
        if not rows:
            return None
        row = rows[0]
        logger.debug("Material matched by derived code: %s -> %s", derived, row["name"])
        return ResolvedMaterial(
            material_id=row["id"], code=row["code"], name=row["name"], match_method="name",
        )

    def _create(
        self,
        tx: Transaction,
        tenant_id: str,
        name: str,
        code: Optional[str],
        category: Optional[str],
        unit: Optional[str],
    ) -> ResolvedMaterial:
        primary_code = standard_material_code(name, code)
        try:
            with tx.savepoint():
                material_id = tx.insert_material(
                    tenant_id,
                    primary_code,
                    name,
                    normalize_name(name),
                    reference_code=code,
                    category=category,
                    unit=unit,
                )
        except sqlite3.IntegrityError as e:
            raise IntegrityViolation(f"material code {primary_code!r} already exists: {e}") from e
        logger.info("Created material %s (%s)", name, primary_code)
        return ResolvedMaterial(
            material_id=material_id, code=primary_code, name=name, match_method="created",
            created=True,
        )
