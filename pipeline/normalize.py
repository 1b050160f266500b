"""
Text normalisation shared by ingestion and analytics.

Material codes, material names, tax identifiers and work orders are
normalised here once so that what is stored and what filters compare
against always go through the same functions.
"""
import hashlib
import re
import unicodedata
from typing import Optional

# Prefixed reference codes found in free text, e.g. "REF: 12-345", "SKU_AB99"
_CODE_PATTERN = re.compile(r"\b(?:REF|COD|ART|MAT|SKU)[-_.:\s]*[A-Z0-9]+\b", re.IGNORECASE)
_CODE_SEPARATORS = re.compile(r"[-_.:\s]+")
_DATE_LIKE_CODE = re.compile(r"^20\d{6}$")
# Anything that is not a letter, digit or whitespace in any script
_NON_WORD = re.compile(r"[^\w\s]|_")

MIN_EXTRACTED_CODE_LENGTH = 4
MIN_SIMILAR_CODE_LENGTH = 6
MIN_STANDARD_CODE_LENGTH = 3
MIN_NAME_CONTAINMENT_LENGTH = 6
MIN_SIGNIFICANT_WORD_LENGTH = 3
MIN_SHARED_WORDS = 2
MAX_SLUG_LENGTH = 45


def strip_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def fold(text: Optional[str]) -> str:
    """Case-fold for comparisons; also registered as an SQL function."""
    return (text or "").casefold()


# ------------------------------------------------------------------
# Material codes
# ------------------------------------------------------------------

def normalize_code(code: Optional[str]) -> str:
    """Uppercase and strip separators. normalize_code(normalize_code(x)) == normalize_code(x)."""
    if not code:
        return ""
    return _CODE_SEPARATORS.sub("", code.upper())


def extract_material_code(name: str, description: Optional[str] = None) -> Optional[str]:
    """
    Pull a prefixed reference code (REF/COD/ART/MAT/SKU) out of free text.

    Returns the normalised code, or None when nothing usable is found.
    """
    text = f"{name or ''} {description or ''}"
    match = _CODE_PATTERN.search(text)
    if not match:
        return None
    code = normalize_code(match.group(0))
    return code if len(code) >= MIN_EXTRACTED_CODE_LENGTH else None


def codes_similar(a: Optional[str], b: Optional[str]) -> bool:
    """Equal after normalisation, or both long enough and one contains the other."""
    na, nb = normalize_code(a), normalize_code(b)
    if not na or not nb:
        return False
    if na == nb:
        return True
    if len(na) >= MIN_SIMILAR_CODE_LENGTH and len(nb) >= MIN_SIMILAR_CODE_LENGTH:
        return na in nb or nb in na
    return False


def is_valid_standard_code(code: Optional[str]) -> bool:
    normalized = normalize_code(code)
    if len(normalized) < MIN_STANDARD_CODE_LENGTH:
        return False
    # Bare YYYYMMDD values are dates the extractor mistook for codes
    return not _DATE_LIKE_CODE.match(normalized)


def slugify_material_name(name: str) -> str:
    slug = strip_accents(name.lower())
    slug = _NON_WORD.sub("", slug).strip()
    slug = re.sub(r"\s+", "-", slug)
    return slug[:MAX_SLUG_LENGTH].strip("-")


def fallback_material_code(name: str) -> str:
    """Stable code for a name with nothing to slug ("!!!" -> "MAT-" + 12 hex digits)."""
    digest = hashlib.sha1(fold(name).strip().encode("utf-8")).hexdigest()
    return f"MAT-{digest[:12].upper()}"


def standard_material_code(name: str, code: Optional[str] = None) -> str:
    """Primary catalog code: the normalised code when usable, else a name slug."""
    if is_valid_standard_code(code):
        return normalize_code(code)
    return slugify_material_name(name) or fallback_material_code(name)


# ------------------------------------------------------------------
# Material names
# ------------------------------------------------------------------

def normalize_name(name: Optional[str]) -> str:
    text = strip_accents((name or "").casefold())
    text = _NON_WORD.sub("", text)
    return re.sub(r"\s+", " ", text).strip()


def significant_words(normalized_name: str) -> set[str]:
    return {w for w in normalized_name.split() if len(w) >= MIN_SIGNIFICANT_WORD_LENGTH}


def names_similar(a: Optional[str], b: Optional[str]) -> bool:
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return False
    if na == nb:
        return True
    if len(na) >= MIN_NAME_CONTAINMENT_LENGTH and len(nb) >= MIN_NAME_CONTAINMENT_LENGTH:
        if na in nb or nb in na:
            return True
    wa, wb = significant_words(na), significant_words(nb)
    if len(wa) >= MIN_SHARED_WORDS and len(wb) >= MIN_SHARED_WORDS:
        return len(wa & wb) >= MIN_SHARED_WORDS
    return False


# ------------------------------------------------------------------
# Filters and tags
# ------------------------------------------------------------------

def normalize_search(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip().casefold()
    return text or None


def normalize_work_order(text: Optional[str]) -> Optional[str]:
    """Trim and join internal whitespace with hyphens ("OT 2024 15" -> "OT-2024-15")."""
    if text is None:
        return None
    text = re.sub(r"\s+", "-", text.strip())
    return text or None


# ------------------------------------------------------------------
# Tax identifiers
# ------------------------------------------------------------------

def normalize_tax_id(value: Optional[str], country_prefix: str = "ES") -> str:
    """
    Canonical form of a tax identifier: uppercase alphanumerics without the
    country prefix ("ES-B12345678", "b-12345678" -> "B12345678").
    """
    if not value:
        return ""
    text = value.strip().upper()
    if country_prefix:
        prefix = re.escape(country_prefix.upper())
        stripped = re.sub(rf"^{prefix}[\s\-_.:]?", "", text)
        if re.sub(r"[^A-Z0-9]", "", stripped):
            text = stripped
    return re.sub(r"[^A-Z0-9]", "", text)


def tax_id_variants(value: Optional[str], country_prefix: str = "ES") -> list[str]:
    """Equivalent spellings of a tax identifier, canonical form first."""
    canonical = normalize_tax_id(value, country_prefix)
    if not canonical:
        return []
    variants = [canonical]
    if re.match(r"^[A-Z]\d{8}$", canonical):            # Company: letter + 8 digits
        variants.append(f"{canonical[0]}-{canonical[1:]}")
    elif re.match(r"^\d{8}[A-Z]$", canonical):          # Individual: 8 digits + letter
        variants.append(f"{canonical[:8]}-{canonical[8]}")
    elif re.match(r"^[XYZ]\d{7}[A-Z]$", canonical):     # Foreign resident
        variants.append(f"{canonical[0]}-{canonical[1:8]}-{canonical[8]}")
    if country_prefix:
        prefix = country_prefix.upper()
        variants += [f"{prefix}{canonical}", f"{prefix}-{canonical}"]
    seen: list[str] = []
    for v in variants:
        if v not in seen:
            seen.append(v)
    return seen
