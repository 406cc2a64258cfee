"""Strict validation of Indonesian administrative codes.

Kemendagri codes nest by prefix:

    province  "35"      (2 digits, 11..94)
    regency   "3578"    (province code + 2 digits, 01..99)
    district  "357805"  (regency code + 2 digits, 01..99)

Many published datasets write them with dots ("35.78.05"). `canonical_code`
strips those before validation.
"""

from __future__ import annotations

import re

_PROVINCE_RE = re.compile(r"^\d{2}$")
_REGENCY_RE = re.compile(r"^\d{4}$")
_DISTRICT_RE = re.compile(r"^\d{6}$")

PROVINCE = "province"
REGENCY = "regency"
DISTRICT = "district"


def canonical_code(code: str) -> str:
    """Strip whitespace and dot separators ("35.78.05" -> "357805")."""
    return code.strip().replace(".", "")


def is_valid_province_code(code: str | None) -> bool:
    if not code or not _PROVINCE_RE.match(code):
        return False
    return 11 <= int(code) <= 94


def is_valid_regency_code(code: str | None) -> bool:
    if not code or not _REGENCY_RE.match(code):
        return False
    if not is_valid_province_code(code[:2]):
        return False
    return 1 <= int(code[2:]) <= 99


def is_valid_district_code(code: str | None) -> bool:
    if not code or not _DISTRICT_RE.match(code):
        return False
    if not is_valid_regency_code(code[:4]):
        return False
    return 1 <= int(code[4:]) <= 99


def is_valid_code(level: str, code: str | None) -> bool:
    """Validate `code` for the given level name."""
    if level == PROVINCE:
        return is_valid_province_code(code)
    if level == REGENCY:
        return is_valid_regency_code(code)
    if level == DISTRICT:
        return is_valid_district_code(code)
    raise ValueError(f"Unknown administrative level: {level!r}")


def is_valid_hierarchy(
    province_code: str, regency_code: str, district_code: str
) -> bool:
    """Return True if the three codes form a structurally consistent path."""
    if not (
        is_valid_province_code(province_code)
        and is_valid_regency_code(regency_code)
        and is_valid_district_code(district_code)
    ):
        return False
    return regency_code.startswith(province_code) and district_code.startswith(
        regency_code
    )


def is_structural_child(parent_code: str, child_code: str, child_level: str) -> bool:
    """Fallback parentage check used when no option list is loaded yet."""
    return is_valid_code(child_level, child_code) and child_code.startswith(
        parent_code
    )


def level_of(code: str | None) -> str | None:
    """Infer the administrative level from a code, or None if invalid."""
    if is_valid_province_code(code):
        return PROVINCE
    if is_valid_regency_code(code):
        return REGENCY
    if is_valid_district_code(code):
        return DISTRICT
    return None
