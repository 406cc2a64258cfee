"""Normalization shared by reference names and address text.

Two strings that differ only in case, diacritics ("Kulón" / "Kulon"),
hyphenation ("Oro-oro" / "Oro oro") or punctuation normalize to the same key.
Geocoder output and user-typed addresses are both run through
`normalize_for_lookup` before they are compared with reference names.
"""

from __future__ import annotations

import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")

# Anything that is not an ASCII letter or digit separates tokens.
_SEPARATOR_RE = re.compile(r"[^0-9a-z]+")

# Administrative prefixes that official names carry but addresses often omit.
# Keyed by level; every prefix ends with a space so we only strip whole words.
_LEVEL_PREFIXES: dict[str, tuple[str, ...]] = {
    "province": ("provinsi ", "propinsi ", "prov. ", "prov "),
    "regency": ("kota ", "kabupaten ", "kab. ", "kab ", "kotamadya "),
    "district": ("kecamatan ", "kec. ", "kec "),
}

# Common abbreviations / English names for provinces, keyed by the normalized
# canonical name. Only province-level aliases live here: regency aliases such
# as "jakarta" would make a province-only address look like a regency hit.
PROVINCE_ALIASES: dict[str, tuple[str, ...]] = {
    "dki jakarta": ("dki", "jakarta", "jakarta raya", "daerah khusus ibukota jakarta"),
    "jawa barat": ("jabar", "west java"),
    "jawa tengah": ("jateng", "central java"),
    "jawa timur": ("jatim", "east java"),
    "di yogyakarta": ("yogyakarta", "daerah istimewa yogyakarta", "diy"),
    "aceh": ("nanggroe aceh darussalam", "daerah istimewa aceh"),
    "sumatera utara": ("sumut", "north sumatra"),
    "sumatera selatan": ("sumsel", "south sumatra"),
    "sumatera barat": ("sumbar", "west sumatra"),
    "kalimantan barat": ("kalbar", "west kalimantan"),
    "kalimantan timur": ("kaltim", "east kalimantan"),
    "kalimantan selatan": ("kalsel", "south kalimantan"),
    "sulawesi selatan": ("sulsel", "south sulawesi"),
    "sulawesi utara": ("sulut", "north sulawesi"),
    "nusa tenggara barat": ("ntb", "west nusa tenggara"),
    "nusa tenggara timur": ("ntt", "east nusa tenggara"),
}


def strip_diacritics(text: str) -> str:
    """Drop combining marks ("é" -> "e") after NFKD decomposition."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_for_lookup(text: str) -> str:
    """Lowercase ASCII tokens separated by single spaces.

        "Oro-oro Ombo"            -> "oro oro ombo"
        "  Kota   Madiun"         -> "kota madiun"
        "Jl. Tunjungan, Genteng"  -> "jl tunjungan genteng"
    """
    folded = strip_diacritics(text).lower()
    return _SEPARATOR_RE.sub(" ", folded).strip()


def strip_level_prefix(level: str, name: str) -> str | None:
    """Return `name` without its administrative prefix, or None if it has none.

    Examples:
        ("regency", "Kota Surabaya")        -> "Surabaya"
        ("district", "Kecamatan Genteng")   -> "Genteng"
        ("province", "Jawa Timur")          -> None
    """
    name = _WHITESPACE_RE.sub(" ", name.strip())
    lowered = name.lower()
    for prefix in _LEVEL_PREFIXES.get(level, ()):
        if lowered.startswith(prefix):
            # Keep original casing after stripping by slicing the original string.
            stripped = name[len(prefix) :].strip()
            return stripped or None
    return None


def generate_surface_variants(level: str, name: str) -> list[str]:
    """Lookup keys the matcher indexes for one reference name.

    Canonical key first, then the unprefixed name ("Kota Surabaya" ->
    "surabaya"), hyphen-free spellings ("Oro-oro" -> "ororo") and, for
    provinces, the alias table ("Jawa Timur" -> "jatim"). No duplicates.
    """
    name = name.strip()
    if not name:
        return []

    spellings = [name]
    unprefixed = strip_level_prefix(level, name)
    if unprefixed:
        spellings.append(unprefixed)
    spellings += [s.replace("-", "") for s in spellings if "-" in s]

    out: list[str] = []
    seen: set[str] = set()
    for spelling in spellings:
        key = normalize_for_lookup(spelling)
        if key and key not in seen:
            seen.add(key)
            out.append(key)

    if level == "province":
        for key in list(out):
            for alias in PROVINCE_ALIASES.get(key, ()):
                if alias not in seen:
                    seen.add(alias)
                    out.append(alias)

    return out
