"""Brand name matching used to verify mentions against the raw answer text."""

from __future__ import annotations

import re
from functools import lru_cache

_CORPORATE_SUFFIXES = re.compile(
    r"[,\s]+(inc\.?|llc|ltd\.?|limited|corp\.?|corporation|co\.?|gmbh|plc|s\.a\.|ag)$",
    re.IGNORECASE,
)


def brand_variations(name: str) -> list[str]:
    """Spellings under which a brand may appear in an answer.

    "Perimeter 81, Inc." -> ["Perimeter 81, Inc.", "Perimeter 81", "Perimeter81"]
    """
    name = name.strip()
    if not name:
        return []

    variations = [name]
    base = _CORPORATE_SUFFIXES.sub("", name).strip()
    if base and base not in variations:
        variations.append(base)
    joined = re.sub(r"\s+", "", base)
    if len(joined) >= 3 and joined not in variations:
        variations.append(joined)
    return variations


@lru_cache(maxsize=1024)
def _brand_pattern(name: str) -> re.Pattern[str] | None:
    variations = brand_variations(name)
    if not variations:
        return None
    alternatives = "|".join(re.escape(v) for v in sorted(variations, key=len, reverse=True))
    # Lookarounds instead of \b so names ending in punctuation ("C++", "Inc.") still match
    return re.compile(r"(?<!\w)(?:" + alternatives + r")(?!\w)", re.IGNORECASE)


def text_contains_brand(text: str, name: str) -> bool:
    """Whole-word, case-insensitive search for a brand or any of its variations."""
    if not text:
        return False
    pattern = _brand_pattern(name)
    return bool(pattern and pattern.search(text))


def match_registry_name(candidate: str, registry_names: list[str]) -> str | None:
    """Return the registry's canonical spelling for ``candidate``, or None if unregistered."""
    wanted = candidate.strip().casefold()
    if not wanted:
        return None
    for name in registry_names:
        if name.strip().casefold() == wanted:
            return name
    for name in registry_names:
        if any(v.casefold() == wanted for v in brand_variations(name)):
            return name
    return None
