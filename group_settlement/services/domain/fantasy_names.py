"""
Fantasy Name Allocator.

Generates human-friendly pseudonyms ("Brave Wolf") for diners who join
without choosing a name, and normalizes requested names so uniqueness is
checked case-insensitively.
"""

from __future__ import annotations

import random
import re
from collections.abc import Iterable

from shared.config.settings import settings as default_settings
from shared.utils.exceptions import InvalidNameError

ADJECTIVES: tuple[str, ...] = (
    "Brave", "Swift", "Mighty", "Noble", "Wise", "Bold", "Fierce", "Gentle",
    "Clever", "Strong", "Graceful", "Daring", "Radiant", "Mysterious", "Valiant",
    "Serene", "Cunning", "Majestic", "Spirited", "Elegant", "Fearless", "Brilliant",
    "Charming", "Adventurous", "Loyal", "Enchanted", "Golden", "Silver", "Crimson",
    "Azure", "Emerald", "Violet", "Amber", "Celestial", "Ancient", "Legendary",
    "Mystical", "Ethereal", "Divine", "Cosmic",
)

NOUNS: tuple[str, ...] = (
    "Dragon", "Phoenix", "Griffin", "Unicorn", "Wolf", "Eagle", "Lion", "Tiger",
    "Bear", "Fox", "Raven", "Falcon", "Hawk", "Owl", "Panther", "Leopard", "Jaguar",
    "Lynx", "Stag", "Elk", "Knight", "Warrior", "Mage", "Archer", "Paladin", "Ranger",
    "Bard", "Sage", "Scholar", "Monk", "Star", "Moon", "Sun", "Comet", "Nova",
    "Galaxy", "Nebula", "Cosmos", "Void", "Flame", "Storm", "Thunder", "Lightning",
    "Wind", "Earth", "Stone", "Crystal", "Diamond", "Ruby", "Sapphire",
)

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9 ]+$")
_WHITESPACE = re.compile(r"\s+")


def clean_name(name: str) -> str:
    """Trim and collapse internal whitespace, keeping the display casing."""
    return _WHITESPACE.sub(" ", name).strip()


def name_key(name: str) -> str:
    """Key used for uniqueness: cleaned and case-folded."""
    return clean_name(name).casefold()


def validate_name(name: str, max_length: int | None = None) -> str:
    """
    Validate a requested fantasy name and return its display form.

    ``max_length`` defaults to the configured FANTASY_NAME_MAX_LENGTH.

    Raises:
        InvalidNameError: Empty, too long, or containing anything other
            than letters, digits and spaces.
    """
    if max_length is None:
        max_length = default_settings.fantasy_name_max_length
    cleaned = clean_name(name or "")
    if (
        not cleaned
        or len(cleaned) > max_length
        or not _NAME_PATTERN.match(cleaned)
    ):
        raise InvalidNameError(name)
    return cleaned


def allocate(
    existing_names: Iterable[str],
    rng: random.Random | None = None,
    max_attempts: int | None = None,
) -> str:
    """
    Pick an adjective + noun name not present in ``existing_names``.

    Comparison is case-insensitive. After ``max_attempts`` random draws
    collide, a numeric disambiguator is appended to the last draw
    ("Brave Wolf 2", "Brave Wolf 3", ...), so allocation always succeeds.
    """
    rng = rng or random.Random()
    attempts = max_attempts if max_attempts is not None else default_settings.fantasy_name_max_attempts
    taken = {name_key(n) for n in existing_names}

    candidate = f"{rng.choice(ADJECTIVES)} {rng.choice(NOUNS)}"
    for _ in range(max(1, attempts)):
        if name_key(candidate) not in taken:
            return candidate
        candidate = f"{rng.choice(ADJECTIVES)} {rng.choice(NOUNS)}"

    suffix = 2
    while name_key(f"{candidate} {suffix}") in taken:
        suffix += 1
    return f"{candidate} {suffix}"
