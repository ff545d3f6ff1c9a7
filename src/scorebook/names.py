"""
Player name normalization and comparison utilities.

Players are typed in by whoever is keeping score, so the same person
shows up as "Alice", "alice" or " ALICE " across games. Every identity
lookup and uniqueness check runs on the normalized form; the display
form is only for presentation.

Fuzzy comparison is used for one thing only: suggesting guest identities
a newly registered user may want to link. It never decides a match on
its own.
"""

import unicodedata
from typing import Optional

import jellyfish
from rapidfuzz import fuzz


def normalize_name(name: Optional[str]) -> str:
    """
    Normalize a display name into its comparable key.

    Lowercases and strips leading/trailing whitespace. Inner whitespace
    and accents are preserved, so "Zoë" and "Zoe" stay different players.

    Args:
        name: Raw display name (None is treated as empty)

    Returns:
        Normalized name used for lookups and uniqueness checks

    Examples:
        >>> normalize_name(" ALICE ")
        'alice'
        >>> normalize_name("Bob Smith")
        'bob smith'
    """
    if not name:
        return ""
    return name.lower().strip()


def _fold(name: str) -> str:
    """Accent-fold and collapse whitespace; comparison only, never stored."""
    folded = unicodedata.normalize("NFD", normalize_name(name))
    folded = "".join(char for char in folded if unicodedata.category(char) != "Mn")
    return " ".join(folded.split())


def compare_names(name1: str, name2: str) -> float:
    """
    Compare two player names and return a similarity score.

    Takes the best of three algorithms:
    1. Jaro-Winkler: typos and minor variations ("Alise" vs "Alice")
    2. Token sort ratio: word order ("Smith Bob" vs "Bob Smith")
    3. Partial ratio: nicknames contained in a longer name ("Bob" in "Bobby")

    Args:
        name1: First name
        name2: Second name

    Returns:
        Similarity score from 0.0 (no match) to 1.0 (same normalized name)
    """
    n1 = _fold(name1)
    n2 = _fold(name2)

    if n1 == n2:
        return 1.0 if n1 else 0.0

    if not n1 or not n2:
        return 0.0

    jw_score = jellyfish.jaro_winkler_similarity(n1, n2)
    token_sort = fuzz.token_sort_ratio(n1, n2) / 100.0
    partial = fuzz.partial_ratio(n1, n2) / 100.0

    # Very short names make partial_ratio meaningless ("al" is in everything)
    if min(len(n1), len(n2)) < 3:
        partial = 0.0

    return max(jw_score, token_sort, partial)
