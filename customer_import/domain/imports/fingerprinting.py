import hashlib
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple


def normalize_column_name(name: str) -> str:
    """Normalize column name: lowercase, alphanumeric only."""
    if not name:
        return ""
    return re.sub(r'[^a-z0-9]', '', str(name).lower())


def calculate_fingerprint(columns: Iterable[str]) -> Tuple[str, List[str]]:
    """
    Calculate a deterministic fingerprint for a header set.

    Column order and cosmetic differences (case, spacing, punctuation) do not
    change the fingerprint. Returns (fingerprint_hash, normalized_sorted_columns).
    """
    normalized = [normalize_column_name(c) for c in columns if c]
    normalized = [n for n in normalized if n]
    normalized.sort()

    content = "|".join(normalized)
    fingerprint_hash = hashlib.sha256(content.encode('utf-8')).hexdigest()

    return fingerprint_hash, normalized


def calculate_jaccard_similarity(set1: set, set2: set) -> float:
    """Calculate Jaccard similarity between two sets."""
    if not set1 and not set2:
        return 1.0
    if not set1 or not set2:
        return 0.0

    intersection = len(set1.intersection(set2))
    union = len(set1.union(set2))

    return intersection / union if union > 0 else 0.0


def find_matching_header_set(
    columns: Iterable[str],
    candidates: Iterable[Tuple[Any, str, Iterable[str]]],
    threshold: float = 0.8,
) -> Optional[Dict[str, Any]]:
    """
    Pick the candidate header set that best matches ``columns``.

    ``candidates`` yields ``(key, fingerprint, source_columns)``. An identical
    fingerprint wins outright; otherwise the highest Jaccard similarity at or
    above ``threshold`` is returned.

    Returns:
        Dict with keys: 'key', 'similarity', 'match_type' ('exact' or 'loose')
        or None if nothing matches.
    """
    target_hash, target_normalized = calculate_fingerprint(columns)
    if not target_normalized:
        return None
    target_set = set(target_normalized)

    best_match = None
    best_score = 0.0
    for key, fingerprint, source_columns in candidates:
        if fingerprint == target_hash:
            return {"key": key, "similarity": 1.0, "match_type": "exact"}
        _, normalized = calculate_fingerprint(source_columns or [])
        score = calculate_jaccard_similarity(target_set, set(normalized))
        if score > best_score:
            best_match, best_score = key, score

    if best_match is not None and best_score >= threshold:
        return {"key": best_match, "similarity": best_score, "match_type": "loose"}
    return None
