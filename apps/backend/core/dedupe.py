"""
In-batch duplicate detection.

Exact-key dedup collapses records that share (title, organization,
location) case-insensitively; the first record seen wins.

Similarity scoring is a report for operators. It never removes records.
"""
import re
import logging
from itertools import combinations
from typing import Any, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

SIMILARITY_WEIGHTS = {
    'title': 0.4,
    'organization': 0.3,
    'location': 0.2,
    'description': 0.1,
}

DESCRIPTION_PREFIX = 200

_TOKEN_RE = re.compile(r'\w+', re.UNICODE)


class DedupResult:
    """Unique records plus the duplicates set aside"""

    def __init__(self, unique: List[Dict], duplicates: List[Dict]):
        self.unique = unique
        self.duplicates = duplicates

    def to_dict(self) -> Dict:
        return {
            'unique': len(self.unique),
            'duplicates': len(self.duplicates),
        }


def dedupe_key(record: Dict[str, Any]) -> Tuple[str, str, str]:
    return (
        (record.get('title') or '').strip().lower(),
        (record.get('organization') or '').strip().lower(),
        (record.get('location') or '').strip().lower(),
    )


def deduplicate(records: List[Dict[str, Any]]) -> DedupResult:
    """Collapse records sharing a dedupe key to the first one seen."""
    seen: Set[Tuple[str, str, str]] = set()
    unique = []
    duplicates = []

    for record in records:
        key = dedupe_key(record)
        if key in seen:
            duplicates.append(record)
            continue
        seen.add(key)
        unique.append(record)

    if duplicates:
        logger.debug(f"[dedupe] Collapsed {len(duplicates)} duplicates out of {len(records)} records")
    return DedupResult(unique, duplicates)


def tokens(text: Optional[str]) -> Set[str]:
    if not text:
        return set()
    return set(_TOKEN_RE.findall(text.lower()))


def jaccard(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 1.0
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def similarity(a: Dict[str, Any], b: Dict[str, Any]) -> float:
    """
    Weighted token-set similarity between two records.

    Title 0.4, organization 0.3, location 0.2, first 200 characters of the
    description 0.1. Only factors present on both records count, and the
    score is normalized by the weight of those factors.

    Returns:
        Score in [0, 1]
    """
    score = 0.0
    total_weight = 0.0

    for field, weight in SIMILARITY_WEIGHTS.items():
        left = a.get(field) or ''
        right = b.get(field) or ''
        if field == 'description':
            left = left[:DESCRIPTION_PREFIX]
            right = right[:DESCRIPTION_PREFIX]
        if not left or not right:
            continue
        score += weight * jaccard(tokens(left), tokens(right))
        total_weight += weight

    if total_weight == 0:
        return 0.0
    return score / total_weight


def find_near_duplicates(
    records: List[Dict[str, Any]],
    min_score: float = 0.6,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    """
    Rank record pairs by similarity for operator review.

    Pairs that already share an exact dedupe key are left out since
    deduplicate() handles them.

    Args:
        records: Canonical records
        min_score: Only report pairs scoring at least this much
        limit: Maximum pairs returned

    Returns:
        List of dicts with 'score', 'left', 'right' natural keys, highest first
    """
    pairs = []
    for left, right in combinations(records, 2):
        if dedupe_key(left) == dedupe_key(right):
            continue
        score = similarity(left, right)
        if score >= min_score:
            pairs.append({
                'score': round(score, 4),
                'left': (left.get('source'), left.get('external_id')),
                'right': (right.get('source'), right.get('external_id')),
                'titles': (left.get('title'), right.get('title')),
            })

    pairs.sort(key=lambda p: p['score'], reverse=True)
    return pairs[:limit]
