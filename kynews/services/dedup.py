"""
Near-duplicate detection for wire stories that several outlets run under almost the same
headline. Each item gets a 16-value MinHash signature over its title and the start of its
summary; an incoming item whose estimated Jaccard similarity with a recent item reaches the
threshold is flagged as a duplicate of it. Duplicates are kept, only marked.
"""

from __future__ import annotations

import re
from typing import FrozenSet, Iterable, List, Sequence, Tuple

NUM_HASHES = 16
MAX_INT = 0x7FFFFFFF
DUPLICATE_THRESHOLD = 0.72
LOOKBACK_HOURS = 48
SUMMARY_CHARS = 200

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_SEEDS = tuple(((index + 1) * 0x9E3779B9) & MAX_INT for index in range(NUM_HASHES))

NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")

STOPWORDS = frozenset(
    """
    a an the and or but in on at to for of with by from up about into through during including
    until against among throughout despite towards upon concerning is are was were be been being
    have has had do does did will would could should may might shall can need dare ought used it
    its this that these those i we you he she they what which who whom whose when where why how
    all both each few more most other some such than then as if just over also after before while
    says said say new one two three four five six seven eight not no nor so yet either neither
    every any
    """.split()
)


def tokenize(text: str | None) -> FrozenSet[str]:
    """Lowercased alphanumeric tokens longer than two characters, stopwords removed."""
    cleaned = NON_ALNUM_RE.sub(" ", (text or "").lower())
    return frozenset(token for token in cleaned.split() if len(token) > 2 and token not in STOPWORDS)


def _hash_token(token: str, seed: int) -> int:
    value = (seed ^ _FNV_OFFSET) & 0xFFFFFFFF
    for char in token:
        value ^= ord(char)
        value = (value * _FNV_PRIME) & 0xFFFFFFFF
    return value & MAX_INT


def min_hash(tokens: Iterable[str]) -> List[int]:
    signature = [MAX_INT] * NUM_HASHES
    for token in tokens:
        for index, seed in enumerate(_SEEDS):
            value = _hash_token(token, seed)
            if value < signature[index]:
                signature[index] = value
    return signature


def encode_signature(signature: Sequence[int]) -> str:
    return "".join(f"{value:08x}" for value in signature)


def decode_signature(encoded: str) -> List[int]:
    if not encoded or len(encoded) % 8:
        raise ValueError(f"Malformed signature {encoded!r}")
    return [int(encoded[offset : offset + 8], 16) for offset in range(0, len(encoded), 8)]


def jaccard_estimate(first: Sequence[int], second: Sequence[int]) -> float:
    if not first or len(first) != len(second):
        return 0.0
    matches = sum(1 for left, right in zip(first, second) if left == right)
    return matches / len(first)


def article_signature(title: str | None, summary: str | None = None) -> str | None:
    """
    Encoded signature of the title plus the first 200 characters of the summary, or None when
    no meaningful tokens remain (all-stopword headlines would otherwise all match each other).
    """
    tokens = tokenize(f"{title or ''} {(summary or '')[:SUMMARY_CHARS]}")
    if not tokens:
        return None
    return encode_signature(min_hash(tokens))


def find_duplicate(
    signature: str,
    candidates: Iterable[Tuple[str, str]],
    threshold: float = DUPLICATE_THRESHOLD,
) -> Tuple[str | None, float]:
    """
    Best match among `(item_id, encoded_signature)` candidates. Returns the matching id when
    the similarity reaches `threshold`, else None, along with the best similarity seen.
    Candidates with unreadable signatures are ignored.
    """
    incoming = decode_signature(signature)
    best_id: str | None = None
    best_similarity = 0.0
    for item_id, encoded in candidates:
        try:
            similarity = jaccard_estimate(incoming, decode_signature(encoded))
        except ValueError:
            continue
        if similarity > best_similarity:
            best_id, best_similarity = item_id, similarity
    if best_similarity >= threshold:
        return best_id, best_similarity
    return None, best_similarity
