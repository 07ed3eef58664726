"""
Text features for near-duplicate detection: tokens, 64-bit simhash and Jaccard.
"""

import re
from typing import Iterable, List, Set

from feed_pipeline.constants import STOP_WORDS

FNV_PRIME_32 = 0x01000193
FNV_OFFSET_32 = 0x811C9DC5
HIGH_HALF_SEED = 0x01000193
MASK_32 = 0xFFFFFFFF

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def tokenize(text: str) -> List[str]:
    """Lowercase, strip punctuation and drop stop words and 1-char tokens."""
    if not text:
        return []
    cleaned = _NON_ALNUM.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) > 1 and t not in STOP_WORDS]


def fnv1a_32(token: str, seed: int = FNV_OFFSET_32) -> int:
    h = seed
    for byte in token.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME_32) & MASK_32
    return h


def hash64(token: str) -> int:
    """Two differently seeded 32-bit FNV-1a hashes combined into 64 bits."""
    low = fnv1a_32(token, FNV_OFFSET_32)
    high = fnv1a_32(token, HIGH_HALF_SEED)
    return (high << 32) | low


def simhash(text: str) -> int:
    """64-bit simhash of the text's tokens. Empty text hashes to 0."""
    tokens = tokenize(text)
    if not tokens:
        return 0

    votes = [0] * 64
    for token in tokens:
        h = hash64(token)
        for bit in range(64):
            if (h >> bit) & 1:
                votes[bit] += 1
            else:
                votes[bit] -= 1

    result = 0
    for bit in range(64):
        if votes[bit] > 0:
            result |= 1 << bit
    return result


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard similarity of two token collections.

    Two empty collections score 1.0; exactly one empty scores 0.0.
    """
    set_a: Set[str] = set(a)
    set_b: Set[str] = set(b)
    if not set_a and not set_b:
        return 1.0
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)
