"""
Name similarity used wherever two receipt strings must be judged "the same".

Chunk merging compares item names found in overlapping bands, the correction
store compares vendor names, and OCR matching compares source text to OCR
lines. All three go through `name_similarity` so threshold behaviour is
consistent and testable in one place.
"""
from difflib import SequenceMatcher
import re

_NON_WORD = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_for_matching(text: str) -> str:
    """Lower-case, drop punctuation and collapse whitespace."""
    if not text:
        return ""
    lowered = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def token_overlap(a: str, b: str) -> float:
    """Jaccard overlap of the word sets of two normalized strings, in [0, 1]."""
    words_a = set(normalize_for_matching(a).split())
    words_b = set(normalize_for_matching(b).split())
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def name_similarity(a: str, b: str) -> float:
    """
    Similarity of two names in [0, 1].

    Both strings are normalized first. The score is the larger of the
    edit-based ratio (difflib's 2*M/T, which tolerates OCR-style character
    slips such as "BANANS" vs "BANANAS") and the word-overlap score (which
    tolerates re-ordered words such as "MILK ORGANIC" vs "ORGANIC MILK").
    Identical normalized strings score 1.0; an empty string scores 0.0
    against anything.
    """
    norm_a = normalize_for_matching(a)
    norm_b = normalize_for_matching(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    ratio = SequenceMatcher(None, norm_a, norm_b).ratio()
    return max(ratio, token_overlap(norm_a, norm_b))


def is_similar(a: str, b: str, threshold: float = 0.75) -> bool:
    return name_similarity(a, b) >= threshold
