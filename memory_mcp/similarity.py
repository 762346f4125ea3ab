"""
Vector similarity scoring for the memory store
Copyright 2025 Jurden Bruce

Pure functions, no I/O. Vectors are plain lists of floats.
"""

import math
from numbers import Real
from typing import Iterable, List, Optional, Sequence

MAX_EMBEDDING_SIZE = 4096


def _is_finite_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, Real):
        return False
    return math.isfinite(value)


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine similarity over the overlapping prefix of two vectors.

    Component pairs where either side is not a finite number are skipped.
    Returns 0.0 when either vector is missing or empty, or when either
    norm over the counted pairs is zero.
    """
    if not a or not b:
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for ai, bi in zip(a, b):
        if not _is_finite_number(ai) or not _is_finite_number(bi):
            continue
        dot += ai * bi
        norm_a += ai * ai
        norm_b += bi * bi

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / math.sqrt(norm_a * norm_b)


def sanitize_embedding(values: Optional[Iterable]) -> Optional[List[float]]:
    """Drop non-finite components and cap the length at MAX_EMBEDDING_SIZE.

    Returns None when nothing usable is left.
    """
    if values is None or isinstance(values, (str, bytes)):
        return None
    try:
        iterator = iter(values)
    except TypeError:
        return None

    cleaned: List[float] = []
    for value in iterator:
        if not _is_finite_number(value):
            continue
        cleaned.append(float(value))
        if len(cleaned) >= MAX_EMBEDDING_SIZE:
            break
    return cleaned or None
