"""
Vector similarity primitives for SecondBrain Memory System
Copyright 2025 Jurden Bruce
"""

from numbers import Real
from typing import Any, Sequence

import numpy as np


class VectorDimensionError(ValueError):
    """Raised when two vectors can't be compared (length mismatch or empty)"""


def is_valid_vector(vector: Any) -> bool:
    """Check a stored vector is usable for ranking

    A vector is valid when it is a non-empty list/tuple of real numbers.
    Booleans are rejected even though they subclass int.
    """
    if not isinstance(vector, (list, tuple)) or len(vector) == 0:
        return False
    return all(isinstance(v, Real) and not isinstance(v, bool) for v in vector)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors

    Zero vectors are not special-cased: a zero norm produces nan, so callers
    must filter invalid vectors first.
    """
    if len(a) != len(b):
        raise VectorDimensionError(f"Vectors must have the same length ({len(a)} != {len(b)})")
    if len(a) == 0:
        raise VectorDimensionError("Vectors must not be empty")

    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)

    with np.errstate(divide="ignore", invalid="ignore"):
        result = np.dot(vec_a, vec_b) / (np.linalg.norm(vec_a) * np.linalg.norm(vec_b))
    return float(result)
