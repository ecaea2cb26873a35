"""Vector similarity scoring."""

from typing import Sequence, Union

import numpy as np

from .errors import DimensionMismatch

Vector = Union[Sequence[float], np.ndarray]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """
    Cosine similarity between two vectors, in [-1, 1].

    Returns 0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatch: If the vectors differ in length
    """
    vec_a = np.asarray(a, dtype=np.float64).ravel()
    vec_b = np.asarray(b, dtype=np.float64).ravel()

    if vec_a.shape != vec_b.shape:
        raise DimensionMismatch(
            f"Vectors must have same length (got {vec_a.size} and {vec_b.size})"
        )

    denominator = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if denominator == 0:
        return 0.0

    return float(np.dot(vec_a, vec_b) / denominator)
