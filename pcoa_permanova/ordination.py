"""
Principal Coordinates Analysis (classical metric multidimensional scaling).
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple, Union

import numpy as np
import pandas as pd
from scipy import linalg

from .dissimilarity import DissimilarityMatrix
from .errors import InvalidInputError, NumericalError

# Set up module-level logger
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Coordinates:
    """Sample coordinates on the leading principal coordinate axes."""

    sample_ids: Tuple[str, ...]
    axes: np.ndarray  # shape (n_samples, num_axes)
    eigenvalues: np.ndarray  # all n signed eigenvalues, descending
    variance_explained: np.ndarray  # one fraction per kept axis

    def __post_init__(self):
        for name in ('axes', 'eigenvalues', 'variance_explained'):
            array = np.array(getattr(self, name), dtype=float)
            array.flags.writeable = False
            object.__setattr__(self, name, array)
        object.__setattr__(self, 'sample_ids', tuple(self.sample_ids))

    @property
    def num_axes(self) -> int:
        return self.axes.shape[1]

    @property
    def axis_labels(self) -> List[str]:
        return [f"PCoA{k + 1}" for k in range(self.num_axes)]

    def percent_explained(self) -> List[float]:
        """Variance explained per axis in percent, rounded to two decimals."""
        return [round(float(f) * 100, 2) for f in self.variance_explained]

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.axes.copy(), index=list(self.sample_ids), columns=self.axis_labels)
        frame.index.name = 'sample'
        return frame


def as_square_array(dissimilarity) -> Tuple[Tuple[str, ...], np.ndarray]:
    if isinstance(dissimilarity, DissimilarityMatrix):
        return dissimilarity.sample_ids, dissimilarity.data
    if isinstance(dissimilarity, pd.DataFrame):
        sample_ids = tuple(str(s) for s in dissimilarity.index)
        values = dissimilarity.to_numpy(dtype=float)
    else:
        values = np.asarray(dissimilarity, dtype=float)
        sample_ids = tuple(str(i) for i in range(len(values)))
    return sample_ids, values


def check_dissimilarity_matrix(values: np.ndarray) -> None:
    """Raise NumericalError unless `values` is a finite, square, symmetric matrix."""
    if values.ndim != 2 or values.shape[0] != values.shape[1]:
        raise NumericalError(f"Dissimilarity matrix must be square, got shape {values.shape}")
    if not np.isfinite(values).all():
        raise NumericalError("Dissimilarity matrix contains non-finite values")
    scale = max(float(np.abs(values).max()), 1.0) if values.size else 1.0
    if not np.allclose(values, values.T, rtol=0, atol=1e-8 * scale):
        raise NumericalError("Dissimilarity matrix is not symmetric")


def pcoa(
    dissimilarity: Union[DissimilarityMatrix, pd.DataFrame, np.ndarray],
    num_axes: int = 2,
) -> Coordinates:
    """
    Project samples into a low-dimensional space preserving their dissimilarities.

    Double-centers the squared dissimilarity matrix, eigendecomposes it and scales
    the leading eigenvectors by the square root of their eigenvalues. Negative
    eigenvalues (non-Euclidean dissimilarities) are clipped to 0 for the coordinates
    but kept, signed, in the variance-explained arithmetic:

        variance_explained_k = eigenvalue_k / sum(|eigenvalue_i|)

    Args:
        dissimilarity: Square symmetric dissimilarity matrix
        num_axes: Number of axes to keep

    Returns:
        Coordinates for the first `num_axes` axes

    Raises:
        NumericalError: If the matrix is not square/symmetric/finite or the
            eigendecomposition does not converge
        InvalidInputError: If `num_axes` is outside 1..n
    """
    sample_ids, values = as_square_array(dissimilarity)
    check_dissimilarity_matrix(values)

    n = values.shape[0]
    if not 1 <= num_axes <= n:
        raise InvalidInputError(f"num_axes must be between 1 and the number of samples ({n}), got {num_axes}")

    # Double-center the squared dissimilarity matrix
    d2 = values ** 2
    row_mean = d2.mean(axis=1, keepdims=True)
    col_mean = d2.mean(axis=0, keepdims=True)
    grand_mean = d2.mean()
    centered = -0.5 * (d2 - row_mean - col_mean + grand_mean)

    try:
        eigenvalues, eigenvectors = linalg.eigh(centered)
    except (linalg.LinAlgError, ValueError) as e:
        raise NumericalError(f"Eigendecomposition failed: {e}") from e

    # Sort descending
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    # Fix eigenvector signs: largest-magnitude component positive
    pivots = np.argmax(np.abs(eigenvectors), axis=0)
    signs = np.sign(eigenvectors[pivots, np.arange(n)])
    signs[signs == 0] = 1.0
    eigenvectors = eigenvectors * signs

    n_negative = int((eigenvalues < -1e-10).sum())
    if n_negative:
        logger.debug(f"   {n_negative} negative eigenvalue(s) clipped to 0 for coordinate scaling")

    kept = eigenvalues[:num_axes]
    axes = eigenvectors[:, :num_axes] * np.sqrt(np.clip(kept, 0, None))[np.newaxis, :]

    total = np.abs(eigenvalues).sum()
    if total > 0:
        variance_explained = kept / total
    else:
        variance_explained = np.zeros(num_axes)

    logger.debug(f"   PCoA on {n} samples: variance explained {np.round(variance_explained * 100, 2).tolist()}%")

    return Coordinates(
        sample_ids=sample_ids,
        axes=axes,
        eigenvalues=eigenvalues,
        variance_explained=variance_explained,
    )
