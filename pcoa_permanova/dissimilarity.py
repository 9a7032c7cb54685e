"""
Pairwise dissimilarities between samples of an abundance matrix.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Tuple, Union

import numpy as np
import pandas as pd
from scipy.spatial.distance import braycurtis, pdist, squareform

from .errors import InvalidInputError

# Set up module-level logger
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DissimilarityMatrix:
    """Square, symmetric, zero-diagonal dissimilarity matrix labelled by sample identifier."""

    sample_ids: Tuple[str, ...]
    data: np.ndarray
    metric: str

    def __post_init__(self):
        data = np.array(self.data, dtype=float)
        data.flags.writeable = False
        object.__setattr__(self, 'data', data)
        object.__setattr__(self, 'sample_ids', tuple(str(s) for s in self.sample_ids))

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.data.copy(), index=list(self.sample_ids), columns=list(self.sample_ids))


# Registered metric names, passed straight to scipy's pdist
METRICS = ('braycurtis', 'euclidean')


def bray_curtis(x: np.ndarray, y: np.ndarray) -> float:
    """
    Bray-Curtis dissimilarity between two samples.

    d = sum(|x - y|) / sum(x + y), defined as 0 when both samples are all zero.
    """
    if np.sum(x) + np.sum(y) == 0:
        return 0.0
    return float(braycurtis(x, y))


def as_abundance_frame(matrix) -> pd.DataFrame:
    """Coerce `matrix` to a samples x features DataFrame and check its invariants."""
    if isinstance(matrix, pd.DataFrame):
        frame = matrix
    else:
        if isinstance(matrix, (list, tuple)):
            try:
                lengths = {len(row) for row in matrix}
            except TypeError as e:
                raise InvalidInputError(f"Abundance matrix rows must be sequences: {e}") from e
            if len(lengths) > 1:
                raise InvalidInputError(f"Rows of the abundance matrix have mismatched lengths: {sorted(lengths)}")
        array = np.asarray(matrix)
        if array.ndim != 2:
            raise InvalidInputError(f"Abundance matrix must be two-dimensional, got {array.ndim} dimension(s)")
        frame = pd.DataFrame(array)

    if len(frame) < 2:
        raise InvalidInputError(f"At least 2 samples are required, got {len(frame)}")
    if frame.shape[1] == 0:
        raise InvalidInputError("Abundance matrix has no features")

    sample_ids = frame.index.astype(str)
    if sample_ids.has_duplicates:
        duplicated = sorted(set(sample_ids[sample_ids.duplicated()]))
        raise InvalidInputError(f"Duplicate sample identifiers in abundance matrix: {duplicated[:10]}")

    try:
        values = frame.to_numpy(dtype=float)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Abundance matrix contains non-numeric values: {e}") from e

    if not np.isfinite(values).all():
        raise InvalidInputError("Abundance matrix contains missing or non-finite values")
    if (values < 0).any():
        n_negative = int((values < 0).sum())
        raise InvalidInputError(f"Abundance matrix contains {n_negative} negative value(s); dissimilarity is undefined")

    return pd.DataFrame(values, index=sample_ids, columns=frame.columns)


def compute_dissimilarity(
    matrix: Union[pd.DataFrame, np.ndarray, list],
    metric: Union[str, Callable] = 'braycurtis',
) -> DissimilarityMatrix:
    """
    Compute the pairwise dissimilarity matrix of the samples (rows) of `matrix`.

    Args:
        matrix: Abundance matrix with samples as rows and features as columns
        metric: Name of a registered metric or a callable f(x, y) -> float

    Returns:
        DissimilarityMatrix labelled with the sample identifiers of `matrix`

    Raises:
        InvalidInputError: On negative, non-finite or ragged input, fewer than two samples,
            or an unknown metric
    """
    frame = as_abundance_frame(matrix)

    if isinstance(metric, str):
        if metric not in METRICS:
            raise InvalidInputError(f"Unknown metric '{metric}', expected one of {sorted(METRICS)}")
        metric_name = metric
    elif callable(metric):
        metric_name = getattr(metric, '__name__', 'custom')
    else:
        raise InvalidInputError(f"Metric must be a name or a callable, got {type(metric).__name__}")

    values = frame.to_numpy()
    logger.debug(f"   Computing {metric_name} dissimilarities for {len(values)} samples x {values.shape[1]} features")

    with np.errstate(divide='ignore', invalid='ignore'):
        condensed = pdist(values, metric=metric)

    if isinstance(metric, str) and metric == 'braycurtis':
        # scipy leaves 0/0 (two all-zero samples) as NaN
        condensed = np.nan_to_num(condensed, nan=0.0)
    elif not np.isfinite(condensed).all() or (condensed < 0).any():
        raise InvalidInputError(f"Metric '{metric_name}' returned a negative or non-finite dissimilarity")

    return DissimilarityMatrix(sample_ids=tuple(frame.index), data=squareform(condensed), metric=metric_name)

