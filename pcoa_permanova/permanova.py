"""
PERMANOVA: permutation test of a grouping factor on a dissimilarity matrix.

The pseudo-F statistic is computed from a partition of the total sum of squared
dissimilarities into within-group and between-group parts, so only the
dissimilarity matrix and the labels are needed:

    SST = sum_{i<j} d_ij^2 / n
    SSW = sum_g sum_{i<j in g} d_ij^2 / n_g
    SSA = SST - SSW
    F   = (SSA / (g - 1)) / (SSW / (n - g))

Significance is estimated by shuffling the labels across samples and counting how
often the permuted statistic reaches the observed one:

    p = (#{F_perm >= F_obs} + 1) / (permutations + 1)
"""

import itertools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .dissimilarity import DissimilarityMatrix
from .errors import DeadlineExceededError, InvalidInputError, MismatchError
from .ordination import as_square_array, check_dissimilarity_matrix

# Set up module-level logger
logger = logging.getLogger(__name__)

# Permuted statistics within this distance of the observed one count as "as extreme"
COMPARISON_TOLERANCE = float(np.sqrt(np.finfo(float).eps))

CHUNK_SIZE = 100


@dataclass(frozen=True)
class PermutationTestResult:
    """Outcome of a PERMANOVA run."""

    statistic: float
    p_value: float
    permutations: int
    r_squared: float
    ss_total: float
    ss_within: float
    ss_between: float
    n_samples: int
    n_groups: int

    def label(self) -> str:
        return f"PERMANOVA R2 = {round(self.r_squared, 4)}, P = {round(self.p_value, 4)}"

    def to_dict(self) -> dict:
        return {
            'statistic': self.statistic,
            'p_value': self.p_value,
            'permutations': self.permutations,
            'r_squared': self.r_squared,
            'ss_total': self.ss_total,
            'ss_within': self.ss_within,
            'ss_between': self.ss_between,
            'n_samples': self.n_samples,
            'n_groups': self.n_groups,
        }


def encode_groups(
    sample_ids: Tuple[str, ...],
    groups: Union[Mapping[str, object], pd.Series],
) -> Tuple[np.ndarray, List[object]]:
    """
    Look up the label of every sample and encode the labels as integer codes.

    Returns:
        Tuple of (integer code per sample, ordered list of distinct labels)
    """
    if isinstance(groups, pd.Series):
        index = groups.index.astype(str)
        if index.has_duplicates:
            duplicated = sorted(set(index[index.duplicated()]))
            raise MismatchError(f"Duplicate sample identifiers in group assignment: {duplicated[:10]}")

    lookup = {str(k): v for k, v in groups.items()}

    missing = [s for s in sample_ids if s not in lookup]
    if missing:
        raise MismatchError(
            f"{len(missing)} sample(s) have no group label: {missing[:10]}"
        )

    labels = [lookup[s] for s in sample_ids]
    if any(pd.isna(label) for label in labels):
        raise InvalidInputError("Group assignment contains missing labels")

    codes, uniques = pd.factorize(pd.Series(labels, dtype=object), sort=True)
    return codes.astype(np.intp), list(uniques)


def _sums_of_squares(d2: np.ndarray, codes: np.ndarray, group_sizes: np.ndarray, ss_total: float) -> Tuple[float, float]:
    """Return (SSW, SSA) for one labelling."""
    # One-hot (n x g); diag(G^T D2 G) sums d^2 over ordered within-group pairs
    membership = np.eye(len(group_sizes))[codes]
    within = (membership * (d2 @ membership)).sum(axis=0)
    ss_within = float((within / (2 * group_sizes)).sum())
    return ss_within, ss_total - ss_within


def _pseudo_f(ss_between: float, ss_within: float, n_samples: int, n_groups: int) -> float:
    if ss_within <= 0:
        return np.inf
    return (ss_between / (n_groups - 1)) / (ss_within / (n_samples - n_groups))


def pseudo_f_statistic(
    dissimilarity: Union[DissimilarityMatrix, pd.DataFrame, np.ndarray],
    groups: Union[Mapping[str, object], pd.Series],
) -> float:
    """Pseudo-F of `groups` on `dissimilarity`, without a permutation test."""
    sample_ids, values = as_square_array(dissimilarity)
    check_dissimilarity_matrix(values)
    codes, labels = encode_groups(sample_ids, groups)
    _check_design(len(sample_ids), len(labels))

    d2 = values ** 2
    group_sizes = np.bincount(codes, minlength=len(labels)).astype(float)
    ss_total = float(d2.sum() / (2 * len(sample_ids)))
    ss_within, ss_between = _sums_of_squares(d2, codes, group_sizes, ss_total)
    return _pseudo_f(ss_between, ss_within, len(sample_ids), len(labels))


def _check_design(n_samples: int, n_groups: int) -> None:
    if n_groups < 2:
        raise InvalidInputError(
            f"At least 2 distinct group labels are required for PERMANOVA, got {n_groups}"
        )
    if n_groups == n_samples:
        raise InvalidInputError(
            "Every sample is in its own group; the within-group variance is undefined"
        )


def _permuted_statistics(
    d2: np.ndarray,
    shuffled: np.ndarray,
    group_sizes: np.ndarray,
    ss_total: float,
) -> np.ndarray:
    n_samples, n_groups = d2.shape[0], len(group_sizes)
    stats = np.empty(len(shuffled))
    for k, codes in enumerate(shuffled):
        ss_within, ss_between = _sums_of_squares(d2, codes, group_sizes, ss_total)
        stats[k] = _pseudo_f(ss_between, ss_within, n_samples, n_groups)
    return stats


def iter_permutation_chunks(
    rng: np.random.Generator,
    codes: np.ndarray,
    permutations: int,
    chunk_size: int = CHUNK_SIZE,
) -> Iterator[np.ndarray]:
    """Yield label shuffles in blocks of at most `chunk_size` rows, drawn lazily from `rng`."""
    for start in range(0, permutations, chunk_size):
        size = min(chunk_size, permutations - start)
        yield np.stack([rng.permutation(codes) for _ in range(size)])


def permanova(
    dissimilarity: Union[DissimilarityMatrix, pd.DataFrame, np.ndarray],
    groups: Union[Mapping[str, object], pd.Series],
    permutations: int = 999,
    seed: Optional[int] = None,
    jobs: int = 1,
    deadline: Optional[float] = None,
) -> PermutationTestResult:
    """
    Test whether `groups` explains the structure of `dissimilarity`.

    Label shuffles are always drawn in order from one generator seeded with `seed`,
    so the result depends only on the inputs and the seed, not on `jobs`.

    Args:
        dissimilarity: Square symmetric dissimilarity matrix
        groups: Mapping (or Series) from sample identifier to group label
        permutations: Number of label permutations
        seed: Seed for the permutation generator; None is non-reproducible
        jobs: Number of worker threads evaluating permutations
        deadline: Optional time budget in seconds

    Returns:
        PermutationTestResult

    Raises:
        InvalidInputError: Fewer than 2 groups, one sample per group, permutations < 1,
            or all dissimilarities zero
        MismatchError: A sample of the matrix has no group label, or a Series has duplicate identifiers
        DeadlineExceededError: The deadline passed before all permutations finished
    """
    if isinstance(permutations, bool) or not isinstance(permutations, (int, np.integer)) or permutations < 1:
        raise InvalidInputError(f"permutations must be a positive integer, got {permutations!r}")
    if jobs < 1:
        raise InvalidInputError(f"jobs must be at least 1, got {jobs}")
    if seed is not None and seed < 0:
        raise InvalidInputError(f"seed must be non-negative, got {seed}")

    started = time.monotonic()
    sample_ids, values = as_square_array(dissimilarity)
    check_dissimilarity_matrix(values)
    codes, labels = encode_groups(sample_ids, groups)

    n_samples, n_groups = len(sample_ids), len(labels)
    _check_design(n_samples, n_groups)

    d2 = values ** 2
    ss_total = float(d2.sum() / (2 * n_samples))
    if ss_total <= 0:
        raise InvalidInputError("All dissimilarities are zero; PERMANOVA is undefined")

    group_sizes = np.bincount(codes, minlength=n_groups).astype(float)
    ss_within, ss_between = _sums_of_squares(d2, codes, group_sizes, ss_total)
    observed = _pseudo_f(ss_between, ss_within, n_samples, n_groups)

    logger.info(f"   PERMANOVA: {n_samples} samples, {n_groups} groups, {permutations} permutations")

    rng = np.random.default_rng(seed)
    chunks = iter_permutation_chunks(rng, codes, permutations)

    def _past_deadline() -> bool:
        return deadline is not None and time.monotonic() - started > deadline

    def _evaluate(chunk: np.ndarray) -> np.ndarray:
        return _permuted_statistics(d2, chunk, group_sizes, ss_total)

    permuted: List[np.ndarray] = []
    if jobs == 1:
        for chunk in chunks:
            if _past_deadline():
                break
            permuted.append(_evaluate(chunk))
            logger.debug(f"   Completed {sum(len(p) for p in permuted)}/{permutations} permutations")
    else:
        # Shuffles are drawn on this thread, one batch of `jobs` chunks at a time
        with ThreadPoolExecutor(max_workers=jobs) as executor:
            while not _past_deadline():
                batch = list(itertools.islice(chunks, jobs))
                if not batch:
                    break
                permuted.extend(executor.map(_evaluate, batch))
                logger.debug(f"   Completed {sum(len(p) for p in permuted)}/{permutations} permutations")

    completed = sum(len(p) for p in permuted)
    if completed < permutations:
        raise DeadlineExceededError(
            f"Deadline of {deadline}s exceeded after {completed}/{permutations} permutations"
        )

    permuted_stats = np.concatenate(permuted)
    exceed = int((permuted_stats >= observed - COMPARISON_TOLERANCE).sum())
    p_value = (exceed + 1) / (permutations + 1)

    result = PermutationTestResult(
        statistic=float(observed),
        p_value=float(p_value),
        permutations=int(permutations),
        r_squared=float(ss_between / ss_total),
        ss_total=ss_total,
        ss_within=ss_within,
        ss_between=ss_between,
        n_samples=n_samples,
        n_groups=n_groups,
    )
    logger.info(f"   pseudo-F = {result.statistic:.4f}, R2 = {result.r_squared:.4f}, p = {result.p_value:.4f}")
    return result
