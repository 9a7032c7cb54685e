"""
PCoA + PERMANOVA: distance-based multivariate analysis of grouped samples

This tool tests whether a grouping factor explains the multivariate structure of
an abundance matrix:
1. Loading the abundance matrix (features x samples) and sample metadata
2. Computing pairwise Bray-Curtis dissimilarities between samples
3. Projecting samples with Principal Coordinates Analysis (PCoA)
4. Testing the grouping factor with PERMANOVA (permutation pseudo-F test)

Usage:
    pcoa-permanova <abundance_matrix> <metadata_file> <output_file>
                   [--config-file config.json] [--summary-file summary.json]
                   [--group-column Group] [--num-axes 2] [--permutations 999]
                   [--seed 121314] [--jobs 1] [--log-level INFO]
"""

import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union

import fire
import numpy as np
import pandas as pd

from .data_loading import load_abundance_matrix, load_metadata, validate_config
from .dissimilarity import DissimilarityMatrix, as_abundance_frame, compute_dissimilarity
from .errors import MismatchError
from .ordination import Coordinates, pcoa
from .permanova import PermutationTestResult, permanova

# Set up module-level logger
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisResult:
    """Merged output of one analysis run."""

    dissimilarity: DissimilarityMatrix
    coordinates: Coordinates
    permutation_test: PermutationTestResult
    groups: pd.Series

    def to_frame(self, group_column: str = 'Group', metadata: Optional[pd.DataFrame] = None) -> pd.DataFrame:
        """
        Coordinates joined with the group label of each sample by identifier.

        When `metadata` (indexed by sample identifier) is given, its remaining
        columns are carried along after the group column.
        """
        frame = self.coordinates.to_frame()
        frame[group_column] = self.groups.reindex(frame.index).values
        if metadata is not None:
            extra = metadata.drop(columns=[group_column], errors='ignore')
            extra.index = extra.index.astype(str)
            frame = frame.join(extra.drop(columns=frame.columns.intersection(extra.columns)), how='left')
        return frame

    def summary(self) -> Dict[str, Any]:
        return {
            'permanova': self.permutation_test.to_dict(),
            'label': self.permutation_test.label(),
            'variance_explained_percent': dict(
                zip(self.coordinates.axis_labels, self.coordinates.percent_explained())
            ),
            'metric': self.dissimilarity.metric,
        }


def _group_series(groups: Union[Mapping[str, object], pd.Series]) -> pd.Series:
    if isinstance(groups, pd.Series):
        series = groups.copy()
    else:
        series = pd.Series(dict(groups), dtype=object)
    series.index = series.index.astype(str)
    return series


def validate_sample_consistency(
    abundance: pd.DataFrame,
    groups: pd.Series,
) -> None:
    """
    Validate that the abundance matrix and the group assignment contain the same samples.

    Args:
        abundance: Abundance matrix with samples as rows
        groups: Group label per sample identifier

    Raises:
        MismatchError: If samples don't match or the group assignment has duplicates
    """
    if groups.index.has_duplicates:
        duplicated = sorted(set(groups.index[groups.index.duplicated()]))
        raise MismatchError(f"❌ Duplicate sample identifiers in group assignment: {duplicated[:10]}")

    matrix_samples = set(abundance.index.astype(str))
    group_samples = set(groups.index)

    # Check if all samples are present in both inputs
    if matrix_samples != group_samples:
        missing_in_groups = matrix_samples - group_samples
        missing_in_matrix = group_samples - matrix_samples

        error_msg = "❌ Sample mismatch between abundance matrix and group assignment:\n"

        if missing_in_groups:
            error_msg += f"   {len(missing_in_groups)} samples in abundance matrix but missing from groups:\n"
            for sample in sorted(missing_in_groups)[:10]:  # Show first 10
                error_msg += f"     - {sample}\n"
            if len(missing_in_groups) > 10:
                error_msg += f"     ... and {len(missing_in_groups) - 10} more\n"

        if missing_in_matrix:
            error_msg += f"   {len(missing_in_matrix)} samples in groups but missing from abundance matrix:\n"
            for sample in sorted(missing_in_matrix)[:10]:  # Show first 10
                error_msg += f"     - {sample}\n"
            if len(missing_in_matrix) > 10:
                error_msg += f"     ... and {len(missing_in_matrix) - 10} more\n"

        error_msg += f"\n   Total samples in abundance matrix: {len(matrix_samples)}"
        error_msg += f"\n   Total samples in groups: {len(group_samples)}"
        error_msg += f"\n   Common samples: {len(matrix_samples & group_samples)}"

        raise MismatchError(error_msg)

    logger.info(f"✅ All {len(matrix_samples)} samples are present in both abundance matrix and group assignment")


@dataclass(frozen=True)
class AnalysisPipeline:
    """Dissimilarity -> {PCoA, PERMANOVA} with fixed parameters."""

    metric: Union[str, Callable] = 'braycurtis'
    num_axes: int = 2
    permutations: int = 999
    seed: Optional[int] = None
    jobs: int = 1
    deadline: Optional[float] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "AnalysisPipeline":
        config = validate_config(config)
        return cls(
            metric=config['metric'],
            num_axes=config['num_axes'],
            permutations=config['permutations'],
            seed=config['seed'],
            jobs=config['jobs'],
            deadline=config['deadline'],
        )

    def run(
        self,
        matrix: Union[pd.DataFrame, np.ndarray, list],
        groups: Union[Mapping[str, object], pd.Series],
    ) -> AnalysisResult:
        """
        Run the full analysis; either every step succeeds or the first error propagates.

        Args:
            matrix: Abundance matrix with samples as rows
            groups: Group label per sample identifier

        Returns:
            AnalysisResult bundling dissimilarities, coordinates and the PERMANOVA result
        """
        abundance = as_abundance_frame(matrix)
        groups = _group_series(groups)

        validate_sample_consistency(abundance, groups)

        # Align labels to the matrix rows by identifier
        groups = groups.reindex(abundance.index)

        logger.info(f"\n📏 Step 1: Computing {self.metric if isinstance(self.metric, str) else 'custom'} dissimilarities...")
        dissimilarity = compute_dissimilarity(abundance, metric=self.metric)

        logger.info(f"\n🧭 Step 2: PCoA ({self.num_axes} axes)...")
        coordinates = pcoa(dissimilarity, num_axes=self.num_axes)
        for axis, percent in zip(coordinates.axis_labels, coordinates.percent_explained()):
            logger.info(f"   {axis}: {percent}% of variance")

        logger.info("\n🎲 Step 3: PERMANOVA...")
        test_result = permanova(
            dissimilarity,
            groups,
            permutations=self.permutations,
            seed=self.seed,
            jobs=self.jobs,
            deadline=self.deadline,
        )

        return AnalysisResult(
            dissimilarity=dissimilarity,
            coordinates=coordinates,
            permutation_test=test_result,
            groups=groups,
        )


def run_analysis_api(
    abundance: pd.DataFrame,
    metadata: pd.DataFrame,
    config: Dict[str, Any],
) -> AnalysisResult:
    """
    Python API to run PCoA + PERMANOVA on loaded tables.

    Args:
        abundance: Abundance matrix with samples as rows
        metadata: Sample metadata indexed by sample identifier
        config: Analysis configuration (validated against CONFIG_SCHEMA)

    Returns:
        AnalysisResult
    """
    config = validate_config(config)
    group_column = config['group_column']

    if group_column not in metadata.columns:
        raise MismatchError(f"Group column '{group_column}' not found in metadata {list(metadata.columns)}")

    logger.info(f"🎯 PCoA + PERMANOVA: {len(abundance)} samples, {abundance.shape[1]} features, factor '{group_column}'")

    pipeline = AnalysisPipeline.from_config(config)
    return pipeline.run(abundance, metadata[group_column])


def run_analysis(
    abundance_matrix: str,
    metadata_file: str,
    output_file: str,
    config_file: Optional[str] = None,
    summary_file: Optional[str] = None,
    group_column: Optional[str] = None,
    num_axes: Optional[int] = None,
    permutations: Optional[int] = None,
    seed: Optional[int] = None,
    jobs: Optional[int] = None,
    log_level: str = "INFO",
) -> AnalysisResult:
    """
    CLI interface to run PCoA + PERMANOVA on an abundance matrix.

    Args:
        abundance_matrix: Path to abundance CSV (features as rows, samples as columns)
        metadata_file: Path to sample metadata table with a sample and a group column
        output_file: CSV file receiving the sample coordinates and group labels
        config_file: Path to JSON configuration file (optional)
        summary_file: JSON file receiving the PERMANOVA result and variance explained (optional)
        group_column: Metadata column holding the grouping factor (overrides config)
        num_axes: Number of PCoA axes to report (overrides config)
        permutations: Number of PERMANOVA permutations (overrides config)
        seed: Permutation seed (overrides config)
        jobs: Worker threads for the permutation test (overrides config)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        AnalysisResult
    """
    # Set up logging
    package_logger = logging.getLogger("pcoa_permanova")
    package_logger.setLevel(log_level.upper())
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter("%(message)s"))
        package_logger.addHandler(handler)

    logger.info(f"📊 Abundance matrix: {abundance_matrix}")
    logger.info(f"📁 Metadata file: {metadata_file}")

    config = {}
    if config_file:
        logger.info(f"⚙️ Config file: {config_file}")
        with open(config_file) as f:
            config = json.load(f)

    overrides = {
        'group_column': group_column,
        'num_axes': num_axes,
        'permutations': permutations,
        'seed': seed,
        'jobs': jobs,
    }
    config.update({key: value for key, value in overrides.items() if value is not None})
    config = validate_config(config)

    abundance = load_abundance_matrix(abundance_matrix)
    metadata = load_metadata(metadata_file, sample_column=config['sample_column'])

    result = run_analysis_api(abundance=abundance, metadata=metadata, config=config)

    result.to_frame(group_column=config['group_column'], metadata=metadata).to_csv(output_file)
    logger.info(f"\n💾 Coordinates saved to: {output_file}")

    if summary_file:
        with open(summary_file, 'w') as f:
            json.dump(result.summary(), f, indent=2)
        logger.info(f"💾 Summary saved to: {summary_file}")

    logger.info(f"\n✅ {result.permutation_test.label()}")

    return result


def main():
    fire.Fire(run_analysis, serialize=lambda result: result.permutation_test.label())


if __name__ == "__main__":
    main()
