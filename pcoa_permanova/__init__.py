"""
PCoA + PERMANOVA: distance-based multivariate analysis of grouped samples

Given a sample-by-feature abundance matrix and a grouping factor, this package:
1. Computes a pairwise dissimilarity matrix between samples (Bray-Curtis by default)
2. Projects samples with Principal Coordinates Analysis (classical MDS)
3. Tests the grouping factor with PERMANOVA (label-permutation pseudo-F test)
4. Bundles coordinates, variance explained, pseudo-F and p-value into one result
"""

__version__ = "0.1.0"

from .data_loading import load_abundance_matrix, load_metadata, validate_config
from .dissimilarity import DissimilarityMatrix, bray_curtis, compute_dissimilarity
from .errors import (
    AnalysisError,
    DeadlineExceededError,
    InvalidInputError,
    MismatchError,
    NumericalError,
)
from .main import AnalysisPipeline, AnalysisResult, run_analysis, run_analysis_api
from .ordination import Coordinates, pcoa
from .permanova import PermutationTestResult, permanova, pseudo_f_statistic

__all__ = [
    "load_abundance_matrix",
    "load_metadata",
    "validate_config",
    "DissimilarityMatrix",
    "bray_curtis",
    "compute_dissimilarity",
    "Coordinates",
    "pcoa",
    "PermutationTestResult",
    "permanova",
    "pseudo_f_statistic",
    "AnalysisPipeline",
    "AnalysisResult",
    "run_analysis",
    "run_analysis_api",
    "AnalysisError",
    "InvalidInputError",
    "MismatchError",
    "NumericalError",
    "DeadlineExceededError",
]
