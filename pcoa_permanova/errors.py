"""
Exceptions raised by the PCoA / PERMANOVA engine.
"""


class AnalysisError(Exception):
    """Base class for all analysis errors."""


class InvalidInputError(AnalysisError, ValueError):
    """Malformed, negative, non-finite or otherwise unusable input."""


class MismatchError(AnalysisError, ValueError):
    """Sample identifiers disagree between the abundance matrix and the group assignment."""


class NumericalError(AnalysisError, ArithmeticError):
    """Eigendecomposition failure or a dissimilarity matrix that is not square/symmetric."""


class DeadlineExceededError(AnalysisError, TimeoutError):
    """The permutation test ran out of time before all permutations were evaluated."""
