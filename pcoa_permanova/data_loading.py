"""
Data loading utilities for PCoA / PERMANOVA analyses.
"""

from typing import Any, Dict

import pandas as pd
from schema import And, Or, Schema
from schema import Optional as SchemaOptional

from .dissimilarity import METRICS
from .errors import InvalidInputError


def load_abundance_matrix(abundance_matrix: str) -> pd.DataFrame:
    """
    Load an abundance matrix and return it with samples as rows.

    The file stores features (proteins, OTUs, ...) as rows and samples as columns,
    with the feature identifier in the first column.
    """
    try:
        if abundance_matrix.endswith('.csv'):
            table = pd.read_csv(abundance_matrix, index_col=0)
        else:
            # Assume space/tab separated
            table = pd.read_csv(abundance_matrix, sep=None, engine='python', index_col=0)
    except Exception as e:
        raise InvalidInputError(f"Error loading abundance matrix: {e}") from e

    if table.empty:
        raise InvalidInputError("Error loading abundance matrix: file contains no samples or features")

    try:
        table = table.apply(pd.to_numeric)
    except (TypeError, ValueError) as e:
        raise InvalidInputError(f"Error loading abundance matrix: non-numeric value ({e})") from e

    # Transpose so rows = samples, columns = features
    abundance = table.T
    abundance.index = abundance.index.astype(str)
    abundance.index.name = 'sample'
    return abundance


def load_metadata(metadata_file: str, sample_column: str = 'samples') -> pd.DataFrame:
    """Load sample metadata (one row per sample) indexed by the sample column."""
    try:
        if metadata_file.endswith('.csv'):
            metadata = pd.read_csv(metadata_file)
        else:
            metadata = pd.read_csv(metadata_file, sep=None, engine='python')
    except Exception as e:
        raise InvalidInputError(f"Error loading metadata file: {e}") from e

    if len(metadata) == 0:
        raise InvalidInputError("Error loading metadata file: metadata file is empty")
    if sample_column not in metadata.columns:
        raise InvalidInputError(
            f"Error loading metadata file: sample column '{sample_column}' not found in {list(metadata.columns)}"
        )

    metadata[sample_column] = metadata[sample_column].astype(str)
    return metadata.set_index(sample_column)


# Define the configuration schema
CONFIG_SCHEMA = Schema({
    SchemaOptional('sample_column', default='samples'): str,
    SchemaOptional('group_column', default='Group'): str,
    SchemaOptional('metric', default='braycurtis'): And(str, lambda s: s in METRICS),
    SchemaOptional('num_axes', default=2): And(int, lambda n: n >= 1),
    SchemaOptional('permutations', default=999): And(int, lambda n: n >= 1),
    SchemaOptional('seed', default=None): Or(None, And(int, lambda n: n >= 0)),
    SchemaOptional('jobs', default=1): And(int, lambda n: n >= 1),
    SchemaOptional('deadline', default=None): Or(None, And(Or(int, float), lambda n: n > 0)),
})


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and normalize an analysis configuration, filling in defaults."""
    return CONFIG_SCHEMA.validate(dict(config))
