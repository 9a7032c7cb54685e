"""
Integration tests for PCoA + PERMANOVA end-to-end workflows.
"""

import json
import logging

# Add src to path for imports
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np
import pandas as pd

sys.path.insert(0, str(Path(__file__).parent.parent))

from pcoa_permanova.data_loading import load_abundance_matrix, load_metadata
from pcoa_permanova.errors import MismatchError
from pcoa_permanova.main import run_analysis, run_analysis_api

DATA_DIR = Path(__file__).parent / "data"


class TestIntegration(unittest.TestCase):
    """Test complete workflows from start to finish."""

    def setUp(self):
        """Set up test data files."""
        self.temp_dir = tempfile.TemporaryDirectory()
        self.out_dir = Path(self.temp_dir.name)

        self.abundance_file = str(DATA_DIR / "abundance_matrix.csv")
        self.metadata_file = str(DATA_DIR / "metadata.csv")
        self.config_file = str(DATA_DIR / "config.json")

    def tearDown(self):
        self.temp_dir.cleanup()
        # run_analysis attaches a stdout handler and sets the level
        logging.getLogger("pcoa_permanova").setLevel(logging.CRITICAL)

    def test_cli_with_config(self):
        """Test the CLI entry point with a config file."""
        output_file = self.out_dir / "coordinates.csv"
        summary_file = self.out_dir / "summary.json"

        result = run_analysis(
            abundance_matrix=self.abundance_file,
            metadata_file=self.metadata_file,
            output_file=str(output_file),
            config_file=self.config_file,
            summary_file=str(summary_file),
            log_level="CRITICAL",
        )

        self.assertTrue(output_file.exists())
        self.assertTrue(summary_file.exists())

        coordinates = pd.read_csv(output_file, index_col=0)
        self.assertEqual(list(coordinates.columns), ['PCoA1', 'PCoA2', 'Group', 'Sex'])
        self.assertEqual(len(coordinates), 8)
        self.assertEqual(coordinates.loc['S5', 'Group'], 'Treated')
        self.assertEqual(coordinates.loc['S5', 'Sex'], 'F')
        self.assertEqual(coordinates.loc['S6', 'Sex'], 'M')

        with open(summary_file) as f:
            summary = json.load(f)
        self.assertEqual(summary['permanova']['permutations'], 199)
        self.assertEqual(summary['permanova']['p_value'], result.permutation_test.p_value)
        self.assertTrue(summary['label'].startswith("PERMANOVA R2 = "))

        # Control and Treated samples separate on the first axis
        control = coordinates.loc[coordinates['Group'] == 'Control', 'PCoA1']
        treated = coordinates.loc[coordinates['Group'] == 'Treated', 'PCoA1']
        self.assertTrue(control.max() < treated.min() or treated.max() < control.min())

        self.assertGreater(result.permutation_test.statistic, 1.0)
        self.assertLess(result.permutation_test.p_value, 0.1)

    def test_cli_overrides_config(self):
        output_file = self.out_dir / "coordinates.csv"

        result = run_analysis(
            abundance_matrix=self.abundance_file,
            metadata_file=self.metadata_file,
            output_file=str(output_file),
            config_file=self.config_file,
            num_axes=3,
            permutations=49,
            jobs=2,
            log_level="CRITICAL",
        )

        self.assertEqual(result.coordinates.num_axes, 3)
        self.assertEqual(result.permutation_test.permutations, 49)

    def test_cli_without_config_uses_defaults(self):
        output_file = self.out_dir / "coordinates.csv"

        result = run_analysis(
            abundance_matrix=self.abundance_file,
            metadata_file=self.metadata_file,
            output_file=str(output_file),
            permutations=99,
            seed=121314,
            log_level="CRITICAL",
        )

        self.assertEqual(result.dissimilarity.metric, 'braycurtis')
        self.assertEqual(result.coordinates.num_axes, 2)

    def test_cli_reproducible(self):
        kwargs = dict(
            abundance_matrix=self.abundance_file,
            metadata_file=self.metadata_file,
            config_file=self.config_file,
            log_level="CRITICAL",
        )
        first = run_analysis(output_file=str(self.out_dir / "a.csv"), **kwargs)
        second = run_analysis(output_file=str(self.out_dir / "b.csv"), **kwargs)

        self.assertEqual(first.permutation_test, second.permutation_test)
        pd.testing.assert_frame_equal(
            pd.read_csv(self.out_dir / "a.csv"),
            pd.read_csv(self.out_dir / "b.csv"),
        )

    def test_api_with_loaded_tables(self):
        abundance = load_abundance_matrix(self.abundance_file)
        metadata = load_metadata(self.metadata_file)

        result = run_analysis_api(
            abundance=abundance,
            metadata=metadata,
            config={'permutations': 99, 'seed': 121314},
        )

        self.assertEqual(result.coordinates.sample_ids, tuple(abundance.index))
        self.assertAlmostEqual(
            result.permutation_test.ss_between + result.permutation_test.ss_within,
            result.permutation_test.ss_total,
        )

    def test_metadata_with_extra_sample_fails(self):
        metadata_file = self.out_dir / "metadata.csv"
        metadata = pd.read_csv(self.metadata_file)
        extra = pd.DataFrame({'samples': ['S9'], 'Group': ['Treated'], 'Sex': ['F']})
        pd.concat([metadata, extra]).to_csv(metadata_file, index=False)

        with self.assertRaises(MismatchError) as cm:
            run_analysis(
                abundance_matrix=self.abundance_file,
                metadata_file=str(metadata_file),
                output_file=str(self.out_dir / "coordinates.csv"),
                permutations=9,
                log_level="CRITICAL",
            )

        self.assertIn("S9", str(cm.exception))
        self.assertFalse((self.out_dir / "coordinates.csv").exists())

    def test_shuffled_metadata_rows_give_same_result(self):
        shuffled_file = self.out_dir / "shuffled.csv"
        metadata = pd.read_csv(self.metadata_file)
        metadata.iloc[np.random.default_rng(0).permutation(len(metadata))].to_csv(shuffled_file, index=False)

        kwargs = dict(
            abundance_matrix=self.abundance_file,
            config_file=self.config_file,
            log_level="CRITICAL",
        )
        original = run_analysis(metadata_file=self.metadata_file, output_file=str(self.out_dir / "a.csv"), **kwargs)
        shuffled = run_analysis(metadata_file=str(shuffled_file), output_file=str(self.out_dir / "b.csv"), **kwargs)

        self.assertEqual(original.permutation_test, shuffled.permutation_test)


if __name__ == "__main__":
    unittest.main()
