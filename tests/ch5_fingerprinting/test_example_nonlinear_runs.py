"""Smoke tests for the Chapter 5 non-linear fingerprinting example.

Runs the example script in a subprocess with the Agg backend and checks the
machine-readable [FINGERPRINT_SUMMARY] JSON line.

Author: Li-Ta Hsu
Date: December 2024
"""

import json
import os
import re
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


def parse_summary(stdout):
    """Parse the [FINGERPRINT_SUMMARY] JSON line, or None if missing."""
    match = re.search(r"\[FINGERPRINT_SUMMARY\]\s*(\{.*\})", stdout)
    if not match:
        return None
    return json.loads(match.group(1))


class TestExampleNonlinearRuns(unittest.TestCase):
    def setUp(self):
        self.workspace_root = Path(__file__).parent.parent.parent
        script = self.workspace_root / "ch5_fingerprinting" / "example_nonlinear.py"
        self.assertTrue(script.exists(), f"Script not found: {script}")

    def test_runs_and_saves_figures(self):
        env = os.environ.copy()
        env.update({"MPLBACKEND": "Agg", "PYTHONPATH": str(self.workspace_root)})

        with tempfile.TemporaryDirectory() as out_dir:
            result = subprocess.run(
                [
                    sys.executable,
                    "-m",
                    "ch5_fingerprinting.example_nonlinear",
                    "--n-queries",
                    "8",
                    "--output-dir",
                    out_dir,
                ],
                cwd=self.workspace_root,
                capture_output=True,
                text=True,
                timeout=300,
                env=env,
            )

            self.assertEqual(
                result.returncode, 0, f"Script failed with stderr:\n{result.stderr}"
            )
            self.assertTrue((Path(out_dir) / "nonlinear_error_cdf.png").exists())
            self.assertTrue((Path(out_dir) / "nonlinear_geometry.png").exists())

        self.assertIn("Example complete!", result.stdout)
        summary = parse_summary(result.stdout)
        self.assertIsNotNone(summary, "Missing [FINGERPRINT_SUMMARY] line")
        self.assertEqual(summary["n_queries"], 8)
        self.assertIn("3rd order", summary["rmse"])
        self.assertIn("Joint (AP6 unknown)", summary["rmse"])


if __name__ == "__main__":
    unittest.main()
