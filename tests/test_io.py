"""
Unit tests for I/O operations module.
"""

import unittest
import tempfile
import shutil
import json
from pathlib import Path
import sys
import numpy as np
import pandas as pd

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gammaroi.calibration import Calibration
from gammaroi.detection import Finder
from gammaroi.fitter import Fitter
from gammaroi.io_module import (
    load_spectrum,
    load_csv_spectrum,
    load_spe_spectrum,
    read_spe_times,
    load_chn_spectrum,
    load_mca_spectrum,
    load_settings,
    save_settings,
    roi_to_dict,
    roi_from_dict,
    save_fitter,
    load_fitter
)
from gammaroi.roi import ROI
from gammaroi.settings import FitSettings
from gammaroi.utils import generate_synthetic_spectrum
from tests import single_peak_spectrum


class TempDirTestCase(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)


class TestSpectrumFiles(TempDirTestCase):
    """Test spectrum file readers."""

    def test_load_csv_two_columns(self):
        test_file = self.temp_path / "spectrum.csv"
        counts = np.random.default_rng(1).poisson(50, 100)
        pd.DataFrame({'channel': np.arange(100), 'counts': counts}).to_csv(test_file, index=False)

        channels, loaded = load_spectrum(test_file)

        self.assertEqual(len(channels), 100)
        np.testing.assert_array_equal(channels, np.arange(100))
        np.testing.assert_array_equal(loaded, counts)

    def test_load_csv_single_column(self):
        test_file = self.temp_path / "counts.csv"
        test_file.write_text("# counts only\n5\n7\n9\n")

        channels, counts = load_csv_spectrum(test_file)

        np.testing.assert_array_equal(channels, [0, 1, 2])
        np.testing.assert_array_equal(counts, [5, 7, 9])

    def test_negative_counts_clipped(self):
        test_file = self.temp_path / "negative.csv"
        test_file.write_text("0,5\n1,-3\n2,4\n")

        with self.assertLogs('gammaroi.io_module', level='WARNING'):
            _, counts = load_csv_spectrum(test_file)

        np.testing.assert_array_equal(counts, [5, 0, 4])

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_spectrum(self.temp_path / "missing.csv")

    def test_empty_csv(self):
        test_file = self.temp_path / "empty.csv"
        test_file.write_text("channel,counts\n")

        with self.assertRaises(ValueError):
            load_csv_spectrum(test_file)

    def test_load_spe(self):
        test_file = self.temp_path / "spectrum.spe"
        test_file.write_text("$SPEC_ID:\ntest\n$MEAS_TIM:\n100 110\n"
                             "$DATA:\n0 4\n1\n2\n3\n4\n5\n$ENER_FIT:\n0 1\n")

        channels, counts = load_spe_spectrum(test_file)

        np.testing.assert_array_equal(counts, [1, 2, 3, 4, 5])
        np.testing.assert_array_equal(channels, [0, 1, 2, 3, 4])
        self.assertEqual(read_spe_times(test_file), (100.0, 110.0))

    def test_load_chn(self):
        test_file = self.temp_path / "spectrum.chn"
        counts = np.array([3, 1, 4, 1, 5, 9], dtype='<u4')
        header = bytearray(32)
        header[30:32] = len(counts).to_bytes(2, 'little')
        test_file.write_bytes(bytes(header) + counts.tobytes())

        _, loaded = load_chn_spectrum(test_file)

        np.testing.assert_array_equal(loaded, counts)

    def test_load_mca(self):
        test_file = self.temp_path / "spectrum.mca"
        test_file.write_text("<<PMCA SPECTRUM>>\nTAG - live_data\n<<DATA>>\n2\n4\n6\n<<END>>\n")

        _, counts = load_mca_spectrum(test_file)

        np.testing.assert_array_equal(counts, [2, 4, 6])


class TestSettingsFiles(TempDirTestCase):
    """Test settings persistence."""

    def test_roundtrip(self):
        settings = FitSettings(kon_width=6, resid_max_iterations=3,
                               calibration=Calibration([1.0, 0.5]))
        path = self.temp_path / "settings.json"

        save_settings(settings, path)
        loaded = load_settings(path)

        self.assertEqual(loaded.kon_width, 6)
        self.assertEqual(loaded.resid_max_iterations, 3)
        self.assertEqual(loaded.calibration.coefficients, [1.0, 0.5])

    def test_unknown_keys_ignored(self):
        path = self.temp_path / "settings.json"
        path.write_text(json.dumps({'kon_width': 5, 'plot': True}))

        self.assertEqual(load_settings(path).kon_width, 5)

    def test_invalid_settings(self):
        path = self.temp_path / "settings.json"
        path.write_text(json.dumps({'width_variation': 0.5}))

        with self.assertRaises(ValueError):
            load_settings(path)

    def test_invalid_json(self):
        path = self.temp_path / "settings.json"
        path.write_text("{not json")

        with self.assertRaises(ValueError):
            load_settings(path)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_settings(self.temp_path / "missing.json")


class TestFitPersistence(TempDirTestCase):
    """Test storing and restoring fitted regions."""

    def setUp(self):
        super().setUp()
        self.x, self.y = single_peak_spectrum()
        self.parent = Finder()
        self.parent.set_data(self.x, self.y)
        self.roi = ROI()
        self.roi.set_data(self.x, self.y, 20, 180)
        self.roi.auto_fit()
        self.roi.add_sum4_peak(140, 150)

    def test_roi_roundtrip(self):
        data = json.loads(json.dumps(roi_to_dict(self.roi)))

        restored = roi_from_dict(data, self.parent)

        self.assertIsNotNone(restored)
        self.assertEqual(len(restored.peaks()), len(self.roi.peaks()))
        for original, loaded in zip(self.roi.peaks(), restored.peaks()):
            self.assertAlmostEqual(loaded.center, original.center, places=6)
            self.assertEqual(loaded.is_sum4_only, original.is_sum4_only)
        np.testing.assert_allclose(restored.background.coefficients,
                                   self.roi.background.coefficients)
        self.assertEqual(restored.LB, self.roi.LB)
        self.assertEqual(restored.RB, self.roi.RB)
        self.assertEqual(restored.fit_description, 'Summation peak added')

    def test_settings_override(self):
        self.roi.settings.kon_width = 6
        data = roi_to_dict(self.roi, include_settings=True)

        restored = roi_from_dict(data, self.parent, FitSettings())

        self.assertEqual(restored.settings.kon_width, 6)

    def test_bad_peak_skipped(self):
        data = roi_to_dict(self.roi)
        data['peaks'].append({'hypermet': {'center': {'value': 100.0}}})

        with self.assertLogs('gammaroi.io_module', level='WARNING'):
            restored = roi_from_dict(data, self.parent)

        self.assertEqual(len(restored.peaks()), len(self.roi.peaks()))

    def test_parent_does_not_cover(self):
        short = Finder()
        short.set_data(self.x[50:], self.y[50:])

        with self.assertLogs('gammaroi.io_module', level='WARNING'):
            self.assertIsNone(roi_from_dict(roi_to_dict(self.roi), short))

    def test_missing_background_keeps_default(self):
        data = roi_to_dict(self.roi)
        del data['background']

        restored = roi_from_dict(data, self.parent)

        self.assertIsNotNone(restored.background)
        self.assertEqual(len(restored.peaks()), len(self.roi.peaks()))

    def test_fitter_roundtrip(self):
        x, y = generate_synthetic_spectrum(1000, peaks=[(300, 800, 4), (700, 400, 5)],
                                           background_level=20, poisson=False)
        fitter = Fitter()
        fitter.set_data(x, y, bits=10, live_time=100, real_time=110, name='saved')
        fitter.find_regions()
        fitter.auto_fit_regions()
        path = self.temp_path / "fit.json"

        save_fitter(fitter, path)
        loaded = load_fitter(path)

        self.assertEqual(loaded.name, 'saved')
        self.assertEqual(loaded.settings.live_time, 100)
        self.assertEqual(len(loaded.regions()), len(fitter.regions()))
        np.testing.assert_allclose([p.center for p in loaded.peaks()],
                                   [p.center for p in fitter.peaks()])

    def test_load_fitter_invalid(self):
        path = self.temp_path / "fit.json"
        path.write_text(json.dumps({'name': 'broken'}))

        with self.assertRaises(ValueError):
            load_fitter(path)


if __name__ == '__main__':
    unittest.main()
