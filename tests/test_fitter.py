"""
Integration tests for spectrum-level fitting.
"""

import unittest
import threading
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gammaroi.calibration import Calibration
from gammaroi.fitter import Fitter
from gammaroi.settings import FitSettings
from gammaroi.utils import generate_synthetic_spectrum


def two_peak_spectrum():
    return generate_synthetic_spectrum(1000, peaks=[(300, 800, 4), (700, 400, 5)],
                                       background_level=20, poisson=False)


class TestFitterData(unittest.TestCase):
    """Test spectrum loading."""

    def test_trims_zero_edges(self):
        x, y = two_peak_spectrum()
        y[:50] = 0
        y[-30:] = 0
        fitter = Fitter()

        self.assertTrue(fitter.set_data(x, y, bits=10, live_time=100, real_time=110, name='test'))

        self.assertEqual(fitter.finder.x[0], 50)
        self.assertEqual(fitter.finder.x[-1], 969)
        self.assertEqual(fitter.settings.bits, 10)
        self.assertAlmostEqual(fitter.total_count, np.sum(y))

    def test_caller_settings_unchanged(self):
        settings = FitSettings(live_time=5.0)
        fitter = Fitter(settings)

        self.assertTrue(fitter.set_data(*two_peak_spectrum(), bits=12, live_time=100, real_time=110))

        self.assertEqual(fitter.settings.live_time, 100)
        self.assertEqual(settings.live_time, 5.0)
        self.assertEqual(settings.bits, 0)
        self.assertEqual(settings.real_time, 0.0)

    def test_rejects_invalid_spectrum(self):
        fitter = Fitter()

        self.assertFalse(fitter.set_data(np.arange(10), np.zeros(10)))
        self.assertFalse(fitter.set_data(np.arange(10), np.ones(5)))
        self.assertFalse(fitter.set_data(np.ones((3, 3)), np.ones((3, 3))))
        self.assertEqual(fitter.regions(), [])

    def test_apply_invalid_settings(self):
        fitter = Fitter()
        with self.assertRaises(ValueError):
            fitter.apply_settings(FitSettings(kon_width=0))


class TestFindRegions(unittest.TestCase):
    """Test region construction."""

    def setUp(self):
        self.x, self.y = two_peak_spectrum()
        self.fitter = Fitter(FitSettings())
        self.fitter.set_data(self.x, self.y, name='two peaks')

    def test_one_region_per_peak(self):
        self.assertEqual(self.fitter.find_regions(), 2)

        first, second = self.fitter.regions()
        self.assertTrue(first.overlaps(300))
        self.assertTrue(second.overlaps(700))
        self.assertLess(first.right, second.left)

    def test_merge_close_candidates(self):
        x, y = generate_synthetic_spectrum(1000, peaks=[(300, 800, 4), (318, 600, 4)],
                                           background_level=20, poisson=False)
        fitter = Fitter()
        fitter.set_data(x, y)

        self.assertEqual(fitter.find_regions(), 1)
        roi = fitter.regions()[0]
        self.assertTrue(roi.overlaps(300) and roi.overlaps(318))

    def test_regions_disjoint(self):
        for spacing in (10, 20, 30, 45, 60):
            for sigma_a, sigma_b in ((1.5, 4), (4, 1.5), (2, 6)):
                peaks = [(300, 800, sigma_a), (300 + spacing, 500, sigma_b),
                         (300 + 2 * spacing, 300, sigma_a)]
                x, y = generate_synthetic_spectrum(1000, peaks=peaks,
                                                   background_level=20, poisson=False)
                fitter = Fitter()
                fitter.set_data(x, y)
                fitter.find_regions()

                regions = fitter.regions()
                with self.subTest(spacing=spacing, sigmas=(sigma_a, sigma_b)):
                    self.assertGreaterEqual(len(regions), 1)
                    for first, second in zip(regions, regions[1:]):
                        self.assertLess(first.right, second.left)

    def test_energy_cutoff(self):
        settings = FitSettings(calibration=Calibration([0.0, 0.5]), finder_cutoff_kev=200)
        fitter = Fitter(settings)
        fitter.set_data(self.x, self.y)

        # 300 -> 150 keV is below the cutoff; the last region is always kept
        self.assertEqual(fitter.find_regions(), 1)
        self.assertTrue(fitter.regions()[0].overlaps(700))

    def test_empty_fitter(self):
        self.assertEqual(Fitter().find_regions(), 0)


class TestAutoFitRegions(unittest.TestCase):
    """Test fitting of all regions."""

    def setUp(self):
        self.x, self.y = two_peak_spectrum()
        self.fitter = Fitter()
        self.fitter.set_data(self.x, self.y)
        self.fitter.find_regions()

    def test_fit_all(self):
        self.assertEqual(self.fitter.auto_fit_regions(), 2)

        peaks = self.fitter.peaks()
        self.assertEqual(len(peaks), 2)
        self.assertAlmostEqual(peaks[0].center, 300, delta=1)
        self.assertAlmostEqual(peaks[1].center, 700, delta=1)

    def test_fit_all_parallel(self):
        self.assertEqual(self.fitter.auto_fit_regions(max_workers=2), 2)
        self.assertEqual(len(self.fitter.peaks()), 2)

    def test_interrupted_before_start(self):
        interruptor = threading.Event()
        interruptor.set()

        self.assertEqual(self.fitter.auto_fit_regions(interruptor), 0)
        self.assertEqual(self.fitter.peaks(), [])


class TestFitterEditing(unittest.TestCase):
    """Test peak edits routed through the Fitter."""

    def setUp(self):
        x, y = generate_synthetic_spectrum(1000, peaks=[(300, 800, 4)],
                                           background_level=20, poisson=False)
        self.fitter = Fitter()
        self.fitter.set_data(x, y)
        self.fitter.find_regions()
        self.fitter.auto_fit_regions()

    def test_add_peak_outside_regions(self):
        before = self.fitter.regions()
        self.assertEqual(len(before), 1)

        self.assertTrue(self.fitter.add_peak(600, 640))

        regions = self.fitter.regions()
        self.assertEqual(len(regions), 2)
        new = [roi for roi in regions if roi is not before[0]]
        self.assertEqual(len(new), 1)
        self.assertLessEqual(new[0].left, 600)
        self.assertGreaterEqual(new[0].right, 640)
        self.assertIs(regions[0], before[0])

    def test_add_peak_invalid(self):
        self.assertFalse(self.fitter.add_peak(640, 600))
        self.assertFalse(self.fitter.add_peak(2000, 2010))
        self.assertEqual(len(self.fitter.regions()), 1)

    def test_add_peak_narrow_bounds(self):
        x, y = generate_synthetic_spectrum(1000, peaks=[(300, 800, 4), (605, 500, 1.5)],
                                           background_level=20, poisson=False)
        fitter = Fitter()
        fitter.set_data(x, y)
        fitter.find_regions()
        for roi in fitter.regions():
            if roi.overlaps(590, 620):
                fitter.delete_roi(roi.left)
        before = fitter.regions()

        self.assertTrue(fitter.add_peak(600, 610))

        regions = fitter.regions()
        self.assertEqual(len(regions), len(before) + 1)
        new = [roi for roi in regions if all(roi is not old for old in before)]
        self.assertEqual(len(new), 1)
        self.assertLessEqual(new[0].left, 600)
        self.assertGreaterEqual(new[0].right, 610)
        self.assertTrue(any(abs(p.center - 605) < 1 for p in new[0].peaks()))

    def test_add_peak_narrow_bounds_stays_clear_of_neighbour(self):
        roi = self.fitter.regions()[0]
        left = roi.right + 2

        self.assertTrue(self.fitter.add_peak(left, left + 10))

        regions = self.fitter.regions()
        self.assertEqual(len(regions), 2)
        self.assertLess(regions[0].right, regions[1].left)
        self.assertLessEqual(regions[1].left, left)
        self.assertGreaterEqual(regions[1].right, left + 10)

    def test_remove_and_replace(self):
        peak = self.fitter.peaks()[0]
        roi = self.fitter.parent_of(peak.peak_id)
        self.assertIsNotNone(roi)

        edited = peak.copy()
        edited.hypermet.height.value *= 0.5
        self.assertTrue(self.fitter.replace_peak(edited))
        self.assertAlmostEqual(self.fitter.peaks()[0].hypermet.height.value,
                               edited.hypermet.height.value)

        self.assertTrue(self.fitter.remove_peaks([peak.peak_id]))
        self.assertEqual(self.fitter.peaks(), [])
        self.assertIsNone(self.fitter.parent_of(peak.peak_id))

    def test_adjust_edges(self):
        roi = self.fitter.regions()[0]
        key = roi.left

        self.assertTrue(self.fitter.adjust_LB(key, roi.left - 5, roi.left + 1))

        adjusted = self.fitter.regions()[0]
        self.assertEqual(adjusted.left, key - 5)
        self.assertFalse(self.fitter.adjust_LB(-1.0, 0, 5))

    def test_delete_roi(self):
        key = self.fitter.regions()[0].left
        self.assertTrue(self.fitter.delete_roi(key))
        self.assertFalse(self.fitter.delete_roi(key))
        self.assertEqual(self.fitter.regions(), [])


if __name__ == '__main__':
    unittest.main()
