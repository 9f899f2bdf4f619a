"""
Unit tests for region-of-interest fitting.
"""

import unittest
import threading
import numpy as np
from pathlib import Path
import sys

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from gammaroi.calibration import Calibration
from gammaroi.detection import Finder
from gammaroi.fitting import Hypermet
from gammaroi.roi import ROI, Peak, next_peak_id, EMPTY, SEARCHED, FITTED
from gammaroi.settings import FitSettings
from gammaroi.utils import generate_synthetic_spectrum, gaussian_area
from tests import single_peak_spectrum, doublet_spectrum, peak_sigma_to_width


def fitted_roi(x, y, settings=None):
    roi = ROI(settings or FitSettings())
    roi.set_data(x, y, x[0], x[-1])
    roi.auto_fit()
    return roi


def parent_finder(x, y, settings=None):
    finder = Finder(settings or FitSettings())
    finder.set_data(x, y)
    return finder


def state_of(roi):
    return ([(p.peak_id, p.hypermet.center.value if p.hypermet else None,
              p.hypermet.height.value if p.hypermet else None) for p in roi.peaks()],
            roi.background.coefficients,
            roi.LB, roi.RB)


class TestROISetup(unittest.TestCase):
    """Test region initialisation."""

    def test_set_data(self):
        x, y = single_peak_spectrum()
        roi = ROI()
        self.assertEqual(roi.state, EMPTY)

        self.assertTrue(roi.set_data(x, y, 50, 150))

        self.assertEqual(roi.state, SEARCHED)
        self.assertEqual(roi.left, 50)
        self.assertEqual(roi.right, 150)
        self.assertEqual(roi.LB.width, roi.settings.background_edge_samples)
        self.assertEqual(roi.RB.end, 150)
        self.assertEqual(roi.peaks(), [])
        self.assertEqual(len(roi.finder.filtered), 1)

    def test_set_data_rejects_bad_range(self):
        x, y = single_peak_spectrum()
        roi = ROI()

        self.assertFalse(roi.set_data(x, y, 150, 50))
        self.assertFalse(roi.set_data(x, y, 10, 15))
        self.assertFalse(roi.set_data(x, y[:-1], 0, 199))
        self.assertEqual(roi.state, EMPTY)

    def test_auto_fit_on_empty_roi(self):
        self.assertFalse(ROI().auto_fit())


class TestAutoFit(unittest.TestCase):
    """Test automatic fitting of a region."""

    def test_single_peak(self):
        x, y = single_peak_spectrum()
        roi = ROI(FitSettings())
        roi.set_data(x, y, x[0], x[-1])

        self.assertTrue(roi.auto_fit())

        peaks = roi.peaks()
        self.assertEqual(len(peaks), 1)
        peak = peaks[0]
        self.assertEqual(roi.state, FITTED)
        self.assertAlmostEqual(peak.center, 100, delta=1)
        self.assertIsNotNone(peak.sum4)
        expected = gaussian_area(500, 5)
        self.assertLess(abs(peak.sum4.net_area - expected) / expected, 0.05)
        self.assertAlmostEqual(peak.area()[0], expected, delta=0.01 * expected)
        self.assertEqual(roi.history[0].description, 'Autofit')

    def test_no_peaks(self):
        x, y = generate_synthetic_spectrum(100, peaks=[], background_level=20, poisson=False)
        roi = ROI()
        roi.set_data(x, y, x[0], x[-1])

        self.assertFalse(roi.auto_fit())
        self.assertEqual(roi.state, SEARCHED)
        self.assertEqual(roi.peaks(), [])

    def test_sum4_only(self):
        x, y = single_peak_spectrum()
        roi = fitted_roi(x, y, FitSettings(sum4_only=True))

        peaks = roi.peaks()
        self.assertEqual(len(peaks), 1)
        self.assertTrue(peaks[0].is_sum4_only)
        self.assertAlmostEqual(peaks[0].center, 100, delta=1)
        self.assertTrue(np.isnan(roi.rsq))

    def test_energy_and_count_rate(self):
        settings = FitSettings(calibration=Calibration([1.0, 0.5]), live_time=10.0)
        x, y = single_peak_spectrum()
        peak = fitted_roi(x, y, settings).peaks()[0]

        self.assertAlmostEqual(peak.energy, 1.0 + 0.5 * peak.center)
        self.assertAlmostEqual(peak.fwhm_energy, 0.5 * peak.fwhm)
        self.assertAlmostEqual(peak.cps_hyp, peak.hypermet.area()[0] / 10.0)
        self.assertAlmostEqual(peak.cps_sum4, peak.sum4.net_area / 10.0)

    def test_render(self):
        x, y = single_peak_spectrum()
        roi = fitted_roi(x, y)

        self.assertEqual(len(roi.hr_x), 4 * len(x))
        self.assertEqual(roi.hr_x[1] - roi.hr_x[0], 0.25)
        self.assertEqual(len(roi.hr_fullfit), len(roi.hr_x))
        self.assertGreater(np.max(roi.hr_fullfit), 500)
        np.testing.assert_allclose(roi.finder.y_resid, y - roi.finder.y_fit)
        self.assertLess(np.max(np.abs(roi.finder.y_resid)), 1.0)


class TestIterativeFit(unittest.TestCase):
    """Test residual refinement."""

    def test_close_doublet_not_split_from_residual(self):
        settings = FitSettings(resid_too_close=3.0, resid_auto=False)
        x, y = doublet_spectrum()
        roi = fitted_roi(x, y, settings)
        before = len(roi.peaks())

        self.assertEqual(roi.iterative_fit(), 0)
        self.assertEqual(len(roi.peaks()), before)

    def test_joint_regression_resolves_doublet(self):
        settings = FitSettings(resid_auto=False)
        x, y = doublet_spectrum()
        roi = ROI(settings)
        roi.set_data(x, y, 80, 125)
        width = peak_sigma_to_width(1.5)
        roi.load_fit([Peak(next_peak_id(), hypermet=Hypermet(99.5, 450, width, settings)),
                      Peak(next_peak_id(), hypermet=Hypermet(103.5, 250, width, settings))])

        self.assertTrue(roi.rebuild())

        centers = [p.center for p in roi.peaks()]
        self.assertEqual(len(centers), 2)
        self.assertAlmostEqual(centers[0], 100, delta=0.1)
        self.assertAlmostEqual(centers[1], 103, delta=0.1)

    def test_auto_fit_resolves_doublet(self):
        settings = FitSettings(kon_width=2, resid_too_close=3.0)
        x, y = generate_synthetic_spectrum(200, peaks=[(100, 500, 1.0), (103, 300, 1.0)],
                                           background_level=10, poisson=False)
        roi = ROI(settings)
        roi.set_data(x, y, x[0], x[-1])

        self.assertTrue(roi.auto_fit())

        centers = [p.center for p in roi.peaks()]
        self.assertEqual(len(centers), 2)
        self.assertAlmostEqual(centers[0], 100, delta=0.1)
        self.assertAlmostEqual(centers[1], 103, delta=0.1)
        self.assertTrue(all(p.hypermet is not None for p in roi.peaks()))

        self.assertEqual(roi.iterative_fit(), 0)
        self.assertEqual(len(roi.peaks()), 2)

    def test_history_rsq_non_decreasing(self):
        x, y = doublet_spectrum()
        roi = fitted_roi(x, y, FitSettings(resid_too_close=0.1))

        values = [s.rsq for s in roi.history]
        self.assertGreaterEqual(len(values), 1)
        self.assertLessEqual(len(values), 1 + roi.settings.resid_max_iterations)
        for earlier, later in zip(values, values[1:]):
            self.assertGreaterEqual(later, earlier)
        self.assertEqual(roi.current_fit, len(roi.history) - 1)

    def test_interrupted(self):
        x, y = doublet_spectrum()
        roi = fitted_roi(x, y, FitSettings(resid_auto=False, resid_too_close=0.1))
        interruptor = threading.Event()
        interruptor.set()

        self.assertEqual(roi.iterative_fit(interruptor), 0)
        self.assertEqual(len(roi.history), 1)

    def test_add_from_resid_with_hint(self):
        settings = FitSettings(resid_auto=False)
        x, y = generate_synthetic_spectrum(200, peaks=[(70, 500, 3), (130, 300, 3)],
                                           background_level=10, poisson=False)
        roi = ROI(settings)
        roi.set_data(x, y, x[0], x[-1])
        roi.load_fit([Peak(next_peak_id(),
                           hypermet=Hypermet(70, 450, peak_sigma_to_width(3), settings))])
        self.assertTrue(roi.rebuild())

        self.assertTrue(roi.add_peak(parent_finder(x, y, settings), 120, 140))

        centers = [p.center for p in roi.peaks()]
        self.assertEqual(len(centers), 2)
        self.assertAlmostEqual(centers[1], 130, delta=1)


class TestHistory(unittest.TestCase):
    """Test snapshots and rollback."""

    def setUp(self):
        x, y = single_peak_spectrum()
        self.x, self.y = x, y
        self.roi = fitted_roi(x, y)
        self.roi.add_sum4_peak(150, 160)

    def test_snapshots(self):
        self.assertEqual(len(self.roi.history), 2)
        self.assertEqual(self.roi.fit_description, 'Summation peak added')
        self.assertEqual(len(self.roi.history[0].peaks), 1)
        self.assertEqual(len(self.roi.history[1].peaks), 2)

    def test_rollback_idempotent(self):
        self.assertTrue(self.roi.rollback(0))
        first = state_of(self.roi)
        self.assertTrue(self.roi.rollback(0))
        second = state_of(self.roi)

        self.assertEqual(first, second)
        self.assertEqual(len(self.roi.peaks()), 1)
        self.assertEqual(self.roi.current_fit, 0)
        self.assertEqual(len(self.roi.history), 2)

    def test_rollback_out_of_range(self):
        before = state_of(self.roi)
        self.assertFalse(self.roi.rollback(5))
        self.assertFalse(self.roi.rollback(-1))
        self.assertEqual(state_of(self.roi), before)

    def test_snapshot_not_affected_by_later_edits(self):
        peak_id = self.roi.peaks()[0].peak_id
        self.roi.remove_peaks([peak_id])

        self.assertEqual(len(self.roi.history[0].peaks), 1)
        self.roi.rollback(0)
        self.assertTrue(self.roi.contains(peak_id))


class TestEditing(unittest.TestCase):
    """Test manual edits and edge adjustment."""

    def setUp(self):
        self.x, self.y = single_peak_spectrum()
        self.parent = parent_finder(self.x, self.y)
        self.roi = fitted_roi(self.x, self.y)

    def assertPeaksInsideEdges(self, roi):
        for peak in roi.peaks():
            self.assertGreater(peak.center, roi.LB.end)
            self.assertLess(peak.center, roi.RB.start)

    def test_adjust_LB(self):
        self.assertTrue(self.roi.adjust_LB(self.parent, 20, 26))

        self.assertEqual(self.roi.left, 20)
        self.assertEqual(self.roi.LB.end, 26)
        self.assertEqual(len(self.roi.peaks()), 1)
        self.assertPeaksInsideEdges(self.roi)

    def test_adjust_LB_culls_peak(self):
        self.assertTrue(self.roi.adjust_LB(self.parent, 95, 101))

        self.assertEqual(self.roi.peaks(), [])
        self.assertPeaksInsideEdges(self.roi)

    def test_adjust_LB_rejects_crossing(self):
        before = state_of(self.roi)
        self.assertFalse(self.roi.adjust_LB(self.parent, 190, 195))
        self.assertFalse(self.roi.adjust_LB(self.parent, 30, 20))
        self.assertEqual(state_of(self.roi), before)

    def test_adjust_RB(self):
        self.assertTrue(self.roi.adjust_RB(self.parent, 150, 156))

        self.assertEqual(self.roi.right, 156)
        self.assertEqual(self.roi.RB.start, 150)
        self.assertEqual(len(self.roi.peaks()), 1)
        self.assertPeaksInsideEdges(self.roi)
        self.assertFalse(self.roi.adjust_RB(self.parent, 3, 10))

    def test_adjust_RB_culls_peak(self):
        self.assertTrue(self.roi.adjust_RB(self.parent, 99, 105))

        self.assertEqual(self.roi.peaks(), [])
        self.assertPeaksInsideEdges(self.roi)

    def test_adjust_bounds(self):
        self.assertTrue(self.roi.adjust_bounds(self.parent, 60, 140))

        self.assertEqual(self.roi.left, 60)
        self.assertEqual(self.roi.right, 140)
        self.assertEqual(len(self.roi.peaks()), 1)
        self.assertFalse(self.roi.adjust_bounds(self.parent, 60, 65))

    def test_remove_peaks(self):
        peak_id = self.roi.peaks()[0].peak_id

        self.assertFalse(self.roi.remove_peaks([-1]))
        self.assertTrue(self.roi.remove_peaks([peak_id]))
        self.assertEqual(self.roi.peaks(), [])
        self.assertEqual(self.roi.fit_description, 'Peaks removed')

    def test_peak_ids_stable(self):
        peak_id = self.roi.peaks()[0].peak_id
        self.assertTrue(self.roi.rebuild())
        self.assertTrue(self.roi.contains(peak_id))

    def test_replace_peak(self):
        peak = self.roi.peaks()[0].copy()
        peak.hypermet.height.value = 400

        self.assertTrue(self.roi.replace_peak(peak))
        self.assertEqual(self.roi.peak(peak.peak_id).hypermet.height.value, 400)

        outside = peak.copy()
        outside.hypermet.center.value = 2.0
        self.assertFalse(self.roi.replace_peak(outside))

    def test_add_sum4_peak(self):
        self.assertTrue(self.roi.add_sum4_peak(150, 160))

        sum4_only = [p for p in self.roi.peaks() if p.is_sum4_only]
        self.assertEqual(len(sum4_only), 1)
        self.assertEqual(sum4_only[0].sum4.left_bin, 150)
        self.assertEqual(sum4_only[0].sum4.right_bin, 160)

    def test_add_peak_widens_region(self):
        roi = ROI()
        roi.set_data(self.x, self.y, 40, 120)
        roi.auto_fit()

        self.assertTrue(roi.add_peak(self.parent, 20, 60))
        self.assertLessEqual(roi.left, 20)


if __name__ == '__main__':
    unittest.main()
