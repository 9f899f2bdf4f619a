"""
Peak candidate search for gamma spectra.

The Finder holds a contiguous range of a spectrum together with the current
model of it and searches the residual for peak candidates. The search
response is the Savitzky-Golay smoothed negative second derivative divided
by its Poisson noise, so a threshold is expressed in standard deviations.
"""

from typing import List, Optional
import copy
import logging

import numpy as np
from scipy.signal import savgol_filter, savgol_coeffs, find_peaks as scipy_find_peaks

from .settings import FitSettings
from .utils import validate_spectrum

logger = logging.getLogger(__name__)


def estimate_peak_width(counts: np.ndarray, peak_idx: int, baseline: float = 0.0) -> float:
    """
    Estimate FWHM of a peak by walking down to half maximum.

    Parameters:
        counts: Spectrum counts
        peak_idx: Peak index
        baseline: Level subtracted before taking the half maximum

    Returns:
        Estimated FWHM in channels
    """
    half_max = baseline + (counts[peak_idx] - baseline) / 2

    left_idx = peak_idx
    while left_idx > 0 and counts[left_idx] > half_max:
        left_idx -= 1

    right_idx = peak_idx
    while right_idx < len(counts) - 1 and counts[right_idx] > half_max:
        right_idx += 1

    fwhm = float(right_idx - left_idx)

    # Sanity check
    if fwhm < 1:
        fwhm = 1.0
    elif fwhm > len(counts) / 4:
        fwhm = max(len(counts) / 4, 1.0)

    return fwhm


class Finder:
    """
    Candidate peak search over one range of a spectrum.

    Attributes:
        x, y: Bin values and counts of the range
        y_fit, y_background: Current model and its background+step part
        y_resid: y - y_fit, the data searched by find_peaks
        response: Significance of the last search, per index
        prelim: Indices of all local maxima of the response
        filtered: Indices of candidates passing the significance test
        lefts, rights: Window bounds (indices) parallel to filtered
        fw_theoretical_bin: Expected FWHM in bins at each index
    """

    def __init__(self, settings: Optional[FitSettings] = None):
        self.settings = settings or FitSettings()
        self.clear()

    def clear(self):
        self.x = np.array([])
        self.y = np.array([])
        self.y_fit = np.array([])
        self.y_background = np.array([])
        self.y_resid = np.array([])
        self.fw_theoretical_bin = np.array([])
        self._clear_search()

    def _clear_search(self):
        self.response = np.zeros(len(self.x))
        self.prelim: List[int] = []
        self.filtered: List[int] = []
        self.lefts: List[int] = []
        self.rights: List[int] = []

    @property
    def empty(self) -> bool:
        return len(self.x) == 0

    def __len__(self):
        return len(self.x)

    def set_data(self, x: np.ndarray, y: np.ndarray) -> bool:
        """
        Replace the data range; the model is reset to zero.

        Returns:
            False (and an empty finder) for unusable input
        """
        self.clear()
        if not validate_spectrum(x, y):
            logger.debug("Finder rejected data of length %d/%d", np.size(x), np.size(y))
            return False

        self.x = np.array(x, dtype=float)
        self.y = np.array(y, dtype=float)
        self.y_fit = np.zeros_like(self.y)
        self.y_background = np.zeros_like(self.y)
        self.y_resid = self.y.copy()
        self._clear_search()
        self._calc_fw_theoretical()
        return True

    def set_fit(self, y_fit: np.ndarray, y_background: np.ndarray) -> bool:
        y_fit = np.asarray(y_fit, dtype=float)
        y_background = np.asarray(y_background, dtype=float)
        if len(y_fit) != len(self.y) or len(y_background) != len(self.y):
            return False

        self.y_fit = y_fit.copy()
        self.y_background = y_background.copy()
        self.y_resid = self.y - self.y_fit
        return True

    def find_peaks(self, width: Optional[int] = None, sigma: Optional[float] = None) -> int:
        """
        Search the residual for peak candidates.

        Parameters:
            width: Half width of the smoothing window in bins
            sigma: Significance threshold in standard deviations

        Returns:
            Number of candidates found
        """
        width = int(width if width is not None else self.settings.kon_width)
        sigma = float(sigma if sigma is not None else self.settings.kon_sigma_spectrum)

        self._clear_search()
        window = 2 * width + 1
        if width < 1 or len(self.x) < window:
            return 0

        smoothed = savgol_filter(self.y, window, 2, mode='interp')
        curvature = savgol_filter(self.y_resid, window, 2, deriv=2, mode='interp')
        noise = np.sqrt(np.maximum(smoothed, 1.0)) * np.linalg.norm(savgol_coeffs(window, 2, deriv=2))
        self.response = -curvature / noise

        self.prelim = [int(i) for i in scipy_find_peaks(self.response)[0]]

        above = (self.response > sigma).astype(int)
        steps = np.diff(np.concatenate(([0], above, [0])))
        starts = np.where(steps == 1)[0]
        ends = np.where(steps == -1)[0] - 1

        last = len(self.x) - 1
        estimates = []
        for start, end in zip(starts, ends):
            if end - start + 1 < self.settings.kon_min_width:
                continue

            peak = int(start + np.argmax(self.response[start:end + 1]))
            span = end - start + 1
            lo = max(0, start - 3 * span)
            hi = min(last, end + 3 * span)
            fwhm = estimate_peak_width(self.y_resid, peak,
                                       baseline=float(np.min(self.y_resid[lo:hi + 1])))
            estimates.append(fwhm)

            self.filtered.append(peak)
            self.lefts.append(int(max(0, np.floor(start - fwhm))))
            self.rights.append(int(min(last, np.ceil(end + fwhm))))

        self._calc_fw_theoretical(estimates)
        logger.debug("Finder: %d local maxima, %d candidates above %.1f sigma",
                     len(self.prelim), len(self.filtered), sigma)
        return len(self.filtered)

    def _calc_fw_theoretical(self, estimates: Optional[List[float]] = None):
        calibration = self.settings.fwhm_calibration
        if calibration is not None and calibration.valid:
            self.fw_theoretical_bin = np.asarray(calibration.transform(self.x), dtype=float)
        elif estimates:
            self.fw_theoretical_bin = np.interp(np.arange(len(self.x)), self.filtered, estimates)
        else:
            self.fw_theoretical_bin = np.full(len(self.x), 2.0 * self.settings.kon_width)

    def index_of(self, bin_value: float) -> int:
        """Index of the first bin >= bin_value, clamped to the range; -1 if empty."""
        if self.empty:
            return -1
        return int(min(np.searchsorted(self.x, bin_value, side='left'), len(self.x) - 1))

    def clone_range(self, first: int, last: int) -> 'Finder':
        """
        New Finder over indices [first, last] of this one.

        Returns:
            Finder with the data and model sliced; empty for an invalid range
        """
        clone = Finder(self.settings)
        if self.empty or first < 0 or last >= len(self.x) or first > last:
            return clone

        clone.set_data(self.x[first:last + 1], self.y[first:last + 1])
        clone.set_fit(self.y_fit[first:last + 1], self.y_background[first:last + 1])
        return clone

    def copy(self) -> 'Finder':
        return copy.deepcopy(self)
