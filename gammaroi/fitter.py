"""
Spectrum-level orchestration of ROI fitting.

The Fitter owns the whole spectrum and a collection of non-overlapping ROIs
keyed by their left bin. It builds regions from Finder candidates, routes
manual peak edits to the owning region and fits all regions, optionally in
parallel. Mutations of the region collection happen under a single lock;
worker threads only ever operate on their own ROI copies.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import List, Dict, Optional, Iterable, Tuple
import logging
import threading

import numpy as np

from .detection import Finder
from .roi import ROI, Peak
from .settings import FitSettings
from .utils import validate_spectrum

logger = logging.getLogger(__name__)


class Fitter:
    """Peak fitting across all regions of one spectrum."""

    def __init__(self, settings: Optional[FitSettings] = None):
        self.settings = settings or FitSettings()
        self.finder = Finder(self.settings)
        self.name = ''
        self.total_count = 0.0
        self._regions: Dict[float, ROI] = {}
        self._lock = threading.RLock()

    def __repr__(self):
        return f"Fitter({self.name!r}, {len(self._regions)} regions)"

    def set_data(self, x: np.ndarray, y: np.ndarray,
                 bits: int = 0, live_time: float = 0.0, real_time: float = 0.0,
                 name: str = '') -> bool:
        """
        Load a spectrum, trimming empty bins at both ends.

        Returns:
            False for non 1-D, mismatched or all-zero data
        """
        if not validate_spectrum(x, y):
            logger.warning("Rejected spectrum %r: not a valid 1-D histogram", name)
            return False

        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        nonzero = np.nonzero(y > 0)[0]
        if len(nonzero) == 0:
            logger.warning("Rejected spectrum %r: no counts", name)
            return False

        first, last = nonzero[0], nonzero[-1]
        with self._lock:
            self.settings = self.settings.copy()
            self.settings.bits = bits
            self.settings.live_time = live_time
            self.settings.real_time = real_time
            self.name = name
            self.total_count = float(np.sum(y))
            self._regions = {}
            self.finder = Finder(self.settings)
            return self.finder.set_data(x[first:last + 1], y[first:last + 1])

    def clear(self):
        with self._lock:
            self.finder.clear()
            self._regions = {}

    def apply_settings(self, settings: FitSettings):
        """Install new settings on the spectrum Finder and every region."""
        settings.validate()
        with self._lock:
            self.settings = settings
            self.finder.settings = settings
            for roi in self._regions.values():
                roi.settings = settings
                roi.finder.settings = settings
            if not self._regions and not self.finder.empty:
                self.finder.find_peaks(settings.kon_width, settings.kon_sigma_spectrum)

    # Regions

    def regions(self) -> List[ROI]:
        """ROIs ordered by left bin."""
        with self._lock:
            return [self._regions[k] for k in sorted(self._regions)]

    def _margin(self, index: int) -> float:
        fw = self.finder.fw_theoretical_bin
        if len(fw) == 0:
            return 0.0
        return self.settings.roi_extend_background * fw[index]

    def _above_cutoff(self, index: int) -> bool:
        calibration = self.settings.calibration
        if calibration is None or not calibration.valid:
            return True
        return calibration.transform(self.finder.x[index]) > self.settings.finder_cutoff_kev

    def find_regions(self) -> int:
        """
        Build regions from the candidates of a spectrum search.

        Candidate windows closer than twice the background margin are merged;
        every region is extended by the margin on both sides. With more than
        two regions, gaps between neighbours are split at the midpoint so
        each region takes the background samples on its side.

        Returns:
            Number of regions created
        """
        with self._lock:
            self._regions = {}
            f = self.finder
            if f.empty:
                return 0

            f.y_resid = f.y.copy()
            f.find_peaks(self.settings.kon_width, self.settings.kon_sigma_spectrum)
            if not f.filtered:
                return 0

            last = len(f.x) - 1
            bounds: List[Tuple[int, int]] = []

            L, R = f.lefts[0], f.rights[0]
            for left, right in zip(f.lefts[1:], f.rights[1:]):
                margin = self._margin(R)
                if left < R + 2 * margin:
                    L = min(L, left)
                    R = max(R, right)
                    continue

                L = max(0, int(L - margin))
                R = min(last, int(R + margin))
                if self._above_cutoff(R):
                    bounds.append((L, R))
                L, R = left, right

            margin = self._margin(R)
            bounds.append((max(0, int(L - margin)), min(last, int(R + margin))))

            if len(bounds) > 2:
                for i in range(len(bounds) - 1):
                    (L0, R0), (L1, R1) = bounds[i], bounds[i + 1]
                    if R0 < L1:
                        mid = (L1 + R0) // 2
                        bounds[i] = (L0, mid - 1)
                        bounds[i + 1] = (mid + 1, R1)

            for i in range(len(bounds) - 1):
                (L0, R0), (L1, _) = bounds[i], bounds[i + 1]
                if R0 >= L1:
                    bounds[i] = (L0, L1 - 1)

            for L, R in bounds:
                roi = ROI(self.settings)
                if roi.set_data(f.x, f.y, f.x[L], f.x[R]):
                    self._regions[roi.left] = roi
                else:
                    logger.debug("Skipped region %g-%g: too short", f.x[L], f.x[R])

            logger.info("Found %d regions", len(self._regions))
            return len(self._regions)

    def insert_roi(self, roi: ROI) -> bool:
        """Add a region built elsewhere unless it overlaps an existing one."""
        with self._lock:
            if roi.finder.empty or self._overlaps_others(roi, None):
                return False
            self._regions[roi.left] = roi
            return True

    def delete_roi(self, left_bin: float) -> bool:
        with self._lock:
            return self._regions.pop(left_bin, None) is not None

    def parent_of(self, peak_id: int) -> Optional[ROI]:
        """Region holding the peak with this id."""
        with self._lock:
            for roi in self._regions.values():
                if roi.contains(peak_id):
                    return roi
            return None

    def _replace(self, old: Optional[ROI], new: ROI):
        if old is not None:
            self._regions.pop(old.left, None)
        self._regions[new.left] = new

    def _overlaps_others(self, roi: ROI, exclude: Optional[ROI]) -> bool:
        return any(other is not exclude and other.overlaps(roi.left, roi.right)
                   for other in self._regions.values())

    # Peak editing

    def add_peak(self, left_bin: float, right_bin: float,
                 interruptor: Optional[threading.Event] = None) -> bool:
        """
        Add a peak between two bins.

        The owning region handles the request; a new region is created when
        no region overlaps the bounds.

        Returns:
            True if a region changed or was created
        """
        with self._lock:
            if self.finder.empty or not left_bin < right_bin:
                return False

            for roi in self.regions():
                if roi.overlaps(left_bin, right_bin):
                    trial = roi.copy()
                    if not trial.add_peak(self.finder, left_bin, right_bin, interruptor):
                        return False
                    if self._overlaps_others(trial, roi):
                        logger.debug("Widened region %g-%g would overlap a neighbour",
                                     trial.left, trial.right)
                        return False
                    self._replace(roi, trial)
                    return True

            first, last = self._new_region_range(left_bin, right_bin)
            if last <= first:
                return False
            roi = ROI(self.settings)
            x = self.finder.x
            if not roi.set_data(x, self.finder.y, x[first], x[last]):
                return False
            if not roi.auto_fit(interruptor):
                roi.add_sum4_peak(left_bin, right_bin)
            self._replace(None, roi)
            return True

    def _new_region_range(self, left_bin: float, right_bin: float) -> Tuple[int, int]:
        """
        Index range of a new region over [left_bin, right_bin].

        A range too short for two background edges is widened by one edge on
        each side, without reaching the spectrum ends or a neighbouring region.
        """
        x = self.finder.x
        first = int(np.searchsorted(x, left_bin, side='left'))
        last = int(np.searchsorted(x, right_bin, side='right')) - 1
        samples = self.settings.background_edge_samples
        if last - first + 1 >= 2 * samples + 1:
            return first, last

        lower, upper = 0, len(x) - 1
        for other in self._regions.values():
            if other.right < left_bin:
                lower = max(lower, int(np.searchsorted(x, other.right, side='right')))
            elif other.left > right_bin:
                upper = min(upper, int(np.searchsorted(x, other.left, side='left')) - 1)
        return max(lower, first - samples), min(upper, last + samples)

    def remove_peaks(self, peak_ids: Iterable[int]) -> bool:
        peak_ids = set(peak_ids)
        removed = False
        with self._lock:
            for roi in self.regions():
                if any(roi.contains(i) for i in peak_ids):
                    trial = roi.copy()
                    if trial.remove_peaks(peak_ids):
                        self._replace(roi, trial)
                        removed = True
        return removed

    def replace_peak(self, peak: Peak) -> bool:
        with self._lock:
            roi = self.parent_of(peak.peak_id)
            if roi is None:
                return False
            trial = roi.copy()
            if not trial.replace_peak(peak):
                return False
            self._replace(roi, trial)
            return True

    def _adjust(self, left_key: float, method: str, left_bin: float, right_bin: float) -> bool:
        with self._lock:
            roi = self._regions.get(left_key)
            if roi is None:
                return False
            trial = roi.copy()
            if not getattr(trial, method)(self.finder, left_bin, right_bin):
                return False
            if self._overlaps_others(trial, roi):
                return False
            self._replace(roi, trial)
            return True

    def adjust_LB(self, left_key: float, left_bin: float, right_bin: float) -> bool:
        """Move the left background edge of the region keyed by left_key."""
        return self._adjust(left_key, 'adjust_LB', left_bin, right_bin)

    def adjust_RB(self, left_key: float, left_bin: float, right_bin: float) -> bool:
        """Move the right background edge of the region keyed by left_key."""
        return self._adjust(left_key, 'adjust_RB', left_bin, right_bin)

    def adjust_bounds(self, left_key: float, left_bin: float, right_bin: float) -> bool:
        return self._adjust(left_key, 'adjust_bounds', left_bin, right_bin)

    # Fitting

    def auto_fit_regions(self, interruptor: Optional[threading.Event] = None,
                         max_workers: int = 1) -> int:
        """
        Auto-fit every region.

        Each worker fits its own copy of a region; fitted copies are swapped
        into the collection by the calling thread.

        Parameters:
            interruptor: Cancellation event shared by all workers
            max_workers: Number of worker threads

        Returns:
            Number of regions holding peaks afterwards
        """
        with self._lock:
            originals = self.regions()
        trials = [roi.copy() for roi in originals]

        def work(trial: ROI) -> ROI:
            if interruptor is None or not interruptor.is_set():
                trial.auto_fit(interruptor)
            return trial

        if max_workers > 1 and len(trials) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                fitted = list(executor.map(work, trials))
        else:
            fitted = [work(t) for t in trials]

        with self._lock:
            for original, trial in zip(originals, fitted):
                if self._regions.get(original.left) is original:
                    self._replace(original, trial)

        count = sum(1 for roi in fitted if roi.peaks())
        logger.info("Fitted %d of %d regions", count, len(fitted))
        return count

    def peaks(self) -> List[Peak]:
        """All peaks of all regions in energy order."""
        with self._lock:
            result = [p for roi in self._regions.values() for p in roi.peaks()]
        return sorted(result, key=lambda p: p.energy)
