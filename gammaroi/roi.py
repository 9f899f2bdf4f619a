"""
Region of interest: one contiguous fitting unit of a spectrum.

An ROI owns a private Finder clone of its sub-range, the two background
edge windows, a regression and a summation background, the peaks fitted in
the region and an append-only history of fit snapshots.

Every mutating operation builds its result completely before swapping it
in, so an observer never sees a partially updated peak map. Operations that
may fail work on a copy of the ROI and only replace the state on success.
"""

from dataclasses import dataclass
from typing import List, Dict, Tuple, Optional, Iterable
import copy
import itertools
import logging
import threading

import numpy as np

from .background import EdgeWindow, BoundedPolynomial, regression_background, summation_background
from .detection import Finder
from .fitting import Gaussian, Hypermet, fit_multi
from .settings import FitSettings
from .sum4 import SUM4

logger = logging.getLogger(__name__)

# ROI states
EMPTY = 'empty'
SEARCHED = 'searched'
FITTED = 'fitted'
STALE = 'stale'

_peak_ids = itertools.count(1)


def next_peak_id() -> int:
    return next(_peak_ids)


@dataclass
class Peak:
    """
    One fitted peak of a region.

    A peak without a Hypermet is summation-only: its position and width come
    from the SUM4 result.
    """
    peak_id: int
    hypermet: Optional[Hypermet] = None
    sum4: Optional[SUM4] = None
    energy: float = 0.0
    fwhm_energy: float = 0.0
    cps_hyp: float = 0.0
    cps_sum4: float = 0.0

    @property
    def is_sum4_only(self) -> bool:
        return self.hypermet is None

    @property
    def center(self) -> float:
        if self.hypermet is not None:
            return float(self.hypermet.center.value)
        if self.sum4 is not None:
            return self.sum4.centroid
        return float('nan')

    @property
    def fwhm(self) -> float:
        if self.hypermet is not None:
            return self.hypermet.fwhm
        if self.sum4 is not None:
            return self.sum4.fwhm
        return 0.0

    def area(self) -> Tuple[float, float]:
        """Regression area if available, otherwise SUM4 net area, with uncertainty."""
        if self.hypermet is not None:
            return self.hypermet.area()
        if self.sum4 is not None:
            return self.sum4.net_area, self.sum4.net_uncertainty
        return 0.0, 0.0

    def copy(self) -> 'Peak':
        return copy.deepcopy(self)


@dataclass(frozen=True)
class FitSnapshot:
    """Immutable record of an accepted ROI state."""
    LB: EdgeWindow
    RB: EdgeWindow
    background: BoundedPolynomial
    sum4_background: BoundedPolynomial
    peaks: Tuple[Peak, ...]
    finder: Finder
    description: str
    rsq: float


class ROI:
    """
    Region of interest with its peaks, background and fit history.

    State moves empty -> searched (set_data) -> fitted (peaks present) and
    becomes stale when edges or background change while peaks are pending a
    rebuild.
    """

    def __init__(self, settings: Optional[FitSettings] = None):
        self.settings = settings or FitSettings()
        self.finder = Finder(self.settings)
        self.LB: Optional[EdgeWindow] = None
        self.RB: Optional[EdgeWindow] = None
        self.background: Optional[BoundedPolynomial] = None
        self.sum4_background: Optional[BoundedPolynomial] = None
        self._peaks: Dict[int, Peak] = {}
        self._order: List[int] = []
        self.history: List[FitSnapshot] = []
        self.current_fit = -1
        self.state = EMPTY
        self._clear_render()

    def __repr__(self):
        if self.finder.empty:
            return "ROI(empty)"
        return f"ROI({self.left:g}-{self.right:g}, {len(self._peaks)} peaks, {self.state})"

    def _clear_render(self):
        self.hr_x = np.array([])
        self.hr_x_energy = np.array([])
        self.hr_background = np.array([])
        self.hr_back_steps = np.array([])
        self.hr_fullfit = np.array([])

    # Queries

    @property
    def left(self) -> float:
        return float(self.finder.x[0]) if not self.finder.empty else float('nan')

    @property
    def right(self) -> float:
        return float(self.finder.x[-1]) if not self.finder.empty else float('nan')

    def peaks(self) -> List[Peak]:
        """Peaks ordered by center."""
        return [self._peaks[i] for i in self._order]

    def peak(self, peak_id: int) -> Optional[Peak]:
        return self._peaks.get(peak_id)

    def contains(self, peak_id: int) -> bool:
        return peak_id in self._peaks

    def overlaps(self, left: float, right: Optional[float] = None) -> bool:
        """True if a bin, or any part of [left, right], lies in the region."""
        if self.finder.empty:
            return False
        if right is None:
            return self.left <= left <= self.right
        return left <= self.right and right >= self.left

    @property
    def parametric_peaks(self) -> List[Peak]:
        return [p for p in self.peaks() if p.hypermet is not None]

    @property
    def rsq(self) -> float:
        fitted = self.parametric_peaks
        if not fitted:
            return float('nan')
        return fitted[0].hypermet.rsq

    @property
    def fit_description(self) -> str:
        if 0 <= self.current_fit < len(self.history):
            return self.history[self.current_fit].description
        return ''

    def copy(self) -> 'ROI':
        return copy.deepcopy(self)

    def _swap_in(self, other: 'ROI'):
        vars(self).update(vars(other))

    # Setup

    def set_data(self, x: np.ndarray, y: np.ndarray, min_bin: float, max_bin: float) -> bool:
        """
        Take the sub-range [min_bin, max_bin] of a spectrum as the region.

        Edges and backgrounds are initialised from the region ends, peaks and
        history are cleared and the region is searched for candidates.

        Returns:
            False (state unchanged) for mismatched arrays, an inverted range
            or a range too short for two background edges
        """
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)
        if len(x) != len(y) or not min_bin < max_bin:
            return False

        indices = np.nonzero((x >= min_bin) & (x <= max_bin))[0]
        if len(indices) < 2 * self.settings.background_edge_samples + 1:
            logger.debug("Range %g-%g too short for background edges", min_bin, max_bin)
            return False

        finder = Finder(self.settings)
        if not finder.set_data(x[indices[0]:indices[-1] + 1], y[indices[0]:indices[-1] + 1]):
            return False

        self.finder = finder
        self._peaks = {}
        self._order = []
        self.history = []
        self.current_fit = -1
        self._default_edges()
        self._init_background()
        self.finder.find_peaks(self.settings.kon_width, self.settings.kon_sigma_spectrum)
        self.state = SEARCHED
        self.render()
        return True

    def _default_edges(self):
        samples = self.settings.background_edge_samples
        n = len(self.finder.x)
        self.LB = EdgeWindow.from_arrays(self.finder.x, self.finder.y, 0, samples - 1)
        self.RB = EdgeWindow.from_arrays(self.finder.x, self.finder.y, n - samples, n - 1)

    def _edge_at(self, start_bin: float, end_bin: float) -> Optional[EdgeWindow]:
        x = self.finder.x
        first = int(np.searchsorted(x, start_bin, side='left'))
        last = int(np.searchsorted(x, end_bin, side='right')) - 1
        return EdgeWindow.from_arrays(x, self.finder.y, first, last)

    def _init_background(self):
        self.background = regression_background(self.LB, self.RB)
        self.sum4_background = summation_background(self.LB, self.RB)

    def _set_range(self, parent: Finder, left_bin: float, right_bin: float) -> bool:
        """Re-clone the Finder range from the parent spectrum, keeping peaks."""
        if parent.empty or left_bin >= right_bin:
            return False

        first = int(np.searchsorted(parent.x, left_bin, side='left'))
        last = int(np.searchsorted(parent.x, right_bin, side='right')) - 1
        if last - first + 1 < 2 * self.settings.background_edge_samples + 1:
            return False

        self.finder = parent.clone_range(first, last)
        return not self.finder.empty

    # Peak bookkeeping

    def _reindex(self):
        self._order = sorted(self._peaks, key=lambda i: self._peaks[i].center)

    def _inside_edges(self, center: float) -> bool:
        return self.LB.end < center < self.RB.start

    def _recompute_peak(self, peak: Peak):
        s = self.settings
        f = self.finder

        if peak.hypermet is not None:
            peak.sum4 = SUM4.around(f.x, f.y, peak.hypermet.center.value, peak.hypermet.fwhm,
                                    self.sum4_background, self.LB, self.RB, s.sum4_fwhm_factor)
        elif peak.sum4 is not None:
            first = int(np.searchsorted(f.x, peak.sum4.left_bin, side='left'))
            last = int(np.searchsorted(f.x, peak.sum4.right_bin, side='right')) - 1
            peak.sum4 = SUM4.from_counts(f.x, f.y, max(first, self.LB.last + 1),
                                         min(last, self.RB.first - 1),
                                         self.sum4_background, self.LB, self.RB)

        center = peak.center
        half = peak.fwhm / 2.0
        calibration = s.calibration
        if calibration is not None and calibration.valid:
            peak.energy = float(calibration.transform(center))
            peak.fwhm_energy = float(abs(calibration.transform(center + half) -
                                         calibration.transform(center - half)))
        else:
            peak.energy = center
            peak.fwhm_energy = peak.fwhm

        peak.cps_hyp = 0.0
        peak.cps_sum4 = 0.0
        if s.live_time > 0:
            if peak.hypermet is not None:
                peak.cps_hyp = peak.hypermet.area()[0] / s.live_time
            if peak.sum4 is not None:
                peak.cps_sum4 = peak.sum4.net_area / s.live_time

    def _recompute(self):
        """Refresh every SUM4, energy and count rate, drop unusable peaks."""
        for peak_id in list(self._peaks):
            peak = self._peaks[peak_id]
            self._recompute_peak(peak)
            if peak.hypermet is None and peak.sum4 is None:
                del self._peaks[peak_id]
            elif not self._inside_edges(peak.center):
                del self._peaks[peak_id]
        self._reindex()

    def cull_peaks(self) -> int:
        """
        Remove peaks whose center is not strictly between the edges.

        Returns:
            Number of peaks removed
        """
        outside = [i for i, p in self._peaks.items() if not self._inside_edges(p.center)]
        for peak_id in outside:
            del self._peaks[peak_id]
        self._reindex()
        return len(outside)

    def save_current_fit(self, description: str):
        """Append the current state to the history and point at it."""
        snapshot = FitSnapshot(LB=self.LB,
                               RB=self.RB,
                               background=self.background.copy() if self.background else None,
                               sum4_background=self.sum4_background.copy() if self.sum4_background else None,
                               peaks=tuple(p.copy() for p in self.peaks()),
                               finder=self.finder.copy(),
                               description=description,
                               rsq=self.rsq)
        self.history.append(snapshot)
        self.current_fit = len(self.history) - 1
        logger.debug("ROI %g-%g: %s (%d peaks, rsq=%.6f)", self.left, self.right,
                     description, len(self._peaks), snapshot.rsq)

    def _regress(self, seeds: List[Tuple[int, Hypermet]], gaussian_only: bool) -> bool:
        """
        Jointly regress the given peaks with the background.

        On success the whole peak map is replaced: regressed peaks keep their
        ids, summation-only peaks are carried over and every SUM4 and energy
        is recomputed. On failure nothing changes.
        """
        if not seeds or self.background is None:
            return False

        # Tallest peak first
        ordered = sorted(seeds, key=lambda item: -item[1].height.value)
        result = fit_multi(self.finder.x, self.finder.y, [h for _, h in ordered],
                           self.background, self.settings, gaussian_only)
        if result is None:
            return False

        fitted, background = result
        peaks = {}
        for (peak_id, _), hypermet in zip(ordered, fitted):
            if hypermet is None or not self._inside_edges(hypermet.center.value):
                continue
            peaks[peak_id] = Peak(peak_id, hypermet=hypermet)
        if not peaks:
            return False

        for peak_id, peak in self._peaks.items():
            if peak.is_sum4_only:
                peaks[peak_id] = peak.copy()

        self.background = background
        self._peaks = peaks
        self._recompute()
        self.state = FITTED
        self.render()
        return True

    def rebuild(self, description: str = 'Rebuild') -> bool:
        """
        Refit all parametric peaks jointly with a fresh regression background.

        Uses the Gaussian-only regression when every peak is Gaussian-only.

        Returns:
            False (state unchanged) when there are no parametric peaks or the
            regression fails
        """
        fitted = self.parametric_peaks
        if not fitted or self.LB is None or self.RB is None:
            return False

        gaussian_only = all(p.hypermet.is_gaussian_only for p in fitted)
        trial = self.copy()
        trial._init_background()
        if not trial._regress([(p.peak_id, p.hypermet) for p in fitted], gaussian_only):
            logger.debug("ROI %g-%g: rebuild failed", self.left, self.right)
            return False

        trial.save_current_fit(description)
        self._swap_in(trial)
        return True

    def _refresh(self, description: str):
        """Accept the current peaks without regression."""
        self._recompute()
        self.state = FITTED if self._peaks else SEARCHED
        self.render()
        self.save_current_fit(description)

    # Fitting

    def auto_fit(self, interruptor: Optional[threading.Event] = None) -> bool:
        """
        Search the region, regress all accepted candidates jointly and refine.

        Falls back to summation-only peaks when regression yields nothing, or
        directly when the settings ask for summation only.

        Returns:
            True if the region ends up with at least one peak
        """
        if self.state == EMPTY:
            return False

        s = self.settings
        trial = self.copy()
        trial._peaks = {}
        trial._order = []
        trial._init_background()
        f = trial.finder
        f.y_resid = f.y.copy()
        f.find_peaks(s.kon_width, s.kon_sigma_spectrum)
        if not f.filtered:
            trial.state = SEARCHED
            trial.render()
            self._swap_in(trial)
            return False

        y_nobkg = f.y - trial.background.eval(f.x)
        seeds = []
        for left, right in zip(f.lefts, f.rights):
            estimate = Gaussian.from_data(f.x[left:right + 1], y_nobkg[left:right + 1])
            if estimate.accepted_in(f.x[left], f.x[right]):
                seeds.append((next_peak_id(), Hypermet.from_gaussian(estimate, s)))

        regressed = False
        if seeds and not s.sum4_only:
            gaussian_only = all(h.is_gaussian_only for _, h in seeds)
            regressed = trial._regress(seeds, gaussian_only)

        if not regressed:
            for left, right in zip(f.lefts, f.rights):
                trial._insert_sum4(left, right)
            trial._recompute()

        if not trial._peaks:
            trial.state = SEARCHED
            trial.render()
            self._swap_in(trial)
            return False

        trial.state = FITTED
        trial.render()
        trial.save_current_fit('Autofit')
        self._swap_in(trial)

        if s.resid_auto and not s.sum4_only:
            self.iterative_fit(interruptor)
        return True

    def iterative_fit(self, interruptor: Optional[threading.Event] = None) -> int:
        """
        Greedy residual refinement.

        Each iteration adds the largest acceptable residual candidate to a
        copy of the region and refits jointly; the copy is kept only if R^2
        strictly improves. Stops at the first non-improvement, after
        resid_max_iterations, or when the interruptor is set.

        Returns:
            Number of accepted additions
        """
        if self.state != FITTED or self.settings.sum4_only or not self.parametric_peaks:
            return 0

        previous = self.rsq
        if not np.isfinite(previous):
            return 0

        accepted = 0
        for _ in range(self.settings.resid_max_iterations):
            if interruptor is not None and interruptor.is_set():
                logger.debug("ROI %g-%g: refinement interrupted", self.left, self.right)
                break

            trial = self.copy()
            if not trial.add_from_resid():
                logger.debug("ROI %g-%g: nothing to add from residual", self.left, self.right)
                break

            current = trial.rsq
            logger.debug("ROI %g-%g: rsq %.6f -> %.6f", self.left, self.right, previous, current)
            if not (np.isfinite(current) and current > previous):
                logger.debug("ROI %g-%g: not improved, refit rejected", self.left, self.right)
                break

            previous = current
            self._swap_in(trial)
            accepted += 1

        return accepted

    def _too_close(self, center: float) -> bool:
        slack = self.settings.resid_too_close
        return any(abs(center - p.center) < slack * p.fwhm for p in self.parametric_peaks)

    def add_from_resid(self, centroid_hint: Optional[float] = None) -> bool:
        """
        Add one peak found in the fit residual and refit jointly.

        Without a hint the candidate with the largest Gaussian area is taken,
        ignoring candidates too close to an existing peak or too small. With
        a hint the acceptable candidate nearest to it is taken.

        Returns:
            True if a peak was added and the regression succeeded
        """
        s = self.settings
        if self.finder.empty or self.background is None:
            return False

        trial = self.copy()
        f = trial.finder
        f.find_peaks(s.kon_width, s.kon_sigma_resid)
        candidates = []
        for peak_idx, left, right in zip(f.filtered, f.lefts, f.rights):
            estimate = Gaussian.from_data(f.x[left:right + 1], f.y_resid[left:right + 1])
            if not estimate.accepted_in(f.x[left], f.x[right]):
                continue
            if centroid_hint is None:
                if estimate.height < s.resid_min_amplitude or self._too_close(estimate.center):
                    continue
            candidates.append((f.x[peak_idx], estimate))

        if not candidates:
            return False

        if centroid_hint is None:
            _, estimate = max(candidates, key=lambda c: c[1].area())
        else:
            _, estimate = min(candidates, key=lambda c: abs(c[0] - centroid_hint))

        seeds = [(p.peak_id, p.hypermet) for p in self.parametric_peaks]
        seeds.append((next_peak_id(), Hypermet.from_gaussian(estimate, s)))
        gaussian_only = all(h.is_gaussian_only for _, h in seeds)

        if not trial._regress(seeds, gaussian_only):
            return False

        trial.save_current_fit('Added from residual')
        self._swap_in(trial)
        return True

    # Manual editing

    def _summation_peak_at(self, left: int, right: int) -> Optional[Peak]:
        left = max(left, self.LB.last + 1)
        right = min(right, self.RB.first - 1)
        sum4 = SUM4.from_counts(self.finder.x, self.finder.y, left, right,
                                self.sum4_background, self.LB, self.RB)
        if sum4 is None or not self._inside_edges(sum4.centroid):
            return None
        return Peak(next_peak_id(), sum4=sum4)

    def summation_peak(self, left_bin: float, right_bin: float) -> Optional[Peak]:
        """
        Build (without inserting) a summation-only peak over a bin window.

        Returns:
            Peak, or None if the window is empty or its centroid falls
            outside the edges
        """
        if self.LB is None or self.RB is None:
            return None
        x = self.finder.x
        left = int(np.searchsorted(x, left_bin, side='left'))
        right = int(np.searchsorted(x, right_bin, side='right')) - 1
        return self._summation_peak_at(left, right)

    def _insert_sum4(self, left: int, right: int) -> Optional[Peak]:
        peak = self._summation_peak_at(left, right)
        if peak is not None:
            self._peaks[peak.peak_id] = peak
        return peak

    def add_sum4_peak(self, left_bin: float, right_bin: float) -> bool:
        """Insert a summation-only peak over [left_bin, right_bin]."""
        peak = self.summation_peak(left_bin, right_bin)
        if peak is None:
            return False

        trial = self.copy()
        trial._peaks[peak.peak_id] = peak
        trial._refresh('Summation peak added')
        self._swap_in(trial)
        return True

    def load_fit(self, peaks: List[Peak], background: Optional[BoundedPolynomial] = None,
                 description: str = 'Loaded'):
        """Install stored peaks (and background) without regression."""
        if background is not None:
            self.background = background
        self._peaks = {p.peak_id: p for p in peaks}
        self._refresh(description)

    def add_peak(self, parent: Finder, left_bin: float, right_bin: float,
                 interruptor: Optional[threading.Event] = None) -> bool:
        """
        Add a peak between left_bin and right_bin.

        Inside the current range, a residual peak near the middle is tried
        first and a summation-only peak is the fallback. Bounds reaching
        outside the range widen the region from the parent spectrum first,
        falling back to a full auto_fit if no residual peak is found.

        Parameters:
            parent: Finder of the whole spectrum
            left_bin: Left bound of the new peak
            right_bin: Right bound of the new peak
            interruptor: Cancellation event for a fallback auto_fit

        Returns:
            True if the region changed
        """
        if self.state == EMPTY or parent.empty or not left_bin < right_bin:
            return False
        if left_bin < parent.x[0] or right_bin > parent.x[-1]:
            return False

        hint = (left_bin + right_bin) / 2.0

        if self.overlaps(left_bin) and self.overlaps(right_bin):
            if self.add_from_resid(hint):
                return True
            return self.add_sum4_peak(left_bin, right_bin)

        trial = self.copy()
        if not trial._set_range(parent, min(left_bin, self.left), max(right_bin, self.right)):
            return False
        trial._default_edges()
        trial._init_background()
        trial.cull_peaks()
        trial._recompute()
        trial.state = FITTED if trial._peaks else SEARCHED
        trial.render()

        if not trial.add_from_resid(hint):
            if not trial.auto_fit(interruptor):
                return False

        self._swap_in(trial)
        return True

    def remove_peaks(self, peak_ids: Iterable[int]) -> bool:
        """
        Delete peaks by id and rebuild the remaining ones jointly.

        Returns:
            False if none of the ids belong to this region
        """
        removed = [i for i in set(peak_ids) if i in self._peaks]
        if not removed:
            return False

        trial = self.copy()
        for peak_id in removed:
            del trial._peaks[peak_id]
        trial._reindex()

        if not trial.rebuild('Peaks removed'):
            trial._refresh('Peaks removed')

        self._swap_in(trial)
        return True

    def replace_peak(self, peak: Peak) -> bool:
        """
        Replace a peak with an edited version carrying the same id.

        Returns:
            False if the id is unknown or the new center is outside the edges
        """
        if peak.peak_id not in self._peaks or not self._inside_edges(peak.center):
            return False

        trial = self.copy()
        trial._peaks[peak.peak_id] = peak.copy()
        trial._refresh('Peak replaced')
        self._swap_in(trial)
        return True

    def set_edges(self, LB_bins: Tuple[float, float], RB_bins: Tuple[float, float]) -> bool:
        """
        Place both background edges at the given bin windows.

        Backgrounds are reinitialised and peaks outside the new edges culled;
        remaining peaks are left pending a rebuild.

        Returns:
            False (state unchanged) if an edge is empty or the edges overlap
        """
        LB = self._edge_at(*LB_bins)
        RB = self._edge_at(*RB_bins)
        if LB is None or RB is None or not LB.end < RB.start:
            return False

        self.LB, self.RB = LB, RB
        self._init_background()
        self.cull_peaks()
        if self._peaks:
            self.state = STALE
        return True

    def _apply_edges(self, parent: Finder, LB_bins: Tuple[float, float],
                     RB_bins: Tuple[float, float], description: str) -> bool:
        trial = self.copy()
        if not trial._set_range(parent, LB_bins[0], RB_bins[1]):
            return False
        if not trial.set_edges(LB_bins, RB_bins):
            return False

        if not trial.rebuild(description):
            trial._refresh(description)

        self._swap_in(trial)
        return True

    def adjust_LB(self, parent: Finder, left_bin: float, right_bin: float) -> bool:
        """
        Move the left background edge to [left_bin, right_bin].

        The region start follows the edge. Peaks no longer strictly inside
        the edges are culled and the rest rebuilt.

        Returns:
            False (state unchanged) if the edge is invalid or would reach the
            right edge
        """
        if self.state == EMPTY or not left_bin <= right_bin or right_bin >= self.RB.start:
            return False
        return self._apply_edges(parent, (left_bin, right_bin),
                                 (self.RB.start, self.RB.end), 'Left edge adjusted')

    def adjust_RB(self, parent: Finder, left_bin: float, right_bin: float) -> bool:
        """Move the right background edge; see adjust_LB."""
        if self.state == EMPTY or not left_bin <= right_bin or left_bin <= self.LB.end:
            return False
        return self._apply_edges(parent, (self.LB.start, self.LB.end),
                                 (left_bin, right_bin), 'Right edge adjusted')

    def adjust_bounds(self, parent: Finder, left_bin: float, right_bin: float) -> bool:
        """
        Change the region range; edges are re-sampled at the new ends.

        Returns:
            False (state unchanged) for an invalid or too short range
        """
        if self.state == EMPTY:
            return False

        trial = self.copy()
        if not trial._set_range(parent, left_bin, right_bin):
            return False
        trial._default_edges()
        trial._init_background()
        trial.cull_peaks()
        trial.state = STALE
        if not trial.rebuild('Bounds adjusted'):
            trial._refresh('Bounds adjusted')

        self._swap_in(trial)
        return True

    # History

    def rollback(self, index: int) -> bool:
        """
        Restore the snapshot at index verbatim and make it current.

        Returns:
            False if index is out of range
        """
        if not 0 <= index < len(self.history):
            return False

        snapshot = self.history[index]
        self.LB = snapshot.LB
        self.RB = snapshot.RB
        self.background = snapshot.background.copy() if snapshot.background else None
        self.sum4_background = snapshot.sum4_background.copy() if snapshot.sum4_background else None
        self.finder = snapshot.finder.copy()
        self._peaks = {p.peak_id: p.copy() for p in snapshot.peaks}
        self._reindex()
        self.current_fit = index
        self.state = FITTED if self._peaks else SEARCHED
        self.render()
        return True

    # Rendering

    def render(self):
        """
        Evaluate the model on a quarter-bin grid and push it to the Finder.

        Fills hr_x, hr_x_energy, hr_background, hr_back_steps and hr_fullfit
        and sets the Finder fit so that y_resid is the current residual.
        """
        f = self.finder
        if f.empty or self.background is None:
            self._clear_render()
            return

        self.hr_x = f.x[0] + np.arange(0.0, len(f.x), 0.25)
        calibration = self.settings.calibration
        if calibration is not None and calibration.valid:
            self.hr_x_energy = np.asarray(calibration.transform(self.hr_x), dtype=float)
        else:
            self.hr_x_energy = self.hr_x.copy()

        self.hr_background = self.background.eval(self.hr_x)
        back_steps = self.hr_background.copy()
        fullfit = self.hr_background.copy()

        lowres_steps = self.background.eval(f.x)
        lowres_full = lowres_steps.copy()

        for peak in self.parametric_peaks:
            hyp = peak.hypermet
            step = hyp.eval_step_tail(self.hr_x)
            back_steps += step
            fullfit += step + hyp.eval_peak(self.hr_x)

            step = hyp.eval_step_tail(f.x)
            lowres_steps += step
            lowres_full += step + hyp.eval_peak(f.x)

        self.hr_back_steps = back_steps
        self.hr_fullfit = fullfit
        f.set_fit(lowres_full, lowres_steps)
