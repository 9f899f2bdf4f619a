"""
Peak shape models and nonlinear regression for gamma spectroscopy.

This module provides the Gaussian estimate used to screen candidate peaks
and the Hypermet shape used for the final fits: a Gaussian core with an
optional step, low-energy tail and left/right skew components. Any number
of peaks is regressed simultaneously together with the region background
using scipy's bounded least_squares.
"""

from typing import List, Dict, Tuple, Optional, Any, Union
import copy
import logging
import warnings

import numpy as np
from scipy.optimize import curve_fit, least_squares, OptimizeWarning
from scipy.special import erfc, erfcx

from .background import FitParam, BoundedPolynomial
from .settings import FitSettings, DEFAULT_HYPERMET_BOUNDS

logger = logging.getLogger(__name__)

LN2 = np.log(2.0)
SQRT_LN2 = np.sqrt(LN2)

# Optional Hypermet components as (amplitude, slope) parameter names
COMPONENTS = {
    'step': ('step_amplitude', None),
    'tail': ('tail_amplitude', 'tail_slope'),
    'lskew': ('lskew_amplitude', 'lskew_slope'),
    'rskew': ('rskew_amplitude', 'rskew_slope'),
}


# Peak shape functions

def gaussian(x: np.ndarray, height: float, center: float, hwhm: float) -> np.ndarray:
    """
    Gaussian peak parametrised by its half width at half maximum.

    Parameters:
        x: Bin values
        height: Peak height
        center: Peak center position
        hwhm: Half width at half maximum

    Returns:
        Gaussian peak values
    """
    return height * np.exp(-LN2 * ((x - center) / hwhm) ** 2)


def skew_profile(xc: np.ndarray, width: float, slope: float) -> np.ndarray:
    """
    Exponential tail convolved with the Gaussian core.

    Evaluates exp((w/2s)^2 + xc/s) * erfc(w/2s + xc/w) without overflow by
    switching to the scaled complementary error function on the right side.

    Parameters:
        xc: Distance from the peak center
        width: Gaussian width parameter
        slope: Exponential decay length

    Returns:
        Profile values; the integral over all xc is 2*slope
    """
    xc = np.asarray(xc, dtype=float)
    a = 0.5 * width / slope
    z = a + xc / width
    low = z < 0

    with np.errstate(over='ignore', invalid='ignore'):
        left = np.exp(a * a + np.where(low, xc, 0.0) / slope) * erfc(z)
        right = np.exp(-(xc / width) ** 2) * erfcx(np.where(low, 0.0, z))

    return np.where(low, left, right)


def r_squared(y: np.ndarray, y_fit: np.ndarray) -> float:
    """Coefficient of determination; nan when y has no spread."""
    y = np.asarray(y, dtype=float)
    ss_tot = np.sum((y - np.mean(y)) ** 2)
    if ss_tot <= 0:
        return float('nan')
    return float(1.0 - np.sum((y - y_fit) ** 2) / ss_tot)


class Gaussian:
    """
    Unweighted single Gaussian estimate.

    Used to screen peak candidates and seed Hypermet regressions.
    """

    def __init__(self, center: float = 0.0, height: float = 0.0, hwhm: float = 0.0):
        self.center = float(center)
        self.height = float(height)
        self.hwhm = float(hwhm)
        self.rsq = 0.0

    def __repr__(self):
        return f"Gaussian(center={self.center:.3f}, height={self.height:.3f}, hwhm={self.hwhm:.3f})"

    @property
    def fwhm(self) -> float:
        return 2.0 * self.hwhm

    def area(self) -> float:
        return self.height * self.hwhm * np.sqrt(np.pi / LN2)

    def eval(self, x: np.ndarray) -> np.ndarray:
        if self.hwhm <= 0:
            return np.zeros_like(np.asarray(x, dtype=float))
        return gaussian(np.asarray(x, dtype=float), self.height, self.center, self.hwhm)

    def accepted_in(self, left: float, right: float) -> bool:
        """
        Physical plausibility test for a candidate found in [left, right].

        Returns:
            True if height and width are positive and the center lies
            strictly inside the window
        """
        if not np.all(np.isfinite([self.center, self.height, self.hwhm])):
            return False
        return (self.height > 0) and (self.hwhm > 0) and (left < self.center < right)

    @staticmethod
    def fit_multi(x: np.ndarray, y: np.ndarray, peaks: List['Hypermet'],
                  background: BoundedPolynomial,
                  settings: Optional[FitSettings] = None):
        """Joint regression of the Gaussian cores of all peaks."""
        return fit_multi(x, y, peaks, background, settings, gaussian_only=True)

    @classmethod
    def from_data(cls, x: np.ndarray, y: np.ndarray) -> 'Gaussian':
        """
        Estimate a Gaussian from a window of (background-free) counts.

        Parameters:
            x: Bin values of the window
            y: Counts in the window, background removed

        Returns:
            Fitted Gaussian; a zero-height Gaussian if no estimate is possible
        """
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)

        if len(x) != len(y) or len(x) < 3:
            return cls()

        top = int(np.argmax(y))
        height0 = y[top]
        if not height0 > 0:
            return cls()

        above = x[y >= height0 / 2]
        hwhm0 = max((above[-1] - above[0]) / 2.0, 0.5)

        with warnings.catch_warnings():
            warnings.simplefilter('ignore', OptimizeWarning)
            warnings.simplefilter('ignore', RuntimeWarning)
            try:
                popt, _ = curve_fit(gaussian, x, y,
                                    p0=[height0, x[top], hwhm0],
                                    maxfev=2000)
            except (RuntimeError, ValueError):
                return cls()

        height, center, hwhm = popt
        result = cls(center, height, abs(hwhm))
        if result.hwhm > 0:
            result.rsq = r_squared(y, result.eval(x))
        return result


class Hypermet:
    """
    Hypermet peak shape.

    Gaussian core h*exp(-((x-c)/w)^2) plus optional components, each of
    which can be enabled independently and is bounded:

    - step:  h/2 * step_amplitude * erfc((x-c)/w)
    - tail:  h/2 * tail_amplitude * skew_profile(x-c, w, tail_slope)
    - lskew: h/2 * lskew_amplitude * skew_profile(x-c, w, lskew_slope)
    - rskew: h/2 * rskew_amplitude * skew_profile(c-x, w, rskew_slope)

    Step and tail belong to the background-like part of the peak
    (eval_step_tail); core and skews form the peak itself (eval_peak).
    """

    def __init__(self, center: float = 0.0, height: float = 0.0, width: float = 0.0,
                 settings: Optional[FitSettings] = None):
        self.center = FitParam('center', center)
        self.height = FitParam('height', height, 0.0, np.inf)
        self.width = FitParam('width', width, 0.0, np.inf)

        bounds = settings.hypermet_bounds if settings else DEFAULT_HYPERMET_BOUNDS
        enabled = {
            'step': settings.step_enabled if settings else False,
            'tail': settings.tail_enabled if settings else False,
            'lskew': settings.lskew_enabled if settings else False,
            'rskew': settings.rskew_enabled if settings else False,
        }

        for component, names in COMPONENTS.items():
            for name in names:
                if name is None:
                    continue
                lower, upper, initial = bounds[name]
                setattr(self, name, FitParam(name, initial, lower, upper,
                                             enabled=enabled[component]))

        self.rsq = 0.0

    def __repr__(self):
        return (f"Hypermet(center={self.center.value:.3f}, height={self.height.value:.3f}, "
                f"width={self.width.value:.3f})")

    @classmethod
    def from_gaussian(cls, estimate: Gaussian,
                      settings: Optional[FitSettings] = None) -> 'Hypermet':
        return cls(estimate.center, estimate.height, estimate.hwhm / SQRT_LN2, settings)

    def component_enabled(self, component: str) -> bool:
        return getattr(self, COMPONENTS[component][0]).enabled

    def set_component(self, component: str, enabled: bool):
        for name in COMPONENTS[component]:
            if name is not None:
                getattr(self, name).enabled = enabled

    @property
    def is_gaussian_only(self) -> bool:
        return not any(self.component_enabled(c) for c in COMPONENTS)

    def params(self, gaussian_only: bool = False) -> List[FitParam]:
        """All parameters in a fixed order; optional ones only when enabled."""
        result = [self.center, self.height, self.width]
        if gaussian_only:
            return result
        for component, names in COMPONENTS.items():
            if self.component_enabled(component):
                result.extend(getattr(self, n) for n in names if n is not None)
        return result

    def all_params(self) -> List[FitParam]:
        result = [self.center, self.height, self.width]
        for names in COMPONENTS.values():
            result.extend(getattr(self, n) for n in names if n is not None)
        return result

    @property
    def hwhm(self) -> float:
        return self.width.value * SQRT_LN2

    @property
    def fwhm(self) -> float:
        return 2.0 * self.hwhm

    def eval_peak(self, x: Union[float, np.ndarray]) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        w = self.width.value
        if w <= 0:
            return np.zeros_like(x)

        xc = x - self.center.value
        result = np.exp(-(xc / w) ** 2)

        if self.lskew_amplitude.enabled and self.lskew_slope.value > 0:
            result = result + 0.5 * self.lskew_amplitude.value * skew_profile(xc, w, self.lskew_slope.value)
        if self.rskew_amplitude.enabled and self.rskew_slope.value > 0:
            result = result + 0.5 * self.rskew_amplitude.value * skew_profile(-xc, w, self.rskew_slope.value)

        return self.height.value * result

    def eval_step_tail(self, x: Union[float, np.ndarray]) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        w = self.width.value
        if w <= 0:
            return np.zeros_like(x)

        xc = x - self.center.value
        result = np.zeros_like(xc)

        if self.step_amplitude.enabled:
            result = result + self.step_amplitude.value * erfc(xc / w)
        if self.tail_amplitude.enabled and self.tail_slope.value > 0:
            result = result + self.tail_amplitude.value * skew_profile(xc, w, self.tail_slope.value)

        return 0.5 * self.height.value * result

    def eval(self, x: Union[float, np.ndarray]) -> np.ndarray:
        return self.eval_peak(x) + self.eval_step_tail(x)

    def area(self) -> Tuple[float, float]:
        """
        Analytic area of the peak part (core and skews).

        Returns:
            tuple: (area, uncertainty)
        """
        h = self.height.value
        w = self.width.value
        shape = w * np.sqrt(np.pi)
        if self.lskew_amplitude.enabled:
            shape += self.lskew_amplitude.value * self.lskew_slope.value
        if self.rskew_amplitude.enabled:
            shape += self.rskew_amplitude.value * self.rskew_slope.value

        area = h * shape
        if h <= 0 or w <= 0:
            return area, 0.0

        relative = np.sqrt((self.height.uncertainty / h) ** 2 +
                           (self.width.uncertainty / w) ** 2)
        return float(area), float(abs(area) * relative)

    def copy(self) -> 'Hypermet':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data = {p.name: p.to_dict() for p in self.all_params()}
        data['rsq'] = float(self.rsq) if np.isfinite(self.rsq) else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  settings: Optional[FitSettings] = None) -> 'Hypermet':
        """
        Restore a Hypermet from its dictionary form.

        Raises:
            KeyError: If a core parameter is missing
        """
        result = cls(settings=settings)
        for name in ('center', 'height', 'width'):
            setattr(result, name, FitParam.from_dict(name, data[name]))
        for names in COMPONENTS.values():
            for name in names:
                if name is not None and name in data:
                    setattr(result, name, FitParam.from_dict(name, data[name]))
        rsq = data.get('rsq')
        result.rsq = float(rsq) if rsq is not None else 0.0
        return result


def _bound_core(peak: Hypermet, x: np.ndarray, settings: FitSettings):
    """Bounds for center and width around the current seed values."""
    c = peak.center.value
    w = peak.width.value

    lower = max(x[0], c - settings.center_slack * w)
    upper = min(x[-1], c + settings.center_slack * w)
    if lower >= upper:
        lower, upper = x[0], x[-1]
    peak.center.lower, peak.center.upper = lower, upper

    peak.width.lower = w / settings.width_variation
    peak.width.upper = w * settings.width_variation
    peak.height.lower, peak.height.upper = 0.0, np.inf


def fit_multi(x: np.ndarray,
              y: np.ndarray,
              peaks: List[Hypermet],
              background: BoundedPolynomial,
              settings: Optional[FitSettings] = None,
              gaussian_only: bool = False) -> Optional[Tuple[List[Hypermet], BoundedPolynomial]]:
    """
    Regress all peaks of a region simultaneously with its background.

    Parameters:
        x: Bin values of the region
        y: Counts of the region
        peaks: Seed Hypermets; left untouched
        background: Regression background; left untouched
        settings: Fit settings (bounds and iteration cap)
        gaussian_only: Regress only the Gaussian core of every peak

    Returns:
        tuple: (fitted peaks in seed order with None in place of any peak
        that came out non-physical, fitted background), or None if the
        regression failed or produced nothing physical
    """
    settings = settings or FitSettings()
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)

    if len(x) != len(y) or len(x) < 3 or not peaks or background is None:
        return None

    fitted = [p.copy() for p in peaks]
    bkg = background.copy()

    slots = []
    for peak in fitted:
        if peak.width.value <= 0:
            return None
        if gaussian_only:
            for component in COMPONENTS:
                peak.set_component(component, False)
        _bound_core(peak, x, settings)
        slots.extend(p for p in peak.params() if p.free)
    slots.extend(bkg.free_params())

    if not slots:
        return None

    lower = np.array([p.lower for p in slots])
    upper = np.array([p.upper for p in slots])
    start = np.array([p.clipped() for p in slots])
    sigma = np.sqrt(np.maximum(y, 1.0))

    def model():
        total = bkg.eval(x)
        for peak in fitted:
            total = total + peak.eval(x)
        return total

    def residuals(values):
        for param, value in zip(slots, values):
            param.value = value
        return (y - model()) / sigma

    with np.errstate(over='ignore', invalid='ignore'):
        try:
            result = least_squares(residuals, start, bounds=(lower, upper),
                                   method='trf', x_scale='jac',
                                   max_nfev=settings.max_nfev)
        except (ValueError, np.linalg.LinAlgError) as e:
            warnings.warn(f"Peak regression failed: {e}")
            return None

    if result.status < 0 or not np.all(np.isfinite(result.x)):
        logger.debug("Regression did not converge: %s", result.message)
        return None

    for param, value in zip(slots, result.x):
        param.value = float(value)

    # Parameter uncertainties from the Jacobian, scaled by reduced chi-square
    dof = max(len(y) - len(slots), 1)
    chi_square = float(np.sum(result.fun ** 2))
    try:
        covariance = np.linalg.pinv(result.jac.T @ result.jac) * (chi_square / dof)
        errors = np.sqrt(np.abs(np.diag(covariance)))
    except np.linalg.LinAlgError:
        errors = np.zeros(len(slots))
    for param, error in zip(slots, errors):
        param.uncertainty = float(error)

    rsq = r_squared(y, model())
    if not np.isfinite(rsq):
        return None

    physical = [p if (p.height.value > 0 and p.width.value > 0
                      and np.isfinite(p.center.value)) else None
                for p in fitted]
    if not any(p is not None for p in physical):
        return None

    for peak in physical:
        if peak is not None:
            peak.rsq = rsq

    return physical, bkg
