"""
Background edge statistics and bounded background polynomials.

An ROI is anchored by two fixed-width sample windows, one at each boundary.
The windows fix a linear background in two independent flavors:

- the regression background, whose coefficients are free (within the
  envelope of the edge samples) while peaks are fitted;
- the summation background, frozen at the two-point estimate and used only
  by the SUM4 method.

Both are built from the edges alone and never from peak data.
"""

from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Union
import copy

import numpy as np

# Bounds closer than this are treated as a fixed parameter
BOUND_TOLERANCE = 1e-12


@dataclass
class FitParam:
    """
    Bounded fit parameter.

    A disabled parameter evaluates as zero and is never regressed. A fixed
    parameter, or one whose bounds have collapsed, keeps its value.
    """
    name: str
    value: float = 0.0
    lower: float = -np.inf
    upper: float = np.inf
    enabled: bool = True
    fixed: bool = False
    uncertainty: float = 0.0

    @property
    def free(self) -> bool:
        return (self.enabled and not self.fixed
                and (self.upper - self.lower) > BOUND_TOLERANCE)

    @property
    def effective(self) -> float:
        return self.value if self.enabled else 0.0

    def clipped(self) -> float:
        return float(min(max(self.value, self.lower), self.upper))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'value': float(self.value),
            'lower': float(self.lower),
            'upper': float(self.upper),
            'enabled': bool(self.enabled),
            'fixed': bool(self.fixed),
            'uncertainty': float(self.uncertainty),
        }

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'FitParam':
        return cls(name,
                   value=float(data['value']),
                   lower=float(data.get('lower', -np.inf)),
                   upper=float(data.get('upper', np.inf)),
                   enabled=bool(data.get('enabled', True)),
                   fixed=bool(data.get('fixed', False)),
                   uncertainty=float(data.get('uncertainty', 0.0)))


@dataclass(frozen=True)
class EdgeWindow:
    """Statistics of a fixed-width sample window at a region boundary."""
    first: int
    last: int
    start: float
    end: float
    width: int
    sum: float
    average: float
    variance: float
    min: float
    max: float
    midpoint: float

    @classmethod
    def from_arrays(cls, x: np.ndarray, y: np.ndarray,
                    first: int, last: int) -> Optional['EdgeWindow']:
        """
        Compute edge statistics over x[first:last+1], y[first:last+1].

        Parameters:
            x: Bin values
            y: Counts
            first: Index of the first sample
            last: Index of the last sample (inclusive)

        Returns:
            EdgeWindow, or None for mismatched arrays or invalid indices
        """
        x = np.asarray(x, dtype=float)
        y = np.asarray(y, dtype=float)

        if len(x) != len(y) or first < 0 or last >= len(y) or first > last:
            return None

        samples = y[first:last + 1]
        width = last - first + 1
        total = float(np.sum(samples))

        return cls(first=int(first),
                   last=int(last),
                   start=float(x[first]),
                   end=float(x[last]),
                   width=width,
                   sum=total,
                   average=total / width,
                   variance=total / width ** 2,
                   min=float(np.min(samples)),
                   max=float(np.max(samples)),
                   midpoint=float(x[first] + (x[last] - x[first]) / 2.0))

    def to_dict(self) -> Dict[str, float]:
        return {'left': self.start, 'right': self.end}


class BoundedPolynomial:
    """
    Polynomial in (x - xoffset) with bounded coefficients.

    Coefficient i multiplies (x - xoffset)**i.
    """

    def __init__(self, coeffs: Optional[List[FitParam]] = None, xoffset: float = 0.0):
        self.coeffs: List[FitParam] = list(coeffs) if coeffs else []
        self.xoffset = float(xoffset)

    def __repr__(self):
        terms = ', '.join(f"{c.value:.6g}" for c in self.coeffs)
        return f"BoundedPolynomial([{terms}], xoffset={self.xoffset:g})"

    @property
    def coefficients(self) -> List[float]:
        return [c.effective for c in self.coeffs]

    def eval(self, x: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        dx = np.asarray(x, dtype=float) - self.xoffset
        result = np.zeros_like(dx)
        for power, coeff in enumerate(self.coeffs):
            result = result + coeff.effective * dx ** power
        if np.ndim(result) == 0:
            return float(result)
        return result

    def free_params(self) -> List[FitParam]:
        return [c for c in self.coeffs if c.free]

    def copy(self) -> 'BoundedPolynomial':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'xoffset': self.xoffset,
            'coefficients': [c.to_dict() for c in self.coeffs],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BoundedPolynomial':
        coeffs = [FitParam.from_dict(f"a{i}", c)
                  for i, c in enumerate(data.get('coefficients', []))]
        return cls(coeffs, float(data.get('xoffset', 0.0)))


def _two_point(LB: EdgeWindow, RB: EdgeWindow, fixed: bool) -> Optional[BoundedPolynomial]:
    if LB is None or RB is None:
        return None

    run = RB.start - LB.end
    if run <= 0:
        return None

    slope = (RB.average - LB.average) / run
    min_slope = (RB.min - LB.max) / run
    max_slope = (RB.max - LB.min) / run

    intercept = FitParam('a0', LB.average, LB.min, LB.max, fixed=fixed)
    gradient = FitParam('a1', slope, min_slope, max_slope, fixed=fixed)

    return BoundedPolynomial([intercept, gradient], xoffset=LB.end)


def regression_background(LB: EdgeWindow, RB: EdgeWindow) -> Optional[BoundedPolynomial]:
    """
    Background polynomial to be regressed together with peaks.

    Starts at the two-point estimate through the edge averages; intercept and
    slope may move within the min/max envelope of the edge samples.

    Parameters:
        LB: Left edge window
        RB: Right edge window

    Returns:
        BoundedPolynomial anchored at LB.end, or None if the edges overlap
    """
    return _two_point(LB, RB, fixed=False)


def summation_background(LB: EdgeWindow, RB: EdgeWindow) -> Optional[BoundedPolynomial]:
    """
    Frozen two-point background used by the SUM4 method only.

    Parameters:
        LB: Left edge window
        RB: Right edge window

    Returns:
        BoundedPolynomial anchored at LB.end, or None if the edges overlap
    """
    return _two_point(LB, RB, fixed=True)
