"""
Energy and resolution calibration functions for gamma spectroscopy.

Calibrations are plain function objects handed to the fitting engine through
FitSettings: the engine only calls transform(); inverse() maps energies back
to bins for callers. Storage of calibrations is left to the caller.
"""

from typing import List, Dict, Optional, Any, Union
from dataclasses import dataclass
import logging

import numpy as np
from numpy.polynomial import polynomial as P
from scipy.stats import linregress

logger = logging.getLogger(__name__)


@dataclass
class CalibrationPoint:
    """Data class for calibration points."""
    channel: float
    value: float
    isotope: Optional[str] = None
    uncertainty: Optional[float] = None
    weight: float = 1.0


class Calibration:
    """
    Polynomial calibration from bin number to a physical value.

    Coefficients are stored in ascending order, value = c0 + c1*x + c2*x^2 ...
    """

    def __init__(self, coefficients: Optional[List[float]] = None,
                 units: str = 'keV', bits: int = 0):
        """
        Initialize calibration.

        Parameters:
            coefficients: Polynomial coefficients, ascending order
            units: Units of the calibrated value
            bits: Bit depth of the spectrum the calibration belongs to
        """
        self.coefficients = list(coefficients) if coefficients else []
        self.units = units
        self.bits = bits
        self.calibration_points: List[CalibrationPoint] = []
        self.fit_quality: Dict[str, float] = {}

    @property
    def valid(self) -> bool:
        return len(self.coefficients) > 0

    def add_point(self, channel: float, value: float,
                  isotope: Optional[str] = None,
                  uncertainty: Optional[float] = None):
        """
        Add a calibration point.

        Parameters:
            channel: Channel number
            value: Calibrated value at that channel
            isotope: Optional isotope name
            uncertainty: Optional uncertainty of the value
        """
        self.calibration_points.append(
            CalibrationPoint(channel, value, isotope, uncertainty))

    def fit(self, channels: Optional[np.ndarray] = None,
            values: Optional[np.ndarray] = None,
            order: int = 1) -> List[float]:
        """
        Fit calibration polynomial.

        Parameters:
            channels: Channel numbers (if not using stored points)
            values: Calibrated values
            order: Polynomial order

        Returns:
            Fitted coefficients, ascending order

        Raises:
            ValueError: If too few points are available
        """
        weights = None
        if channels is None:
            if not self.calibration_points:
                raise ValueError("No calibration data provided")
            channels = np.array([p.channel for p in self.calibration_points])
            values = np.array([p.value for p in self.calibration_points])
            weights = np.array([p.weight for p in self.calibration_points])

        channels = np.asarray(channels, dtype=float)
        values = np.asarray(values, dtype=float)

        if len(channels) < order + 1:
            raise ValueError(f"At least {order + 1} calibration points required")

        if order == 1 and weights is None:
            result = linregress(channels, values)
            self.coefficients = [float(result.intercept), float(result.slope)]
        else:
            self.coefficients = [float(c) for c in P.polyfit(channels, values, order, w=weights)]

        self._calculate_fit_quality(channels, values)
        return self.coefficients

    def _calculate_fit_quality(self, channels: np.ndarray, values: np.ndarray):
        residuals = values - self.transform(channels)
        spread = np.sum((values - np.mean(values)) ** 2)
        self.fit_quality = {
            'rms_error': float(np.sqrt(np.mean(residuals ** 2))),
            'max_error': float(np.max(np.abs(residuals))),
            'r_squared': float(1 - np.sum(residuals ** 2) / spread) if spread > 0 else 1.0,
        }

    def transform(self, channels: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        """
        Convert channels to calibrated values.

        An invalid (empty) calibration is the identity.
        """
        if not self.valid:
            return channels
        return P.polyval(channels, self.coefficients)

    def derivative(self, channels: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        if not self.valid:
            return np.ones_like(np.asarray(channels, dtype=float))
        return P.polyval(channels, P.polyder(self.coefficients))

    def inverse(self, value: float, tolerance: float = 1e-6,
                max_iterations: int = 100) -> float:
        """
        Convert a calibrated value back to a channel by Newton iteration.

        Parameters:
            value: Calibrated value
            tolerance: Convergence tolerance in channels
            max_iterations: Iteration cap

        Returns:
            Channel number, or nan if the iteration does not converge
        """
        if not self.valid:
            return float(value)
        if len(self.coefficients) == 2 and self.coefficients[1] != 0:
            return float((value - self.coefficients[0]) / self.coefficients[1])

        x0 = 0.0
        for _ in range(max_iterations):
            slope = float(self.derivative(x0))
            if slope == 0:
                break
            x1 = x0 + (value - float(self.transform(x0))) / slope
            if abs(x1 - x0) <= tolerance:
                return x1
            x0 = x1

        logger.warning("Maximum iterations reached in calibration inverse for %s", value)
        return float('nan')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'model': type(self).__name__,
            'coefficients': list(self.coefficients),
            'units': self.units,
            'bits': self.bits,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Calibration':
        model = data.get('model', cls.__name__)
        target = FWHMCalibration if model == 'FWHMCalibration' else Calibration
        return target(data.get('coefficients', []),
                      units=data.get('units', 'keV'),
                      bits=data.get('bits', 0))


class FWHMCalibration(Calibration):
    """
    Resolution calibration: FWHM in bins as sqrt(c0 + c1*x + c2*x^2).

    The square-root form follows the usual detector resolution model where
    the variance of the peak width grows linearly with energy.
    """

    def __init__(self, coefficients: Optional[List[float]] = None,
                 units: str = 'bin', bits: int = 0):
        super().__init__(coefficients, units=units, bits=bits)

    def transform(self, channels: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
        if not self.valid:
            return np.zeros_like(np.asarray(channels, dtype=float))
        return np.sqrt(np.maximum(P.polyval(channels, self.coefficients), 0.0))

    def fit(self, channels: Optional[np.ndarray] = None,
            values: Optional[np.ndarray] = None,
            order: int = 1) -> List[float]:
        if channels is None:
            if not self.calibration_points:
                raise ValueError("No calibration data provided")
            channels = np.array([p.channel for p in self.calibration_points])
            values = np.array([p.value for p in self.calibration_points])

        channels = np.asarray(channels, dtype=float)
        values = np.asarray(values, dtype=float)
        if len(channels) < order + 1:
            raise ValueError(f"At least {order + 1} calibration points required")

        self.coefficients = [float(c) for c in P.polyfit(channels, values ** 2, order)]
        self._calculate_fit_quality(channels, values)
        return self.coefficients


def parse_calibration(text: str) -> Calibration:
    """
    Parse a linear calibration given as "a,b" where value = a*channel + b.

    Parameters:
        text: Calibration string

    Returns:
        Calibration object

    Raises:
        ValueError: If the string is not two comma separated numbers
    """
    try:
        parts = [float(p) for p in text.split(',')]
    except ValueError:
        raise ValueError("calibration must be 'a,b' format")
    if len(parts) != 2:
        raise ValueError("calibration must be 'a,b' format")

    a, b = parts
    return Calibration([b, a])
