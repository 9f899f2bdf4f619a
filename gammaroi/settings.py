"""
Fit settings for ROI peak fitting.

FitSettings collects every tunable of the search, regression, residual
refinement and summation stages, along with the calibration functions
injected by the caller.
"""

from dataclasses import dataclass, field, fields
from typing import Dict, Any, Optional, Tuple
import copy

from .calibration import Calibration, FWHMCalibration


# (lower, upper, initial) for each optional Hypermet component. Amplitudes
# are relative to the peak height, slopes are in bins.
DEFAULT_HYPERMET_BOUNDS = {
    'step_amplitude': (1.0e-10, 0.75, 0.01),
    'tail_amplitude': (1.0e-10, 0.015, 0.005),
    'tail_slope': (2.5, 50.0, 10.0),
    'lskew_amplitude': (1.0e-10, 0.75, 0.1),
    'lskew_slope': (0.3, 2.0, 1.0),
    'rskew_amplitude': (1.0e-10, 0.75, 0.1),
    'rskew_slope': (0.3, 1.5, 0.8),
}


@dataclass
class FitSettings:
    """Configuration of the peak search and fitting engine."""

    bits: int = 0
    calibration: Optional[Calibration] = None
    fwhm_calibration: Optional[FWHMCalibration] = None
    live_time: float = 0.0
    real_time: float = 0.0

    # background edges
    background_edge_samples: int = 7

    # peak search
    kon_width: int = 4
    kon_min_width: int = 2
    kon_sigma_spectrum: float = 3.0
    kon_sigma_resid: float = 3.0
    finder_cutoff_kev: float = 100.0

    # region construction
    roi_extend_background: float = 0.6

    # residual refinement
    resid_auto: bool = True
    resid_max_iterations: int = 5
    resid_min_amplitude: float = 5.0
    resid_too_close: float = 0.5

    # summation
    sum4_fwhm_factor: float = 1.5
    sum4_only: bool = False

    # regression
    width_variation: float = 2.0
    center_slack: float = 1.0
    max_nfev: int = 2000
    step_enabled: bool = False
    tail_enabled: bool = False
    lskew_enabled: bool = False
    rskew_enabled: bool = False
    hypermet_bounds: Dict[str, Tuple[float, float, float]] = field(
        default_factory=lambda: dict(DEFAULT_HYPERMET_BOUNDS))

    def copy(self) -> 'FitSettings':
        return copy.deepcopy(self)

    def validate(self) -> bool:
        """
        Validate settings.

        Returns:
            True if valid

        Raises:
            ValueError: If settings are invalid
        """
        if self.background_edge_samples < 1:
            raise ValueError("background_edge_samples must be at least 1")

        if self.kon_width < 1:
            raise ValueError("kon_width must be at least 1")

        if self.kon_min_width < 1:
            raise ValueError("kon_min_width must be at least 1")

        if self.kon_sigma_spectrum <= 0 or self.kon_sigma_resid <= 0:
            raise ValueError("kon_sigma_spectrum and kon_sigma_resid must be positive")

        if self.roi_extend_background < 0:
            raise ValueError("roi_extend_background must not be negative")

        if self.resid_max_iterations < 0:
            raise ValueError("resid_max_iterations must not be negative")

        if self.resid_too_close < 0:
            raise ValueError("resid_too_close must not be negative")

        if self.sum4_fwhm_factor <= 0:
            raise ValueError("sum4_fwhm_factor must be positive")

        if self.width_variation <= 1:
            raise ValueError("width_variation must be greater than 1")

        if self.center_slack <= 0:
            raise ValueError("center_slack must be positive")

        if self.max_nfev < 1:
            raise ValueError("max_nfev must be at least 1")

        if self.live_time < 0 or self.real_time < 0:
            raise ValueError("live_time and real_time must not be negative")

        for name, bounds in self.hypermet_bounds.items():
            if name not in DEFAULT_HYPERMET_BOUNDS:
                raise ValueError(f"Unknown hypermet parameter: {name}")
            lower, upper, initial = bounds
            if not lower <= initial <= upper:
                raise ValueError(f"hypermet_bounds[{name}] must satisfy lower <= initial <= upper")

        return True

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Calibration):
                value = value.to_dict()
            elif f.name == 'hypermet_bounds':
                value = {k: list(v) for k, v in value.items()}
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FitSettings':
        """
        Build settings from a dictionary, ignoring unknown keys.

        Raises:
            ValueError: If the resulting settings are invalid
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            if key == 'calibration' and value is not None:
                value = Calibration.from_dict(value)
            elif key == 'fwhm_calibration' and value is not None:
                value = FWHMCalibration(value.get('coefficients', []),
                                        bits=value.get('bits', 0))
            elif key == 'hypermet_bounds':
                merged = dict(DEFAULT_HYPERMET_BOUNDS)
                merged.update({k: tuple(v) for k, v in value.items()})
                value = merged
            kwargs[key] = value

        settings = cls(**kwargs)
        settings.validate()
        return settings
