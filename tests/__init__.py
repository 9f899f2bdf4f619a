"""
Test suite for GammaROI package.

This module contains unit tests and integration tests for region
construction, peak regression, SUM4 and fit persistence.
"""

import sys
from pathlib import Path

import numpy as np

# Add parent directory to path for imports
parent_dir = Path(__file__).parent.parent
sys.path.insert(0, str(parent_dir))

from gammaroi.utils import generate_synthetic_spectrum


def single_peak_spectrum():
    """200 bins, flat background of 10, one peak at 100 (height 500, sigma 5)."""
    return generate_synthetic_spectrum(200, peaks=[(100, 500, 5)],
                                       background_level=10, poisson=False)


def doublet_spectrum():
    """Two peaks three bins apart on a flat background."""
    return generate_synthetic_spectrum(200, peaks=[(100, 500, 1.5), (103, 300, 1.5)],
                                       background_level=10, poisson=False)


def sloped_spectrum(seed: int = 42):
    """Poisson spectrum with a sloped background, for edge statistics."""
    return generate_synthetic_spectrum(300, peaks=[(150, 400, 4)],
                                       background_level=80, background_slope=-0.2,
                                       poisson=True, seed=seed)


def peak_sigma_to_width(sigma: float) -> float:
    """Hypermet width parameter of a Gaussian with standard deviation sigma."""
    return sigma * np.sqrt(2.0)
