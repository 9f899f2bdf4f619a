"""
GammaROI - Region-of-interest Peak Fitting for Gamma Spectra
============================================================

A Python package that finds peak regions in a gamma-ray spectrum, fits
each region with Hypermet peak shapes over a two-point background,
refines fits from the residual and reports regression and summation
(SUM4) areas side by side.

Basic Usage:
    from gammaroi import Fitter, load_spectrum

    # Load spectrum
    channels, counts = load_spectrum('spectrum.csv')

    # Build and fit regions
    fitter = Fitter()
    fitter.set_data(channels, counts)
    fitter.find_regions()
    fitter.auto_fit_regions()

    for peak in fitter.peaks():
        print(peak.center, peak.area())

Command Line Usage:
    python -m gammaroi spectrum.csv --calibration 0.5,0 --output-dir results
"""

__version__ = "0.1.0"

# Import main classes for easier access
from .background import EdgeWindow, BoundedPolynomial, FitParam
from .calibration import Calibration, FWHMCalibration, parse_calibration
from .detection import Finder
from .fitter import Fitter
from .fitting import Gaussian, Hypermet, fit_multi
from .io_module import load_spectrum, load_settings, save_settings, save_fitter, load_fitter
from .output import export_results, write_text_report, peaks_table
from .roi import ROI, Peak, FitSnapshot
from .settings import FitSettings
from .sum4 import SUM4

# Define what gets imported with "from gammaroi import *"
__all__ = [
    'EdgeWindow',
    'BoundedPolynomial',
    'FitParam',
    'Calibration',
    'FWHMCalibration',
    'parse_calibration',
    'Finder',
    'Fitter',
    'Gaussian',
    'Hypermet',
    'fit_multi',
    'load_spectrum',
    'load_settings',
    'save_settings',
    'save_fitter',
    'load_fitter',
    'export_results',
    'write_text_report',
    'peaks_table',
    'ROI',
    'Peak',
    'FitSnapshot',
    'FitSettings',
    'SUM4',
]

# Package metadata
PACKAGE_DATA = {
    'name': 'gammaroi',
    'version': __version__,
    'description': 'Region-of-interest Hypermet peak fitting for gamma spectra',
    'python_requires': '>=3.8',
    'install_requires': [
        'numpy>=1.20.0',
        'scipy>=1.6.0',
        'pandas>=1.1.0',
    ],
    'optional_requires': {
        'test': ['pytest>=6.0'],
    }
}
