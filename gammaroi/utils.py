"""
Utility functions for gamma spectroscopy analysis.

This module provides helper functions for logging, input validation,
synthetic spectrum generation and formatting of results.
"""

import logging
import sys
from pathlib import Path
from typing import Dict, List, Any, Optional, Tuple

import numpy as np


def setup_logger(name: str = 'gammaroi',
                level: int = logging.INFO,
                log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup logger with console and optional file output.

    Parameters:
        name: Logger name
        level: Logging level
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers = []

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def validate_input(filepath: str) -> bool:
    """
    Check that a spectrum file exists and is not empty.

    Parameters:
        filepath: Path to spectrum file

    Returns:
        True if the file can be read
    """
    path = Path(filepath)
    logger = logging.getLogger(__name__)

    if not path.exists():
        logger.error("Spectrum file not found: %s", path)
        return False
    if not path.is_file():
        logger.error("Not a file: %s", path)
        return False
    if path.stat().st_size == 0:
        logger.error("Spectrum file is empty: %s", path)
        return False

    return True


def validate_spectrum(channels: np.ndarray, counts: np.ndarray) -> bool:
    """
    Check that channel and count arrays describe a usable 1-D spectrum.

    Parameters:
        channels: Bin numbers
        counts: Counts per bin

    Returns:
        True if arrays are one-dimensional, equal length, non-empty,
        finite and strictly increasing in bin
    """
    channels = np.asarray(channels, dtype=float)
    counts = np.asarray(counts, dtype=float)

    if channels.ndim != 1 or counts.ndim != 1:
        return False
    if len(channels) != len(counts) or len(channels) == 0:
        return False
    if not (np.all(np.isfinite(channels)) and np.all(np.isfinite(counts))):
        return False
    if len(channels) > 1 and np.any(np.diff(channels) <= 0):
        return False

    return True


def generate_synthetic_spectrum(num_channels: int = 4096,
                              peaks: List[Tuple[float, float, float]] = None,
                              background_level: float = 10.0,
                              background_slope: float = 0.0,
                              poisson: bool = True,
                              seed: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Generate synthetic gamma spectrum for testing.

    Parameters:
        num_channels: Number of channels
        peaks: List of (channel, height, sigma) tuples
        background_level: Background count level at channel 0
        background_slope: Linear background change per channel
        poisson: Apply Poisson noise; False gives an exact, deterministic spectrum
        seed: Random seed for reproducibility

    Returns:
        Tuple of (channels, counts)
    """
    rng = np.random.default_rng(seed)

    channels = np.arange(num_channels, dtype=float)
    counts = background_level + background_slope * channels

    if peaks is None:
        peaks = [
            (num_channels * 0.25, 1000, 5),
            (num_channels * 0.5, 500, 8),
            (num_channels * 0.75, 300, 12),
        ]

    for channel, height, sigma in peaks:
        if 0 <= channel < num_channels:
            counts = counts + height * np.exp(-0.5 * ((channels - channel) / sigma) ** 2)

    counts = np.maximum(counts, 0)
    if poisson:
        counts = rng.poisson(counts).astype(float)

    return channels, counts


def gaussian_area(height: float, sigma: float) -> float:
    """Analytic area of a Gaussian with the given height and standard deviation."""
    return height * sigma * np.sqrt(2 * np.pi)


def calculate_counting_statistics(counts: np.ndarray) -> Dict[str, Any]:
    """
    Calculate counting statistics for spectrum.

    Parameters:
        counts: Spectrum counts

    Returns:
        Dictionary with statistical measures
    """
    counts = np.asarray(counts, dtype=float)
    if len(counts) == 0:
        return {'total_counts': 0.0, 'channels': 0}

    return {
        'total_counts': float(np.sum(counts)),
        'channels': len(counts),
        'non_zero_channels': int(np.count_nonzero(counts)),
        'mean_counts': float(np.mean(counts)),
        'max_counts': float(np.max(counts)),
    }


def format_uncertainty(value: float, uncertainty: float,
                      precision: int = 2) -> str:
    """
    Format value with uncertainty in standard notation.

    Parameters:
        value: Central value
        uncertainty: Uncertainty
        precision: Number of significant figures for uncertainty

    Returns:
        Formatted string
    """
    if not np.isfinite(value):
        return 'nan'
    if not np.isfinite(uncertainty) or uncertainty <= 0:
        return f"{value:.{precision}f}"

    if uncertainty >= 10:
        return f"{value:.0f} ± {uncertainty:.0f}"
    elif uncertainty >= 1:
        return f"{value:.1f} ± {uncertainty:.1f}"
    else:
        # Find first significant digit of uncertainty
        exp = int(np.floor(np.log10(uncertainty)))
        factor = 10 ** (-exp)
        unc_rounded = np.round(uncertainty * factor, precision - 1) / factor
        val_rounded = np.round(value, -exp + precision - 1)
        decimals = -exp + precision - 1
        return f"{val_rounded:.{decimals}f} ± {unc_rounded:.{decimals}f}"
