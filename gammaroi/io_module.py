"""
Input/Output operations for gamma spectroscopy data.

This module handles reading spectrum files (CSV, SPE, CHN, MCA), JSON
settings files and the hierarchical document form of fitted regions.
"""

import json
import logging
import struct
from pathlib import Path
from typing import Tuple, Dict, Any, Optional, List

import numpy as np
import pandas as pd

from .background import BoundedPolynomial
from .detection import Finder
from .fitter import Fitter
from .fitting import Hypermet
from .roi import ROI, Peak, next_peak_id
from .settings import FitSettings

logger = logging.getLogger(__name__)


def load_spectrum(filepath: str) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load spectrum from file with automatic format detection.

    Parameters:
        filepath: Path to spectrum file

    Returns:
        tuple: (channels, counts) as numpy arrays

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If file format is not supported or data is invalid
    """
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Spectrum file not found: {filepath}")

    extension = filepath.suffix.lower()

    if extension in ['.csv', '.txt', '.dat']:
        return load_csv_spectrum(filepath)
    elif extension == '.spe':
        return load_spe_spectrum(filepath)
    elif extension == '.chn':
        return load_chn_spectrum(filepath)
    elif extension == '.mca':
        return load_mca_spectrum(filepath)
    else:
        try:
            return load_csv_spectrum(filepath)
        except ValueError:
            raise ValueError(f"Unsupported file format: {extension}")


def load_csv_spectrum(filepath: Path) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load spectrum from CSV file.

    Expected format: one column (counts) or two columns (channel, counts),
    with or without a header row.

    Parameters:
        filepath: Path to CSV file

    Returns:
        tuple: (channels, counts) arrays

    Raises:
        ValueError: If the file cannot be parsed
    """
    try:
        data = pd.read_csv(filepath, header=None, comment='#')
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, ValueError) as e:
        raise ValueError(f"Error reading CSV file: {e}")

    # Drop a header row if present
    data = data.apply(pd.to_numeric, errors='coerce').dropna()

    if data.shape[1] < 2:
        counts = data.iloc[:, 0].values
        channels = np.arange(len(counts))
    else:
        channels = data.iloc[:, 0].values
        counts = data.iloc[:, 1].values

    if len(channels) == 0:
        raise ValueError("Empty spectrum file")

    channels = channels.astype(float)
    counts = counts.astype(float)

    if np.any(counts < 0):
        logger.warning("Negative counts detected in %s, setting to zero", filepath)
        counts = np.maximum(counts, 0)

    return channels, counts


def load_spe_spectrum(filepath: Path) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load spectrum from IAEA SPE format file.

    Parameters:
        filepath: Path to SPE file

    Returns:
        tuple: (channels, counts) arrays
    """
    with open(filepath, 'r') as f:
        lines = f.readlines()

    in_data_section = False
    skip_range_line = False
    counts_list = []

    for line in lines:
        line = line.strip()

        if line.startswith('$DATA'):
            in_data_section = True
            skip_range_line = True
            continue

        if in_data_section:
            if line.startswith('$'):
                break
            if skip_range_line:
                skip_range_line = False
                if len(line.split()) == 2:
                    continue
            try:
                counts_list.append(float(line))
            except ValueError:
                continue

    if not counts_list:
        raise ValueError("No data found in SPE file")

    counts = np.array(counts_list)
    channels = np.arange(len(counts), dtype=float)

    return channels, counts


def read_spe_times(filepath: str) -> Tuple[float, float]:
    """
    Read live and real time from the $MEAS_TIM section of an SPE file.

    Returns:
        tuple: (live_time, real_time) in seconds, zeros if absent
    """
    with open(filepath, 'r') as f:
        lines = [line.strip() for line in f]

    for i, line in enumerate(lines):
        if line.startswith('$MEAS_TIM') and i + 1 < len(lines):
            parts = lines[i + 1].split()
            if len(parts) >= 2:
                try:
                    return float(parts[0]), float(parts[1])
                except ValueError:
                    break
    return 0.0, 0.0


def load_chn_spectrum(filepath: Path) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load spectrum from Ortec CHN format file.

    Parameters:
        filepath: Path to CHN file

    Returns:
        tuple: (channels, counts) arrays
    """
    with open(filepath, 'rb') as f:
        header = f.read(32)
        if len(header) < 32:
            raise ValueError("Error reading CHN file: truncated header")

        # Bytes 30-31: number of channels
        num_channels = struct.unpack('<H', header[30:32])[0]
        payload = f.read(4 * num_channels)

    if len(payload) < 4 * num_channels:
        raise ValueError("Error reading CHN file: truncated data")

    counts = np.array(struct.unpack(f'<{num_channels}I', payload), dtype=float)
    channels = np.arange(len(counts), dtype=float)

    return channels, counts


def load_mca_spectrum(filepath: Path) -> Tuple[np.ndarray, np.ndarray]:
    """
    Load spectrum from MCA format file.

    Parameters:
        filepath: Path to MCA file

    Returns:
        tuple: (channels, counts) arrays
    """
    with open(filepath, 'r') as f:
        lines = f.readlines()

    in_data_section = False
    counts_list = []

    for line in lines:
        line = line.strip()

        if line == '<<DATA>>':
            in_data_section = True
            continue

        if line == '<<END>>':
            break

        if in_data_section and line:
            try:
                counts_list.append(float(line))
            except ValueError:
                continue

    if not counts_list:
        raise ValueError("No data found in MCA file")

    counts = np.array(counts_list)
    channels = np.arange(len(counts), dtype=float)

    return channels, counts


def load_settings(filepath: str) -> FitSettings:
    """
    Load fit settings from JSON file.

    Parameters:
        filepath: Path to settings file

    Returns:
        FitSettings

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the JSON or the settings are invalid
    """
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Settings file not found: {filepath}")

    try:
        with open(filepath, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in settings file: {e}")

    return FitSettings.from_dict(data)


def save_settings(settings: FitSettings, filepath: str):
    with open(filepath, 'w') as f:
        json.dump(settings.to_dict(), f, indent=2)


# Fit persistence

def peak_to_dict(peak: Peak) -> Dict[str, Any]:
    data: Dict[str, Any] = {'center': peak.center, 'energy': peak.energy}
    if peak.sum4 is not None:
        data['sum4'] = {'left': peak.sum4.left_bin, 'right': peak.sum4.right_bin}
    if peak.hypermet is not None:
        data['hypermet'] = peak.hypermet.to_dict()
    return data


def roi_to_dict(roi: ROI, include_settings: bool = False) -> Dict[str, Any]:
    """
    Document form of a region.

    Parameters:
        roi: Region to store
        include_settings: Store the region settings as an override

    Returns:
        dict with background edges, background coefficients, peaks and the
        current fit description
    """
    data: Dict[str, Any] = {
        'LB': roi.LB.to_dict(),
        'RB': roi.RB.to_dict(),
        'background': roi.background.to_dict() if roi.background else None,
        'description': roi.fit_description,
        'peaks': [peak_to_dict(p) for p in roi.peaks()],
    }
    if include_settings:
        data['settings'] = roi.settings.to_dict()
    return data


def roi_from_dict(data: Dict[str, Any], parent: Finder,
                  settings: Optional[FitSettings] = None) -> Optional[ROI]:
    """
    Rebuild a region from its document form against a spectrum.

    Peaks that cannot be parsed are skipped with a warning; a missing
    background leaves the one initialised from the edges.

    Parameters:
        data: Region document
        parent: Finder holding the whole spectrum; must cover the edges
        settings: Settings used unless the document carries an override

    Returns:
        ROI, or None if the edges are missing or not covered by the spectrum
    """
    if 'settings' in data:
        settings = FitSettings.from_dict(data['settings'])
    settings = settings or FitSettings()

    try:
        LB_bins = (float(data['LB']['left']), float(data['LB']['right']))
        RB_bins = (float(data['RB']['left']), float(data['RB']['right']))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Region without valid background edges: %s", e)
        return None

    roi = ROI(settings)
    if parent.empty or LB_bins[0] < parent.x[0] or RB_bins[1] > parent.x[-1]:
        logger.warning("Region %g-%g is not covered by the spectrum", LB_bins[0], RB_bins[1])
        return None
    if not roi.set_data(parent.x, parent.y, LB_bins[0], RB_bins[1]):
        return None
    if not roi.set_edges(LB_bins, RB_bins):
        logger.warning("Region %g-%g has invalid background edges", LB_bins[0], RB_bins[1])
        return None

    background = None
    if data.get('background'):
        try:
            background = BoundedPolynomial.from_dict(data['background'])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring stored background: %s", e)

    peaks: List[Peak] = []
    for entry in data.get('peaks', []):
        try:
            if entry.get('hypermet'):
                peaks.append(Peak(next_peak_id(),
                                  hypermet=Hypermet.from_dict(entry['hypermet'], settings)))
            else:
                window = entry['sum4']
                peak = roi.summation_peak(float(window['left']), float(window['right']))
                if peak is None:
                    raise ValueError(f"empty summation window {window}")
                peaks.append(peak)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Skipping stored peak: %s", e)

    roi.load_fit(peaks, background, data.get('description') or 'Loaded')
    return roi


def fitter_to_dict(fitter: Fitter) -> Dict[str, Any]:
    return {
        'name': fitter.name,
        'settings': fitter.settings.to_dict(),
        'spectrum': {
            'x': fitter.finder.x.tolist(),
            'y': fitter.finder.y.tolist(),
        },
        'regions': [roi_to_dict(roi) for roi in fitter.regions()],
    }


def fitter_from_dict(data: Dict[str, Any]) -> Fitter:
    """
    Rebuild a Fitter with its spectrum and regions.

    Raises:
        ValueError: If settings or spectrum are missing or invalid
    """
    try:
        settings = FitSettings.from_dict(data.get('settings', {}))
        x = np.asarray(data['spectrum']['x'], dtype=float)
        y = np.asarray(data['spectrum']['y'], dtype=float)
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid fit document: {e}")

    fitter = Fitter(settings)
    if not fitter.set_data(x, y, settings.bits, settings.live_time,
                           settings.real_time, data.get('name', '')):
        raise ValueError("Invalid spectrum in fit document")

    for entry in data.get('regions', []):
        roi = roi_from_dict(entry, fitter.finder, settings)
        if roi is not None:
            fitter.insert_roi(roi)
        else:
            logger.warning("Skipping stored region")

    return fitter


def save_fitter(fitter: Fitter, filepath: str):
    """Save a Fitter with its spectrum and all regions as JSON."""
    with open(filepath, 'w') as f:
        json.dump(fitter_to_dict(fitter), f, indent=2)


def load_fitter(filepath: str) -> Fitter:
    """
    Load a Fitter saved by save_fitter.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is not a valid fit document
    """
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Fit file not found: {filepath}")

    try:
        with open(filepath, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in fit file: {e}")

    return fitter_from_dict(data)
