"""
Reporting functions for gamma spectroscopy analysis.

This module flattens fitted peaks into a table, writes the per-spectrum
text report and exports results in various formats.
"""

from typing import List, Dict, Any
from pathlib import Path
import json
import warnings

import numpy as np
import pandas as pd

from .fitter import Fitter
from .roi import Peak
from .utils import format_uncertainty

COLUMNS = [
    'center', 'energy', 'fwhm', 'area_hyp', 'area_hyp_err', 'cps_hyp',
    'centroid_s4', 'centroid_s4_err', 'fwhm_s4', 'background_s4', 'background_s4_err',
    'area_s4', 'area_s4_err', 'cps_s4', 'cqi',
]


def peak_row(peak: Peak) -> Dict[str, Any]:
    """One report row; regression or summation columns are nan when absent."""
    nan = float('nan')
    row = {
        'center': peak.center,
        'energy': peak.energy,
        'fwhm': peak.fwhm_energy,
        'area_hyp': nan,
        'area_hyp_err': nan,
        'cps_hyp': nan,
        'centroid_s4': nan,
        'centroid_s4_err': nan,
        'fwhm_s4': nan,
        'background_s4': nan,
        'background_s4_err': nan,
        'area_s4': nan,
        'area_s4_err': nan,
        'cps_s4': nan,
        'cqi': 0,
    }

    if peak.hypermet is not None:
        area, error = peak.hypermet.area()
        row.update(area_hyp=area, area_hyp_err=error, cps_hyp=peak.cps_hyp)

    if peak.sum4 is not None:
        s4 = peak.sum4
        row.update(centroid_s4=s4.centroid,
                   centroid_s4_err=s4.centroid_uncertainty,
                   fwhm_s4=s4.fwhm,
                   background_s4=s4.background_area,
                   background_s4_err=s4.background_uncertainty,
                   area_s4=s4.net_area,
                   area_s4_err=s4.net_uncertainty,
                   cps_s4=peak.cps_sum4,
                   cqi=s4.currie_quality_indicator)

    return row


def peaks_table(peaks: List[Peak]) -> pd.DataFrame:
    return pd.DataFrame([peak_row(p) for p in peaks], columns=COLUMNS)


def export_results(peaks: List[Peak], output_file: str, format: str = 'auto'):
    """
    Export fitted peak parameters to file.

    Parameters:
        peaks: Peaks to export
        output_file: Output file path
        format: Output format ('csv', 'json', 'text', 'auto')
    """
    output_path = Path(output_file)

    if format == 'auto':
        format_map = {
            '.csv': 'csv',
            '.json': 'json',
            '.txt': 'text',
        }
        format = format_map.get(output_path.suffix.lower(), 'csv')

    df = peaks_table(peaks)

    if format == 'csv':
        df.to_csv(output_path, index=False, float_format='%.4f')

    elif format == 'json':
        records = json.loads(df.to_json(orient='records'))
        with open(output_path, 'w') as f:
            json.dump(records, f, indent=2)

    elif format == 'text':
        with open(output_path, 'w') as f:
            _write_peak_lines(f, peaks)

    else:
        warnings.warn(f"Unknown format: {format}, using CSV")
        df.to_csv(output_path, index=False)


def _value_error(value: float, error: float) -> str:
    if not np.isfinite(value):
        return '-'
    return format_uncertainty(value, error)


def _write_peak_lines(f, peaks: List[Peak]):
    header = (f"{'center':>12} | {'energy':>12} | {'FWHM':>10} | {'area(Hyp)':>22} | "
              f"{'cps(Hyp)':>10} || {'centroid(S4)':>20} | {'FWHM(S4)':>10} | "
              f"{'bckg-area(S4)':>20} | {'area(S4)':>20} | {'cps(S4)':>10} | {'CQI':>3}")
    f.write(header + "\n")
    f.write("-" * len(header) + "\n")

    for peak in peaks:
        row = peak_row(peak)
        f.write(f"{row['center']:>12.3f} | {row['energy']:>12.3f} | {row['fwhm']:>10.3f} | "
                f"{_value_error(row['area_hyp'], row['area_hyp_err']):>22} | "
                f"{row['cps_hyp']:>10.4g} || "
                f"{_value_error(row['centroid_s4'], row['centroid_s4_err']):>20} | "
                f"{row['fwhm_s4']:>10.3f} | "
                f"{_value_error(row['background_s4'], row['background_s4_err']):>20} | "
                f"{_value_error(row['area_s4'], row['area_s4_err']):>20} | "
                f"{row['cps_s4']:>10.4g} | {row['cqi']:>3}\n")


def write_text_report(fitter: Fitter, output_file: str):
    """
    Write the analysis report of a fitted spectrum.

    Parameters:
        fitter: Fitter holding the spectrum and its regions
        output_file: Output file path
    """
    s = fitter.settings
    peaks = fitter.peaks()

    with open(output_file, 'w') as f:
        f.write(f"Spectrum \"{fitter.name}\"\n")
        f.write("=" * 70 + "\n")
        resolution = 2 ** s.bits if s.bits > 0 else len(fitter.finder.x)
        f.write(f"Bits: {s.bits}    Resolution: {resolution}\n")
        f.write("=" * 70 + "\n\n")

        f.write(f"Live time(s):   {s.live_time:g}\n")
        f.write(f"Real time(s):   {s.real_time:g}\n")
        if 0 < s.live_time < s.real_time:
            f.write(f"Dead time(%):   {(s.real_time - s.live_time) / s.real_time * 100:.3f}\n")

        total = fitter.total_count
        f.write(f"Total count:    {total:g}\n")
        if total > 0 and s.live_time > 0:
            f.write(f"Count rate:     {total / s.live_time:.4g} cps(total/live)\n")
        if total > 0 and s.real_time > 0:
            f.write(f"Count rate:     {total / s.real_time:.4g} cps(total/real)\n")
        f.write("\n")

        f.write("=" * 70 + "\n")
        f.write("PEAK ANALYSIS RESULTS\n")
        f.write(f"Regions: {len(fitter.regions())}    Peaks: {len(peaks)}\n")
        f.write("=" * 70 + "\n\n")

        _write_peak_lines(f, peaks)

        f.write("\n")
        f.write("CQI: 1 = detectable, 2 = above critical level, 3 = not significant\n")
