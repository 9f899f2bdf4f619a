#!/usr/bin/env python3
"""
Main command-line interface for GammaROI region fitting.

Loads a spectrum, builds regions of interest, fits every region with
iterative residual refinement and writes a text report and a peak table.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .calibration import parse_calibration, FWHMCalibration
from .fitter import Fitter
from .io_module import load_spectrum, load_settings, save_fitter, read_spe_times
from .output import export_results, write_text_report
from .settings import FitSettings
from .utils import setup_logger, validate_input, calculate_counting_statistics


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='GammaROI - Region-of-interest peak fitting for gamma spectra',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        'spectrum',
        type=str,
        help='Path to spectrum file (CSV, SPE, MCA or CHN format)'
    )

    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to JSON fit settings file'
    )

    parser.add_argument(
        '--calibration',
        type=str,
        default=None,
        help='Linear calibration coefficients as "a,b" where Energy = a*Channel + b'
    )

    parser.add_argument(
        '--fwhm-calibration',
        type=str,
        default=None,
        help='Resolution model as "a,b" where FWHM(bins) = sqrt(a*Channel + b)'
    )

    fit_group = parser.add_argument_group('fit parameters')
    fit_group.add_argument(
        '--max-iterations',
        type=int,
        default=None,
        help='Maximum residual refinement iterations per region'
    )

    fit_group.add_argument(
        '--sum4-only',
        action='store_true',
        help='Skip regression and report summation (SUM4) results only'
    )

    fit_group.add_argument(
        '--workers',
        type=int,
        default=1,
        help='Number of threads fitting regions in parallel (default: 1)'
    )

    output_group = parser.add_argument_group('output parameters')
    output_group.add_argument(
        '--output-dir',
        type=str,
        default='.',
        help='Output directory for results (default: current directory)'
    )

    output_group.add_argument(
        '--save-fit',
        type=str,
        default=None,
        help='Save the fitted regions as JSON to this file'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress all output except errors'
    )

    parser.add_argument(
        '--version',
        action='version',
        version='%(prog)s 0.1.0'
    )

    return parser.parse_args(argv)


def load_configuration(args) -> FitSettings:
    """
    Build fit settings from the settings file and command line.

    Command line values override the file.

    Raises:
        ValueError: If the settings are invalid
    """
    settings = load_settings(args.config) if args.config else FitSettings()

    if args.calibration:
        settings.calibration = parse_calibration(args.calibration)

    if args.fwhm_calibration:
        linear = parse_calibration(args.fwhm_calibration)
        settings.fwhm_calibration = FWHMCalibration(linear.coefficients)

    if args.max_iterations is not None:
        settings.resid_max_iterations = args.max_iterations

    if args.sum4_only:
        settings.sum4_only = True

    settings.validate()
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function."""
    args = parse_arguments(argv)

    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.ERROR
    logger = setup_logger('gammaroi', level)

    if not validate_input(args.spectrum):
        return 1

    try:
        settings = load_configuration(args)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    try:
        channels, counts = load_spectrum(args.spectrum)
    except (FileNotFoundError, ValueError) as e:
        logger.error("Error loading spectrum: %s", e)
        return 1

    stats = calculate_counting_statistics(counts)
    logger.info("Loaded %d channels, %.0f total counts", stats['channels'], stats['total_counts'])

    live_time, real_time = 0.0, 0.0
    if Path(args.spectrum).suffix.lower() == '.spe':
        live_time, real_time = read_spe_times(args.spectrum)

    fitter = Fitter(settings)
    if not fitter.set_data(channels, counts, settings.bits,
                           live_time or settings.live_time,
                           real_time or settings.real_time,
                           Path(args.spectrum).stem):
        logger.error("Spectrum holds no usable data")
        return 1

    n_regions = fitter.find_regions()
    if n_regions == 0:
        logger.warning("No peak regions found")

    fitter.auto_fit_regions(max_workers=args.workers)
    peaks = fitter.peaks()
    logger.info("Fitted %d peaks in %d regions", len(peaks), n_regions)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    report_file = output_dir / f'{fitter.name}_report.txt'
    table_file = output_dir / f'{fitter.name}_peaks.csv'
    write_text_report(fitter, report_file)
    export_results(peaks, table_file)
    logger.info("Report saved to %s", report_file)
    logger.info("Peak table saved to %s", table_file)

    if args.save_fit:
        save_fitter(fitter, args.save_fit)
        logger.info("Fit saved to %s", args.save_fit)

    return 0


def entry_point():
    """Entry point for console script."""
    sys.exit(main())


if __name__ == "__main__":
    entry_point()
