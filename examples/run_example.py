#!/usr/bin/env python3
"""
Example script demonstrating the use of GammaROI for spectrum analysis.

This script shows:
1. Building a spectrum with a known doublet
2. Finding regions of interest
3. Fitting every region with residual refinement
4. Editing a region by hand and rolling back
5. Saving the fit and the report
"""

import sys
from pathlib import Path

# Add parent directory to path if running from examples folder
sys.path.insert(0, str(Path(__file__).parent.parent))

from gammaroi import Fitter, FitSettings, Calibration, save_fitter, write_text_report, export_results
from gammaroi.utils import generate_synthetic_spectrum, calculate_counting_statistics, format_uncertainty


def print_peaks(peaks):
    print("   " + "-" * 66)
    print(f"   {'Id':<6} {'Energy':<10} {'FWHM':<8} {'Area (Hyp)':<20} {'Area (SUM4)':<20}")
    print("   " + "-" * 66)
    for peak in peaks:
        hyp = format_uncertainty(*peak.hypermet.area()) if peak.hypermet else '-'
        s4 = format_uncertainty(peak.sum4.net_area, peak.sum4.net_uncertainty) if peak.sum4 else '-'
        print(f"   {peak.peak_id:<6} {peak.energy:<10.2f} {peak.fwhm_energy:<8.2f} {hyp:<20} {s4:<20}")


def main():
    """Run example analysis on a synthetic spectrum."""

    print("=" * 60)
    print("GammaROI Example Analysis")
    print("=" * 60)

    output_dir = Path(__file__).parent / "example_output"
    output_dir.mkdir(exist_ok=True)

    # Step 1: Spectrum
    print("\n1. Generating spectrum...")
    channels, counts = generate_synthetic_spectrum(
        num_channels=2048,
        peaks=[
            (511, 2000, 3),
            (661, 1500, 3.5),
            (671, 600, 3.5),    # close to 661: fitted as a doublet
            (1274, 800, 5),
        ],
        background_level=60,
        background_slope=-0.02,
        seed=42
    )
    stats = calculate_counting_statistics(counts)
    print(f"   {stats['channels']} channels, {stats['total_counts']:.0f} counts")

    # Step 2: Regions
    print("\n2. Finding regions...")
    settings = FitSettings(calibration=Calibration([0.0, 1.0]), live_time=600, real_time=620)
    fitter = Fitter(settings)
    fitter.set_data(channels, counts, live_time=600, real_time=620, name='example')
    n_regions = fitter.find_regions()
    print(f"   Found {n_regions} regions:")
    for roi in fitter.regions():
        print(f"     {roi.left:.0f} - {roi.right:.0f}")

    # Step 3: Fit
    print("\n3. Fitting regions...")
    fitter.auto_fit_regions(max_workers=2)
    print_peaks(fitter.peaks())

    # Step 4: Manual edit and rollback
    print("\n4. Editing the doublet region...")
    doublet = next((roi for roi in fitter.regions() if roi.overlaps(661)), None)
    if doublet is not None:
        for i, snapshot in enumerate(doublet.history):
            print(f"   [{i}] {snapshot.description:<22} rsq={snapshot.rsq:.5f} "
                  f"peaks={len(snapshot.peaks)}")

        doublet.add_sum4_peak(700, 712)
        print(f"   After manual SUM4 peak: {len(doublet.peaks())} peaks "
              f"({doublet.fit_description})")

        doublet.rollback(len(doublet.history) - 2)
        print(f"   Rolled back to: {doublet.fit_description}, {len(doublet.peaks())} peaks")

    # Step 5: Output
    print("\n5. Saving results...")
    write_text_report(fitter, output_dir / "example_report.txt")
    export_results(fitter.peaks(), output_dir / "example_peaks.csv")
    save_fitter(fitter, output_dir / "example_fit.json")
    print(f"   ✓ Results saved to {output_dir}")

    print("\n" + "=" * 60)
    print("Analysis complete!")
    print("=" * 60)


if __name__ == "__main__":
    main()
