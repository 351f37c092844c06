#!/usr/bin/env python3
"""
Example Analysis Script: Scale Reliability

Purpose: Run descriptive statistics and Cronbach's alpha through the R engine.
Input:   CSV file with one column per Likert item
Output:  JSON result file plus the generated R code

Usage:
    python scripts/run_example.py items.csv
    python scripts/run_example.py items.csv --output alpha.json --likert-max 7

Notes:
    The first run bootstraps the R worker (package installation can take a
    few minutes). Progress messages are printed as they arrive.

    Use this as a template for your own analysis scripts. Key features:
    - Imports from the src/ directory
    - One EngineManager/ExecutionGateway pair for the whole script
    - Engine errors reported with their translated message
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import pandas as pd

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from analysis import run_cronbach_alpha, run_descriptive_stats
from engine import EngineError, EngineManager, ExecutionGateway


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Example analysis script - scale reliability with the R engine"
    )
    parser.add_argument('input', help="Input CSV file (numeric item columns)")
    parser.add_argument(
        '--output', '-o',
        default=None,
        help="Output JSON file (default: <input>_alpha.json)"
    )
    parser.add_argument('--likert-min', type=float, default=1, help="Lowest valid response")
    parser.add_argument('--likert-max', type=float, default=5, help="Highest valid response")
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help="Print the generated R code"
    )
    return parser.parse_args()


async def analyze(df: pd.DataFrame, args: argparse.Namespace):
    manager = EngineManager()
    manager.set_progress_callback(lambda message: print(f"  [engine] {message}"))
    gateway = ExecutionGateway(manager)
    try:
        print("\nStarting R engine...")
        await manager.init_engine()

        print("\nComputing descriptive statistics...")
        descriptive = await run_descriptive_stats(gateway, df)

        print("Computing Cronbach's alpha...")
        alpha = await run_cronbach_alpha(
            gateway, df, likert_min=args.likert_min, likert_max=args.likert_max
        )
        return descriptive, alpha
    finally:
        await manager.close()


def main():
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(level=logging.WARNING, format='%(levelname)s %(name)s: %(message)s')

    print("=" * 60)
    print("Example Analysis: Scale Reliability")
    print("=" * 60)

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"\nERROR: Input file not found: {input_path}")
        sys.exit(1)

    print(f"\nLoading: {input_path}")
    df = pd.read_csv(input_path).select_dtypes(include=['number'])
    print(f"  Rows: {len(df):,}")
    print(f"  Items: {len(df.columns)}")

    try:
        descriptive, alpha = asyncio.run(analyze(df, args))
    except EngineError as e:
        print(f"\nERROR [{e.category}]: {e.message}")
        sys.exit(1)

    output_path = Path(args.output) if args.output else input_path.with_name(
        f"{input_path.stem}_alpha.json"
    )
    alpha.to_json(output_path)
    print(f"\nResults saved: {output_path}")

    print("\n" + "-" * 60)
    print("RESULTS")
    print("-" * 60)
    for item in descriptive.variables:
        stats = descriptive.get(item)
        print(f"  {item:<12} mean = {stats['mean']:.2f}  sd = {stats['sd']:.2f}")
    print(f"\n  Cronbach's alpha: {alpha.raw_alpha:.3f} (standardized {alpha.std_alpha:.3f})")
    if alpha.n_clamped:
        print(f"  Responses clamped to [{args.likert_min:g}, {args.likert_max:g}]: {alpha.n_clamped}")
    for row in alpha.item_total_stats:
        print(
            f"  {row.item:<12} r(item, rest) = {row.corrected_item_total_correlation:.3f}"
            f"  alpha if deleted = {row.alpha_if_item_deleted:.3f}"
        )

    if args.verbose:
        print("\n" + "-" * 60)
        print("GENERATED R CODE")
        print("-" * 60)
        print(alpha.generated_code)

    print("\n" + "=" * 60)
    print("Analysis complete.")
    print("=" * 60)


if __name__ == '__main__':
    main()
