"""
Command-line entry point for the normalization experiments.

Usage:
    python main.py              # Verify layers, then run training experiments
    python main.py --verify     # Verify layers against Keras only
    python main.py -v           # Also show the library's debug log
"""

import argparse
import logging
import sys

from experiments.run import METRICS_DIR, PLOTS_DIR, run_all


def build_parser():
    return argparse.ArgumentParser(
        description="normlayers: verify the normalization layers against Keras "
        "and compare them on a small regression MLP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Outputs:
    {METRICS_DIR}/*.json    verification and training results
    {PLOTS_DIR}/*.png               histograms and loss curves
        """,
    )


def main(argv=None):
    parser = build_parser()
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Only compare the custom layers with their Keras counterparts",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log dtype conversions and other library diagnostics",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.verify:
        run_all()
        return 0

    verification = run_all(verify_only=True)
    failed = [name for name, results in verification.items() if not results["passed"]]
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
