#!/usr/bin/env python3
"""
DBS Workflow - Application Runner.

Entry point for preparing the study table and running the full Bayesian
meta-analysis (prior check, three posterior variants, diagnostics,
comparison, prediction curves and figures).
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def check_env():
    """Check environment configuration and report status."""
    from config.settings import get_settings

    print("=" * 60)
    print("DBS WORKFLOW - ENVIRONMENT CHECK")
    print("=" * 60)

    settings = get_settings()

    print("\n[Data]")
    data_path = Path(settings.data.path)
    status = "FOUND" if data_path.exists() else "MISSING (set DATA_PATH)"
    print(f"  Path: {data_path} ({status})")
    print(f"  Study column: {settings.data.study_column}")

    print("\n[Sampling]")
    print(f"  Chains: {settings.sampling.chains}, draws: {settings.sampling.draws}, "
          f"tune: {settings.sampling.tune}")
    print(f"  Target accept: {settings.sampling.target_accept} "
          f"(escalation: {settings.sampling.escalation_list})")
    print(f"  Random seed: {settings.sampling.random_seed}")

    print("\n[Diagnostics]")
    print(f"  R-hat tolerance: {settings.diagnostics.rhat_tolerance} "
          f"(R-hat <= {1 + settings.diagnostics.rhat_tolerance:.3f})")
    print(f"  Max divergences: {settings.diagnostics.max_divergences}")
    print(f"  Pareto k threshold: {settings.diagnostics.pareto_k_threshold}")

    print("\n[Cache]")
    if settings.cache.enabled:
        print(f"  Enabled: {settings.cache.directory}")
    else:
        print("  Disabled (set CACHE_ENABLED=true to reuse fits)")

    print("\n[Libraries]")
    for module in ("numpy", "scipy", "pandas", "pymc", "arviz", "matplotlib"):
        try:
            imported = __import__(module)
            print(f"  {module}: {getattr(imported, '__version__', 'unknown')}")
        except ImportError:
            print(f"  {module}: NOT INSTALLED")

    print("\n[Usage]")
    print("  1. Configure paths and sampler settings in .env")
    print("  2. Run: python3 run.py prepare data/dat_ishak2007.csv")
    print("  3. Run: python3 run.py run")
    print("\n" + "=" * 60)


def prepare(input_path: str, output_path: str):
    """Reshape and normalize the wide table, write the long table."""
    from config.settings import get_settings
    from dbs_workflow.analysis.preprocessing import StudyNormalizer, prepare_dataset
    from dbs_workflow.data.loader import WideLayout, read_wide_table

    settings = get_settings()
    layout = WideLayout.ishak(study_column=settings.data.study_column)
    data, report = prepare_dataset(
        read_wide_table(input_path),
        layout,
        StudyNormalizer(),
    )

    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)
    data.to_csv(output, index=False)

    print(f"Rows: {report.n_original} -> {report.n_final} "
          f"({report.n_missing_outcome} without outcome)")
    print(f"Studies: {report.n_studies_original} -> {report.n_studies_final}")
    for note in report.warnings:
        print(f"  NOTE: {note}")
    print(f"Long table saved to: {output}")


def run_workflow(input_path: str, output_dir: str, allow_unreliable: bool, figures: bool):
    """Run the full workflow and write the comparison table and figures."""
    from config.settings import get_settings
    from dbs_workflow.analysis.workflow import Workflow
    from dbs_workflow.data.loader import read_wide_table

    settings = get_settings()
    logger = logging.getLogger("run")

    workflow = Workflow(settings, allow_unreliable=allow_unreliable)
    result = workflow.run(read_wide_table(input_path))

    output = Path(output_dir)
    output.mkdir(parents=True, exist_ok=True)

    print("\n[Fits]")
    for artifact in result.artifacts:
        print(f"  {artifact.name}: {artifact.convergence.summary()}")
    for name, error in result.artifacts.failures.items():
        print(f"  {name}: FAILED ({error})")

    print("\n[Predictive checks]")
    for evaluation in result.evaluations.values():
        if evaluation.check is None:
            continue
        extreme = evaluation.check.extreme()
        print(f"  {evaluation.name} ({evaluation.check.kind}): "
              f"{', '.join(extreme) if extreme else 'no extreme statistics'}")

    print("\n[LOO]")
    for evaluation in result.evaluations.values():
        if evaluation.loo is None:
            continue
        print(f"  {evaluation.loo.summary()}")
        if evaluation.loo.n_flagged:
            print(evaluation.loo.flagged.to_string(index=False))
        evaluation.summary.to_csv(output / f"summary_{evaluation.name}.csv")
        if evaluation.sensitivity is not None:
            evaluation.sensitivity.table.to_csv(
                output / f"sensitivity_{evaluation.name}.csv", index=False
            )
            for _, row in evaluation.sensitivity.flagged().iterrows():
                print(f"    {row['parameter']}: {row['diagnosis']}")

    print("\n[Comparison]")
    if result.comparison is not None:
        print(result.comparison.summary())
        result.comparison.to_frame().to_csv(output / "comparison.csv")
    else:
        print(f"  Skipped: {result.comparison_error}")

    for name, curve in result.curves.items():
        curve.to_frame().to_csv(output / f"curve_{name}.csv", index=False)

    if figures:
        from dbs_workflow.visualization.figures import FigureGenerator
        saved = FigureGenerator(output_dir=str(output / "figures")).generate_all(result)
        logger.info("Saved %d figures to %s", len(saved), output / "figures")

    print(f"\nResults saved to: {output}")


def main():
    parser = argparse.ArgumentParser(
        description="Bayesian meta-analysis of DBS outcomes in Parkinson's disease",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 run.py check-env                                # Check configuration
  python3 run.py prepare data/dat_ishak2007.csv           # Write the long table
  python3 run.py run                                      # Full workflow (DATA_PATH)
  python3 run.py run --input data/dat_ishak2007.csv --no-figures
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Check environment
    subparsers.add_parser("check-env", help="Check environment configuration")

    # Prepare command
    prepare_parser = subparsers.add_parser("prepare", help="Reshape and normalize the study table")
    prepare_parser.add_argument("input", help="Wide table (csv, tsv or parquet)")
    prepare_parser.add_argument("--output", default="./output/long.csv", help="Long table path")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run the full workflow")
    run_parser.add_argument("--input", default=None, help="Wide table (default: DATA_PATH)")
    run_parser.add_argument("--output", default=None, help="Output directory (default: OUTPUT_DIR)")
    run_parser.add_argument("--allow-unreliable", action="store_true",
                            help="Rank models even if a fit is marked unreliable")
    run_parser.add_argument("--no-figures", action="store_true", help="Skip figure generation")

    args = parser.parse_args()

    if args.command == "check-env":
        check_env()
    elif args.command == "prepare":
        prepare(args.input, args.output)
    elif args.command == "run":
        from config.settings import get_settings
        configure_logging(args.verbose)
        settings = get_settings()
        run_workflow(
            args.input or settings.data.path,
            args.output or settings.output_dir,
            args.allow_unreliable,
            not args.no_figures,
        )
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
