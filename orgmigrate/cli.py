"""Command line interface for the migration engine."""

import argparse
import logging
import sys
from typing import List, Optional

from .errors import MigrationError
from .models.migration import EndpointType, MigrationConfig, MigrationStatus
from .orchestrator import MigrationOrchestrator

logger = logging.getLogger(__name__)

CSVFILE = EndpointType.CSVFILE.value


def prompt_user(message: str) -> bool:
    """Ask a yes/no question on the terminal."""
    answer = input(f"{message} [y/N]: ").strip().lower()
    return answer in ("y", "yes")


def build_config(args) -> MigrationConfig:
    """Translate parsed arguments into a MigrationConfig."""
    source_is_file = args.source.lower() == CSVFILE
    target_is_file = args.target.lower() == CSVFILE
    return MigrationConfig(
        name=args.name,
        path=args.path,
        source=EndpointType.CSVFILE if source_is_file else EndpointType.ORG,
        source_url=None if source_is_file else args.source,
        source_token=args.source_token or args.token,
        target=EndpointType.CSVFILE if target_is_file else EndpointType.ORG,
        target_url=None if target_is_file else args.target,
        target_token=args.target_token or args.token,
        noprompt=args.noprompt,
        output_dir=args.output,
    )


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--path", default=".", help="Directory holding export.json and the source files")
    parser.add_argument("--source", default=CSVFILE, help="'csvfile' or the source REST API base URL")
    parser.add_argument("--target", default=CSVFILE, help="'csvfile' or the target REST API base URL")
    parser.add_argument("--token", help="Access token used for both orgs")
    parser.add_argument("--source-token", help="Access token for the source org")
    parser.add_argument("--target-token", help="Access token for the target org")
    parser.add_argument("--output", help="Output directory (default: <path>/target)")
    parser.add_argument("--name", default="migration", help="Run name used in the report")
    parser.add_argument("--noprompt", action="store_true", help="Never ask, always continue")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Org migration tool - move related records between orgs and flat files"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Run a migration")
    _add_common_arguments(run_parser)

    validate_parser = subparsers.add_parser("validate", help="Validate and repair source flat files only")
    _add_common_arguments(validate_parser)

    order_parser = subparsers.add_parser("order", help="Print the query, update and delete orders")
    _add_common_arguments(order_parser)

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "run":
        return run_migration(args)
    elif args.command == "validate":
        return run_migration(args, validate_only=True)
    elif args.command == "order":
        return run_order(args)

    parser.print_help()
    return 2


def run_migration(args, validate_only: bool = False) -> int:
    """Run the pipeline and print a summary."""
    config = build_config(args)
    orchestrator = MigrationOrchestrator(config, confirm=prompt_user)
    result = orchestrator.run_migration(validate_only=validate_only)

    print("\n" + "=" * 60)
    print("VALIDATION COMPLETE" if validate_only else "MIGRATION COMPLETE")
    print("=" * 60)
    print(f"Status: {result.status.value}")
    if result.csv_issues_count:
        print(f"Flat-file issues: {result.csv_issues_count}")
    for name, summary in result.object_summaries.items():
        if summary.total:
            print(f"  {name}: inserted {summary.inserted}, updated {summary.updated}, deleted {summary.deleted}")
    if result.missing_parents_count:
        print(f"Missing parent references: {result.missing_parents_count}")
    for risk in result.correctness_risks:
        print(f"Warning: {risk}")
    for error in result.errors:
        print(f"Error: {error['error']}")
    if result.duration_seconds:
        print(f"Duration: {result.duration_seconds:.2f} seconds")

    return 0 if result.status == MigrationStatus.COMPLETED else 1


def run_order(args) -> int:
    """Print the computed task orders."""
    orchestrator = MigrationOrchestrator(build_config(args))
    try:
        order = orchestrator.compute_order()
    except MigrationError as e:
        print(f"Error: {e}")
        return 1

    for label, names in order.to_dict().items():
        print(f"{label.capitalize()} order: {', '.join(names) or '(empty)'}")
    for risk in order.correctness_risks:
        print(f"Warning: {risk}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
