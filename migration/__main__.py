"""CLI entry point for running migrations.

Usage:
    python -m migration run contoso.yaml
    python -m migration run contoso.yaml --only product --local
    python -m migration run contoso.yaml --resume-from ExternalTableReady
    python -m migration script contoso.yaml --output load.sql
    python -m migration validate contoso.yaml

Exit codes:
    0  all migrations succeeded
    1  a migration failed
    2  the configuration is invalid
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from migration.lib.config_loader import MigrationConfig, load_config, validate_config
from migration.lib.env import load_env_file
from migration.lib.errors import ConfigurationError
from migration.lib.inflate import generate_inflation_sql
from migration.lib.logging import setup_logging
from migration.lib.orchestrator import LoadState
from migration.lib.polybase import generate_load_script
from migration.lib.runner import MigrationResult, MigrationRunner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_script(config: MigrationConfig, names: Optional[List[str]] = None, *, reveal_secrets: bool = False) -> str:
    """T-SQL for the selected migrations: inflation scripts, then load scripts."""
    migrations = [config.get(n) for n in names] if names else config.migrations
    parts = []
    for migration in migrations:
        if migration.inflate:
            columns = migration.plan.external_table.columns
            spec = migration.inflate
            text_columns = (
                spec.text_columns
                if spec.text_columns is not None
                else [c.name for c in columns if c.sql_type.is_string and c.name != spec.key_column]
            )
            parts.append(generate_inflation_sql(spec, [c.name for c in columns], text_columns))
        parts.append(generate_load_script(migration.plan, reveal_secrets=reveal_secrets))
    return "\n".join(parts)


def print_results(results: List[MigrationResult]) -> None:
    print()
    print("=" * 60)
    print("MIGRATION RESULTS")
    print("=" * 60)
    for result in results:
        status = "OK" if result.success else "FAILED"
        print(f"  {result.name:<24} {status:<7} {result.elapsed_seconds:6.1f}s")
        if result.inflation:
            print(f"      inflated: {result.inflation.total_rows:,} rows in {result.inflation.target}")
        if result.staged:
            print(f"      staged:   {result.staged.row_count:,} rows -> {result.staged.location}")
        if result.load and result.load.report:
            print(f"      verified: {result.load.report.summary()}")
        if result.error:
            print(f"      error:    {getattr(result.error, 'message', result.error)}")
            if result.state_reached:
                print(f"      resume:   --resume-from {result.state_reached}")
    print("=" * 60)


def cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    resume_from = LoadState.parse(args.resume_from) if args.resume_from else None

    with MigrationRunner(config, local=args.local, node_count=args.nodes) as runner:
        results = runner.run(
            args.only,
            parallel=args.parallel,
            skip_inflate=args.skip_inflate,
            skip_export=args.skip_export,
            resume_from=resume_from,
        )

    if args.json:
        print(json.dumps([r.to_dict() for r in results], indent=2, default=str))
    else:
        print_results(results)
    return EXIT_OK if all(r.success for r in results) else EXIT_FAILED


def cmd_script(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    script = build_script(config, args.only, reveal_secrets=args.reveal_secrets)
    if args.output:
        Path(args.output).write_text(script, encoding="utf-8")
        logger.info("Wrote load script to %s", args.output)
    else:
        print(script)
    return EXIT_OK


def cmd_validate(args: argparse.Namespace) -> int:
    errors = validate_config(args.config)
    if errors:
        print(f"Configuration {args.config} is invalid:")
        for error in errors:
            print(f"  - {error}")
        return EXIT_CONFIG
    print(f"Configuration {args.config} is valid")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m migration",
        description="Migrate SQL Server tables into a dedicated SQL pool with PolyBase",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Full migration: inflate, export, load
    python -m migration run contoso.yaml

    # One table, against the in-process warehouse
    python -m migration run contoso.yaml --only product --local

    # Resume a failed load without re-exporting
    python -m migration run contoso.yaml --only product --resume-from ExternalTableReady

    # Print the T-SQL for a manual run
    python -m migration script contoso.yaml
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json-log",
        action="store_true",
        help="Output logs in JSON format (for log aggregation systems)",
    )
    parser.add_argument("--log-file", help="Write logs to a file in addition to console")
    parser.add_argument("--env-file", help="Load environment variables from this .env file")

    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Inflate, export and load")
    run.add_argument("config", help="Migration YAML file")
    run.add_argument("--only", action="append", metavar="NAME", help="Run only this migration (repeatable)")
    run.add_argument("--parallel", type=int, default=1, metavar="N", help="Run up to N migrations at once")
    run.add_argument("--skip-inflate", action="store_true", help="Use the existing inflated tables")
    run.add_argument("--skip-export", action="store_true", help="Load the previously staged files")
    run.add_argument(
        "--resume-from",
        metavar="STATE",
        help="Resume the load from this state (implies --skip-inflate and --skip-export)",
    )
    run.add_argument("--local", action="store_true", help="Load into the in-process warehouse")
    run.add_argument("--nodes", type=int, default=4, help="Node count for --local (default: 4)")
    run.add_argument("--json", action="store_true", help="Print results as JSON")
    run.set_defaults(handler=cmd_run)

    script = sub.add_parser("script", help="Print the T-SQL for the configured migrations")
    script.add_argument("config", help="Migration YAML file")
    script.add_argument("--only", action="append", metavar="NAME", help="Only this migration (repeatable)")
    script.add_argument("--output", "-o", help="Write the script to a file")
    script.add_argument("--reveal-secrets", action="store_true", help="Include the storage secret")
    script.set_defaults(handler=cmd_script)

    validate = sub.add_parser("validate", help="Validate a configuration file")
    validate.add_argument("config", help="Migration YAML file")
    validate.set_defaults(handler=cmd_validate)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.env_file:
        load_env_file(args.env_file)
    else:
        load_env_file()

    setup_logging(verbose=args.verbose, json_format=args.json_log, log_file=args.log_file)

    try:
        return int(args.handler(args))
    except (ConfigurationError, FileNotFoundError) as e:
        print(f"\nConfiguration error: {e}")
        return EXIT_CONFIG
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130
    except Exception as e:
        logger.exception("Migration failed: %s", e)
        print(f"\nError: {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
