from __future__ import annotations

import argparse
import logging
from typing import Sequence

from tsdbquery.cli.commands import (
    aggregators_command,
    check_command,
    filters_command,
    find_command,
    query_command,
)
from tsdbquery.config.settings import Settings, get_settings
from tsdbquery.core.errors import main_with_error_handling
from tsdbquery.logging import LOG_FORMATS, configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tsdbquery", description="OpenTSDB panel query tooling")
    parser.add_argument("--url", help="Backend base URL (overrides TSDBQUERY_URL)")
    parser.add_argument("--version", dest="tsdb_version", type=int, choices=[1, 2, 3], help="Backend protocol version")
    parser.add_argument(
        "--resolution",
        type=int,
        choices=[1, 2],
        help="Timestamp resolution: 1 = seconds, 2 = milliseconds",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument("--log-format", choices=LOG_FORMATS, default="console", help="Log output format")
    subparsers = parser.add_subparsers(dest="command")

    query_parser = subparsers.add_parser("query", help="Evaluate panel targets from a YAML/JSON file")
    query_parser.add_argument("targets_file", help="File with a list of targets or {targets, variables}")
    query_parser.add_argument("--from", dest="time_from", default="now-1h", help="Range start (default: now-1h)")
    query_parser.add_argument("--to", dest="time_to", default="now", help="Range end (default: now)")
    query_parser.add_argument("--var", dest="variables", action="append", help="Template variable name=value[,value]")
    query_parser.add_argument("--json", dest="as_json", action="store_true", help="Print series as JSON")

    find_parser = subparsers.add_parser("find", help="Run a variable query, e.g. metrics(sys.)")
    find_parser.add_argument("query", help="metrics(), tag_names(), tag_values(), suggest_tagk() or suggest_tagv()")
    find_parser.add_argument("--var", dest="variables", action="append", help="Template variable name=value[,value]")

    subparsers.add_parser("aggregators", help="List backend aggregators")
    subparsers.add_parser("filters", help="List backend filter types")
    subparsers.add_parser("test", help="Check that the backend answers")

    return parser


def resolve_settings(args: argparse.Namespace) -> Settings:
    overrides = {}
    if args.url:
        overrides["url"] = args.url
    if args.tsdb_version:
        overrides["version"] = args.tsdb_version
    if args.resolution:
        overrides["resolution"] = args.resolution
    settings = get_settings()
    return settings.model_copy(update=overrides) if overrides else settings


@main_with_error_handling()
def run(args: argparse.Namespace) -> int:
    settings = resolve_settings(args)

    if args.command == "query":
        return query_command(
            args.targets_file,
            settings=settings,
            time_from=args.time_from,
            time_to=args.time_to,
            variables=args.variables,
            output_format="json" if args.as_json else "text",
        )
    if args.command == "find":
        return find_command(args.query, settings=settings, variables=args.variables)
    if args.command == "aggregators":
        return aggregators_command(settings=settings)
    if args.command == "filters":
        return filters_command(settings=settings)
    return check_command(settings=settings)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(
        getattr(logging, str(args.log_level).upper(), logging.WARNING),
        log_format=args.log_format,
    )
    return run(args)


if __name__ == "__main__":  # pragma: no cover - exercised via module entrypoint
    raise SystemExit(main())
