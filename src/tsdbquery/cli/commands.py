"""
CLI commands for tsdbquery.

Usage:
    tsdbquery query panel.yaml --from now-6h --to now
    tsdbquery query panel.yaml --var host=web1,web2 --json
    tsdbquery find "tag_values(sys.cpu.user, host)"
    tsdbquery aggregators
    tsdbquery test
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Sequence

import yaml

from tsdbquery.cli.ux import error, header, print_table, spinner, success, warning
from tsdbquery.config.settings import Settings
from tsdbquery.core.errors import ConfigurationError
from tsdbquery.datasource import OpenTSDBDatasource
from tsdbquery.query.models import ReconciledSeries, TimeWindow
from tsdbquery.templating import TemplateSrv


def parse_variables(values: Sequence[str] | None) -> dict[str, str | list[str]]:
    """Parse ``name=value`` / ``name=a,b`` pairs from the command line."""
    variables: dict[str, str | list[str]] = {}
    for item in values or []:
        name, sep, raw = item.partition("=")
        if not sep or not name:
            raise ConfigurationError("Variables must look like name=value", {"variable": item})
        parts = [p.strip() for p in raw.split(",")]
        variables[name.strip()] = parts if len(parts) > 1 else parts[0]
    return variables


def load_panel(path: Path) -> tuple[list[dict[str, Any]], dict[str, Any], str | None]:
    """Load targets (and optional variables/interval) from a YAML or JSON file."""
    if not path.exists():
        raise ConfigurationError("Targets file not found", {"path": str(path)})
    with open(path) as f:
        data = yaml.safe_load(f)

    if isinstance(data, list):
        return data, {}, None
    if not isinstance(data, dict) or not isinstance(data.get("targets"), list):
        raise ConfigurationError("Targets file must contain a list of targets", {"path": str(path)})
    return data["targets"], dict(data.get("variables") or {}), data.get("interval")


def build_window(time_from: str, time_to: str) -> TimeWindow:
    return TimeWindow.from_raw(time_from, time_to)


def _print_series(series: list[ReconciledSeries]) -> None:
    header("Query results")
    rows = []
    for s in series:
        first = str(s.datapoints[0][0]) if s.datapoints else "-"
        last = str(s.datapoints[-1][1]) if s.datapoints else "-"
        rows.append([s.label, str(len(s.datapoints)), first, last])
    print_table("Series", ["Label", "Points", "First timestamp", "Last value"], rows)


def query_command(
    targets_file: str,
    *,
    settings: Settings,
    time_from: str = "now-1h",
    time_to: str = "now",
    variables: Sequence[str] | None = None,
    output_format: str = "text",
) -> int:
    targets, file_variables, interval = load_panel(Path(targets_file))
    file_variables.update(parse_variables(variables))
    datasource = OpenTSDBDatasource.from_settings(settings, template_srv=TemplateSrv(file_variables))
    window = build_window(time_from, time_to)

    with spinner("Querying backend..."):
        series = asyncio.run(datasource.query(targets, window, interval=interval))

    if output_format == "json":
        print(json.dumps([s.to_dict() for s in series], indent=2))
    else:
        _print_series(series)
        if datasource.reconciler.misses:
            warning(f"{datasource.reconciler.misses} series attributed by fallback")
    return 0


def find_command(query: str, *, settings: Settings, variables: Sequence[str] | None = None) -> int:
    datasource = OpenTSDBDatasource.from_settings(
        settings, template_srv=TemplateSrv(parse_variables(variables))
    )
    for item in asyncio.run(datasource.metric_find_query(query)):
        print(item["text"])
    return 0


def aggregators_command(*, settings: Settings) -> int:
    datasource = OpenTSDBDatasource.from_settings(settings)
    for name in asyncio.run(datasource.get_aggregators()):
        print(name)
    return 0


def filters_command(*, settings: Settings) -> int:
    datasource = OpenTSDBDatasource.from_settings(settings)
    for name in asyncio.run(datasource.get_filter_types()):
        print(name)
    return 0


def check_command(*, settings: Settings) -> int:
    datasource = OpenTSDBDatasource.from_settings(settings)
    result = asyncio.run(datasource.test_datasource())
    if result["status"] == "success":
        success(result["message"])
        return 0
    error(result["message"])
    return 1
