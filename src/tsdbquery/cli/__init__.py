"""
CLI commands for tsdbquery.
"""

from tsdbquery.cli.commands import (
    aggregators_command,
    check_command,
    filters_command,
    find_command,
    query_command,
)

__all__ = [
    "query_command",
    "find_command",
    "aggregators_command",
    "filters_command",
    "check_command",
]
