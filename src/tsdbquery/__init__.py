"""Query translation and reconciliation for OpenTSDB-backed dashboards."""

from tsdbquery.datasource import OpenTSDBDatasource

__version__ = "0.1.0"

__all__ = ["OpenTSDBDatasource", "__version__"]
