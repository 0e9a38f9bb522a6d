from tsdbquery.clients.opentsdb import ExpressionResponse, OpenTSDBClient

__all__ = ["OpenTSDBClient", "ExpressionResponse"]
