"""Query translation and reconciliation pipeline."""

from tsdbquery.query.builder import BatchQueryBuilder, QueryPlan
from tsdbquery.query.models import (
    AnnotationEvent,
    BatchRequest,
    ExpressionQuery,
    ExpressionRequest,
    MetricQuery,
    RawSeries,
    ReconciledSeries,
    TagFilter,
    Target,
    TimeWindow,
)
from tsdbquery.query.normalizer import TargetNormalizer
from tsdbquery.query.reconciler import ResponseReconciler
from tsdbquery.query.transformer import SeriesTransformer

__all__ = [
    "AnnotationEvent",
    "BatchQueryBuilder",
    "BatchRequest",
    "ExpressionQuery",
    "ExpressionRequest",
    "MetricQuery",
    "QueryPlan",
    "RawSeries",
    "ReconciledSeries",
    "ResponseReconciler",
    "SeriesTransformer",
    "TagFilter",
    "Target",
    "TargetNormalizer",
    "TimeWindow",
]
