"""Restricted SQL compilation and DataFusion-backed evaluation."""

from __future__ import annotations

from s3select.query.adapter import QueryExecutorAdapter, QueryResult, to_output_value
from s3select.query.datafusion_engine import DataFusionEngine, DataFusionPlan
from s3select.query.dialect import SelectStatement, parse_select
from s3select.query.engine import BoundQuery, ExecutionEngine

__all__ = [
    "BoundQuery",
    "DataFusionEngine",
    "DataFusionPlan",
    "ExecutionEngine",
    "QueryExecutorAdapter",
    "QueryResult",
    "SelectStatement",
    "parse_select",
    "to_output_value",
]
