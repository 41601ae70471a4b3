from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any

from records_engine.errors import InvalidOperator
from records_engine.resources import ResourceSchema
from records_engine.schemas import Predicate, QuerySpecification, ScalarValue

_COMPARISON_SQL: dict[str, str] = {
    "eq": "=",
    "neq": "<>",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}


@dataclass(slots=True)
class CompiledQuery:
    sql: str
    params: list[Any]


@dataclass(slots=True)
class CompiledResourceQuery:
    rows: CompiledQuery
    count: CompiledQuery
    row_limit: int


# ---------------------------------------------------------------------------
# HTTP wire form: where=field:operator:value, orderBy=field:direction
# ---------------------------------------------------------------------------


def _encode_scalar(value: ScalarValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_predicate_param(predicate: Predicate) -> str:
    value = predicate.value
    if isinstance(value, tuple):
        encoded = ",".join(_encode_scalar(item) for item in value)
    else:
        encoded = _encode_scalar(value)
    return f"{predicate.field}:{predicate.operator}:{encoded}"


def to_query_params(spec: QuerySpecification) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = []
    for predicate in spec.where:
        params.append(("where", encode_predicate_param(predicate)))
    for clause in spec.order_by:
        params.append(("orderBy", f"{clause.field}:{clause.direction}"))
    params.append(("limit", str(spec.limit)))
    if spec.offset:
        params.append(("offset", str(spec.offset)))
    if spec.select:
        params.append(("select", ",".join(spec.select)))
    return params


# ---------------------------------------------------------------------------
# SQL form for relational backends
# ---------------------------------------------------------------------------


def _quote_ident(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def _qualified_name(name: str) -> str:
    parts = [part for part in name.split(".") if part]
    return ".".join(_quote_ident(part) for part in parts)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _is_date_value(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        date.fromisoformat(value)
        return True
    except ValueError:
        return False


def _param_expr(resource: ResourceSchema, field: str, value: Any) -> str:
    if resource.field_type(field) == "date" and _is_date_value(value):
        return "CAST(%s AS date)"
    return "%s"


def _compile_where(resource: ResourceSchema, predicates: tuple[Predicate, ...]) -> tuple[list[str], list[Any]]:
    where_parts: list[str] = []
    params: list[Any] = []

    for predicate in predicates:
        column = _quote_ident(predicate.field)
        op = predicate.operator
        value = predicate.value

        if op in _COMPARISON_SQL:
            where_parts.append(f"{column} {_COMPARISON_SQL[op]} {_param_expr(resource, predicate.field, value)}")
            params.append(value)
        elif op == "in":
            values = list(value) if isinstance(value, tuple) else [value]
            placeholders = ", ".join(_param_expr(resource, predicate.field, item) for item in values)
            where_parts.append(f"{column} IN ({placeholders})")
            params.extend(values)
        elif op == "contains":
            where_parts.append(f"{column}::text ILIKE %s ESCAPE '\\'")
            params.append(f"%{_escape_like(str(value))}%")
        elif op == "starts_with":
            where_parts.append(f"{column}::text ILIKE %s ESCAPE '\\'")
            params.append(f"{_escape_like(str(value))}%")
        elif op == "ends_with":
            where_parts.append(f"{column}::text ILIKE %s ESCAPE '\\'")
            params.append(f"%{_escape_like(str(value))}")
        else:
            raise InvalidOperator(f"Unsupported filter operator '{op}'", field=predicate.field)

    return where_parts, params


def compile_resource_query(resource: ResourceSchema, spec: QuerySpecification) -> CompiledResourceQuery:
    """Compile a validated specification into a row query and a count query.

    Identifiers come only from the resource schema and are quoted; every
    value is bound as a parameter.
    """
    table = _qualified_name(resource.table_name)
    where_parts, where_params = _compile_where(resource, spec.where)
    where_sql = f" WHERE {' AND '.join(where_parts)}" if where_parts else ""

    columns = ", ".join(_quote_ident(field) for field in spec.select) if spec.select else "*"
    query_parts = [f"SELECT {columns} FROM {table}{where_sql}"]
    if spec.order_by:
        order_parts = [f"{_quote_ident(item.field)} {item.direction.upper()}" for item in spec.order_by]
        query_parts.append("ORDER BY " + ", ".join(order_parts))
    query_parts.append(f"LIMIT {int(spec.limit)}")
    if spec.offset:
        query_parts.append(f"OFFSET {int(spec.offset)}")

    return CompiledResourceQuery(
        rows=CompiledQuery(sql=" ".join(query_parts), params=list(where_params)),
        count=CompiledQuery(sql=f"SELECT COUNT(*) AS {_quote_ident('total')} FROM {table}{where_sql}", params=list(where_params)),
        row_limit=spec.limit,
    )
