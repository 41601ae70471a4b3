from __future__ import annotations

from typing import Any, Iterable

from records_engine.errors import InvalidValue, LimitExceeded, UnknownField, ValidationError
from records_engine.resources import ResourceCatalog, default_catalog
from records_engine.schemas import Predicate, QuerySpecification, SortClause
from records_engine.services.validator import parse_predicate, validate_predicate
from records_engine.settings import Settings, get_settings


def _parse_sort(raw: SortClause | dict[str, Any]) -> SortClause:
    if isinstance(raw, SortClause):
        return raw
    if not isinstance(raw, dict):
        raise InvalidValue("Sort clause must be an object with field and direction")
    field = raw.get("field")
    if not isinstance(field, str) or not field.strip():
        raise UnknownField("Sort field must be a non-empty string")
    direction = str(raw.get("direction") or "asc").lower()
    if direction not in {"asc", "desc"}:
        raise InvalidValue(f"Sort direction must be 'asc' or 'desc', got '{direction}'", field=field)
    return SortClause(field=field, direction=direction)


class QueryBuilder:
    def __init__(self, catalog: ResourceCatalog | None = None, settings: Settings | None = None) -> None:
        self._catalog = catalog or default_catalog()
        self._settings = settings or get_settings()

    @property
    def catalog(self) -> ResourceCatalog:
        return self._catalog

    def build(
        self,
        resource_type: str,
        *,
        where: Iterable[Predicate | dict[str, Any]] | None = None,
        order_by: Iterable[SortClause | dict[str, Any]] | None = None,
        limit: int | None = None,
        offset: int = 0,
        select: Iterable[str] | None = None,
    ) -> QuerySpecification:
        resource = self._catalog.get(resource_type)

        predicates: list[Predicate] = []
        for index, raw in enumerate(where or ()):
            try:
                predicates.append(validate_predicate(resource, parse_predicate(raw)))
            except ValidationError as exc:
                raise exc.at(f"where[{index}]")

        sort_clauses: list[SortClause] = []
        for index, raw in enumerate(order_by or ()):
            try:
                clause = _parse_sort(raw)
                if not resource.has_field(clause.field):
                    raise UnknownField(
                        f"Unknown sort field '{clause.field}' for resource '{resource.name}'",
                        field=clause.field,
                    )
                if not resource.is_sortable(clause.field):
                    raise InvalidValue(f"Field '{clause.field}' is not sortable", field=clause.field)
            except ValidationError as exc:
                raise exc.at(f"order_by[{index}]")
            sort_clauses.append(clause)

        resolved_limit = self._resolve_limit(limit)

        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise InvalidValue("Offset must be a non-negative integer", location="offset")

        projection: tuple[str, ...] | None = None
        if select is not None:
            projection = tuple(select)
            for index, field in enumerate(projection):
                if not resource.has_field(field):
                    raise UnknownField(
                        f"Unknown field '{field}' for resource '{resource.name}'",
                        field=field,
                        location=f"select[{index}]",
                    )

        return QuerySpecification(
            resource_type=resource.name,
            where=tuple(predicates),
            order_by=tuple(sort_clauses),
            limit=resolved_limit,
            offset=offset,
            select=projection,
        )

    def ensure_valid(self, resource_type: str, spec: QuerySpecification) -> QuerySpecification:
        if not isinstance(spec, QuerySpecification):
            raise InvalidValue("A built QuerySpecification is required", location="query")
        if spec.resource_type != resource_type:
            raise InvalidValue(
                f"Query was built for '{spec.resource_type}', not '{resource_type}'",
                location="query.resource_type",
            )
        return self.build(
            resource_type,
            where=spec.where,
            order_by=spec.order_by,
            limit=spec.limit,
            offset=spec.offset,
            select=spec.select,
        )

    def _resolve_limit(self, limit: int | None) -> int:
        if limit is None:
            return self._settings.query_default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise InvalidValue("Limit must be a positive integer", location="limit")
        if limit > self._settings.query_max_limit:
            raise LimitExceeded(
                f"Limit {limit} exceeds the maximum of {self._settings.query_max_limit}",
                location="limit",
            )
        return limit
