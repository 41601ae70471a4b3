from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from records_engine.errors import UnknownResource

FieldType = Literal["string", "number", "boolean", "date"]

_ORDERED_OPERATORS = frozenset({"eq", "neq", "gt", "gte", "lt", "lte", "in"})

OPERATORS_BY_TYPE: dict[str, frozenset[str]] = {
    "string": _ORDERED_OPERATORS | {"contains", "starts_with", "ends_with"},
    "number": _ORDERED_OPERATORS,
    "date": _ORDERED_OPERATORS,
    "boolean": frozenset({"eq", "neq", "in"}),
}


@dataclass(frozen=True, slots=True)
class ResourceSchema:
    name: str
    fields: dict[str, FieldType]
    sortable: frozenset[str] = field(default_factory=frozenset)
    table: str | None = None

    @property
    def table_name(self) -> str:
        return self.table or self.name

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def field_type(self, name: str) -> FieldType:
        return self.fields[name]

    def is_sortable(self, name: str) -> bool:
        return name in self.sortable

    def allowed_operators(self, name: str) -> frozenset[str]:
        return OPERATORS_BY_TYPE[self.fields[name]]


class ResourceCatalog:
    def __init__(self, schemas: list[ResourceSchema] | None = None) -> None:
        self._schemas: dict[str, ResourceSchema] = {}
        for schema in schemas or []:
            self.register(schema)

    def register(self, schema: ResourceSchema) -> None:
        unknown_sortable = schema.sortable - set(schema.fields)
        if unknown_sortable:
            raise ValueError(f"Sortable fields {sorted(unknown_sortable)} are not declared on '{schema.name}'")
        self._schemas[schema.name] = schema

    def get(self, resource_type: str) -> ResourceSchema:
        schema = self._schemas.get(resource_type)
        if schema is None:
            raise UnknownResource(resource_type)
        return schema

    def names(self) -> list[str]:
        return sorted(self._schemas)

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._schemas


def _schema(name: str, fields: dict[str, FieldType], *, unsortable: tuple[str, ...] = ()) -> ResourceSchema:
    return ResourceSchema(
        name=name,
        fields=fields,
        sortable=frozenset(field_name for field_name in fields if field_name not in unsortable),
    )


def default_catalog() -> ResourceCatalog:
    return ResourceCatalog(
        [
            _schema(
                "students",
                {
                    "id": "string",
                    "name": "string",
                    "email": "string",
                    "grade": "string",
                    "class": "string",
                    "status": "string",
                    "enrollmentDate": "date",
                },
            ),
            _schema(
                "teachers",
                {
                    "id": "string",
                    "name": "string",
                    "email": "string",
                    "subject": "string",
                    "department": "string",
                    "status": "string",
                },
            ),
            _schema(
                "classes",
                {
                    "id": "string",
                    "name": "string",
                    "grade": "string",
                    "section": "string",
                    "teacherId": "string",
                    "capacity": "number",
                },
            ),
            _schema(
                "attendance",
                {
                    "id": "string",
                    "date": "date",
                    "status": "string",
                    "studentId": "string",
                    "classId": "string",
                    "percentage": "number",
                },
            ),
            _schema(
                "grades",
                {
                    "id": "string",
                    "score": "number",
                    "assessment": "string",
                    "studentId": "string",
                    "classId": "string",
                },
            ),
            _schema(
                "assessments",
                {
                    "id": "string",
                    "title": "string",
                    "type": "string",
                    "dueDate": "date",
                    "status": "string",
                    "published": "boolean",
                },
                unsortable=("published",),
            ),
            _schema(
                "payments",
                {
                    "id": "string",
                    "amount": "number",
                    "status": "string",
                    "dueDate": "date",
                    "type": "string",
                    "studentId": "string",
                },
            ),
        ]
    )
