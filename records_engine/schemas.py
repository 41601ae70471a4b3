from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Operator = Literal["eq", "neq", "gt", "gte", "lt", "lte", "contains", "in", "starts_with", "ends_with"]
SortDirection = Literal["asc", "desc"]
ScalarValue = bool | int | float | str
PredicateValue = ScalarValue | tuple[ScalarValue, ...]

OPERATORS: tuple[str, ...] = ("eq", "neq", "gt", "gte", "lt", "lte", "contains", "in", "starts_with", "ends_with")


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


class Predicate(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    operator: Operator
    value: PredicateValue


class SortClause(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    direction: SortDirection = "asc"


class QuerySpecification(BaseModel):
    """Validated, immutable description of one query against a resource.

    Instances are produced by ``QueryBuilder.build``; they are frozen and use
    tuples for every collection, so one instance can be handed to any number
    of concurrent executions.
    """

    model_config = ConfigDict(frozen=True)

    resource_type: str
    where: tuple[Predicate, ...] = ()
    order_by: tuple[SortClause, ...] = ()
    limit: int = Field(gt=0)
    offset: int = Field(default=0, ge=0)
    select: tuple[str, ...] | None = None

    def fingerprint(self) -> str:
        # Predicates are conjunctive, so their order does not change the result set.
        payload = self.model_dump(mode="json")
        payload["where"] = sorted(payload["where"], key=_canonical_json)
        return hashlib.sha256(_canonical_json(payload).encode("utf-8")).hexdigest()


class QueryInput(BaseModel):
    """Unvalidated query parts as sent by a caller."""

    where: list[dict[str, Any]] = Field(default_factory=list)
    order_by: list[dict[str, Any]] = Field(default_factory=list)
    limit: int | None = None
    offset: int = 0
    select: list[str] | None = None


class ResultEnvelope(BaseModel):
    data: list[dict[str, Any]] = Field(default_factory=list)
    total: int = 0
    spec_hash: str = ""
    execution_time_ms: int = 0


class SavedView(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    resource_type: str
    name: str
    description: str | None = None
    query: QuerySpecification
    owner_id: str | None = None
    tenant_id: str
    created_at: datetime
    updated_at: datetime
    share_token: str | None = None
    is_shared: bool = False


class SharedView(BaseModel):
    """Read-only projection of a view reached through a share token."""

    id: str
    resource_type: str
    name: str
    description: str | None = None
    query: QuerySpecification
    created_at: datetime


class SavedViewPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    query: QuerySpecification | None = None


class SavedViewCreateRequest(BaseModel):
    resource_type: str
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    query: QueryInput = Field(default_factory=QueryInput)
    is_shared: bool = False


class SavedViewUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    query: QueryInput | None = None


class SavedViewCloneRequest(BaseModel):
    new_name: str | None = Field(default=None, min_length=1, max_length=255)


class SavedViewList(BaseModel):
    items: list[SavedView] = Field(default_factory=list)


class ShareResponse(BaseModel):
    view_id: str
    share_token: str | None = None
    is_shared: bool


class SharedViewResult(BaseModel):
    view: SharedView
    result: ResultEnvelope


class ResourceFieldInfo(BaseModel):
    name: str
    data_type: str
    sortable: bool
    operators: list[str]


class ResourceInfo(BaseModel):
    resource_type: str
    fields: list[ResourceFieldInfo] = Field(default_factory=list)


class ResourceList(BaseModel):
    items: list[str] = Field(default_factory=list)


class QueryExecuteResponse(BaseModel):
    """``status`` is ``superseded`` when a newer request on the same slot won."""

    status: Literal["applied", "superseded"]
    slot: str
    result: ResultEnvelope | None = None


class SlotCancelResponse(BaseModel):
    slot: str
    cancelled: bool = True
