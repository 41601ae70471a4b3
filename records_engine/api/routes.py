from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request, Response

from records_engine.api.dependencies import (
    get_execution_client,
    get_query_builder,
    get_share_rate_limiter,
    get_sharing_service,
    get_view_store,
)
from records_engine.errors import ViewNotFound
from records_engine.schemas import (
    QueryExecuteResponse,
    QueryInput,
    QuerySpecification,
    ResourceFieldInfo,
    ResourceInfo,
    ResourceList,
    SavedView,
    SavedViewCloneRequest,
    SavedViewCreateRequest,
    SavedViewList,
    SavedViewPatch,
    SavedViewUpdateRequest,
    SharedView,
    SharedViewResult,
    ShareResponse,
    SlotCancelResponse,
)
from records_engine.security import RequestContext, optional_request_context, require_request_context
from records_engine.services.builder import QueryBuilder
from records_engine.services.execution import QueryExecutionClient
from records_engine.services.rate_limiter import SlidingWindowRateLimiter
from records_engine.services.sharing import ViewSharingService
from records_engine.services.view_store import SavedViewStore

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


def _build_spec(builder: QueryBuilder, resource_type: str, payload: QueryInput) -> QuerySpecification:
    return builder.build(
        resource_type,
        where=payload.where,
        order_by=payload.order_by,
        limit=payload.limit,
        offset=payload.offset,
        select=payload.select,
    )


async def _enforce_share_rate_limit(request: Request, limiter: SlidingWindowRateLimiter) -> None:
    client_key = request.client.host if request.client else "unknown"
    await limiter.check(f"shared:{client_key}")


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "service": "records-engine"}


# =========================
# Resource catalog
# =========================


@router.get("/resources", response_model=ResourceList)
async def list_resources(builder: QueryBuilder = Depends(get_query_builder)) -> ResourceList:
    return ResourceList(items=builder.catalog.names())


@router.get("/resources/{resource_type}", response_model=ResourceInfo)
async def describe_resource(resource_type: str, builder: QueryBuilder = Depends(get_query_builder)) -> ResourceInfo:
    resource = builder.catalog.get(resource_type)
    return ResourceInfo(
        resource_type=resource.name,
        fields=[
            ResourceFieldInfo(
                name=name,
                data_type=data_type,
                sortable=resource.is_sortable(name),
                operators=sorted(resource.allowed_operators(name)),
            )
            for name, data_type in resource.fields.items()
        ],
    )


# =========================
# Query building and execution
# =========================


@router.post("/query/{resource_type}/build", response_model=QuerySpecification)
async def build_query(
    resource_type: str,
    payload: QueryInput,
    _context: RequestContext = Depends(require_request_context),
    builder: QueryBuilder = Depends(get_query_builder),
) -> QuerySpecification:
    return _build_spec(builder, resource_type, payload)


@router.post("/query/{resource_type}", response_model=QueryExecuteResponse)
async def execute_query(
    resource_type: str,
    payload: QueryInput,
    slot: str = Query(default="default", min_length=1, max_length=128),
    context: RequestContext = Depends(require_request_context),
    builder: QueryBuilder = Depends(get_query_builder),
    executor: QueryExecutionClient = Depends(get_execution_client),
) -> QueryExecuteResponse:
    spec = _build_spec(builder, resource_type, payload)
    envelope = await executor.execute(context.slot_key(slot), spec)
    if envelope is None:
        return QueryExecuteResponse(status="superseded", slot=slot, result=None)
    return QueryExecuteResponse(status="applied", slot=slot, result=envelope)


@router.delete("/query/slots/{slot}", response_model=SlotCancelResponse)
async def cancel_query(
    slot: str,
    context: RequestContext = Depends(require_request_context),
    executor: QueryExecutionClient = Depends(get_execution_client),
) -> SlotCancelResponse:
    executor.discard(context.slot_key(slot))
    return SlotCancelResponse(slot=slot)


# =========================
# Saved views
# =========================


@router.get("/views", response_model=SavedViewList)
async def list_views(
    resource_type: str,
    include_shared: bool = False,
    context: RequestContext = Depends(require_request_context),
    builder: QueryBuilder = Depends(get_query_builder),
    store: SavedViewStore = Depends(get_view_store),
) -> SavedViewList:
    builder.catalog.get(resource_type)
    items = await store.list_views(
        resource_type,
        owner_id=context.owner_id,
        tenant_id=context.tenant_id,
        include_shared=include_shared,
    )
    return SavedViewList(items=items)


@router.post("/views", response_model=SavedView, status_code=201)
async def create_view(
    payload: SavedViewCreateRequest,
    context: RequestContext = Depends(require_request_context),
    builder: QueryBuilder = Depends(get_query_builder),
    store: SavedViewStore = Depends(get_view_store),
    sharing: ViewSharingService = Depends(get_sharing_service),
) -> SavedView:
    spec = _build_spec(builder, payload.resource_type, payload.query)
    view = await store.create_view(
        payload.resource_type,
        payload.name,
        spec,
        owner_id=context.owner_id,
        tenant_id=context.tenant_id,
        description=payload.description,
    )
    if not payload.is_shared:
        return view
    await sharing.share_view(view.id, owner_id=context.owner_id, tenant_id=context.tenant_id)
    shared = await store.get_view(view.id, owner_id=context.owner_id, tenant_id=context.tenant_id)
    if shared is None:
        raise ViewNotFound()
    return shared


@router.get("/views/shared/{token}", response_model=SharedView)
async def resolve_shared_view(
    token: str,
    request: Request,
    context: RequestContext | None = Depends(optional_request_context),
    sharing: ViewSharingService = Depends(get_sharing_service),
    limiter: SlidingWindowRateLimiter = Depends(get_share_rate_limiter),
) -> SharedView:
    await _enforce_share_rate_limit(request, limiter)
    shared = await sharing.resolve_shared_view(token, tenant_id=context.tenant_id if context else None)
    if shared is None:
        raise ViewNotFound()
    return shared


@router.post("/views/shared/{token}/execute", response_model=SharedViewResult)
async def execute_shared_view(
    token: str,
    request: Request,
    context: RequestContext | None = Depends(optional_request_context),
    sharing: ViewSharingService = Depends(get_sharing_service),
    executor: QueryExecutionClient = Depends(get_execution_client),
    limiter: SlidingWindowRateLimiter = Depends(get_share_rate_limiter),
) -> SharedViewResult:
    await _enforce_share_rate_limit(request, limiter)
    shared, envelope = await sharing.execute_shared_view(
        token,
        executor,
        tenant_id=context.tenant_id if context else None,
    )
    return SharedViewResult(view=shared, result=envelope)


@router.get("/views/{view_id}", response_model=SavedView)
async def get_view(
    view_id: str,
    context: RequestContext = Depends(require_request_context),
    store: SavedViewStore = Depends(get_view_store),
) -> SavedView:
    view = await store.get_view(view_id, owner_id=context.owner_id, tenant_id=context.tenant_id)
    if view is None:
        raise ViewNotFound()
    return view


@router.patch("/views/{view_id}", response_model=SavedView)
async def update_view(
    view_id: str,
    payload: SavedViewUpdateRequest,
    context: RequestContext = Depends(require_request_context),
    builder: QueryBuilder = Depends(get_query_builder),
    store: SavedViewStore = Depends(get_view_store),
) -> SavedView:
    changes: dict[str, object] = {}
    if "name" in payload.model_fields_set:
        changes["name"] = payload.name
    if "description" in payload.model_fields_set:
        changes["description"] = payload.description
    if "query" in payload.model_fields_set and payload.query is not None:
        current = await store.get_view(view_id, owner_id=context.owner_id, tenant_id=context.tenant_id)
        if current is None:
            raise ViewNotFound()
        changes["query"] = _build_spec(builder, current.resource_type, payload.query)
    patch = SavedViewPatch(**changes)
    return await store.update_view(view_id, patch, owner_id=context.owner_id, tenant_id=context.tenant_id)


@router.delete("/views/{view_id}", status_code=204)
async def delete_view(
    view_id: str,
    context: RequestContext = Depends(require_request_context),
    store: SavedViewStore = Depends(get_view_store),
) -> Response:
    await store.delete_view(view_id, owner_id=context.owner_id, tenant_id=context.tenant_id)
    return Response(status_code=204)


@router.post("/views/{view_id}/clone", response_model=SavedView, status_code=201)
async def clone_view(
    view_id: str,
    payload: SavedViewCloneRequest | None = None,
    context: RequestContext = Depends(require_request_context),
    store: SavedViewStore = Depends(get_view_store),
) -> SavedView:
    return await store.clone_view(
        view_id,
        owner_id=context.owner_id,
        tenant_id=context.tenant_id,
        new_name=payload.new_name if payload else None,
    )


@router.post("/views/{view_id}/share", response_model=ShareResponse)
async def share_view(
    view_id: str,
    context: RequestContext = Depends(require_request_context),
    sharing: ViewSharingService = Depends(get_sharing_service),
) -> ShareResponse:
    token = await sharing.share_view(view_id, owner_id=context.owner_id, tenant_id=context.tenant_id)
    return ShareResponse(view_id=view_id, share_token=token, is_shared=True)


@router.delete("/views/{view_id}/share", response_model=ShareResponse)
async def unshare_view(
    view_id: str,
    context: RequestContext = Depends(require_request_context),
    sharing: ViewSharingService = Depends(get_sharing_service),
) -> ShareResponse:
    await sharing.unshare_view(view_id, owner_id=context.owner_id, tenant_id=context.tenant_id)
    return ShareResponse(view_id=view_id, share_token=None, is_shared=False)
