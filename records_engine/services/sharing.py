from __future__ import annotations

import hashlib
import logging
import re
import secrets

from sqlalchemy.exc import IntegrityError

from records_engine.errors import ViewNotFound
from records_engine.schemas import ResultEnvelope, SavedView, SharedView
from records_engine.services.execution import QueryExecutionClient
from records_engine.services.view_store import SavedViewStore
from records_engine.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,128}$")
_MAX_MINT_ATTEMPTS = 5


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:8]


def to_shared_view(view: SavedView) -> SharedView:
    return SharedView(
        id=view.id,
        resource_type=view.resource_type,
        name=view.name,
        description=view.description,
        query=view.query,
        created_at=view.created_at,
    )


class ViewSharingService:
    """Mints, rotates, revokes and resolves share tokens for saved views."""

    def __init__(self, store: SavedViewStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    def _mint_token(self) -> str:
        return secrets.token_urlsafe(self._settings.share_token_bytes)

    async def share_view(self, view_id: str, *, owner_id: str, tenant_id: str) -> str:
        for attempt in range(1, _MAX_MINT_ATTEMPTS + 1):
            token = self._mint_token()
            try:
                view = await self._store.set_share_token(view_id, token, owner_id=owner_id, tenant_id=tenant_id)
            except IntegrityError:
                logger.warning("views.share_token_collision | %s", {"view_id": view_id, "attempt": attempt})
                continue
            if view is None:
                raise ViewNotFound()
            logger.info(
                "views.share | %s",
                {"view_id": view_id, "tenant_id": tenant_id, "token_fp": token_fingerprint(token)},
            )
            return token
        raise RuntimeError("Could not mint a unique share token")

    async def unshare_view(self, view_id: str, *, owner_id: str, tenant_id: str) -> None:
        view = await self._store.set_share_token(view_id, None, owner_id=owner_id, tenant_id=tenant_id)
        logger.info("views.unshare | %s", {"view_id": view_id, "tenant_id": tenant_id, "found": view is not None})

    async def resolve_shared_view(self, token: str, *, tenant_id: str | None = None) -> SharedView | None:
        """Return the public projection of the view behind ``token``.

        Every miss (blank or malformed token, revoked token, deleted view,
        tenant-bound link opened from another tenant) yields ``None`` so
        callers cannot tell the cases apart.
        """
        if not token or not _TOKEN_PATTERN.match(token):
            logger.info("views.resolve_miss | %s", {"reason": "malformed"})
            return None

        view = await self._store.find_by_share_token(token)
        if view is None:
            logger.info("views.resolve_miss | %s", {"token_fp": token_fingerprint(token)})
            return None
        if not self._settings.share_links_cross_tenant and tenant_id is not None and view.tenant_id != tenant_id:
            logger.info("views.resolve_miss | %s", {"token_fp": token_fingerprint(token), "reason": "tenant"})
            return None
        return to_shared_view(view)

    async def execute_shared_view(
        self,
        token: str,
        executor: QueryExecutionClient,
        *,
        tenant_id: str | None = None,
    ) -> tuple[SharedView, ResultEnvelope]:
        shared = await self.resolve_shared_view(token, tenant_id=tenant_id)
        if shared is None:
            raise ViewNotFound()
        envelope = await executor.execute_once(shared.query)
        logger.info(
            "views.shared_execute | %s",
            {"token_fp": token_fingerprint(token), "spec_hash": envelope.spec_hash, "total": envelope.total},
        )
        return shared, envelope
