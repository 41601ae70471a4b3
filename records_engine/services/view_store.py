from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from records_engine.errors import DuplicateName, InvalidValue, ViewNotFound
from records_engine.models import SavedViewRecord
from records_engine.schemas import QuerySpecification, SavedView, SavedViewPatch
from records_engine.services.builder import QueryBuilder

logger = logging.getLogger("uvicorn.error")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_name(name: str | None) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise InvalidValue("View name must not be empty", field="name", location="name")
    if len(cleaned) > 255:
        raise InvalidValue("View name must be at most 255 characters", field="name", location="name")
    return cleaned


def to_saved_view(record: SavedViewRecord, *, viewer_id: str | None = None) -> SavedView:
    """Build the API model for ``record``.

    When ``viewer_id`` is given and is not the owner, the owner id and the
    share token are left out.
    """
    foreign = viewer_id is not None and record.owner_id != viewer_id
    return SavedView(
        id=record.id,
        resource_type=record.resource_type,
        name=record.name,
        description=record.description,
        query=QuerySpecification.model_validate(record.query),
        owner_id=None if foreign else record.owner_id,
        tenant_id=record.tenant_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
        share_token=record.share_token if record.is_shared and not foreign else None,
        is_shared=bool(record.is_shared),
    )


class SavedViewStore:
    """Persists named query specifications per resource type, owner and tenant."""

    def __init__(self, session_factory: sessionmaker, builder: QueryBuilder | None = None) -> None:
        self._session_factory = session_factory
        self._builder = builder or QueryBuilder()
        self._lock = asyncio.Lock()

    async def list_views(
        self,
        resource_type: str,
        *,
        owner_id: str,
        tenant_id: str,
        include_shared: bool = False,
    ) -> list[SavedView]:
        with self._session_factory() as db:
            query = db.query(SavedViewRecord).filter(
                SavedViewRecord.tenant_id == tenant_id,
                SavedViewRecord.resource_type == resource_type,
            )
            if include_shared:
                query = query.filter(or_(SavedViewRecord.owner_id == owner_id, SavedViewRecord.is_shared.is_(True)))
            else:
                query = query.filter(SavedViewRecord.owner_id == owner_id)
            records = query.order_by(SavedViewRecord.created_at, SavedViewRecord.id).all()
            return [to_saved_view(record, viewer_id=owner_id) for record in records]

    async def get_view(self, view_id: str, *, owner_id: str, tenant_id: str) -> SavedView | None:
        with self._session_factory() as db:
            record = self._owned(db, view_id, owner_id=owner_id, tenant_id=tenant_id)
            return to_saved_view(record) if record is not None else None

    async def create_view(
        self,
        resource_type: str,
        name: str,
        spec: QuerySpecification,
        *,
        owner_id: str,
        tenant_id: str,
        description: str | None = None,
    ) -> SavedView:
        cleaned_name = _clean_name(name)
        validated = self._builder.ensure_valid(resource_type, spec)

        async with self._lock:
            with self._session_factory() as db:
                if self._name_taken(db, owner_id=owner_id, resource_type=resource_type, name=cleaned_name):
                    raise DuplicateName(cleaned_name, resource_type)
                now = _utcnow()
                record = SavedViewRecord(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    owner_id=owner_id,
                    resource_type=resource_type,
                    name=cleaned_name,
                    description=description,
                    query=validated.model_dump(mode="json"),
                    share_token=None,
                    is_shared=False,
                    created_at=now,
                    updated_at=now,
                )
                db.add(record)
                self._commit(db, name=cleaned_name, resource_type=resource_type)
                db.refresh(record)
                view = to_saved_view(record)

        logger.info(
            "views.create | %s",
            {"view_id": view.id, "tenant_id": tenant_id, "resource_type": resource_type, "spec_hash": validated.fingerprint()},
        )
        return view

    async def update_view(self, view_id: str, patch: SavedViewPatch, *, owner_id: str, tenant_id: str) -> SavedView:
        changes = patch.model_fields_set

        async with self._lock:
            with self._session_factory() as db:
                record = self._owned(db, view_id, owner_id=owner_id, tenant_id=tenant_id)
                if record is None:
                    raise ViewNotFound()

                if "name" in changes:
                    cleaned_name = _clean_name(patch.name)
                    if cleaned_name != record.name and self._name_taken(
                        db, owner_id=owner_id, resource_type=record.resource_type, name=cleaned_name
                    ):
                        raise DuplicateName(cleaned_name, record.resource_type)
                    record.name = cleaned_name
                if "description" in changes:
                    record.description = patch.description
                if "query" in changes:
                    if patch.query is None:
                        raise InvalidValue("A view must keep a query", field="query", location="query")
                    record.query = self._builder.ensure_valid(record.resource_type, patch.query).model_dump(mode="json")

                record.updated_at = _utcnow()
                self._commit(db, name=record.name, resource_type=record.resource_type)
                db.refresh(record)
                view = to_saved_view(record)

        logger.info("views.update | %s", {"view_id": view_id, "tenant_id": tenant_id, "fields": sorted(changes)})
        return view

    async def delete_view(self, view_id: str, *, owner_id: str, tenant_id: str) -> None:
        async with self._lock:
            with self._session_factory() as db:
                deleted = (
                    db.query(SavedViewRecord)
                    .filter(
                        SavedViewRecord.id == view_id,
                        SavedViewRecord.owner_id == owner_id,
                        SavedViewRecord.tenant_id == tenant_id,
                    )
                    .delete(synchronize_session=False)
                )
                db.commit()
        logger.info("views.delete | %s", {"view_id": view_id, "tenant_id": tenant_id, "deleted": bool(deleted)})

    async def clone_view(
        self,
        view_id: str,
        *,
        owner_id: str,
        tenant_id: str,
        new_name: str | None = None,
    ) -> SavedView:
        with self._session_factory() as db:
            source = (
                db.query(SavedViewRecord)
                .filter(
                    SavedViewRecord.id == view_id,
                    SavedViewRecord.tenant_id == tenant_id,
                    or_(SavedViewRecord.owner_id == owner_id, SavedViewRecord.is_shared.is_(True)),
                )
                .first()
            )
            if source is None:
                raise ViewNotFound()
            source_view = to_saved_view(source)

            if new_name is not None:
                name = _clean_name(new_name)
            else:
                base = f"{source_view.name} (copy)"
                name = base
                suffix = 2
                while self._name_taken(db, owner_id=owner_id, resource_type=source_view.resource_type, name=name):
                    name = f"{base} {suffix}"
                    suffix += 1

        return await self.create_view(
            source_view.resource_type,
            name,
            source_view.query,
            owner_id=owner_id,
            tenant_id=tenant_id,
            description=source_view.description,
        )

    async def delete_views_for_owner(self, owner_id: str, *, tenant_id: str) -> int:
        async with self._lock:
            with self._session_factory() as db:
                deleted = (
                    db.query(SavedViewRecord)
                    .filter(SavedViewRecord.owner_id == owner_id, SavedViewRecord.tenant_id == tenant_id)
                    .delete(synchronize_session=False)
                )
                db.commit()
        logger.info("views.cascade_owner | %s", {"tenant_id": tenant_id, "deleted": deleted})
        return int(deleted)

    async def delete_views_for_tenant(self, tenant_id: str) -> int:
        async with self._lock:
            with self._session_factory() as db:
                deleted = (
                    db.query(SavedViewRecord)
                    .filter(SavedViewRecord.tenant_id == tenant_id)
                    .delete(synchronize_session=False)
                )
                db.commit()
        logger.info("views.cascade_tenant | %s", {"tenant_id": tenant_id, "deleted": deleted})
        return int(deleted)

    async def set_share_token(self, view_id: str, token: str | None, *, owner_id: str, tenant_id: str) -> SavedView | None:
        """Store or clear the share token in a single write.

        Returns ``None`` when the caller owns no such view. Raises
        ``IntegrityError`` when ``token`` already belongs to another view.
        """
        async with self._lock:
            with self._session_factory() as db:
                record = self._owned(db, view_id, owner_id=owner_id, tenant_id=tenant_id)
                if record is None:
                    return None
                record.share_token = token
                record.is_shared = token is not None
                record.updated_at = _utcnow()
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    raise
                db.refresh(record)
                return to_saved_view(record)

    async def find_by_share_token(self, token: str) -> SavedView | None:
        with self._session_factory() as db:
            record = (
                db.query(SavedViewRecord)
                .filter(SavedViewRecord.share_token == token, SavedViewRecord.is_shared.is_(True))
                .first()
            )
            return to_saved_view(record) if record is not None else None

    def _owned(self, db: Session, view_id: str, *, owner_id: str, tenant_id: str) -> SavedViewRecord | None:
        return (
            db.query(SavedViewRecord)
            .filter(
                SavedViewRecord.id == view_id,
                SavedViewRecord.owner_id == owner_id,
                SavedViewRecord.tenant_id == tenant_id,
            )
            .first()
        )

    def _name_taken(self, db: Session, *, owner_id: str, resource_type: str, name: str) -> bool:
        return (
            db.query(SavedViewRecord.id)
            .filter(
                SavedViewRecord.owner_id == owner_id,
                SavedViewRecord.resource_type == resource_type,
                SavedViewRecord.name == name,
            )
            .first()
            is not None
        )

    def _commit(self, db: Session, *, name: str, resource_type: str) -> None:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateName(name, resource_type) from exc
