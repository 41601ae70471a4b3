from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, String, Text, UniqueConstraint

from records_engine.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SavedViewRecord(Base):
    __tablename__ = "saved_views"

    id = Column(String(36), primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(64), nullable=False, index=True)
    resource_type = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    query = Column(JSON, nullable=False)  # QuerySpecification.model_dump(mode="json")
    share_token = Column(String(128), nullable=True, unique=True)
    is_shared = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("owner_id", "resource_type", "name", name="uq_saved_views_owner_resource_name"),
        Index("ix_saved_views_tenant_resource", "tenant_id", "resource_type"),
    )
