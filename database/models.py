"""
SQLAlchemy ORM models for durable connector state.

Users, clients and policies live in the CRM's own schema; this module only
owns the per-user OAuth connection rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class UserConnection(Base):
    __tablename__ = "user_connections"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_user_connections_user_provider"),)

    connection_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    connected = Column(Boolean, nullable=False, default=False)
    access_token = Column(Text)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(JSON, default=list)
    provider_meta = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    last_refreshed = Column(DateTime(timezone=True))
    last_sync_at = Column(DateTime(timezone=True))
