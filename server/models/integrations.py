import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Text, text

from core.orm import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SystemType(str, enum.Enum):
    SALESFORCE = "salesforce"
    JIRA = "jira"


class IntegrationStatus(str, enum.Enum):
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class Integration(Base):
    __tablename__ = "integrations"
    __table_args__ = (
        Index("idx_integrations_user_system", "user_id", "system_type"),
        Index("idx_integrations_status", "status"),
        # At most one active integration per user and system type.
        Index(
            "uq_integrations_active_pair",
            "user_id",
            "system_type",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id = Column(Text, primary_key=True, default=_new_id)
    user_id = Column(Text, nullable=False)
    system_type = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default=IntegrationStatus.ACTIVE.value)
    instance_url = Column(Text)
    # "metadata" is reserved on declarative classes.
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    connected_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class TokenRecord(Base):
    __tablename__ = "oauth_tokens"

    id = Column(Text, primary_key=True, default=_new_id)
    integration_id = Column(
        Text,
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_type = Column(Text, nullable=False, default="Bearer")
    expires_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
