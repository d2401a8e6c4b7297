import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from keygate.models.base import Base


class AuditAction(str, Enum):
    CREATE_KEY = "CREATE_KEY"
    UPDATE_KEY = "UPDATE_KEY"
    ACTIVATE_KEY = "ACTIVATE_KEY"
    DEACTIVATE_KEY = "DEACTIVATE_KEY"
    ROTATE_KEY = "ROTATE_KEY"
    DELETE_KEY = "DELETE_KEY"
    CLEANUP_EXPIRED = "CLEANUP_EXPIRED"


class AuditLog(Base):
    """
    Key lifecycle trail. Rows outlive the key they describe, so
    ``api_key_id`` carries no foreign key.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_api_key_id_ts", "api_key_id", "ts"),
        Index("ix_audit_logs_ts", "ts"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    api_key_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
