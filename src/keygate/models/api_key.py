import enum
import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Enum, Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from keygate.models.base import Base


class KeyState(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ApiKey(Base):
    __tablename__ = "api_keys"
    __table_args__ = (
        CheckConstraint("rate_limit IS NULL OR rate_limit > 0", name="ck_api_keys_rate_limit_positive"),
        CheckConstraint("rate_window IS NULL OR rate_window > 0", name="ck_api_keys_rate_window_positive"),
        CheckConstraint("total_requests >= total_errors", name="ck_api_keys_counters"),
        Index("ix_api_keys_state_expires_at", "state", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # store hashed key only
    key_hash: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # optional for display/debug (no secret)
    key_prefix: Mapped[str] = mapped_column(String(32), nullable=False)

    label: Mapped[str] = mapped_column(String(100), nullable=False)
    state: Mapped[KeyState] = mapped_column(
        Enum(KeyState, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=KeyState.ACTIVE,
    )

    # per-key quota; both NULL means unlimited
    rate_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)   # requests
    rate_window: Mapped[int | None] = mapped_column(Integer, nullable=True)  # seconds

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_from: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def is_unlimited(self) -> bool:
        return self.rate_limit is None
