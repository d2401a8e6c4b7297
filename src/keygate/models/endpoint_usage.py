import uuid
from datetime import datetime
from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from keygate.models.base import Base


class EndpointUsage(Base):
    """Per-(key, endpoint) rollup, upserted on every recorded request."""

    __tablename__ = "endpoint_usage"
    __table_args__ = (UniqueConstraint("api_key_id", "endpoint", name="uq_endpoint_usage_key_endpoint"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    api_key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("api_keys.id", ondelete="CASCADE"), nullable=False
    )
    endpoint: Mapped[str] = mapped_column(String(512), nullable=False)

    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_latency_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
