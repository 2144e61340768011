import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pricehub.db.base_class import Base, JSONType, TimestampMixin, utcnow


class PriceChangeStatus:
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"
    ROLLED_BACK = "ROLLED_BACK"


class PriceChange(Base, TimestampMixin):
    __tablename__ = "price_changes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(String(255), comment="Origin, e.g. rule:<id>, manual, connector:<name>")
    rule_run_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("rule_runs.id"), nullable=True, index=True)
    from_amount: Mapped[int] = mapped_column(BigInteger)
    to_amount: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3))
    compare_at_old: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    compare_at_new: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=PriceChangeStatus.PENDING, index=True,
                                        comment="PENDING, APPROVED, APPLIED, REJECTED, ROLLED_BACK")
    applied_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[str] = mapped_column(String(100), default="system")
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)


class IdempotencyKey(Base):
    """Ledger of external side effects already performed; the key itself is the dedup constraint."""
    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    rule_run_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    rule_target_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
