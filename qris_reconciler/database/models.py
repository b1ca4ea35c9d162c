"""SQLAlchemy database models for payment reconciliation."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY
IdType = BigInteger().with_variant(Integer, "sqlite")
JsonType = JSON().with_variant(JSONB, "postgresql")

TRANSACTION_STATUSES = ("pending", "success", "expired", "failed", "cancelled")

# Gateway code -> family sharing one mutation id namespace
GATEWAY_FAMILIES: Dict[str, str] = {
    "atlantic": "atlantic",
    "atlantic_fast": "atlantic",
    "qiospay": "qiospay",
    "orderkuota": "orderkuota",
    "pakasir": "pakasir",
}


def gateway_family(gateway_code: str) -> str:
    """Map a gateway code to its family, unknown codes are their own family."""
    return GATEWAY_FAMILIES.get(gateway_code, gateway_code)


def family_codes(family: str) -> List[str]:
    """All gateway codes sharing a family."""
    return [code for code, fam in GATEWAY_FAMILIES.items() if fam == family] or [family]


def _default_family(context: Any) -> str:
    return gateway_family(context.get_current_parameters()["payment_gateway"])


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Bot(Base):
    """
    Bot settings, owned by the bot management service.

    Read-only here: used to resolve the owner, the active gateway and the
    callback target of a transaction.
    """

    __tablename__ = "bots"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active_gateway_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("user_gateways.id", ondelete="SET NULL"), nullable=True
    )
    pg_api_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    settings: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    @property
    def callback_url(self) -> str | None:
        return (self.settings or {}).get("callback_url") or None

    @property
    def callback_secret(self) -> str:
        """HMAC key for outbound callbacks."""
        return self.pg_api_key or str(self.id)

    def __repr__(self) -> str:
        """String representation of Bot."""
        return f"<Bot(id={self.id}, user_id={self.user_id}, name={self.name})>"


class UserGateway(Base):
    """
    Per-user gateway configuration with an opaque credential bag.

    Optionally scoped to a single bot via bot_id.
    """

    __tablename__ = "user_gateways"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    bot_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    gateway_code: Mapped[str] = mapped_column(String(50), nullable=False)
    credentials: Mapped[Dict[str, Any]] = mapped_column(JsonType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        Index("idx_user_gateways_user_code", "user_id", "gateway_code", "is_active"),
    )

    def __repr__(self) -> str:
        """String representation of UserGateway."""
        return (
            f"<UserGateway(id={self.id}, user_id={self.user_id}, "
            f"gateway={self.gateway_code}, active={self.is_active})>"
        )


class Transaction(Base):
    """
    Payment transactions awaiting or holding a gateway confirmation.

    Created as pending by the order service. This service only moves a row
    out of pending, always with a conditional update on status.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    bot_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("bots.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", index=True
    )
    payment_gateway: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_family: Mapped[str] = mapped_column(
        String(50), nullable=False, default=_default_family
    )
    payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    external_mutation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    qr_string: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Order details echoed in the merchant callback
    telegram_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    telegram_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    variant: Mapped[str | None] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    callback_sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    callback_response: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'success', 'expired', 'failed', 'cancelled')",
            name="valid_status",
        ),
        UniqueConstraint(
            "gateway_family",
            "external_mutation_id",
            name="uq_transactions_family_mutation",
        ),
        Index("idx_transactions_gateway_status", "payment_gateway", "status", "created_at"),
        Index("idx_transactions_callback_retry", "status", "callback_sent_at"),
    )

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, order_id={self.order_id}, "
            f"amount={self.amount}, status={self.status})>"
        )
