"""
Data access for transactions and gateway credentials.

The transaction store is the only synchronization point between the webhook
handler and the polling loops: every transition out of ``pending`` goes
through a conditional UPDATE and the caller inspects the affected row count.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Set

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qris_reconciler.database.connection import get_session_factory
from qris_reconciler.database.models import (
    Bot,
    Transaction,
    UserGateway,
    family_codes,
    gateway_family,
)
from qris_reconciler.exceptions import AlreadyConsumed

logger = structlog.get_logger(__name__)


class TransactionRepository:
    """
    Transaction store with a compare-and-set transition primitive.

    Each call opens its own short session so a transition commits
    independently of whatever the caller is doing.
    """

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ):
        """
        Initialize repository.

        Args:
            session_factory: Optional session factory (defaults to the global one)
        """
        self.session_factory = session_factory or get_session_factory()

    async def has_pending(self, since: datetime) -> bool:
        """Cheap existence check used to pick the polling interval."""
        stmt = (
            select(Transaction.id)
            .where(Transaction.status == "pending", Transaction.created_at >= since)
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    async def list_pending(
        self,
        gateway_codes: Sequence[str],
        since: datetime,
        created_before: Optional[datetime] = None,
    ) -> List[Transaction]:
        """
        List pending transactions for gateway codes, oldest first.

        Args:
            gateway_codes: Gateway codes to include
            since: Lower bound on created_at (lookback window)
            created_before: Optional upper bound on created_at

        Returns:
            List[Transaction]: Pending transactions in FIFO order
        """
        conditions = [
            Transaction.status == "pending",
            Transaction.payment_gateway.in_(list(gateway_codes)),
            Transaction.created_at >= since,
        ]
        if created_before is not None:
            conditions.append(Transaction.created_at <= created_before)

        stmt = (
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get(self, transaction_id: int) -> Optional[Transaction]:
        async with self.session_factory() as session:
            return await session.get(Transaction, transaction_id)

    async def get_by_order_id(self, order_id: str) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.order_id == order_id)
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def find_by_reference(
        self, gateway_codes: Sequence[str], reference: str
    ) -> Optional[Transaction]:
        """
        Find a transaction by order id or gateway payment reference.

        Gateways echo back either our order id or their own deposit id.
        """
        stmt = (
            select(Transaction)
            .where(
                Transaction.payment_gateway.in_(list(gateway_codes)),
                or_(Transaction.order_id == reference, Transaction.payment_ref == reference),
            )
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def consumed_mutation_ids(
        self, family: str, external_ids: Iterable[str]
    ) -> Set[str]:
        """
        Return the subset of external ids already credited in a gateway family.

        Args:
            family: Gateway family namespace
            external_ids: Candidate mutation ids

        Returns:
            Set[str]: Ids already persisted on some transaction
        """
        ids = {str(i) for i in external_ids if i}
        if not ids:
            return set()

        stmt = select(Transaction.external_mutation_id).where(
            Transaction.gateway_family == family,
            Transaction.external_mutation_id.in_(ids),
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return {row for row in result.scalars().all() if row}

    async def mark_success(
        self,
        transaction_id: int,
        paid_at: datetime,
        external_mutation_id: Optional[str] = None,
    ) -> bool:
        """
        Transition a transaction from pending to success.

        Args:
            transaction_id: Transaction primary key
            paid_at: Settlement time to persist
            external_mutation_id: Gateway mutation id that paid it, if any

        Returns:
            bool: True if this call performed the transition

        Raises:
            AlreadyConsumed: If the mutation id is already credited elsewhere
        """
        values = {"status": "success", "paid_at": paid_at, "updated_at": func.now()}
        if external_mutation_id:
            values["external_mutation_id"] = external_mutation_id

        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == "pending")
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as session:
            try:
                result = await session.execute(stmt)
                transitioned = result.rowcount == 1
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning(
                    "mutation_id_already_credited",
                    transaction_id=transaction_id,
                    external_mutation_id=external_mutation_id,
                )
                raise AlreadyConsumed(
                    f"Mutation {external_mutation_id} already credited"
                ) from e

        logger.info(
            "transaction_transition_attempted",
            transaction_id=transaction_id,
            to_status="success",
            transitioned=transitioned,
        )
        return transitioned

    async def expire_overdue(self, now: datetime, default_horizon_start: datetime) -> int:
        """
        Move overdue pending transactions to expired.

        Rows without an explicit expired_at expire once created before
        ``default_horizon_start``.

        Returns:
            int: Number of rows expired
        """
        stmt = (
            update(Transaction)
            .where(
                Transaction.status == "pending",
                or_(
                    and_(Transaction.expired_at.isnot(None), Transaction.expired_at < now),
                    and_(
                        Transaction.expired_at.is_(None),
                        Transaction.created_at < default_horizon_start,
                    ),
                ),
            )
            .values(status="expired", updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            expired = result.rowcount or 0
            await session.commit()
        return expired

    async def record_callback(self, transaction_id: int, sent_at: datetime, response: str) -> None:
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .values(callback_sent_at=sent_at, callback_response=response[:255])
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def list_callback_retry(self, since: datetime, limit: int) -> List[Transaction]:
        """Successful transactions whose callback was never acknowledged."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.status == "success",
                Transaction.paid_at.isnot(None),
                Transaction.callback_sent_at.is_(None),
                Transaction.created_at >= since,
            )
            .order_by(Transaction.created_at.asc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())


class CredentialStore:
    """Read-only lookup of bots and their active gateway credentials."""

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ):
        self.session_factory = session_factory or get_session_factory()

    async def get_bot(self, bot_id: int) -> Optional[Bot]:
        async with self.session_factory() as session:
            return await session.get(Bot, bot_id)

    async def resolve(self, bot_id: int, gateway_code: str) -> Optional[UserGateway]:
        """
        Resolve the active gateway configuration serving a bot.

        The bot's explicitly selected gateway wins when it belongs to the
        requested family. Otherwise the owner's active gateways of that family
        are considered, preferring one scoped to this bot.

        Args:
            bot_id: Bot id
            gateway_code: Gateway code (any member of the family)

        Returns:
            Optional[UserGateway]: Matching configuration or None
        """
        family = gateway_family(gateway_code)
        codes = family_codes(family)

        async with self.session_factory() as session:
            bot = await session.get(Bot, bot_id)
            if bot is None:
                return None

            if bot.active_gateway_id is not None:
                selected = await session.get(UserGateway, bot.active_gateway_id)
                if (
                    selected is not None
                    and selected.is_active
                    and gateway_family(selected.gateway_code) == family
                ):
                    return selected

            stmt = (
                select(UserGateway)
                .where(
                    UserGateway.user_id == bot.user_id,
                    UserGateway.is_active.is_(True),
                    UserGateway.gateway_code.in_(codes),
                    or_(UserGateway.bot_id.is_(None), UserGateway.bot_id == bot_id),
                )
                .order_by(UserGateway.id.desc())
            )
            result = await session.execute(stmt)
            candidates = list(result.scalars().all())

        if not candidates:
            return None

        scoped = [c for c in candidates if c.bot_id == bot_id]
        return (scoped or candidates)[0]
