"""
Reconciliation engine.

Correlates gateway-reported payments (webhooks, polled mutation feeds and
status checks) with pending transactions and applies each pending to success
transition exactly once.

Every transition goes through ``TransactionRepository.mark_success``, a
conditional UPDATE guarded by ``status = 'pending'``. Whoever sees one
affected row owns the transition and runs the notification fanout; everyone
else skips silently. There is no other coordination between the webhook
handler and the polling loops.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import structlog

from qris_reconciler.config import Settings, get_settings
from qris_reconciler.core.matching import find_matches
from qris_reconciler.core.notifications import NotificationFanout
from qris_reconciler.core.webhook_dedup import WebhookReplayCache
from qris_reconciler.database.models import Transaction, family_codes, gateway_family
from qris_reconciler.database.repository import CredentialStore, TransactionRepository
from qris_reconciler.exceptions import (
    AlreadyConsumed,
    GatewayError,
    InvalidPayload,
    ReconcilerError,
    TransactionNotFound,
)
from qris_reconciler.integrations.callback_client import CallbackClient
from qris_reconciler.integrations.gateways.atlantic import AtlanticGateway
from qris_reconciler.integrations.gateways.base import PaymentGateway, WebhookEvent
from qris_reconciler.integrations.gateways.factory import create_gateway
from qris_reconciler.integrations.hub_client import HubClient
from qris_reconciler.integrations.mutation_feed import MutationFeed, MutationRecord
from qris_reconciler.monitoring.metrics import metrics
from qris_reconciler.timeutils import as_utc, utcnow

logger = structlog.get_logger(__name__)

GatewayFactory = Callable[..., PaymentGateway]

# Families whose settlement is only visible on the merchant statement
FEED_FAMILIES = ("qiospay", "orderkuota")


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass over a scope."""

    gateway: str
    scope: Optional[int] = None
    checked: int = 0
    mutations: int = 0
    matched: List[str] = field(default_factory=list)
    skipped: int = 0
    error: Optional[str] = None


@dataclass
class WebhookOutcome:
    """
    Result of handling one inbound webhook.

    ``status`` is ``matched`` (this delivery settled the transaction),
    ``noop`` (accepted, nothing to change), ``duplicate`` (replayed delivery)
    or ``deferred`` (accepted, settlement left to the polling fallback).
    """

    status: str
    order_id: Optional[str] = None
    transaction_status: Optional[str] = None


class ReconciliationEngine:
    """
    Matches gateway events to pending transactions.

    Adapter errors never escape: they are logged with gateway and scope and
    turned into a no-op for the current cycle. The next cycle is the retry.
    """

    def __init__(
        self,
        repository: Optional[TransactionRepository] = None,
        credentials: Optional[CredentialStore] = None,
        fanout: Optional[NotificationFanout] = None,
        mutation_feed: Optional[MutationFeed] = None,
        replay_cache: Optional[WebhookReplayCache] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        gateway_factory: GatewayFactory = create_gateway,
    ):
        """
        Initialize engine.

        Args:
            repository: Transaction store
            credentials: Gateway credential lookup
            fanout: Notification fanout run after each transition
            mutation_feed: Statement fetcher for feed-based gateways
            replay_cache: Processed-webhook cache
            settings: Optional settings
            http_client: Optional shared httpx client for adapters
            gateway_factory: Adapter factory (``create_gateway`` signature)
        """
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.repository = repository or TransactionRepository()
        self.credentials = credentials or CredentialStore(self.repository.session_factory)
        self.fanout = fanout or NotificationFanout(
            repository=self.repository,
            credentials=self.credentials,
            hub=HubClient(self.settings, http_client),
            callback_client=CallbackClient(self.settings, http_client),
        )
        self.mutation_feed = mutation_feed or MutationFeed(self.settings, http_client)
        self.replay_cache = replay_cache or WebhookReplayCache(settings=self.settings)
        self.gateway_factory = gateway_factory

    def build_gateway(
        self, gateway_code: str, credentials: Optional[Dict[str, Any]] = None
    ) -> PaymentGateway:
        return self.gateway_factory(
            gateway_code,
            credentials or {},
            settings=self.settings,
            http_client=self.http_client,
        )

    async def gateway_for(self, transaction: Transaction) -> Optional[PaymentGateway]:
        """Adapter for a transaction, built with its bot's credentials."""
        config = await self.credentials.resolve(transaction.bot_id, transaction.payment_gateway)
        if config is None:
            logger.warning(
                "gateway_credentials_missing",
                gateway=transaction.payment_gateway,
                bot_id=transaction.bot_id,
                order_id=transaction.order_id,
            )
            return None
        return self.build_gateway(transaction.payment_gateway, config.credentials)

    async def apply_success(
        self,
        transaction: Transaction,
        paid_at: datetime,
        external_id: Optional[str] = None,
        source: str = "poll",
    ) -> bool:
        """
        Transition a transaction to success and fan out once.

        Args:
            transaction: Pending transaction
            paid_at: Settlement time
            external_id: Mutation id that paid the transaction, if any
            source: ``poll``, ``webhook`` or ``check`` (metrics label)

        Returns:
            bool: True if this call performed the transition
        """
        gateway = transaction.payment_gateway
        try:
            transitioned = await self.repository.mark_success(
                transaction.id, as_utc(paid_at), external_id
            )
        except AlreadyConsumed:
            metrics.record_already_consumed(gateway)
            logger.info(
                "transition_skipped",
                reason="mutation_already_consumed",
                order_id=transaction.order_id,
                external_id=external_id,
            )
            return False

        if not transitioned:
            metrics.record_already_consumed(gateway)
            logger.info(
                "transition_skipped",
                reason="not_pending",
                order_id=transaction.order_id,
                external_id=external_id,
            )
            return False

        metrics.record_match(gateway, source)
        logger.info(
            "transaction_paid",
            order_id=transaction.order_id,
            bot_id=transaction.bot_id,
            gateway=gateway,
            amount=int(transaction.amount),
            external_id=external_id,
            source=source,
        )

        settled = await self.repository.get(transaction.id)
        await self.fanout.notify(settled or transaction)
        return True

    async def reconcile_feed(
        self,
        gateway_code: str,
        transactions: Sequence[Transaction],
        mutations: Sequence[MutationRecord],
        tolerance: Optional[timedelta] = None,
    ) -> ReconcileResult:
        """
        Match a fetched mutation list against pending transactions of one scope.

        Args:
            gateway_code: Gateway the mutations came from
            transactions: Pending transactions of the scope
            mutations: Freshly fetched mutations
            tolerance: Backward grace on timestamps (per-gateway default)

        Returns:
            ReconcileResult: Matched order ids and skipped count
        """
        if tolerance is None:
            tolerance = timedelta(seconds=self.settings.tolerance_for(gateway_code))

        credits = [m for m in mutations if m.is_credit]
        result = ReconcileResult(
            gateway=gateway_code, checked=len(transactions), mutations=len(credits)
        )
        if not transactions or not credits:
            return result

        consumed = await self.repository.consumed_mutation_ids(
            gateway_family(gateway_code), [m.external_id for m in credits if m.external_id]
        )

        for match in find_matches(transactions, credits, tolerance, consumed):
            paid_at = as_utc(match.mutation.occurred_at) or utcnow()
            applied = await self.apply_success(
                match.transaction, paid_at, match.mutation.external_id, source="poll"
            )
            if applied:
                result.matched.append(match.transaction.order_id)
            else:
                result.skipped += 1

        return result

    async def reconcile_scope(
        self, gateway_code: str, bot_id: int, transactions: Sequence[Transaction]
    ) -> ReconcileResult:
        """
        Fetch one merchant statement and reconcile the bot's pending transactions.

        A single feed fetch serves every transaction of the scope.
        """
        config = await self.credentials.resolve(bot_id, gateway_code)
        if config is None:
            logger.warning(
                "gateway_credentials_missing",
                gateway=gateway_code,
                bot_id=bot_id,
                pending=len(transactions),
            )
            return ReconcileResult(
                gateway=gateway_code,
                scope=bot_id,
                checked=len(transactions),
                error="credentials_missing",
            )

        try:
            mutations = await self.mutation_feed.fetch(gateway_code, config.credentials or {})
        except GatewayError as e:
            metrics.record_gateway_error(gateway_code, e.error_type.value)
            logger.warning(
                "mutation_fetch_failed",
                gateway=gateway_code,
                bot_id=bot_id,
                error_type=e.error_type.value,
                error=str(e),
                original_error=str(e.original_error) if e.original_error else None,
            )
            return ReconcileResult(
                gateway=gateway_code,
                scope=bot_id,
                checked=len(transactions),
                error=e.error_type.value,
            )

        result = await self.reconcile_feed(gateway_code, transactions, mutations)
        result.scope = bot_id
        return result

    async def reconcile_status(self, transaction: Transaction, source: str = "poll") -> bool:
        """
        Settle a transaction from the gateway's own status endpoint.

        Atlantic deposits sitting in ``processing`` are pushed through with
        trigger-instant and counted as paid now.

        Returns:
            bool: True if the transaction was transitioned by this call
        """
        gateway = await self.gateway_for(transaction)
        if gateway is None:
            return False

        payment_id = transaction.payment_ref or transaction.order_id
        try:
            status = await gateway.check_status(payment_id, int(transaction.amount))
            if status.status == "processing" and isinstance(gateway, AtlanticGateway):
                if not await gateway.trigger_instant(status.payment_id or payment_id):
                    return False
                return await self.apply_success(transaction, utcnow(), source=source)
        except GatewayError as e:
            metrics.record_gateway_error(gateway.code, e.error_type.value)
            logger.warning(
                "status_check_failed",
                gateway=gateway.code,
                order_id=transaction.order_id,
                bot_id=transaction.bot_id,
                error_type=e.error_type.value,
                error=str(e),
            )
            return False

        logger.debug(
            "status_checked",
            gateway=gateway.code,
            order_id=transaction.order_id,
            status=status.status,
        )
        if status.status != "success":
            return False
        return await self.apply_success(transaction, status.paid_at or utcnow(), source=source)

    async def check_transaction(self, order_id: str) -> Transaction:
        """
        On-demand check of one transaction.

        Args:
            order_id: Order id

        Returns:
            Transaction: Current state after the check

        Raises:
            TransactionNotFound: If the order does not exist
        """
        transaction = await self.repository.get_by_order_id(order_id)
        if transaction is None:
            raise TransactionNotFound(f"Transaction {order_id} not found")
        if transaction.status != "pending":
            return transaction

        family = gateway_family(transaction.payment_gateway)
        if family in FEED_FAMILIES:
            since = utcnow() - timedelta(minutes=self.settings.lookback_minutes)
            pending = [
                t
                for t in await self.repository.list_pending(family_codes(family), since)
                if t.bot_id == transaction.bot_id
            ]
            await self.reconcile_scope(transaction.payment_gateway, transaction.bot_id, pending or [transaction])
        else:
            await self.reconcile_status(transaction, source="check")

        return await self.repository.get(transaction.id) or transaction

    async def handle_webhook(
        self,
        gateway_code: str,
        payload: Dict[str, Any],
        signature: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        Process an inbound gateway webhook.

        Args:
            gateway_code: Gateway from the URL path
            payload: Decoded body (JSON or form)
            signature: ``X-Signature`` / ``X-Callback-Signature`` header

        Returns:
            WebhookOutcome: What this delivery did

        Raises:
            UnknownGateway: For unsupported gateway codes
            TransactionNotFound: If no transaction matches the event
            InvalidPayload: If the payload fails validation
        """
        start = time.time()
        code = (gateway_code or "").lower()
        gateway = self.build_gateway(code)

        if await self.replay_cache.is_processed(code, payload):
            metrics.record_webhook_event(code, "duplicate", time.time() - start)
            logger.info("webhook_replay_ignored", gateway=code)
            return WebhookOutcome(status="duplicate")

        try:
            outcome = await self._process_webhook(gateway, payload, signature)
        except ReconcilerError as e:
            metrics.record_webhook_event(code, "rejected", time.time() - start)
            logger.warning(
                "webhook_rejected",
                gateway=code,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        metrics.record_webhook_event(code, outcome.status, time.time() - start)
        if outcome.status != "deferred":
            await self.replay_cache.mark_processed(code, payload)

        logger.info(
            "webhook_processed",
            gateway=code,
            order_id=outcome.order_id,
            outcome=outcome.status,
            transaction_status=outcome.transaction_status,
        )
        return outcome

    async def _process_webhook(
        self,
        gateway: PaymentGateway,
        payload: Dict[str, Any],
        signature: Optional[str],
    ) -> WebhookOutcome:
        event = gateway.parse_webhook(payload)
        codes = family_codes(gateway.family)

        transaction = None
        for reference in (event.payment_id, event.deposit_id):
            if reference:
                transaction = await self.repository.find_by_reference(codes, reference)
                if transaction is not None:
                    break

        if transaction is None and not event.payment_id and gateway.has_mutation_feed and event.amount > 0:
            if event.external_id:
                consumed = await self.repository.consumed_mutation_ids(
                    gateway.family, [event.external_id]
                )
                if consumed:
                    logger.info(
                        "webhook_mutation_already_consumed",
                        gateway=gateway.code,
                        external_id=event.external_id,
                    )
                    return WebhookOutcome(status="noop")
            transaction = await self._match_by_amount(gateway, event, codes)

        if transaction is None:
            raise TransactionNotFound(
                f"No {gateway.code} transaction for reference {event.payment_id or event.deposit_id or '-'}"
            )

        validator = await self.gateway_for(transaction) or gateway
        if not validator.validate_webhook(payload, signature):
            raise InvalidPayload(f"Invalid {gateway.code} webhook for {transaction.order_id}")

        if event.amount and event.amount != int(transaction.amount):
            logger.warning(
                "webhook_amount_mismatch",
                order_id=transaction.order_id,
                expected=int(transaction.amount),
                received=event.amount,
            )

        if transaction.status != "pending":
            return WebhookOutcome(
                status="noop",
                order_id=transaction.order_id,
                transaction_status=transaction.status,
            )

        status = event.status
        paid_at = event.paid_at
        if isinstance(validator, AtlanticGateway) and status in ("processing", "pending"):
            deposit_id = event.deposit_id or transaction.payment_ref
            if not deposit_id:
                return WebhookOutcome(
                    status="deferred", order_id=transaction.order_id, transaction_status="pending"
                )
            try:
                accepted = await validator.trigger_instant(deposit_id)
            except GatewayError as e:
                metrics.record_gateway_error(validator.code, e.error_type.value)
                logger.warning(
                    "instant_trigger_failed",
                    order_id=transaction.order_id,
                    deposit_id=deposit_id,
                    error=str(e),
                )
                accepted = False
            if not accepted:
                return WebhookOutcome(
                    status="deferred", order_id=transaction.order_id, transaction_status="pending"
                )
            status, paid_at = "success", utcnow()

        if status != "success":
            return WebhookOutcome(
                status="noop", order_id=transaction.order_id, transaction_status=transaction.status
            )

        applied = await self.apply_success(
            transaction, as_utc(paid_at) or utcnow(), event.external_id, source="webhook"
        )
        if not applied:
            current = await self.repository.get(transaction.id)
            return WebhookOutcome(
                status="noop",
                order_id=transaction.order_id,
                transaction_status=current.status if current else transaction.status,
            )
        return WebhookOutcome(
            status="matched", order_id=transaction.order_id, transaction_status="success"
        )

    async def _match_by_amount(
        self, gateway: PaymentGateway, event: WebhookEvent, codes: List[str]
    ) -> Optional[Transaction]:
        """
        Id-less webhook fallback: oldest pending transaction with the same amount.

        Weaker than the feed path: without a mutation id two equal-amount
        payments inside the window can be attributed in either order.
        """
        since = utcnow() - timedelta(minutes=self.settings.webhook_match_window_minutes)
        pending = await self.repository.list_pending(codes, since)
        mutation = MutationRecord(
            external_id=event.external_id, amount=event.amount, occurred_at=event.paid_at
        )
        matches = find_matches(pending, [mutation], gateway.timestamp_tolerance)
        if not matches:
            return None

        transaction = matches[0].transaction
        logger.warning(
            "webhook_matched_by_amount",
            gateway=gateway.code,
            order_id=transaction.order_id,
            amount=event.amount,
            external_id=event.external_id,
        )
        return transaction
