"""
Reconciliation service: the payment state machine.

Owns every write to payment status. Provider callbacks, COD confirmations,
manual provider pulls and refunds all settle through the same path:

1. Locate the payment
2. Check the reported amount against the stored amount
3. Treat a repeat of an already-applied outcome as a no-op
4. Compare-and-set the status (``WHERE status = ? AND version = ?``)
5. Update the owning order in the same transaction
6. Audit after commit, best-effort
"""
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.config import Settings, get_settings
from paygate.core.state_machine import assert_transition
from paygate.core.stores import (
    AuditSink,
    BestEffortAuditSink,
    OrderSnapshot,
    OrderStore,
    SqlAuditSink,
    SqlOrderStore,
)
from paygate.database.models import Payment, utcnow
from paygate.enums import PaymentMethod, PaymentStatus
from paygate.errors import (
    AmountMismatch,
    OrderNotFound,
    PaymentAlreadyTerminal,
    PaymentGatewayError,
    PaymentNotFound,
    ReconciliationIntegrityError,
    RefundNotAllowed,
    SignatureInvalid,
    ValidationError,
)
from paygate.integrations.base import Acknowledgment, AckKind, PaymentArtifact, RemoteStatus
from paygate.integrations.registry import GatewayRegistry
from paygate.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

OrderStoreFactory = Callable[[AsyncSession], OrderStore]

# Attempts at the conditional update when only the version moved
MAX_CAS_ATTEMPTS = 3

# gateway_data keys of an in-flight refund
REFUND_CLAIM = "refund_claim"
REFUND_ATTEMPT = "refund_attempt"

# A claim older than this belongs to a worker that died mid-call
REFUND_CLAIM_TTL = timedelta(minutes=10)


class AuditAction:
    """Audit action names."""

    INITIATED = "PAYMENT_INITIATED"
    SUCCESS = "PAYMENT_SUCCESS"
    FAILED = "PAYMENT_FAILED"
    REFUNDED = "PAYMENT_REFUNDED"
    REFUND_FAILED = "PAYMENT_REFUND_FAILED"
    VERIFICATION_FAILED = "PAYMENT_VERIFICATION_FAILED"
    AMOUNT_MISMATCH = "PAYMENT_AMOUNT_MISMATCH"
    CALLBACK_CONFLICT = "PAYMENT_CALLBACK_CONFLICT"
    CALLBACK_DUPLICATE = "PAYMENT_CALLBACK_DUPLICATE"
    NOT_FOUND_FOR_CALLBACK = "PAYMENT_NOT_FOUND_FOR_CALLBACK"
    INTEGRITY_ERROR = "PAYMENT_INTEGRITY_ERROR"


TRANSITION_ACTIONS = {
    PaymentStatus.PAID: AuditAction.SUCCESS,
    PaymentStatus.FAILED: AuditAction.FAILED,
    PaymentStatus.REFUNDED: AuditAction.REFUNDED,
}


@dataclass(frozen=True)
class Observation:
    """An outcome reported from outside (callback, staff, provider query)."""

    outcome: PaymentStatus
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    provider_code: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SettlementResult:
    """Result of applying an observation to a payment."""

    payment: Payment
    applied: bool
    previous_status: PaymentStatus

    @property
    def duplicate(self) -> bool:
        return not self.applied


@dataclass(frozen=True)
class ProviderReconciliation:
    """Result of a manual provider pull."""

    payment: Payment
    remote: RemoteStatus
    applied: bool


def _payment_state(payment: Payment) -> Dict[str, Any]:
    return {
        "status": payment.status,
        "amount": str(payment.amount),
        "transaction_id": payment.transaction_id,
        "version": payment.version,
    }


def refund_attempt(payment: Payment) -> int:
    """Number of refund attempts the provider declined so far."""
    return int((payment.gateway_data or {}).get(REFUND_ATTEMPT, 0))


def _claim_expired(claim: Dict[str, Any]) -> bool:
    try:
        return utcnow() - datetime.fromisoformat(claim["claimed_at"]) > REFUND_CLAIM_TTL
    except (KeyError, TypeError, ValueError):
        return True


class ReconciliationService:
    """
    Applies externally reported outcomes to payments exactly once.

    Each public operation runs in its own transaction from the injected
    session factory; no session outlives a call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: GatewayRegistry,
        audit: Optional[AuditSink] = None,
        order_store_factory: OrderStoreFactory = SqlOrderStore,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize reconciliation service.

        Args:
            session_factory: Async session factory
            gateways: Adapter registry
            audit: Audit sink (always wrapped as best-effort)
            order_store_factory: Builds an OrderStore bound to a session
            settings: Application settings
        """
        self.session_factory = session_factory
        self.gateways = gateways
        inner = audit or SqlAuditSink(session_factory)
        self.audit = (
            inner if isinstance(inner, BestEffortAuditSink) else BestEffortAuditSink(inner)
        )
        self.order_store_factory = order_store_factory
        self.settings = settings or get_settings()

    # Read side

    async def get_payment(self, payment_id: uuid.UUID | str) -> Payment:
        """
        Get a payment by id.

        Raises:
            PaymentNotFound: If no such payment exists
        """
        try:
            key = uuid.UUID(str(payment_id))
        except ValueError:
            raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)

        async with self.session_factory() as db:
            payment = await db.get(Payment, key)
        if payment is None:
            raise PaymentNotFound(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment

    async def list_payments_for_order(self, order_id: str) -> List[Payment]:
        """All payment attempts for an order, oldest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment)
                .where(Payment.order_id == order_id)
                .order_by(Payment.created_at)
            )
            return list(result.scalars().all())

    async def get_order(self, order_id: str) -> OrderSnapshot:
        """
        Get the order a payment is for.

        Raises:
            OrderNotFound: If the order does not exist
        """
        async with self.session_factory() as db:
            order = await self.order_store_factory(db).get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    # Initiation

    async def create_pending(
        self,
        order_id: str,
        method: PaymentMethod,
        amount: Decimal,
        reference: str,
        actor: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Payment, bool]:
        """
        Create the PENDING payment for an initiation, or return the open one.

        At most one PENDING payment exists per (order, method); the partial
        unique index settles concurrent inserts.

        Returns:
            Tuple[Payment, bool]: The PENDING payment and whether it was created
        """
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    existing = await self._find_pending(db, order_id, method)
                    if existing is not None:
                        logger.info(
                            "payment_pending_reused",
                            payment_id=str(existing.id),
                            order_id=order_id,
                            method=method.value,
                        )
                        return existing, False

                    payment = Payment(
                        id=uuid.uuid4(),
                        order_id=order_id,
                        payment_method=method.value,
                        amount=amount,
                        status=PaymentStatus.PENDING.value,
                        reference_number=reference,
                        gateway_data={},
                        version=1,
                    )
                    db.add(payment)
            except IntegrityError:
                logger.info(
                    "payment_pending_insert_conflict", order_id=order_id, method=method.value
                )
                async with db.begin():
                    existing = await self._find_pending(db, order_id, method)
                if existing is None:
                    raise
                return existing, False

        logger.info(
            "payment_created",
            payment_id=str(payment.id),
            order_id=order_id,
            method=method.value,
            amount=str(amount),
            reference=reference,
        )
        await self.audit.record(
            actor,
            AuditAction.INITIATED,
            "payment",
            str(payment.id),
            None,
            _payment_state(payment) | {"order_id": order_id, "method": method.value},
            context,
        )
        return payment, True

    async def record_initiation(self, payment_id: uuid.UUID, artifact: PaymentArtifact) -> bool:
        """
        Keep the artifact returned to the client while the payment is PENDING.

        Returns:
            bool: False if the payment already left PENDING
        """
        async with self.session_factory() as db:
            async with db.begin():
                payment = await self._find_by_id(db, payment_id)
                if payment is None or payment.current_status is not PaymentStatus.PENDING:
                    return False
                gateway_data = dict(payment.gateway_data or {})
                gateway_data["initiation"] = artifact.to_dict()
                result = await db.execute(
                    update(Payment)
                    .where(
                        Payment.id == payment.id,
                        Payment.status == PaymentStatus.PENDING.value,
                        Payment.version == payment.version,
                    )
                    .values(gateway_data=gateway_data, version=Payment.version + 1)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    # Refund claims

    async def claim_refund(self, payment: Payment, claimed_by: str) -> Payment:
        """
        Reserve a PAID payment for one provider refund call.

        The reservation is a conditional write on status and version: of
        several concurrent refund requests exactly one gets the claim.

        Returns:
            Payment: The payment as claimed (version bumped)

        Raises:
            RefundNotAllowed: A live claim exists or the payment changed first
        """
        gateway_data = dict(payment.gateway_data or {})
        claim = gateway_data.get(REFUND_CLAIM)
        if claim and not _claim_expired(claim):
            raise RefundNotAllowed(
                f"A refund for payment {payment.id} is already in progress",
                payment_id=payment.id,
                claimed_by=claim.get("claimed_by"),
            )

        gateway_data[REFUND_CLAIM] = {
            "claimed_by": claimed_by,
            "claimed_at": utcnow().isoformat(),
        }
        if not await self._write_gateway_data(payment, gateway_data):
            raise RefundNotAllowed(
                f"Payment {payment.id} changed while the refund was starting",
                payment_id=payment.id,
            )
        logger.info(
            "refund_claimed",
            payment_id=str(payment.id),
            claimed_by=claimed_by,
            taken_over=bool(claim),
        )
        return await self.get_payment(payment.id)

    async def release_refund(self, payment: Payment, next_attempt: bool) -> bool:
        """
        Drop the refund claim after the provider did not confirm.

        ``next_attempt`` moves the merchant refund id on; leave it False when
        the outcome is unknown so a retry is deduplicated by the provider.

        Returns:
            bool: False if the claim was taken over in the meantime
        """
        gateway_data = dict(payment.gateway_data or {})
        gateway_data.pop(REFUND_CLAIM, None)
        if next_attempt:
            gateway_data[REFUND_ATTEMPT] = refund_attempt(payment) + 1
        released = await self._write_gateway_data(payment, gateway_data)
        if not released:
            logger.warning("refund_claim_release_lost", payment_id=str(payment.id))
        return released

    async def _write_gateway_data(self, payment: Payment, gateway_data: Dict[str, Any]) -> bool:
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(Payment)
                    .where(
                        Payment.id == payment.id,
                        Payment.status == PaymentStatus.PAID.value,
                        Payment.version == payment.version,
                    )
                    .values(gateway_data=gateway_data, version=Payment.version + 1)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    # Settlement

    async def handle_callback(
        self,
        method: PaymentMethod | str,
        raw_payload: Dict[str, Any],
        actor: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        """
        Verify and apply a provider callback.

        Args:
            method: Payment method the callback is for
            raw_payload: Callback fields as received
            actor: Audit actor (defaults to the provider)
            context: Request context for audit (ip_address, user_agent)

        Returns:
            SettlementResult: ``applied`` is False for a repeated delivery

        Raises:
            SignatureInvalid: Signature check failed
            ValidationError: Malformed COD confirmation
            PaymentNotFound: No payment for the callback's reference
            AmountMismatch: Reported amount differs from the stored amount
            PaymentAlreadyTerminal: Payment already settled with another outcome
            ReconciliationIntegrityError: Payment and order could not be written together
        """
        adapter = self.gateways.get(method)
        method = adapter.method
        actor = actor or f"provider:{method.value.lower()}"
        verification = adapter.verify_callback(raw_payload)

        if not verification.valid or verification.outcome is None:
            logger.warning(
                "callback_signature_invalid",
                method=method.value,
                reference=verification.reference,
                reason=verification.reason,
            )
            await self.audit.record(
                actor,
                AuditAction.VERIFICATION_FAILED,
                "payment",
                verification.reference,
                None,
                {"reason": verification.reason, "payload": dict(raw_payload)},
                context,
            )
            if method is PaymentMethod.COD:
                raise ValidationError(
                    ["confirmation requires reference, collected, amount and confirmed_by"]
                )
            raise SignatureInvalid(
                f"{method.value} callback failed verification",
                reference=verification.reference,
                reason=verification.reason,
            )

        observation = Observation(
            outcome=verification.outcome,
            amount=verification.amount,
            transaction_id=verification.transaction_id,
            provider_code=verification.provider_code,
            payload=dict(raw_payload),
        )
        return await self._settle(
            observation,
            event="callback",
            actor=actor,
            context=context,
            method=method,
            reference=verification.reference,
        )

    async def acknowledge_callback(
        self,
        method: PaymentMethod | str,
        raw_payload: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> Acknowledgment:
        """
        Process a callback and answer in the provider's acknowledgment shape.

        Duplicates are acknowledged as success, rejections tell the provider
        to stop, internal errors ask it to redeliver.

        Raises:
            UnsupportedMethod: If the method has no adapter
        """
        adapter = self.gateways.get(method)
        start_time = time.time()

        try:
            result = await self.handle_callback(adapter.method, raw_payload, context=context)
            outcome = "applied" if result.applied else "duplicate"
            ack = adapter.acknowledge(AckKind.SUCCESS)
        except ReconciliationIntegrityError as e:
            outcome = "error"
            logger.error("callback_integrity_error", method=adapter.method.value, error=str(e))
            ack = adapter.acknowledge(AckKind.RETRY, e.code)
        except PaymentGatewayError as e:
            outcome = "rejected"
            ack = adapter.acknowledge(AckKind.REJECT, e.code)
        except Exception as e:
            outcome = "error"
            logger.exception(
                "callback_processing_error",
                method=adapter.method.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            ack = adapter.acknowledge(AckKind.RETRY)

        metrics.record_callback(adapter.method.value, outcome, time.time() - start_time)
        return ack

    async def confirm_cod(
        self,
        reference: str,
        collected: bool,
        amount: Decimal,
        confirmed_by: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> SettlementResult:
        """Apply a staff member's cash collection confirmation."""
        return await self.handle_callback(
            PaymentMethod.COD,
            {
                "reference": reference,
                "collected": collected,
                "amount": str(amount),
                "confirmed_by": confirmed_by,
            },
            actor=confirmed_by,
            context=context,
        )

    async def reconcile_with_provider(
        self,
        payment_id: uuid.UUID | str,
        actor: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ProviderReconciliation:
        """
        Pull the provider's status and apply a definitive outcome.

        Raises:
            PaymentNotFound: If no such payment exists
            UnsupportedMethod: For COD payments
            GatewayUnavailable: If the provider cannot be reached
            AmountMismatch: Provider reports a different amount
            PaymentAlreadyTerminal: Provider disagrees with the stored terminal state
        """
        payment = await self.get_payment(payment_id)
        adapter = self.gateways.get(payment.payment_method)
        remote = await adapter.query_status(payment.reference_number, payment.created_at)

        logger.info(
            "provider_status_pulled",
            payment_id=str(payment.id),
            local_status=payment.status,
            remote_outcome=remote.outcome.value if remote.outcome else None,
            provider_code=remote.provider_code,
        )

        if remote.outcome is None:
            return ProviderReconciliation(payment=payment, remote=remote, applied=False)

        result = await self._settle(
            Observation(
                outcome=remote.outcome,
                amount=remote.amount,
                transaction_id=remote.transaction_id,
                provider_code=remote.provider_code,
                payload=remote.raw,
            ),
            event="reconcile",
            actor=actor or "system",
            context=context,
            payment_id=payment.id,
        )
        return ProviderReconciliation(payment=result.payment, remote=remote, applied=result.applied)

    async def transition(
        self,
        payment_id: uuid.UUID | str,
        target: PaymentStatus,
        transaction_id: Optional[str] = None,
        event: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Move a payment to ``target`` through the conditional update.

        Raises:
            PaymentNotFound: If no such payment exists
            IllegalTransition: If the transition is not in the table
            PaymentAlreadyTerminal: If another writer changed the payment first
            ReconciliationIntegrityError: Payment and order could not be written together
        """
        target = PaymentStatus(target)
        payment = await self.get_payment(payment_id)
        previous = payment.current_status
        assert_transition(previous, target)

        async with self.session_factory() as db:
            try:
                async with db.begin():
                    won = await self._compare_and_set(
                        db, payment, target, transaction_id, event, payload
                    )
                    if not won:
                        current = await self._find_by_id(db, payment.id)
                        raise PaymentAlreadyTerminal(
                            f"Payment {payment.id} changed concurrently",
                            payment_id=payment.id,
                            status=current.status if current else None,
                        )
                    await self._update_order(db, payment, target)
                    updated = await self._find_by_id(db, payment.id)
            except SQLAlchemyError as e:
                raise self._integrity_error(payment, target, e) from e

        logger.info(
            "payment_transition_applied",
            payment_id=str(payment.id),
            from_status=previous.value,
            to_status=target.value,
        )
        await self.audit.record(
            actor,
            TRANSITION_ACTIONS[target],
            "payment",
            str(payment.id),
            _payment_state(payment),
            _payment_state(updated),
            context,
        )
        return updated

    async def _settle(
        self,
        observation: Observation,
        event: str,
        actor: str,
        context: Optional[Dict[str, Any]],
        method: Optional[PaymentMethod] = None,
        reference: Optional[str] = None,
        payment_id: Optional[uuid.UUID] = None,
    ) -> SettlementResult:
        """Apply an observation and audit the result, whatever it is."""
        resource_id = str(payment_id) if payment_id else reference
        new_value = {
            "outcome": observation.outcome.value,
            "amount": str(observation.amount) if observation.amount is not None else None,
            "transaction_id": observation.transaction_id,
            "provider_code": observation.provider_code,
            "event": event,
        }

        try:
            result = await self._settle_in_transaction(
                observation, event, method, reference, payment_id
            )
        except PaymentNotFound:
            logger.warning(
                "callback_payment_not_found",
                method=method.value if method else None,
                reference=reference,
            )
            await self.audit.record(
                actor, AuditAction.NOT_FOUND_FOR_CALLBACK, "payment", resource_id,
                None, new_value, context,
            )
            raise
        except AmountMismatch as e:
            logger.warning("callback_amount_mismatch", reference=resource_id, **e.context)
            await self.audit.record(
                actor, AuditAction.AMOUNT_MISMATCH, "payment", resource_id,
                None, new_value, context,
            )
            raise
        except PaymentAlreadyTerminal as e:
            logger.error("callback_conflicts_with_terminal_state", **e.context)
            await self.audit.record(
                actor, AuditAction.CALLBACK_CONFLICT, "payment", resource_id,
                {"status": e.context.get("stored_status")}, new_value, context,
            )
            raise
        except ReconciliationIntegrityError:
            await self.audit.record(
                actor, AuditAction.INTEGRITY_ERROR, "payment", resource_id,
                None, new_value, context,
            )
            raise

        payment = result.payment
        if not result.applied:
            logger.info(
                "callback_duplicate_ignored",
                payment_id=str(payment.id),
                status=payment.status,
                source=event,
            )
            await self.audit.record(
                actor, AuditAction.CALLBACK_DUPLICATE, "payment", str(payment.id),
                {"status": payment.status}, new_value, context,
            )
            return result

        logger.info(
            "payment_transition_applied",
            payment_id=str(payment.id),
            order_id=payment.order_id,
            from_status=result.previous_status.value,
            to_status=payment.status,
            transaction_id=payment.transaction_id,
            source=event,
        )
        await self.audit.record(
            actor,
            TRANSITION_ACTIONS[payment.current_status],
            "payment",
            str(payment.id),
            {"status": result.previous_status.value},
            _payment_state(payment) | {"event": event, "payload": observation.payload},
            context,
        )
        return result

    async def _settle_in_transaction(
        self,
        observation: Observation,
        event: str,
        method: Optional[PaymentMethod],
        reference: Optional[str],
        payment_id: Optional[uuid.UUID],
    ) -> SettlementResult:
        payment: Optional[Payment] = None
        async with self.session_factory() as db:
            try:
                async with db.begin():
                    if payment_id is not None:
                        payment = await self._find_by_id(db, payment_id)
                    else:
                        payment = await self._find_by_reference(db, method, reference)
                    if payment is None:
                        raise PaymentNotFound(
                            f"No payment for reference {reference}",
                            reference=reference,
                            method=method.value if method else None,
                        )
                    previous = payment.current_status
                    self._check_amount(payment, observation)

                    for _ in range(MAX_CAS_ATTEMPTS):
                        if payment.current_status.is_terminal:
                            self._check_consistent(payment, observation)
                            return SettlementResult(payment, False, previous)

                        won = await self._compare_and_set(
                            db,
                            payment,
                            observation.outcome,
                            observation.transaction_id,
                            event,
                            observation.payload,
                        )
                        if won:
                            await self._update_order(db, payment, observation.outcome)
                            updated = await self._find_by_id(db, payment.id)
                            return SettlementResult(updated, True, previous)

                        # Lost the conditional update; judge against the winner's write
                        payment = await self._find_by_id(db, payment.id)

                    raise ReconciliationIntegrityError(
                        f"Payment {payment.id} kept changing during settlement",
                        payment_id=payment.id,
                    )
            except SQLAlchemyError as e:
                raise self._integrity_error(payment, observation.outcome, e) from e

    def _check_amount(self, payment: Payment, observation: Observation) -> None:
        if observation.amount is None:
            return
        if abs(payment.amount - observation.amount) > self.settings.amount_tolerance:
            raise AmountMismatch(
                f"Reported amount {observation.amount} does not match {payment.amount}",
                payment_id=payment.id,
                expected=payment.amount,
                reported=observation.amount,
            )

    @staticmethod
    def _check_consistent(payment: Payment, observation: Observation) -> None:
        """
        Accept a terminal payment only if the observation repeats its outcome.

        Raises:
            PaymentAlreadyTerminal: If the observation contradicts the stored outcome
        """
        status = payment.current_status
        same_transaction = (
            not payment.transaction_id
            or not observation.transaction_id
            or payment.transaction_id == observation.transaction_id
        )
        if observation.outcome is PaymentStatus.PAID:
            consistent = (
                status in (PaymentStatus.PAID, PaymentStatus.REFUNDED) and same_transaction
            )
        else:
            consistent = status is PaymentStatus.FAILED and same_transaction

        if not consistent:
            raise PaymentAlreadyTerminal(
                f"Payment {payment.id} is already {status.value}",
                payment_id=payment.id,
                stored_status=status.value,
                reported_outcome=observation.outcome.value,
                stored_transaction_id=payment.transaction_id,
                reported_transaction_id=observation.transaction_id,
            )

    @staticmethod
    async def _compare_and_set(
        db: AsyncSession,
        payment: Payment,
        target: PaymentStatus,
        transaction_id: Optional[str],
        event: Optional[str],
        payload: Optional[Dict[str, Any]],
    ) -> bool:
        """
        Write ``target`` only if status and version are still what was read.

        Returns:
            bool: Whether this writer won
        """
        assert_transition(payment.current_status, target)

        gateway_data = dict(payment.gateway_data or {})
        gateway_data.pop(REFUND_CLAIM, None)
        if event:
            gateway_data[event] = payload or {}

        values: Dict[str, Any] = {
            "status": target.value,
            "version": Payment.version + 1,
            "gateway_data": gateway_data,
        }
        if transaction_id:
            values["transaction_id"] = transaction_id
        if target is PaymentStatus.PAID:
            values["paid_at"] = utcnow()

        result = await db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == payment.status,
                Payment.version == payment.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _update_order(
        self, db: AsyncSession, payment: Payment, target: PaymentStatus
    ) -> None:
        try:
            await self.order_store_factory(db).update_payment_state(payment.order_id, target)
        except Exception as e:
            raise self._integrity_error(payment, target, e) from e

    @staticmethod
    def _integrity_error(
        payment: Optional[Payment], target: PaymentStatus, error: Exception
    ) -> ReconciliationIntegrityError:
        logger.error(
            "payment_order_write_failed",
            payment_id=str(payment.id) if payment else None,
            order_id=payment.order_id if payment else None,
            target_status=target.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        return ReconciliationIntegrityError(
            "Payment and order could not be updated together",
            payment_id=payment.id if payment else None,
            target_status=target.value,
        )

    @staticmethod
    async def _find_by_id(db: AsyncSession, payment_id: uuid.UUID) -> Optional[Payment]:
        result = await db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_by_reference(
        db: AsyncSession, method: Optional[PaymentMethod], reference: Optional[str]
    ) -> Optional[Payment]:
        if method is None or not reference:
            return None
        result = await db.execute(
            select(Payment).where(
                Payment.payment_method == method.value,
                Payment.reference_number == reference,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_pending(
        db: AsyncSession, order_id: str, method: PaymentMethod
    ) -> Optional[Payment]:
        result = await db.execute(
            select(Payment).where(
                Payment.order_id == order_id,
                Payment.payment_method == method.value,
                Payment.status == PaymentStatus.PENDING.value,
            )
        )
        return result.scalar_one_or_none()
