import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from pydantic import BaseModel

from checkout_core.application.automation import (
    AddOrderNoteAction,
    AutomationContext,
    AutomationRule,
    FixedIntervalRetryPolicy,
    RetryPolicy,
    SendNotificationAction,
    UpdateOrderStatusAction,
    matching_rules,
)
from checkout_core.application.interfaces import NotificationsService
from checkout_core.application.order_history import OrderHistoryRecorder
from checkout_core.domain.exceptions import (
    AlreadyConfirmed,
    ConfirmationNotFound,
    DomainException,
    InvalidState,
    NotPending,
    OrderNotFound,
    PaymentNotFound,
    ValidationFailed,
)
from checkout_core.domain.models import (
    BulkConfirmError,
    BulkConfirmResult,
    ChangeSource,
    ConfirmationHistoryEntry,
    ConfirmationMethod,
    ConfirmationStatus,
    ConfirmationType,
    Order,
    OrderPaymentStatus,
    Payment,
    PaymentConfirmation,
    PaymentStatus,
)


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class AutomationOutcome(BaseModel):
    confirmation: PaymentConfirmation
    automated: bool
    matched_rules: list[str] = []
    notes: Optional[str] = None
    next_retry_at: Optional[datetime] = None


class _Notification(BaseModel):
    recipient: str
    message: str
    reference_id: str
    idempotency_key: str


class PaymentConfirmationEngine:
    """Approval workflow for payments.

    A confirmation starts pending and moves exactly once to confirmed, failed
    or cancelled. Every transition appends to the confirmation history and
    mirrors the outcome onto the payment and its order in the same transaction.
    """

    def __init__(
        self,
        unit_of_work,
        history: OrderHistoryRecorder,
        notifications: Optional[NotificationsService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._uow = unit_of_work
        self._history = history
        self._notifications = notifications
        self._retry_policy = retry_policy or FixedIntervalRetryPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def record_payment(
        self,
        order_id: str,
        amount: Decimal,
        payment_method_code: str,
        confirmation_type: ConfirmationType = ConfirmationType.MANUAL,
        confirmation_method: ConfirmationMethod = ConfirmationMethod.ADMIN_DASHBOARD,
    ) -> PaymentConfirmation:
        """Create a pending payment for an order together with its confirmation."""
        if amount <= 0:
            raise ValidationFailed([f"Payment amount must be positive, got {amount}"])

        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFound(f"Order {order_id} not found")

            payment = Payment(
                id=str(uuid.uuid4()),
                order_id=order_id,
                amount=amount,
                payment_method_code=payment_method_code,
                status=PaymentStatus.PENDING,
                created_at=self._clock(),
            )
            await uow.payments.create(payment)
            confirmation = await self._create(uow, payment, confirmation_type, confirmation_method)
            await uow.commit()

        logger.info(f"Payment {payment.id} recorded for order {order_id}: {amount} via {payment_method_code}")
        return confirmation

    async def create_payment_confirmation(
        self,
        payment_id: str,
        confirmation_type: ConfirmationType,
        confirmation_method: ConfirmationMethod = ConfirmationMethod.ADMIN_DASHBOARD,
        notes: Optional[str] = None,
        evidence: Optional[dict[str, Any]] = None,
    ) -> PaymentConfirmation:
        async with self._uow() as uow:
            payment = await uow.payments.get_by_id(payment_id)
            if not payment:
                raise PaymentNotFound(f"Payment {payment_id} not found")
            confirmation = await self._create(
                uow, payment, confirmation_type, confirmation_method, notes, evidence
            )
            await uow.commit()
        return confirmation

    async def _create(
        self,
        uow,
        payment: Payment,
        confirmation_type: ConfirmationType,
        confirmation_method: ConfirmationMethod,
        notes: Optional[str] = None,
        evidence: Optional[dict[str, Any]] = None,
    ) -> PaymentConfirmation:
        if not payment.is_pending():
            raise NotPending(f"Payment {payment.id} is {payment.status.value}, expected pending")
        if await uow.confirmations.get_by_payment_id(payment.id):
            raise InvalidState(f"Payment {payment.id} already has a confirmation")

        now = self._clock()
        confirmation = PaymentConfirmation(
            id=str(uuid.uuid4()),
            payment_id=payment.id,
            confirmation_type=confirmation_type,
            confirmation_method=confirmation_method,
            confirmation_status=ConfirmationStatus.PENDING,
            confirmation_notes=notes,
            confirmation_evidence=evidence or {},
            confirmation_history=[
                ConfirmationHistoryEntry(
                    status=ConfirmationStatus.PENDING,
                    action="created",
                    timestamp=now,
                    actor=SYSTEM_ACTOR,
                    notes=f"{confirmation_type.value} confirmation created",
                )
            ],
            created_at=now,
        )
        await uow.confirmations.create(confirmation)
        logger.info(f"Confirmation {confirmation.id} created for payment {payment.id}")
        return confirmation

    async def confirm_manually(
        self,
        confirmation_id: str,
        actor: str,
        notes: Optional[str] = None,
        evidence: Optional[dict[str, Any]] = None,
    ) -> PaymentConfirmation:
        async with self._uow() as uow:
            confirmation, payment, order = await self._load(uow, confirmation_id)
            await self._confirm(
                uow, confirmation, payment, order, actor, notes, evidence,
                action="manual_confirmation", source=ChangeSource.ADMIN,
            )
            await uow.commit()
            confirmed = await uow.confirmations.get_by_id(confirmation_id)

        logger.info(f"Confirmation {confirmation_id} confirmed by {actor}")
        return confirmed

    async def reject(
        self,
        confirmation_id: str,
        actor: str,
        reason: str,
        evidence: Optional[dict[str, Any]] = None,
    ) -> PaymentConfirmation:
        async with self._uow() as uow:
            confirmation, payment, order = await self._load(uow, confirmation_id)
            if not confirmation.is_pending():
                raise NotPending(
                    f"Confirmation {confirmation_id} is {confirmation.confirmation_status.value}, expected pending"
                )

            values = {"confirmation_notes": reason}
            if evidence is not None:
                values["confirmation_evidence"] = {**confirmation.confirmation_evidence, **evidence}
            await self._transition(uow, confirmation, ConfirmationStatus.FAILED, **values)
            await uow.confirmations.append_history(
                confirmation_id,
                ConfirmationHistoryEntry(
                    status=ConfirmationStatus.FAILED,
                    action="rejected",
                    timestamp=self._clock(),
                    actor=actor,
                    notes=reason,
                ),
            )
            await uow.payments.update_status(payment.id, PaymentStatus.REJECTED, admin_notes=reason)
            await self._set_order_payment_status(
                uow, order, OrderPaymentStatus.FAILED, actor, ChangeSource.ADMIN, reason
            )
            await uow.commit()
            rejected = await uow.confirmations.get_by_id(confirmation_id)

        logger.info(f"Confirmation {confirmation_id} rejected by {actor}: {reason}")
        return rejected

    async def cancel(self, confirmation_id: str, actor: str, reason: str) -> PaymentConfirmation:
        async with self._uow() as uow:
            confirmation, payment, order = await self._load(uow, confirmation_id)
            if confirmation.confirmation_status == ConfirmationStatus.CONFIRMED:
                raise AlreadyConfirmed(f"Confirmation {confirmation_id} is already confirmed")
            if not confirmation.is_pending():
                raise NotPending(
                    f"Confirmation {confirmation_id} is {confirmation.confirmation_status.value}, expected pending"
                )

            await self._transition(
                uow, confirmation, ConfirmationStatus.CANCELLED, confirmation_notes=reason
            )
            await uow.confirmations.append_history(
                confirmation_id,
                ConfirmationHistoryEntry(
                    status=ConfirmationStatus.CANCELLED,
                    action="cancelled",
                    timestamp=self._clock(),
                    actor=actor,
                    notes=reason,
                ),
            )
            await uow.payments.update_status(payment.id, PaymentStatus.CANCELLED, admin_notes=reason)
            await self._set_order_payment_status(
                uow, order, OrderPaymentStatus.FAILED, actor, ChangeSource.ADMIN, reason
            )
            await uow.commit()
            cancelled = await uow.confirmations.get_by_id(confirmation_id)

        logger.info(f"Confirmation {confirmation_id} cancelled by {actor}: {reason}")
        return cancelled

    async def process_automated(
        self, confirmation_id: str, rules: list[AutomationRule]
    ) -> AutomationOutcome:
        """Evaluate the rules against the payment and confirm if any of them fires.

        Only the first matching rule's actions are executed. When nothing
        matches, the confirmation stays pending and is scheduled for retry.
        """
        pending_notifications = []

        async with self._uow() as uow:
            confirmation, payment, order = await self._load(uow, confirmation_id)
            if not confirmation.is_pending():
                raise NotPending(
                    f"Confirmation {confirmation_id} is {confirmation.confirmation_status.value}, expected pending"
                )

            now = self._clock()
            matched = matching_rules(rules, AutomationContext(payment=payment, order=order, now=now))

            if not matched:
                retry_count = confirmation.retry_count + 1
                next_retry_at = self._retry_policy.next_retry_at(now, retry_count)
                await self._transition(
                    uow, confirmation, ConfirmationStatus.PENDING,
                    retry_count=retry_count, next_retry_at=next_retry_at,
                )
                await uow.confirmations.append_history(
                    confirmation_id,
                    ConfirmationHistoryEntry(
                        status=ConfirmationStatus.PENDING,
                        action="automation_check",
                        timestamp=now,
                        actor=SYSTEM_ACTOR,
                        notes="Automated processing - no rules triggered",
                    ),
                )
                await uow.commit()
                updated = await uow.confirmations.get_by_id(confirmation_id)
                logger.info(
                    f"No automation rule fired for confirmation {confirmation_id}; "
                    f"retry {retry_count} at {next_retry_at.isoformat()}"
                )
                return AutomationOutcome(
                    confirmation=updated, automated=False, next_retry_at=next_retry_at
                )

            names = [rule.name for rule in matched]
            notes = "Automated confirmation: " + "; ".join(f"Rule '{name}' triggered" for name in names)
            await self._confirm(
                uow, confirmation, payment, order, SYSTEM_ACTOR, notes,
                {"automation_rules": names, "triggered_at": now.isoformat()},
                action="automated_confirmation", source=ChangeSource.SYSTEM,
                automation_rules=names,
            )
            pending_notifications = await self._run_actions(uow, matched[0], payment, order)
            await uow.commit()
            confirmed = await uow.confirmations.get_by_id(confirmation_id)

        logger.info(f"Confirmation {confirmation_id} auto-confirmed by rules {names}")
        await self._send(pending_notifications)
        return AutomationOutcome(
            confirmation=confirmed, automated=True, matched_rules=names, notes=notes
        )

    async def confirmations_requiring_retry(self) -> list[PaymentConfirmation]:
        """Pending confirmations whose retry time has passed, earliest first"""
        async with self._uow() as uow:
            return await uow.confirmations.find_due_for_retry(self._clock())

    async def bulk_confirm(
        self, confirmation_ids: list[str], actor: str, notes: Optional[str] = None
    ) -> BulkConfirmResult:
        result = BulkConfirmResult()
        for confirmation_id in confirmation_ids:
            try:
                confirmed = await self.confirm_manually(confirmation_id, actor, notes)
            except DomainException as e:
                logger.warning(f"Bulk confirm skipped {confirmation_id}: {e}")
                result.errors.append(BulkConfirmError(confirmation_id=confirmation_id, error=str(e)))
                continue
            result.confirmed.append(confirmed)

        logger.info(
            f"Bulk confirm by {actor}: {len(result.confirmed)} confirmed, {len(result.errors)} failed"
        )
        return result

    async def update_evidence(
        self, confirmation_id: str, evidence: dict[str, Any], actor: str
    ) -> PaymentConfirmation:
        async with self._uow() as uow:
            confirmation = await uow.confirmations.get_by_id(confirmation_id)
            if not confirmation:
                raise ConfirmationNotFound(f"Confirmation {confirmation_id} not found")
            if not confirmation.is_pending():
                raise NotPending("Evidence can only be added to pending confirmations")

            await uow.confirmations.update(
                confirmation_id,
                confirmation_evidence={**confirmation.confirmation_evidence, **evidence},
            )
            await uow.confirmations.append_history(
                confirmation_id,
                ConfirmationHistoryEntry(
                    status=confirmation.confirmation_status,
                    action="evidence_updated",
                    timestamp=self._clock(),
                    actor=actor,
                    notes=f"Evidence keys: {', '.join(sorted(evidence))}",
                ),
            )
            await uow.commit()
            return await uow.confirmations.get_by_id(confirmation_id)

    async def get_confirmation(self, confirmation_id: str) -> PaymentConfirmation:
        async with self._uow() as uow:
            confirmation = await uow.confirmations.get_by_id(confirmation_id)
        if not confirmation:
            raise ConfirmationNotFound(f"Confirmation {confirmation_id} not found")
        return confirmation

    async def get_history(self, confirmation_id: str) -> list[ConfirmationHistoryEntry]:
        confirmation = await self.get_confirmation(confirmation_id)
        return confirmation.confirmation_history

    async def list_by_status(self, status: ConfirmationStatus) -> list[PaymentConfirmation]:
        async with self._uow() as uow:
            return await uow.confirmations.list_by_status(status)

    async def stats(self) -> dict[str, int]:
        async with self._uow() as uow:
            counts = {status.value: await uow.confirmations.count(status) for status in ConfirmationStatus}
            counts["total"] = await uow.confirmations.count()
        return counts

    async def _load(self, uow, confirmation_id: str) -> tuple[PaymentConfirmation, Payment, Order]:
        confirmation = await uow.confirmations.get_by_id(confirmation_id)
        if not confirmation:
            raise ConfirmationNotFound(f"Confirmation {confirmation_id} not found")
        payment = await uow.payments.get_by_id(confirmation.payment_id)
        if not payment:
            raise PaymentNotFound(f"Payment {confirmation.payment_id} not found")
        order = await uow.orders.get_by_id(payment.order_id)
        if not order:
            raise OrderNotFound(f"Order {payment.order_id} not found")
        return confirmation, payment, order

    async def _transition(
        self, uow, confirmation: PaymentConfirmation, new_status: ConfirmationStatus, **values
    ) -> None:
        if not await uow.confirmations.transition_status(
            confirmation.id, ConfirmationStatus.PENDING, new_status, **values
        ):
            raise NotPending(f"Confirmation {confirmation.id} was resolved concurrently")

    async def _confirm(
        self,
        uow,
        confirmation: PaymentConfirmation,
        payment: Payment,
        order: Order,
        actor: str,
        notes: Optional[str],
        evidence: Optional[dict[str, Any]],
        action: str,
        source: ChangeSource,
        automation_rules: Optional[list[str]] = None,
    ) -> None:
        if confirmation.confirmation_status == ConfirmationStatus.CONFIRMED:
            raise AlreadyConfirmed(f"Confirmation {confirmation.id} is already confirmed")
        if not confirmation.is_pending():
            raise NotPending(
                f"Confirmation {confirmation.id} is {confirmation.confirmation_status.value}, expected pending"
            )
        if not payment.is_pending():
            raise NotPending(f"Payment {payment.id} is {payment.status.value}, expected pending")

        now = self._clock()
        values = {
            "confirmed_at": now,
            "confirmed_by": actor,
            "confirmation_notes": notes,
            "next_retry_at": None,
        }
        if evidence is not None:
            values["confirmation_evidence"] = {**confirmation.confirmation_evidence, **evidence}
        if automation_rules is not None:
            values["automation_rules"] = automation_rules
        await self._transition(uow, confirmation, ConfirmationStatus.CONFIRMED, **values)

        await uow.confirmations.append_history(
            confirmation.id,
            ConfirmationHistoryEntry(
                status=ConfirmationStatus.CONFIRMED,
                action=action,
                timestamp=now,
                actor=actor,
                notes=notes,
            ),
        )
        await uow.payments.update_status(payment.id, PaymentStatus.CONFIRMED, admin_notes=notes)
        await self._set_order_payment_status(uow, order, OrderPaymentStatus.PAID, actor, source, notes)

    async def _set_order_payment_status(
        self, uow, order: Order, payment_status: OrderPaymentStatus, actor: str,
        source: ChangeSource, reason: Optional[str],
    ) -> None:
        await uow.orders.update_payment_status(order.id, payment_status)
        await self._history.record_payment_update(
            uow,
            order.id,
            {"payment_status": order.payment_status.value},
            {"payment_status": payment_status.value},
            actor,
            source,
            reason,
        )

    async def _run_actions(
        self, uow, rule: AutomationRule, payment: Payment, order: Order
    ) -> list[_Notification]:
        notifications = []
        for action in rule.actions:
            if isinstance(action, SendNotificationAction):
                notifications.append(
                    _Notification(
                        recipient=action.recipient,
                        message=action.message or f"Payment {payment.id} for order {order.order_number} auto-confirmed",
                        reference_id=payment.id,
                        idempotency_key=f"{payment.id}:{rule.id}:{action.recipient}",
                    )
                )
            elif isinstance(action, UpdateOrderStatusAction):
                await uow.orders.update_status(order.id, action.status)
                await self._history.record_status_change(
                    uow, order.id, order.status, action.status, SYSTEM_ACTOR,
                    ChangeSource.SYSTEM, f"Automation rule '{rule.name}'",
                )
            elif isinstance(action, AddOrderNoteAction):
                await self._history.record_note(
                    uow, order.id, action.note, SYSTEM_ACTOR, ChangeSource.SYSTEM
                )
        return notifications

    async def _send(self, notifications: list[_Notification]) -> None:
        if not notifications:
            return
        if self._notifications is None:
            logger.warning(f"No notifications client configured; dropped {len(notifications)} notification(s)")
            return
        for n in notifications:
            try:
                await self._notifications.send(n.recipient, n.message, n.reference_id, n.idempotency_key)
            except Exception as e:
                # the confirmation is already committed
                logger.error(f"Notification to {n.recipient} for payment {n.reference_id} failed: {e}")
