"""
Credit ledger and reservation manager.

Balance is derived, never stored: the sum of completed ledger entries.
Available credit is balance minus active, unexpired reservations. Writes
that must not overdraw (reserve, charge) check and write under a per-tenant
ledger lock; every move of a reservation out of ``active`` is a
compare-and-set on its status.
"""

from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from common.core import clock
from common.core.config import settings
from common.core.exceptions import (
    ExternalServiceError,
    InsufficientCreditsError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from common.core.otel_axiom_exporter import trace_span, get_logger
from common.db.context import readonly
from common.db.scoped import transaction
from common.providers.caching.decorators import cache, invalidate_cache_keys
from common.providers.messaging.event_publisher import EventPublisher
from packages.billing.cache_keys import credit_balance_key
from packages.billing.models.database.credit import CreditReservationEntity
from packages.billing.models.domain.credit import (
    BonusCalculation,
    CreditBalance,
    CreditReservation,
    CreditReservationCreateModel,
    CreditReservationUpdateModel,
    CreditStatistics,
    CreditTransaction,
    CreditTransactionCreateModel,
    CreditTransactionUpdateModel,
)
from packages.billing.models.domain.enums import (
    BillingEvent,
    PaymentMethod,
    PaymentStatus,
    ReservationStatus,
    ScheduledActionType,
    TransactionStatus,
    TransactionType,
)
from packages.billing.models.domain.payment import Payment, PaymentRequest
from packages.billing.models.domain.results import (
    PaymentFailedResult,
    PaymentPendingResult,
    PurchaseCompleted,
    PurchasePending,
    PurchaseResult,
    ReservationResult,
    ReservationSettled,
)
from packages.billing.repositories.credit_reservation_repository import (
    CreditReservationRepository,
)
from packages.billing.repositories.credit_transaction_repository import (
    CreditTransactionRepository,
)
from packages.billing.services.payment_service import PaymentGatewayService
from packages.billing.services.scheduler_service import SchedulerService

logger = get_logger(__name__)

CENT = Decimal("0.01")


def to_credits(value: Any) -> Decimal:
    """Normalize an amount to a two-decimal credit value."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class CreditLedgerService:
    """Service for credit balances, purchases and reservations."""

    def __init__(
        self,
        payment_gateway: Optional[PaymentGatewayService] = None,
        event_publisher: Optional[EventPublisher] = None,
        scheduler: Optional[SchedulerService] = None,
    ):
        self.transaction_repo = CreditTransactionRepository()
        self.reservation_repo = CreditReservationRepository()
        self.events = event_publisher or EventPublisher()
        self.scheduler = scheduler or SchedulerService()
        self.payment_gateway = payment_gateway or PaymentGatewayService(
            event_publisher=self.events, scheduler=self.scheduler
        )
        self.payment_gateway.add_settlement_listener(self.payment_settled)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    @cache(
        str,
        ttl=settings.credit_balance_cache_ttl_seconds,
        key_generator=lambda tenant_id: credit_balance_key(tenant_id),
    )
    async def _cached_balance(self, tenant_id: str) -> str:
        return str(await self.transaction_repo.get_balance(tenant_id))

    async def invalidate_balance_cache(self, tenant_id: str) -> None:
        await invalidate_cache_keys(credit_balance_key(tenant_id))

    async def _available(self, tenant_id: str) -> Decimal:
        balance = await self.transaction_repo.get_balance(tenant_id)
        reserved = await self.reservation_repo.get_reserved_total(
            tenant_id, clock.utcnow()
        )
        return balance - reserved

    @trace_span
    async def get_balance(self, tenant_id: str) -> CreditBalance:
        """
        Balance, reserved and available credit for display.

        The balance figure may come from cache; decisions that must not
        overdraw use get_available() instead.
        """
        balance = to_credits(await self._cached_balance(tenant_id))
        reserved = await self.reservation_repo.get_reserved_total(
            tenant_id, clock.utcnow()
        )
        return CreditBalance(
            tenant_id=tenant_id,
            balance=balance,
            reserved=reserved,
            available=balance - reserved,
        )

    @trace_span
    async def get_available(self, tenant_id: str) -> Decimal:
        """Available credit read straight from the store."""
        return await self._available(tenant_id)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def calculate_bonus(self, amount: Decimal) -> BonusCalculation:
        """Bonus from the highest threshold the amount reaches. Tiers don't stack."""
        amount = to_credits(amount)
        rate = Decimal("0")
        for threshold in sorted(settings.credit_bonus_thresholds, reverse=True):
            if amount >= threshold:
                rate = Decimal(str(settings.credit_bonus_thresholds[threshold]))
                break

        bonus = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
        return BonusCalculation(
            base=amount, bonus=bonus, bonus_rate=rate, total=amount + bonus
        )

    def _amount_in_cents(self, amount: Decimal) -> int:
        return int(
            (amount * Decimal(str(settings.credit_unit_price)) * 100).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )

    @trace_span
    async def purchase_credits(
        self,
        tenant_id: str,
        amount: Any,
        payment_method: PaymentMethod,
        card_token: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PurchaseResult:
        """
        Buy credits through the payment gateway.

        A pending purchase entry is written first. Card payments complete it
        before returning; instant transfers return the payment code and the
        entry is settled when the payment settles.

        Raises:
            ValidationError: Amount below the minimum or above the balance cap
            ExternalServiceError: The charge was declined or the provider failed
        """
        payment_method = PaymentMethod(payment_method)
        amount = to_credits(amount)
        if amount < to_credits(settings.credit_min_purchase):
            raise ValidationError(
                f"Minimum purchase is {settings.credit_min_purchase} credits",
                amount=str(amount),
            )

        bonus = self.calculate_bonus(amount)
        balance = await self.transaction_repo.get_balance(tenant_id)
        if balance + bonus.total > to_credits(settings.credit_max_balance):
            raise ValidationError(
                f"Purchase would exceed the maximum balance of {settings.credit_max_balance}",
                tenant_id=tenant_id,
                balance=str(balance),
                amount=str(bonus.total),
            )

        pending = await self.transaction_repo.create(
            CreditTransactionCreateModel(
                tenant_id=tenant_id,
                type=TransactionType.PURCHASE,
                amount=bonus.total,
                status=TransactionStatus.PENDING,
                description=f"Purchase of {amount} credits",
                transaction_metadata={
                    **(metadata or {}),
                    "base_amount": str(bonus.base),
                    "bonus_amount": str(bonus.bonus),
                    "bonus_rate": str(bonus.bonus_rate),
                    "payment_method": payment_method.value,
                },
            )
        )

        logger.info(
            f"Purchasing {bonus.total} credits for tenant {tenant_id}",
            extra={
                "tenant_id": tenant_id,
                "transaction_id": pending.id,
                "base_amount": str(bonus.base),
                "bonus_amount": str(bonus.bonus),
            },
        )

        request = PaymentRequest(
            tenant_id=tenant_id,
            amount=self._amount_in_cents(amount),
            method=payment_method,
            currency=settings.payment_default_currency,
            description=f"Purchase of {amount} credits",
            card_token=card_token,
            payment_metadata={
                "credit_transaction_id": pending.id,
                "purpose": "credit_purchase",
            },
        )

        try:
            payment = await self.payment_gateway.process_payment(request)
        except Exception as e:
            await self._settle_purchase(pending.id, None, succeeded=False)
            logger.error(
                f"Credit purchase {pending.id} failed: {e}",
                extra={"tenant_id": tenant_id, "transaction_id": pending.id},
            )
            raise

        if isinstance(payment, PaymentFailedResult):
            # The settlement listener already failed the entry; this is a no-op
            # unless the listener could not run.
            await self._settle_purchase(pending.id, payment.payment_id, succeeded=False)
            raise ExternalServiceError(
                f"Payment declined: {payment.failure_reason}",
                tenant_id=tenant_id,
                payment_id=payment.payment_id,
                transaction_id=pending.id,
            )

        if isinstance(payment, PaymentPendingResult):
            await self.transaction_repo.update(
                pending.id, CreditTransactionUpdateModel(payment_id=payment.payment_id)
            )
            return PurchasePending(
                transaction_id=pending.id,
                payment_id=payment.payment_id,
                base_amount=bonus.base,
                bonus_amount=bonus.bonus,
                total_credits=bonus.total,
                payment_code=payment.payment_code,
                qr_code_url=payment.qr_code_url,
                expires_at=payment.expires_at,
            )

        await self._settle_purchase(pending.id, payment.payment_id, succeeded=True)
        return PurchaseCompleted(
            transaction_id=pending.id,
            payment_id=payment.payment_id,
            base_amount=bonus.base,
            bonus_amount=bonus.bonus,
            total_credits=bonus.total,
            new_balance=await self.transaction_repo.get_balance(tenant_id),
        )

    async def _settle_purchase(
        self, transaction_id: int, payment_id: Optional[int], succeeded: bool
    ) -> bool:
        """
        Move a pending purchase entry to completed or failed.

        Both the synchronous purchase path and the settlement listener call
        this; only the caller that wins the status compare-and-set publishes.
        """
        now = clock.utcnow()
        values = {"updated_at": now}
        if payment_id is not None:
            values["payment_id"] = payment_id

        if not succeeded:
            return await self.transaction_repo.transition_status(
                transaction_id,
                [TransactionStatus.PENDING],
                TransactionStatus.FAILED,
                **values,
            )

        won = await self.transaction_repo.transition_status(
            transaction_id,
            [TransactionStatus.PENDING],
            TransactionStatus.COMPLETED,
            completed_at=now,
            **values,
        )
        if not won:
            return False

        entry = await self.transaction_repo.get(transaction_id)
        await self.invalidate_balance_cache(entry.tenant_id)
        await self.events.publish(
            BillingEvent.CREDITS_PURCHASED,
            {
                "tenant_id": entry.tenant_id,
                "transaction_id": entry.id,
                "payment_id": entry.payment_id,
                "amount": str(entry.amount),
                "base_amount": entry.transaction_metadata.get("base_amount"),
                "bonus_amount": entry.transaction_metadata.get("bonus_amount"),
            },
        )
        logger.info(
            f"Credited {entry.amount} to tenant {entry.tenant_id}",
            extra={"tenant_id": entry.tenant_id, "transaction_id": entry.id},
        )
        return True

    @trace_span
    async def payment_settled(self, payment: Payment) -> None:
        """Settlement listener: resolve the purchase entry a payment funds."""
        transaction_id = payment.payment_metadata.get("credit_transaction_id")
        if transaction_id is None:
            return

        if payment.status == PaymentStatus.COMPLETED:
            await self._settle_purchase(int(transaction_id), payment.id, succeeded=True)
        elif payment.status in (PaymentStatus.FAILED, PaymentStatus.EXPIRED):
            await self._settle_purchase(int(transaction_id), payment.id, succeeded=False)

    # ------------------------------------------------------------------
    # Direct grants and charges
    # ------------------------------------------------------------------

    @trace_span
    async def grant_credits(
        self,
        tenant_id: str,
        amount: Any,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        """Add credits outside a purchase (plan allowance, manual adjustment)."""
        amount = to_credits(amount)
        if amount <= 0:
            raise ValidationError("Grant amount must be positive", amount=str(amount))

        entry = await self.transaction_repo.create(
            CreditTransactionCreateModel(
                tenant_id=tenant_id,
                type=TransactionType.ADJUSTMENT,
                amount=amount,
                status=TransactionStatus.COMPLETED,
                description=description,
                transaction_metadata=metadata or {},
                completed_at=clock.utcnow(),
            )
        )
        await self.invalidate_balance_cache(tenant_id)
        return entry

    @trace_span
    async def charge_credits(
        self,
        tenant_id: str,
        amount: Any,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CreditTransaction:
        """
        Debit available credit without a reservation.

        Raises:
            InsufficientCreditsError: Available credit is below ``amount``
        """
        amount = to_credits(amount)
        if amount <= 0:
            raise ValidationError("Charge amount must be positive", amount=str(amount))

        async with transaction():
            await self.transaction_repo.acquire_tenant_ledger_lock(tenant_id)
            available = await self._available(tenant_id)
            if available < amount:
                raise InsufficientCreditsError(
                    f"Insufficient credits: requested {amount}, available {available}",
                    tenant_id=tenant_id,
                    requested=str(amount),
                    available=str(available),
                )

            entry = await self.transaction_repo.create(
                CreditTransactionCreateModel(
                    tenant_id=tenant_id,
                    type=TransactionType.CONSUMPTION,
                    amount=-amount,
                    status=TransactionStatus.COMPLETED,
                    description=description,
                    transaction_metadata=metadata or {},
                    completed_at=clock.utcnow(),
                )
            )

        await self.invalidate_balance_cache(tenant_id)
        return entry

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    @trace_span
    async def reserve_credits(
        self,
        tenant_id: str,
        amount: Any,
        purpose: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReservationResult:
        """
        Hold credits for a pending operation.

        The hold lapses after ``credit_reservation_ttl_minutes`` unless it is
        consumed or released first.

        Raises:
            ValidationError: Amount is not positive
            InsufficientCreditsError: Available credit is below ``amount``
        """
        amount = to_credits(amount)
        if amount <= 0:
            raise ValidationError(
                "Reservation amount must be positive", amount=str(amount)
            )

        expires_at = clock.utcnow() + timedelta(
            minutes=settings.credit_reservation_ttl_minutes
        )

        async with transaction():
            await self.transaction_repo.acquire_tenant_ledger_lock(tenant_id)
            available = await self._available(tenant_id)
            if available < amount:
                raise InsufficientCreditsError(
                    f"Insufficient credits: requested {amount}, available {available}",
                    tenant_id=tenant_id,
                    requested=str(amount),
                    available=str(available),
                )

            reservation = await self.reservation_repo.create(
                CreditReservationCreateModel(
                    tenant_id=tenant_id,
                    amount=amount,
                    purpose=purpose,
                    expires_at=expires_at,
                    reservation_metadata=metadata or {},
                )
            )
            await self.scheduler.schedule(
                ScheduledActionType.RESERVATION_EXPIRY, reservation.id, expires_at
            )

        await self.events.publish(
            BillingEvent.CREDITS_RESERVED,
            {
                "tenant_id": tenant_id,
                "reservation_id": reservation.id,
                "amount": str(amount),
                "purpose": purpose,
                "expires_at": expires_at.isoformat(),
            },
        )

        logger.info(
            f"Reserved {amount} credits for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "reservation_id": reservation.id},
        )

        return ReservationResult(
            reservation_id=reservation.id,
            amount=amount,
            expires_at=reservation.expires_at,
            available_after=available - amount,
        )

    async def _get_reservation(self, reservation_id: int) -> CreditReservation:
        reservation = await self.reservation_repo.get(reservation_id)
        if not reservation:
            raise NotFoundError(
                f"Reservation {reservation_id} not found", reservation_id=reservation_id
            )
        return reservation

    async def _conflict(self, reservation_id: int, action: str) -> StateConflictError:
        current = await self.reservation_repo.get(reservation_id)
        status = current.status.value
        if current.status == ReservationStatus.ACTIVE:
            # Past expires_at but not swept yet.
            status = ReservationStatus.EXPIRED.value
        return StateConflictError(
            f"Cannot {action} reservation {reservation_id}: reservation is {status}",
            reservation_id=reservation_id,
            status=status,
        )

    @trace_span
    async def consume_reserved_credits(self, reservation_id: int) -> ReservationSettled:
        """
        Turn a hold into a debit.

        Raises:
            NotFoundError: No such reservation
            StateConflictError: Reservation already left ``active`` or expired
        """
        now = clock.utcnow()
        async with transaction():
            reservation = await self._get_reservation(reservation_id)
            won = await self.reservation_repo.transition_status(
                reservation_id,
                [ReservationStatus.ACTIVE],
                ReservationStatus.CONSUMED,
                CreditReservationEntity.expires_at > now,
                consumed_at=now,
                updated_at=now,
            )
            if not won:
                raise await self._conflict(reservation_id, "consume")

            entry = await self.transaction_repo.create(
                CreditTransactionCreateModel(
                    tenant_id=reservation.tenant_id,
                    type=TransactionType.CONSUMPTION,
                    amount=-reservation.amount,
                    status=TransactionStatus.COMPLETED,
                    description=reservation.purpose,
                    reservation_id=reservation_id,
                    transaction_metadata=reservation.reservation_metadata,
                    completed_at=now,
                )
            )
            await self.reservation_repo.update(
                reservation_id, CreditReservationUpdateModel(transaction_id=entry.id)
            )
            await self.scheduler.cancel(
                ScheduledActionType.RESERVATION_EXPIRY, reservation_id
            )

        await self.invalidate_balance_cache(reservation.tenant_id)
        await self.events.publish(
            BillingEvent.CREDITS_CONSUMED,
            {
                "tenant_id": reservation.tenant_id,
                "reservation_id": reservation_id,
                "transaction_id": entry.id,
                "amount": str(reservation.amount),
                "purpose": reservation.purpose,
            },
        )

        return ReservationSettled(
            status="consumed",
            reservation_id=reservation_id,
            amount=reservation.amount,
            transaction_id=entry.id,
        )

    @trace_span
    async def release_reserved_credits(
        self, reservation_id: int, reason: Optional[str] = None
    ) -> ReservationSettled:
        """
        Give a hold back without debiting.

        Raises:
            NotFoundError: No such reservation
            StateConflictError: Reservation already left ``active``
        """
        now = clock.utcnow()
        async with transaction():
            reservation = await self._get_reservation(reservation_id)
            won = await self.reservation_repo.transition_status(
                reservation_id,
                [ReservationStatus.ACTIVE],
                ReservationStatus.RELEASED,
                released_at=now,
                release_reason=reason,
                updated_at=now,
            )
            if not won:
                current = await self.reservation_repo.get(reservation_id)
                raise StateConflictError(
                    f"Cannot release reservation {reservation_id}: "
                    f"reservation is {current.status.value}",
                    reservation_id=reservation_id,
                    status=current.status.value,
                )
            await self.scheduler.cancel(
                ScheduledActionType.RESERVATION_EXPIRY, reservation_id
            )

        await self.events.publish(
            BillingEvent.CREDITS_RELEASED,
            {
                "tenant_id": reservation.tenant_id,
                "reservation_id": reservation_id,
                "amount": str(reservation.amount),
                "reason": reason,
            },
        )

        return ReservationSettled(
            status="released", reservation_id=reservation_id, amount=reservation.amount
        )

    @trace_span
    async def expire_reservation(self, reservation_id: int) -> bool:
        """
        Lapse an active reservation whose time is up.

        Returns True when this call expired it. Already-settled reservations
        are left alone. If called before ``expires_at`` a new expiry action is
        scheduled instead.
        """
        reservation = await self.reservation_repo.get(reservation_id)
        if not reservation or reservation.status != ReservationStatus.ACTIVE:
            return False

        now = clock.utcnow()
        if reservation.expires_at > now:
            await self.scheduler.schedule(
                ScheduledActionType.RESERVATION_EXPIRY,
                reservation_id,
                reservation.expires_at,
            )
            return False

        async with transaction():
            won = await self.reservation_repo.transition_status(
                reservation_id,
                [ReservationStatus.ACTIVE],
                ReservationStatus.EXPIRED,
                CreditReservationEntity.expires_at <= now,
                released_at=now,
                release_reason="expired",
                updated_at=now,
            )
            if won:
                await self.scheduler.cancel(
                    ScheduledActionType.RESERVATION_EXPIRY, reservation_id
                )

        if won:
            await self.events.publish(
                BillingEvent.CREDITS_RESERVATION_EXPIRED,
                {
                    "tenant_id": reservation.tenant_id,
                    "reservation_id": reservation_id,
                    "amount": str(reservation.amount),
                },
            )
            logger.info(
                f"Expired reservation {reservation_id}",
                extra={"reservation_id": reservation_id},
            )
        return won

    @trace_span
    async def cleanup_expired_reservations(self, limit: int = 100) -> int:
        """Expire active reservations past their deadline. Returns how many."""
        expired = 0
        for reservation in await self.reservation_repo.get_expired_active(
            clock.utcnow(), limit
        ):
            if await self.expire_reservation(reservation.id):
                expired += 1
        if expired:
            logger.info(f"Cleaned up {expired} expired reservations")
        return expired

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @trace_span
    @readonly
    async def get_transaction_history(
        self,
        tenant_id: str,
        limit: int = 50,
        offset: int = 0,
        type: Optional[TransactionType] = None,
        start_date=None,
        end_date=None,
    ) -> List[CreditTransaction]:
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        return await self.transaction_repo.get_history(
            tenant_id,
            limit=min(limit, 500),
            offset=offset,
            type=TransactionType(type) if type else None,
            start_date=start_date,
            end_date=end_date,
        )

    @trace_span
    @readonly
    async def get_credit_statistics(
        self, tenant_id: str, days: int = 30
    ) -> CreditStatistics:
        now = clock.utcnow()
        since = now - timedelta(days=days)
        totals = await self.transaction_repo.get_window_totals(tenant_id, since)
        purchases = await self.transaction_repo.get_completed_purchases(
            tenant_id, since
        )
        bonus = sum(
            (
                Decimal(p.transaction_metadata.get("bonus_amount", "0"))
                for p in purchases
            ),
            Decimal("0"),
        )
        balance = await self.transaction_repo.get_balance(tenant_id)
        reserved = await self.reservation_repo.get_reserved_total(tenant_id, now)

        return CreditStatistics(
            tenant_id=tenant_id,
            period_days=days,
            total_purchased=to_credits(totals["purchased"]),
            total_consumed=to_credits(totals["consumed"]),
            total_bonus=to_credits(bonus),
            transaction_count=totals["count"],
            current_balance=balance,
            reserved=reserved,
            available=balance - reserved,
        )
