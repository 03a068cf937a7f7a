from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autoimage.config import Settings, get_settings
from autoimage.db.models import CreditPackage, LedgerEntry, PaymentRecord, User
from autoimage.services.credits import CreditsService
from autoimage.services.errors import InvalidStatusTransitionError, NotFoundError, ValidationError
from autoimage.services.stripe_client import StripeClient, StripeClientError
from autoimage.utils.logging import get_logger
from autoimage.utils.time import utcnow


logger = get_logger('payments')

STATUS_PENDING = 'pending'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
STATUS_REFUNDED = 'refunded'

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING: {STATUS_COMPLETED, STATUS_FAILED},
    STATUS_COMPLETED: {STATUS_REFUNDED},
    STATUS_FAILED: set(),
    STATUS_REFUNDED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


@dataclass
class CheckoutResult:
    session_id: str
    url: str
    package: CreditPackage
    payment: PaymentRecord


@dataclass
class RefundResult:
    payment: PaymentRecord
    entry: LedgerEntry
    balance: int
    provider_refund_id: str | None


class PaymentsService:
    def __init__(
        self,
        session: AsyncSession,
        stripe_client: StripeClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session = session
        self.stripe = stripe_client
        self.settings = settings or get_settings()

    async def list_packages(self) -> list[CreditPackage]:
        result = await self.session.execute(
            select(CreditPackage).where(CreditPackage.active.is_(True)).order_by(CreditPackage.sort_order)
        )
        return list(result.scalars().all())

    async def get_package(self, package_id: int) -> CreditPackage | None:
        result = await self.session.execute(select(CreditPackage).where(CreditPackage.id == package_id))
        return result.scalar_one_or_none()

    async def get_by_session_id(self, session_id: str, for_update: bool = False) -> Optional[PaymentRecord]:
        stmt = select(PaymentRecord).where(PaymentRecord.stripe_session_id == session_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_payment_intent(self, payment_intent_id: str) -> Optional[PaymentRecord]:
        result = await self.session.execute(
            select(PaymentRecord).where(PaymentRecord.stripe_payment_intent_id == payment_intent_id)
        )
        return result.scalars().first()

    async def create_payment_record(self, session_id: str, user_id: int, package: CreditPackage) -> PaymentRecord:
        now = utcnow()
        payment = PaymentRecord(
            stripe_session_id=session_id,
            user_id=user_id,
            package_id=package.id,
            credits=package.credits,
            amount=package.price,
            currency=(package.currency or self.settings.stripe_currency).lower(),
            status=STATUS_PENDING,
            created_at=now,
            updated_at=now,
        )
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def create_checkout_session(
        self,
        user_id: int,
        package_id: int,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutResult:
        if self.stripe is None:
            raise StripeClientError('stripe_not_configured')
        user = await self.session.get(User, user_id)
        if not user:
            raise NotFoundError(f'user not found: {user_id}')
        package = await self.get_package(package_id)
        if not package or not package.active:
            raise NotFoundError(f'package not found: {package_id}')
        if package.credits <= 0 or package.price <= 0:
            raise ValidationError(f'package {package_id} is misconfigured')

        expires_at = int(time.time()) + int(self.settings.checkout_expires_minutes) * 60
        checkout = await self.stripe.create_checkout_session(
            customer_email=user.email,
            title=package.title,
            credits=package.credits,
            unit_amount=package.price,
            currency=package.currency or self.settings.stripe_currency,
            success_url=success_url or self.settings.checkout_success_url(),
            cancel_url=cancel_url or self.settings.checkout_cancel_url(),
            expires_at=expires_at,
            metadata={
                'userId': str(user.id),
                'credits': str(package.credits),
                'packageId': str(package.id),
            },
        )
        session_id = str(checkout['id'])
        payment = await self.create_payment_record(session_id, user.id, package)
        logger.info('checkout_session_created', session_id=session_id, user_id=user.id, package_id=package.id)
        return CheckoutResult(session_id, str(checkout.get('url') or ''), package, payment)

    def transition(self, payment: PaymentRecord, target: str, payment_intent_id: str | None = None) -> PaymentRecord:
        if not can_transition(payment.status, target):
            raise InvalidStatusTransitionError(payment.status, target)
        payment.status = target
        if payment_intent_id:
            payment.stripe_payment_intent_id = payment_intent_id
        payment.updated_at = utcnow()
        return payment

    async def mark_failed(self, payment: PaymentRecord, reason: str) -> bool:
        if payment.status != STATUS_PENDING:
            logger.info('payment_fail_ignored', session_id=payment.stripe_session_id, status=payment.status)
            return False
        self.transition(payment, STATUS_FAILED)
        await self.session.flush()
        logger.info('payment_failed', session_id=payment.stripe_session_id, reason=reason)
        return True

    async def refund_payment(self, session_id: str, reason: str = 'Customer request') -> RefundResult:
        """Refund a completed payment and take its credits back.

        Runs inside the caller's transaction; the provider refund is requested
        after the ledger write so a failed write never refunds money.
        """
        payment = await self.get_by_session_id(session_id, for_update=True)
        if not payment:
            raise NotFoundError(f'payment not found: {session_id}')
        self.transition(payment, STATUS_REFUNDED)

        credits = CreditsService(self.session, self.settings)
        credit_result = await credits.reverse_purchase(payment, reason)

        provider_refund_id: str | None = None
        if payment.stripe_payment_intent_id and self.stripe is not None:
            refund = await self.stripe.create_refund(payment.stripe_payment_intent_id)
            provider_refund_id = str(refund.get('id') or '') or None

        logger.info(
            'payment_refunded',
            session_id=session_id,
            credits=payment.credits,
            balance=credit_result.balance,
            provider_refund_id=provider_refund_id,
        )
        return RefundResult(payment, credit_result.entry, credit_result.balance, provider_refund_id)
