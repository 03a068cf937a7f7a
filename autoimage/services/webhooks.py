from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoimage.config import Settings, get_settings
from autoimage.db.models import PaymentRecord
from autoimage.services.credits import ENTRY_PURCHASE, CreditsService
from autoimage.services.errors import TransactionTimeoutError
from autoimage.services.payments import STATUS_COMPLETED, STATUS_PENDING, PaymentsService
from autoimage.services.stripe_client import StripeClient, StripeClientError
from autoimage.utils.logging import get_logger


logger = get_logger('webhooks')

T = TypeVar('T')


class WebhookEventType(str, Enum):
    CHECKOUT_SESSION_COMPLETED = 'checkout.session.completed'
    CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED = 'checkout.session.async_payment_succeeded'
    CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED = 'checkout.session.async_payment_failed'
    CHECKOUT_SESSION_EXPIRED = 'checkout.session.expired'
    PAYMENT_INTENT_SUCCEEDED = 'payment_intent.succeeded'
    PAYMENT_INTENT_PAYMENT_FAILED = 'payment_intent.payment_failed'
    INVOICE_PAYMENT_FAILED = 'invoice.payment_failed'
    CHARGE_DISPUTE_CREATED = 'charge.dispute.created'
    CUSTOMER_CREATED = 'customer.created'
    CUSTOMER_UPDATED = 'customer.updated'
    CUSTOMER_DELETED = 'customer.deleted'
    PAYMENT_METHOD_ATTACHED = 'payment_method.attached'
    PAYMENT_METHOD_DETACHED = 'payment_method.detached'
    CUSTOMER_SUBSCRIPTION_CREATED = 'customer.subscription.created'
    CUSTOMER_SUBSCRIPTION_UPDATED = 'customer.subscription.updated'
    CUSTOMER_SUBSCRIPTION_DELETED = 'customer.subscription.deleted'

    @classmethod
    def parse(cls, value: Any) -> 'WebhookEventType | None':
        try:
            return cls(str(value or ''))
        except ValueError:
            return None


class WebhookOutcome(str, Enum):
    NEWLY_COMPLETED = 'newly_completed'
    ALREADY_PROCESSED = 'already_processed'
    CREDITS_RECOVERED = 'credits_recovered'
    SKIPPED_UNPAID = 'skipped_unpaid'
    AMOUNT_MISMATCH = 'amount_mismatch'
    NOT_FOUND = 'not_found'
    NO_SESSION = 'no_session'
    MARKED_FAILED = 'marked_failed'
    IGNORED_STATUS = 'ignored_status'
    ACKNOWLEDGED = 'acknowledged'
    UNHANDLED = 'unhandled'


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    session_id: str | None = None
    credits_added: int = 0
    balance: int | None = None
    detail: str = ''

    @property
    def skipped(self) -> bool:
        return self.outcome == WebhookOutcome.SKIPPED_UNPAID

    @property
    def already_processed(self) -> bool:
        return self.outcome == WebhookOutcome.ALREADY_PROCESSED

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {'outcome': self.outcome.value, 'credits_added': self.credits_added}
        if self.session_id:
            data['session_id'] = self.session_id
        if self.balance is not None:
            data['balance'] = self.balance
        if self.detail:
            data['detail'] = self.detail
        return data


def _event_object(event: Mapping[str, Any]) -> Mapping[str, Any]:
    data = event.get('data') or {}
    return data.get('object') or {}


def _payment_intent_id(checkout: Mapping[str, Any]) -> str | None:
    value = checkout.get('payment_intent')
    if isinstance(value, Mapping):
        value = value.get('id')
    return str(value) if value else None


class WebhookEventProcessor:
    """Turns verified Stripe events into at-most-once ledger mutations.

    Signature verification happens before events reach this class. Expected
    branches (unpaid, unknown session, duplicate delivery) come back as a
    ``WebhookResult``; database failures and timeouts propagate so the
    delivery gets retried by the provider.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        stripe_client: StripeClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.stripe = stripe_client
        self.settings = settings or get_settings()
        self._handlers: dict[WebhookEventType, Callable[[Mapping[str, Any]], Awaitable[WebhookResult]]] = {
            WebhookEventType.CHECKOUT_SESSION_COMPLETED: self.handle_checkout_completed,
            WebhookEventType.CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED: self.handle_async_payment_succeeded,
            WebhookEventType.CHECKOUT_SESSION_ASYNC_PAYMENT_FAILED: self.handle_async_payment_failed,
            WebhookEventType.CHECKOUT_SESSION_EXPIRED: self.handle_checkout_expired,
            WebhookEventType.PAYMENT_INTENT_SUCCEEDED: self.handle_payment_succeeded,
            WebhookEventType.PAYMENT_INTENT_PAYMENT_FAILED: self.handle_payment_failed,
            WebhookEventType.INVOICE_PAYMENT_FAILED: self.handle_invoice_payment_failed,
            WebhookEventType.CHARGE_DISPUTE_CREATED: self.acknowledge,
            WebhookEventType.CUSTOMER_CREATED: self.acknowledge,
            WebhookEventType.CUSTOMER_UPDATED: self.acknowledge,
            WebhookEventType.CUSTOMER_DELETED: self.acknowledge,
            WebhookEventType.PAYMENT_METHOD_ATTACHED: self.acknowledge,
            WebhookEventType.PAYMENT_METHOD_DETACHED: self.acknowledge,
            WebhookEventType.CUSTOMER_SUBSCRIPTION_CREATED: self.acknowledge,
            WebhookEventType.CUSTOMER_SUBSCRIPTION_UPDATED: self.acknowledge,
            WebhookEventType.CUSTOMER_SUBSCRIPTION_DELETED: self.acknowledge,
        }
        missing = set(WebhookEventType) - set(self._handlers)
        if missing:
            raise RuntimeError(f'no webhook handler for: {sorted(m.value for m in missing)}')

    async def process(self, event: Mapping[str, Any]) -> WebhookResult:
        event_type = WebhookEventType.parse(event.get('type'))
        with structlog.contextvars.bound_contextvars(event_id=event.get('id'), event_type=event.get('type')):
            if event_type is None:
                logger.info('webhook_event_unhandled')
                return WebhookResult(WebhookOutcome.UNHANDLED, detail=str(event.get('type') or ''))
            result = await self._handlers[event_type](event)
            logger.info('webhook_event_processed', outcome=result.outcome.value, session_id=result.session_id)
            return result

    async def handle_checkout_completed(self, event: Mapping[str, Any]) -> WebhookResult:
        return await self.complete_checkout(_event_object(event), source='checkout_completed')

    async def handle_async_payment_succeeded(self, event: Mapping[str, Any]) -> WebhookResult:
        return await self.complete_checkout(_event_object(event), source='async_payment')

    async def handle_async_payment_failed(self, event: Mapping[str, Any]) -> WebhookResult:
        checkout = _event_object(event)
        return await self._fail_session(str(checkout.get('id') or ''), 'async payment failed')

    async def handle_checkout_expired(self, event: Mapping[str, Any]) -> WebhookResult:
        checkout = _event_object(event)
        return await self._fail_session(str(checkout.get('id') or ''), 'checkout session expired')

    async def handle_payment_succeeded(self, event: Mapping[str, Any]) -> WebhookResult:
        intent_id = str(_event_object(event).get('id') or '')
        checkout = await self._session_for_intent(intent_id)
        if checkout is None:
            logger.info('webhook_no_session_for_intent', payment_intent=intent_id)
            return WebhookResult(WebhookOutcome.NO_SESSION, detail=intent_id)
        return await self.complete_checkout(checkout, source='payment_intent_succeeded')

    async def handle_payment_failed(self, event: Mapping[str, Any]) -> WebhookResult:
        intent_id = str(_event_object(event).get('id') or '')
        checkout = await self._session_for_intent(intent_id)
        if checkout is None:
            logger.info('webhook_no_session_for_intent', payment_intent=intent_id)
            return WebhookResult(WebhookOutcome.NO_SESSION, detail=intent_id)
        return await self._fail_session(str(checkout.get('id') or ''), 'payment intent failed')

    async def handle_invoice_payment_failed(self, event: Mapping[str, Any]) -> WebhookResult:
        invoice = _event_object(event)
        intent_id = invoice.get('payment_intent')
        if not intent_id:
            return await self.acknowledge(event)

        async def work(session: AsyncSession) -> WebhookResult:
            payments = PaymentsService(session, settings=self.settings)
            payment = await payments.get_by_payment_intent(str(intent_id))
            if not payment:
                return WebhookResult(WebhookOutcome.ACKNOWLEDGED, detail=str(invoice.get('id') or ''))
            if await payments.mark_failed(payment, 'invoice payment failed'):
                return WebhookResult(WebhookOutcome.MARKED_FAILED, payment.stripe_session_id)
            return WebhookResult(WebhookOutcome.IGNORED_STATUS, payment.stripe_session_id, detail=payment.status)

        return await self._transactional(work)

    async def acknowledge(self, event: Mapping[str, Any]) -> WebhookResult:
        obj = _event_object(event)
        logger.info('webhook_event_acknowledged', object_id=obj.get('id'))
        return WebhookResult(WebhookOutcome.ACKNOWLEDGED, detail=str(obj.get('id') or ''))

    async def verify_session(self, session_id: str) -> WebhookResult:
        """Ask Stripe for the session's current state and replay the completion path.

        Fallback for webhook deliveries that are delayed or lost.
        """
        if self.stripe is None:
            raise StripeClientError('stripe_not_configured')
        checkout = await self.stripe.retrieve_session(session_id)
        return await self.complete_checkout(checkout, source='manual_verification')

    async def complete_checkout(self, checkout: Mapping[str, Any], source: str) -> WebhookResult:
        session_id = str(checkout.get('id') or '')
        payment_status = checkout.get('payment_status')
        if payment_status != 'paid':
            logger.info('checkout_not_paid', session_id=session_id, payment_status=payment_status)
            return WebhookResult(WebhookOutcome.SKIPPED_UNPAID, session_id, detail=str(payment_status))

        intent_id = _payment_intent_id(checkout)
        amount_total = checkout.get('amount_total')

        async def work(session: AsyncSession) -> WebhookResult:
            return await self._apply_completion(session, session_id, intent_id, amount_total, source)

        try:
            return await self._transactional(work)
        except IntegrityError:
            # A concurrent delivery committed the purchase entry first; re-read its outcome.
            logger.warning('checkout_completion_conflict', session_id=session_id)
            return await self._transactional(work)

    async def _apply_completion(
        self,
        session: AsyncSession,
        session_id: str,
        intent_id: str | None,
        amount_total: Any,
        source: str,
    ) -> WebhookResult:
        payments = PaymentsService(session, settings=self.settings)
        credits = CreditsService(session, self.settings)

        payment = await payments.get_by_session_id(session_id, for_update=True)
        if not payment:
            logger.error('webhook_payment_not_found', session_id=session_id)
            return WebhookResult(WebhookOutcome.NOT_FOUND, session_id, detail='payment record not found')

        if amount_total is not None and int(amount_total) != int(payment.amount):
            logger.error(
                'webhook_amount_mismatch',
                session_id=session_id,
                expected=payment.amount,
                received=amount_total,
            )
            return WebhookResult(WebhookOutcome.AMOUNT_MISMATCH, session_id, detail=f'{payment.amount}!={amount_total}')

        existing = await credits.find_payment_entry(session_id, ENTRY_PURCHASE)

        if payment.status == STATUS_COMPLETED:
            if existing:
                logger.info('webhook_already_processed', session_id=session_id)
                return WebhookResult(WebhookOutcome.ALREADY_PROCESSED, session_id)
            balance = await self._grant(credits, payment, source)
            logger.warning('webhook_credits_recovered', session_id=session_id, credits=payment.credits)
            return WebhookResult(WebhookOutcome.CREDITS_RECOVERED, session_id, payment.credits, balance)

        if payment.status != STATUS_PENDING:
            logger.warning('webhook_payment_status_ignored', session_id=session_id, status=payment.status)
            return WebhookResult(WebhookOutcome.IGNORED_STATUS, session_id, detail=payment.status)

        payments.transition(payment, STATUS_COMPLETED, intent_id)
        if existing:
            return WebhookResult(WebhookOutcome.ALREADY_PROCESSED, session_id)
        balance = await self._grant(credits, payment, source)
        logger.info('webhook_checkout_completed', session_id=session_id, credits=payment.credits, balance=balance)
        return WebhookResult(WebhookOutcome.NEWLY_COMPLETED, session_id, payment.credits, balance)

    async def _grant(self, credits: CreditsService, payment: PaymentRecord, source: str) -> int:
        result = await credits.add_credits(
            payment.user_id,
            payment.credits,
            ENTRY_PURCHASE,
            f'Credit purchase - {payment.credits} credits',
            {
                'stripe_session_id': payment.stripe_session_id,
                'payment_intent': payment.stripe_payment_intent_id,
                'source': source,
            },
            source_payment_id=payment.stripe_session_id,
        )
        return result.balance

    async def _fail_session(self, session_id: str, reason: str) -> WebhookResult:
        async def work(session: AsyncSession) -> WebhookResult:
            payments = PaymentsService(session, settings=self.settings)
            payment = await payments.get_by_session_id(session_id, for_update=True)
            if not payment:
                logger.error('webhook_payment_not_found', session_id=session_id)
                return WebhookResult(WebhookOutcome.NOT_FOUND, session_id, detail='payment record not found')
            if await payments.mark_failed(payment, reason):
                return WebhookResult(WebhookOutcome.MARKED_FAILED, session_id, detail=reason)
            return WebhookResult(WebhookOutcome.IGNORED_STATUS, session_id, detail=payment.status)

        return await self._transactional(work)

    async def _session_for_intent(self, intent_id: str) -> Mapping[str, Any] | None:
        if not intent_id:
            return None
        if self.stripe is None:
            raise StripeClientError('stripe_not_configured')
        return await self.stripe.find_session_by_payment_intent(intent_id)

    async def _transactional(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def run() -> T:
            async with self.sessionmaker() as session:
                async with session.begin():
                    return await work(session)

        timeout = float(self.settings.ledger_transaction_timeout_seconds)
        try:
            return await asyncio.wait_for(run(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.error('ledger_transaction_timeout', timeout=timeout)
            raise TransactionTimeoutError(f'ledger transaction exceeded {timeout}s') from exc
