from __future__ import annotations

import pytest

from autoimage.db.models import PaymentRecord
from autoimage.scripts.seed import seed_packages
from autoimage.services.credits import ENTRY_PURCHASE, ENTRY_REFUND, CreditsService
from autoimage.services.errors import InvalidStatusTransitionError, NotFoundError
from autoimage.services.payments import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_REFUNDED,
    PaymentsService,
    can_transition,
)
from autoimage.services.stripe_client import StripeClientError

from factories import create_package, create_payment, create_user


def test_transition_table():
    assert can_transition(STATUS_PENDING, STATUS_COMPLETED)
    assert can_transition(STATUS_PENDING, STATUS_FAILED)
    assert can_transition(STATUS_COMPLETED, STATUS_REFUNDED)

    assert not can_transition(STATUS_PENDING, STATUS_REFUNDED)
    assert not can_transition(STATUS_COMPLETED, STATUS_PENDING)
    assert not can_transition(STATUS_COMPLETED, STATUS_FAILED)
    assert not can_transition(STATUS_FAILED, STATUS_COMPLETED)
    assert not can_transition(STATUS_REFUNDED, STATUS_COMPLETED)
    assert not can_transition(STATUS_REFUNDED, STATUS_REFUNDED)


async def test_transition_rejects_illegal_move(sessionmaker, settings):
    user = await create_user(sessionmaker)
    await create_payment(sessionmaker, user.id, status=STATUS_FAILED)
    async with sessionmaker() as session:
        payments = PaymentsService(session, settings=settings)
        payment = await payments.get_by_session_id('cs_test_abc')
        with pytest.raises(InvalidStatusTransitionError) as info:
            payments.transition(payment, STATUS_COMPLETED)
    assert info.value.current == STATUS_FAILED
    assert info.value.target == STATUS_COMPLETED


async def test_transition_records_payment_intent(sessionmaker, settings):
    user = await create_user(sessionmaker)
    await create_payment(sessionmaker, user.id)
    async with sessionmaker() as session:
        payments = PaymentsService(session, settings=settings)
        payment = await payments.get_by_session_id('cs_test_abc')
        payments.transition(payment, STATUS_COMPLETED, 'pi_123')
        await session.commit()

    async with sessionmaker() as session:
        payment = await PaymentsService(session, settings=settings).get_by_payment_intent('pi_123')
        assert payment is not None
        assert payment.status == STATUS_COMPLETED


async def test_mark_failed_only_touches_pending(sessionmaker, settings):
    user = await create_user(sessionmaker)
    await create_payment(sessionmaker, user.id, session_id='cs_pending')
    await create_payment(sessionmaker, user.id, session_id='cs_done', status=STATUS_COMPLETED)
    async with sessionmaker() as session:
        payments = PaymentsService(session, settings=settings)
        pending = await payments.get_by_session_id('cs_pending')
        done = await payments.get_by_session_id('cs_done')
        assert await payments.mark_failed(pending, 'checkout session expired')
        assert not await payments.mark_failed(done, 'checkout session expired')
        assert pending.status == STATUS_FAILED
        assert done.status == STATUS_COMPLETED


async def test_create_checkout_session_records_pending_payment(sessionmaker, settings, stripe_client):
    user = await create_user(sessionmaker)
    package = await create_package(sessionmaker, credits=50, price=3999, title='Pro Pack')
    async with sessionmaker() as session:
        payments = PaymentsService(session, stripe_client, settings)
        result = await payments.create_checkout_session(user.id, package.id)
        await session.commit()

    assert result.session_id == 'cs_test_1'
    assert result.url.endswith('cs_test_1')
    sent = stripe_client.created[0]
    assert sent['customer_email'] == user.email
    assert sent['unit_amount'] == 3999
    assert sent['metadata'] == {'userId': str(user.id), 'credits': '50', 'packageId': str(package.id)}
    assert sent['success_url'] == settings.checkout_success_url()

    async with sessionmaker() as session:
        payment = await PaymentsService(session, settings=settings).get_by_session_id('cs_test_1')
        assert payment.status == STATUS_PENDING
        assert payment.credits == 50
        assert payment.amount == 3999
        assert payment.user_id == user.id


async def test_create_checkout_session_unknown_or_inactive_package(sessionmaker, settings, stripe_client):
    user = await create_user(sessionmaker)
    inactive = await create_package(sessionmaker, active=False)
    async with sessionmaker() as session:
        payments = PaymentsService(session, stripe_client, settings)
        with pytest.raises(NotFoundError):
            await payments.create_checkout_session(user.id, 999)
        with pytest.raises(NotFoundError):
            await payments.create_checkout_session(user.id, inactive.id)
    assert stripe_client.created == []


async def test_create_checkout_session_requires_stripe(sessionmaker, settings):
    user = await create_user(sessionmaker)
    package = await create_package(sessionmaker)
    async with sessionmaker() as session:
        with pytest.raises(StripeClientError):
            await PaymentsService(session, None, settings).create_checkout_session(user.id, package.id)


async def test_list_packages_only_active_in_order(sessionmaker, settings):
    await create_package(sessionmaker, title='Starter Pack')
    await create_package(sessionmaker, title='Retired Pack', active=False)
    async with sessionmaker() as session:
        packages = await PaymentsService(session, settings=settings).list_packages()
    assert [package.title for package in packages] == ['Starter Pack']


async def _completed_purchase(sessionmaker, settings, user_id: int, credits: int = 50) -> None:
    await create_payment(
        sessionmaker,
        user_id,
        session_id='cs_paid',
        credits=credits,
        amount=3999,
        status=STATUS_COMPLETED,
        payment_intent='pi_paid',
    )
    async with sessionmaker() as session:
        await CreditsService(session, settings).add_credits(
            user_id,
            credits,
            ENTRY_PURCHASE,
            f'Credit purchase - {credits} credits',
            source_payment_id='cs_paid',
        )
        await session.commit()


async def test_refund_reverses_credits_and_calls_provider(sessionmaker, settings, stripe_client):
    user = await create_user(sessionmaker)
    await _completed_purchase(sessionmaker, settings, user.id)

    async with sessionmaker() as session:
        result = await PaymentsService(session, stripe_client, settings).refund_payment('cs_paid', 'Customer request')
        await session.commit()

    assert result.payment.status == STATUS_REFUNDED
    assert result.entry.amount == -50
    assert result.entry.entry_type == ENTRY_REFUND
    assert result.entry.source_payment_id == 'cs_paid'
    assert result.balance == 0
    assert result.provider_refund_id == 're_test_1'
    assert stripe_client.refunds == ['pi_paid']

    async with sessionmaker() as session:
        credits = CreditsService(session, settings)
        assert await credits.get_balance(user.id) == 0
        assert await credits.ledger_sum(user.id) == 0


async def test_refund_after_spending_goes_negative(sessionmaker, settings, stripe_client):
    user = await create_user(sessionmaker)
    await _completed_purchase(sessionmaker, settings, user.id, credits=10)
    async with sessionmaker() as session:
        await CreditsService(session, settings).deduct_credits(user.id, 8, 'Image generation')
        await session.commit()

    async with sessionmaker() as session:
        result = await PaymentsService(session, stripe_client, settings).refund_payment('cs_paid')
        await session.commit()

    assert result.balance == -8


async def test_second_refund_is_rejected(sessionmaker, settings, stripe_client):
    user = await create_user(sessionmaker)
    await _completed_purchase(sessionmaker, settings, user.id)
    async with sessionmaker() as session:
        await PaymentsService(session, stripe_client, settings).refund_payment('cs_paid')
        await session.commit()

    async with sessionmaker() as session:
        with pytest.raises(InvalidStatusTransitionError):
            await PaymentsService(session, stripe_client, settings).refund_payment('cs_paid')

    assert stripe_client.refunds == ['pi_paid']
    async with sessionmaker() as session:
        assert await CreditsService(session, settings).get_balance(user.id) == 0


async def test_refund_pending_or_missing_payment(sessionmaker, settings, stripe_client):
    user = await create_user(sessionmaker)
    await create_payment(sessionmaker, user.id, session_id='cs_pending')
    async with sessionmaker() as session:
        payments = PaymentsService(session, stripe_client, settings)
        with pytest.raises(InvalidStatusTransitionError):
            await payments.refund_payment('cs_pending')
        with pytest.raises(NotFoundError):
            await payments.refund_payment('cs_missing')

    async with sessionmaker() as session:
        payment = await session.get(PaymentRecord, 1)
        assert payment.status == STATUS_PENDING


async def test_seed_packages_is_idempotent(sessionmaker, settings):
    await create_package(sessionmaker, title='Legacy Pack')
    await seed_packages(sessionmaker, 'usd')
    await seed_packages(sessionmaker, 'usd')

    async with sessionmaker() as session:
        packages = await PaymentsService(session, settings=settings).list_packages()
    assert [(p.title, p.credits, p.price) for p in packages] == [
        ('Starter Pack', 10, 999),
        ('Pro Pack', 50, 3999),
        ('Enterprise Pack', 200, 14999),
    ]
