from __future__ import annotations

import string
from datetime import timedelta

import pytest

from autoimage.db.models import LedgerEntry, PromoCode, User
from autoimage.services.credits import ENTRY_PROMO_REDEMPTION, CreditsService
from autoimage.services.errors import NotFoundError, ValidationError
from autoimage.services.promos import PromoService
from autoimage.utils.time import utcnow

from factories import create_user


async def _make_code(sessionmaker, settings, code: str = 'SPRING25', credits: int = 15, **kwargs) -> str:
    async with sessionmaker() as session:
        promo = await PromoService(session, settings).create_code(code, credits, 'admin', **kwargs)
        await session.commit()
        return promo.code


async def _redeem(sessionmaker, settings, user_id: int, code: str):
    async with sessionmaker() as session:
        row = await session.get(User, user_id)
        status, result = await PromoService(session, settings).redeem(row, code)
        await session.commit()
        return status, result


async def test_create_batch_generates_unique_codes(sessionmaker, settings):
    async with sessionmaker() as session:
        codes = await PromoService(session, settings).create_batch(5, 20, 'admin', 'batch-1', max_redemptions=1)
        await session.commit()
    values = {promo.code for promo in codes}
    assert len(values) == 5
    alphabet = set(string.ascii_uppercase + string.digits)
    assert all(len(code) == 12 and set(code) <= alphabet for code in values)
    assert all(promo.batch_id == 'batch-1' for promo in codes)
    assert all(promo.max_redemptions == 1 for promo in codes)


async def test_create_batch_rejects_non_positive(sessionmaker, settings):
    async with sessionmaker() as session:
        with pytest.raises(ValidationError):
            await PromoService(session, settings).create_batch(0, 20, 'admin', 'batch-1')
        with pytest.raises(ValidationError):
            await PromoService(session, settings).create_batch(1, 0, 'admin', 'batch-1')
        with pytest.raises(ValidationError):
            await PromoService(session, settings).create_batch(1, 5, 'admin', 'batch-1', max_redemptions=0)


async def test_create_code_normalizes_and_rejects_duplicates(sessionmaker, settings):
    code = await _make_code(sessionmaker, settings, code='  welcome10 ')
    assert code == 'WELCOME10'

    async with sessionmaker() as session:
        service = PromoService(session, settings)
        with pytest.raises(ValidationError):
            await service.create_code('welcome10', 5, 'admin')
        with pytest.raises(ValidationError):
            await service.create_code('AB', 5, 'admin')
        with pytest.raises(ValidationError):
            await service.create_code('X' * 51, 5, 'admin')
        with pytest.raises(ValidationError):
            await service.create_code('FREEBIE', -1, 'admin')


async def test_many_users_redeem_the_same_code(sessionmaker, settings):
    first = await create_user(sessionmaker, email='first@example.com')
    second = await create_user(sessionmaker, email='second@example.com')
    code = await _make_code(sessionmaker, settings)

    status, result = await _redeem(sessionmaker, settings, first.id, f'  {code.lower()} ')
    assert status == 'ok'
    assert result.balance == 15
    assert result.entry.entry_type == ENTRY_PROMO_REDEMPTION
    assert result.entry.idempotency_key == f'promo:{code}:{first.id}'

    status, result = await _redeem(sessionmaker, settings, second.id, code)
    assert status == 'ok'
    assert result.balance == 15
    assert result.entry.idempotency_key == f'promo:{code}:{second.id}'

    async with sessionmaker() as session:
        stats = await PromoService(session, settings).stats(code)
    assert stats.total_redemptions == 2
    assert stats.redemption_rate is None


async def test_user_redeems_a_code_only_once(sessionmaker, settings):
    user = await create_user(sessionmaker)
    code = await _make_code(sessionmaker, settings)

    assert (await _redeem(sessionmaker, settings, user.id, code))[0] == 'ok'
    assert await _redeem(sessionmaker, settings, user.id, code) == ('used', None)

    async with sessionmaker() as session:
        credits = CreditsService(session, settings)
        assert await credits.get_balance(user.id) == 15
        assert await credits.ledger_sum(user.id) == 15
        history = await PromoService(session, settings).user_redemptions(user.id)
    assert [(item.promo_code, item.credits) for item in history] == [(code, 15)]


async def test_redemption_cap_is_enforced(sessionmaker, settings):
    users = [await create_user(sessionmaker, email=f'user{i}@example.com') for i in range(3)]
    code = await _make_code(sessionmaker, settings, max_redemptions=2)

    statuses = [(await _redeem(sessionmaker, settings, user.id, code))[0] for user in users]
    assert statuses == ['ok', 'ok', 'exhausted']

    async with sessionmaker() as session:
        promo = await session.get(PromoCode, code)
        assert promo.current_redemptions == 2
        assert await CreditsService(session, settings).get_balance(users[2].id) == 0
        stats = await PromoService(session, settings).stats(code)
    assert stats.redemption_rate == 100


async def test_expired_code_grants_nothing(sessionmaker, settings):
    user = await create_user(sessionmaker)
    code = await _make_code(sessionmaker, settings, expires_at=utcnow() - timedelta(minutes=1))
    fresh = await _make_code(sessionmaker, settings, code='LATER', expires_at=utcnow() + timedelta(days=1))

    assert await _redeem(sessionmaker, settings, user.id, code) == ('expired', None)
    assert (await _redeem(sessionmaker, settings, user.id, fresh))[0] == 'ok'

    async with sessionmaker() as session:
        assert await CreditsService(session, settings).get_balance(user.id) == 15


async def test_unknown_or_inactive_code(sessionmaker, settings):
    user = await create_user(sessionmaker)
    code = await _make_code(sessionmaker, settings, code='PAUSED', active=False)

    assert await _redeem(sessionmaker, settings, user.id, 'NOPE') == ('invalid', None)
    assert await _redeem(sessionmaker, settings, user.id, code) == ('inactive', None)

    async with sessionmaker() as session:
        entries = (await session.execute(LedgerEntry.__table__.select())).all()
    assert entries == []


async def test_redeem_rejects_malformed_code(sessionmaker, settings):
    user = await create_user(sessionmaker)
    async with sessionmaker() as session:
        row = await session.get(User, user.id)
        with pytest.raises(ValidationError):
            await PromoService(session, settings).redeem(row, ' ab ')


async def test_stats_for_missing_code(sessionmaker, settings):
    async with sessionmaker() as session:
        with pytest.raises(NotFoundError):
            await PromoService(session, settings).stats('MISSING')
