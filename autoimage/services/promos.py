from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from autoimage.config import Settings
from autoimage.db.models import PromoCode, PromoRedemption, User
from autoimage.services.credits import ENTRY_PROMO_REDEMPTION, CreditResult, CreditsService
from autoimage.services.errors import NotFoundError, ValidationError
from autoimage.utils.logging import get_logger
from autoimage.utils.time import as_utc, utcnow


logger = get_logger(__name__)

MIN_CODE_LENGTH = 3
MAX_CODE_LENGTH = 50


@dataclass
class PromoStats:
    code: str
    credits_amount: int
    active: bool
    total_redemptions: int
    max_redemptions: int | None
    redemption_rate: float | None
    expires_at: datetime | None


def normalize_code(code: str) -> str:
    if not isinstance(code, str):
        raise ValidationError('promo code is required')
    code = code.strip()
    if not MIN_CODE_LENGTH <= len(code) <= MAX_CODE_LENGTH:
        raise ValidationError(f'promo code must be between {MIN_CODE_LENGTH} and {MAX_CODE_LENGTH} characters')
    return code.upper()


class PromoService:
    """Promo codes that any number of users may redeem, each user once.

    A code may carry a redemption cap and an expiry. Redemption credits go
    through ``CreditsService`` with the key ``promo:<code>:<user id>``.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings

    def _generate_code(self, length: int = 12) -> str:
        alphabet = string.ascii_uppercase + string.digits
        return ''.join(secrets.choice(alphabet) for _ in range(length))

    async def get_code(self, code: str) -> Optional[PromoCode]:
        return await self.session.get(PromoCode, normalize_code(code))

    async def create_code(
        self,
        code: str,
        credits: int,
        admin_login: str,
        max_redemptions: int | None = None,
        expires_at: datetime | None = None,
        active: bool = True,
        batch_id: str | None = None,
    ) -> PromoCode:
        code = normalize_code(code)
        self._validate_limits(credits, max_redemptions)
        if await self.session.get(PromoCode, code):
            raise ValidationError(f'promo code already exists: {code}')

        promo = PromoCode(
            code=code,
            credits_amount=credits,
            created_by_admin=admin_login,
            created_at=utcnow(),
            active=active,
            max_redemptions=max_redemptions,
            current_redemptions=0,
            expires_at=expires_at,
            batch_id=batch_id,
        )
        self.session.add(promo)
        await self.session.flush()
        logger.info('promo_created', code=code, credits=credits, admin=admin_login)
        return promo

    async def create_batch(
        self,
        amount: int,
        credits: int,
        admin_login: str,
        batch_id: str,
        max_redemptions: int | None = None,
        expires_at: datetime | None = None,
    ) -> List[PromoCode]:
        if amount <= 0:
            raise ValidationError('promo batch size must be positive')
        self._validate_limits(credits, max_redemptions)
        codes: List[PromoCode] = []
        for _ in range(amount):
            promo = PromoCode(
                code=self._generate_code(),
                credits_amount=credits,
                created_by_admin=admin_login,
                created_at=utcnow(),
                active=True,
                max_redemptions=max_redemptions,
                current_redemptions=0,
                expires_at=expires_at,
                batch_id=batch_id,
            )
            self.session.add(promo)
            codes.append(promo)
        await self.session.flush()
        logger.info('promo_batch_created', batch_id=batch_id, amount=amount, credits=credits, admin=admin_login)
        return codes

    async def redeem(self, user: User, code: str) -> tuple[str, CreditResult | None]:
        """Redeem ``code`` for ``user``.

        Returns ``(status, result)`` where status is one of ``ok``, ``invalid``,
        ``inactive``, ``expired``, ``exhausted`` or ``used``. The result is
        set only for ``ok``.
        """
        code = normalize_code(code)
        result = await self.session.execute(select(PromoCode).where(PromoCode.code == code).with_for_update())
        promo = result.scalar_one_or_none()
        if not promo:
            return 'invalid', None
        if not promo.active:
            return 'inactive', None
        if promo.expires_at and as_utc(promo.expires_at) < utcnow():
            return 'expired', None
        if promo.max_redemptions is not None and promo.current_redemptions >= promo.max_redemptions:
            return 'exhausted', None

        existing = await self.session.execute(
            select(PromoRedemption.id)
            .where(PromoRedemption.user_id == user.id)
            .where(PromoRedemption.promo_code == code)
        )
        if existing.scalar_one_or_none() is not None:
            return 'used', None

        claimed = await self.session.execute(
            update(PromoCode)
            .where(PromoCode.code == code)
            .where(
                or_(
                    PromoCode.max_redemptions.is_(None),
                    PromoCode.current_redemptions < PromoCode.max_redemptions,
                )
            )
            .values(current_redemptions=PromoCode.current_redemptions + 1)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return 'exhausted', None

        self.session.add(
            PromoRedemption(
                user_id=user.id,
                promo_code=code,
                credits=promo.credits_amount,
                created_at=utcnow(),
            )
        )
        await self.session.flush()

        credits = CreditsService(self.session, self.settings)
        credit_result = await credits.add_credits(
            user.id,
            promo.credits_amount,
            ENTRY_PROMO_REDEMPTION,
            f'Promo code {code} - {promo.credits_amount} credits',
            {'promo_code': code, 'batch_id': promo.batch_id},
            idempotency_key=f'promo:{code}:{user.id}',
        )
        logger.info('promo_redeemed', code=code, user_id=user.id, credits=promo.credits_amount)
        return 'ok', credit_result

    async def user_redemptions(self, user_id: int) -> List[PromoRedemption]:
        result = await self.session.execute(
            select(PromoRedemption)
            .where(PromoRedemption.user_id == user_id)
            .order_by(PromoRedemption.created_at.desc(), PromoRedemption.id.desc())
        )
        return list(result.scalars().all())

    async def stats(self, code: str) -> PromoStats:
        promo = await self.session.get(PromoCode, normalize_code(code), populate_existing=True)
        if not promo:
            raise NotFoundError(f'promo code not found: {code}')
        rate = None
        if promo.max_redemptions:
            rate = promo.current_redemptions / promo.max_redemptions * 100
        return PromoStats(
            code=promo.code,
            credits_amount=promo.credits_amount,
            active=promo.active,
            total_redemptions=promo.current_redemptions,
            max_redemptions=promo.max_redemptions,
            redemption_rate=rate,
            expires_at=promo.expires_at,
        )

    @staticmethod
    def _validate_limits(credits: int, max_redemptions: int | None) -> None:
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise ValidationError('promo credits must be a positive integer')
        if max_redemptions is not None and max_redemptions <= 0:
            raise ValidationError('max redemptions must be positive')
