from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from autoimage.config import Settings, get_settings
from autoimage.db.models import LedgerEntry, PaymentRecord, User
from autoimage.services.errors import InsufficientCreditsError, NotFoundError, ValidationError
from autoimage.utils.logging import get_logger
from autoimage.utils.time import utcnow


logger = get_logger('credits')

ENTRY_PURCHASE = 'purchase'
ENTRY_ADMIN_ADJUSTMENT = 'admin_adjustment'
ENTRY_REFUND = 'refund'
ENTRY_GENERATION_SPEND = 'generation_spend'
ENTRY_PROMO_REDEMPTION = 'promo_redemption'

ENTRY_TYPES = {
    ENTRY_PURCHASE,
    ENTRY_ADMIN_ADJUSTMENT,
    ENTRY_REFUND,
    ENTRY_GENERATION_SPEND,
    ENTRY_PROMO_REDEMPTION,
}

# generation_spend is only ever written as a debit
CREDIT_ENTRY_TYPES = ENTRY_TYPES - {ENTRY_GENERATION_SPEND}
DEBIT_ENTRY_TYPES = {ENTRY_GENERATION_SPEND, ENTRY_ADMIN_ADJUSTMENT}


@dataclass
class CreditResult:
    ok: bool
    entry: LedgerEntry
    balance: int


@dataclass
class ReconcileResult:
    previous_balance: int
    new_balance: int
    adjustment: int
    entry: LedgerEntry | None = field(default=None)


class CreditsService:
    """Sole writer of the credit ledger and the cached user balance.

    Each mutation writes the ledger row and the balance change inside the
    caller's current transaction. Nothing here commits: the caller owns the
    unit of work and commits or rolls back both writes together.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.email == email.strip().lower()))
        return result.scalar_one_or_none()

    async def ensure_user(self, email: str, username: Optional[str] = None, is_admin: bool = False) -> User:
        user = await self.get_user_by_email(email)
        if user:
            if username:
                user.username = username
            user.is_admin = is_admin
            return user

        user = User(
            email=email.strip().lower(),
            username=username,
            created_at=utcnow(),
            is_admin=is_admin,
            is_banned=False,
            balance_credits=0,
        )
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_balance(self, user_id: int) -> int:
        result = await self.session.execute(select(User.balance_credits).where(User.id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise NotFoundError(f'user not found: {user_id}')
        return int(balance)

    async def has_credits(self, user_id: int, amount: int = 1) -> bool:
        return await self.get_balance(user_id) >= amount

    async def ledger_sum(self, user_id: int) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.user_id == user_id)
        )
        return int(result.scalar_one() or 0)

    async def find_payment_entry(self, source_payment_id: str, entry_type: str = ENTRY_PURCHASE) -> Optional[LedgerEntry]:
        result = await self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.source_payment_id == source_payment_id)
            .where(LedgerEntry.entry_type == entry_type)
        )
        return result.scalar_one_or_none()

    async def find_entry_by_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        result = await self.session.execute(select(LedgerEntry).where(LedgerEntry.idempotency_key == idempotency_key))
        return result.scalar_one_or_none()

    async def add_credits(
        self,
        user_id: int,
        amount: int,
        entry_type: str = ENTRY_PURCHASE,
        description: str | None = None,
        meta: dict[str, Any] | None = None,
        *,
        source_payment_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreditResult:
        self._validate_amount(amount)
        if entry_type not in CREDIT_ENTRY_TYPES:
            raise ValidationError(f'unsupported credit entry type: {entry_type}')
        description = self._validate_description(description or f'{entry_type} - {amount} credits')

        if idempotency_key:
            existing = await self.find_entry_by_key(idempotency_key)
            if existing:
                return CreditResult(False, existing, await self.get_balance(user_id))

        balance = await self._apply_delta(user_id, amount)
        entry = await self._insert_entry(
            user_id, amount, entry_type, description, meta, source_payment_id, idempotency_key
        )
        logger.info('credits_added', user_id=user_id, amount=amount, entry_type=entry_type, balance=balance)
        return CreditResult(True, entry, balance)

    async def deduct_credits(
        self,
        user_id: int,
        amount: int,
        reason: str,
        meta: dict[str, Any] | None = None,
        *,
        entry_type: str = ENTRY_GENERATION_SPEND,
        idempotency_key: str | None = None,
    ) -> CreditResult:
        self._validate_amount(amount)
        if entry_type not in DEBIT_ENTRY_TYPES:
            raise ValidationError(f'unsupported debit entry type: {entry_type}')
        reason = self._validate_description(reason)

        if idempotency_key:
            existing = await self.find_entry_by_key(idempotency_key)
            if existing:
                return CreditResult(False, existing, await self.get_balance(user_id))

        balance = await self._apply_delta(user_id, -amount, require_funds=True)
        entry = await self._insert_entry(
            user_id, -amount, entry_type, reason, meta, None, idempotency_key
        )
        logger.info('credits_deducted', user_id=user_id, amount=amount, entry_type=entry_type, balance=balance)
        return CreditResult(True, entry, balance)

    async def refund_credits(
        self,
        user_id: int,
        amount: int,
        description: str,
        meta: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> CreditResult:
        return await self.add_credits(
            user_id,
            amount,
            ENTRY_REFUND,
            description,
            meta,
            idempotency_key=idempotency_key,
        )

    async def reverse_purchase(self, payment: PaymentRecord, reason: str) -> CreditResult:
        """Take back the credits granted by a purchase.

        Users may already have spent the credits, so this debit is allowed to
        drive the balance below zero.
        """
        self._validate_amount(payment.credits)
        description = self._validate_description(f'Refund for payment {payment.stripe_session_id} - {reason}')
        balance = await self._apply_delta(payment.user_id, -payment.credits)
        entry = await self._insert_entry(
            payment.user_id,
            -payment.credits,
            ENTRY_REFUND,
            description,
            {'reason': reason, 'amount': payment.amount, 'currency': payment.currency},
            payment.stripe_session_id,
            None,
        )
        if balance < 0:
            logger.warning('refund_negative_balance', user_id=payment.user_id, balance=balance)
        return CreditResult(True, entry, balance)

    async def apply_signup_bonus(self, user: User) -> bool:
        bonus = int(self.settings.signup_bonus_credits)
        if bonus <= 0:
            return False
        result = await self.add_credits(
            user.id,
            bonus,
            ENTRY_PROMO_REDEMPTION,
            f'Signup bonus - {bonus} credits',
            {'bonus': bonus},
            idempotency_key=f'signup:{user.id}',
        )
        return result.ok

    async def reconcile_balance(self, user_id: int) -> ReconcileResult:
        result = await self.session.execute(select(User).where(User.id == user_id).with_for_update())
        user = result.scalar_one_or_none()
        if not user:
            raise NotFoundError(f'user not found: {user_id}')

        previous = int(user.balance_credits or 0)
        ledger_total = await self.ledger_sum(user_id)
        difference = ledger_total - previous
        if difference == 0:
            return ReconcileResult(previous, previous, 0)

        await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance_credits=ledger_total)
            .execution_options(synchronize_session=False)
        )
        await self.session.get(User, user_id, populate_existing=True)
        # Zero-amount marker: the projection moved to the ledger sum, the sum itself is unchanged.
        entry = await self._insert_entry(
            user_id,
            0,
            ENTRY_ADMIN_ADJUSTMENT,
            f'Balance reconciliation: {"added" if difference > 0 else "removed"} {abs(difference)} credits',
            {'previous_balance': previous, 'ledger_balance': ledger_total, 'difference': difference},
            None,
            None,
        )
        logger.warning('balance_reconciled', user_id=user_id, previous=previous, ledger=ledger_total)
        return ReconcileResult(previous, ledger_total, difference, entry)

    async def _apply_delta(self, user_id: int, delta: int, require_funds: bool = False) -> int:
        stmt = update(User).where(User.id == user_id)
        if require_funds:
            stmt = stmt.where(User.balance_credits >= -delta)
        result = await self.session.execute(
            stmt.values(balance_credits=User.balance_credits + delta).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            user = await self.session.get(User, user_id, populate_existing=True)
            if not user:
                raise NotFoundError(f'user not found: {user_id}')
            raise InsufficientCreditsError(required=-delta, current=int(user.balance_credits or 0))

        user = await self.session.get(User, user_id, populate_existing=True)
        return int(user.balance_credits)

    async def _insert_entry(
        self,
        user_id: int,
        amount: int,
        entry_type: str,
        description: str,
        meta: dict[str, Any] | None,
        source_payment_id: str | None,
        idempotency_key: str | None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            amount=amount,
            entry_type=entry_type,
            description=description,
            meta=meta or {},
            source_payment_id=source_payment_id,
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    @staticmethod
    def _validate_amount(amount: Any) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f'invalid credit amount: {amount!r}, amount must be a positive integer')

    def _validate_description(self, description: Any) -> str:
        if not isinstance(description, str) or not description.strip():
            raise ValidationError('description is required')
        description = description.strip()
        if len(description) > self.settings.max_description_length:
            raise ValidationError(f'description must be {self.settings.max_description_length} characters or less')
        return description
