from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from autoimage.db.base import Base


JSONType = JSON().with_variant(JSONB(), 'postgresql')


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, default=False)
    balance_credits: Mapped[int] = mapped_column(Integer, default=0)

    ledger_entries: Mapped[list['LedgerEntry']] = relationship(back_populates='user')
    payments: Mapped[list['PaymentRecord']] = relationship(back_populates='user')


class LedgerEntry(Base):
    __tablename__ = 'credit_ledger'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    entry_type: Mapped[str] = mapped_column(String(32), index=True)
    description: Mapped[str] = mapped_column(String(255))
    meta: Mapped[dict] = mapped_column(JSONType, default=dict)
    source_payment_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    user: Mapped['User'] = relationship(back_populates='ledger_entries')

    __table_args__ = (
        UniqueConstraint('source_payment_id', 'entry_type', name='uq_credit_ledger_source_payment_type'),
    )


class CreditPackage(Base):
    __tablename__ = 'credit_packages'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(128))
    credits: Mapped[int] = mapped_column(Integer)
    price: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(8), default='usd')
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


class PaymentRecord(Base):
    __tablename__ = 'payment_records'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    stripe_session_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), index=True)
    package_id: Mapped[int | None] = mapped_column(ForeignKey('credit_packages.id'), nullable=True)
    credits: Mapped[int] = mapped_column(Integer)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(8), default='usd')
    status: Mapped[str] = mapped_column(String(16), index=True, default='pending')
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), index=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    user: Mapped['User'] = relationship(back_populates='payments')

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name='ck_payment_records_status',
        ),
    )


class PromoCode(Base):
    __tablename__ = 'promo_codes'

    code: Mapped[str] = mapped_column(String(50), primary_key=True)
    credits_amount: Mapped[int] = mapped_column(Integer)
    created_by_admin: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    max_redemptions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_redemptions: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    redemptions: Mapped[list['PromoRedemption']] = relationship(back_populates='promo')


class PromoRedemption(Base):
    __tablename__ = 'promo_redemptions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id', ondelete='CASCADE'), index=True)
    promo_code: Mapped[str] = mapped_column(ForeignKey('promo_codes.code', ondelete='CASCADE'), index=True)
    credits: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    promo: Mapped['PromoCode'] = relationship(back_populates='redemptions')

    __table_args__ = (
        UniqueConstraint('user_id', 'promo_code', name='uq_promo_redemptions_user_code'),
    )
