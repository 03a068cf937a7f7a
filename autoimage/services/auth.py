from __future__ import annotations

import re

import bcrypt
from sqlalchemy.ext.asyncio import AsyncSession

from autoimage.config import Settings, get_settings
from autoimage.db.models import User
from autoimage.services.credits import CreditsService
from autoimage.services.errors import AuthenticationError, ValidationError
from autoimage.utils.logging import get_logger


logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6
EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))


def _validate_credentials(email: str, password: str) -> str:
    email = (email or '').strip().lower()
    if not email or not password:
        raise ValidationError('email and password are required')
    if not EMAIL_RE.match(email):
        raise ValidationError('please enter a valid email address')
    return email


class AuthService:
    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.credits = CreditsService(session, self.settings)

    async def register(self, email: str, password: str) -> User:
        """Create a password account and grant the signup bonus once."""
        email = _validate_credentials(email, password)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f'password must be at least {MIN_PASSWORD_LENGTH} characters long')
        if await self.credits.get_user_by_email(email):
            raise ValidationError('user with this email already exists')

        user = await self.credits.ensure_user(email, username=email.split('@')[0])
        user.password_hash = hash_password(password)
        bonus = await self.credits.apply_signup_bonus(user)
        logger.info('user_registered', user_id=user.id, signup_bonus=bonus)
        return user

    async def authenticate(self, email: str, password: str) -> User:
        email = _validate_credentials(email, password)
        user = await self.credits.get_user_by_email(email)
        if not user or not user.password_hash or not verify_password(password, user.password_hash):
            logger.warning('login_failed', email=email)
            raise AuthenticationError('invalid email or password')
        if user.is_banned:
            raise AuthenticationError('account is banned')
        return user
