from __future__ import annotations

from typing import Any


class BillingError(Exception):
    code = 'billing_error'
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, Any]:
        return {'error': self.code, 'detail': self.message}


class SignatureVerificationError(BillingError):
    code = 'invalid_signature'
    status_code = 400


class NotFoundError(BillingError):
    code = 'not_found'
    status_code = 404


class ValidationError(BillingError):
    code = 'validation_failed'
    status_code = 400


class AuthenticationError(BillingError):
    code = 'invalid_credentials'
    status_code = 401


class InvalidStatusTransitionError(BillingError):
    code = 'invalid_status_transition'
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f'cannot move payment from {current} to {target}')
        self.current = current
        self.target = target


class InsufficientCreditsError(BillingError):
    code = 'insufficient_credits'
    status_code = 402

    def __init__(self, required: int, current: int) -> None:
        super().__init__(f'insufficient credits: required {required}, available {current}')
        self.required = required
        self.current = current
        self.shortfall = required - current

    def to_dict(self) -> dict[str, Any]:
        return {
            'error': self.code,
            'required': self.required,
            'current': self.current,
            'shortfall': self.shortfall,
            'action': 'purchase_credits',
        }


class TransactionTimeoutError(BillingError):
    code = 'transaction_timeout'
    status_code = 500
