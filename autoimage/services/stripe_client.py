from __future__ import annotations

import json
from typing import Any

import stripe

from autoimage.services.errors import SignatureVerificationError


def _to_plain(obj: Any) -> dict[str, Any]:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeClientError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StripeClient:
    def __init__(
        self,
        api_key: str,
        webhook_secret: str = "",
        timeout: float = 20.0,
        signature_tolerance: int = 300,
    ) -> None:
        self.api_key = api_key.strip()
        self.webhook_secret = webhook_secret.strip()
        self.timeout = timeout
        self.signature_tolerance = signature_tolerance
        self._client: stripe.StripeClient | None = None

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            if not self.api_key:
                raise StripeClientError("stripe_not_configured")
            self._client = stripe.StripeClient(
                self.api_key,
                http_client=stripe.HTTPXClient(timeout=self.timeout),
            )
        return self._client

    @staticmethod
    def _wrap(method: str, exc: stripe.StripeError) -> StripeClientError:
        return StripeClientError(f"{method}_failed:{exc.user_message or exc}", exc.http_status)

    async def create_checkout_session(
        self,
        *,
        customer_email: str,
        title: str,
        credits: int,
        unit_amount: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        expires_at: int,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "payment_method_types": ["card"],
            "customer_email": customer_email,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {
                            "name": f"{title} - AI Image Credits",
                            "description": f"Generate {credits} AI images",
                        },
                        "unit_amount": int(unit_amount),
                    },
                    "quantity": 1,
                }
            ],
            "mode": "payment",
            "success_url": f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url,
            "metadata": metadata,
            "expires_at": int(expires_at),
        }
        try:
            session = _to_plain(await self.client.checkout.sessions.create_async(params=params))
        except stripe.StripeError as exc:
            raise self._wrap("create_checkout_session", exc) from exc
        if not session.get("id"):
            raise StripeClientError("create_checkout_session_missing_id")
        return session

    async def retrieve_session(self, session_id: str) -> dict[str, Any]:
        try:
            session = await self.client.checkout.sessions.retrieve_async(session_id)
        except stripe.StripeError as exc:
            raise self._wrap("retrieve_session", exc) from exc
        return _to_plain(session)

    async def find_session_by_payment_intent(self, payment_intent_id: str) -> dict[str, Any] | None:
        try:
            sessions = await self.client.checkout.sessions.list_async(
                params={"payment_intent": payment_intent_id, "limit": 1}
            )
        except stripe.StripeError as exc:
            raise self._wrap("list_sessions", exc) from exc
        rows = list(sessions.data or [])
        return _to_plain(rows[0]) if rows else None

    async def create_refund(self, payment_intent_id: str, reason: str = "requested_by_customer") -> dict[str, Any]:
        try:
            refund = await self.client.refunds.create_async(
                params={"payment_intent": payment_intent_id, "reason": reason}
            )
        except stripe.StripeError as exc:
            raise self._wrap("create_refund", exc) from exc
        return _to_plain(refund)

    def construct_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify the Stripe-Signature header against the raw body, then parse it.

        Nothing in the body is trusted before the signature check passes.
        """
        if not self.webhook_secret:
            raise SignatureVerificationError("webhook_secret_not_configured")
        if not signature:
            raise SignatureVerificationError("missing_signature")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                self.signature_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationError(f"signature_mismatch:{exc}") from exc
        except UnicodeDecodeError as exc:
            raise SignatureVerificationError("invalid_payload_encoding") from exc
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise SignatureVerificationError(f"invalid_payload:{exc}") from exc
        if not isinstance(event, dict):
            raise SignatureVerificationError("invalid_payload")
        return event
