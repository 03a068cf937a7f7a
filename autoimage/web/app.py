from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.sessions import SessionMiddleware

from autoimage.config import Settings, get_settings
from autoimage.db.models import User
from autoimage.db.session import create_sessionmaker
from autoimage.services.auth import AuthService
from autoimage.services.credits import ENTRY_ADMIN_ADJUSTMENT, CreditsService
from autoimage.services.errors import BillingError, SignatureVerificationError
from autoimage.services.payments import PaymentsService
from autoimage.services.promos import PromoService
from autoimage.services.stripe_client import StripeClient, StripeClientError
from autoimage.services.webhooks import WebhookEventProcessor


logger = logging.getLogger(__name__)

MAX_PROMO_BATCH = 500


def _is_logged_in(request: Request) -> bool:
    return bool(request.session.get("user_id"))


def _session_user_id(request: Request) -> int:
    return int(request.session["user_id"])


def _is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_logged_in"))


def _admin_login(request: Request) -> str:
    return str(request.session.get("admin_login") or "admin")


def _parse_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _parse_datetime(value: Any) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except Exception:
        return {}
    return data if isinstance(data, dict) else {}


def _error_response(exc: BillingError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def _stripe_error_response(error: str, exc: StripeClientError) -> JSONResponse:
    return JSONResponse({"error": error, "detail": str(exc)}, status_code=502)


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "unauthorized"}, status_code=401)


def create_app(
    settings: Settings | None = None,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    stripe_client: StripeClient | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Autoimage Billing")
    app.add_middleware(SessionMiddleware, secret_key=settings.user_web_secret)
    app.state.settings = settings
    app.state.sessionmaker = sessionmaker or create_sessionmaker()
    app.state.stripe = stripe_client or StripeClient(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
    )
    app.state.webhooks = WebhookEventProcessor(app.state.sessionmaker, app.state.stripe, settings)

    @app.get("/health")
    async def health():
        try:
            async with app.state.sessionmaker() as session:
                await session.execute(text("SELECT 1"))
        except Exception as exc:
            logger.exception("health_check_failed")
            return JSONResponse({"status": "unhealthy", "error": str(exc)}, status_code=503)
        return {"status": "healthy"}

    @app.post("/api/payments/stripe/webhook")
    async def api_stripe_webhook(request: Request):
        raw_body = await request.body()
        signature = (request.headers.get("stripe-signature") or "").strip()
        try:
            event = app.state.stripe.construct_event(raw_body, signature)
        except SignatureVerificationError as exc:
            logger.warning("stripe_webhook_rejected", extra={"reason": exc.message})
            return JSONResponse({"received": False, "error": exc.code}, status_code=400)

        event_id = event.get("id")
        event_type = event.get("type")
        try:
            result = await app.state.webhooks.process(event)
        except Exception:
            # Non-2xx makes Stripe redeliver the event later.
            logger.exception("stripe_webhook_failed", extra={"event_id": event_id, "event_type": event_type})
            return JSONResponse(
                {"received": False, "eventId": event_id, "eventType": event_type, "error": "processing_failed"},
                status_code=500,
            )
        return {"received": True, "eventId": event_id, "eventType": event_type, **result.to_dict()}

    @app.post("/webhook")
    async def stripe_webhook_alias(request: Request):
        return await api_stripe_webhook(request)

    @app.post("/auth/register")
    async def auth_register(request: Request):
        data = await _json_body(request)
        async with app.state.sessionmaker() as session:
            try:
                user = await AuthService(session, settings).register(
                    str(data.get("email") or ""), str(data.get("password") or "")
                )
            except BillingError as exc:
                return _error_response(exc)
            await session.commit()

        request.session["user_id"] = user.id
        request.session["username"] = user.username
        return {"ok": True, "user_id": user.id, "balance": user.balance_credits}

    @app.post("/auth/login")
    async def auth_login(request: Request):
        data = await _json_body(request)
        async with app.state.sessionmaker() as session:
            try:
                user = await AuthService(session, settings).authenticate(
                    str(data.get("email") or ""), str(data.get("password") or "")
                )
            except BillingError as exc:
                return _error_response(exc)

        request.session["user_id"] = user.id
        request.session["username"] = user.username
        return {"ok": True, "user_id": user.id}

    @app.get("/auth/logout")
    async def auth_logout(request: Request):
        request.session.pop("user_id", None)
        request.session.pop("username", None)
        return {"ok": True}

    @app.get("/api/me")
    async def api_me(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            user = await CreditsService(session, settings).get_user(_session_user_id(request))
            if not user:
                return JSONResponse({"error": "user_not_found"}, status_code=404)
            redemptions = await PromoService(session, settings).user_redemptions(user.id)
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "balance": user.balance_credits,
            "promo_redemptions": [
                {"code": item.promo_code, "credits": item.credits, "created_at": item.created_at.isoformat()}
                for item in redemptions
            ],
        }

    @app.get("/api/payments/packages")
    async def api_payment_packages():
        async with app.state.sessionmaker() as session:
            packages = await PaymentsService(session, settings=settings).list_packages()
        return {
            "packages": [
                {
                    "id": package.id,
                    "title": package.title,
                    "credits": package.credits,
                    "price": package.price,
                    "currency": package.currency,
                }
                for package in packages
            ]
        }

    @app.post("/api/payments/checkout")
    async def api_create_checkout(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        data = await _json_body(request)
        package_id = _parse_int(data.get("package_id"))
        if package_id is None:
            return JSONResponse({"error": "invalid_package_id"}, status_code=400)

        async with app.state.sessionmaker() as session:
            payments = PaymentsService(session, app.state.stripe, settings)
            try:
                checkout = await payments.create_checkout_session(_session_user_id(request), package_id)
            except BillingError as exc:
                return _error_response(exc)
            except StripeClientError as exc:
                return _stripe_error_response("checkout_create_failed", exc)
            await session.commit()

        return {
            "ok": True,
            "session_id": checkout.session_id,
            "url": checkout.url,
            "credits": checkout.package.credits,
            "amount": checkout.package.price,
            "currency": checkout.payment.currency,
        }

    @app.post("/api/payments/verify")
    async def api_verify_payment(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        data = await _json_body(request)
        session_id = str(data.get("session_id") or "").strip()
        if not session_id:
            return JSONResponse({"error": "invalid_session_id"}, status_code=400)

        async with app.state.sessionmaker() as session:
            payment = await PaymentsService(session, settings=settings).get_by_session_id(session_id)
            if not payment or payment.user_id != _session_user_id(request):
                return JSONResponse({"error": "payment_not_found"}, status_code=404)

        try:
            result = await app.state.webhooks.verify_session(session_id)
        except StripeClientError as exc:
            return _stripe_error_response("payment_verify_failed", exc)
        except BillingError as exc:
            return _error_response(exc)

        async with app.state.sessionmaker() as session:
            payment = await PaymentsService(session, settings=settings).get_by_session_id(session_id)
            balance = await CreditsService(session, settings).get_balance(payment.user_id)
        return {"ok": True, "status": payment.status, "credits": payment.credits, **result.to_dict(), "balance": balance}

    @app.get("/api/credits/balance")
    async def api_credit_balance(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                balance = await CreditsService(session, settings).get_balance(_session_user_id(request))
            except BillingError as exc:
                return _error_response(exc)
        return {"balance": balance}

    @app.post("/api/redeem")
    async def api_redeem(request: Request):
        if not _is_logged_in(request):
            return _unauthorized()
        data = await _json_body(request)
        code = str(data.get("code") or "").strip()
        if not code:
            return JSONResponse({"error": "invalid_code"}, status_code=400)

        async with app.state.sessionmaker() as session:
            user = await session.get(User, _session_user_id(request))
            if not user:
                return JSONResponse({"error": "user_not_found"}, status_code=404)
            try:
                status, credit_result = await PromoService(session, settings).redeem(user, code)
            except BillingError as exc:
                return _error_response(exc)
            if status != "ok":
                return JSONResponse({"error": f"promo_{status}"}, status_code=400)
            await session.commit()
        return {"ok": True, "credits_added": credit_result.entry.amount, "balance": credit_result.balance}

    @app.post("/admin/login")
    async def admin_login(request: Request):
        if not settings.admin_web_password:
            return JSONResponse({"error": "admin_password_not_configured"}, status_code=503)
        data = await _json_body(request)
        username = str(data.get("username") or "")
        password = str(data.get("password") or "")
        admin_ok = secrets.compare_digest(username, settings.admin_web_username) and secrets.compare_digest(
            password, settings.admin_web_password
        )
        if not admin_ok:
            return JSONResponse({"error": "invalid_credentials"}, status_code=401)
        request.session["admin_logged_in"] = True
        request.session["admin_login"] = username
        return {"ok": True}

    @app.get("/admin/logout")
    async def admin_logout(request: Request):
        request.session.pop("admin_logged_in", None)
        request.session.pop("admin_login", None)
        return {"ok": True}

    @app.post("/admin/promo-codes")
    async def admin_promo_create(request: Request):
        if not _is_admin(request):
            return _unauthorized()
        data = await _json_body(request)
        credits = _parse_int(data.get("credits"))
        if credits is None or credits <= 0:
            return JSONResponse({"error": "invalid_credits"}, status_code=400)
        max_redemptions = None
        if data.get("max_redemptions") not in (None, ""):
            max_redemptions = _parse_int(data.get("max_redemptions"))
            if max_redemptions is None or max_redemptions <= 0:
                return JSONResponse({"error": "invalid_max_redemptions"}, status_code=400)
        expires_at = None
        if data.get("expires_at"):
            expires_at = _parse_datetime(data.get("expires_at"))
            if expires_at is None:
                return JSONResponse({"error": "invalid_expires_at"}, status_code=400)

        code = str(data.get("code") or "").strip()
        async with app.state.sessionmaker() as session:
            promos = PromoService(session, settings)
            try:
                if code:
                    created = [
                        await promos.create_code(
                            code,
                            credits,
                            _admin_login(request),
                            max_redemptions=max_redemptions,
                            expires_at=expires_at,
                            active=bool(data.get("active", True)),
                        )
                    ]
                else:
                    count = _parse_int(data.get("count"))
                    if count is None or not 1 <= count <= MAX_PROMO_BATCH:
                        return JSONResponse({"error": "invalid_count"}, status_code=400)
                    batch_id = str(data.get("batch_id") or "").strip() or secrets.token_hex(8)
                    created = await promos.create_batch(
                        count,
                        credits,
                        _admin_login(request),
                        batch_id,
                        max_redemptions=max_redemptions,
                        expires_at=expires_at,
                    )
            except BillingError as exc:
                return _error_response(exc)
            await session.commit()
        return {
            "ok": True,
            "codes": [promo.code for promo in created],
            "credits": credits,
            "max_redemptions": max_redemptions,
            "batch_id": created[0].batch_id,
        }

    @app.get("/admin/promo-codes/{code}")
    async def admin_promo_stats(request: Request, code: str):
        if not _is_admin(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                stats = await PromoService(session, settings).stats(code)
            except BillingError as exc:
                return _error_response(exc)
        return {
            "code": stats.code,
            "credits": stats.credits_amount,
            "active": stats.active,
            "total_redemptions": stats.total_redemptions,
            "max_redemptions": stats.max_redemptions,
            "redemption_rate": stats.redemption_rate,
            "expires_at": stats.expires_at.isoformat() if stats.expires_at else None,
        }

    @app.post("/admin/users/{user_id}/credits/add")
    async def admin_user_credits_add(request: Request, user_id: int):
        if not _is_admin(request):
            return _unauthorized()
        data = await _json_body(request)
        amount = _parse_int(data.get("amount"))
        if amount is None or amount <= 0:
            return JSONResponse({"error": "invalid_amount"}, status_code=400)
        reason = str(data.get("reason") or "").strip() or f"Admin adjustment - {amount} credits"

        async with app.state.sessionmaker() as session:
            if not await session.get(User, user_id):
                return JSONResponse({"error": "user_not_found"}, status_code=404)
            try:
                result = await CreditsService(session, settings).add_credits(
                    user_id,
                    amount,
                    ENTRY_ADMIN_ADJUSTMENT,
                    reason,
                    {"source": "admin_web", "action": "add", "admin": _admin_login(request)},
                )
            except BillingError as exc:
                return _error_response(exc)
            await session.commit()
        return {"ok": True, "balance": result.balance, "entry_id": result.entry.id}

    @app.post("/admin/users/{user_id}/credits/subtract")
    async def admin_user_credits_subtract(request: Request, user_id: int):
        if not _is_admin(request):
            return _unauthorized()
        data = await _json_body(request)
        amount = _parse_int(data.get("amount"))
        if amount is None or amount <= 0:
            return JSONResponse({"error": "invalid_amount"}, status_code=400)
        reason = str(data.get("reason") or "").strip() or f"Admin adjustment - {amount} credits"

        async with app.state.sessionmaker() as session:
            if not await session.get(User, user_id):
                return JSONResponse({"error": "user_not_found"}, status_code=404)
            try:
                result = await CreditsService(session, settings).deduct_credits(
                    user_id,
                    amount,
                    reason,
                    {"source": "admin_web", "action": "subtract", "admin": _admin_login(request)},
                    entry_type=ENTRY_ADMIN_ADJUSTMENT,
                )
            except BillingError as exc:
                return _error_response(exc)
            await session.commit()
        return {"ok": True, "balance": result.balance, "entry_id": result.entry.id}

    @app.post("/admin/users/{user_id}/credits/reconcile")
    async def admin_user_credits_reconcile(request: Request, user_id: int):
        if not _is_admin(request):
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            try:
                result = await CreditsService(session, settings).reconcile_balance(user_id)
            except BillingError as exc:
                return _error_response(exc)
            await session.commit()
        return {
            "ok": True,
            "previous_balance": result.previous_balance,
            "new_balance": result.new_balance,
            "adjustment": result.adjustment,
        }

    @app.post("/admin/payments/{session_id}/refund")
    async def admin_payment_refund(request: Request, session_id: str):
        if not _is_admin(request):
            return _unauthorized()
        data = await _json_body(request)
        reason = str(data.get("reason") or "").strip() or "Customer request"

        async with app.state.sessionmaker() as session:
            payments = PaymentsService(session, app.state.stripe, settings)
            try:
                result = await payments.refund_payment(session_id, reason)
            except BillingError as exc:
                return _error_response(exc)
            except StripeClientError as exc:
                return _stripe_error_response("stripe_refund_failed", exc)
            await session.commit()
        logger.info("admin_refund", extra={"session_id": session_id, "admin": _admin_login(request)})
        return {
            "ok": True,
            "status": result.payment.status,
            "credits_removed": -result.entry.amount,
            "balance": result.balance,
            "provider_refund_id": result.provider_refund_id,
        }

    @app.post("/admin/payments/{session_id}/verify")
    async def admin_payment_verify(request: Request, session_id: str):
        if not _is_admin(request):
            return _unauthorized()
        try:
            result = await app.state.webhooks.verify_session(session_id)
        except StripeClientError as exc:
            return _stripe_error_response("payment_verify_failed", exc)
        except BillingError as exc:
            return _error_response(exc)
        return {"ok": True, **result.to_dict()}

    return app
