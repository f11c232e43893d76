# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the handshake deal platform (FastAPI).

Endpoints for the deal lifecycle: create, join, fund (processor webhook),
propose/reject/confirm an outcome, freeze/unfreeze, cancel, extensions,
payout account registration and admin resolution.

Identity is established upstream: an authenticating proxy sets
X-Principal-Id (and optionally X-Principal-Email) on every request it
forwards. Admin rights come from the configured admin id list, never from
the request. Processor webhooks are authenticated with an HMAC-SHA256 of
the raw body under the shared webhook secret.
"""

import hashlib
import hmac
import json
import logging
import os

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from handshake.errors import DealError, InvalidArgument, PermissionDenied, Unauthenticated
from handshake.payments import PaymentBackend
from handshake.protocol import HoldOutcome
from handshake.service import DealService, Principal
from handshake.store import DealStore

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Handshake-Signature"


# --- Request/Response models ---

class CreateDealRequest(BaseModel):
    leg_a: dict
    leg_b: dict
    deal_type: str
    deal_date: float
    participant_email: str
    title: str = ""

class ProposeRequest(BaseModel):
    outcome: str

class FreezeRequest(BaseModel):
    reason: str

class CancelRequest(BaseModel):
    reason: str | None = None

class ExtensionRequestBody(BaseModel):
    extension_type: str = "standard"

class ForceCompleteRequest(BaseModel):
    outcome: str
    hold_outcome: str = HoldOutcome.BOTH_COMPLETED.value

class SweepRequest(BaseModel):
    now: float | None = None

class PayoutAccountRequest(BaseModel):
    account_id: str

class PaymentEvent(BaseModel):
    type: str  # "payment.succeeded", "payment.failed" or "payment.disputed"
    deal_id: str = ""
    party: str = ""
    purpose: str = ""
    amount: int = 0
    principal_portion: int | None = None
    payment_ref: str | None = None
    reason: str = ""


def sign_webhook(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 a processor adapter puts in the signature header."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _principal(request: Request) -> Principal | None:
    """Identity forwarded by the authenticating proxy. None when absent."""
    principal_id = request.headers.get("X-Principal-Id", "").strip()
    if not principal_id:
        return None
    return Principal(
        id=principal_id,
        email=request.headers.get("X-Principal-Email", "").strip(),
        is_admin=principal_id in request.app.state.admin_ids,
    )


# --- App factory ---

def create_app(
    service: DealService | None = None,
    payment_backend: PaymentBackend | None = None,
    admin_ids: set[str] | None = None,
    webhook_secret: str | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Without a service, one is built on an in-memory store. Admin ids and the
    webhook secret default to HANDSHAKE_ADMINS (comma-separated) and
    HANDSHAKE_WEBHOOK_SECRET.
    """

    app = FastAPI(title="Handshake", version="1.0")

    _service = service or DealService(DealStore(), payment_backend)
    if admin_ids is None:
        admin_ids = {a.strip() for a in os.environ.get("HANDSHAKE_ADMINS", "").split(",") if a.strip()}
    if webhook_secret is None:
        webhook_secret = os.environ.get("HANDSHAKE_WEBHOOK_SECRET", "")

    # Expose for testing
    app.state.service = _service
    app.state.admin_ids = set(admin_ids)
    app.state.webhook_secret = webhook_secret

    @app.exception_handler(DealError)
    async def deal_error_handler(request: Request, exc: DealError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # --- Deal lifecycle ---

    @app.post("/deals", status_code=201)
    def create_deal(req: CreateDealRequest, principal: Principal | None = Depends(_principal)):
        return _service.create_deal(
            principal, req.leg_a, req.leg_b, req.deal_type, req.deal_date,
            req.participant_email, title=req.title,
        )

    @app.get("/deals")
    def list_deals(status: str | None = None, limit: int = 50,
                   principal: Principal | None = Depends(_principal)):
        return {"deals": _service.list_deals(principal, status=status, limit=limit)}

    @app.get("/deals/{deal_id}")
    def get_deal(deal_id: str, principal: Principal | None = Depends(_principal)):
        return _service.get_deal(deal_id, principal)

    @app.get("/deals/{deal_id}/audit")
    def get_audit_log(deal_id: str, principal: Principal | None = Depends(_principal)):
        return {"deal_id": deal_id, "entries": _service.get_audit_log(deal_id, principal)}

    @app.post("/deals/{deal_id}/invite")
    def reissue_invite(deal_id: str, principal: Principal | None = Depends(_principal)):
        return _service.reissue_invite(deal_id, principal)

    @app.post("/invites/{token}/accept")
    def accept_invite(token: str, principal: Principal | None = Depends(_principal)):
        return _service.accept_invite(principal, token)

    @app.post("/deals/{deal_id}/propose")
    def propose_outcome(deal_id: str, req: ProposeRequest, principal: Principal | None = Depends(_principal)):
        return _service.propose_outcome(deal_id, principal, req.outcome)

    @app.post("/deals/{deal_id}/reject")
    def reject_outcome(deal_id: str, principal: Principal | None = Depends(_principal)):
        return _service.reject_outcome(deal_id, principal)

    @app.post("/deals/{deal_id}/confirm")
    def confirm_outcome(deal_id: str, principal: Principal | None = Depends(_principal)):
        return _service.confirm_outcome(deal_id, principal)

    @app.post("/deals/{deal_id}/freeze")
    def freeze_deal(deal_id: str, req: FreezeRequest, principal: Principal | None = Depends(_principal)):
        return _service.freeze_deal(deal_id, principal, req.reason)

    @app.post("/deals/{deal_id}/unfreeze")
    def unfreeze_deal(deal_id: str, principal: Principal | None = Depends(_principal)):
        return _service.unfreeze_deal(deal_id, principal)

    @app.post("/deals/{deal_id}/cancel")
    def cancel_deal(deal_id: str, req: CancelRequest | None = None,
                    principal: Principal | None = Depends(_principal)):
        return _service.cancel_deal(deal_id, principal, req.reason if req else None)

    @app.post("/deals/{deal_id}/extension")
    def request_extension(deal_id: str, req: ExtensionRequestBody,
                          principal: Principal | None = Depends(_principal)):
        return _service.request_extension(deal_id, principal, req.extension_type)

    @app.post("/deals/{deal_id}/extension/approve")
    def approve_extension(deal_id: str, principal: Principal | None = Depends(_principal)):
        return _service.approve_extension(deal_id, principal)

    # --- Payout accounts ---

    @app.post("/accounts/payout")
    def set_payout_account(req: PayoutAccountRequest, principal: Principal | None = Depends(_principal)):
        return _service.set_payout_account(principal, req.account_id)

    @app.get("/accounts/payout")
    def get_payout_account(principal: Principal | None = Depends(_principal)):
        return _service.get_payout_account(principal)

    # --- Admin ---

    @app.post("/admin/deals/{deal_id}/complete")
    def force_complete(deal_id: str, req: ForceCompleteRequest,
                       principal: Principal | None = Depends(_principal)):
        return _service.force_complete(deal_id, principal, req.outcome, req.hold_outcome)

    @app.post("/admin/deals/{deal_id}/settlement/retry")
    def retry_settlement(deal_id: str, principal: Principal | None = Depends(_principal)):
        return _service.retry_settlement(deal_id, principal)

    @app.post("/admin/sweep")
    def sweep(req: SweepRequest | None = None, principal: Principal | None = Depends(_principal)):
        if principal is None:
            raise Unauthenticated("Authentication required")
        if not principal.is_admin:
            raise PermissionDenied("Admin access required")
        return _service.sweep_past_due(req.now if req else None).to_dict()

    # --- Processor webhook ---

    @app.post("/webhooks/payments")
    async def payment_webhook(request: Request):
        if not app.state.webhook_secret:
            raise HTTPException(503, "Payment webhooks not configured")
        body = await request.body()
        expected = sign_webhook(app.state.webhook_secret, body)
        if not hmac.compare_digest(expected, request.headers.get(SIGNATURE_HEADER, "")):
            raise HTTPException(401, "Invalid webhook signature")
        try:
            event = PaymentEvent(**json.loads(body))
        except (ValueError, TypeError, ValidationError) as e:
            raise InvalidArgument(f"Malformed payment event: {e}")

        if event.type == "payment.succeeded":
            return _service.record_payment_succeeded(
                event.deal_id, event.party, event.purpose, event.amount,
                principal_portion=event.principal_portion, payment_ref=event.payment_ref,
            )
        if event.type == "payment.failed":
            return _service.record_payment_failed(
                event.deal_id, event.party, event.purpose, event.amount,
                payment_ref=event.payment_ref, reason=event.reason,
            )
        if event.type == "payment.disputed":
            return _service.record_payment_disputed(event.payment_ref, event.reason)
        logger.info("ignoring payment event of type %s", event.type)
        return {"ignored": event.type}

    return app
