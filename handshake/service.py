"""Deal lifecycle operations.

DealService is the single gate through which every deal mutation passes,
whether it comes from a party over HTTP, a processor webhook or the
scheduled sweep. Each operation is a read-validate-write cycle inside one
store transaction; the status write is compare-and-swap on the status
that was read, and the cycle is retried a bounded number of times when
the swap misses.

Settlement runs after the status change commits. Processor failures are
captured per movement in the ledger and never undo the transition.
"""

import logging
import re
import sqlite3
import time
from dataclasses import dataclass, field

from handshake.due_dates import (
    build_request, check_can_approve, check_can_request, extended_date, is_past_due,
)
from handshake.errors import (
    AlreadyExists, ConcurrentModification, DealError, FailedPrecondition, InvalidArgument, NotFound,
    PermissionDenied, Unauthenticated,
)
from handshake.fees import (
    Leg, build_fee_breakdown, calculate_deal_fees, check_legs_match_type, validate_leg,
)
from handshake.funding import is_fully_funded, outstanding
from handshake.invites import Invite, check_acceptable, generate_token, invite_expiry
from handshake.machine import next_status, transition
from handshake.payments import PaymentBackend, StubBackend
from handshake.protocol import (
    CONFIRMED_HOLD_OUTCOME, MAX_ACCOUNT_ID_LENGTH, MAX_DESCRIPTION_LENGTH, MAX_REASON_LENGTH, SYSTEM_ACTOR,
    TERMINAL_STATUSES, TRANSITION_RETRIES, DealEvent, DealStatus, HoldOutcome, Outcome, Party, PaymentPurpose,
    PaymentStatus,
)
from handshake.records import Deal, Payment
from handshake.settlement import (
    SettlementManager, parse_hold_outcome, plan_cancellation, plan_completion,
)
from handshake.store import DealStore, new_id

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Purposes whose amount is entirely fee revenue
_FEE_PURPOSES = {PaymentPurpose.SETUP_FEE, PaymentPurpose.EXTENSION_FEE}


@dataclass(frozen=True)
class Principal:
    """An authenticated caller. Identity comes from the transport, never from the request body."""
    id: str
    email: str = ""
    is_admin: bool = False


@dataclass
class SweepReport:
    processed: int = 0
    overdue_unfunded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "overdue_unfunded": self.overdue_unfunded,
            "failed": self.failed,
        }


def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        raise InvalidArgument(f"Unknown {label}: {value!r}")


def _clean_text(value, label: str, limit: int = MAX_REASON_LENGTH, required: bool = False) -> str:
    if value is None:
        value = ""
    if not isinstance(value, str):
        raise InvalidArgument(f"{label} must be a string")
    text = value.strip()
    if required and not text:
        raise InvalidArgument(f"{label} is required")
    if len(text) > limit:
        raise InvalidArgument(f"{label} longer than {limit} characters")
    return text


def _check_minor_units(value, label: str, allow_zero: bool = False) -> int:
    """Whole minor units, > 0 (or >= 0). Processor amounts are not bound by deal minimums."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{label} must be a whole number of minor units")
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidArgument(f"{label} must be positive")
    return value


def _coerce_leg(leg, label: str) -> Leg:
    if isinstance(leg, Leg):
        return validate_leg(leg, label)
    if isinstance(leg, dict):
        return validate_leg(Leg.from_dict(leg), label)
    raise InvalidArgument(f"{label} must be an object")


class DealService:
    # Deals fetched per query by the past-due sweep
    sweep_page_size = 500

    def __init__(self, store: DealStore, payment_backend: PaymentBackend | None = None, clock=time.time):
        self.store = store
        self.clock = clock
        self.settlement = SettlementManager(store, payment_backend or StubBackend(), clock=clock)

    # --- Plumbing ---

    @staticmethod
    def _require_principal(principal: Principal | None) -> Principal:
        if principal is None or not principal.id:
            raise Unauthenticated("Authentication required")
        return principal

    @staticmethod
    def _require_admin(principal: Principal | None) -> Principal:
        principal = DealService._require_principal(principal)
        if not principal.is_admin:
            raise PermissionDenied("Admin access required")
        return principal

    @staticmethod
    def _authorize(deal: Deal, principal: Principal, allow_admin: bool = False) -> None:
        if deal.is_party(principal.id):
            return
        if allow_admin and principal.is_admin:
            return
        raise PermissionDenied("Not a party to this deal")

    def _load(self, deal_id: str) -> Deal:
        deal = self.store.get_deal(deal_id)
        if deal is None:
            raise NotFound("Deal not found")
        return deal

    def _mutate(self, deal_id: str, apply):
        """Run ``apply(deal)`` in a transaction, re-reading and retrying when a swap misses."""
        for attempt in range(1, TRANSITION_RETRIES + 1):
            try:
                with self.store.transaction():
                    return apply(self._load(deal_id))
            except ConcurrentModification:
                if attempt == TRANSITION_RETRIES:
                    raise
                logger.info("deal %s modified concurrently, retrying (%d/%d)",
                            deal_id, attempt, TRANSITION_RETRIES)

    def _audit(self, deal_id: str, actor_id: str, event_type: str, details: dict | None = None) -> None:
        self.store.append_audit(deal_id, actor_id, event_type, details, self.clock())

    def _transition(self, deal: Deal, event: DealEvent, actor_id: str, audit_event: str,
                    details: dict | None = None, past_due: bool = False, **updates) -> DealStatus:
        """Apply ``event`` to ``deal`` in the store and mirror the change onto ``deal``."""
        now = self.clock()
        previous = deal.status
        new = transition(previous, event, past_due)
        self.store.update_deal(deal.id, previous, status=new, updated_at=now, **updates)
        self._audit(deal.id, actor_id, audit_event,
                    {"from": previous.value, "to": new.value, **(details or {})})
        logger.info("deal %s: %s -> %s (%s by %s)", deal.id, previous.value, new.value, event.value, actor_id)
        deal.status = new
        deal.updated_at = now
        for name, value in updates.items():
            setattr(deal, name, value)
        return new

    def _update(self, deal: Deal, actor_id: str, audit_event: str, details: dict | None = None,
                **updates) -> None:
        """Write non-status fields, still guarded by the status that was read."""
        now = self.clock()
        self.store.update_deal(deal.id, deal.status, updated_at=now, **updates)
        self._audit(deal.id, actor_id, audit_event, details)
        deal.updated_at = now
        for name, value in updates.items():
            setattr(deal, name, value)

    def _maybe_activate(self, deal: Deal, actor_id: str) -> bool:
        if deal.status is not DealStatus.AWAITING_FUNDING:
            return False
        if not is_fully_funded(deal, self.store.list_payments(deal.id)):
            return False
        self._transition(deal, DealEvent.FUND, actor_id, "DEAL_ACTIVATED", activated_at=self.clock())
        return True

    # --- Creation and joining ---

    def create_deal(self, principal: Principal, leg_a, leg_b, deal_type, deal_date,
                    participant_email: str, title: str = "") -> dict:
        """Create a deal and its invite. The deal starts out ``invited``."""
        principal = self._require_principal(principal)
        leg_a = _coerce_leg(leg_a, "legA")
        leg_b = _coerce_leg(leg_b, "legB")
        normalized = check_legs_match_type(deal_type, leg_a, leg_b)

        if isinstance(deal_date, bool) or not isinstance(deal_date, (int, float)):
            raise InvalidArgument("dealDate must be a timestamp")
        now = self.clock()
        if deal_date <= now:
            raise InvalidArgument("dealDate must be in the future")

        email = _clean_text(participant_email, "participantEmail", required=True).lower()
        if not EMAIL_RE.match(email):
            raise InvalidArgument("participantEmail is not a valid email address")
        if principal.email and email == principal.email.strip().lower():
            raise InvalidArgument("Cannot invite yourself")
        title = _clean_text(title, "title", limit=MAX_DESCRIPTION_LENGTH)

        fees = calculate_deal_fees(normalized, leg_a.declared_value, leg_b.declared_value)
        breakdown = build_fee_breakdown(leg_a, leg_b, fees)
        token = generate_token()
        expires_at = invite_expiry(now)

        deal = Deal(
            id=new_id(),
            status=transition(DealStatus.DRAFT, DealEvent.INVITE),
            creator_id=principal.id,
            participant_id=None,
            participant_email=email,
            deal_type=normalized,
            leg_a=leg_a,
            leg_b=leg_b,
            deal_date=float(deal_date),
            fee_breakdown=breakdown,
            fairness_hold_a=fees.fairness_hold_a,
            fairness_hold_b=fees.fairness_hold_b,
            created_at=now,
            updated_at=now,
            title=title,
            invite_token=token,
            invite_expires_at=expires_at,
        )
        with self.store.transaction():
            self.store.insert_deal(deal)
            self.store.insert_invite(Invite(token=token, deal_id=deal.id, creator_id=principal.id,
                                            expires_at=expires_at))
            self._audit(deal.id, principal.id, "DEAL_CREATED", {
                "deal_type": normalized.value,
                "fee_breakdown": breakdown.to_dict(),
                "fairness_hold_a": fees.fairness_hold_a,
                "fairness_hold_b": fees.fairness_hold_b,
            })
        logger.info("deal %s created by %s (%s, total charge %d)",
                    deal.id, principal.id, normalized.value, breakdown.total_charge)
        return {
            "deal_id": deal.id,
            "status": deal.status.value,
            "invite_token": token,
            "invite_expires_at": expires_at,
            "fee_breakdown": breakdown.to_dict(),
            "fairness_hold_a": fees.fairness_hold_a,
            "fairness_hold_b": fees.fairness_hold_b,
        }

    def reissue_invite(self, deal_id: str, principal: Principal) -> dict:
        """Replace an unconsumed invite with a fresh token and expiry."""
        principal = self._require_principal(principal)

        def apply(deal: Deal) -> dict:
            if deal.creator_id != principal.id:
                raise PermissionDenied("Only the creator can reissue the invite")
            if deal.status is not DealStatus.INVITED:
                raise FailedPrecondition("Invite can only be reissued while the deal is invited")
            now = self.clock()
            token = generate_token()
            expires_at = invite_expiry(now)
            self.store.delete_open_invites(deal.id)
            self.store.insert_invite(Invite(token=token, deal_id=deal.id, creator_id=deal.creator_id,
                                            expires_at=expires_at))
            self._update(deal, principal.id, "INVITE_REISSUED", {"expires_at": expires_at},
                         invite_token=token, invite_expires_at=expires_at)
            return {"deal_id": deal.id, "invite_token": token, "invite_expires_at": expires_at}

        return self._mutate(deal_id, apply)

    def accept_invite(self, principal: Principal, token: str) -> dict:
        """Join a deal as its participant. The token is single-use."""
        principal = self._require_principal(principal)
        if not token or not isinstance(token, str):
            raise InvalidArgument("Invite token required")
        invite = self.store.get_invite(token)
        if invite is None:
            raise NotFound("Invite not found")

        def apply(deal: Deal) -> dict:
            # Re-read under the transaction so a racing accept sees the consumed token
            current = self.store.get_invite(token)
            if current is None:
                raise NotFound("Invite not found")
            now = self.clock()
            check_acceptable(current, principal.id, now)
            if not self.store.consume_invite(token, principal.id, now):
                raise AlreadyExists("Deal already has a participant")
            self._transition(deal, DealEvent.ACCEPT, principal.id, "INVITE_ACCEPTED",
                             {"participant_id": principal.id}, participant_id=principal.id)
            self._maybe_activate(deal, principal.id)
            return {"deal_id": deal.id, "status": deal.status.value}

        return self._mutate(invite.deal_id, apply)

    # --- Payments ---

    def record_payment_succeeded(self, deal_id: str, party, purpose, amount: int,
                                 principal_portion: int | None = None,
                                 payment_ref: str | None = None) -> dict:
        """Record a captured payment and activate the deal once it is fully funded.

        Idempotent on ``payment_ref``: a repeated delivery returns the payment
        already on file and changes nothing. A payment that lands after the
        deal was cancelled or completed has nowhere to go, so its principal
        portion is refunded straight away.
        """
        party = _parse_enum(Party, party, "party")
        purpose = _parse_enum(PaymentPurpose, purpose, "payment purpose")
        _check_minor_units(amount, "amount")
        if principal_portion is None:
            principal_portion = 0 if purpose in _FEE_PURPOSES else amount
        _check_minor_units(principal_portion, "principalPortion", allow_zero=True)
        if principal_portion > amount:
            raise InvalidArgument("principalPortion cannot exceed amount")

        if payment_ref:
            existing = self.store.get_payment_by_ref(payment_ref)
            if existing is not None:
                return self._replayed(existing, deal_id)

        def apply(deal: Deal):
            if party is Party.B and deal.participant_id is None:
                raise FailedPrecondition("Participant has not joined yet")
            now = self.clock()
            payment = self.store.insert_payment(Payment(
                id=new_id(),
                deal_id=deal.id,
                party=party,
                purpose=purpose,
                amount=amount,
                principal_portion=principal_portion,
                status=PaymentStatus.SUCCEEDED,
                created_at=now,
                updated_at=now,
                payment_ref=payment_ref,
            ))
            late = deal.status in TERMINAL_STATUSES
            self._audit(deal.id, deal.principal_for(party) or SYSTEM_ACTOR, "PAYMENT_COMPLETED", {
                "payment_id": payment.id,
                "party": party.value,
                "purpose": purpose.value,
                "amount": amount,
                "principal_portion": principal_portion,
                "after_close": late,
            })
            entries = []
            if late:
                logger.warning("deal %s: payment %s arrived after deal %s, refunding principal",
                               deal.id, payment_ref, deal.status.value)
                entries = self.settlement.record(deal.id, plan_cancellation(deal, [payment]))
            activated = self._maybe_activate(deal, SYSTEM_ACTOR)
            result = {
                "payment_id": payment.id,
                "deal_status": deal.status.value,
                "activated": activated,
                "duplicate": False,
            }
            return result, entries

        try:
            result, entries = self._mutate(deal_id, apply)
        except AlreadyExists:
            # Lost a race with a concurrent delivery of the same reference
            existing = self.store.get_payment_by_ref(payment_ref) if payment_ref else None
            if existing is None:
                raise
            return self._replayed(existing, deal_id)
        if entries:
            result["refund"] = self.settlement.execute(deal_id, entries).to_dict()
        return result

    def _replayed(self, payment: Payment, deal_id: str) -> dict:
        if payment.deal_id != deal_id:
            raise InvalidArgument(f"Payment {payment.payment_ref} belongs to another deal")
        deal = self._load(payment.deal_id)
        return {
            "payment_id": payment.id,
            "deal_status": deal.status.value,
            "activated": False,
            "duplicate": True,
        }

    def record_payment_failed(self, deal_id: str, party, purpose, amount: int,
                              payment_ref: str | None = None, reason: str = "") -> dict:
        """Record a declined payment. Never affects deal status."""
        party = _parse_enum(Party, party, "party")
        purpose = _parse_enum(PaymentPurpose, purpose, "payment purpose")
        _check_minor_units(amount, "amount")
        reason = _clean_text(reason, "reason")
        if payment_ref:
            existing = self.store.get_payment_by_ref(payment_ref)
            if existing is not None:
                return self._replayed(existing, deal_id)

        def apply(deal: Deal) -> dict:
            now = self.clock()
            payment = self.store.insert_payment(Payment(
                id=new_id(),
                deal_id=deal.id,
                party=party,
                purpose=purpose,
                amount=amount,
                principal_portion=0,
                status=PaymentStatus.FAILED,
                created_at=now,
                updated_at=now,
                payment_ref=payment_ref,
                failure_reason=reason or None,
            ))
            self._audit(deal.id, SYSTEM_ACTOR, "PAYMENT_FAILED", {
                "payment_id": payment.id,
                "party": party.value,
                "purpose": purpose.value,
                "amount": amount,
                "reason": reason,
            })
            logger.info("deal %s: %s payment from %s failed: %s", deal.id, purpose.value, party.value, reason)
            return {"payment_id": payment.id, "deal_status": deal.status.value,
                    "activated": False, "duplicate": False}

        return self._mutate(deal_id, apply)

    def record_payment_disputed(self, payment_ref: str, reason: str = "") -> dict:
        """A payer disputed a captured payment with their bank: freeze the deal if possible."""
        if not payment_ref:
            raise InvalidArgument("paymentRef required")
        reason = _clean_text(reason, "reason") or "payment disputed"
        payment = self.store.get_payment_by_ref(payment_ref)
        if payment is None:
            raise NotFound("Payment not found")

        def apply(deal: Deal) -> dict:
            self.store.set_payment_status(payment.id, PaymentStatus.DISPUTED, self.clock(), reason)
            self._audit(deal.id, SYSTEM_ACTOR, "PAYMENT_DISPUTED",
                        {"payment_id": payment.id, "reason": reason})
            frozen = False
            if next_status(deal.status, DealEvent.FREEZE) is not None:
                self.store.open_dispute(deal.id, SYSTEM_ACTOR, reason, self.clock())
                self._transition(deal, DealEvent.FREEZE, SYSTEM_ACTOR, "DEAL_FROZEN", {"reason": reason})
                frozen = True
            elif deal.status is not DealStatus.FROZEN:
                logger.warning("deal %s: payment %s disputed while %s; not frozen",
                               deal.id, payment_ref, deal.status.value)
            return {"deal_id": deal.id, "deal_status": deal.status.value, "frozen": frozen}

        return self._mutate(payment.deal_id, apply)

    # --- Outcomes ---

    def propose_outcome(self, deal_id: str, principal: Principal, outcome) -> dict:
        principal = self._require_principal(principal)
        outcome = _parse_enum(Outcome, outcome, "outcome")

        def apply(deal: Deal) -> dict:
            self._authorize(deal, principal)
            self._transition(deal, DealEvent.PROPOSE_OUTCOME, principal.id, "OUTCOME_PROPOSED",
                             {"outcome": outcome.value},
                             proposed_outcome=outcome, proposed_by=principal.id)
            return {"deal_id": deal.id, "status": deal.status.value, "proposed_outcome": outcome.value}

        return self._mutate(deal_id, apply)

    def reject_outcome(self, deal_id: str, principal: Principal) -> dict:
        principal = self._require_principal(principal)

        def apply(deal: Deal) -> dict:
            self._authorize(deal, principal)
            if deal.status is not DealStatus.OUTCOME_PROPOSED:
                raise FailedPrecondition("No outcome proposed")
            if deal.proposed_by == principal.id:
                raise InvalidArgument("Cannot reject your own proposal")
            rejected = deal.proposed_outcome
            self._transition(deal, DealEvent.REJECT_OUTCOME, principal.id, "OUTCOME_REJECTED",
                             {"outcome": rejected.value if rejected else None},
                             past_due=is_past_due(deal.deal_date, self.clock()),
                             proposed_outcome=None, proposed_by=None)
            return {"deal_id": deal.id, "status": deal.status.value}

        return self._mutate(deal_id, apply)

    def confirm_outcome(self, deal_id: str, principal: Principal) -> dict:
        """Confirm the other party's proposal. Completes the deal and settles it."""
        principal = self._require_principal(principal)

        def apply(deal: Deal):
            self._authorize(deal, principal)
            if deal.status is not DealStatus.OUTCOME_PROPOSED or deal.proposed_outcome is None:
                raise FailedPrecondition("No outcome proposed")
            if deal.proposed_by == principal.id:
                raise InvalidArgument("Cannot confirm your own proposal")
            outcome = deal.proposed_outcome
            hold_outcome = CONFIRMED_HOLD_OUTCOME[outcome]
            self._transition(deal, DealEvent.CONFIRM_OUTCOME, principal.id, "OUTCOME_CONFIRMED",
                             {"outcome": outcome.value, "proposed_by": deal.proposed_by})
            return self._complete(deal, principal.id, outcome, hold_outcome)

        deal, entries, split = self._mutate(deal_id, apply)
        settlement = self.settlement.execute(deal.id, entries, split)
        return {"deal_id": deal.id, "status": deal.status.value, "settlement": settlement.to_dict()}

    def force_complete(self, deal_id: str, principal: Principal, outcome,
                       hold_outcome=HoldOutcome.BOTH_COMPLETED) -> dict:
        """Admin resolution: complete the deal with an explicit fairness hold outcome."""
        principal = self._require_admin(principal)
        outcome = _parse_enum(Outcome, outcome, "outcome")
        hold_outcome = parse_hold_outcome(hold_outcome)

        def apply(deal: Deal):
            if self.store.resolve_open_dispute(deal.id, principal.id, self.clock()):
                logger.info("deal %s: dispute resolved by %s", deal.id, principal.id)
            return self._complete(deal, principal.id, outcome, hold_outcome)

        deal, entries, split = self._mutate(deal_id, apply)
        settlement = self.settlement.execute(deal.id, entries, split)
        return {"deal_id": deal.id, "status": deal.status.value, "settlement": settlement.to_dict()}

    def _complete(self, deal: Deal, actor_id: str, outcome: Outcome, hold_outcome: HoldOutcome):
        movements, split = plan_completion(deal, self.store.list_payments(deal.id), outcome, hold_outcome)
        self._transition(deal, DealEvent.COMPLETE, actor_id, "DEAL_COMPLETED",
                         {"outcome": outcome.value, "hold_outcome": hold_outcome.value,
                          "holds": split.to_dict()},
                         final_outcome=outcome, hold_outcome=hold_outcome, completed_at=self.clock(),
                         proposed_outcome=None, proposed_by=None)
        entries = self.settlement.record(deal.id, movements)
        return deal, entries, split

    # --- Disputes ---

    def freeze_deal(self, deal_id: str, principal: Principal, reason: str = "") -> dict:
        """Open a dispute and freeze the deal."""
        principal = self._require_principal(principal)
        reason = _clean_text(reason, "reason", required=True)

        def apply(deal: Deal) -> dict:
            self._authorize(deal, principal)
            if deal.status is DealStatus.FROZEN:
                raise AlreadyExists("Deal is already frozen")
            target = transition(deal.status, DealEvent.FREEZE)
            dispute = self.store.open_dispute(deal.id, principal.id, reason, self.clock())
            self._transition(deal, DealEvent.FREEZE, principal.id, "DEAL_FROZEN",
                             {"reason": reason, "dispute_id": dispute.id})
            return {"deal_id": deal.id, "status": target.value, "dispute_id": dispute.id}

        return self._mutate(deal_id, apply)

    def unfreeze_deal(self, deal_id: str, principal: Principal) -> dict:
        """Resolve the open dispute and resume the deal."""
        principal = self._require_principal(principal)

        def apply(deal: Deal) -> dict:
            self._authorize(deal, principal, allow_admin=True)
            if deal.status is not DealStatus.FROZEN:
                raise FailedPrecondition("Deal is not frozen")
            self.store.resolve_open_dispute(deal.id, principal.id, self.clock())
            self._transition(deal, DealEvent.UNFREEZE, principal.id, "DEAL_UNFROZEN",
                             past_due=is_past_due(deal.deal_date, self.clock()),
                             proposed_outcome=None, proposed_by=None)
            return {"deal_id": deal.id, "status": deal.status.value}

        return self._mutate(deal_id, apply)

    # --- Cancellation ---

    def cancel_deal(self, deal_id: str, principal: Principal, reason: str | None = None) -> dict:
        """Cancel a deal that is not yet active and refund the principal already paid in."""
        principal = self._require_principal(principal)
        reason = _clean_text(reason, "reason") or None

        def apply(deal: Deal):
            self._authorize(deal, principal, allow_admin=True)
            if next_status(deal.status, DealEvent.CANCEL) is None:
                if deal.status in TERMINAL_STATUSES:
                    raise FailedPrecondition(f"Deal is already {deal.status.value}")
                raise FailedPrecondition("Cannot cancel this deal: both parties have already funded it")
            movements = plan_cancellation(deal, self.store.list_payments(deal.id))
            self.store.delete_open_invites(deal.id)
            now = self.clock()
            self._transition(deal, DealEvent.CANCEL, principal.id, "DEAL_CANCELLED",
                             {"reason": reason, "refunds": len(movements)},
                             cancelled_at=now, cancelled_by=principal.id, cancel_reason=reason,
                             invite_token=None, invite_expires_at=None)
            return deal, self.settlement.record(deal.id, movements)

        deal, entries = self._mutate(deal_id, apply)
        settlement = self.settlement.execute(deal.id, entries)
        return {"deal_id": deal.id, "status": deal.status.value, "settlement": settlement.to_dict()}

    # --- Extensions ---

    def request_extension(self, deal_id: str, principal: Principal, extension_type) -> dict:
        principal = self._require_principal(principal)

        def apply(deal: Deal) -> dict:
            self._authorize(deal, principal)
            check_can_request(deal.status, deal.extension_requested)
            request = build_request(principal.id, extension_type)
            self._update(deal, principal.id, "EXTENSION_REQUESTED",
                         {"extension_type": request.extension_type.value, "fee": request.fee},
                         extension_requested=True, extension_requested_by=principal.id,
                         extension_type=request.extension_type, extension_fee=request.fee)
            return {
                "deal_id": deal.id,
                "extension_type": request.extension_type.value,
                "extension_fee": request.fee,
                "days": request.days,
            }

        return self._mutate(deal_id, apply)

    def approve_extension(self, deal_id: str, principal: Principal) -> dict:
        principal = self._require_principal(principal)

        def apply(deal: Deal) -> dict:
            self._authorize(deal, principal)
            request = deal.extension_request()
            check_can_approve(request, principal.id)
            new_date = extended_date(deal.deal_date, request.extension_type)
            self._transition(deal, DealEvent.EXTEND, principal.id, "EXTENSION_APPROVED",
                             {"extension_type": request.extension_type.value, "fee": request.fee,
                              "deal_date": new_date},
                             deal_date=new_date,
                             extension_fees_total=deal.extension_fees_total + request.fee,
                             extension_requested=False, extension_requested_by=None,
                             extension_type=None, extension_fee=0)
            return {"deal_id": deal.id, "status": deal.status.value, "deal_date": new_date,
                    "extension_fees_total": deal.extension_fees_total}

        return self._mutate(deal_id, apply)

    # --- Scheduled work ---

    def sweep_past_due(self, now: float | None = None) -> SweepReport:
        """Move every active deal whose date has elapsed to past_due.

        Each deal is handled on its own; one failure does not stop the rest.
        Unfunded deals past their date are reported but keep their status.
        Active and unfunded deals are scanned separately so a backlog of one
        never hides the other.
        """
        now = self.clock() if now is None else now
        report = SweepReport()
        for candidate in self.store.iter_due(DealStatus.ACTIVE, now, page_size=self.sweep_page_size):
            try:
                if self._mark_past_due(candidate.id, now):
                    report.processed += 1
            except (DealError, sqlite3.Error):
                logger.exception("sweep: deal %s could not be marked past due", candidate.id)
                report.failed.append(candidate.id)
        report.overdue_unfunded = [
            d.id for d in self.store.iter_due(DealStatus.AWAITING_FUNDING, now, page_size=self.sweep_page_size)
        ]
        if report.overdue_unfunded:
            logger.info("sweep: %d unfunded deals past their date", len(report.overdue_unfunded))
            logger.debug("sweep: unfunded past date: %s", ", ".join(report.overdue_unfunded))
        logger.info("sweep: %d marked past due, %d failed", report.processed, len(report.failed))
        return report

    def _mark_past_due(self, deal_id: str, now: float) -> bool:
        def apply(deal: Deal) -> bool:
            # Someone else may have moved it since the scan
            if deal.status is not DealStatus.ACTIVE or not is_past_due(deal.deal_date, now):
                return False
            self._transition(deal, DealEvent.PASTDUE, SYSTEM_ACTOR, "DEAL_PAST_DUE",
                             {"deal_date": deal.deal_date})
            return True

        for attempt in range(1, TRANSITION_RETRIES + 1):
            try:
                return self._mutate(deal_id, apply)
            except sqlite3.OperationalError:
                if attempt == TRANSITION_RETRIES:
                    raise
                logger.warning("sweep: deal %s busy, retrying (%d/%d)", deal_id, attempt, TRANSITION_RETRIES)
        return False

    def retry_settlement(self, deal_id: str, principal: Principal) -> dict:
        """Admin: re-run the failed or unfinished refunds and payouts of a deal."""
        principal = self._require_admin(principal)
        deal = self._load(deal_id)
        result = self.settlement.retry(deal.id)
        self._audit_standalone(deal.id, principal.id, "SETTLEMENT_RETRIED", {
            "movements": len(result.entries),
            "failed": len(result.failed),
        })
        return {"deal_id": deal.id, "settlement": result.to_dict()}

    def _audit_standalone(self, deal_id: str, actor_id: str, event_type: str, details: dict) -> None:
        with self.store.transaction():
            self._audit(deal_id, actor_id, event_type, details)

    # --- Payout accounts ---

    def set_payout_account(self, principal: Principal, account_id: str) -> dict:
        """Register where the caller's payouts go. Replaces any earlier account."""
        principal = self._require_principal(principal)
        account_id = _clean_text(account_id, "accountId", limit=MAX_ACCOUNT_ID_LENGTH, required=True)
        self.store.set_payout_account(principal.id, account_id, self.clock())
        logger.info("payout account set for %s", principal.id)
        return {"principal_id": principal.id, "account_id": account_id}

    def get_payout_account(self, principal: Principal) -> dict:
        principal = self._require_principal(principal)
        return {"principal_id": principal.id, "account_id": self.store.get_payout_account(principal.id)}

    # --- Reads ---

    def get_deal(self, deal_id: str, principal: Principal) -> dict:
        principal = self._require_principal(principal)
        deal = self._load(deal_id)
        self._authorize(deal, principal, allow_admin=True)
        payments = self.store.list_payments(deal.id)
        d = deal.to_dict(viewer_id=principal.id)
        d["payments"] = [p.to_dict() for p in payments]
        d["outstanding"] = [
            {"party": party.value, "purpose": purpose.value, "amount": amount}
            for (party, purpose), amount in outstanding(deal, payments).items()
        ] if deal.status in (DealStatus.INVITED, DealStatus.AWAITING_FUNDING) else []
        dispute = self.store.get_open_dispute(deal.id)
        d["dispute"] = dispute.to_dict() if dispute else None
        d["settlement"] = [e.to_dict() for e in self.store.list_ledger(deal.id)]
        return d

    def list_deals(self, principal: Principal, status=None, limit: int = 50) -> list[dict]:
        principal = self._require_principal(principal)
        if status is not None and not isinstance(status, DealStatus):
            try:
                status = DealStatus(str(status).lower())
            except ValueError:
                raise InvalidArgument(f"Unknown status: {status!r}")
        limit = max(1, min(int(limit), 200))
        deals = self.store.list_deals(principal.id, status=status, limit=limit)
        return [deal.to_dict(viewer_id=principal.id) for deal in deals]

    def get_audit_log(self, deal_id: str, principal: Principal) -> list[dict]:
        principal = self._require_principal(principal)
        deal = self._load(deal_id)
        self._authorize(deal, principal, allow_admin=True)
        return [entry.to_dict() for entry in self.store.list_audit(deal.id)]
