"""Settlement: where the money goes when a deal ends.

Split into a pure part that plans movements from the deal and its
recorded payments, and a SettlementManager that executes the plan via a
PaymentBackend and records every outcome in the ledger.

Each movement is executed independently. A failed refund or payout never
rolls back the deal's status change; it stays in the ledger as failed and
can be retried.
"""

import logging
import time
from dataclasses import dataclass, field

from handshake.errors import InvalidArgument
from handshake.payments import PaymentBackend, PaymentError
from handshake.protocol import HoldOutcome, Outcome, Party, PaymentPurpose, PaymentStatus
from handshake.records import Deal, LedgerEntry, Payment

logger = logging.getLogger(__name__)

REFUND = "refund"
PAYOUT = "payout"

LEDGER_PENDING = "pending"
LEDGER_EXECUTING = "executing"
LEDGER_SUCCEEDED = "succeeded"
LEDGER_FAILED = "failed"


@dataclass(frozen=True)
class RefundSplit:
    """Fairness holds split into what goes back to each party and what is kept."""
    refund_a: int
    refund_b: int
    forfeit_a: int
    forfeit_b: int

    def refund_for(self, party: Party) -> int:
        return self.refund_a if party is Party.A else self.refund_b

    def to_dict(self) -> dict:
        return {
            "refund_a": self.refund_a,
            "refund_b": self.refund_b,
            "forfeit_a": self.forfeit_a,
            "forfeit_b": self.forfeit_b,
        }


def parse_hold_outcome(value) -> HoldOutcome:
    if isinstance(value, HoldOutcome):
        return value
    try:
        return HoldOutcome(str(value).upper())
    except ValueError:
        raise InvalidArgument(f"Unknown hold outcome: {value!r}")


def calculate_refunds(hold_a: int, hold_b: int, outcome: str | HoldOutcome) -> RefundSplit:
    """Split the two fairness holds for ``outcome``.

    A party that failed to perform forfeits its hold; everyone else gets
    theirs back. Cancellation refunds both. For every outcome
    refund_a + forfeit_a == hold_a, and the same for B.
    """
    outcome = parse_hold_outcome(outcome)
    a_failed = outcome in (HoldOutcome.A_FAILED, HoldOutcome.BOTH_FAILED)
    b_failed = outcome in (HoldOutcome.B_FAILED, HoldOutcome.BOTH_FAILED)
    return RefundSplit(
        refund_a=0 if a_failed else hold_a,
        refund_b=0 if b_failed else hold_b,
        forfeit_a=hold_a if a_failed else 0,
        forfeit_b=hold_b if b_failed else 0,
    )


@dataclass(frozen=True)
class Movement:
    """A planned transfer of funds, not yet executed."""
    kind: str
    party: Party
    recipient_id: str
    amount: int
    reason: str
    payment_id: str | None = None
    payment_ref: str | None = None


def _succeeded(payments: list[Payment], purpose: PaymentPurpose, party: Party | None = None) -> list[Payment]:
    return [
        p for p in payments
        if p.status is PaymentStatus.SUCCEEDED and p.purpose is purpose
        and (party is None or p.party is party)
    ]


def _refund_movement(deal: Deal, payment: Payment, amount: int, reason: str) -> Movement:
    return Movement(
        kind=REFUND,
        party=payment.party,
        recipient_id=deal.principal_for(payment.party) or "",
        amount=amount,
        reason=reason,
        payment_id=payment.id,
        payment_ref=payment.payment_ref,
    )


def _allocate_refund(deal: Deal, payments: list[Payment], amount: int, reason: str) -> list[Movement]:
    """Refund ``amount`` across ``payments`` in the order they were recorded."""
    movements = []
    for payment in payments:
        if amount <= 0:
            break
        take = min(amount, payment.refundable_remaining)
        if take > 0:
            movements.append(_refund_movement(deal, payment, take, reason))
            amount -= take
    if amount > 0:
        logger.warning("deal %s: %d of %s could not be matched to a captured payment",
                       deal.id, amount, reason)
    return movements


def plan_cancellation(deal: Deal, payments: list[Payment]) -> list[Movement]:
    """Refund the refundable portion of every succeeded payment. Setup fees are kept."""
    movements = []
    for payment in payments:
        if payment.status is not PaymentStatus.SUCCEEDED:
            continue
        if payment.refundable_remaining > 0:
            movements.append(_refund_movement(
                deal, payment, payment.refundable_remaining, payment.purpose.value.lower()))
    return movements


def plan_completion(deal: Deal, payments: list[Payment], outcome: Outcome,
                    hold_outcome: HoldOutcome) -> tuple[list[Movement], RefundSplit]:
    """Movements for a completed deal: principal by ``outcome``, holds by ``hold_outcome``."""
    movements = []
    contributions = _succeeded(payments, PaymentPurpose.CONTRIBUTION)

    if outcome is Outcome.REFUND_BOTH:
        for payment in contributions:
            if payment.refundable_remaining > 0:
                movements.append(_refund_movement(
                    deal, payment, payment.refundable_remaining, "principal"))
    else:
        pool = sum(p.refundable_remaining for p in contributions)
        party = Party.A if outcome is Outcome.RELEASE_TO_CREATOR else Party.B
        if pool > 0:
            movements.append(Movement(
                kind=PAYOUT,
                party=party,
                recipient_id=deal.principal_for(party) or "",
                amount=pool,
                reason="pool",
            ))

    split = calculate_refunds(deal.fairness_hold_a, deal.fairness_hold_b, hold_outcome)
    for party in (Party.A, Party.B):
        movements.extend(_allocate_refund(
            deal, _succeeded(payments, PaymentPurpose.FAIRNESS_HOLD, party),
            split.refund_for(party), "fairness_hold"))
    return movements, split


@dataclass
class SettlementResult:
    deal_id: str
    entries: list[LedgerEntry] = field(default_factory=list)
    split: RefundSplit | None = None

    @property
    def failed(self) -> list[LedgerEntry]:
        return [e for e in self.entries if e.status == LEDGER_FAILED]

    @property
    def status(self) -> str:
        if not self.entries:
            return "nothing_to_settle"
        if self.failed:
            return "partial_failure"
        if any(e.status == LEDGER_EXECUTING for e in self.entries):
            return "in_progress"
        return "settled"

    def to_dict(self) -> dict:
        d = {
            "status": self.status,
            "movements": [e.to_dict() for e in self.entries],
        }
        if self.split is not None:
            d["holds"] = self.split.to_dict()
        return d


class SettlementManager:
    """Executes planned movements through a payment backend and keeps the ledger current."""

    def __init__(self, store, payment_backend: PaymentBackend, clock=time.time):
        self.store = store
        self.payment = payment_backend
        self.clock = clock

    def record(self, deal_id: str, movements: list[Movement]) -> list[LedgerEntry]:
        """Write movements as pending ledger entries. Runs inside the caller's transaction."""
        now = self.clock()
        return [self.store.insert_ledger_entry(deal_id, m, now) for m in movements]

    def execute(self, deal_id: str, entries: list[LedgerEntry], split: RefundSplit | None = None) -> SettlementResult:
        result = SettlementResult(deal_id=deal_id, split=split)
        for entry in entries:
            if entry.status != LEDGER_SUCCEEDED:
                entry = self._execute_one(entry)
            result.entries.append(entry)
        if result.failed:
            logger.warning("deal %s: %d of %d settlement movements failed",
                           deal_id, len(result.failed), len(result.entries))
        elif result.status == "settled":
            logger.info("deal %s settled (%d movements)", deal_id, len(result.entries))
        return result

    def retry(self, deal_id: str) -> SettlementResult:
        """Re-run every failed movement for a deal, and any left pending by an interrupted run."""
        return self.execute(deal_id, self.store.list_ledger(deal_id, status=(LEDGER_FAILED, LEDGER_PENDING)))

    def _execute_one(self, entry: LedgerEntry) -> LedgerEntry:
        if not self.store.claim_ledger_entry(entry.id, self.clock()):
            # Someone else is executing or has executed it
            return self.store.get_ledger_entry(entry.id)
        try:
            if entry.kind == REFUND:
                if not entry.payment_ref:
                    raise PaymentError(f"payment {entry.payment_id} has no processor reference")
                processor_ref = self.payment.refund(entry.payment_ref, entry.amount)
            elif entry.kind == PAYOUT:
                if not entry.recipient_id:
                    raise PaymentError("payout has no recipient")
                processor_ref = self.payment.transfer(entry.deal_id, entry.recipient_id, entry.amount)
            else:
                raise PaymentError(f"unknown movement kind: {entry.kind}")
        except Exception as e:
            logger.warning("deal %s: %s of %d to %s failed: %s",
                           entry.deal_id, entry.kind, entry.amount, entry.recipient_id, e)
            return self.store.mark_ledger_failed(entry.id, str(e), self.clock())
        return self.store.mark_ledger_succeeded(entry.id, processor_ref, self.clock())
