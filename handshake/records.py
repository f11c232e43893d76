"""Record types persisted by the store.

Plain dataclasses. The store owns (de)serialization to rows; these
carry the domain helpers that the service and settlement engine need.
"""

from dataclasses import dataclass, field

from handshake.due_dates import ExtensionRequest
from handshake.fees import FeeBreakdown, Leg, contribution_for
from handshake.protocol import (
    DealStatus, DealType, DisputeStatus, ExtensionType, HoldOutcome, Outcome, Party,
    PaymentPurpose, PaymentStatus,
)


@dataclass
class Deal:
    id: str
    status: DealStatus
    creator_id: str
    participant_id: str | None
    participant_email: str
    deal_type: DealType
    leg_a: Leg
    leg_b: Leg
    deal_date: float
    fee_breakdown: FeeBreakdown
    fairness_hold_a: int
    fairness_hold_b: int
    created_at: float
    updated_at: float
    title: str = ""
    invite_token: str | None = None
    invite_expires_at: float | None = None
    proposed_outcome: Outcome | None = None
    proposed_by: str | None = None
    extension_requested: bool = False
    extension_requested_by: str | None = None
    extension_type: ExtensionType | None = None
    extension_fee: int = 0
    extension_fees_total: int = 0
    final_outcome: Outcome | None = None
    hold_outcome: HoldOutcome | None = None
    activated_at: float | None = None
    completed_at: float | None = None
    cancelled_at: float | None = None
    cancelled_by: str | None = None
    cancel_reason: str | None = None

    # --- Parties ---

    def party_of(self, principal_id: str) -> Party | None:
        if principal_id and principal_id == self.creator_id:
            return Party.A
        if principal_id and principal_id == self.participant_id:
            return Party.B
        return None

    def is_party(self, principal_id: str) -> bool:
        return self.party_of(principal_id) is not None

    def principal_for(self, party: Party) -> str | None:
        return self.creator_id if party is Party.A else self.participant_id

    def other_party_id(self, principal_id: str) -> str | None:
        party = self.party_of(principal_id)
        if party is Party.A:
            return self.participant_id
        if party is Party.B:
            return self.creator_id
        return None

    # --- Money ---

    def leg_for(self, party: Party) -> Leg:
        return self.leg_a if party is Party.A else self.leg_b

    def contribution_for(self, party: Party) -> int:
        return contribution_for(self.leg_for(party))

    def hold_for(self, party: Party) -> int:
        return self.fairness_hold_a if party is Party.A else self.fairness_hold_b

    def extension_request(self) -> ExtensionRequest | None:
        if not self.extension_requested or self.extension_type is None:
            return None
        return ExtensionRequest(
            requested_by=self.extension_requested_by,
            extension_type=self.extension_type,
            fee=self.extension_fee,
        )

    def to_dict(self, viewer_id: str | None = None) -> dict:
        d = {
            "id": self.id,
            "status": self.status.value,
            "title": self.title,
            "creator_id": self.creator_id,
            "participant_id": self.participant_id,
            "participant_email": self.participant_email,
            "deal_type": self.deal_type.value,
            "leg_a": self.leg_a.to_dict(),
            "leg_b": self.leg_b.to_dict(),
            "deal_date": self.deal_date,
            "fee_breakdown": self.fee_breakdown.to_dict(),
            "fairness_hold_a": self.fairness_hold_a,
            "fairness_hold_b": self.fairness_hold_b,
            "invite_expires_at": self.invite_expires_at,
            "proposed_outcome": self.proposed_outcome.value if self.proposed_outcome else None,
            "proposed_by": self.proposed_by,
            "extension_requested": self.extension_requested,
            "extension_requested_by": self.extension_requested_by,
            "extension_type": self.extension_type.value if self.extension_type else None,
            "extension_fee": self.extension_fee,
            "extension_fees_total": self.extension_fees_total,
            "final_outcome": self.final_outcome.value if self.final_outcome else None,
            "hold_outcome": self.hold_outcome.value if self.hold_outcome else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "activated_at": self.activated_at,
            "completed_at": self.completed_at,
            "cancelled_at": self.cancelled_at,
            "cancelled_by": self.cancelled_by,
            "cancel_reason": self.cancel_reason,
        }
        # Only the creator ever sees the join credential
        if viewer_id is not None and viewer_id == self.creator_id:
            d["invite_token"] = self.invite_token
        return d


@dataclass
class Payment:
    id: str
    deal_id: str
    party: Party
    purpose: PaymentPurpose
    amount: int
    principal_portion: int
    status: PaymentStatus
    created_at: float
    updated_at: float
    payment_ref: str | None = None
    refunded_amount: int = 0
    failure_reason: str | None = None

    @property
    def refundable_remaining(self) -> int:
        return max(0, self.principal_portion - self.refunded_amount)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "party": self.party.value,
            "purpose": self.purpose.value,
            "amount": self.amount,
            "principal_portion": self.principal_portion,
            "status": self.status.value,
            "payment_ref": self.payment_ref,
            "refunded_amount": self.refunded_amount,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Dispute:
    id: str
    deal_id: str
    status: DisputeStatus
    reason: str
    initiated_by: str
    opened_at: float
    resolved_at: float | None = None
    resolved_by: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deal_id": self.deal_id,
            "status": self.status.value,
            "reason": self.reason,
            "initiated_by": self.initiated_by,
            "opened_at": self.opened_at,
            "resolved_at": self.resolved_at,
            "resolved_by": self.resolved_by,
        }


@dataclass
class LedgerEntry:
    """One planned money movement and what happened when it was executed."""
    id: str
    deal_id: str
    kind: str            # "refund" or "payout"
    party: Party
    recipient_id: str
    amount: int
    reason: str          # "principal", "fairness_hold", "pool"
    status: str          # "pending", "executing", "succeeded", "failed"
    created_at: float
    updated_at: float
    payment_id: str | None = None
    payment_ref: str | None = None
    processor_ref: str | None = None
    error: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "party": self.party.value,
            "recipient_id": self.recipient_id,
            "amount": self.amount,
            "reason": self.reason,
            "status": self.status,
            "payment_id": self.payment_id,
            "processor_ref": self.processor_ref,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class AuditEntry:
    deal_id: str
    actor_id: str
    event_type: str
    timestamp: float
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "deal_id": self.deal_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type,
            "details": self.details,
            "timestamp": self.timestamp,
        }
