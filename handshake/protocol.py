"""Shared constants and enumerations for the handshake deal platform.

All modules import from here to avoid circular dependencies.
Every monetary value is an integer count of minor currency units (cents).
"""

import os
from enum import Enum


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


# --- Fee Policy ---

SETUP_FEE = _env_int("HANDSHAKE_SETUP_FEE", 500)          # $5.00 per party per deal
EXTENSION_FEE = _env_int("HANDSHAKE_EXTENSION_FEE", 300)  # $3.00 per extension
HOLD_PERCENT = _env_int("HANDSHAKE_HOLD_PERCENT", 20)     # fairness hold, % of declared value

# --- Amount Limits ---

MIN_AMOUNT = _env_int("HANDSHAKE_MIN_AMOUNT", 500)
MAX_AMOUNT = _env_int("HANDSHAKE_MAX_AMOUNT", 5_000_000)
MIN_DECLARED_VALUE = _env_int("HANDSHAKE_MIN_DECLARED_VALUE", 500)
MAX_DESCRIPTION_LENGTH = 1000
MAX_ACCOUNT_ID_LENGTH = 255
MAX_REASON_LENGTH = 500

CURRENCY = os.environ.get("HANDSHAKE_CURRENCY", "usd")

# --- Timing ---

INVITE_TTL_SECONDS = _env_int("HANDSHAKE_INVITE_TTL", 7 * 24 * 60 * 60)
SECONDS_PER_DAY = 24 * 60 * 60
EXTENSION_DAYS = {"standard": 7, "extended": 14}

# Bounded retries for a read-validate-write cycle that loses a compare-and-swap
TRANSITION_RETRIES = 3

# Actor id recorded for transitions triggered by the platform itself
SYSTEM_ACTOR = "system"


def _validate_policy():
    if not 0 <= HOLD_PERCENT <= 100:
        raise RuntimeError(f"HANDSHAKE_HOLD_PERCENT out of range: {HOLD_PERCENT}")
    for name, value in (("HANDSHAKE_SETUP_FEE", SETUP_FEE), ("HANDSHAKE_EXTENSION_FEE", EXTENSION_FEE),
                        ("HANDSHAKE_MIN_AMOUNT", MIN_AMOUNT), ("HANDSHAKE_MIN_DECLARED_VALUE", MIN_DECLARED_VALUE)):
        if value < 0:
            raise RuntimeError(f"{name} cannot be negative")
    if MAX_AMOUNT < MIN_AMOUNT:
        raise RuntimeError("HANDSHAKE_MAX_AMOUNT below HANDSHAKE_MIN_AMOUNT")

_validate_policy()
del _validate_policy


# --- State Machine ---

class DealStatus(Enum):
    DRAFT = "draft"
    INVITED = "invited"
    AWAITING_FUNDING = "awaiting_funding"
    ACTIVE = "active"
    OUTCOME_PROPOSED = "outcome_proposed"
    CONFIRMED = "confirmed"
    PAST_DUE = "past_due"
    FROZEN = "frozen"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {DealStatus.COMPLETED, DealStatus.CANCELLED}


class DealEvent(Enum):
    INVITE = "invite"
    ACCEPT = "accept"
    FUND = "fund"
    PROPOSE_OUTCOME = "propose_outcome"
    REJECT_OUTCOME = "reject_outcome"
    CONFIRM_OUTCOME = "confirm_outcome"
    COMPLETE = "complete"
    PASTDUE = "pastdue"
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"
    CANCEL = "cancel"
    EXTEND = "extend"


# --- Deal Types ---

class LegKind(Enum):
    MONEY = "MONEY"
    GOODS = "GOODS"
    SERVICE = "SERVICE"


class DealType(Enum):
    # Legacy names
    CASH_CASH = "CASH_CASH"
    CASH_GOODS = "CASH_GOODS"
    # GOODS_GOODS is shared by both enumerations
    GOODS_GOODS = "GOODS_GOODS"
    # Current names
    MONEY_MONEY = "MONEY_MONEY"
    MONEY_GOODS = "MONEY_GOODS"
    MONEY_SERVICE = "MONEY_SERVICE"
    GOODS_SERVICE = "GOODS_SERVICE"
    SERVICE_SERVICE = "SERVICE_SERVICE"


LEGACY_DEAL_TYPES = {DealType.CASH_CASH, DealType.CASH_GOODS}


class FeeBucket(Enum):
    MONEY_MONEY = "MONEY_MONEY"
    MONEY_NONMONEY = "MONEY_NONMONEY"
    NONMONEY_NONMONEY = "NONMONEY_NONMONEY"


# --- Parties and Payments ---

class Party(Enum):
    A = "A"  # creator, owns legA
    B = "B"  # participant, owns legB


class PaymentPurpose(Enum):
    SETUP_FEE = "SETUP_FEE"
    CONTRIBUTION = "CONTRIBUTION"
    FAIRNESS_HOLD = "FAIRNESS_HOLD"
    EXTENSION_FEE = "EXTENSION_FEE"


# Purposes whose full amount is refundable principal unless stated otherwise
REFUNDABLE_PURPOSES = {PaymentPurpose.CONTRIBUTION, PaymentPurpose.FAIRNESS_HOLD}


class PaymentStatus(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISPUTED = "disputed"


# --- Outcomes ---

class Outcome(Enum):
    RELEASE_TO_CREATOR = "RELEASE_TO_CREATOR"
    RELEASE_TO_PARTICIPANT = "RELEASE_TO_PARTICIPANT"
    REFUND_BOTH = "REFUND_BOTH"


class HoldOutcome(Enum):
    BOTH_COMPLETED = "BOTH_COMPLETED"
    A_FAILED = "A_FAILED"
    B_FAILED = "B_FAILED"
    BOTH_FAILED = "BOTH_FAILED"
    CANCELLED = "CANCELLED"


# Hold policy applied when both parties agree on an outcome
CONFIRMED_HOLD_OUTCOME = {
    Outcome.RELEASE_TO_CREATOR: HoldOutcome.BOTH_COMPLETED,
    Outcome.RELEASE_TO_PARTICIPANT: HoldOutcome.BOTH_COMPLETED,
    Outcome.REFUND_BOTH: HoldOutcome.CANCELLED,
}


class ExtensionType(Enum):
    STANDARD = "standard"
    EXTENDED = "extended"


class DisputeStatus(Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


# --- Audit Event Types ---

AUDIT_EVENT_TYPES = {
    "DEAL_CREATED", "INVITE_REISSUED", "INVITE_ACCEPTED", "PAYMENT_COMPLETED",
    "PAYMENT_FAILED", "PAYMENT_DISPUTED", "DEAL_ACTIVATED", "OUTCOME_PROPOSED",
    "OUTCOME_REJECTED", "OUTCOME_CONFIRMED", "DEAL_COMPLETED", "DEAL_FROZEN",
    "DEAL_UNFROZEN", "DEAL_CANCELLED", "DEAL_PAST_DUE", "EXTENSION_REQUESTED",
    "EXTENSION_APPROVED", "SETTLEMENT_RETRIED",
}
