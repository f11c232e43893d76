"""Funding completeness: when an awaiting_funding deal may activate."""

from handshake.protocol import Party, PaymentPurpose, PaymentStatus
from handshake.records import Deal, Payment


def required_payments(deal: Deal) -> dict[tuple[Party, PaymentPurpose], int]:
    """Minimum captured amount per (party, purpose) before the deal can go active."""
    setup_fee = deal.fee_breakdown.setup_fee
    required = {}
    for party in (Party.A, Party.B):
        if setup_fee > 0:
            required[(party, PaymentPurpose.SETUP_FEE)] = setup_fee
        contribution = deal.contribution_for(party)
        if contribution > 0:
            required[(party, PaymentPurpose.CONTRIBUTION)] = contribution
        hold = deal.hold_for(party)
        if hold > 0:
            required[(party, PaymentPurpose.FAIRNESS_HOLD)] = hold
    return required


def paid_totals(payments: list[Payment]) -> dict[tuple[Party, PaymentPurpose], int]:
    totals: dict[tuple[Party, PaymentPurpose], int] = {}
    for p in payments:
        if p.status is PaymentStatus.SUCCEEDED:
            key = (p.party, p.purpose)
            totals[key] = totals.get(key, 0) + p.amount
    return totals


def outstanding(deal: Deal, payments: list[Payment]) -> dict[tuple[Party, PaymentPurpose], int]:
    """What is still owed, by (party, purpose). Empty once fully funded."""
    paid = paid_totals(payments)
    owed = {}
    for key, amount in required_payments(deal).items():
        short = amount - paid.get(key, 0)
        if short > 0:
            owed[key] = short
    return owed


def is_fully_funded(deal: Deal, payments: list[Payment]) -> bool:
    return not outstanding(deal, payments)
