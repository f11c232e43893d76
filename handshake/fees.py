"""Fee calculation for deals.

Pure functions only. Fees and fairness holds are computed once, when the
deal is created, and stored with it; nothing downstream re-derives them.
"""

from dataclasses import dataclass

from handshake.deal_types import fee_bucket, is_money, leg_kinds, normalize_deal_type
from handshake.errors import InvalidArgument
from handshake.protocol import (
    EXTENSION_DAYS, EXTENSION_FEE, HOLD_PERCENT, MAX_AMOUNT, MAX_DESCRIPTION_LENGTH,
    MIN_AMOUNT, MIN_DECLARED_VALUE, SETUP_FEE, DealType, ExtensionType, FeeBucket, LegKind,
)


@dataclass(frozen=True)
class Leg:
    """One party's side of a deal."""
    kind: LegKind
    principal: int = 0        # MONEY legs
    description: str = ""     # GOODS/SERVICE legs
    declared_value: int = 0   # GOODS/SERVICE legs

    def to_dict(self) -> dict:
        if is_money(self.kind):
            return {"kind": self.kind.value, "principal": self.principal}
        return {
            "kind": self.kind.value,
            "description": self.description,
            "declared_value": self.declared_value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Leg":
        try:
            kind = LegKind(str(d.get("kind", "")).upper())
        except ValueError:
            raise InvalidArgument(f"Unknown leg kind: {d.get('kind')!r}")
        return cls(
            kind=kind,
            principal=d.get("principal", 0) or 0,
            description=d.get("description", "") or "",
            declared_value=d.get("declared_value", 0) or 0,
        )


@dataclass(frozen=True)
class FeeCalculation:
    setup_fee: int
    fairness_hold_a: int
    fairness_hold_b: int
    total_fees: int


@dataclass(frozen=True)
class FeeBreakdown:
    """Stored on the deal at creation; immutable afterwards."""
    principal: int
    setup_fee: int
    total_charge: int

    def to_dict(self) -> dict:
        return {
            "principal": self.principal,
            "setup_fee": self.setup_fee,
            "total_charge": self.total_charge,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "FeeBreakdown":
        return cls(principal=d["principal"], setup_fee=d["setup_fee"], total_charge=d["total_charge"])


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_amount(amount, label: str = "Amount") -> int:
    """Check a MONEY amount is a whole number of minor units within limits."""
    if not _is_int(amount):
        raise InvalidArgument(f"{label} must be a whole number of minor units")
    if amount < MIN_AMOUNT:
        raise InvalidArgument(f"{label} below minimum ({MIN_AMOUNT})")
    if amount > MAX_AMOUNT:
        raise InvalidArgument(f"{label} above maximum ({MAX_AMOUNT})")
    return amount


def validate_leg(leg: Leg, label: str = "leg") -> Leg:
    """Enforce per-kind minimums. Raises InvalidArgument, never clamps."""
    if is_money(leg.kind):
        validate_amount(leg.principal, f"{label} principal")
        return leg
    if not leg.description or not leg.description.strip():
        raise InvalidArgument(f"{label} requires a description")
    if len(leg.description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidArgument(f"{label} description longer than {MAX_DESCRIPTION_LENGTH} characters")
    if not _is_int(leg.declared_value):
        raise InvalidArgument(f"{label} declared value must be a whole number of minor units")
    if leg.declared_value < MIN_DECLARED_VALUE:
        raise InvalidArgument(f"{label} declared value below minimum ({MIN_DECLARED_VALUE})")
    return leg


def calculate_setup_fee() -> int:
    """Flat setup fee charged to each party. Kept as a function so policy can vary."""
    return SETUP_FEE


def calculate_fairness_hold(declared_value: int | None) -> int:
    """HOLD_PERCENT of declared value, rounded half up. Zero for absent or non-positive input."""
    if not declared_value or declared_value <= 0:
        return 0
    # Integer round-half-up; no floating point
    return (declared_value * HOLD_PERCENT + 50) // 100


def calculate_deal_fees(deal_type: str | DealType, declared_value_a: int | None = None,
                        declared_value_b: int | None = None) -> FeeCalculation:
    """Setup fee and fairness holds for a deal, dispatched on its fee bucket.

    Money legs never carry a hold. In the MONEY_NONMONEY bucket legA is the
    money leg, so only B is held.
    """
    bucket = fee_bucket(deal_type)
    setup_fee = calculate_setup_fee()

    if bucket is FeeBucket.MONEY_MONEY:
        hold_a, hold_b = 0, 0
    elif bucket is FeeBucket.MONEY_NONMONEY:
        hold_a, hold_b = 0, calculate_fairness_hold(declared_value_b)
    elif bucket is FeeBucket.NONMONEY_NONMONEY:
        hold_a = calculate_fairness_hold(declared_value_a)
        hold_b = calculate_fairness_hold(declared_value_b)
    else:
        raise RuntimeError(f"unhandled fee bucket: {bucket}")

    return FeeCalculation(
        setup_fee=setup_fee,
        fairness_hold_a=hold_a,
        fairness_hold_b=hold_b,
        total_fees=setup_fee + hold_a + hold_b,
    )


def build_fee_breakdown(leg_a: Leg, leg_b: Leg, fees: FeeCalculation) -> FeeBreakdown:
    """Everything collected for the deal: principal, both setup fees and both holds."""
    principal = contribution_for(leg_a) + contribution_for(leg_b)
    total = principal + 2 * fees.setup_fee + fees.fairness_hold_a + fees.fairness_hold_b
    return FeeBreakdown(principal=principal, setup_fee=fees.setup_fee, total_charge=total)


def contribution_for(leg: Leg) -> int:
    """Principal the owning party must pay in. Zero for non-monetary legs."""
    return leg.principal if is_money(leg.kind) else 0


def check_legs_match_type(deal_type: str | DealType, leg_a: Leg, leg_b: Leg) -> DealType:
    """Return the normalized type, or raise if the legs disagree with it."""
    normalized = normalize_deal_type(deal_type)
    expected = leg_kinds(normalized)
    if (leg_a.kind, leg_b.kind) != expected:
        raise InvalidArgument(
            f"Deal type {normalized.value} expects legs {expected[0].value}/{expected[1].value}, "
            f"got {leg_a.kind.value}/{leg_b.kind.value}"
        )
    return normalized


def _parse_extension_type(extension_type) -> ExtensionType:
    if isinstance(extension_type, ExtensionType):
        return extension_type
    try:
        return ExtensionType(str(extension_type).lower())
    except ValueError:
        raise InvalidArgument(f"Unknown extension type: {extension_type!r}")


def calculate_extension_fee(extension_type: str | ExtensionType) -> int:
    _parse_extension_type(extension_type)
    return EXTENSION_FEE


def get_extension_days(extension_type: str | ExtensionType) -> int:
    return EXTENSION_DAYS[_parse_extension_type(extension_type).value]
