"""Deal type classification.

Accepts the legacy three-way names (CASH_*) and the current six-way names
and maps each onto one of three fee buckets. SERVICE is treated exactly
like GOODS for fees: both are non-monetary legs carrying a declared value
and a fairness hold.

The tables below are closed. Anything outside them is a DealTypeError,
never a silent default.
"""

from handshake.errors import DealTypeError
from handshake.protocol import DealType, FeeBucket, LegKind, LEGACY_DEAL_TYPES

# Leg kinds (legA, legB) for every accepted type name
LEG_KINDS: dict[DealType, tuple[LegKind, LegKind]] = {
    DealType.CASH_CASH: (LegKind.MONEY, LegKind.MONEY),
    DealType.CASH_GOODS: (LegKind.MONEY, LegKind.GOODS),
    DealType.GOODS_GOODS: (LegKind.GOODS, LegKind.GOODS),
    DealType.MONEY_MONEY: (LegKind.MONEY, LegKind.MONEY),
    DealType.MONEY_GOODS: (LegKind.MONEY, LegKind.GOODS),
    DealType.MONEY_SERVICE: (LegKind.MONEY, LegKind.SERVICE),
    DealType.GOODS_SERVICE: (LegKind.GOODS, LegKind.SERVICE),
    DealType.SERVICE_SERVICE: (LegKind.SERVICE, LegKind.SERVICE),
}

LEGACY_TO_CURRENT: dict[DealType, DealType] = {
    DealType.CASH_CASH: DealType.MONEY_MONEY,
    DealType.CASH_GOODS: DealType.MONEY_GOODS,
}

FEE_BUCKETS: dict[DealType, FeeBucket] = {
    DealType.MONEY_MONEY: FeeBucket.MONEY_MONEY,
    DealType.MONEY_GOODS: FeeBucket.MONEY_NONMONEY,
    DealType.MONEY_SERVICE: FeeBucket.MONEY_NONMONEY,
    DealType.GOODS_GOODS: FeeBucket.NONMONEY_NONMONEY,
    DealType.GOODS_SERVICE: FeeBucket.NONMONEY_NONMONEY,
    DealType.SERVICE_SERVICE: FeeBucket.NONMONEY_NONMONEY,
}

_TYPE_FOR_LEGS: dict[tuple[LegKind, LegKind], DealType] = {
    kinds: deal_type for deal_type, kinds in LEG_KINDS.items()
    if deal_type not in LEGACY_DEAL_TYPES
}


def _check_tables():
    for deal_type in DealType:
        if deal_type not in LEG_KINDS:
            raise RuntimeError(f"deal type {deal_type.value} has no leg kinds")
        current = LEGACY_TO_CURRENT.get(deal_type, deal_type)
        if current not in FEE_BUCKETS:
            raise RuntimeError(f"deal type {deal_type.value} has no fee bucket")

_check_tables()
del _check_tables


def parse_deal_type(value: str | DealType) -> DealType:
    if isinstance(value, DealType):
        return value
    try:
        return DealType(str(value).strip().upper())
    except ValueError:
        raise DealTypeError(f"Unknown deal type: {value!r}")


def normalize_deal_type(value: str | DealType) -> DealType:
    """Map a legacy or current type name to its current name."""
    deal_type = parse_deal_type(value)
    return LEGACY_TO_CURRENT.get(deal_type, deal_type)


def fee_bucket(value: str | DealType) -> FeeBucket:
    return FEE_BUCKETS[normalize_deal_type(value)]


def leg_kinds(value: str | DealType) -> tuple[LegKind, LegKind]:
    return LEG_KINDS[normalize_deal_type(value)]


def deal_type_for_legs(kind_a: LegKind, kind_b: LegKind) -> DealType:
    """Current type name for a (legA, legB) kind pair, in that order."""
    try:
        return _TYPE_FOR_LEGS[(kind_a, kind_b)]
    except KeyError:
        raise DealTypeError(f"Unsupported leg combination: {kind_a.value}/{kind_b.value}")


def is_money(kind: LegKind) -> bool:
    return kind is LegKind.MONEY
