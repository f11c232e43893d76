import sys
import os

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest

from handshake.payments import StubBackend
from handshake.service import DealService, Principal
from handshake.store import DealStore

DAY = 24 * 60 * 60
T0 = 1_700_000_000.0

CREATOR = Principal(id="alice", email="alice@example.com")
PARTICIPANT = Principal(id="bob", email="bob@example.com")
STRANGER = Principal(id="mallory", email="mallory@example.com")
ADMIN = Principal(id="admin", is_admin=True)


class FakeClock:
    """Controllable stand-in for time.time."""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return StubBackend()


@pytest.fixture
def store():
    s = DealStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def service(store, backend, clock):
    return DealService(store, backend, clock=clock)


# --- Deal builders ---

def money_goods_deal(service, clock, principal=10_000, declared=5_000, days=30):
    """Creator pays money (legA), participant delivers goods (legB)."""
    return service.create_deal(
        CREATOR,
        {"kind": "MONEY", "principal": principal},
        {"kind": "GOODS", "description": "Vintage road bike", "declared_value": declared},
        "MONEY_GOODS",
        clock() + days * DAY,
        PARTICIPANT.email,
    )


def money_money_deal(service, clock, principal_a=10_000, principal_b=20_000, days=30):
    return service.create_deal(
        CREATOR,
        {"kind": "MONEY", "principal": principal_a},
        {"kind": "MONEY", "principal": principal_b},
        "MONEY_MONEY",
        clock() + days * DAY,
        PARTICIPANT.email,
    )


def joined_money_goods_deal(service, clock, **kwargs):
    created = money_goods_deal(service, clock, **kwargs)
    service.accept_invite(PARTICIPANT, created["invite_token"])
    return created["deal_id"]


def fund_money_goods(service, deal_id, principal=10_000, hold_b=1_000):
    """Every payment a MONEY_GOODS deal needs; the last one activates it."""
    service.record_payment_succeeded(deal_id, "A", "SETUP_FEE", 500, payment_ref=f"pi_{deal_id}_a_setup")
    service.record_payment_succeeded(deal_id, "B", "SETUP_FEE", 500, payment_ref=f"pi_{deal_id}_b_setup")
    service.record_payment_succeeded(deal_id, "B", "FAIRNESS_HOLD", hold_b, payment_ref=f"pi_{deal_id}_b_hold")
    return service.record_payment_succeeded(deal_id, "A", "CONTRIBUTION", principal,
                                            payment_ref=f"pi_{deal_id}_a_contrib")


def active_money_goods_deal(service, clock, **kwargs):
    deal_id = joined_money_goods_deal(service, clock, **kwargs)
    fund_money_goods(service, deal_id)
    return deal_id
