"""Payment processor backends.

The core never decides validity based on the processor; it only calls out
to move money once a settlement has been planned. Each call is a discrete,
independently fallible operation.
"""

import logging
from abc import ABC, abstractmethod

import requests

from handshake.protocol import CURRENCY

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """A processor call failed; the movement can be retried later."""


class PaymentBackend(ABC):
    """Abstract processor. The service injects one of these into the settlement engine."""

    @abstractmethod
    def refund(self, payment_ref: str, amount: int) -> str:
        """Refund ``amount`` minor units of a captured payment. Returns the refund id."""
        ...

    @abstractmethod
    def transfer(self, deal_id: str, recipient_id: str, amount: int) -> str:
        """Pay ``amount`` minor units out to a principal. Returns the transfer id."""
        ...


class StubBackend(PaymentBackend):
    """In-memory backend for tests and local runs. Calls succeed unless told to fail."""

    def __init__(self, fail_refs: set[str] | None = None, fail_recipients: set[str] | None = None):
        self.fail_refs = set(fail_refs or ())
        self.fail_recipients = set(fail_recipients or ())
        self.refunds: list[dict] = []    # log of refunds for test assertions
        self.transfers: list[dict] = []  # log of transfers for test assertions

    def refund(self, payment_ref: str, amount: int) -> str:
        if payment_ref in self.fail_refs:
            raise PaymentError(f"refund declined for {payment_ref}")
        self.refunds.append({"payment_ref": payment_ref, "amount": amount})
        return f"re_stub_{len(self.refunds)}"

    def transfer(self, deal_id: str, recipient_id: str, amount: int) -> str:
        if recipient_id in self.fail_recipients:
            raise PaymentError(f"transfer declined for {recipient_id}")
        self.transfers.append({"deal_id": deal_id, "recipient": recipient_id, "amount": amount})
        return f"tr_stub_{len(self.transfers)}"


class StripeBackend(PaymentBackend):
    """Stripe REST adapter.

    ``accounts`` maps a principal id to its connected account id (run_server
    passes the store's payout account lookup). A payout to a principal
    without one raises PaymentError and is marked failed in the ledger,
    where an admin retry picks it up once the account is registered.
    """

    API_URL = "https://api.stripe.com/v1"

    def __init__(self, api_key: str, accounts=None, currency: str = CURRENCY, timeout: float = 30):
        if not api_key:
            raise ValueError("Stripe API key required")
        self.api_key = api_key
        self.accounts = accounts or (lambda principal_id: None)
        self.currency = currency
        self.timeout = timeout

    def _post(self, path: str, data: dict, idempotency_key: str) -> dict:
        try:
            resp = requests.post(
                f"{self.API_URL}/{path}",
                data=data,
                auth=(self.api_key, ""),
                headers={"Idempotency-Key": idempotency_key},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise PaymentError(f"processor unreachable: {e}") from e
        body = resp.json() if resp.content else {}
        if resp.status_code >= 400:
            message = body.get("error", {}).get("message", resp.text[:200])
            logger.warning("stripe %s rejected (%s): %s", path, resp.status_code, message)
            raise PaymentError(f"processor error {resp.status_code}: {message}")
        return body

    def refund(self, payment_ref: str, amount: int) -> str:
        body = self._post(
            "refunds",
            {"payment_intent": payment_ref, "amount": amount},
            idempotency_key=f"refund-{payment_ref}-{amount}",
        )
        return body["id"]

    def transfer(self, deal_id: str, recipient_id: str, amount: int) -> str:
        account = self.accounts(recipient_id)
        if not account:
            raise PaymentError(f"no payout account for {recipient_id}")
        body = self._post(
            "transfers",
            {"amount": amount, "currency": self.currency, "destination": account,
             "transfer_group": deal_id},
            idempotency_key=f"transfer-{deal_id}-{recipient_id}-{amount}",
        )
        return body["id"]
