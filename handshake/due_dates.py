"""Past-due detection and extension policy."""

from dataclasses import dataclass

from handshake.errors import AlreadyExists, FailedPrecondition, InvalidArgument
from handshake.fees import calculate_extension_fee, get_extension_days
from handshake.protocol import SECONDS_PER_DAY, DealStatus, ExtensionType


def is_past_due(deal_date: float, now: float) -> bool:
    return now > deal_date


@dataclass(frozen=True)
class ExtensionRequest:
    requested_by: str
    extension_type: ExtensionType
    fee: int

    @property
    def days(self) -> int:
        return get_extension_days(self.extension_type)


def check_can_request(status: DealStatus, pending: bool) -> None:
    if status is not DealStatus.PAST_DUE:
        raise FailedPrecondition("Deal must be past due to request extension")
    if pending:
        raise AlreadyExists("An extension request is already pending")


def build_request(requested_by: str, extension_type) -> ExtensionRequest:
    fee = calculate_extension_fee(extension_type)
    if isinstance(extension_type, str):
        extension_type = ExtensionType(extension_type.lower())
    return ExtensionRequest(requested_by=requested_by, extension_type=extension_type, fee=fee)


def check_can_approve(request: ExtensionRequest | None, approver_id: str) -> None:
    if request is None:
        raise FailedPrecondition("No extension requested")
    if request.requested_by == approver_id:
        raise InvalidArgument("Cannot approve your own extension request")


def extended_date(deal_date: float, extension_type) -> float:
    return deal_date + get_extension_days(extension_type) * SECONDS_PER_DAY
