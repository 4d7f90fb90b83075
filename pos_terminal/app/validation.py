from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import AfterValidator, BeforeValidator, StringConstraints

from pos_terminal.app.pricing import q2


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _canonical(choices: tuple[str, ...]):
    # Case-insensitive match onto the canonical spelling; unknown values pass
    # through so the Literal check reports them.
    by_lower = {c.lower(): c for c in choices}

    def _norm(v):
        if v is None:
            return v
        raw = str(v).strip()
        return by_lower.get(raw.lower(), raw)

    return _norm


PAYMENT_METHODS = ("Cash", "GCash", "PayMaya", "QRPH", "Card")
TX_STATUSES = ("Completed", "Refunded")
CHANGE_OPERATIONS = ("Insert", "Update", "Delete")
PENDING_OPS = ("Upsert", "Delete")
SYNC_STATUSES = ("Synced", "Discrepancy", "Offline", "Error")
REFERRAL_STATUSES = ("Active", "Pending", "Cancelled")

PaymentMethod = Annotated[Literal["Cash", "GCash", "PayMaya", "QRPH", "Card"], BeforeValidator(_canonical(PAYMENT_METHODS))]
TxStatus = Annotated[Literal["Completed", "Refunded"], BeforeValidator(_canonical(TX_STATUSES))]
ChangeOperation = Annotated[Literal["Insert", "Update", "Delete"], BeforeValidator(_canonical(CHANGE_OPERATIONS))]
PendingOp = Annotated[Literal["Upsert", "Delete"], BeforeValidator(_canonical(PENDING_OPS))]
SyncStatus = Annotated[Literal["Synced", "Discrepancy", "Offline", "Error"], BeforeValidator(_canonical(SYNC_STATUSES))]
ReferralStatus = Annotated[Literal["Active", "Pending", "Cancelled"], BeforeValidator(_canonical(REFERRAL_STATUSES))]

# Table names double as SQL identifiers on the remote side; keep them boring.
TableName = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=63, pattern=r"^[a-z][a-z0-9_]*$"),
]


def _to_id(v):
    # Remote ids may arrive as uuid.UUID or int; the terminal keys everything by text.
    if v is None:
        return v
    return str(v).strip()


RecordId = Annotated[str, BeforeValidator(_to_id), StringConstraints(min_length=1, max_length=128)]


def _to_decimal(v):
    if v is None or v == "":
        return Decimal("0")
    if isinstance(v, float):
        # Go through str() so 0.1 stays 0.1 and not its binary expansion.
        return Decimal(str(v))
    return v


Money = Annotated[Decimal, BeforeValidator(_to_decimal), AfterValidator(q2)]
