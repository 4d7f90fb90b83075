"""
Record shapes shared by the cache, the remote store, the realtime feed and the
checkout engine.

Everything that crosses a boundary (remote rows, realtime payloads, cached
JSON) goes through `parse_record()` so the rest of the code can rely on typed,
defaulted fields instead of ad hoc `.get()` checks.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from pos_terminal.app.errors import CheckoutValidationError
from pos_terminal.app.validation import (
    ChangeOperation,
    Money,
    PaymentMethod,
    PendingOp,
    RecordId,
    ReferralStatus,
    SyncStatus,
    TableName,
    TxStatus,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Product(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: RecordId
    sku: str = ""
    name: str = ""
    category: str = Field(default="", validation_alias=AliasChoices("category", "category_id"))
    price: Money = Decimal("0.00")
    stock: int = Field(default=0, ge=0)
    supplier_id: Optional[str] = None
    business_id: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Transaction(BaseModel):
    # Immutable once written; the only allowed change is Completed -> Refunded,
    # which produces a new object (see `refunded()`).
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: RecordId
    sale_id: Optional[str] = None
    product_id: RecordId
    quantity: int = Field(ge=1)
    amount: Money = Field(validation_alias=AliasChoices("amount", "total_amount"))
    payment_method: PaymentMethod = "Cash"
    status: TxStatus = "Completed"
    created_at: datetime = Field(default_factory=utcnow)
    business_id: Optional[str] = None
    operator: Optional[str] = None

    def refunded(self) -> "Transaction":
        if self.status != "Completed":
            raise CheckoutValidationError(f"transaction {self.id} is already {self.status.lower()}")
        return self.model_copy(update={"status": "Refunded"})


class Supplier(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: RecordId
    name: str = ""
    contact_person: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    business_id: Optional[str] = None
    created_at: Optional[datetime] = None


class SystemUser(BaseModel):
    # extra="ignore" keeps password/password_hash columns out of the terminal.
    model_config = ConfigDict(extra="ignore")

    id: RecordId
    business_id: Optional[str] = None
    name: str = ""
    email: str = ""
    role: str = "Cashier"
    status: str = "Active"
    created_at: Optional[datetime] = None


class Business(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: RecordId
    name: str = ""
    type: Optional[str] = None
    address: Optional[str] = None
    is_primary: bool = False


class Referral(BaseModel):
    # A client business signed up through this business (promoter commissions).
    model_config = ConfigDict(extra="ignore")

    id: RecordId
    client_name: str = Field(default="", validation_alias=AliasChoices("client_name", "clientName"))
    date_joined: Optional[date] = Field(default=None, validation_alias=AliasChoices("date_joined", "dateJoined"))
    status: ReferralStatus = "Pending"
    commission: Money = Decimal("0.00")
    business_id: Optional[str] = None
    created_at: Optional[datetime] = None


class PendingAction(BaseModel):
    seq: Optional[int] = None
    table: TableName
    op: PendingOp
    payload: dict
    business_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    attempt_count: int = 0
    last_error: Optional[str] = None

    @property
    def record_id(self) -> str:
        return str(self.payload.get("id") or "")


class ChangeEvent(BaseModel):
    """Inbound realtime notification. Accepts the adapter shape {table, event, data}."""

    model_config = ConfigDict(populate_by_name=True)

    table: TableName
    operation: ChangeOperation = Field(validation_alias=AliasChoices("operation", "event"))
    payload: dict = Field(validation_alias=AliasChoices("payload", "data"))

    @model_validator(mode="after")
    def _require_id(self):
        if not str(self.payload.get("id") or "").strip():
            raise ValueError("change payload is missing id")
        return self

    @property
    def record_id(self) -> str:
        return str(self.payload["id"]).strip()


class SyncDiagnostic(BaseModel):
    table: str
    local_count: int
    cloud_count: int
    pending_actions: int
    status: SyncStatus


class AuthData(BaseModel):
    user: SystemUser
    business: Optional[Business] = None


class AuthResult(BaseModel):
    success: bool
    data: Optional[AuthData] = None
    error: Optional[str] = None
    code: Optional[str] = None


class ReceiptLine(BaseModel):
    product_id: str
    name: str
    unit_price: Money
    quantity: int
    amount: Money


class Receipt(BaseModel):
    sale_id: str
    lines: List[ReceiptLine]
    subtotal: Money
    discount_amount: Money
    tax: Money
    total: Money
    payment_method: PaymentMethod
    tendered: Optional[Money] = None
    change: Money = Decimal("0.00")
    operator: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


TABLE_MODELS: dict[str, type[BaseModel]] = {
    "products": Product,
    "transactions": Transaction,
    "suppliers": Supplier,
    "users": SystemUser,
    "referrals": Referral,
    "businesses": Business,
}

# Collections shown newest-first; inbound inserts are prepended.
RECENCY_ORDERED = {"products", "transactions", "suppliers", "users", "referrals"}


def model_for(table: str) -> type[BaseModel]:
    try:
        return TABLE_MODELS[table]
    except KeyError:
        raise ValueError(f"unknown table: {table}") from None


def parse_record(table: str, data: Any) -> BaseModel:
    model = model_for(table)
    if isinstance(data, model):
        return data
    return model.model_validate(data)


def record_payload(record: BaseModel) -> dict:
    return record.model_dump(mode="json")


def scope_of(table: str, record: BaseModel) -> Optional[str]:
    """Business id a record belongs to (businesses are scoped by their own id)."""
    if table == "businesses":
        return record.id
    return getattr(record, "business_id", None)
