"""
Point-of-sale checkout for one terminal.

    METHOD_SELECT -> METHOD_DETAILS (cash) | CONFIRM_PAYMENT (other tenders)
                  -> REVIEW -> PROCESSING -> SUCCESS | ERROR

ERROR only leads back to METHOD_SELECT, and only when the operator asks for it
(`reset()`): an error here means local stock knowledge was stale, so retrying
the same commit automatically would repeat the same mistake.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from enum import Enum
from typing import Mapping, Optional

from pos_terminal.app.config import settings
from pos_terminal.app.errors import CheckoutValidationError, IllegalTransitionError, StockSyncError
from pos_terminal.app.logs import json_log
from pos_terminal.app.models import Product, Receipt, ReceiptLine, Transaction, utcnow
from pos_terminal.app.pricing import clamp_discount, compute_totals, line_amount, q2
from pos_terminal.app.validation import PAYMENT_METHODS


class State(str, Enum):
    METHOD_SELECT = "METHOD_SELECT"
    METHOD_DETAILS = "METHOD_DETAILS"
    CONFIRM_PAYMENT = "CONFIRM_PAYMENT"
    REVIEW = "REVIEW"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class ErrorKind(str, Enum):
    STOCK_SYNC_ERROR = "STOCK_SYNC_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class TransitionTable:
    """Allowed moves between states; malformed tables are rejected up front."""

    def __init__(self, edges: Mapping[State, set]):
        missing = set(State) - set(edges)
        if missing:
            raise ValueError(f"transition table is missing states: {sorted(s.value for s in missing)}")
        for src, targets in edges.items():
            for dst in targets:
                if not isinstance(dst, State):
                    raise ValueError(f"unknown target state {dst!r} from {src.value}")
        if set(edges[State.PROCESSING]) != {State.SUCCESS, State.ERROR}:
            raise ValueError("PROCESSING must end in SUCCESS or ERROR")
        if set(edges[State.ERROR]) != {State.METHOD_SELECT}:
            raise ValueError("ERROR may only return to METHOD_SELECT")
        self._edges = {src: frozenset(targets) for src, targets in edges.items()}

    def allows(self, src: State, dst: State) -> bool:
        return dst in self._edges[src]

    def check(self, src: State, dst: State):
        if not self.allows(src, dst):
            raise IllegalTransitionError(f"cannot go from {src.value} to {dst.value}")


TRANSITIONS = TransitionTable(
    {
        State.METHOD_SELECT: {State.METHOD_DETAILS, State.CONFIRM_PAYMENT, State.METHOD_SELECT},
        State.METHOD_DETAILS: {State.REVIEW, State.METHOD_SELECT},
        State.CONFIRM_PAYMENT: {State.REVIEW, State.METHOD_SELECT},
        State.REVIEW: {State.PROCESSING, State.METHOD_SELECT},
        State.PROCESSING: {State.SUCCESS, State.ERROR},
        State.SUCCESS: {State.METHOD_SELECT},
        State.ERROR: {State.METHOD_SELECT},
    }
)

# Discard is allowed up to (not including) PROCESSING.
CANCELLABLE = frozenset({State.METHOD_SELECT, State.METHOD_DETAILS, State.CONFIRM_PAYMENT, State.REVIEW})


class CartLine:
    __slots__ = ("product_id", "name", "unit_price", "quantity")

    def __init__(self, product: Product, quantity: int):
        self.product_id = product.id
        self.name = product.name
        self.unit_price = product.price
        self.quantity = int(quantity)

    @property
    def amount(self) -> Decimal:
        return line_amount(self.unit_price, self.quantity)


class Checkout:
    """
    Drives one sale at a time. Collaborators are passed in: the products
    collection (latest known stock), the stock ledger and the outbox.
    """

    def __init__(
        self,
        products,
        ledger,
        outbox,
        *,
        tax_rate: Optional[Decimal] = None,
        default_discount: Optional[Decimal] = None,
        operator: Optional[str] = None,
        transitions: TransitionTable = TRANSITIONS,
    ):
        self.products = products
        self.ledger = ledger
        self.outbox = outbox
        self.tax_rate = Decimal(str(settings.tax_rate if tax_rate is None else tax_rate))
        self.default_discount = clamp_discount(settings.default_discount if default_discount is None else default_discount)
        self.operator = operator
        self.transitions = transitions

        self.state = State.METHOD_SELECT
        self.cart: list[CartLine] = []
        self.discount_percent = self.default_discount
        self.payment_method: Optional[str] = None
        self.tendered: Optional[Decimal] = None
        self.error_kind: Optional[ErrorKind] = None
        self.error_detail: Optional[str] = None
        self.last_receipt: Optional[Receipt] = None

    # -- state plumbing --

    def _go(self, dst: State):
        self.transitions.check(self.state, dst)
        self.state = dst

    def _require(self, *states: State):
        if self.state not in states:
            raise IllegalTransitionError(f"not allowed in {self.state.value}")

    def _clear_sale(self):
        self.cart = []
        self.payment_method = None
        self.tendered = None
        self.discount_percent = self.default_discount

    # -- cart (only while selecting) --

    def _line(self, product_id) -> Optional[CartLine]:
        pid = str(product_id)
        for ln in self.cart:
            if ln.product_id == pid:
                return ln
        return None

    def add_item(self, product_id, qty: int = 1) -> CartLine:
        self._require(State.METHOD_SELECT)
        qty = int(qty)
        if qty <= 0:
            raise CheckoutValidationError("quantity must be > 0")
        p = self.products.get(product_id)
        if p is None:
            raise CheckoutValidationError(f"unknown product {product_id}")
        if p.stock <= 0:
            raise CheckoutValidationError(f"{p.name or p.id} is out of stock")
        ln = self._line(p.id)
        if ln is None:
            ln = CartLine(p, qty)
            self.cart.append(ln)
        else:
            ln.quantity += qty
        return ln

    def set_quantity(self, product_id, qty: int):
        self._require(State.METHOD_SELECT)
        qty = int(qty)
        if qty < 0:
            raise CheckoutValidationError("quantity must be >= 0")
        ln = self._line(product_id)
        if ln is None:
            raise CheckoutValidationError(f"product {product_id} is not in the cart")
        if qty == 0:
            self.remove_item(product_id)
        else:
            ln.quantity = qty

    def remove_item(self, product_id):
        self._require(State.METHOD_SELECT)
        pid = str(product_id)
        self.cart = [ln for ln in self.cart if ln.product_id != pid]

    def set_discount(self, percent):
        self._require(State.METHOD_SELECT, State.METHOD_DETAILS, State.CONFIRM_PAYMENT)
        self.discount_percent = clamp_discount(percent)

    # -- money --

    def totals(self) -> dict:
        return compute_totals(
            [(ln.unit_price, ln.quantity) for ln in self.cart],
            tax_rate=self.tax_rate,
            discount_percent=self.discount_percent,
            tendered=self.tendered,
        )

    @property
    def total_due(self) -> Decimal:
        return self.totals()["total"]

    # -- payment flow --

    def select_method(self, method: str) -> State:
        self._require(State.METHOD_SELECT)
        if not self.cart:
            raise CheckoutValidationError("cart is empty")
        canonical = {m.lower(): m for m in PAYMENT_METHODS}.get(str(method or "").strip().lower())
        if canonical is None:
            raise CheckoutValidationError(f"unsupported payment method: {method}")
        self.payment_method = canonical
        self._go(State.METHOD_DETAILS if canonical == "Cash" else State.CONFIRM_PAYMENT)
        return self.state

    def tender(self, amount) -> Decimal:
        self._require(State.METHOD_DETAILS)
        t = q2(amount)
        if t < 0:
            raise CheckoutValidationError("tendered amount must be >= 0")
        self.tendered = t
        return self.totals()["change"]

    def review(self) -> State:
        """METHOD_DETAILS -> REVIEW, only once enough cash is on the counter."""
        self._require(State.METHOD_DETAILS)
        due = self.total_due
        if self.tendered is None or self.tendered < due:
            raise CheckoutValidationError(f"insufficient cash tendered: {self.tendered or Decimal('0.00')} < {due}")
        self._go(State.REVIEW)
        return self.state

    def confirm_payment(self) -> State:
        # External gateway handshakes are not modelled; non-cash tenders pass straight through.
        self._require(State.CONFIRM_PAYMENT)
        self._go(State.REVIEW)
        return self.state

    def back(self) -> State:
        self._require(State.METHOD_DETAILS, State.CONFIRM_PAYMENT, State.REVIEW)
        self.payment_method = None
        self.tendered = None
        self._go(State.METHOD_SELECT)
        return self.state

    def discard(self):
        if self.state not in CANCELLABLE:
            raise IllegalTransitionError(f"cannot discard a sale in {self.state.value}")
        self._clear_sale()
        self._go(State.METHOD_SELECT)

    def reset(self) -> State:
        """Leave SUCCESS (next sale) or ERROR (operator-acknowledged)."""
        self._require(State.SUCCESS, State.ERROR)
        self.error_kind = None
        self.error_detail = None
        self._go(State.METHOD_SELECT)
        return self.state

    # -- commit --

    def _check_stock(self):
        short = []
        for ln in self.cart:
            available = self.ledger.available(ln.product_id)
            if ln.quantity > available:
                short.append(f"{ln.name or ln.product_id}: requested {ln.quantity}, available {available}")
        if short:
            raise StockSyncError("; ".join(short))

    def _build_transactions(self, sale_id: str, created_at) -> list[Transaction]:
        return [
            Transaction(
                id=f"{sale_id}-{i}",
                sale_id=sale_id,
                product_id=ln.product_id,
                quantity=ln.quantity,
                amount=ln.amount,
                payment_method=self.payment_method,
                status="Completed",
                created_at=created_at,
                business_id=self.outbox.business_id,
                operator=self.operator,
            )
            for i, ln in enumerate(self.cart, start=1)
        ]

    def _fail(self, kind: ErrorKind, detail: str):
        self.error_kind = kind
        self.error_detail = detail
        self._go(State.ERROR)

    async def commit(self) -> Optional[Receipt]:
        """
        REVIEW -> PROCESSING -> SUCCESS | ERROR. Returns the receipt on success,
        None when the sale ended in ERROR (see `error_kind`/`error_detail`).

        Everything that can reject the sale (stock check, decremented product
        copies, transaction and receipt building) happens before the first
        write. Once writes have started the sale is reported as SUCCESS even if
        a later step fails, because its records already exist.
        """
        # Only REVIEW may enter PROCESSING, so a second commit() while one is
        # in flight fails here.
        self._go(State.PROCESSING)
        try:
            self._check_stock()
            decremented = [self.ledger.plan_decrement(ln.product_id, ln.quantity) for ln in self.cart]
            totals = self.totals()
            created_at = utcnow()
            sale_id = f"TX-{created_at.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"
            txs = self._build_transactions(sale_id, created_at)
            receipt = Receipt(
                sale_id=sale_id,
                lines=[
                    ReceiptLine(
                        product_id=ln.product_id,
                        name=ln.name,
                        unit_price=ln.unit_price,
                        quantity=ln.quantity,
                        amount=ln.amount,
                    )
                    for ln in self.cart
                ],
                subtotal=totals["subtotal"],
                discount_amount=totals["discount_amount"],
                tax=totals["tax"],
                total=totals["total"],
                payment_method=self.payment_method,
                tendered=totals["tendered"],
                change=totals["change"],
                operator=self.operator,
                created_at=created_at,
            )
        except StockSyncError as ex:
            json_log("warn", "checkout_failed", kind=ErrorKind.STOCK_SYNC_ERROR.value, error=str(ex))
            self._fail(ErrorKind.STOCK_SYNC_ERROR, str(ex))
            return None
        except Exception as ex:
            json_log("error", "checkout_failed", kind=ErrorKind.INTERNAL_ERROR.value, error=str(ex))
            self._fail(ErrorKind.INTERNAL_ERROR, str(ex))
            return None

        written = False
        try:
            await self.outbox.upsert_many("transactions", txs)
            written = True
            for product in decremented:
                await self.ledger.write(product)
        except Exception as ex:
            if not written:
                json_log("error", "checkout_failed", kind=ErrorKind.INTERNAL_ERROR.value, error=str(ex))
                self._fail(ErrorKind.INTERNAL_ERROR, str(ex))
                return None
            # Transactions exist; the sale stands and stock drift shows up in diagnostics.
            json_log("error", "checkout_stock_write_failed", sale_id=sale_id, error=str(ex))

        self.last_receipt = receipt
        self._clear_sale()
        self._go(State.SUCCESS)
        json_log("info", "checkout_committed", sale_id=sale_id, lines=len(txs), total=receipt.total)
        return receipt
