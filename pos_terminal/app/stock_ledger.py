from __future__ import annotations

from pos_terminal.app.collection import Collection
from pos_terminal.app.errors import CheckoutValidationError, StockSyncError
from pos_terminal.app.models import Product


class StockLedger:
    """
    Applies stock movements one product at a time through the outbox.

    There is no cross-terminal lock and no version check: two terminals selling
    the last unit while partitioned both succeed locally and the drift shows up
    in diagnostics afterwards.
    """

    def __init__(self, outbox, products: Collection):
        self.outbox = outbox
        self.products = products

    def current(self, product_id) -> Product:
        p = self.products.get(product_id)
        if p is None:
            raise StockSyncError(f"product {product_id} is not in the local catalog")
        return p

    def available(self, product_id) -> int:
        p = self.products.get(product_id)
        return int(p.stock) if p is not None else 0

    def plan_decrement(self, product_id, qty: int) -> Product:
        """Decremented copy of the current product; nothing is written."""
        qty = int(qty)
        if qty < 0:
            raise CheckoutValidationError("decrement quantity must be >= 0")
        p = self.current(product_id)
        return p.model_copy(update={"stock": max(0, int(p.stock) - qty)})

    async def write(self, product: Product) -> Product:
        return await self.outbox.upsert("products", product)

    async def decrement(self, product_id, qty: int) -> Product:
        return await self.write(self.plan_decrement(product_id, qty))

    async def restock(self, product_id, qty: int) -> Product:
        qty = int(qty)
        if qty <= 0:
            raise CheckoutValidationError("restock quantity must be > 0")
        p = self.current(product_id)
        return await self.outbox.upsert("products", p.model_copy(update={"stock": int(p.stock) + qty}))
