"""
Inventory store: the catalogue of stock-keeping units per branch.

Products live in the ``products`` table, one CSV record per line::

    sku,category,branch,quantity,price

Every read parses the table again, so callers always see what is on disk.
Every mutation rewrites the whole table while holding the store lock.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional

import audit
from line_store import LineStore, is_record

logger = logging.getLogger(__name__)

PRODUCTS_TABLE = "products"


class Branch(enum.Enum):
    HOLON = "HOLON"
    TEL_AVIV = "TEL_AVIV"
    RISHON = "RISHON"

    @classmethod
    def parse(cls, token: str) -> "Branch":
        """Parse a branch token case-insensitively; raises ValueError if unknown."""
        try:
            return cls[token.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown branch: {token}") from None


@dataclass(frozen=True)
class Product:
    sku: str
    category: str
    branch: Branch
    quantity: int
    price: Decimal

    def to_line(self) -> str:
        return ",".join(
            [self.sku, self.category, self.branch.value, str(self.quantity), format(self.price, "f")]
        )

    @classmethod
    def from_line(cls, line: str) -> "Product":
        t = line.strip().split(",")
        if len(t) < 5:
            raise ValueError(f"malformed product record: {line!r}")
        return cls(
            sku=t[0],
            category=t[1],
            branch=Branch(t[2]),
            quantity=int(t[3]),
            price=Decimal(t[4]),
        )


class InventoryError(Exception):
    """Base class for inventory domain errors.  ``reason`` is the wire token."""

    reason = "INVENTORY_ERROR"


class SkuNotFound(InventoryError):
    reason = "SKU_NOT_FOUND"

    def __init__(self, branch: Branch, sku: str) -> None:
        super().__init__(f"SKU not found: {sku} at {branch.value}")
        self.branch = branch
        self.sku = sku


class InsufficientStock(InventoryError):
    reason = "NOT_ENOUGH_STOCK"

    def __init__(self, sku: str, available: int, requested: int) -> None:
        super().__init__(f"Only {available} in stock for {sku} (requested {requested})")
        self.sku = sku
        self.available = available
        self.requested = requested


def parse_price(token: str) -> Decimal:
    """Parse a non-negative money amount; raises ValueError otherwise."""
    try:
        price = Decimal(token.strip())
    except InvalidOperation:
        raise ValueError(f"invalid price: {token}") from None
    if not price.is_finite() or price < 0:
        raise ValueError(f"invalid price: {token}")
    return price


class InventoryStore:
    """Products per branch, backed by the ``products`` table."""

    def __init__(self, line_store: LineStore) -> None:
        self._db = line_store
        # Serialises read-modify-write cycles on the products table
        self._lock = threading.RLock()
        self._branch_locks: Dict[Branch, threading.RLock] = {b: threading.RLock() for b in Branch}

    def branch_lock(self, branch: Branch) -> threading.RLock:
        """Lock held by multi-step sale transactions against one branch.

        Always acquire it before any store call, never while holding the
        store lock.
        """
        return self._branch_locks[branch]

    # ---- Parsing helpers ----

    def _read_lines(self) -> List[str]:
        return self._db.read_all_lines(PRODUCTS_TABLE)

    @staticmethod
    def _parse(line: str) -> Optional[Product]:
        try:
            return Product.from_line(line)
        except (ValueError, InvalidOperation):
            logger.warning("Skipping malformed product record", extra={"extra": {"line": line}})
            return None

    def _all_products(self) -> List[Product]:
        products = []
        for line in self._read_lines():
            if not is_record(line):
                continue
            p = self._parse(line)
            if p is not None:
                products.append(p)
        return products

    # ---- Queries ----

    def list_by_branch(self, branch: Branch) -> List[Product]:
        with self._lock:
            return [p for p in self._all_products() if p.branch == branch]

    def find_by_sku(self, branch: Branch, sku: str) -> Optional[Product]:
        for p in self.list_by_branch(branch):
            if p.sku == sku:
                return p
        return None

    def find_cheapest_in_category(self, branch: Branch, category: str) -> Optional[Product]:
        wanted = category.lower()
        candidates = [
            p for p in self.list_by_branch(branch) if p.category.lower() == wanted and p.quantity > 0
        ]
        if not candidates:
            return None
        # min() keeps the first of equally priced products, i.e. file order
        return min(candidates, key=lambda p: p.price)

    # ---- Mutations ----

    def adjust_quantity(self, branch: Branch, sku: str, delta: int) -> Product:
        """Change stock for ``sku`` by ``delta``, clamping the result at zero.

        Raises:
            SkuNotFound: If the sku does not exist in ``branch``.
        """
        with self._lock:
            lines = self._read_lines()
            for i, line in enumerate(lines):
                if not is_record(line):
                    continue
                p = self._parse(line)
                if p is None or p.branch != branch or p.sku != sku:
                    continue
                updated = replace(p, quantity=max(0, p.quantity + delta))
                lines[i] = updated.to_line()
                self._db.write_all_lines(PRODUCTS_TABLE, lines)
                break
            else:
                raise SkuNotFound(branch, sku)
        if delta > 0:
            audit.record(
                "STOCK_ORDERED", branch=branch, sku=sku, category=p.category, quantity=delta, price=p.price
            )
        elif delta < 0:
            audit.record(
                "STOCK_SOLD", branch=branch, sku=sku, category=p.category, quantity=-delta, price=p.price
            )
        return updated

    def consume_one_in_category(self, branch: Branch, category: str) -> bool:
        """Take one unit of the cheapest in-stock product of ``category``."""
        with self._lock:
            p = self.find_cheapest_in_category(branch, category)
            if p is None:
                return False
            self.adjust_quantity(branch, p.sku, -1)
            return True

    def commit_sale(self, branch: Branch, demand: Dict[str, int]) -> List[Product]:
        """Decrement stock for every sku in ``demand`` or for none of them.

        Sufficiency is checked for all skus first; only when every check
        passes is the table rewritten, once.

        Raises:
            SkuNotFound: If any sku is missing from ``branch``.
            InsufficientStock: If any sku has less stock than requested.
        """
        with self._lock:
            lines = self._read_lines()
            positions: Dict[str, int] = {}
            products: Dict[str, Product] = {}
            for i, line in enumerate(lines):
                if not is_record(line):
                    continue
                p = self._parse(line)
                if p is not None and p.branch == branch and p.sku in demand and p.sku not in products:
                    positions[p.sku] = i
                    products[p.sku] = p
            for sku, qty in demand.items():
                p = products.get(sku)
                if p is None:
                    raise SkuNotFound(branch, sku)
                if p.quantity < qty:
                    raise InsufficientStock(sku, p.quantity, qty)
            updated = []
            for sku, qty in demand.items():
                np = replace(products[sku], quantity=products[sku].quantity - qty)
                lines[positions[sku]] = np.to_line()
                updated.append(np)
            self._db.write_all_lines(PRODUCTS_TABLE, lines)
        for p in updated:
            audit.record(
                "STOCK_SOLD",
                branch=branch,
                sku=p.sku,
                category=p.category,
                quantity=demand[p.sku],
                price=p.price,
            )
        return updated

    def _next_sku(self) -> str:
        highest = 0
        for p in self._all_products():
            if p.sku.startswith("P"):
                try:
                    highest = max(highest, int(p.sku[1:]))
                except ValueError:
                    pass
        return f"P{highest + 1:05d}"

    def add_product(self, branch: Branch, category: str, quantity: int, price: Decimal) -> Product:
        """Append a new product with the next sequential sku."""
        if quantity < 0:
            raise ValueError("Quantity must be non-negative")
        if price < 0:
            raise ValueError("Price must be non-negative")
        if not category or "," in category:
            raise ValueError("Category must be non-empty and contain no commas")
        with self._lock:
            product = Product(self._next_sku(), category, branch, quantity, price)
            lines = self._read_lines()
            lines.append(product.to_line())
            self._db.write_all_lines(PRODUCTS_TABLE, lines)
        audit.record(
            "PRODUCT_ADDED", branch=branch, sku=product.sku, category=category, quantity=quantity, price=price
        )
        return product

    def remove_product(self, branch: Branch, sku: str) -> bool:
        with self._lock:
            lines = self._read_lines()
            kept = []
            removed = False
            for line in lines:
                if is_record(line) and not removed:
                    p = self._parse(line)
                    if p is not None and p.branch == branch and p.sku == sku:
                        removed = True
                        continue
                kept.append(line)
            if removed:
                self._db.write_all_lines(PRODUCTS_TABLE, kept)
        if removed:
            audit.record("PRODUCT_REMOVED", branch=branch, sku=sku)
        return removed
