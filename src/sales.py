"""
Sale calculation and the multi-item cart transaction.

A sale runs in two phases.  Validation (parse the cart, resolve customer
and products, check stock) never touches stored state, so any failure there
leaves inventory and customers exactly as they were.  Only after every line
has passed does the commit phase decrement stock, record the purchase and
try to hand out the gift item.

Money is kept as ``Decimal`` at full precision and rounded half-up to cents
only when a figure is reported.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

import audit
from customers import Customer, CustomerStore, Tier
from inventory import Branch, InsufficientStock, InventoryStore, Product, SkuNotFound
from metrics import GIFTS_TOTAL, SALE_ERRORS_TOTAL, SALES_TOTAL
from pricing import CENT, ZERO, strategy_for

logger = logging.getLogger(__name__)

RATE_PLACES = Decimal("0.00000001")
BONUS_CATEGORY = "SHIRT"


def money(value: Decimal) -> Decimal:
    """Round a monetary amount to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    return format(money(value), "f")


def parse_quantity(text: str) -> int:
    """Parse a plain ASCII integer token such as ``3`` or ``+3``.

    ``int()`` alone would also take ``1_000`` or non-ASCII digits.
    """
    token = text.strip()
    digits = token[1:] if token[:1] in ("+", "-") else token
    if not (digits.isascii() and digits.isdigit()):
        raise ValueError(f"invalid quantity: {text!r}")
    return int(token)


class GiftOutcome(enum.Enum):
    NONE = "NONE"
    GRANTED = "GRANTED"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class SaleError(Exception):
    """A sale rejected during validation.

    ``reason`` is the wire token (``NOT_ENOUGH_STOCK``) and ``detail`` the
    optional offending value (usually a sku).
    """

    def __init__(self, reason: str, detail: Optional[str] = None) -> None:
        super().__init__(reason if detail is None else f"{reason} {detail}")
        self.reason = reason
        self.detail = detail


class CartError(SaleError):
    """The cart specification itself is malformed."""


# ---- Sale calculator ----

@dataclass(frozen=True)
class SaleSummary:
    base: Decimal
    discount: Decimal
    final: Decimal
    tier: Tier
    gift_eligible: bool

    @property
    def tier_code(self) -> str:
        return self.tier.value


def summarize(base: Decimal, tier: Tier) -> SaleSummary:
    """Apply the tier's pricing to a base amount."""
    strategy = strategy_for(tier)
    discount = strategy.discount(base)
    if discount < ZERO:
        discount = ZERO
    if discount > base:
        discount = base
    final = base - discount
    return SaleSummary(base, discount, final, tier, strategy.is_gift_eligible(final))


def calculate_sale(product: Product, quantity: int, tier: Tier) -> SaleSummary:
    return summarize(product.price * quantity, tier)


# ---- Cart ----

@dataclass
class CartLine:
    """One requested line, with the product as it was at validation time."""
    sku: str
    quantity: int
    product: Product

    @property
    def unit_price(self) -> Decimal:
        return self.product.price

    @property
    def base(self) -> Decimal:
        return self.product.price * self.quantity


@dataclass
class Cart:
    lines: List[CartLine] = field(default_factory=list)

    def add(self, product: Product, quantity: int) -> None:
        self.lines.append(CartLine(product.sku, quantity, product))

    def demand(self) -> Dict[str, int]:
        """Total requested quantity per sku (a sku may appear on several lines)."""
        totals: Dict[str, int] = {}
        for line in self.lines:
            totals[line.sku] = totals.get(line.sku, 0) + line.quantity
        return totals

    @property
    def base_total(self) -> Decimal:
        return sum((line.base for line in self.lines), ZERO)


def parse_cart_spec(spec: str) -> List[Tuple[str, int]]:
    """Parse ``sku:qty,sku:qty,...`` into (sku, qty) pairs.

    Blank tokens are skipped.  Any malformed token rejects the whole cart.

    Raises:
        CartError: ``EMPTY_CART``, ``BAD_ITEM_SPEC`` or ``BAD_QTY``.
    """
    if spec is None or not spec.strip():
        raise CartError("EMPTY_CART")
    items: List[Tuple[str, int]] = []
    for token in spec.split(","):
        if not token.strip():
            continue
        sku, sep, qty_text = token.partition(":")
        sku = sku.strip()
        if not sep or not sku:
            raise CartError("BAD_ITEM_SPEC")
        try:
            qty = parse_quantity(qty_text)
        except ValueError:
            raise CartError("BAD_QTY") from None
        if qty <= 0:
            raise CartError("BAD_QTY")
        items.append((sku, qty))
    if not items:
        raise CartError("EMPTY_CART")
    return items


# ---- Results ----

@dataclass(frozen=True)
class LineBreakdown:
    sku: str
    category: str
    quantity: int
    unit_price: Decimal
    base: Decimal
    discount: Decimal
    final: Decimal


@dataclass(frozen=True)
class SaleResult:
    summary: SaleSummary
    lines: List[LineBreakdown]
    gift: GiftOutcome
    tier_after: Tier

    @property
    def gifted(self) -> bool:
        return self.gift is GiftOutcome.GRANTED


def _count_rejection(reason: str) -> None:
    try:
        SALE_ERRORS_TOTAL.inc(reason=reason)
    except Exception:
        pass


def discount_rate(discount: Decimal, base: Decimal) -> Decimal:
    if base == 0:
        return ZERO
    return (discount / base).quantize(RATE_PLACES, rounding=ROUND_HALF_UP)


def proportional_lines(cart: Cart, summary: SaleSummary) -> List[LineBreakdown]:
    """Spread the cart discount over the lines in proportion to their base."""
    rate = discount_rate(summary.discount, summary.base)
    out = []
    for line in cart.lines:
        line_discount = line.base * rate
        out.append(
            LineBreakdown(
                sku=line.sku,
                category=line.product.category,
                quantity=line.quantity,
                unit_price=line.unit_price,
                base=line.base,
                discount=line_discount,
                final=line.base - line_discount,
            )
        )
    return out


class SalesService:
    """Runs SELL and SELL_MULTI transactions against the shared stores.

    The branch lock is held from the first stock lookup to the last stock
    write, so two carts on the same branch cannot both pass validation on
    the same units.
    """

    def __init__(
        self,
        inventory: InventoryStore,
        customers: CustomerStore,
        bonus_category: str = BONUS_CATEGORY,
    ) -> None:
        self.inventory = inventory
        self.customers = customers
        self.bonus_category = bonus_category

    def sell(self, branch: Branch, sku: str, quantity: int, customer_id: str, user_id: str | None = None) -> SaleResult:
        """Single-item sale."""
        if quantity <= 0:
            _count_rejection("BAD_QTY")
            raise CartError("BAD_QTY")
        return self._checkout("SALE", branch, customer_id, [(sku, quantity)], user_id)

    def sell_multi(self, branch: Branch, customer_id: str, spec: str, user_id: str | None = None) -> SaleResult:
        """Multi-item sale paid as one cart with a single discount."""
        try:
            items = parse_cart_spec(spec)
        except CartError as e:
            _count_rejection(e.reason)
            raise
        return self._checkout("SALE_MULTI", branch, customer_id, items, user_id)

    def _checkout(
        self,
        kind: str,
        branch: Branch,
        customer_id: str,
        items: List[Tuple[str, int]],
        user_id: str | None,
    ) -> SaleResult:
        start_time = time.perf_counter()
        try:
            with self.inventory.branch_lock(branch):
                customer = self._resolve_customer(customer_id)
                cart = self._build_cart(branch, items)
                self._check_stock(cart)

                if kind == "SALE":
                    line = cart.lines[0]
                    summary = calculate_sale(line.product, line.quantity, customer.tier)
                else:
                    summary = summarize(cart.base_total, customer.tier)

                # Commit: nothing below fails for business reasons
                try:
                    self.inventory.commit_sale(branch, cart.demand())
                except InsufficientStock as e:
                    raise SaleError("NOT_ENOUGH_STOCK", e.sku) from e
                except SkuNotFound as e:
                    raise SaleError("SKU_NOT_FOUND", e.sku) from e
                tier_after = self.customers.record_purchase(customer.id)
                gift = self._grant_gift(branch, summary)
        except SaleError as e:
            _count_rejection(e.reason)
            logger.info(
                "Sale rejected",
                extra={
                    "user_id": user_id,
                    "extra": {"kind": kind, "branch": branch.value, "customer_id": customer_id, "reason": str(e)},
                },
            )
            raise

        lines = proportional_lines(cart, summary)
        try:
            SALES_TOTAL.inc(kind=kind, tier=summary.tier_code)
        except Exception:
            pass
        audit.record(
            kind,
            user_id=user_id,
            branch=branch,
            customer_id=customer.id,
            tier=summary.tier,
            items=len(cart.lines),
            base=money(summary.base),
            discount=money(summary.discount),
            final=money(summary.final),
            gift_eligible=summary.gift_eligible,
            gift=gift,
            tier_after=tier_after,
            duration=round(time.perf_counter() - start_time, 6),
        )
        return SaleResult(summary, lines, gift, tier_after)

    def _resolve_customer(self, customer_id: str) -> Customer:
        customer = self.customers.find_by_id(customer_id)
        if customer is None:
            raise SaleError("CUSTOMER_NOT_FOUND")
        return customer

    def _build_cart(self, branch: Branch, items: List[Tuple[str, int]]) -> Cart:
        # One snapshot of the branch; stop at the first unknown sku
        catalogue = {}
        for p in self.inventory.list_by_branch(branch):
            catalogue.setdefault(p.sku, p)
        cart = Cart()
        for sku, qty in items:
            product = catalogue.get(sku)
            if product is None:
                raise SaleError("SKU_NOT_FOUND", sku)
            cart.add(product, qty)
        return cart

    @staticmethod
    def _check_stock(cart: Cart) -> None:
        demand = cart.demand()
        for line in cart.lines:
            if line.product.quantity < demand[line.sku]:
                raise SaleError("NOT_ENOUGH_STOCK", line.sku)

    def _grant_gift(self, branch: Branch, summary: SaleSummary) -> GiftOutcome:
        if not summary.gift_eligible:
            return GiftOutcome.NONE
        if self.inventory.consume_one_in_category(branch, self.bonus_category):
            outcome = GiftOutcome.GRANTED
        else:
            outcome = GiftOutcome.OUT_OF_STOCK
        try:
            GIFTS_TOTAL.inc(outcome=outcome.value)
        except Exception:
            pass
        return outcome
