"""
Customer store with loyalty tiering.

Customers live in the ``customers`` table (``id,fullName,phone,tier``) and
purchase counters in ``customer_stats`` (``id,count``).  The tier is derived
from the purchase counter each time a purchase is recorded:

* 10 or more purchases: VIP
* 2 or more purchases: RETURNING
* otherwise: NEW

A tier only ever moves up.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, replace
from typing import List, Optional

import audit
from line_store import LineStore, is_record

logger = logging.getLogger(__name__)

CUSTOMERS_TABLE = "customers"
STATS_TABLE = "customer_stats"

VIP_THRESHOLD = 10
RETURNING_THRESHOLD = 2


class Tier(enum.Enum):
    NEW = "NEW"
    RETURNING = "RETURNING"
    VIP = "VIP"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    @classmethod
    def parse(cls, code: str | None) -> "Tier":
        """Unknown or empty codes fall back to NEW."""
        if not code:
            return cls.NEW
        try:
            return cls[code.strip().upper()]
        except KeyError:
            return cls.NEW


_TIER_ORDER = [Tier.NEW, Tier.RETURNING, Tier.VIP]


def tier_for_count(count: int) -> Tier:
    if count >= VIP_THRESHOLD:
        return Tier.VIP
    if count >= RETURNING_THRESHOLD:
        return Tier.RETURNING
    return Tier.NEW


@dataclass(frozen=True)
class Customer:
    id: str
    full_name: str
    phone: str
    tier: Tier

    def to_line(self) -> str:
        return ",".join([self.id, self.full_name, self.phone, self.tier.value])

    @classmethod
    def from_line(cls, line: str) -> Optional["Customer"]:
        t = line.strip().split(",")
        if len(t) < 4:
            return None
        return cls(t[0], t[1], t[2], Tier.parse(t[3]))


class CustomerError(Exception):
    reason = "CUSTOMER_ERROR"


class CustomerNotFound(CustomerError):
    reason = "CUSTOMER_NOT_FOUND"

    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Customer not found: {customer_id}")
        self.customer_id = customer_id


class CustomerExists(CustomerError):
    reason = "CUSTOMER_EXISTS"

    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Customer already exists: {customer_id}")
        self.customer_id = customer_id


class CustomerStore:
    """Customer records and purchase counters."""

    def __init__(self, line_store: LineStore) -> None:
        self._db = line_store
        self._lock = threading.RLock()

    # ---- Customers ----

    def list_all(self) -> List[Customer]:
        with self._lock:
            out = []
            for line in self._db.read_all_lines(CUSTOMERS_TABLE):
                if not is_record(line):
                    continue
                c = Customer.from_line(line)
                if c is not None:
                    out.append(c)
            return out

    def find_by_id(self, customer_id: str) -> Optional[Customer]:
        for c in self.list_all():
            if c.id == customer_id:
                return c
        return None

    def upsert(self, customer: Customer) -> None:
        """Insert ``customer`` or replace the record with the same id."""
        with self._lock:
            lines = self._db.read_all_lines(CUSTOMERS_TABLE)
            for i, line in enumerate(lines):
                if not is_record(line):
                    continue
                existing = Customer.from_line(line)
                if existing is not None and existing.id == customer.id:
                    lines[i] = customer.to_line()
                    break
            else:
                lines.append(customer.to_line())
            self._db.write_all_lines(CUSTOMERS_TABLE, lines)

    def add(self, customer_id: str, full_name: str, phone: str, tier: Tier | str = Tier.NEW) -> Customer:
        """Create a customer; fails if the id is already taken.

        Raises:
            ValueError: For a blank id or a field containing a comma.
            CustomerExists: If ``customer_id`` is already present.
        """
        if customer_id is None or not customer_id.strip():
            raise ValueError("Customer ID is required")
        full_name = full_name or ""
        phone = phone or ""
        if any("," in field for field in (customer_id, full_name, phone)):
            raise ValueError("Commas are not allowed")
        if not isinstance(tier, Tier):
            tier = Tier.parse(tier)
        with self._lock:
            if self.find_by_id(customer_id) is not None:
                raise CustomerExists(customer_id)
            customer = Customer(customer_id, full_name, phone, tier)
            self.upsert(customer)
            self._ensure_stats_row(customer_id)
        audit.record("CUSTOMER_ADDED", customer_id=customer_id, full_name=full_name, phone=phone, tier=tier)
        return customer

    # ---- Purchase counter ----

    def purchase_count(self, customer_id: str) -> int:
        for line in self._db.read_all_lines(STATS_TABLE):
            if not is_record(line):
                continue
            t = line.strip().split(",")
            if len(t) >= 2 and t[0] == customer_id:
                return _parse_int(t[1])
        return 0

    def record_purchase(self, customer_id: str) -> Tier:
        """Count one purchase and promote the customer if a threshold is crossed.

        Returns:
            The customer's tier after the purchase.

        Raises:
            CustomerNotFound: If ``customer_id`` is unknown.
        """
        with self._lock:
            current = self.find_by_id(customer_id)
            if current is None:
                raise CustomerNotFound(customer_id)
            count = self._increment_count(customer_id)
            derived = tier_for_count(count)
            if derived.rank > current.tier.rank:
                self.upsert(replace(current, tier=derived))
                audit.record(
                    "CUSTOMER_PROMOTED",
                    customer_id=customer_id,
                    previous=current.tier,
                    tier=derived,
                    purchases=count,
                )
                return derived
            return current.tier

    def _ensure_stats_row(self, customer_id: str) -> None:
        lines = self._db.read_all_lines(STATS_TABLE)
        for line in lines:
            if is_record(line) and line.strip().split(",")[0] == customer_id:
                return
        lines.append(f"{customer_id},0")
        self._db.write_all_lines(STATS_TABLE, lines)

    def _increment_count(self, customer_id: str) -> int:
        lines = self._db.read_all_lines(STATS_TABLE)
        for i, line in enumerate(lines):
            if not is_record(line):
                continue
            t = line.strip().split(",")
            if len(t) >= 2 and t[0] == customer_id:
                count = _parse_int(t[1]) + 1
                lines[i] = f"{customer_id},{count}"
                break
        else:
            count = 1
            lines.append(f"{customer_id},{count}")
        self._db.write_all_lines(STATS_TABLE, lines)
        return count


def _parse_int(text: str) -> int:
    try:
        return int(text.strip())
    except ValueError:
        return 0
