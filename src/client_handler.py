"""
Line protocol handler: one instance per client connection.

The client sends one command per line; the handler answers with one or more
lines and waits for the next command.  Protocol::

    LOGIN <username> <password> <role: employee|admin>
    LOGOUT
    LIST <branch>
    BUY <branch> <sku> <quantity>
    SELL <branch> <sku> <quantity> <customerId>
    SELL_MULTI <branch> <customerId> <sku:qty,sku:qty,...>
    CUSTOMER_ADD <id> <fullName_underscored> <phone> [tier]
    CUSTOMER_LIST
    ADD_PRODUCT <branch> <category_underscored> <quantity> <price>   (admin)
    REMOVE_PRODUCT <branch> <sku>                                     (admin)
    METRICS                                                           (admin)

Errors are single ``ERR <REASON> [detail]`` lines and leave the connection
open.  Streamed responses end with ``OK END``.
"""

from __future__ import annotations

import enum
import logging
import socketserver
import time
from typing import Callable, Dict, List, Optional

from auth import ADMIN_ROLE, LoginResult
from customers import CustomerError, Tier
from inventory import Branch, SkuNotFound, parse_price
from line_store import StoreError
from metrics import (
    COMMAND_DURATION_SECONDS,
    COMMANDS_TOTAL,
    CONNECTIONS_ACTIVE,
    CONNECTIONS_TOTAL,
    exposition_lines,
)
from sales import GiftOutcome, SaleError, SaleResult, format_money, parse_quantity

logger = logging.getLogger(__name__)

END = "OK END"


class State(enum.Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    AUTHENTICATED = "AUTHENTICATED"
    CLOSED = "CLOSED"


class ProtocolError(Exception):
    """Reported to the client as ``ERR <reason> [detail]``."""

    def __init__(self, reason: str, detail: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.detail = detail

    def line(self) -> str:
        return f"ERR {self.reason}" if self.detail is None else f"ERR {self.reason} {self.detail}"


def reason_token(text: str) -> str:
    """Turn a free-text message into a single underscore-joined token."""
    return "_".join(str(text).split()) or "ERROR"


def gift_line(gift: GiftOutcome) -> Optional[str]:
    if gift is GiftOutcome.GRANTED:
        return "GIFT_SHIRT 1"
    if gift is GiftOutcome.OUT_OF_STOCK:
        return "GIFT_SHIRT_OUT_OF_STOCK"
    return None


class ClientHandler(socketserver.StreamRequestHandler):
    """Drives one connection from ``OK WELCOME`` to close.

    Shared services (stores, auth, sales) are attributes of the server.
    Session state (username, role) belongs to this handler only.
    """

    # (handler method name, minimum token count including the command, admin only)
    COMMANDS: Dict[str, tuple] = {
        "LOGIN": ("_cmd_login", 4, False),
        "LOGOUT": ("_cmd_logout", 1, False),
        "LIST": ("_cmd_list", 2, False),
        "BUY": ("_cmd_buy", 4, False),
        "SELL": ("_cmd_sell", 5, False),
        "SELL_MULTI": ("_cmd_sell_multi", 4, False),
        "CUSTOMER_ADD": ("_cmd_customer_add", 4, False),
        "CUSTOMER_LIST": ("_cmd_customer_list", 1, False),
        "ADD_PRODUCT": ("_cmd_add_product", 5, True),
        "REMOVE_PRODUCT": ("_cmd_remove_product", 3, True),
        "METRICS": ("_cmd_metrics", 1, True),
    }
    OPEN_COMMANDS = ("LOGIN", "LOGOUT")

    def setup(self) -> None:
        super().setup()
        self.state = State.UNAUTHENTICATED
        self.username: Optional[str] = None
        self.role: Optional[str] = None

    # -------------------
    # Connection loop
    # -------------------
    def handle(self) -> None:
        peer = "%s:%s" % self.client_address[:2]
        CONNECTIONS_TOTAL.inc()
        CONNECTIONS_ACTIVE.inc()
        logger.info("Client connected", extra={"extra": {"peer": peer}})
        try:
            self.send("OK WELCOME")
            while self.state is not State.CLOSED:
                raw = self.rfile.readline()
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                self.process_line(line)
        except StoreError:
            logger.exception("Store failure; closing connection", extra={"user_id": self.username})
            try:
                self.send("ERR STORE_FAILURE")
            except OSError:
                pass
        except OSError as e:
            logger.warning(f"Client I/O error: {e}", extra={"user_id": self.username, "extra": {"peer": peer}})
        except Exception:
            logger.exception("Unhandled error; closing connection", extra={"user_id": self.username})
        finally:
            self.close_session()
            CONNECTIONS_ACTIVE.dec()
            logger.info("Client disconnected", extra={"extra": {"peer": peer}})

    def close_session(self) -> None:
        """Release the username reservation (once) and stop reading."""
        if self.username is not None:
            self.server.auth.logout(self.username)
            self.username = None
        self.state = State.CLOSED

    def send(self, *lines: str) -> None:
        if lines:
            self.wfile.write("".join(f"{line}\n" for line in lines).encode("utf-8"))

    # -------------------
    # Dispatch
    # -------------------
    def process_line(self, line: str) -> None:
        """Handle one command line and write its full response."""
        tokens = line.split()
        command = tokens[0].upper()
        entry = self.COMMANDS.get(command)
        label = command if entry else "UNKNOWN"
        start = time.perf_counter()
        status = "ok"
        try:
            if entry is None:
                raise ProtocolError("UNKNOWN_CMD")
            method_name, min_tokens, admin_only = entry
            if (
                self.server.config.require_login
                and self.state is not State.AUTHENTICATED
                and command not in self.OPEN_COMMANDS
            ):
                raise ProtocolError("NOT_LOGGED_IN")
            if admin_only and self.role != ADMIN_ROLE:
                raise ProtocolError("FORBIDDEN")
            if len(tokens) < min_tokens:
                raise ProtocolError("BAD_ARGS")
            handler: Callable[[List[str]], None] = getattr(self, method_name)
            handler(tokens)
        except ProtocolError as e:
            status = e.reason
            self.send(e.line())
        except SaleError as e:
            status = e.reason
            self.send(ProtocolError(e.reason, e.detail).line())
        finally:
            try:
                COMMANDS_TOTAL.inc(command=label, status=status)
                COMMAND_DURATION_SECONDS.observe(time.perf_counter() - start, command=label)
            except Exception:
                pass

    # -------------------
    # Argument helpers
    # -------------------
    @staticmethod
    def _branch(token: str) -> Branch:
        try:
            return Branch.parse(token)
        except ValueError:
            raise ProtocolError("BAD_BRANCH") from None

    @staticmethod
    def _quantity(token: str) -> int:
        try:
            qty = parse_quantity(token)
        except ValueError:
            raise ProtocolError("BAD_QTY") from None
        if qty <= 0:
            raise ProtocolError("BAD_QTY")
        return qty

    # -------------------
    # Session commands
    # -------------------
    def _cmd_login(self, t: List[str]) -> None:
        if self.state is State.AUTHENTICATED:
            raise ProtocolError("LOGIN", "ALREADY_LOGGED_IN")
        username, password, role = t[1], t[2], t[3]
        result = self.server.auth.login(username, password, role)
        if result is LoginResult.SUCCESS:
            self.username = username
            self.role = ADMIN_ROLE if role.lower() == ADMIN_ROLE else "employee"
            self.state = State.AUTHENTICATED
            self.send("OK LOGIN")
        elif result is LoginResult.ALREADY_CONNECTED:
            raise ProtocolError("LOGIN", "ALREADY_CONNECTED")
        else:
            raise ProtocolError("LOGIN", "INVALID_CREDENTIALS")

    def _cmd_logout(self, t: List[str]) -> None:
        self.close_session()
        self.send("OK BYE")

    # -------------------
    # Inventory commands
    # -------------------
    def _cmd_list(self, t: List[str]) -> None:
        branch = self._branch(t[1])
        lines = [
            "ITEM " + ",".join([p.sku, p.category, p.branch.value, str(p.quantity), format_money(p.price)])
            for p in self.server.inventory.list_by_branch(branch)
        ]
        self.send(*lines, END)

    def _cmd_buy(self, t: List[str]) -> None:
        branch = self._branch(t[1])
        sku = t[2]
        qty = self._quantity(t[3])
        try:
            self.server.inventory.adjust_quantity(branch, sku, qty)
        except SkuNotFound:
            raise ProtocolError("SKU_NOT_FOUND", sku) from None
        self.send("OK BUY")

    def _cmd_add_product(self, t: List[str]) -> None:
        branch = self._branch(t[1])
        category = t[2].replace("_", " ")
        try:
            qty = parse_quantity(t[3])
        except ValueError:
            raise ProtocolError("BAD_QTY") from None
        if qty < 0:
            raise ProtocolError("BAD_QTY")
        try:
            price = parse_price(t[4])
        except ValueError:
            raise ProtocolError("BAD_PRICE") from None
        try:
            product = self.server.inventory.add_product(branch, category, qty, price)
        except ValueError as e:
            raise ProtocolError(reason_token(e)) from None
        self.send(f"OK PRODUCT_ADDED {product.sku}")

    def _cmd_remove_product(self, t: List[str]) -> None:
        branch = self._branch(t[1])
        if not self.server.inventory.remove_product(branch, t[2]):
            raise ProtocolError("SKU_NOT_FOUND", t[2])
        self.send("OK PRODUCT_REMOVED")

    # -------------------
    # Sales commands
    # -------------------
    def _cmd_sell(self, t: List[str]) -> None:
        branch = self._branch(t[1])
        qty = self._quantity(t[3])
        result = self.server.sales.sell(branch, t[2], qty, t[4], user_id=self.username)
        s = result.summary
        header = f"OK SALE {s.tier_code} {format_money(s.base)} {format_money(s.discount)} {format_money(s.final)}"
        self._send_sale(header, [], result)

    def _cmd_sell_multi(self, t: List[str]) -> None:
        branch = self._branch(t[1])
        customer_id = t[2]
        spec = "".join(t[3:])
        result = self.server.sales.sell_multi(branch, customer_id, spec, user_id=self.username)
        s = result.summary
        header = (
            f"OK SALE_MULTI {s.tier_code} {format_money(s.base)} {format_money(s.discount)} {format_money(s.final)}"
        )
        if result.gifted:
            header += " GIFT"
        body = [
            " ".join(
                [
                    "LINE",
                    ln.sku,
                    ln.category.replace(" ", "_"),
                    str(ln.quantity),
                    format_money(ln.unit_price),
                    format_money(ln.base),
                    format_money(ln.discount),
                    format_money(ln.final),
                ]
            )
            for ln in result.lines
        ]
        self._send_sale(header, body, result)

    def _send_sale(self, header: str, body: List[str], result: SaleResult) -> None:
        lines = [header, *body]
        gift = gift_line(result.gift)
        if gift:
            lines.append(gift)
        lines.append(END)
        self.send(*lines)

    # -------------------
    # Customer commands
    # -------------------
    def _cmd_customer_add(self, t: List[str]) -> None:
        customer_id = t[1]
        full_name = t[2].replace("_", " ")
        phone = t[3]
        tier = Tier.parse(t[4]) if len(t) >= 5 else Tier.NEW
        try:
            self.server.customers.add(customer_id, full_name, phone, tier)
        except (CustomerError, ValueError) as e:
            raise ProtocolError(reason_token(e)) from None
        self.send("OK CUSTOMER_ADDED")

    def _cmd_customer_list(self, t: List[str]) -> None:
        lines = [
            f"CUST {c.id},{c.full_name},{c.phone},{c.tier.value}" for c in self.server.customers.list_all()
        ]
        self.send(*lines, END)

    # -------------------
    # Admin
    # -------------------
    def _cmd_metrics(self, t: List[str]) -> None:
        self.send(*exposition_lines(), END)
