"""
TCP store server.

Accepts client connections and hands each one to a ``ClientHandler`` running
on its own thread.  There is no connection limit: every accepted socket gets
a thread.  All handlers share one set of stores, one session registry and
one sales service, created here.

Run the server with:

    python store_server.py

It listens on 0.0.0.0:5050 by default; see ``ServerConfig.from_env`` for the
environment variables that change this.  Use CTRL+C to stop.
"""

from __future__ import annotations

import logging
import os
import socketserver
import sys
from dataclasses import dataclass

import logging_config
from auth import AuthService, EmployeeDirectory
from client_handler import ClientHandler
from customers import CustomerStore
from inventory import InventoryStore
from line_store import LineStore, resolve_data_dir
from sales import SalesService
from sessions import SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5050


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off", "")


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    data_dir: str = "data"
    log_dir: str = "logs"
    require_login: bool = True
    admin_username: str = "admin"
    admin_password: str = "admin"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        try:
            port = int(os.environ.get("STORE_PORT", str(DEFAULT_PORT)))
        except ValueError:
            port = DEFAULT_PORT
        return cls(
            host=os.environ.get("STORE_HOST", "0.0.0.0"),
            port=port,
            data_dir=resolve_data_dir(),
            log_dir=os.environ.get("STORE_LOG_DIR", "logs"),
            require_login=_env_flag("STORE_REQUIRE_LOGIN", True),
            admin_username=os.environ.get("STORE_ADMIN_USER", "admin"),
            admin_password=os.environ.get("STORE_ADMIN_PASSWORD", "admin"),
        )


class StoreServer(socketserver.ThreadingTCPServer):
    """Thread-per-connection listener owning the shared services."""

    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, config: ServerConfig, handler_class=ClientHandler) -> None:
        self.config = config
        line_store = LineStore(config.data_dir)
        self.inventory = InventoryStore(line_store)
        self.customers = CustomerStore(line_store)
        self.employees = EmployeeDirectory(line_store)
        self.sessions = SessionRegistry()
        self.auth = AuthService(
            self.employees,
            self.sessions,
            admin_username=config.admin_username,
            admin_password=config.admin_password,
        )
        self.sales = SalesService(self.inventory, self.customers)
        super().__init__((config.host, config.port), handler_class)

    def server_close(self) -> None:
        super().server_close()
        self.sessions.clear()


def run_server(config: ServerConfig) -> None:
    """Bind, serve until interrupted, then release the registry."""
    try:
        server = StoreServer(config)
    except OSError as e:
        logger.critical(f"StoreServer cannot listen on {config.host}:{config.port}: {e}")
        sys.exit(1)
    host, port = server.server_address[:2]
    logger.info(f"StoreServer started on {host}:{port}", extra={"extra": {"data_dir": config.data_dir}})
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    except OSError as e:
        logger.critical(f"StoreServer fatal error: {e}")
        sys.exit(1)
    finally:
        server.server_close()


def main() -> None:
    config = ServerConfig.from_env()
    logging_config.configure_logging(config.log_dir)
    run_server(config)


if __name__ == "__main__":
    main()
