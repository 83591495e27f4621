"""
Operator command line for the store server.

``serve`` runs the TCP server; the remaining commands seed or inspect the
data files directly, without a running server.  Keeping these out of the
protocol handler lets the records be prepared before the first client
connects::

    python src/cli.py add-employee dana s3cret CASHIER HOLON --full-name "Dana Levi"
    python src/cli.py add-customer C100 "Noa Cohen" 050-1234567
    python src/cli.py add-product TEL_AVIV SHIRT 20 49.90
    python src/cli.py serve --port 5050
"""

import argparse
import sys

import logging_config
from auth import EmployeeDirectory
from customers import CustomerError, CustomerStore, Tier
from inventory import Branch, InventoryStore, parse_price
from line_store import LineStore
from sales import format_money
from store_server import ServerConfig, run_server


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--data-dir", help="Directory holding the table files (default: STORE_DATA_DIR or data)")

    parser = argparse.ArgumentParser(prog="store", description="Branch store server tools")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", parents=[common], help="Run the TCP store server")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--log-dir")

    emp = sub.add_parser("add-employee", parents=[common], help="Create an employee account")
    emp.add_argument("username")
    emp.add_argument("password")
    emp.add_argument("role")
    emp.add_argument("branch")
    emp.add_argument("--full-name", default="")
    emp.add_argument("--phone", default="")
    emp.add_argument("--account", default="")
    emp.add_argument("--national-id", default="")

    sub.add_parser("list-employees", parents=[common], help="Print all employees")

    rm = sub.add_parser("remove-employee", parents=[common], help="Delete an employee by id")
    rm.add_argument("employee_id")

    cust = sub.add_parser("add-customer", parents=[common], help="Register a customer")
    cust.add_argument("customer_id")
    cust.add_argument("full_name")
    cust.add_argument("phone")
    cust.add_argument("--tier", default="NEW")

    prod = sub.add_parser("add-product", parents=[common], help="Add a product row to a branch")
    prod.add_argument("branch")
    prod.add_argument("category")
    prod.add_argument("quantity", type=int)
    prod.add_argument("price")
    return parser


def _config(args: argparse.Namespace) -> ServerConfig:
    config = ServerConfig.from_env()
    if args.data_dir:
        config.data_dir = args.data_dir
    if getattr(args, "host", None):
        config.host = args.host
    if getattr(args, "port", None) is not None:
        config.port = args.port
    if getattr(args, "log_dir", None):
        config.log_dir = args.log_dir
    return config


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = _config(args)

    if args.command == "serve":
        logging_config.configure_logging(config.log_dir)
        run_server(config)
        return 0

    store = LineStore(config.data_dir)
    try:
        if args.command == "add-employee":
            employee = EmployeeDirectory(store).add(
                args.username,
                args.password,
                args.role,
                Branch.parse(args.branch),
                account_number=args.account,
                phone=args.phone,
                full_name=args.full_name,
                national_id=args.national_id,
            )
            print(f"Added employee {employee.employee_id} ({employee.username}).")
        elif args.command == "list-employees":
            for e in EmployeeDirectory(store).list_all():
                print(f"{e.employee_id}  {e.username:<16} {e.role:<14} {e.branch.value:<9} {e.full_name}")
        elif args.command == "remove-employee":
            if not EmployeeDirectory(store).remove(args.employee_id):
                print(f"No employee with id {args.employee_id}.")
                return 1
            print(f"Removed employee {args.employee_id}.")
        elif args.command == "add-customer":
            CustomerStore(store).add(args.customer_id, args.full_name, args.phone, Tier.parse(args.tier))
            print(f"Added customer {args.customer_id}.")
        elif args.command == "add-product":
            product = InventoryStore(store).add_product(
                Branch.parse(args.branch), args.category, args.quantity, parse_price(args.price)
            )
            print(f"Added {product.sku}: {product.category} x {product.quantity} @ {format_money(product.price)}")
    except (ValueError, CustomerError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user. Exiting.")
        sys.exit(0)
