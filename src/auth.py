"""
Employee directory and login checks.

Employees live in the ``employees`` table, one CSV record per line::

    employeeId,username,passwordHash,role,branch,accountNumber,phone,fullName,nationalId

Passwords are stored only as SHA-256 hex digests.  The admin account is a
fixed username/password pair taken from the server configuration.
"""

from __future__ import annotations

import enum
import hashlib
import hmac
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from inventory import Branch
from line_store import LineStore, is_record
from metrics import LOGINS_TOTAL
from sessions import SessionRegistry

logger = logging.getLogger(__name__)

EMPLOYEES_TABLE = "employees"

ADMIN_ROLE = "admin"
EMPLOYEE_ROLES = ("SALESPERSON", "CASHIER", "SHIFT_MANAGER")


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Employee:
    employee_id: str
    username: str
    password_hash: str
    role: str
    branch: Branch
    account_number: str = ""
    phone: str = ""
    full_name: str = ""
    national_id: str = ""

    def to_line(self) -> str:
        return ",".join(
            [
                self.employee_id,
                self.username,
                self.password_hash,
                self.role,
                self.branch.value,
                self.account_number,
                self.phone,
                self.full_name,
                self.national_id,
            ]
        )

    @classmethod
    def from_line(cls, line: str) -> "Employee":
        t = line.strip().split(",")
        if len(t) != 9:
            raise ValueError("BAD_EMP_CSV")
        return cls(t[0], t[1], t[2], t[3], Branch(t[4]), t[5], t[6], t[7], t[8])


class EmployeeDirectory:
    """CRUD over the ``employees`` table."""

    def __init__(self, line_store: LineStore) -> None:
        self._db = line_store
        self._lock = threading.RLock()

    def list_all(self) -> List[Employee]:
        employees = []
        for line in self._db.read_all_lines(EMPLOYEES_TABLE):
            if not is_record(line):
                continue
            try:
                employees.append(Employee.from_line(line))
            except ValueError:
                logger.warning("Skipping malformed employee record")
        return sorted(employees, key=lambda e: e.employee_id)

    def find_by_username(self, username: str) -> Optional[Employee]:
        for e in self.list_all():
            if e.username == username:
                return e
        return None

    def add(
        self,
        username: str,
        password: str,
        role: str,
        branch: Branch,
        account_number: str = "",
        phone: str = "",
        full_name: str = "",
        national_id: str = "",
    ) -> Employee:
        """Create an employee with the next ``E#####`` id.

        Raises:
            ValueError: ``USERNAME_REQUIRED``, ``PASSWORD_REQUIRED``,
                ``USERNAME_ALREADY_EXISTS`` or ``NO_COMMAS_ALLOWED``.
        """
        if not username or not username.strip():
            raise ValueError("USERNAME_REQUIRED")
        if not password:
            raise ValueError("PASSWORD_REQUIRED")
        if any("," in (v or "") for v in (username, role, account_number, phone, full_name, national_id)):
            raise ValueError("NO_COMMAS_ALLOWED")
        with self._lock:
            existing = self.list_all()
            if any(e.username == username for e in existing):
                raise ValueError("USERNAME_ALREADY_EXISTS")
            employee = Employee(
                _next_employee_id(existing),
                username,
                hash_password(password),
                role.upper(),
                branch,
                account_number,
                phone,
                full_name,
                national_id,
            )
            self._save(existing + [employee])
        logger.info("Employee added", extra={"user_id": username, "extra": {"employee_id": employee.employee_id}})
        return employee

    def remove(self, employee_id: str) -> bool:
        with self._lock:
            existing = self.list_all()
            kept = [e for e in existing if e.employee_id != employee_id]
            if len(kept) == len(existing):
                return False
            self._save(kept)
        logger.info("Employee removed", extra={"extra": {"employee_id": employee_id}})
        return True

    def authenticate(self, username: str, password: str) -> Optional[Employee]:
        employee = self.find_by_username(username)
        if employee is None:
            return None
        if not hmac.compare_digest(employee.password_hash, hash_password(password)):
            return None
        return employee

    def _save(self, employees: List[Employee]) -> None:
        ordered = sorted(employees, key=lambda e: e.employee_id)
        self._db.write_all_lines(EMPLOYEES_TABLE, [e.to_line() for e in ordered])


def _next_employee_id(employees: List[Employee]) -> str:
    highest = 0
    for e in employees:
        if e.employee_id.startswith("E"):
            try:
                highest = max(highest, int(e.employee_id[1:]))
            except ValueError:
                pass
    return f"E{highest + 1:05d}"


class LoginResult(enum.Enum):
    SUCCESS = "SUCCESS"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ALREADY_CONNECTED = "ALREADY_CONNECTED"


class AuthService:
    """Checks credentials and reserves the username on success."""

    def __init__(
        self,
        employees: EmployeeDirectory,
        sessions: SessionRegistry,
        admin_username: str = "admin",
        admin_password: str = "admin",
    ) -> None:
        self.employees = employees
        self.sessions = sessions
        self._admin_username = admin_username
        self._admin_password = admin_password

    def login(self, username: str, password: str, role: str) -> LoginResult:
        if role.lower() == ADMIN_ROLE:
            valid = username == self._admin_username and hmac.compare_digest(
                password.encode("utf-8"), self._admin_password.encode("utf-8")
            )
        else:
            valid = self.employees.authenticate(username, password) is not None
        if not valid:
            result = LoginResult.INVALID_CREDENTIALS
            logger.warning("Login failed", extra={"user_id": username, "extra": {"role": role}})
        elif not self.sessions.reserve(username):
            result = LoginResult.ALREADY_CONNECTED
            logger.warning("Double login blocked", extra={"user_id": username, "extra": {"role": role}})
        else:
            result = LoginResult.SUCCESS
            logger.info("Login OK", extra={"user_id": username, "extra": {"role": role}})
        try:
            LOGINS_TOTAL.inc(result=result.value)
        except Exception:
            pass
        return result

    def logout(self, username: str | None) -> None:
        if username is not None:
            self.sessions.release(username)
            logger.info("Logout", extra={"user_id": username})
