from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    Account,
    Department,
    DepartmentKind,
    DepartmentMembership,
    Organization,
    OrganizationMembership,
)

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS organization (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        domain TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        parent_id BIGINT REFERENCES organization(id) ON DELETE SET NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS organization_domain_key
        ON organization (domain) WHERE domain IS NOT NULL AND deleted_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS department (
        id BIGSERIAL PRIMARY KEY,
        organization_id BIGINT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        parent_id BIGINT REFERENCES department(id) ON DELETE SET NULL,
        kind TEXT NOT NULL DEFAULT 'DEPARTMENT',
        code TEXT,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        function TEXT NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_super_admin BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        primary_organization_id BIGINT REFERENCES organization(id) ON DELETE SET NULL,
        primary_department_id BIGINT REFERENCES department(id) ON DELETE SET NULL,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_email_key
        ON account (email) WHERE deleted_at IS NULL
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_username_key
        ON account (username) WHERE deleted_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS user_organization (
        user_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        organization_id BIGINT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        role TEXT NOT NULL DEFAULT '',
        is_primary BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, organization_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_department (
        user_id BIGINT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        department_id BIGINT NOT NULL REFERENCES department(id) ON DELETE CASCADE,
        role TEXT NOT NULL DEFAULT '',
        is_primary BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, department_id)
    )
    """,
]

# Columns callers may change through update_account / update_organization
_ACCOUNT_COLUMNS = frozenset(
    {
        "email",
        "username",
        "password_hash",
        "first_name",
        "last_name",
        "is_active",
        "is_verified",
        "is_super_admin",
        "mfa_enabled",
        "primary_organization_id",
        "primary_department_id",
        "login_attempts",
        "locked_until",
        "last_login",
        "deleted_at",
    }
)
_ORGANIZATION_COLUMNS = frozenset(
    {"name", "description", "domain", "is_active", "parent_id", "deleted_at"}
)

_CONSTRAINT_FIELDS = {
    "account_email_key": "email",
    "account_username_key": "username",
    "organization_domain_key": "domain",
}


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, "unknown")
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed credential and membership store."""

    def __init__(self, dsn: str, fs_root: Optional[str] = None) -> None:
        self.dsn = dsn
        self.fs_root = fs_root
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the identity tables and partial unique indexes if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=int(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            is_super_admin=row.get("is_super_admin", False),
            mfa_enabled=row.get("mfa_enabled", False),
            primary_organization_id=row.get("primary_organization_id"),
            primary_department_id=row.get("primary_department_id"),
            login_attempts=row.get("login_attempts") or 0,
            locked_until=row.get("locked_until"),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row.get("deleted_at"),
        )

    @staticmethod
    def _organization_from_row(row: Dict[str, Any], prefix: str = "") -> Organization:
        return Organization(
            id=int(row[f"{prefix}id"]),
            name=row[f"{prefix}name"],
            description=row.get(f"{prefix}description") or "",
            domain=row.get(f"{prefix}domain"),
            is_active=row.get(f"{prefix}is_active", True),
            parent_id=row.get(f"{prefix}parent_id"),
            created_at=row[f"{prefix}created_at"],
            updated_at=row[f"{prefix}updated_at"],
            deleted_at=row.get(f"{prefix}deleted_at"),
        )

    @staticmethod
    def _department_from_row(row: Dict[str, Any], prefix: str = "") -> Department:
        return Department(
            id=int(row[f"{prefix}id"]),
            organization_id=int(row[f"{prefix}organization_id"]),
            name=row[f"{prefix}name"],
            kind=DepartmentKind(row.get(f"{prefix}kind") or DepartmentKind.DEPARTMENT.value),
            parent_id=row.get(f"{prefix}parent_id"),
            code=row.get(f"{prefix}code"),
            description=row.get(f"{prefix}description") or "",
            function=row.get(f"{prefix}function") or "",
            is_active=row.get(f"{prefix}is_active", True),
            created_at=row[f"{prefix}created_at"],
            updated_at=row[f"{prefix}updated_at"],
            deleted_at=row.get(f"{prefix}deleted_at"),
        )

    # accounts
    def create_account(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = True,
        is_verified: bool = False,
        is_super_admin: bool = False,
        primary_organization_id: Optional[int] = None,
    ) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        email, username, password_hash, first_name, last_name,
                        is_active, is_verified, is_super_admin, primary_organization_id
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        email,
                        username,
                        password_hash,
                        first_name,
                        last_name,
                        is_active,
                        is_verified,
                        is_super_admin,
                        primary_organization_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._account_from_row(row)

    def _fetch_account(self, where: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {where} AND deleted_at IS NULL LIMIT 1",
                params,
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account(self, account_id: int) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("email = %s", (email,))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("username = %s", (username,))

    def get_account_by_login(self, identifier: str) -> Optional[Account]:
        return self._fetch_account(
            "(email = %s OR username = %s)", (identifier, identifier)
        )

    def update_account(self, account_id: int, **updates: Any) -> Optional[Account]:
        unknown = set(updates) - _ACCOUNT_COLUMNS
        if unknown:
            raise ValueError(f"unknown account fields: {sorted(unknown)}")
        if not updates:
            return self.get_account(account_id)
        assignments = ", ".join(f"{name} = %s" for name in updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE account SET {assignments}, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING *
                    """,
                    (*updates.values(), account_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._account_from_row(row) if row else None

    def increment_login_attempts(self, account_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET login_attempts = login_attempts + 1, updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                RETURNING login_attempts
                """,
                (account_id,),
            ).fetchone()
        return int(row["login_attempts"]) if row else 0

    def set_locked_until(self, account_id: int, until: Optional[datetime]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET locked_until = %s, updated_at = now() WHERE id = %s",
                (until, account_id),
            )

    def record_successful_login(self, account_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET last_login = %s, login_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE id = %s
                """,
                (at, account_id),
            )

    def clear_lockout(self, account_id: int) -> Optional[Account]:
        return self.update_account(account_id, login_attempts=0, locked_until=None)

    def list_accounts(self, offset: int = 0, limit: int = 20) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM account WHERE deleted_at IS NULL
                ORDER BY created_at DESC, id DESC
                OFFSET %s LIMIT %s
                """,
                (offset, limit),
            ).fetchall()
        return [self._account_from_row(r) for r in rows]

    def count_accounts(self) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM account WHERE deleted_at IS NULL"
            ).fetchone()
        return int(row["total"]) if row else 0

    # organizations
    def create_organization(
        self,
        name: str,
        description: str = "",
        domain: Optional[str] = None,
        *,
        parent_id: Optional[int] = None,
        is_active: bool = True,
    ) -> Organization:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO organization (name, description, domain, parent_id, is_active)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (name, description, domain or None, parent_id, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._organization_from_row(row)

    def _fetch_organization(self, where: str, params: tuple) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM organization WHERE {where} AND deleted_at IS NULL ORDER BY id LIMIT 1",
                params,
            ).fetchone()
        return self._organization_from_row(row) if row else None

    def get_organization(self, org_id: int) -> Optional[Organization]:
        return self._fetch_organization("id = %s", (org_id,))

    def get_organization_by_domain(self, domain: str) -> Optional[Organization]:
        return self._fetch_organization("domain = %s", (domain,))

    def get_organization_by_name(self, name: str) -> Optional[Organization]:
        return self._fetch_organization("name = %s", (name,))

    def update_organization(self, org_id: int, **updates: Any) -> Optional[Organization]:
        unknown = set(updates) - _ORGANIZATION_COLUMNS
        if unknown:
            raise ValueError(f"unknown organization fields: {sorted(unknown)}")
        if not updates:
            return self.get_organization(org_id)
        assignments = ", ".join(f"{name} = %s" for name in updates)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE organization SET {assignments}, updated_at = now()
                    WHERE id = %s AND deleted_at IS NULL
                    RETURNING *
                    """,
                    (*updates.values(), org_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._organization_from_row(row) if row else None

    def list_organizations(self) -> List[Organization]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM organization WHERE deleted_at IS NULL ORDER BY name, id"
            ).fetchall()
        return [self._organization_from_row(r) for r in rows]

    def list_child_organizations(self, parent_id: int) -> List[Organization]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM organization
                WHERE parent_id = %s AND deleted_at IS NULL
                ORDER BY name, id
                """,
                (parent_id,),
            ).fetchall()
        return [self._organization_from_row(r) for r in rows]

    # departments
    def create_department(
        self,
        organization_id: int,
        name: str,
        *,
        kind: DepartmentKind = DepartmentKind.DEPARTMENT,
        parent_id: Optional[int] = None,
        code: Optional[str] = None,
        description: str = "",
        function: str = "",
        is_active: bool = True,
    ) -> Department:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO department (
                    organization_id, parent_id, kind, code, name, description, function, is_active
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    organization_id,
                    parent_id,
                    kind.value,
                    code,
                    name,
                    description,
                    function,
                    is_active,
                ),
            ).fetchone()
        return self._department_from_row(row)

    def get_department(self, dept_id: int) -> Optional[Department]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM department WHERE id = %s AND deleted_at IS NULL",
                (dept_id,),
            ).fetchone()
        return self._department_from_row(row) if row else None

    def list_departments(self, organization_id: int) -> List[Department]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM department
                WHERE organization_id = %s AND deleted_at IS NULL
                ORDER BY name, id
                """,
                (organization_id,),
            ).fetchall()
        return [self._department_from_row(r) for r in rows]

    def list_child_departments(self, parent_id: int) -> List[Department]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM department
                WHERE parent_id = %s AND deleted_at IS NULL
                ORDER BY name, id
                """,
                (parent_id,),
            ).fetchall()
        return [self._department_from_row(r) for r in rows]

    # memberships
    _ORG_MEMBERSHIP_SELECT = """
        SELECT m.user_id, m.organization_id, m.role, m.is_primary, m.created_at, m.updated_at,
               o.id AS org_id, o.name AS org_name, o.description AS org_description,
               o.domain AS org_domain, o.is_active AS org_is_active, o.parent_id AS org_parent_id,
               o.created_at AS org_created_at, o.updated_at AS org_updated_at,
               o.deleted_at AS org_deleted_at
        FROM user_organization m
        JOIN organization o ON o.id = m.organization_id AND o.deleted_at IS NULL
    """

    _DEPT_MEMBERSHIP_SELECT = """
        SELECT m.user_id, m.department_id, m.role, m.is_primary, m.created_at, m.updated_at,
               d.id AS dept_id, d.organization_id AS dept_organization_id, d.name AS dept_name,
               d.kind AS dept_kind, d.parent_id AS dept_parent_id, d.code AS dept_code,
               d.description AS dept_description, d.function AS dept_function,
               d.is_active AS dept_is_active, d.created_at AS dept_created_at,
               d.updated_at AS dept_updated_at, d.deleted_at AS dept_deleted_at
        FROM user_department m
        JOIN department d ON d.id = m.department_id AND d.deleted_at IS NULL
    """

    def _org_membership_from_row(self, row: Dict[str, Any]) -> OrganizationMembership:
        return OrganizationMembership(
            user_id=int(row["user_id"]),
            organization_id=int(row["organization_id"]),
            role=row.get("role") or "",
            is_primary=bool(row.get("is_primary")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            organization=self._organization_from_row(row, prefix="org_"),
        )

    def _dept_membership_from_row(self, row: Dict[str, Any]) -> DepartmentMembership:
        return DepartmentMembership(
            user_id=int(row["user_id"]),
            department_id=int(row["department_id"]),
            role=row.get("role") or "",
            is_primary=bool(row.get("is_primary")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            department=self._department_from_row(row, prefix="dept_"),
        )

    @staticmethod
    def _upsert_org_membership(conn, user_id: int, org_id: int, role: str, is_primary: bool) -> None:
        conn.execute(
            """
            INSERT INTO user_organization (user_id, organization_id, role, is_primary)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, organization_id) DO UPDATE
            SET role = EXCLUDED.role, is_primary = EXCLUDED.is_primary, updated_at = now()
            """,
            (user_id, org_id, role, is_primary),
        )

    @staticmethod
    def _upsert_dept_membership(conn, user_id: int, dept_id: int, role: str, is_primary: bool) -> None:
        conn.execute(
            """
            INSERT INTO user_department (user_id, department_id, role, is_primary)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (user_id, department_id) DO UPDATE
            SET role = EXCLUDED.role, is_primary = EXCLUDED.is_primary, updated_at = now()
            """,
            (user_id, dept_id, role, is_primary),
        )

    def upsert_organization_membership(
        self, user_id: int, org_id: int, role: str = "", is_primary: bool = False
    ) -> OrganizationMembership:
        with self._connect() as conn, conn.transaction():
            self._upsert_org_membership(conn, user_id, org_id, role, is_primary)
            if not is_primary:
                conn.execute(
                    """
                    UPDATE account SET primary_organization_id = NULL, updated_at = now()
                    WHERE id = %s AND primary_organization_id = %s
                    """,
                    (user_id, org_id),
                )
        return self.get_organization_membership(user_id, org_id)

    def upsert_department_membership(
        self, user_id: int, dept_id: int, role: str = "", is_primary: bool = False
    ) -> DepartmentMembership:
        with self._connect() as conn, conn.transaction():
            self._upsert_dept_membership(conn, user_id, dept_id, role, is_primary)
            if not is_primary:
                conn.execute(
                    """
                    UPDATE account SET primary_department_id = NULL, updated_at = now()
                    WHERE id = %s AND primary_department_id = %s
                    """,
                    (user_id, dept_id),
                )
        return self.get_department_membership(user_id, dept_id)

    def get_organization_membership(
        self, user_id: int, org_id: int
    ) -> Optional[OrganizationMembership]:
        with self._connect() as conn:
            row = conn.execute(
                self._ORG_MEMBERSHIP_SELECT
                + " WHERE m.user_id = %s AND m.organization_id = %s",
                (user_id, org_id),
            ).fetchone()
        return self._org_membership_from_row(row) if row else None

    def get_department_membership(
        self, user_id: int, dept_id: int
    ) -> Optional[DepartmentMembership]:
        with self._connect() as conn:
            row = conn.execute(
                self._DEPT_MEMBERSHIP_SELECT
                + " WHERE m.user_id = %s AND m.department_id = %s",
                (user_id, dept_id),
            ).fetchone()
        return self._dept_membership_from_row(row) if row else None

    def list_user_organizations(self, user_id: int) -> List[OrganizationMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                self._ORG_MEMBERSHIP_SELECT
                + " WHERE m.user_id = %s ORDER BY m.is_primary DESC, m.updated_at DESC",
                (user_id,),
            ).fetchall()
        return [self._org_membership_from_row(r) for r in rows]

    def list_user_departments(self, user_id: int) -> List[DepartmentMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                self._DEPT_MEMBERSHIP_SELECT
                + " WHERE m.user_id = %s ORDER BY m.is_primary DESC, m.updated_at DESC",
                (user_id,),
            ).fetchall()
        return [self._dept_membership_from_row(r) for r in rows]

    def remove_organization_membership(self, user_id: int, org_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                DELETE FROM user_organization WHERE user_id = %s AND organization_id = %s
                RETURNING user_id
                """,
                (user_id, org_id),
            ).fetchone()
            conn.execute(
                """
                UPDATE account SET primary_organization_id = NULL, updated_at = now()
                WHERE id = %s AND primary_organization_id = %s
                """,
                (user_id, org_id),
            )
        return row is not None

    def remove_department_membership(self, user_id: int, dept_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                DELETE FROM user_department WHERE user_id = %s AND department_id = %s
                RETURNING user_id
                """,
                (user_id, dept_id),
            ).fetchone()
            conn.execute(
                """
                UPDATE account SET primary_department_id = NULL, updated_at = now()
                WHERE id = %s AND primary_department_id = %s
                """,
                (user_id, dept_id),
            )
        return row is not None

    def clear_primary_organizations(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_organization SET is_primary = FALSE, updated_at = now()
                WHERE user_id = %s AND is_primary
                """,
                (user_id,),
            )

    def clear_primary_departments(self, user_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE user_department SET is_primary = FALSE, updated_at = now()
                WHERE user_id = %s AND is_primary
                """,
                (user_id,),
            )

    def assign_primary_organization(
        self, user_id: int, org_id: int, role: str = ""
    ) -> OrganizationMembership:
        """Make ``org_id`` the user's only primary organization in one transaction.

        The account row is locked first so concurrent assignments for the same
        user serialize on it.
        """
        with self._connect() as conn, conn.transaction():
            conn.execute("SELECT id FROM account WHERE id = %s FOR UPDATE", (user_id,))
            conn.execute(
                """
                UPDATE user_organization SET is_primary = FALSE, updated_at = now()
                WHERE user_id = %s AND is_primary AND organization_id <> %s
                """,
                (user_id, org_id),
            )
            self._upsert_org_membership(conn, user_id, org_id, role, True)
            conn.execute(
                "UPDATE account SET primary_organization_id = %s, updated_at = now() WHERE id = %s",
                (org_id, user_id),
            )
        return self.get_organization_membership(user_id, org_id)

    def assign_primary_department(
        self, user_id: int, dept_id: int, role: str = ""
    ) -> DepartmentMembership:
        with self._connect() as conn, conn.transaction():
            conn.execute("SELECT id FROM account WHERE id = %s FOR UPDATE", (user_id,))
            conn.execute(
                """
                UPDATE user_department SET is_primary = FALSE, updated_at = now()
                WHERE user_id = %s AND is_primary AND department_id <> %s
                """,
                (user_id, dept_id),
            )
            self._upsert_dept_membership(conn, user_id, dept_id, role, True)
            conn.execute(
                "UPDATE account SET primary_department_id = %s, updated_at = now() WHERE id = %s",
                (dept_id, user_id),
            )
        return self.get_department_membership(user_id, dept_id)
