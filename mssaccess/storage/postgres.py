from __future__ import annotations

import json
from contextlib import contextmanager, nullcontext
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from mssaccess.logging import get_logger
from mssaccess.storage.common import (
    normalize_email,
    parse_datetime,
    parse_json_field,
    push_password_history,
)
from mssaccess.storage.errors import ConstraintViolation, StorageUnavailable
from mssaccess.storage.models import (
    AuditLogEntry,
    AuditQuery,
    Organization,
    PasswordResetToken,
    Session,
    TechnicianAccess,
    User,
)

# Connection bound by the innermost transaction() on this context
_tx_conn: ContextVar[Optional[psycopg.Connection]] = ContextVar("mssaccess_tx_conn", default=None)

_REQUIRED_TABLES = (
    "organizations",
    "users",
    "user_sessions",
    "technician_customer_access",
    "password_reset_tokens",
    "audit_logs",
)

_ORG_COLUMNS = {"name", "type", "domain", "sso_enabled", "status", "settings", "updated_at"}
_USER_COLUMNS = {
    "org_id",
    "email",
    "first_name",
    "last_name",
    "role",
    "status",
    "password_hash",
    "password_changed_at",
    "mfa_enabled",
    "mfa_secret",
    "mfa_backup_codes",
    "mfa_last_used",
    "failed_login_attempts",
    "locked_until",
    "last_login_at",
    "last_login_ip",
    "updated_at",
}
_ACCESS_COLUMNS = {
    "access_level",
    "expires_at",
    "status",
    "allowed_services",
    "ip_restrictions",
    "time_restrictions",
    "notes",
    "updated_at",
}
_JSON_COLUMNS = {
    "settings",
    "mfa_backup_codes",
    "password_history",
    "allowed_services",
    "ip_restrictions",
    "time_restrictions",
    "device_info",
    "action_data",
    "metadata",
}
_HISTOGRAM_COLUMNS = {"action_type", "resource_type", "risk_level"}


def _db_value(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return json.dumps(value if value is not None else None)
    return value


class PostgresStore:
    """Postgres-backed store for organizations, users, sessions, grants and audit rows."""

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        bound = _tx_conn.get()
        ctx = nullcontext(bound) if bound is not None else self.pool.connection()
        try:
            with ctx as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Run the block on one connection inside a database transaction.

        Nested calls reuse the bound connection and become savepoints.
        """
        with self._connect() as conn:
            with conn.transaction():
                token = _tx_conn.set(conn)
                try:
                    yield self
                finally:
                    _tx_conn.reset(token)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the identity tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # row mappers
    @staticmethod
    def _org_from_row(row: Dict[str, Any]) -> Organization:
        return Organization(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            domain=row.get("domain"),
            sso_enabled=bool(row.get("sso_enabled")),
            status=row["status"],
            settings=parse_json_field(row.get("settings"), {}),
            created_by=row.get("created_by"),
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            org_id=row["org_id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row["role"],
            status=row["status"],
            password_hash=row.get("password_hash"),
            password_changed_at=parse_datetime(row.get("password_changed_at")),
            password_history=parse_json_field(row.get("password_history"), []),
            mfa_enabled=bool(row.get("mfa_enabled")),
            mfa_secret=row.get("mfa_secret"),
            mfa_backup_codes=parse_json_field(row.get("mfa_backup_codes"), []),
            mfa_last_used=parse_datetime(row.get("mfa_last_used")),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=parse_datetime(row.get("locked_until")),
            last_login_at=parse_datetime(row.get("last_login_at")),
            last_login_ip=row.get("last_login_ip"),
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            session_token_hash=row["session_token_hash"],
            refresh_token_hash=row.get("refresh_token_hash"),
            created_at=parse_datetime(row["created_at"]),
            access_expires_at=parse_datetime(row["access_expires_at"]),
            expires_at=parse_datetime(row["expires_at"]),
            last_activity_at=parse_datetime(row["last_activity_at"]),
            status=row["status"],
            device_info=parse_json_field(row.get("device_info"), {}),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            location=row.get("location"),
            revoked_at=parse_datetime(row.get("revoked_at")),
            revoked_reason=row.get("revoked_reason"),
        )

    @staticmethod
    def _access_from_row(row: Dict[str, Any]) -> TechnicianAccess:
        return TechnicianAccess(
            id=row["id"],
            technician_id=row["technician_id"],
            customer_org_id=row["customer_org_id"],
            access_level=row["access_level"],
            granted_by=row.get("granted_by"),
            granted_at=parse_datetime(row["granted_at"]),
            expires_at=parse_datetime(row.get("expires_at")),
            status=row["status"],
            allowed_services=parse_json_field(row.get("allowed_services"), []),
            ip_restrictions=parse_json_field(row.get("ip_restrictions"), []),
            time_restrictions=parse_json_field(row.get("time_restrictions"), {}),
            notes=row.get("notes"),
            transferred_from=row.get("transferred_from"),
            revoked_at=parse_datetime(row.get("revoked_at")),
            revoked_by=row.get("revoked_by"),
            revoked_reason=row.get("revoked_reason"),
            updated_at=parse_datetime(row.get("updated_at")),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> PasswordResetToken:
        return PasswordResetToken(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            expires_at=parse_datetime(row["expires_at"]),
            created_at=parse_datetime(row["created_at"]),
            used_at=parse_datetime(row.get("used_at")),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=row["id"],
            action_type=row["action_type"],
            resource_type=row["resource_type"],
            action_description=row["action_description"],
            timestamp=parse_datetime(row["timestamp"]),
            user_id=row.get("user_id"),
            session_id=row.get("session_id"),
            organization_id=row.get("organization_id"),
            resource_id=row.get("resource_id"),
            action_data=parse_json_field(row.get("action_data"), {}),
            schema_version=int(row.get("schema_version") or 1),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            risk_level=row["risk_level"],
            compliance_relevant=bool(row.get("compliance_relevant")),
            metadata=parse_json_field(row.get("metadata"), {}),
        )

    @staticmethod
    def _set_clause(changes: Dict[str, Any], allowed: set[str]) -> Tuple[str, List[Any]]:
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"unsupported columns: {', '.join(sorted(unknown))}")
        parts = [f"{column} = %s" for column in changes]
        params = [_db_value(column, value) for column, value in changes.items()]
        return ", ".join(parts), params

    # organizations
    def create_organization(self, org: Organization) -> Organization:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO organizations (id, name, type, domain, sso_enabled, status,
                                               settings, created_by, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        org.id,
                        org.name,
                        org.type,
                        org.domain,
                        org.sso_enabled,
                        org.status,
                        json.dumps(org.settings or {}),
                        org.created_by,
                        org.created_at,
                        org.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("organization name already exists", {"field": "name"})
        return org

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM organizations WHERE id = %s", (org_id,)).fetchone()
        return self._org_from_row(row) if row else None

    def list_organizations(
        self,
        *,
        org_type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Organization], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if org_type:
            clauses.append("type = %s")
            params.append(org_type)
        if status:
            clauses.append("status = %s")
            params.append(status)
        if search:
            clauses.append("(name ILIKE %s OR domain ILIKE %s)")
            params.extend([f"%{search}%", f"%{search}%"])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM organizations {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM organizations {where} ORDER BY lower(name), id LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        return [self._org_from_row(r) for r in rows], int(total_row["total"])

    def update_organization(self, org_id: str, **changes: Any) -> Optional[Organization]:
        if not changes:
            return self.get_organization(org_id)
        set_sql, params = self._set_clause(changes, _ORG_COLUMNS)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE organizations SET {set_sql} WHERE id = %s RETURNING *",
                    [*params, org_id],
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("organization name already exists", {"field": "name"})
        return self._org_from_row(row) if row else None

    # users
    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, org_id, email, first_name, last_name, role, status,
                                       password_hash, password_changed_at, password_history,
                                       mfa_enabled, mfa_secret, mfa_backup_codes,
                                       failed_login_attempts, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.org_id,
                        email,
                        user.first_name,
                        user.last_name,
                        user.role,
                        user.status,
                        user.password_hash,
                        user.password_changed_at,
                        json.dumps(user.password_history or []),
                        user.mfa_enabled,
                        user.mfa_secret,
                        json.dumps(user.mfa_backup_codes or []),
                        user.failed_login_attempts,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("organization does not exist", {"field": "org_id"})
        user.email = email
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(
        self,
        *,
        org_id: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
        status: Optional[str] = None,
    ) -> List[User]:
        clauses: List[str] = []
        params: List[Any] = []
        if org_id:
            clauses.append("org_id = %s")
            params.append(org_id)
        if roles:
            clauses.append("role = ANY(%s)")
            params.append(list(roles))
        if status:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM users {where} ORDER BY lower(last_name), lower(first_name), id",
                params,
            ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        if not changes:
            return self.get_user(user_id)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        set_sql, params = self._set_clause(changes, _USER_COLUMNS)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET {set_sql} WHERE id = %s RETURNING *",
                    [*params, user_id],
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def set_org_users_status(self, org_id: str, status: str, at: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE users SET status = %s, updated_at = %s
                WHERE org_id = %s AND status <> %s
                RETURNING id
                """,
                (status, at, org_id, status),
            ).fetchall()
        return [r["id"] for r in rows]

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[Tuple[int, Optional[datetime]]]:
        """Increment the counter and lock at the threshold in one statement."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET failed_login_attempts = failed_login_attempts + 1,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s AND locked_until IS NULL THEN %s
                        ELSE locked_until
                    END
                WHERE id = %s
                RETURNING failed_login_attempts, locked_until
                """,
                (threshold, lock_until, user_id),
            ).fetchone()
        if not row:
            return None
        return int(row["failed_login_attempts"]), parse_datetime(row.get("locked_until"))

    def reset_failed_logins(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET failed_login_attempts = 0, locked_until = NULL WHERE id = %s",
                (user_id,),
            )

    def record_login(self, user_id: str, *, ip_address: Optional[str], at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login_at = %s, last_login_ip = %s WHERE id = %s",
                (at, ip_address, user_id),
            )

    def set_password(
        self, user_id: str, password_hash: str, *, history_size: int, at: datetime
    ) -> Optional[User]:
        """Store a new hash, push it onto the reuse history and clear lockout."""
        with self.transaction():
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT password_history FROM users WHERE id = %s FOR UPDATE",
                    (user_id,),
                ).fetchone()
                if not row:
                    return None
                history = push_password_history(
                    parse_json_field(row.get("password_history"), []),
                    password_hash,
                    history_size,
                )
                updated = conn.execute(
                    """
                    UPDATE users
                    SET password_hash = %s,
                        password_history = %s,
                        password_changed_at = %s,
                        failed_login_attempts = 0,
                        locked_until = NULL,
                        status = CASE WHEN status = 'locked' THEN 'active' ELSE status END,
                        updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (password_hash, json.dumps(history), at, at, user_id),
                ).fetchone()
        return self._user_from_row(updated) if updated else None

    # mfa
    def set_mfa_pending(
        self, user_id: str, encrypted_secret: str, backup_code_hashes: List[str]
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users SET mfa_secret = %s, mfa_backup_codes = %s
                WHERE id = %s AND mfa_enabled = FALSE
                """,
                (encrypted_secret, json.dumps(backup_code_hashes), user_id),
            )
            return cur.rowcount == 1

    def enable_mfa(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET mfa_enabled = TRUE WHERE id = %s AND mfa_secret IS NOT NULL",
                (user_id,),
            )
            return cur.rowcount == 1

    def disable_mfa(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET mfa_enabled = FALSE, mfa_secret = NULL, mfa_backup_codes = '[]'::jsonb,
                    mfa_last_used = NULL
                WHERE id = %s
                """,
                (user_id,),
            )
            return cur.rowcount == 1

    def replace_backup_codes(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE users SET mfa_backup_codes = %s WHERE id = %s AND mfa_enabled = TRUE",
                (json.dumps(backup_code_hashes), user_id),
            )
            return cur.rowcount == 1

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Remove ``code_hash`` if present and return the remaining count."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET mfa_backup_codes = mfa_backup_codes - %s
                WHERE id = %s AND mfa_backup_codes ? %s
                RETURNING jsonb_array_length(mfa_backup_codes) AS remaining
                """,
                (code_hash, user_id, code_hash),
            ).fetchone()
        return int(row["remaining"]) if row else None

    def touch_mfa_used(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE users SET mfa_last_used = %s WHERE id = %s", (at, user_id))

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_sessions (id, user_id, session_token_hash, refresh_token_hash,
                                               device_info, ip_address, user_agent, location,
                                               created_at, access_expires_at, expires_at,
                                               last_activity_at, status)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.session_token_hash,
                        session.refresh_token_hash,
                        json.dumps(session.device_info or {}),
                        session.ip_address,
                        session.user_agent,
                        session.location,
                        session.created_at,
                        session.access_expires_at,
                        session.expires_at,
                        session.last_activity_at,
                        session.status,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM user_sessions WHERE id = %s", (session_id,)).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE refresh_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_access_hash(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE session_token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str, *, status: Optional[str] = "active") -> List[Session]:
        params: List[Any] = [user_id]
        status_sql = ""
        if status:
            status_sql = "AND status = %s"
            params.append(status)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM user_sessions
                WHERE user_id = %s {status_sql}
                ORDER BY last_activity_at DESC, id DESC
                """,
                params,
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def revoke_session(self, session_id: str, *, reason: str, at: datetime) -> Optional[Session]:
        """Flip an active session to revoked; returns it, or None if it was not active."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_sessions
                SET status = 'revoked', revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND status = 'active'
                RETURNING *
                """,
                (at, reason, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        at: datetime,
        exclude_session_id: Optional[str] = None,
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_sessions
                SET status = 'revoked', revoked_at = %s, revoked_reason = %s
                WHERE user_id = %s AND status = 'active'
                  AND (%s::text IS NULL OR id <> %s::text)
                RETURNING *
                """,
                (at, reason, user_id, exclude_session_id, exclude_session_id),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_sessions SET last_activity_at = %s WHERE id = %s AND status = 'active'",
                (at, session_id),
            )

    def expire_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_sessions SET status = 'expired' WHERE status = 'active' AND expires_at <= %s",
                (now,),
            )
            return cur.rowcount

    # technician access
    def create_access(self, record: TechnicianAccess) -> TechnicianAccess:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO technician_customer_access (
                        id, technician_id, customer_org_id, access_level, granted_by, granted_at,
                        expires_at, status, allowed_services, ip_restrictions, time_restrictions,
                        notes, transferred_from
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.technician_id,
                        record.customer_org_id,
                        record.access_level,
                        record.granted_by,
                        record.granted_at,
                        record.expires_at,
                        record.status,
                        json.dumps(record.allowed_services or []),
                        json.dumps(record.ip_restrictions or []),
                        json.dumps(record.time_restrictions or {}),
                        record.notes,
                        record.transferred_from,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "active access already exists",
                {
                    "technician_id": record.technician_id,
                    "customer_org_id": record.customer_org_id,
                },
            )
        return record

    def get_access(self, access_id: str) -> Optional[TechnicianAccess]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM technician_customer_access WHERE id = %s", (access_id,)
            ).fetchone()
        return self._access_from_row(row) if row else None

    def get_active_access(
        self, technician_id: str, customer_org_id: str
    ) -> Optional[TechnicianAccess]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM technician_customer_access
                WHERE technician_id = %s AND customer_org_id = %s AND status = 'active'
                """,
                (technician_id, customer_org_id),
            ).fetchone()
        return self._access_from_row(row) if row else None

    def list_access(
        self,
        *,
        technician_id: Optional[str] = None,
        customer_org_id: Optional[str] = None,
        customer_org_ids: Optional[Sequence[str]] = None,
        status: Optional[str] = None,
    ) -> List[TechnicianAccess]:
        clauses: List[str] = []
        params: List[Any] = []
        if technician_id:
            clauses.append("technician_id = %s")
            params.append(technician_id)
        if customer_org_id:
            clauses.append("customer_org_id = %s")
            params.append(customer_org_id)
        if customer_org_ids is not None:
            clauses.append("customer_org_id = ANY(%s)")
            params.append(list(customer_org_ids))
        if status:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM technician_customer_access {where} ORDER BY granted_at DESC, id DESC",
                params,
            ).fetchall()
        return [self._access_from_row(r) for r in rows]

    def update_access(self, access_id: str, **changes: Any) -> Optional[TechnicianAccess]:
        if not changes:
            return self.get_access(access_id)
        set_sql, params = self._set_clause(changes, _ACCESS_COLUMNS)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE technician_customer_access SET {set_sql} WHERE id = %s RETURNING *",
                [*params, access_id],
            ).fetchone()
        return self._access_from_row(row) if row else None

    def revoke_access(
        self, access_id: str, *, revoked_by: Optional[str], reason: str, at: datetime
    ) -> Optional[TechnicianAccess]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE technician_customer_access
                SET status = 'revoked', revoked_at = %s, revoked_by = %s,
                    revoked_reason = %s, updated_at = %s
                WHERE id = %s AND status = 'active'
                RETURNING *
                """,
                (at, revoked_by, reason, at, access_id),
            ).fetchone()
        return self._access_from_row(row) if row else None

    def expire_access(self, now: datetime) -> List[TechnicianAccess]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE technician_customer_access
                SET status = 'expired', updated_at = %s
                WHERE status = 'active' AND expires_at IS NOT NULL AND expires_at <= %s
                RETURNING *
                """,
                (now, now),
            ).fetchall()
        return [self._access_from_row(r) for r in rows]

    # password reset tokens
    def upsert_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        """Store ``token`` as the user's only reset token, replacing any prior one."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_tokens (id, user_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET id = EXCLUDED.id,
                    token_hash = EXCLUDED.token_hash,
                    expires_at = EXCLUDED.expires_at,
                    created_at = EXCLUDED.created_at,
                    used_at = NULL
                """,
                (token.id, token.user_id, token.token_hash, token.expires_at, token.created_at),
            )
        return token

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def mark_reset_token_used(self, token_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE password_reset_tokens SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (at, token_id),
            )
            return cur.rowcount == 1

    # audit log
    def append_audit(self, entry: AuditLogEntry) -> str:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (id, user_id, session_id, organization_id, action_type,
                                        resource_type, resource_id, action_description,
                                        action_data, schema_version, ip_address, user_agent,
                                        risk_level, compliance_relevant, timestamp, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.session_id,
                    entry.organization_id,
                    entry.action_type,
                    entry.resource_type,
                    entry.resource_id,
                    entry.action_description,
                    json.dumps(entry.action_data or {}),
                    entry.schema_version,
                    entry.ip_address,
                    entry.user_agent,
                    entry.risk_level,
                    entry.compliance_relevant,
                    entry.timestamp,
                    json.dumps(entry.metadata or {}),
                ),
            )
        return entry.id

    @staticmethod
    def _audit_where(query: AuditQuery) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column in (
            "user_id",
            "organization_id",
            "action_type",
            "resource_type",
            "risk_level",
            "ip_address",
        ):
            value = getattr(query, column)
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if query.action_prefix:
            clauses.append("action_type LIKE %s")
            params.append(query.action_prefix.replace("_", r"\_") + "%")
        if query.compliance_relevant is not None:
            clauses.append("compliance_relevant = %s")
            params.append(query.compliance_relevant)
        if query.start:
            clauses.append("timestamp >= %s")
            params.append(query.start)
        if query.end:
            clauses.append("timestamp <= %s")
            params.append(query.end)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def query_audit(self, query: AuditQuery) -> Tuple[List[AuditLogEntry], int]:
        where, params = self._audit_where(query)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM audit_logs {where}", params
            ).fetchone()
            rows = conn.execute(
                f"""
                SELECT * FROM audit_logs {where}
                ORDER BY timestamp DESC, id DESC
                LIMIT %s OFFSET %s
                """,
                [*params, query.limit, query.offset],
            ).fetchall()
        return [self._audit_from_row(r) for r in rows], int(total_row["total"])

    def count_audit(self, query: AuditQuery) -> int:
        where, params = self._audit_where(query)
        with self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM audit_logs {where}", params).fetchone()
        return int(row["total"])

    def audit_histogram(
        self, column: str, query: AuditQuery, *, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        if column not in _HISTOGRAM_COLUMNS:
            raise ValueError(f"unsupported audit histogram column: {column}")
        where, params = self._audit_where(query)
        limit_sql = ""
        if limit is not None:
            limit_sql = "LIMIT %s"
            params = [*params, limit]
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {column} AS value, COUNT(*) AS count FROM audit_logs {where}
                GROUP BY {column}
                ORDER BY count DESC, value ASC
                {limit_sql}
                """,
                params,
            ).fetchall()
        return [{"value": r["value"], "count": int(r["count"])} for r in rows]

    def delete_audit_before(self, cutoff: datetime) -> int:
        """Delete non-compliance entries older than ``cutoff``."""
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM audit_logs WHERE compliance_relevant = FALSE AND timestamp < %s",
                (cutoff,),
            )
            return cur.rowcount
