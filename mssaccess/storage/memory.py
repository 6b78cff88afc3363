from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar

from mssaccess.logging import get_logger
from mssaccess.storage.common import (
    histogram,
    normalize_email,
    parse_datetime,
    push_password_history,
)
from mssaccess.storage.errors import ConstraintViolation
from mssaccess.storage.models import (
    AuditLogEntry,
    AuditQuery,
    Organization,
    PasswordResetToken,
    Session,
    TechnicianAccess,
    User,
)

T = TypeVar("T")


class MemoryStore:
    """Thread-safe in-memory backing store used for tests and local development.

    All operations run under one re-entrant lock. ``transaction()`` holds that
    lock for the whole block and restores a snapshot if the block raises, which
    gives the same all-or-nothing behaviour the Postgres store gets from
    ``conn.transaction()``.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.organizations: Dict[str, Organization] = {}
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.access_records: Dict[str, TechnicianAccess] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.audit_logs: Dict[str, AuditLogEntry] = {}
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # transactions
    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot() if self._tx_depth == 0 else None
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if snapshot is not None:
                    self._restore(snapshot)
                    self.logger.warning("memory_transaction_rolled_back")
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._persist_state()

    def _snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}

    def _restore(self, snapshot: Dict[str, Dict[str, Any]]) -> None:
        for name, table in snapshot.items():
            setattr(self, name, table)

    _TABLES = (
        "organizations",
        "users",
        "sessions",
        "access_records",
        "reset_tokens",
        "audit_logs",
    )

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    @staticmethod
    def _clone(obj: T) -> T:
        return copy.deepcopy(obj)

    # organizations
    def create_organization(self, org: Organization) -> Organization:
        with self._data_lock:
            lowered = org.name.strip().lower()
            for existing in self.organizations.values():
                if existing.name.strip().lower() == lowered and existing.status != "deleted":
                    raise ConstraintViolation(
                        "organization name already exists", {"field": "name"}
                    )
            self.organizations[org.id] = self._clone(org)
            self._persist_state()
            return self._clone(org)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            return self._clone(org) if org else None

    def list_organizations(
        self,
        *,
        org_type: Optional[str] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Organization], int]:
        with self._data_lock:
            rows = list(self.organizations.values())
        if org_type:
            rows = [o for o in rows if o.type == org_type]
        if status:
            rows = [o for o in rows if o.status == status]
        if search:
            needle = search.lower()
            rows = [
                o
                for o in rows
                if needle in o.name.lower() or needle in (o.domain or "").lower()
            ]
        rows.sort(key=lambda o: (o.name.lower(), o.id))
        total = len(rows)
        return [self._clone(o) for o in rows[offset : offset + limit]], total

    def update_organization(self, org_id: str, **changes: Any) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            if not org:
                return None
            if "name" in changes:
                lowered = str(changes["name"]).strip().lower()
                for existing in self.organizations.values():
                    if (
                        existing.id != org_id
                        and existing.status != "deleted"
                        and existing.name.strip().lower() == lowered
                    ):
                        raise ConstraintViolation(
                            "organization name already exists", {"field": "name"}
                        )
            updated = replace(org, **changes)
            self.organizations[org_id] = updated
            self._persist_state()
            return self._clone(updated)

    # users
    def create_user(self, user: User) -> User:
        with self._data_lock:
            email = normalize_email(user.email)
            if user.org_id not in self.organizations:
                raise ConstraintViolation(
                    "organization does not exist", {"field": "org_id"}
                )
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            stored = replace(self._clone(user), email=email)
            self.users[user.id] = stored
            self._persist_state()
            return self._clone(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._clone(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return self._clone(user)
        return None

    def list_users(
        self,
        *,
        org_id: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
        status: Optional[str] = None,
    ) -> List[User]:
        with self._data_lock:
            rows = list(self.users.values())
        if org_id:
            rows = [u for u in rows if u.org_id == org_id]
        if roles:
            rows = [u for u in rows if u.role in roles]
        if status:
            rows = [u for u in rows if u.status == status]
        rows.sort(key=lambda u: (u.last_name.lower(), u.first_name.lower(), u.id))
        return [self._clone(u) for u in rows]

    def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in changes:
                changes["email"] = normalize_email(changes["email"])
                for existing in self.users.values():
                    if existing.id != user_id and existing.email == changes["email"]:
                        raise ConstraintViolation("email already exists", {"field": "email"})
            updated = replace(user, **changes)
            self.users[user_id] = updated
            self._persist_state()
            return self._clone(updated)

    def set_org_users_status(self, org_id: str, status: str, at: datetime) -> List[str]:
        with self._data_lock:
            touched = []
            for user in self.users.values():
                if user.org_id == org_id and user.status != status:
                    user.status = status
                    user.updated_at = at
                    touched.append(user.id)
            if touched:
                self._persist_state()
            return touched

    def record_failed_login(
        self, user_id: str, *, threshold: int, lock_until: datetime
    ) -> Optional[Tuple[int, Optional[datetime]]]:
        """Increment the counter and lock at the threshold in one step."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= threshold and user.locked_until is None:
                user.locked_until = lock_until
            self._persist_state()
            return user.failed_login_attempts, user.locked_until

    def reset_failed_logins(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_attempts = 0
            user.locked_until = None
            self._persist_state()

    def record_login(self, user_id: str, *, ip_address: Optional[str], at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login_at = at
            user.last_login_ip = ip_address
            self._persist_state()

    def set_password(
        self, user_id: str, password_hash: str, *, history_size: int, at: datetime
    ) -> Optional[User]:
        """Store a new hash, push it onto the reuse history and clear lockout."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.password_history = push_password_history(
                user.password_history, password_hash, history_size
            )
            user.password_changed_at = at
            user.failed_login_attempts = 0
            user.locked_until = None
            if user.status == "locked":
                user.status = "active"
            user.updated_at = at
            self._persist_state()
            return self._clone(user)

    # mfa
    def set_mfa_pending(
        self, user_id: str, encrypted_secret: str, backup_code_hashes: List[str]
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.mfa_enabled:
                return False
            user.mfa_secret = encrypted_secret
            user.mfa_backup_codes = list(backup_code_hashes)
            self._persist_state()
            return True

    def enable_mfa(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.mfa_secret:
                return False
            user.mfa_enabled = True
            self._persist_state()
            return True

    def disable_mfa(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.mfa_enabled = False
            user.mfa_secret = None
            user.mfa_backup_codes = []
            user.mfa_last_used = None
            self._persist_state()
            return True

    def replace_backup_codes(self, user_id: str, backup_code_hashes: List[str]) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.mfa_enabled:
                return False
            user.mfa_backup_codes = list(backup_code_hashes)
            self._persist_state()
            return True

    def consume_backup_code(self, user_id: str, code_hash: str) -> Optional[int]:
        """Remove ``code_hash`` if present and return the remaining count."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or code_hash not in user.mfa_backup_codes:
                return None
            user.mfa_backup_codes = [c for c in user.mfa_backup_codes if c != code_hash]
            self._persist_state()
            return len(user.mfa_backup_codes)

    def touch_mfa_used(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.mfa_last_used = at
                self._persist_state()

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = self._clone(session)
            self._persist_state()
            return self._clone(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return self._clone(sess) if sess else None

    def get_session_by_refresh_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.refresh_token_hash and sess.refresh_token_hash == token_hash:
                    return self._clone(sess)
        return None

    def get_session_by_access_hash(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.session_token_hash == token_hash:
                    return self._clone(sess)
        return None

    def list_sessions(self, user_id: str, *, status: Optional[str] = "active") -> List[Session]:
        with self._data_lock:
            rows = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and (status is None or s.status == status)
            ]
        rows.sort(key=lambda s: (s.last_activity_at, s.id), reverse=True)
        return [self._clone(s) for s in rows]

    def revoke_session(self, session_id: str, *, reason: str, at: datetime) -> Optional[Session]:
        """Flip an active session to revoked; returns it, or None if it was not active."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.status != "active":
                return None
            sess.status = "revoked"
            sess.revoked_at = at
            sess.revoked_reason = reason
            self._persist_state()
            return self._clone(sess)

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        at: datetime,
        exclude_session_id: Optional[str] = None,
    ) -> List[Session]:
        with self._data_lock:
            revoked = []
            for sess in self.sessions.values():
                if (
                    sess.user_id == user_id
                    and sess.status == "active"
                    and sess.id != exclude_session_id
                ):
                    sess.status = "revoked"
                    sess.revoked_at = at
                    sess.revoked_reason = reason
                    revoked.append(self._clone(sess))
            if revoked:
                self._persist_state()
            return revoked

    def touch_session(self, session_id: str, at: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.status == "active":
                sess.last_activity_at = at
                self._persist_state()

    def expire_sessions(self, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.status == "active" and sess.expires_at <= now:
                    sess.status = "expired"
                    count += 1
            if count:
                self._persist_state()
            return count

    # technician access
    def create_access(self, record: TechnicianAccess) -> TechnicianAccess:
        with self._data_lock:
            if record.status == "active" and self._find_active_access(
                record.technician_id, record.customer_org_id
            ):
                raise ConstraintViolation(
                    "active access already exists",
                    {
                        "technician_id": record.technician_id,
                        "customer_org_id": record.customer_org_id,
                    },
                )
            self.access_records[record.id] = self._clone(record)
            self._persist_state()
            return self._clone(record)

    def _find_active_access(
        self, technician_id: str, customer_org_id: str
    ) -> Optional[TechnicianAccess]:
        for rec in self.access_records.values():
            if (
                rec.technician_id == technician_id
                and rec.customer_org_id == customer_org_id
                and rec.status == "active"
            ):
                return rec
        return None

    def get_access(self, access_id: str) -> Optional[TechnicianAccess]:
        with self._data_lock:
            rec = self.access_records.get(access_id)
            return self._clone(rec) if rec else None

    def get_active_access(
        self, technician_id: str, customer_org_id: str
    ) -> Optional[TechnicianAccess]:
        with self._data_lock:
            rec = self._find_active_access(technician_id, customer_org_id)
            return self._clone(rec) if rec else None

    def list_access(
        self,
        *,
        technician_id: Optional[str] = None,
        customer_org_id: Optional[str] = None,
        customer_org_ids: Optional[Sequence[str]] = None,
        status: Optional[str] = None,
    ) -> List[TechnicianAccess]:
        with self._data_lock:
            rows = list(self.access_records.values())
        if technician_id:
            rows = [r for r in rows if r.technician_id == technician_id]
        if customer_org_id:
            rows = [r for r in rows if r.customer_org_id == customer_org_id]
        if customer_org_ids is not None:
            wanted = set(customer_org_ids)
            rows = [r for r in rows if r.customer_org_id in wanted]
        if status:
            rows = [r for r in rows if r.status == status]
        rows.sort(key=lambda r: (r.granted_at, r.id), reverse=True)
        return [self._clone(r) for r in rows]

    def update_access(self, access_id: str, **changes: Any) -> Optional[TechnicianAccess]:
        with self._data_lock:
            rec = self.access_records.get(access_id)
            if not rec:
                return None
            updated = replace(rec, **changes)
            self.access_records[access_id] = updated
            self._persist_state()
            return self._clone(updated)

    def revoke_access(
        self, access_id: str, *, revoked_by: Optional[str], reason: str, at: datetime
    ) -> Optional[TechnicianAccess]:
        with self._data_lock:
            rec = self.access_records.get(access_id)
            if not rec or rec.status != "active":
                return None
            rec.status = "revoked"
            rec.revoked_at = at
            rec.revoked_by = revoked_by
            rec.revoked_reason = reason
            rec.updated_at = at
            self._persist_state()
            return self._clone(rec)

    def expire_access(self, now: datetime) -> List[TechnicianAccess]:
        with self._data_lock:
            expired = []
            for rec in self.access_records.values():
                if rec.status == "active" and rec.expires_at and rec.expires_at <= now:
                    rec.status = "expired"
                    rec.updated_at = now
                    expired.append(self._clone(rec))
            if expired:
                self._persist_state()
            return expired

    # password reset tokens
    def upsert_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        """Store ``token`` as the user's only reset token, replacing any prior one."""
        with self._data_lock:
            stale = [tid for tid, t in self.reset_tokens.items() if t.user_id == token.user_id]
            for tid in stale:
                self.reset_tokens.pop(tid, None)
            self.reset_tokens[token.id] = self._clone(token)
            self._persist_state()
            return self._clone(token)

    def get_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            for tok in self.reset_tokens.values():
                if tok.token_hash == token_hash:
                    return self._clone(tok)
        return None

    def mark_reset_token_used(self, token_id: str, at: datetime) -> bool:
        with self._data_lock:
            tok = self.reset_tokens.get(token_id)
            if not tok or tok.used_at is not None:
                return False
            tok.used_at = at
            self._persist_state()
            return True

    # audit log
    def append_audit(self, entry: AuditLogEntry) -> str:
        with self._data_lock:
            self.audit_logs[entry.id] = self._clone(entry)
            self._persist_state()
            return entry.id

    @staticmethod
    def _audit_matches(entry: AuditLogEntry, query: AuditQuery) -> bool:
        if query.user_id and entry.user_id != query.user_id:
            return False
        if query.organization_id and entry.organization_id != query.organization_id:
            return False
        if query.action_type and entry.action_type != query.action_type:
            return False
        if query.action_prefix and not entry.action_type.startswith(query.action_prefix):
            return False
        if query.resource_type and entry.resource_type != query.resource_type:
            return False
        if query.risk_level and entry.risk_level != query.risk_level:
            return False
        if (
            query.compliance_relevant is not None
            and entry.compliance_relevant != query.compliance_relevant
        ):
            return False
        if query.ip_address and entry.ip_address != query.ip_address:
            return False
        if query.start and entry.timestamp < query.start:
            return False
        if query.end and entry.timestamp > query.end:
            return False
        return True

    def _matching_audit(self, query: AuditQuery) -> List[AuditLogEntry]:
        with self._data_lock:
            rows = [e for e in self.audit_logs.values() if self._audit_matches(e, query)]
        rows.sort(key=lambda e: (e.timestamp, e.id), reverse=True)
        return rows

    def query_audit(self, query: AuditQuery) -> Tuple[List[AuditLogEntry], int]:
        rows = self._matching_audit(query)
        page = rows[query.offset : query.offset + query.limit]
        return [self._clone(e) for e in page], len(rows)

    def count_audit(self, query: AuditQuery) -> int:
        return len(self._matching_audit(query))

    def audit_histogram(
        self, column: str, query: AuditQuery, *, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        if column not in {"action_type", "resource_type", "risk_level"}:
            raise ValueError(f"unsupported audit histogram column: {column}")
        rows = self._matching_audit(query)
        return histogram((getattr(e, column) for e in rows), limit)

    def delete_audit_before(self, cutoff: datetime) -> int:
        """Delete non-compliance entries older than ``cutoff``."""
        with self._data_lock:
            doomed = [
                eid
                for eid, entry in self.audit_logs.items()
                if not entry.compliance_relevant and entry.timestamp < cutoff
            ]
            for eid in doomed:
                self.audit_logs.pop(eid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    _MODELS: Dict[str, Type[Any]] = {
        "organizations": Organization,
        "users": User,
        "sessions": Session,
        "access_records": TechnicianAccess,
        "reset_tokens": PasswordResetToken,
        "audit_logs": AuditLogEntry,
    }

    def _persist_state(self) -> None:
        if self._tx_depth > 0:
            return
        path = self._state_path()
        if path is None:
            return
        state = {
            name: [self._serialize(obj) for obj in getattr(self, name).values()]
            for name in self._TABLES
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for name, model in self._MODELS.items():
            rows = [self._deserialize(model, raw) for raw in data.get(name, [])]
            setattr(self, name, {row.id: row for row in rows})
        self.logger.info(
            "memory_store_loaded",
            path=str(path),
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(model: Type[T], data: dict) -> T:
        kwargs = {}
        for f in fields(model):
            if f.name not in data:
                continue
            value = data[f.name]
            if "datetime" in str(f.type):
                value = parse_datetime(value)
            kwargs[f.name] = value
        return model(**kwargs)
