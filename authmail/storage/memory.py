from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from authmail.logging import get_logger
from authmail.storage.errors import ConstraintViolation
from authmail.storage.models import (
    EmailJob,
    EmailJobState,
    RefreshToken,
    User,
    UserRole,
    UserStatus,
    normalize_identifier,
    normalize_user,
    utcnow,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON file under ``fs_root``.

    Used for tests and single-process development. Every mutation runs under
    ``_data_lock`` so compound operations (token rotation, job lease) are
    atomic with respect to other threads.
    """

    def __init__(self, fs_root: str = "/tmp/authmail") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # Keyed by token_hash; hashes are unique
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.email_jobs: Dict[str, EmailJob] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- users ---------------------------------------------------------------

    def _check_user_unique(self, user: User) -> None:
        for existing in self.users.values():
            if existing.id == user.id:
                continue
            if existing.email == user.email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == user.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

    def save_user(self, user: User) -> User:
        normalize_user(user)
        with self._data_lock:
            self._check_user_unique(user)
            user.updated_at = utcnow()
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return copy.deepcopy(user)

    def _visible(self, user: Optional[User], include_deleted: bool) -> Optional[User]:
        if not user:
            return None
        if user.deleted_at and not include_deleted:
            return None
        return copy.deepcopy(user)

    def find_user_by_id(
        self, user_id: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        with self._data_lock:
            return self._visible(self.users.get(user_id), include_deleted)

    def find_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        email = normalize_identifier(email)
        with self._data_lock:
            match = next((u for u in self.users.values() if u.email == email), None)
            return self._visible(match, include_deleted)

    def find_user_by_username(
        self, username: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        username = normalize_identifier(username)
        with self._data_lock:
            match = next(
                (u for u in self.users.values() if u.username == username), None
            )
            return self._visible(match, include_deleted)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = UserRole(role)
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def soft_delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at:
                return False
            user.deleted_at = utcnow()
            user.updated_at = user.deleted_at
            self._persist_state()
            return True

    def restore_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.deleted_at = None
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def increment_login_attempts(
        self, user_id: str, *, max_attempts: int, lock_minutes: int
    ) -> Optional[User]:
        """Count a failed login; lock the account once ``max_attempts`` is reached."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = utcnow()
            user.login_attempts += 1
            if user.login_attempts >= max_attempts:
                user.locked_until = now + timedelta(minutes=lock_minutes)
                user.login_attempts = 0
            user.updated_at = now
            self._persist_state()
            return copy.deepcopy(user)

    def reset_login_attempts(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.login_attempts = 0
            user.locked_until = None
            user.updated_at = utcnow()
            self._persist_state()

    def record_login(self, user_id: str, ip: Optional[str] = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = utcnow()
            user.login_attempts = 0
            user.locked_until = None
            user.last_login_at = now
            user.last_login_ip = ip
            user.updated_at = now
            self._persist_state()
            return copy.deepcopy(user)

    # -- refresh tokens --------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            self._insert_refresh_token(token)
            self._persist_state()
            return copy.deepcopy(token)

    def _insert_refresh_token(self, token: RefreshToken) -> None:
        if token.user_id not in self.users:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        if token.token_hash in self.refresh_tokens:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        self.refresh_tokens[token.token_hash] = copy.deepcopy(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            return copy.deepcopy(token) if token else None

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = next(
                (t for t in self.refresh_tokens.values() if t.id == token_id), None
            )
            return copy.deepcopy(token) if token else None

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_token: RefreshToken,
        *,
        ip: Optional[str] = None,
    ) -> RefreshToken:
        """Revoke and link ``old_hash`` to ``new_token`` and insert it, as one unit.

        Raises ConstraintViolation when the predecessor is missing or no longer
        active, so two racing rotations of the same parent produce one child.
        """
        with self._data_lock:
            old = self.refresh_tokens.get(old_hash)
            now = utcnow()
            if not old or not old.is_active(now):
                raise ConstraintViolation(
                    "refresh token no longer active", {"field": "token_hash"}
                )
            self._insert_refresh_token(new_token)
            old.replace_by(new_token.token_hash, ip, now)
            self._persist_state()
            return copy.deepcopy(new_token)

    def revoke_refresh_token(
        self, token_hash: str, *, reason: str, ip: Optional[str] = None
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if not token:
                return None
            if token.is_revoked:
                return copy.deepcopy(token)
            token.revoke(reason, ip)
            self._persist_state()
            return copy.deepcopy(token)

    def revoke_refresh_token_family(self, token_hash: str, *, reason: str) -> int:
        """Revoke every non-revoked descendant reachable from ``token_hash``."""
        with self._data_lock:
            revoked = 0
            seen = {token_hash}
            current = self.refresh_tokens.get(token_hash)
            now = utcnow()
            while current and current.replaced_by_token_hash:
                next_hash = current.replaced_by_token_hash
                if next_hash in seen:
                    break
                seen.add(next_hash)
                current = self.refresh_tokens.get(next_hash)
                if current and not current.is_revoked:
                    current.revoke(reason, now=now)
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def revoke_user_refresh_tokens(self, user_id: str, *, reason: str) -> int:
        with self._data_lock:
            now = utcnow()
            targets = [
                t
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and not t.is_revoked
            ]
            for token in targets:
                token.revoke(reason, now=now)
            if targets:
                self._persist_state()
            return len(targets)

    def list_active_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            now = utcnow()
            active = [
                t
                for t in self.refresh_tokens.values()
                if t.user_id == user_id and t.is_active(now)
            ]
            active.sort(key=lambda t: t.created_at, reverse=True)
            return [copy.deepcopy(t) for t in active]

    def count_active_refresh_tokens(self, user_id: str) -> int:
        return len(self.list_active_refresh_tokens(user_id))

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._data_lock:
            cutoff = now or utcnow()
            stale = [h for h, t in self.refresh_tokens.items() if t.expires_at < cutoff]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- email jobs ------------------------------------------------------------

    def enqueue_email_jobs(self, jobs: Iterable[EmailJob]) -> List[EmailJob]:
        """Insert a batch of jobs; nothing is inserted if any id collides."""
        batch = [copy.deepcopy(job) for job in jobs]
        with self._data_lock:
            ids = [job.id for job in batch]
            if len(set(ids)) != len(ids) or any(i in self.email_jobs for i in ids):
                raise ConstraintViolation("email job id already exists", {"field": "id"})
            for job in batch:
                self.email_jobs[job.id] = job
            self._persist_state()
            return [copy.deepcopy(job) for job in batch]

    def lease_email_job(self, now: Optional[datetime] = None) -> Optional[EmailJob]:
        """Claim the next due waiting job: lowest priority value, then oldest."""
        with self._data_lock:
            now = now or utcnow()
            due = [
                j
                for j in self.email_jobs.values()
                if j.state == EmailJobState.WAITING and j.run_at <= now
            ]
            if not due:
                return None
            due.sort(key=lambda j: (j.priority, j.run_at, j.created_at))
            job = due[0]
            job.state = EmailJobState.ACTIVE
            job.updated_at = now
            self._persist_state()
            return copy.deepcopy(job)

    def complete_email_job(self, job_id: str) -> bool:
        with self._data_lock:
            removed = self.email_jobs.pop(job_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def reschedule_email_job(
        self, job_id: str, *, error: str, run_at: datetime
    ) -> Optional[EmailJob]:
        with self._data_lock:
            job = self.email_jobs.get(job_id)
            if not job:
                return None
            job.attempts_made += 1
            job.last_error = error
            job.run_at = run_at
            job.state = EmailJobState.WAITING
            job.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(job)

    def fail_email_job(self, job_id: str, *, error: str) -> Optional[EmailJob]:
        with self._data_lock:
            job = self.email_jobs.get(job_id)
            if not job:
                return None
            now = utcnow()
            job.attempts_made += 1
            job.last_error = error
            job.state = EmailJobState.FAILED
            job.failed_at = now
            job.updated_at = now
            self._persist_state()
            return copy.deepcopy(job)

    def get_email_job(self, job_id: str) -> Optional[EmailJob]:
        with self._data_lock:
            job = self.email_jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def list_email_jobs(
        self, state: Optional[str] = None, *, limit: Optional[int] = None
    ) -> List[EmailJob]:
        with self._data_lock:
            jobs = list(self.email_jobs.values())
            if state:
                jobs = [j for j in jobs if j.state == EmailJobState(state)]
            jobs.sort(key=lambda j: j.created_at)
            if limit is not None:
                jobs = jobs[:limit]
            return [copy.deepcopy(j) for j in jobs]

    def count_email_jobs(self) -> Dict[str, int]:
        with self._data_lock:
            counts = {state.value: 0 for state in EmailJobState}
            for job in self.email_jobs.values():
                counts[EmailJobState(job.state).value] += 1
            return counts

    def requeue_stalled_email_jobs(self) -> int:
        """Return jobs left ``active`` by a previous process to ``waiting``."""
        with self._data_lock:
            stalled = [
                j for j in self.email_jobs.values() if j.state == EmailJobState.ACTIVE
            ]
            for job in stalled:
                job.state = EmailJobState.WAITING
                job.updated_at = utcnow()
            if stalled:
                self._persist_state()
            return len(stalled)

    # -- persistence -----------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "email_jobs": [
                self._serialize_email_job(j) for j in self.email_jobs.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            t["token_hash"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.email_jobs = {
            j["id"]: self._deserialize_email_job(j) for j in data.get("email_jobs", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "phone": user.phone,
            "role": UserRole(user.role).value,
            "status": UserStatus(user.status).value,
            "email_verified": user.email_verified,
            "verified_at": self._serialize_datetime(user.verified_at),
            "login_attempts": user.login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "last_login_ip": user.last_login_ip,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            phone=data.get("phone"),
            role=UserRole(data.get("role", "user")),
            status=UserStatus(data.get("status", "pending")),
            email_verified=bool(data.get("email_verified", False)),
            verified_at=self._deserialize_datetime(data.get("verified_at")),
            login_attempts=int(data.get("login_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            last_login_ip=data.get("last_login_ip"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "expires_at": self._serialize_datetime(token.expires_at),
            "is_revoked": token.is_revoked,
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "revoke_reason": token.revoke_reason,
            "revoked_by_ip": token.revoked_by_ip,
            "replaced_by_token_hash": token.replaced_by_token_hash,
            "replaced_at": self._serialize_datetime(token.replaced_at),
            "created_by_ip": token.created_by_ip,
            "user_agent": token.user_agent,
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            token_hash=data["token_hash"],
            user_id=str(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_revoked=bool(data.get("is_revoked", False)),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoke_reason=data.get("revoke_reason"),
            revoked_by_ip=data.get("revoked_by_ip"),
            replaced_by_token_hash=data.get("replaced_by_token_hash"),
            replaced_at=self._deserialize_datetime(data.get("replaced_at")),
            created_by_ip=data.get("created_by_ip"),
            user_agent=data.get("user_agent"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_email_job(self, job: EmailJob) -> dict:
        return {
            "id": job.id,
            "to": list(job.to),
            "subject": job.subject,
            "template": job.template,
            "context": job.context,
            "cc": list(job.cc),
            "bcc": list(job.bcc),
            "attachments": list(job.attachments),
            "priority": job.priority,
            "max_attempts": job.max_attempts,
            "attempts_made": job.attempts_made,
            "state": EmailJobState(job.state).value,
            "run_at": self._serialize_datetime(job.run_at),
            "last_error": job.last_error,
            "created_at": self._serialize_datetime(job.created_at),
            "updated_at": self._serialize_datetime(job.updated_at),
            "failed_at": self._serialize_datetime(job.failed_at),
        }

    def _deserialize_email_job(self, data: dict) -> EmailJob:
        return EmailJob(
            id=str(data["id"]),
            to=list(data.get("to") or []),
            subject=data.get("subject", ""),
            template=data.get("template", ""),
            context=data.get("context") or {},
            cc=list(data.get("cc") or []),
            bcc=list(data.get("bcc") or []),
            attachments=list(data.get("attachments") or []),
            priority=int(data.get("priority", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            attempts_made=int(data.get("attempts_made", 0)),
            state=EmailJobState(data.get("state", "waiting")),
            run_at=self._deserialize_datetime(data["run_at"]),
            last_error=data.get("last_error"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            failed_at=self._deserialize_datetime(data.get("failed_at")),
        )
