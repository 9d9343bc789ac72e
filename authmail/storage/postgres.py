from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        phone TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        status TEXT NOT NULL DEFAULT 'pending',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verified_at TIMESTAMPTZ,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ,
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        revoke_reason TEXT,
        revoked_by_ip TEXT,
        replaced_by_token_hash TEXT,
        replaced_at TIMESTAMPTZ,
        created_by_ip TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS refresh_token_user_active_idx
        ON refresh_token (user_id, is_revoked, expires_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS email_job (
        id UUID PRIMARY KEY,
        recipients TEXT[] NOT NULL,
        subject TEXT NOT NULL,
        template TEXT NOT NULL,
        context JSONB NOT NULL DEFAULT '{}'::jsonb,
        cc TEXT[] NOT NULL DEFAULT '{}',
        bcc TEXT[] NOT NULL DEFAULT '{}',
        attachments JSONB NOT NULL DEFAULT '[]'::jsonb,
        priority INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        attempts_made INTEGER NOT NULL DEFAULT 0,
        state TEXT NOT NULL DEFAULT 'waiting',
        run_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        failed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS email_job_due_idx
        ON email_job (state, priority, run_at, created_at)
    """,
)

_USER_COLUMNS = (
    "id, email, username, password_hash, first_name, last_name, phone, role, status, "
    "email_verified, verified_at, login_attempts, locked_until, last_login_at, "
    "last_login_ip, created_at, updated_at, deleted_at"
)


class PostgresStore:
    """Postgres-backed store for users, refresh tokens and the email job queue."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
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
        """Create the auth and mail tables and their indexes if they are missing."""
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _constraint_field(exc: errors.UniqueViolation) -> str:
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
        if "username" in constraint:
            return "username"
        if "token_hash" in constraint:
            return "token_hash"
        return "email"

    # -- users ---------------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone=row.get("phone"),
            role=UserRole(row.get("role") or "user"),
            status=UserStatus(row.get("status") or "pending"),
            email_verified=bool(row.get("email_verified")),
            verified_at=row.get("verified_at"),
            login_attempts=row.get("login_attempts") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=row.get("last_login_ip"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    def save_user(self, user: User) -> User:
        normalize_user(user)
        user.updated_at = utcnow()
        params = (
            user.id,
            user.email,
            user.username,
            user.password_hash,
            user.first_name,
            user.last_name,
            user.phone,
            UserRole(user.role).value,
            UserStatus(user.status).value,
            user.email_verified,
            user.verified_at,
            user.login_attempts,
            user.locked_until,
            user.last_login_at,
            user.last_login_ip,
            user.created_at,
            user.updated_at,
            user.deleted_at,
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user ({_USER_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        email = EXCLUDED.email,
                        username = EXCLUDED.username,
                        password_hash = EXCLUDED.password_hash,
                        first_name = EXCLUDED.first_name,
                        last_name = EXCLUDED.last_name,
                        phone = EXCLUDED.phone,
                        role = EXCLUDED.role,
                        status = EXCLUDED.status,
                        email_verified = EXCLUDED.email_verified,
                        verified_at = EXCLUDED.verified_at,
                        login_attempts = EXCLUDED.login_attempts,
                        locked_until = EXCLUDED.locked_until,
                        last_login_at = EXCLUDED.last_login_at,
                        last_login_ip = EXCLUDED.last_login_ip,
                        updated_at = EXCLUDED.updated_at,
                        deleted_at = EXCLUDED.deleted_at
                    RETURNING *
                    """,
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = self._constraint_field(exc)
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._user_from_row(row)

    def _find_user(
        self, column: str, value: str, include_deleted: bool
    ) -> Optional[User]:
        query = f"SELECT * FROM app_user WHERE {column} = %s"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (value,)).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_id(
        self, user_id: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        return self._find_user("id", user_id, include_deleted)

    def find_user_by_email(
        self, email: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        return self._find_user("email", normalize_identifier(email), include_deleted)

    def find_user_by_username(
        self, username: str, *, include_deleted: bool = False
    ) -> Optional[User]:
        return self._find_user(
            "username", normalize_identifier(username), include_deleted
        )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (UserRole(role).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def soft_delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user SET deleted_at = now(), updated_at = now()
                WHERE id = %s AND deleted_at IS NULL
                """,
                (user_id,),
            )
            return result.rowcount > 0

    def restore_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET deleted_at = NULL, updated_at = now() WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def increment_login_attempts(
        self, user_id: str, *, max_attempts: int, lock_minutes: int
    ) -> Optional[User]:
        """Count a failed login; lock the account once ``max_attempts`` is reached."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = CASE
                        WHEN login_attempts + 1 >= %s THEN 0
                        ELSE login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN login_attempts + 1 >= %s THEN now() + make_interval(mins => %s)
                        ELSE locked_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, max_attempts, lock_minutes, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def reset_login_attempts(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET login_attempts = 0, locked_until = NULL, updated_at = now()
                WHERE id = %s
                """,
                (user_id,),
            )

    def record_login(self, user_id: str, ip: Optional[str] = None) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = 0, locked_until = NULL,
                    last_login_at = now(), last_login_ip = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (ip, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # -- refresh tokens --------------------------------------------------------

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            is_revoked=bool(row.get("is_revoked")),
            revoked_at=row.get("revoked_at"),
            revoke_reason=row.get("revoke_reason"),
            revoked_by_ip=row.get("revoked_by_ip"),
            replaced_by_token_hash=row.get("replaced_by_token_hash"),
            replaced_at=row.get("replaced_at"),
            created_by_ip=row.get("created_by_ip"),
            user_agent=row.get("user_agent"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _insert_token(conn, token: RefreshToken) -> Dict[str, Any]:
        return conn.execute(
            """
            INSERT INTO refresh_token (id, token_hash, user_id, expires_at, created_by_ip, user_agent, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                token.id,
                token.token_hash,
                token.user_id,
                token.expires_at,
                token.created_by_ip,
                token.user_agent,
                token.created_at,
            ),
        ).fetchone()

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = self._insert_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
        return self._token_from_row(row)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_token: RefreshToken,
        *,
        ip: Optional[str] = None,
    ) -> RefreshToken:
        """Revoke and link ``old_hash`` to ``new_token`` and insert it in one transaction.

        The predecessor row is locked with ``FOR UPDATE`` so a concurrent
        rotation of the same parent waits and then sees it revoked.
        """
        try:
            with self._connect() as conn:
                old = conn.execute(
                    """
                    SELECT * FROM refresh_token
                    WHERE token_hash = %s
                    FOR UPDATE
                    """,
                    (old_hash,),
                ).fetchone()
                if not old or old["is_revoked"] or old["expires_at"] <= utcnow():
                    raise ConstraintViolation(
                        "refresh token no longer active", {"field": "token_hash"}
                    )
                row = self._insert_token(conn, new_token)
                conn.execute(
                    """
                    UPDATE refresh_token
                    SET is_revoked = TRUE, revoked_at = now(), revoke_reason = 'rotation',
                        revoked_by_ip = %s, replaced_by_token_hash = %s, replaced_at = now()
                    WHERE token_hash = %s
                    """,
                    (ip, new_token.token_hash, old_hash),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token hash already exists", {"field": "token_hash"})
        return self._token_from_row(row)

    def revoke_refresh_token(
        self, token_hash: str, *, reason: str, ip: Optional[str] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = now(), revoke_reason = %s, revoked_by_ip = %s
                WHERE token_hash = %s AND is_revoked = FALSE
                RETURNING *
                """,
                (reason, ip, token_hash),
            ).fetchone()
            if not row:
                row = conn.execute(
                    "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
                ).fetchone()
        return self._token_from_row(row) if row else None

    def revoke_refresh_token_family(self, token_hash: str, *, reason: str) -> int:
        """Revoke every non-revoked descendant reachable from ``token_hash``."""
        with self._connect() as conn:
            result = conn.execute(
                """
                WITH RECURSIVE chain(token_hash, replaced_by_token_hash, path) AS (
                    SELECT token_hash, replaced_by_token_hash, ARRAY[token_hash]
                    FROM refresh_token WHERE token_hash = %s
                    UNION ALL
                    SELECT t.token_hash, t.replaced_by_token_hash, chain.path || t.token_hash
                    FROM refresh_token t
                    JOIN chain ON t.token_hash = chain.replaced_by_token_hash
                    WHERE NOT t.token_hash = ANY(chain.path)
                )
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = now(), revoke_reason = %s
                WHERE token_hash IN (SELECT token_hash FROM chain WHERE token_hash <> %s)
                  AND is_revoked = FALSE
                """,
                (token_hash, reason, token_hash),
            )
            return result.rowcount

    def revoke_user_refresh_tokens(self, user_id: str, *, reason: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token
                SET is_revoked = TRUE, revoked_at = now(), revoke_reason = %s
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (reason, user_id),
            )
            return result.rowcount

    def list_active_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM refresh_token
                WHERE user_id = %s AND is_revoked = FALSE AND expires_at > now()
                ORDER BY created_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def count_active_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS n FROM refresh_token
                WHERE user_id = %s AND is_revoked = FALSE AND expires_at > now()
                """,
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (now or utcnow(),)
            )
            return result.rowcount

    # -- email jobs ------------------------------------------------------------

    @staticmethod
    def _job_from_row(row: Dict[str, Any]) -> EmailJob:
        return EmailJob(
            id=str(row["id"]),
            to=list(row.get("recipients") or []),
            subject=row["subject"],
            template=row["template"],
            context=row.get("context") or {},
            cc=list(row.get("cc") or []),
            bcc=list(row.get("bcc") or []),
            attachments=list(row.get("attachments") or []),
            priority=row.get("priority") or 0,
            max_attempts=row.get("max_attempts") or 3,
            attempts_made=row.get("attempts_made") or 0,
            state=EmailJobState(row.get("state") or "waiting"),
            run_at=row["run_at"],
            last_error=row.get("last_error"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            failed_at=row.get("failed_at"),
        )

    def enqueue_email_jobs(self, jobs: Iterable[EmailJob]) -> List[EmailJob]:
        """Insert a batch of jobs in one transaction."""
        inserted: List[EmailJob] = []
        try:
            with self._connect() as conn:
                for job in jobs:
                    row = conn.execute(
                        """
                        INSERT INTO email_job (
                            id, recipients, subject, template, context, cc, bcc, attachments,
                            priority, max_attempts, attempts_made, state, run_at, created_at, updated_at
                        )
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            job.id,
                            list(job.to),
                            job.subject,
                            job.template,
                            json.dumps(job.context),
                            list(job.cc),
                            list(job.bcc),
                            json.dumps(job.attachments),
                            job.priority,
                            job.max_attempts,
                            job.attempts_made,
                            EmailJobState(job.state).value,
                            job.run_at,
                            job.created_at,
                            job.updated_at,
                        ),
                    ).fetchone()
                    inserted.append(self._job_from_row(row))
        except errors.UniqueViolation:
            raise ConstraintViolation("email job id already exists", {"field": "id"})
        return inserted

    def lease_email_job(self, now: Optional[datetime] = None) -> Optional[EmailJob]:
        """Claim the next due waiting job: lowest priority value, then oldest."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_job SET state = 'active', updated_at = now()
                WHERE id = (
                    SELECT id FROM email_job
                    WHERE state = 'waiting' AND run_at <= %s
                    ORDER BY priority ASC, run_at ASC, created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (now or utcnow(),),
            ).fetchone()
        return self._job_from_row(row) if row else None

    def complete_email_job(self, job_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM email_job WHERE id = %s", (job_id,))
            return result.rowcount > 0

    def reschedule_email_job(
        self, job_id: str, *, error: str, run_at: datetime
    ) -> Optional[EmailJob]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_job
                SET attempts_made = attempts_made + 1, last_error = %s, run_at = %s,
                    state = 'waiting', updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (error, run_at, job_id),
            ).fetchone()
        return self._job_from_row(row) if row else None

    def fail_email_job(self, job_id: str, *, error: str) -> Optional[EmailJob]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE email_job
                SET attempts_made = attempts_made + 1, last_error = %s, state = 'failed',
                    failed_at = now(), updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (error, job_id),
            ).fetchone()
        return self._job_from_row(row) if row else None

    def get_email_job(self, job_id: str) -> Optional[EmailJob]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM email_job WHERE id = %s", (job_id,)
            ).fetchone()
        return self._job_from_row(row) if row else None

    def list_email_jobs(
        self, state: Optional[str] = None, *, limit: Optional[int] = None
    ) -> List[EmailJob]:
        query = "SELECT * FROM email_job WHERE 1=1"
        params: list[Any] = []
        if state:
            params.append(EmailJobState(state).value)
            query += " AND state = %s"
        query += " ORDER BY created_at ASC"
        if limit:
            params.append(limit)
            query += " LIMIT %s"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._job_from_row(row) for row in rows]

    def count_email_jobs(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in EmailJobState}
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT state, count(*) AS n FROM email_job GROUP BY state"
            ).fetchall()
        for row in rows:
            counts[row["state"]] = int(row["n"])
        return counts

    def requeue_stalled_email_jobs(self) -> int:
        """Return jobs left ``active`` by a previous process to ``waiting``."""
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE email_job SET state = 'waiting', updated_at = now() WHERE state = 'active'"
            )
            return result.rowcount

    def close(self) -> None:
        self.pool.close()
