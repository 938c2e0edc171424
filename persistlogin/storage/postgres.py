from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from persistlogin.logging import get_logger
from persistlogin.storage.errors import ConstraintViolation, RotationConflict
from persistlogin.storage.models import LoginGrant, User

REQUIRED_TABLES = (
    "app_user",
    "user_role",
    "user_credential",
    "persistent_login",
)


class PostgresStore:
    """Postgres-backed user directory and persistent-login grant store.

    Schema management lives outside this project; the store only checks that
    the tables it needs are present.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Install the persistent login schema first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # users
    def _user_from_row(self, row: dict, roles: Iterable[str]) -> User:
        created_at = row.get("created_at") or datetime.now(timezone.utc)
        return User(
            id=int(row["id"]),
            username=row["username"],
            roles=set(roles),
            is_active=row.get("is_active", True),
            created_at=created_at,
        )

    def create_user(
        self,
        username: str,
        *,
        roles: Optional[Iterable[str]] = None,
        is_active: bool = True,
    ) -> User:
        role_set = set(roles or ())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_user (username, is_active) VALUES (%s, %s) RETURNING *",
                    (username, is_active),
                ).fetchone()
                for role in sorted(role_set):
                    conn.execute(
                        "INSERT INTO user_role (user_id, role) VALUES (%s, %s)",
                        (row["id"], role),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return self._user_from_row(row, role_set)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            if not row:
                return None
            role_rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s", (user_id,)
            ).fetchall()
        return self._user_from_row(row, (r["role"] for r in role_rows))

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
            if not row:
                return None
            role_rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s", (row["id"],)
            ).fetchall()
        return self._user_from_row(row, (r["role"] for r in role_rows))

    def get_user_roles(self, user_id: int) -> set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s", (user_id,)
            ).fetchall()
        return {r["role"] for r in rows}

    def set_user_roles(self, user_id: int, roles: Iterable[str]) -> Optional[User]:
        with self._connect() as conn:
            conn.execute("DELETE FROM user_role WHERE user_id = %s", (user_id,))
            for role in sorted(set(roles)):
                conn.execute(
                    "INSERT INTO user_role (user_id, role) VALUES (%s, %s)",
                    (user_id, role),
                )
        return self.get_user(user_id)

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # persistent login grants
    @staticmethod
    def _grant_from_row(row: dict) -> LoginGrant:
        return LoginGrant(
            user_id=int(row["user_id"]),
            series_id=row["series"],
            token_hash=row["token"],
            fingerprint=row.get("fingerprint") or "",
            created=int(row["created"]),
        )

    def upsert_grant(
        self,
        user_id: int,
        series_id: str,
        token_hash: str,
        fingerprint: str,
        now: int,
        *,
        expected_token_hash: Optional[str] = None,
    ) -> LoginGrant:
        fingerprint = fingerprint or ""
        if expected_token_hash is not None:
            # Compare-and-swap: only the request still holding the read token wins
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE persistent_login
                    SET token = %s, fingerprint = %s, created = %s
                    WHERE user_id = %s AND series = %s AND token = %s
                    RETURNING *
                    """,
                    (token_hash, fingerprint, int(now), user_id, series_id, expected_token_hash),
                ).fetchone()
            if not row:
                raise RotationConflict("grant rotated concurrently", {"user_id": user_id})
            return self._grant_from_row(row)

        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO persistent_login (user_id, series, token, fingerprint, created)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, series) DO UPDATE
                    SET token = EXCLUDED.token,
                        fingerprint = EXCLUDED.fingerprint,
                        created = EXCLUDED.created
                    RETURNING *
                    """,
                    (user_id, series_id, token_hash, fingerprint, int(now)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("grant user missing", {"user_id": user_id})
        return self._grant_from_row(row)

    def find_grant(self, user_id: int, series_id: str) -> Optional[LoginGrant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM persistent_login WHERE user_id = %s AND series = %s",
                (user_id, series_id),
            ).fetchone()
        return self._grant_from_row(row) if row else None

    def list_user_grants(self, user_id: int) -> List[LoginGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM persistent_login WHERE user_id = %s ORDER BY created DESC",
                (user_id,),
            ).fetchall()
        return [self._grant_from_row(row) for row in rows]

    def delete_grant(self, user_id: int, series_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM persistent_login WHERE user_id = %s AND series = %s",
                (user_id, series_id),
            )
            return result.rowcount > 0

    def delete_user_grants(self, user_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM persistent_login WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_grants_older_than(self, cutoff: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM persistent_login WHERE created <= %s", (int(cutoff),)
            )
            return result.rowcount

    def count_grants(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM persistent_login").fetchone()
        return int(row["total"]) if row else 0

    def clear_grants(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM persistent_login")
            return result.rowcount

    def close(self) -> None:
        self.pool.close()
