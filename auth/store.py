"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and service API keys.

Pattern: Repository + Data Mapper. AuthStore is the repository; _row_to_account
and _row_to_api_key are the mappers. Kernel and route code never touch SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  Every record carries a version column. upsert_account() / upsert_api_key()
  write with UPDATE ... WHERE id = :id AND version = :version and bump the
  version in the same statement. A writer holding a stale copy updates zero
  rows and gets WriteConflict -- two concurrent rotations or password changes
  serialize instead of interleaving. Each write is one statement in one
  transaction, so an abandoned call either lands fully or not at all.

  Inserts rely on UNIQUE constraints (accounts.email; api_keys.key_hash; the
  partial index on api_keys.name WHERE is_active = 1). A lost insert race
  surfaces as WriteConflict.

Lookups return None rather than raising. Engine-level failures (timeouts,
unreachable DB) raise StoreUnavailable and are never reported as "not found".

DB path: auth/accessgate.db unless DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Engine

from auth.models import Account, Scope, ServiceApiKey
from core.config import get_settings
from core.errors import StoreUnavailable, WriteConflict

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'accessgate.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),  # bcrypt digest; NULL = no local password
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("status", String(30)),  # NULL on legacy rows -- gate treats as active
    Column("customer_id", String(64)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("last_login", String(32)),
    Column("version", Integer, nullable=False, server_default="1"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("key_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("key_prefix", String(12), nullable=False),  # display only
    Column("permissions", Text, nullable=False),  # comma-separated Scope values
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("rotated_at", String(32)),
    Column("last_used", String(32)),
    Column("expires_at", String(32)),
    Column("deactivated_at", String(32)),
    Column("version", Integer, nullable=False, server_default="1"),
)

# One active key per name; deactivated rows stay behind for the audit trail.
Index(
    "uq_api_keys_active_name",
    _api_keys.c.name,
    unique=True,
    sqlite_where=_api_keys.c.is_active == 1,
    postgresql_where=_api_keys.c.is_active == 1,
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _encode_permissions(permissions) -> str:
    return ",".join(sorted(Scope(p).value for p in permissions))


def _decode_permissions(raw: str | None) -> frozenset[Scope]:
    return frozenset(Scope(p) for p in (raw or "").split(",") if p)


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    """Map SQLAlchemy failures onto the kernel's persistence errors."""
    try:
        yield
    except sa_exc.IntegrityError as exc:
        raise WriteConflict(f"{action}: uniqueness constraint violated") from exc
    except (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError) as exc:
        raise StoreUnavailable(f"{action}: {exc.__class__.__name__}") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Account and ServiceApiKey records.

    Usage:
        store = AuthStore()
        saved = store.upsert_account(Account(email="ops@example.com", role="admin",
                                             hashed_password=hash_password("secret")))
        account = store.find_account_by_email("OPS@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url or _DEFAULT_DB_URL
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with _translate_errors("create schema"):
            _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except sa_exc.SQLAlchemyError:
            return False
        return True

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def find_account_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup. Returns None if not found."""
        with _translate_errors("find account"), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == normalize_email(email))).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_account_by_id(self, account_id: int) -> Account | None:
        with _translate_errors("find account"), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self, role: str | None = None) -> list[Account]:
        """Return accounts ordered by email, optionally filtered by role."""
        query = _accounts.select().order_by(_accounts.c.email)
        if role is not None:
            query = query.where(_accounts.c.role == role)
        with _translate_errors("list accounts"), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_account(r) for r in rows]

    def upsert_account(self, account: Account) -> Account:
        """Insert (id is None) or compare-and-swap update an account.

        Returns the stored record as re-read from the database. Raises
        WriteConflict if the email is already taken (insert) or the stored
        version moved past account.version (update).
        """
        now = _now_iso()
        values = {
            "email": normalize_email(account.email),
            "name": account.name or "",
            "hashed_password": account.hashed_password,
            "role": account.role,
            "is_active": 1 if account.is_active else 0,
            "status": account.status,
            "customer_id": account.customer_id,
            "updated_at": now,
        }
        with _translate_errors("upsert account"), self.engine.connect() as conn:
            if account.id is None:
                result = conn.execute(_accounts.insert().values(created_at=now, version=1, **values))
                account_id = result.inserted_primary_key[0]
            else:
                result = conn.execute(
                    _accounts.update()
                    .where((_accounts.c.id == account.id) & (_accounts.c.version == account.version))
                    .values(version=_accounts.c.version + 1, **values)
                )
                if result.rowcount == 0:
                    conn.rollback()
                    raise WriteConflict(f"Account {account.id} changed since version {account.version}.")
                account_id = account.id
            conn.commit()
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row)

    def touch_last_login(self, account_id: int) -> None:
        """Stamp last_login. Does not bump version -- a login must not conflict with a password change."""
        with _translate_errors("touch last_login"), self.engine.connect() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # API key queries
    # ------------------------------------------------------------------

    def find_api_key_by_name(self, name: str) -> ServiceApiKey | None:
        """Return the active key with this name, else the most recent deactivated one."""
        with _translate_errors("find api key"), self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select()
                .where(_api_keys.c.name == name)
                .order_by(_api_keys.c.is_active.desc(), _api_keys.c.id.desc())
            ).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def find_api_key_by_hash(self, key_hash: str) -> ServiceApiKey | None:
        """Look up a key (active or not) by its HMAC digest. O(1) via UNIQUE index."""
        with _translate_errors("find api key"), self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, include_inactive: bool = False) -> list[ServiceApiKey]:
        query = _api_keys.select().order_by(_api_keys.c.name, _api_keys.c.id.desc())
        if not include_inactive:
            query = query.where(_api_keys.c.is_active == 1)
        with _translate_errors("list api keys"), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def upsert_api_key(self, api_key: ServiceApiKey) -> ServiceApiKey:
        """Insert (id is None) or compare-and-swap update a key record.

        The update path is a single UPDATE of key_hash/key_prefix/state guarded
        by version, so rotation replaces the material atomically: the old digest
        stops matching in the same statement that makes the new one match.
        """
        values = {
            "name": api_key.name,
            "key_hash": api_key.key_hash,
            "key_prefix": api_key.key_prefix,
            "permissions": _encode_permissions(api_key.permissions),
            "is_active": 1 if api_key.is_active else 0,
            "rotated_at": api_key.rotated_at,
            "expires_at": api_key.expires_at,
            "deactivated_at": api_key.deactivated_at,
        }
        with _translate_errors("upsert api key"), self.engine.connect() as conn:
            if api_key.id is None:
                result = conn.execute(_api_keys.insert().values(created_at=_now_iso(), version=1, **values))
                key_id = result.inserted_primary_key[0]
            else:
                result = conn.execute(
                    _api_keys.update()
                    .where((_api_keys.c.id == api_key.id) & (_api_keys.c.version == api_key.version))
                    .values(version=_api_keys.c.version + 1, **values)
                )
                if result.rowcount == 0:
                    conn.rollback()
                    raise WriteConflict(f"API key {api_key.name!r} changed since version {api_key.version}.")
                key_id = api_key.id
            conn.commit()
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row)

    def touch_api_key(self, key_id: int) -> None:
        """Stamp last_used after a successful authorization. Does not bump version."""
        with _translate_errors("touch last_used"), self.engine.connect() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used=_now_iso()))
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name or "",
        hashed_password=row.hashed_password,
        role=row.role,
        is_active=bool(row.is_active),
        status=row.status,
        customer_id=row.customer_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
        version=row.version,
    )


def _row_to_api_key(row) -> ServiceApiKey:
    return ServiceApiKey(
        id=row.id,
        name=row.name,
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        permissions=_decode_permissions(row.permissions),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        rotated_at=row.rotated_at,
        last_used=row.last_used,
        expires_at=row.expires_at,
        deactivated_at=row.deactivated_at,
        version=row.version,
    )
