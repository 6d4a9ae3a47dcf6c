"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and the whitelist.

Pattern: Repository + Data Mapper. AccountStore is the repository;
_row_to_account / _row_to_whitelist_entry are the mappers. Workflow and
dependency code never touches SQL directly.

Async contract:
  Every public method is a coroutine. The SQL itself runs on a synchronous
  engine inside Starlette's thread pool (run_in_threadpool), so a slow query
  suspends only the calling request, never the event loop.

Field paths:
  Callers address columns by their domain path ("registration.token",
  "reset.expires", ...). _FIELDS maps each accepted path to its column and is
  validated before any SQL is built -- an unknown path is a programming error
  and raises KeyError.

Atomicity:
  update_fields(selector, fields) is a conditional update: the selector is
  part of the UPDATE's WHERE clause, so "set these fields only if the row still
  looks like this" is one statement. The registration workflow relies on it to
  make token consumption single-use under concurrent requests. No other
  locking happens in-process.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, mail/, or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, and_, create_engine, event, func, or_
from sqlalchemy.engine import Engine
from starlette.concurrency import run_in_threadpool

from auth.models import ROLE_USER, Account, Registration, ResetCredential, WhitelistEntry

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("password_digest", Text),  # NULL for federated-only accounts
    Column("external_id", String(255), unique=True),  # NULLs are distinct, so absent ids never collide
    Column("role", String(10), nullable=False, server_default=ROLE_USER),
    Column("registration_date", String(32)),
    Column("registration_status", String(10)),
    Column("registration_registered", Integer, nullable=False, server_default="0"),
    Column("registration_token", Text),
    Column("reset_token", Text),
    Column("reset_expires", String(32)),
    Column("archived", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_whitelist = Table(
    "whitelist",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), unique=True),
    Column("domain", String(255), unique=True),
    Column("created_at", String(32), nullable=False),
)

_FIELDS = {
    "id": _accounts.c.id,
    "email": _accounts.c.email,
    "password_digest": _accounts.c.password_digest,
    "external_id": _accounts.c.external_id,
    "role": _accounts.c.role,
    "registration.date": _accounts.c.registration_date,
    "registration.status": _accounts.c.registration_status,
    "registration.registered": _accounts.c.registration_registered,
    "registration.token": _accounts.c.registration_token,
    "reset.token": _accounts.c.reset_token,
    "reset.expires": _accounts.c.reset_expires,
    "archived": _accounts.c.archived,
}

# Only these paths may be used with find_by_token().
TOKEN_FIELDS = ("registration.token", "reset.token")


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _where(selector: dict[str, Any]):
    clauses = [_FIELDS[path] == _to_db(path, value) for path, value in selector.items()]
    return and_(*clauses)


def _to_db(path: str, value: Any) -> Any:
    if path == "registration.registered":
        return 1 if value else 0
    return value


def _domain_suffixes(domain: str) -> list[str]:
    """Return domain and every parent domain: a.b.com -> [a.b.com, b.com, com]."""
    labels = domain.split(".")
    return [".".join(labels[i:]) for i in range(len(labels))]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and WhitelistEntry records.

    Usage:
        store = AccountStore("sqlite:///onboarding.db")
        account = await store.create(Account(email="a@b.com", password_digest=digest))
        same = await store.find_by_email("a@b.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    async def find_by_email(self, email: str, with_digest: bool = False) -> Account | None:
        """Look up an account by its (lower-cased) email. Returns None if not found.

        password_digest is left empty unless with_digest=True -- only the login
        path asks for it.
        """
        return await run_in_threadpool(self._find_one, _accounts.c.email == email.lower(), with_digest)

    async def find_by_id(self, account_id: str) -> Account | None:
        return await run_in_threadpool(self._find_one, _accounts.c.id == account_id, False)

    async def find_by_external_id(self, external_id: str) -> Account | None:
        """Look up an account by its federated identity subject."""
        return await run_in_threadpool(self._find_one, _accounts.c.external_id == external_id, False)

    async def find_by_token(self, field_path: str, token: str) -> Account | None:
        """Look up the account holding an outstanding link token.

        field_path is "registration.token" or "reset.token". Anything else is
        rejected with ValueError so a caller cannot turn this into a lookup on
        an arbitrary column.
        """
        if field_path not in TOKEN_FIELDS:
            raise ValueError(f"Not a token field: {field_path!r}")
        if not token:
            return None
        return await run_in_threadpool(self._find_one, _FIELDS[field_path] == token, False)

    async def create(self, account: Account) -> Account:
        """Insert a new account and return it as stored.

        Raises sqlalchemy.exc.IntegrityError if the email or external id is
        already taken. The workflow translates that into a Conflict error; a
        concurrent duplicate registration surfaces here too.
        """
        return await run_in_threadpool(self._create, account)

    async def update_fields(self, selector: dict[str, Any], fields: dict[str, Any]) -> Account | None:
        """Conditionally update one account and return its fresh state.

        selector: {field_path: expected_value} -- every pair must match.
        fields:   {field_path: new_value}.

        Returns None when no row matches the selector, including the case where
        another request changed the row between our read and this write.
        """
        if not selector:
            raise ValueError("update_fields requires a selector")
        return await run_in_threadpool(self._update_fields, selector, fields)

    # ------------------------------------------------------------------
    # Whitelist
    # ------------------------------------------------------------------

    async def is_whitelisted(self, email: str) -> bool:
        """Return True if the email, or its domain or a parent domain, is whitelisted.

        Matching is case-insensitive. A domain entry "b.com" covers "x@b.com"
        and "x@mail.b.com", but never "x@notb.com" or "x@b.com.evil.io" --
        candidates are built from the email's own domain labels, so the query
        is an exact IN (...) match rather than a substring search.
        """
        email = email.strip().lower()
        _, _, domain = email.rpartition("@")
        if not domain:
            return False
        return await run_in_threadpool(self._is_whitelisted, email, _domain_suffixes(domain))

    async def add_whitelist_entry(self, entry: WhitelistEntry) -> int:
        """Insert a whitelist entry and return its ID.

        Raises ValueError unless exactly one of email / domain is set, and
        sqlalchemy.exc.IntegrityError on a duplicate.
        """
        if bool(entry.email) == bool(entry.domain):
            raise ValueError("A whitelist entry needs exactly one of email or domain")
        return await run_in_threadpool(self._add_whitelist_entry, entry)

    async def list_whitelist(self) -> list[WhitelistEntry]:
        return await run_in_threadpool(self._list_whitelist)

    async def delete_all_accounts(self) -> int:
        """Remove every account. Used by the seeder only; returns the row count."""
        return await run_in_threadpool(self._delete_all_accounts)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Synchronous bodies (run in the thread pool)
    # ------------------------------------------------------------------

    def _find_one(self, condition, with_digest: bool) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(condition)).fetchone()
        if row is None:
            return None
        return _row_to_account(row, with_digest=with_digest)

    def _create(self, account: Account) -> Account:
        now = _now_iso()
        account_id = account.id or uuid.uuid4().hex
        values = {
            "id": account_id,
            "email": account.email.lower(),
            "password_digest": account.password_digest,
            "external_id": account.external_id,
            "role": account.role,
            "registration_date": account.registration.date,
            "registration_status": account.registration.status,
            "registration_registered": 1 if account.registration.registered else 0,
            "registration_token": account.registration.token,
            "reset_token": account.reset.token,
            "reset_expires": account.reset.expires,
            "archived": account.archived,
            "created_at": now,
            "updated_at": now,
        }
        with self.engine.begin() as conn:
            conn.execute(_accounts.insert().values(**values))
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row)

    def _update_fields(self, selector: dict[str, Any], fields: dict[str, Any]) -> Account | None:
        values = {_FIELDS[path].name: _to_db(path, value) for path, value in fields.items()}
        values["updated_at"] = _now_iso()
        condition = _where(selector)
        with self.engine.begin() as conn:
            row = conn.execute(_accounts.select().with_only_columns(_accounts.c.id).where(condition)).fetchone()
            if row is None:
                return None
            # Re-state the selector in the UPDATE itself: the write only lands
            # if the row still matches at statement time.
            result = conn.execute(
                _accounts.update().where(and_(_accounts.c.id == row.id, condition)).values(**values)
            )
            if result.rowcount == 0:
                return None
            fresh = conn.execute(_accounts.select().where(_accounts.c.id == row.id)).fetchone()
        return _row_to_account(fresh)

    def _is_whitelisted(self, email: str, domains: list[str]) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                _whitelist.select()
                .with_only_columns(_whitelist.c.id)
                .where(or_(func.lower(_whitelist.c.email) == email, func.lower(_whitelist.c.domain).in_(domains)))
                .limit(1)
            ).fetchone()
        return row is not None

    def _add_whitelist_entry(self, entry: WhitelistEntry) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _whitelist.insert().values(
                    email=entry.email.lower() if entry.email else None,
                    domain=entry.domain.lower() if entry.domain else None,
                    created_at=_now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def _list_whitelist(self) -> list[WhitelistEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(_whitelist.select().order_by(_whitelist.c.id)).fetchall()
        return [_row_to_whitelist_entry(r) for r in rows]

    def _delete_all_accounts(self) -> int:
        with self.engine.begin() as conn:
            return conn.execute(_accounts.delete()).rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row, with_digest: bool = False) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_digest=row.password_digest if with_digest else None,
        external_id=row.external_id,
        role=row.role,
        registration=Registration(
            date=row.registration_date,
            status=row.registration_status,
            registered=bool(row.registration_registered),
            token=row.registration_token,
        ),
        reset=ResetCredential(token=row.reset_token, expires=row.reset_expires),
        archived=row.archived,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_whitelist_entry(row) -> WhitelistEntry:
    return WhitelistEntry(id=row.id, email=row.email, domain=row.domain, created_at=row.created_at)
