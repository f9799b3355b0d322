"""
Database abstraction for SQL engines (Postgres, SQLite) and an in-memory
test implementation.

Both implementations expose the same operations and explicit transaction
control. Transaction state is kept per calling context, so a client
instance can be shared by concurrent requests.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Protocol

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    event,
    func,
    inspect,
    select,
    text,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.schema import CreateIndex

from brewbuddy.sanitize import stable_coffee_uid

logger = logging.getLogger(__name__)

DEFAULT_GRINDER = "fellow_gen2"
DEFAULT_METHOD = "v60"
VALID_GRINDERS = ("fellow_gen2", "comandante", "timemore")
VALID_METHODS = ("v60", "chemex", "aeropress", "kalita", "origami")
# Grinder values renamed by later releases.
DEPRECATED_GRINDERS = {"fellow": "fellow_gen2"}


class DatabaseError(Exception):
    """Base exception for storage operations."""


class DatabaseNotInitializedError(DatabaseError):
    """An operation ran before initialize(). Always a programming error."""


class TransactionError(DatabaseError):
    """Raised on nested begin, or commit/rollback without a transaction."""


class DuplicateUserError(DatabaseError):
    """Username or token is already taken."""


class DeviceAlreadyBoundError(DatabaseError):
    """The device id is bound to a different user."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class UserRecord:
    id: int
    username: str
    token: str
    device_id: Optional[str] = None
    device_info: Optional[str] = None
    grinder_preference: str = DEFAULT_GRINDER
    method_preference: str = DEFAULT_METHOD
    water_hardness: Optional[float] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class CoffeeRecord:
    id: int
    user_id: int
    coffee_uid: str
    data: str
    method: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def document(self) -> dict:
        parsed = json.loads(self.data)
        return parsed if isinstance(parsed, dict) else {}


class DbClient(Protocol):
    """Interface for database access."""

    def initialize(self) -> None:
        ...

    def begin_transaction(self) -> None:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def create_user(
        self,
        username: str,
        token: str,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> UserRecord:
        ...

    def get_user_by_token(
        self, token: str, device_id: Optional[str] = None
    ) -> Optional[UserRecord]:
        ...

    def username_exists(self, username: str) -> bool:
        ...

    def get_user_count(self) -> int:
        ...

    def update_last_login(self, user_id: int) -> None:
        ...

    def update_grinder_preference(self, user_id: int, grinder: str) -> None:
        ...

    def update_method_preference(self, user_id: int, method: str) -> None:
        ...

    def update_water_hardness(self, user_id: int, hardness: float) -> None:
        ...

    def bind_device(self, user_id: int, device_id: str, device_info: str) -> bool:
        ...

    def save_coffee(
        self, user_id: int, uid: str, document: dict, method: Optional[str] = None
    ) -> int:
        ...

    def get_user_coffees(self, user_id: int) -> list[CoffeeRecord]:
        ...

    def replace_user_coffees(self, user_id: int, keep_uids: list[str]) -> int:
        ...

    def delete_user_coffees(self, user_id: int) -> int:
        ...


@contextmanager
def transaction(db: DbClient) -> Iterator[DbClient]:
    """Commit on success, roll back and re-raise on any error."""
    db.begin_transaction()
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    db.commit()


def _dump_document(document: dict) -> str:
    return json.dumps(document, ensure_ascii=False)


class InMemoryDbClient:
    """Simple in-memory database for development and tests.

    A transaction holds the client lock and a snapshot of all state, so
    transactions are serialized and a rollback restores the snapshot.
    """

    def __init__(self):
        self.users: Dict[int, UserRecord] = {}
        self.coffees: Dict[int, CoffeeRecord] = {}
        self._next_user_id = 1
        self._next_coffee_id = 1
        self._initialized = False
        self._lock = threading.RLock()
        self._snapshot: ContextVar[Optional[tuple]] = ContextVar(
            f"brewbuddy_memory_tx_{id(self)}", default=None
        )

    def initialize(self) -> None:
        self._initialized = True

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise DatabaseNotInitializedError(
                "Database not initialized. Call initialize() first."
            )

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.users.clear()
            self.coffees.clear()
            self._next_user_id = 1
            self._next_coffee_id = 1

    def _state(self) -> tuple:
        return (
            copy.deepcopy(self.users),
            copy.deepcopy(self.coffees),
            self._next_user_id,
            self._next_coffee_id,
        )

    def begin_transaction(self) -> None:
        self._require_initialized()
        if self._snapshot.get() is not None:
            raise TransactionError("A transaction is already active")
        self._lock.acquire()
        self._snapshot.set(self._state())

    def _end_transaction(self) -> tuple:
        snapshot = self._snapshot.get()
        if snapshot is None:
            raise TransactionError("No active transaction")
        self._snapshot.set(None)
        self._lock.release()
        return snapshot

    def commit(self) -> None:
        self._end_transaction()

    def rollback(self) -> None:
        with self._lock:
            users, coffees, next_user_id, next_coffee_id = self._end_transaction()
            self.users = users
            self.coffees = coffees
            self._next_user_id = next_user_id
            self._next_coffee_id = next_coffee_id

    def _find_user_by_device(self, device_id: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.device_id == device_id:
                return user
        return None

    def create_user(
        self,
        username: str,
        token: str,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> UserRecord:
        self._require_initialized()
        with self._lock:
            for user in self.users.values():
                if user.username.lower() == username.lower() or user.token == token:
                    raise DuplicateUserError("Username or token already exists")
            if device_id and self._find_user_by_device(device_id):
                raise DeviceAlreadyBoundError("Device already bound to another user")
            record = UserRecord(
                id=self._next_user_id,
                username=username,
                token=token,
                device_id=device_id,
                device_info=device_info,
                last_login_at=_utcnow() if device_id else None,
            )
            self.users[record.id] = record
            self._next_user_id += 1
            return replace(record)

    def get_user_by_token(
        self, token: str, device_id: Optional[str] = None
    ) -> Optional[UserRecord]:
        self._require_initialized()
        with self._lock:
            for user in self.users.values():
                if user.token != token:
                    continue
                if device_id is not None and user.device_id != device_id:
                    return None
                return replace(user)
        return None

    def username_exists(self, username: str) -> bool:
        self._require_initialized()
        with self._lock:
            wanted = username.lower()
            return any(u.username.lower() == wanted for u in self.users.values())

    def get_user_count(self) -> int:
        self._require_initialized()
        return len(self.users)

    def _update_user(self, user_id: int, **changes) -> None:
        self._require_initialized()
        with self._lock:
            user = self.users.get(user_id)
            if user:
                self.users[user_id] = replace(user, **changes)

    def update_last_login(self, user_id: int) -> None:
        self._update_user(user_id, last_login_at=_utcnow())

    def update_grinder_preference(self, user_id: int, grinder: str) -> None:
        self._update_user(user_id, grinder_preference=grinder)

    def update_method_preference(self, user_id: int, method: str) -> None:
        self._update_user(user_id, method_preference=method)

    def update_water_hardness(self, user_id: int, hardness: float) -> None:
        self._update_user(user_id, water_hardness=hardness)

    def bind_device(self, user_id: int, device_id: str, device_info: str) -> bool:
        self._require_initialized()
        with self._lock:
            user = self.users.get(user_id)
            if not user or user.device_id is not None:
                return False
            owner = self._find_user_by_device(device_id)
            if owner and owner.id != user_id:
                raise DeviceAlreadyBoundError("Device already bound to another user")
            self.users[user_id] = replace(
                user,
                device_id=device_id,
                device_info=device_info,
                last_login_at=_utcnow(),
            )
            return True

    def save_coffee(
        self, user_id: int, uid: str, document: dict, method: Optional[str] = None
    ) -> int:
        self._require_initialized()
        with self._lock:
            if user_id not in self.users:
                raise DatabaseError(f"Unknown user {user_id}")
            for coffee in self.coffees.values():
                if coffee.user_id == user_id and coffee.coffee_uid == uid:
                    coffee.data = _dump_document(document)
                    coffee.method = method
                    coffee.created_at = _utcnow()
                    return coffee.id
            record = CoffeeRecord(
                id=self._next_coffee_id,
                user_id=user_id,
                coffee_uid=uid,
                data=_dump_document(document),
                method=method,
            )
            self.coffees[record.id] = record
            self._next_coffee_id += 1
            return record.id

    def get_user_coffees(self, user_id: int) -> list[CoffeeRecord]:
        self._require_initialized()
        with self._lock:
            rows = [replace(c) for c in self.coffees.values() if c.user_id == user_id]
        rows.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return rows

    def _delete_coffees(self, user_id: int, keep: set[str]) -> int:
        self._require_initialized()
        with self._lock:
            doomed = [
                coffee_id
                for coffee_id, coffee in self.coffees.items()
                if coffee.user_id == user_id and coffee.coffee_uid not in keep
            ]
            for coffee_id in doomed:
                del self.coffees[coffee_id]
            return len(doomed)

    def replace_user_coffees(self, user_id: int, keep_uids: list[str]) -> int:
        return self._delete_coffees(user_id, set(keep_uids))

    def delete_user_coffees(self, user_id: int) -> int:
        return self._delete_coffees(user_id, set())


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL; Postgres in
    production and SQLite locally behave identically.
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        url = make_url(database_url)
        self.is_sqlite = url.get_backend_name() == "sqlite"
        if self.is_sqlite and url.database in (None, "", ":memory:"):
            # One shared connection, otherwise every session sees an empty db.
            self.engine = create_engine(
                url,
                future=True,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(
                url,
                future=True,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
        if self.is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        self._initialized = False
        self._active: ContextVar[Optional[Session]] = ContextVar(
            f"brewbuddy_sql_tx_{id(self)}", default=None
        )

    def initialize(self) -> None:
        """Create missing tables and bring older schemas up to date."""
        with self.engine.begin() as conn:
            Base.metadata.create_all(conn)
            _migrate(conn)
        self._initialized = True
        logger.info("Database initialized (%s)", self.engine.url.get_backend_name())

    def close(self) -> None:
        self.engine.dispose()

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise DatabaseNotInitializedError(
                "Database not initialized. Call initialize() first."
            )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        self._require_initialized()
        active = self._active.get()
        if active is not None:
            yield active
            active.flush()
            return
        with self.Session() as session:
            yield session
            session.commit()

    def begin_transaction(self) -> None:
        self._require_initialized()
        if self._active.get() is not None:
            raise TransactionError("A transaction is already active")
        session = self.Session()
        session.begin()
        self._active.set(session)

    def _take_active(self) -> Session:
        session = self._active.get()
        if session is None:
            raise TransactionError("No active transaction")
        self._active.set(None)
        return session

    def commit(self) -> None:
        session = self._take_active()
        try:
            session.commit()
        finally:
            session.close()

    def rollback(self) -> None:
        session = self._take_active()
        try:
            session.rollback()
        finally:
            session.close()

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            id=row.id,
            username=row.username,
            token=row.token,
            device_id=row.device_id,
            device_info=row.device_info,
            grinder_preference=row.grinder_preference or DEFAULT_GRINDER,
            method_preference=row.method_preference or DEFAULT_METHOD,
            water_hardness=row.water_hardness,
            last_login_at=_as_utc(row.last_login_at),
            created_at=_as_utc(row.created_at),
        )

    def _to_coffee_record(self, row: "CoffeeRow") -> CoffeeRecord:
        return CoffeeRecord(
            id=row.id,
            user_id=row.user_id,
            coffee_uid=row.coffee_uid,
            data=row.data,
            method=row.method,
            created_at=_as_utc(row.created_at),
        )

    def create_user(
        self,
        username: str,
        token: str,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> UserRecord:
        try:
            with self._session() as session:
                row = UserRow(
                    username=username,
                    token=token,
                    device_id=device_id,
                    device_info=device_info,
                    last_login_at=_utcnow() if device_id else None,
                    created_at=_utcnow(),
                )
                session.add(row)
                session.flush()
                return self._to_user_record(row)
        except IntegrityError as exc:
            raise DuplicateUserError("Username, token or device already exists") from exc

    def get_user_by_token(
        self, token: str, device_id: Optional[str] = None
    ) -> Optional[UserRecord]:
        with self._session() as session:
            stmt = select(UserRow).where(UserRow.token == token)
            if device_id is not None:
                stmt = stmt.where(UserRow.device_id == device_id)
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def username_exists(self, username: str) -> bool:
        with self._session() as session:
            stmt = select(UserRow.id).where(
                func.lower(UserRow.username) == username.lower()
            )
            return session.execute(stmt).first() is not None

    def get_user_count(self) -> int:
        with self._session() as session:
            return session.execute(select(func.count(UserRow.id))).scalar_one()

    def _update_user(self, user_id: int, **values) -> None:
        with self._session() as session:
            session.execute(
                update(UserRow)
                .where(UserRow.id == user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    def update_last_login(self, user_id: int) -> None:
        self._update_user(user_id, last_login_at=_utcnow())

    def update_grinder_preference(self, user_id: int, grinder: str) -> None:
        self._update_user(user_id, grinder_preference=grinder)

    def update_method_preference(self, user_id: int, method: str) -> None:
        self._update_user(user_id, method_preference=method)

    def update_water_hardness(self, user_id: int, hardness: float) -> None:
        self._update_user(user_id, water_hardness=hardness)

    def bind_device(self, user_id: int, device_id: str, device_info: str) -> bool:
        """Bind only while the user has no device; report whether we bound."""
        try:
            with self._session() as session:
                result = session.execute(
                    update(UserRow)
                    .where(UserRow.id == user_id, UserRow.device_id.is_(None))
                    .values(
                        device_id=device_id,
                        device_info=device_info,
                        last_login_at=_utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except IntegrityError as exc:
            raise DeviceAlreadyBoundError(
                "Device already bound to another user"
            ) from exc

    def save_coffee(
        self, user_id: int, uid: str, document: dict, method: Optional[str] = None
    ) -> int:
        now = _utcnow()
        with self._session() as session:
            stmt = select(CoffeeRow).where(
                CoffeeRow.user_id == user_id, CoffeeRow.coffee_uid == uid
            )
            row = session.execute(stmt).scalar_one_or_none()
            if row:
                row.data = _dump_document(document)
                row.method = method
                row.created_at = now
            else:
                row = CoffeeRow(
                    user_id=user_id,
                    coffee_uid=uid,
                    data=_dump_document(document),
                    method=method,
                    created_at=now,
                )
                session.add(row)
            session.flush()
            return row.id

    def get_user_coffees(self, user_id: int) -> list[CoffeeRecord]:
        with self._session() as session:
            rows = session.execute(
                select(CoffeeRow)
                .where(CoffeeRow.user_id == user_id)
                .order_by(CoffeeRow.created_at.desc(), CoffeeRow.id.desc())
            ).scalars()
            return [self._to_coffee_record(row) for row in rows]

    def replace_user_coffees(self, user_id: int, keep_uids: list[str]) -> int:
        stmt = delete(CoffeeRow).where(CoffeeRow.user_id == user_id)
        if keep_uids:
            stmt = stmt.where(CoffeeRow.coffee_uid.not_in(list(keep_uids)))
        with self._session() as session:
            result = session.execute(
                stmt.execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    def delete_user_coffees(self, user_id: int) -> int:
        return self.replace_user_coffees(user_id, [])


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # ON DELETE CASCADE is a no-op in SQLite without this pragma.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True)
    token = Column(String, nullable=False, unique=True, index=True)
    device_id = Column(String, nullable=True)
    device_info = Column(Text, nullable=True)
    grinder_preference = Column(String, nullable=True, server_default=DEFAULT_GRINDER)
    method_preference = Column(String, nullable=True, server_default=DEFAULT_METHOD)
    water_hardness = Column(Float, nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class CoffeeRow(Base):
    __tablename__ = "coffees"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    coffee_uid = Column(String, nullable=True)
    data = Column(Text, nullable=False)
    method = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


# Declared outside the column definitions so the migration can add them to
# tables created by older releases.
Index("idx_users_device_id", UserRow.device_id, unique=True)
Index("idx_users_username_lower", func.lower(UserRow.username), unique=True)
Index("idx_coffees_user_id", CoffeeRow.user_id)
Index("idx_coffees_user_created", CoffeeRow.user_id, CoffeeRow.created_at.desc())
Index("idx_coffees_user_uid", CoffeeRow.user_id, CoffeeRow.coffee_uid, unique=True)

# Columns added after the first release, in the order they were introduced.
MIGRATED_COLUMNS = {
    "users": (
        "device_id",
        "device_info",
        "last_login_at",
        "grinder_preference",
        "method_preference",
        "water_hardness",
    ),
    "coffees": ("coffee_uid", "method"),
}


def _add_missing_columns(conn) -> None:
    inspector = inspect(conn)
    for table_name, column_names in MIGRATED_COLUMNS.items():
        existing = {c["name"] for c in inspector.get_columns(table_name)}
        table = Base.metadata.tables[table_name]
        for name in column_names:
            if name in existing:
                continue
            column = table.c[name]
            ddl = f"ALTER TABLE {table_name} ADD COLUMN {name} "
            ddl += column.type.compile(dialect=conn.dialect)
            if column.server_default is not None:
                ddl += f" DEFAULT '{column.server_default.arg}'"
            conn.execute(text(ddl))
            logger.info("Migrated %s: added column %s", table_name, name)


def _backfill_coffee_uids(conn) -> None:
    taken = {
        (user_id, uid)
        for user_id, uid in conn.execute(
            select(CoffeeRow.user_id, CoffeeRow.coffee_uid).where(
                CoffeeRow.coffee_uid.is_not(None)
            )
        )
    }
    missing = conn.execute(
        select(CoffeeRow.id, CoffeeRow.user_id, CoffeeRow.data)
        .where(CoffeeRow.coffee_uid.is_(None))
        .order_by(CoffeeRow.id)
    ).all()
    for row_id, user_id, data in missing:
        try:
            uid = stable_coffee_uid(json.loads(data))
        except (TypeError, ValueError):
            uid = f"legacy-{row_id}"
        if (user_id, uid) in taken:
            uid = f"{uid}-{row_id}"
        taken.add((user_id, uid))
        conn.execute(
            update(CoffeeRow).where(CoffeeRow.id == row_id).values(coffee_uid=uid)
        )
    if missing:
        logger.info("Migrated coffees: backfilled %d stable ids", len(missing))


def _drop_non_unique_indexes(conn) -> None:
    """Drop indexes that hold the name of a unique index but are not unique.

    Older releases created idx_users_device_id as a plain index; left in
    place it would stop the unique one from ever being created.
    """
    inspector = inspect(conn)
    for table in Base.metadata.sorted_tables:
        existing = {ix["name"]: ix for ix in inspector.get_indexes(table.name)}
        for index in table.indexes:
            found = existing.get(index.name)
            if index.unique and found is not None and not found.get("unique"):
                index.drop(conn)
                logger.info(
                    "Migrated %s: rebuilding %s as unique", table.name, index.name
                )


def _migrate(conn) -> None:
    _add_missing_columns(conn)
    _backfill_coffee_uids(conn)
    for old, new in DEPRECATED_GRINDERS.items():
        conn.execute(
            update(UserRow)
            .where(UserRow.grinder_preference == old)
            .values(grinder_preference=new)
        )
    conn.execute(
        update(UserRow)
        .where(UserRow.grinder_preference.is_(None))
        .values(grinder_preference=DEFAULT_GRINDER)
    )
    conn.execute(
        update(UserRow)
        .where(UserRow.method_preference.is_(None))
        .values(method_preference=DEFAULT_METHOD)
    )
    _drop_non_unique_indexes(conn)
    # create_all skips indexes of tables that already existed. IF NOT EXISTS
    # also covers expression indexes, which SQLite reflection does not list.
    for table in Base.metadata.sorted_tables:
        for index in table.indexes:
            conn.execute(CreateIndex(index, if_not_exists=True))
