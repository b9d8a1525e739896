"""
Huntly storage backend (SQLite).

Board reads and writes take an open connection so that board.py can compose
a whole drag-and-drop move inside one transaction; everything else opens its
own short-lived connection.
"""
import sqlite3
import json
import logging
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Dict, Any, Iterator
from datetime import datetime

from .errors import ConflictError, NotFoundError
from .schema import (
    ApiKey,
    BoardItem,
    BoardKind,
    ItemStatus,
    Member,
    MemberStatus,
    Priority,
    User,
    iso,
    parse_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


def new_id() -> str:
    return uuid.uuid4().hex


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


# kind -> (table, parent column, parent table, kind-specific columns)
BOARD_TABLES = {
    BoardKind.TASK: ("tasks", "project_id", "projects", ()),
    BoardKind.INTERNAL_TASK: (
        "internal_tasks",
        "internal_project_id",
        "internal_projects",
        ("story_id", "due_date", "estimated_hours", "actual_hours", "tags"),
    ),
    BoardKind.STORY: ("stories", "project_id", "projects", ("points",)),
}

_BOARD_COMMON = """
    id TEXT PRIMARY KEY,
    {parent} TEXT NOT NULL REFERENCES {parent_table}(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'TODO',
    priority TEXT NOT NULL DEFAULT 'MEDIUM',
    sort_order INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
"""


class CrmStore:
    """SQLite-backed store for the CRM core."""

    def __init__(self, db_path: str):
        """Initialize store and create tables if needed."""
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self.connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS members (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    role TEXT DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    member_id TEXT UNIQUE REFERENCES members(id) ON DELETE SET NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            for table in ("projects", "internal_projects"):
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        description TEXT DEFAULT '',
                        created_at TEXT NOT NULL
                    )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    key_hash TEXT NOT NULL UNIQUE,
                    prefix TEXT NOT NULL,
                    permissions TEXT NOT NULL,  -- JSON list
                    internal_project_id TEXT REFERENCES internal_projects(id) ON DELETE CASCADE,
                    expires_at TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_used_at TEXT,
                    created_by_id TEXT REFERENCES members(id) ON DELETE SET NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_api_keys_prefix ON api_keys(prefix)")
            conn.execute(f"CREATE TABLE IF NOT EXISTS tasks ({_BOARD_COMMON.format(parent='project_id', parent_table='projects')})")
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS stories (
                    {_BOARD_COMMON.format(parent='project_id', parent_table='projects')},
                    points INTEGER DEFAULT 0
                )
            """)
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS internal_tasks (
                    {_BOARD_COMMON.format(parent='internal_project_id', parent_table='internal_projects')},
                    story_id TEXT,
                    due_date TEXT,
                    estimated_hours REAL,
                    actual_hours REAL,
                    tags TEXT  -- JSON list
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    internal_project_id TEXT REFERENCES internal_projects(id) ON DELETE CASCADE,
                    type TEXT NOT NULL,
                    category TEXT DEFAULT '',
                    amount REAL NOT NULL,
                    description TEXT DEFAULT '',
                    date TEXT NOT NULL,
                    invoice_number TEXT,
                    payment_method TEXT,
                    notes TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            # Column lookups for the board
            for table, parent, _, _ in BOARD_TABLES.values():
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_column ON {table}({parent}, status, sort_order)"
                )
            conn.commit()

    # ── Connections ──────────────────────────────────────────────────────────

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = _connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Exclusive write transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so a
        read-modify-write of a column never interleaves with another writer.
        Any exception rolls back every statement issued inside the block.
        """
        conn = _connect(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ── Board items ──────────────────────────────────────────────────────────

    def parent_exists(self, conn: sqlite3.Connection, kind: BoardKind, parent_id: str) -> bool:
        parent_table = BOARD_TABLES[kind][2]
        row = conn.execute(f"SELECT 1 FROM {parent_table} WHERE id = ?", (parent_id,)).fetchone()
        return row is not None

    def get_item(self, conn: sqlite3.Connection, kind: BoardKind, item_id: str,
                 parent_id: Optional[str] = None) -> Optional[BoardItem]:
        table, parent, _, _ = BOARD_TABLES[kind]
        sql = f"SELECT * FROM {table} WHERE id = ?"
        params: tuple = (item_id,)
        if parent_id is not None:
            sql += f" AND {parent} = ?"
            params += (parent_id,)
        row = conn.execute(sql, params).fetchone()
        return self._row_to_item(kind, row) if row else None

    def column_items(self, conn: sqlite3.Connection, kind: BoardKind, parent_id: str,
                     status: ItemStatus, exclude_id: Optional[str] = None) -> List[BoardItem]:
        """Items of one column, ordered by position (ties broken by creation)."""
        table, parent, _, _ = BOARD_TABLES[kind]
        sql = f"SELECT * FROM {table} WHERE {parent} = ? AND status = ?"
        params: tuple = (parent_id, status.value)
        if exclude_id is not None:
            sql += " AND id != ?"
            params += (exclude_id,)
        sql += " ORDER BY sort_order ASC, created_at ASC"
        return [self._row_to_item(kind, r) for r in conn.execute(sql, params).fetchall()]

    def parent_items(self, conn: sqlite3.Connection, kind: BoardKind, parent_id: str) -> List[BoardItem]:
        """Every item of a parent, sorted by (workflow column, position)."""
        table, parent, _, _ = BOARD_TABLES[kind]
        rows = conn.execute(
            f"SELECT * FROM {table} WHERE {parent} = ? ORDER BY sort_order ASC, created_at ASC",
            (parent_id,),
        ).fetchall()
        items = [self._row_to_item(kind, r) for r in rows]
        items.sort(key=lambda i: (i.status.rank, i.order))
        return items

    def next_order(self, conn: sqlite3.Connection, kind: BoardKind, parent_id: str,
                   status: ItemStatus) -> int:
        table, parent, _, _ = BOARD_TABLES[kind]
        row = conn.execute(
            f"SELECT MAX(sort_order) FROM {table} WHERE {parent} = ? AND status = ?",
            (parent_id, status.value),
        ).fetchone()
        return 0 if row[0] is None else row[0] + 1

    def set_orders(self, conn: sqlite3.Connection, kind: BoardKind, assignments: Dict[str, int]) -> None:
        table = BOARD_TABLES[kind][0]
        now = iso(utc_now())
        conn.executemany(
            f"UPDATE {table} SET sort_order = ?, updated_at = ? WHERE id = ?",
            [(order, now, item_id) for item_id, order in assignments.items()],
        )

    def write_position(self, conn: sqlite3.Connection, item: BoardItem) -> None:
        table = BOARD_TABLES[item.kind][0]
        item.updated_at = utc_now()
        conn.execute(
            f"UPDATE {table} SET status = ?, sort_order = ?, completed_at = ?, updated_at = ? WHERE id = ?",
            (item.status.value, item.order, iso(item.completed_at), iso(item.updated_at), item.id),
        )

    def insert_item(self, conn: sqlite3.Connection, item: BoardItem) -> None:
        table, parent, _, extras = BOARD_TABLES[item.kind]
        columns = ["id", parent, "title", "description", "status", "priority",
                   "sort_order", "completed_at", "created_at", "updated_at"]
        values = [item.id, item.parent_id, item.title, item.description, item.status.value,
                  item.priority.value, item.order, iso(item.completed_at),
                  iso(item.created_at), iso(item.updated_at)]
        for col in extras:
            columns.append(col)
            values.append(self._dump_extra(col, item.extra.get(col)))
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})", values)

    def save_item(self, conn: sqlite3.Connection, item: BoardItem) -> None:
        """Write every editable column of an existing item."""
        table, _, _, extras = BOARD_TABLES[item.kind]
        item.updated_at = utc_now()
        assignments = ["title = ?", "description = ?", "status = ?", "priority = ?",
                       "sort_order = ?", "completed_at = ?", "updated_at = ?"]
        values = [item.title, item.description, item.status.value, item.priority.value,
                  item.order, iso(item.completed_at), iso(item.updated_at)]
        for col in extras:
            assignments.append(f"{col} = ?")
            values.append(self._dump_extra(col, item.extra.get(col)))
        values.append(item.id)
        conn.execute(f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?", values)

    def delete_item(self, conn: sqlite3.Connection, kind: BoardKind, item_id: str) -> None:
        table = BOARD_TABLES[kind][0]
        conn.execute(f"DELETE FROM {table} WHERE id = ?", (item_id,))

    def _dump_extra(self, col: str, value: Any) -> Any:
        if col == "tags":
            return json.dumps(value) if value else None
        return value

    def _row_to_item(self, kind: BoardKind, row: sqlite3.Row) -> BoardItem:
        """Convert a database row to a BoardItem."""
        data = dict(row)
        _, parent, _, extras = BOARD_TABLES[kind]
        extra = {}
        for col in extras:
            value = data.get(col)
            if col == "tags":
                try:
                    value = json.loads(value) if value else []
                except (json.JSONDecodeError, TypeError):
                    value = []
            extra[col] = value
        return BoardItem(
            id=data["id"],
            kind=kind,
            parent_id=data[parent],
            title=data["title"],
            description=data.get("description") or "",
            status=ItemStatus(data["status"]),
            priority=Priority(data["priority"]),
            order=data["sort_order"],
            completed_at=parse_iso(data.get("completed_at")),
            created_at=parse_iso(data["created_at"]),
            updated_at=parse_iso(data["updated_at"]),
            extra=extra,
        )

    # ── Projects ─────────────────────────────────────────────────────────────

    def create_project(self, name: str, description: str = "", internal: bool = False) -> Dict[str, Any]:
        table = "internal_projects" if internal else "projects"
        record = {"id": new_id(), "name": name, "description": description or "",
                  "created_at": iso(utc_now())}
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO {table} (id, name, description, created_at) VALUES (?, ?, ?, ?)",
                (record["id"], record["name"], record["description"], record["created_at"]),
            )
        return record

    def get_project(self, project_id: str, internal: bool = False) -> Optional[Dict[str, Any]]:
        table = "internal_projects" if internal else "projects"
        with self.connection() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (project_id,)).fetchone()
        return dict(row) if row else None

    def list_projects(self, internal: bool = False) -> List[Dict[str, Any]]:
        table = "internal_projects" if internal else "projects"
        with self.connection() as conn:
            rows = conn.execute(f"SELECT * FROM {table} ORDER BY created_at DESC").fetchall()
        return [dict(r) for r in rows]

    # ── Transactions ─────────────────────────────────────────────────────────

    def create_transaction(self, record: Dict[str, Any]) -> Dict[str, Any]:
        record = dict(record, id=new_id(), created_at=iso(utc_now()))
        columns = ["id", "internal_project_id", "type", "category", "amount", "description",
                   "date", "invoice_number", "payment_method", "notes", "created_at"]
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO transactions ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                [record.get(c) for c in columns],
            )
        return record

    def list_transactions(self, internal_project_id: str) -> List[Dict[str, Any]]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE internal_project_id = ? ORDER BY date DESC",
                (internal_project_id,),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Members & users ──────────────────────────────────────────────────────

    def create_member(self, name: str, email: str, role: str = "",
                      status: MemberStatus = MemberStatus.ACTIVE) -> Member:
        member = Member(id=new_id(), name=name, email=email.lower(), role=role, status=status)
        try:
            with self.transaction() as conn:
                conn.execute(
                    "INSERT INTO members (id, name, email, role, status, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (member.id, member.name, member.email, member.role, member.status.value, iso(utc_now())),
                )
        except sqlite3.IntegrityError:
            raise ConflictError(f"A member with email {email} already exists")
        return member

    def get_member(self, member_id: str) -> Optional[Member]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        return self._row_to_member(row) if row else None

    def list_members(self) -> List[Member]:
        with self.connection() as conn:
            rows = conn.execute("SELECT * FROM members ORDER BY name ASC").fetchall()
        return [self._row_to_member(r) for r in rows]

    def set_member_status(self, member_id: str, status: MemberStatus) -> None:
        with self.transaction() as conn:
            cur = conn.execute("UPDATE members SET status = ? WHERE id = ?", (status.value, member_id))
            if cur.rowcount == 0:
                raise NotFoundError("Member not found")

    def create_user(self, email: str, password_hash: str, member_id: Optional[str] = None) -> User:
        """Insert a user; duplicate email or an already-linked member is a conflict."""
        email = email.strip().lower()
        now = iso(utc_now())
        user = User(id=new_id(), email=email, password_hash=password_hash, member_id=member_id)
        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
                raise ConflictError("This email is already registered")
            if member_id is not None:
                if not conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone():
                    raise NotFoundError("Member not found")
                if conn.execute("SELECT 1 FROM users WHERE member_id = ?", (member_id,)).fetchone():
                    raise ConflictError("This member already has a user account")
            conn.execute(
                "INSERT INTO users (id, email, password_hash, member_id, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                (user.id, user.email, user.password_hash, user.member_id, now, now),
            )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        return self._find_user("u.id = ?", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user("u.email = ?", email.strip().lower())

    def set_password(self, user_id: str, password_hash: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                (password_hash, iso(utc_now()), user_id),
            )

    def _find_user(self, where: str, value: str) -> Optional[User]:
        with self.connection() as conn:
            row = conn.execute(f"""
                SELECT u.*, m.name AS m_name, m.email AS m_email, m.role AS m_role, m.status AS m_status
                FROM users u LEFT JOIN members m ON m.id = u.member_id
                WHERE {where}
            """, (value,)).fetchone()
        if not row:
            return None
        member = None
        if row["member_id"] and row["m_name"] is not None:
            member = Member(id=row["member_id"], name=row["m_name"], email=row["m_email"],
                            role=row["m_role"] or "", status=MemberStatus(row["m_status"]))
        return User(id=row["id"], email=row["email"], password_hash=row["password_hash"],
                    member_id=row["member_id"], member=member)

    def _row_to_member(self, row: sqlite3.Row) -> Member:
        return Member(id=row["id"], name=row["name"], email=row["email"],
                      role=row["role"] or "", status=MemberStatus(row["status"]))

    # ── API keys ─────────────────────────────────────────────────────────────

    def create_api_key(self, key: ApiKey) -> ApiKey:
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO api_keys
                (id, name, key_hash, prefix, permissions, internal_project_id, expires_at,
                 is_active, last_used_at, created_by_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                key.id, key.name, key.key_hash, key.prefix, json.dumps(key.permissions),
                key.internal_project_id, iso(key.expires_at), 1 if key.is_active else 0,
                iso(key.last_used_at), key.created_by_id, iso(key.created_at), iso(key.updated_at),
            ))
        return key

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        with self.connection() as conn:
            row = conn.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()
        return self._row_to_api_key(row) if row else None

    def list_api_keys(self) -> List[ApiKey]:
        with self.connection() as conn:
            rows = conn.execute("SELECT * FROM api_keys ORDER BY created_at DESC").fetchall()
        return [self._row_to_api_key(r) for r in rows]

    def find_active_api_keys(self, prefix: str) -> List[ApiKey]:
        """Active keys sharing a public prefix; the caller compares hashes."""
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM api_keys WHERE prefix = ? AND is_active = 1",
                (prefix,),
            ).fetchall()
        return [self._row_to_api_key(r) for r in rows]

    def update_api_key(self, key: ApiKey) -> ApiKey:
        key.updated_at = utc_now()
        with self.transaction() as conn:
            cur = conn.execute("""
                UPDATE api_keys
                SET name = ?, permissions = ?, internal_project_id = ?, is_active = ?, updated_at = ?
                WHERE id = ?
            """, (key.name, json.dumps(key.permissions), key.internal_project_id,
                  1 if key.is_active else 0, iso(key.updated_at), key.id))
            if cur.rowcount == 0:
                raise NotFoundError("API key not found")
        return key

    def touch_api_key(self, key_id: str, when: datetime) -> None:
        with self.transaction() as conn:
            conn.execute("UPDATE api_keys SET last_used_at = ? WHERE id = ?", (iso(when), key_id))

    def delete_api_key(self, key_id: str) -> None:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM api_keys WHERE id = ?", (key_id,))
            if cur.rowcount == 0:
                raise NotFoundError("API key not found")

    def _row_to_api_key(self, row: sqlite3.Row) -> ApiKey:
        data = dict(row)
        try:
            permissions = json.loads(data["permissions"]) or []
        except (json.JSONDecodeError, TypeError):
            permissions = []
        return ApiKey(
            id=data["id"],
            name=data["name"],
            prefix=data["prefix"],
            key_hash=data["key_hash"],
            permissions=permissions,
            internal_project_id=data.get("internal_project_id"),
            expires_at=parse_iso(data.get("expires_at")),
            is_active=bool(data["is_active"]),
            last_used_at=parse_iso(data.get("last_used_at")),
            created_by_id=data.get("created_by_id"),
            created_at=parse_iso(data["created_at"]),
            updated_at=parse_iso(data["updated_at"]),
        )
