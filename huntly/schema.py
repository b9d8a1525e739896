"""
Huntly data model.

Board workflow (every task and story column):
  TODO → IN_PROGRESS → IN_REVIEW → DONE

Items may jump between any two columns (drag-and-drop); DONE is the only
terminal state and the only one that carries a completion timestamp.
"""
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, ClassVar

from .errors import ValidationError


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ItemStatus(Enum):
    """Kanban columns, in workflow order."""
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    DONE = "DONE"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self is ItemStatus.DONE

    @classmethod
    def parse(cls, value: Any) -> "ItemStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Invalid status: {value}")


_STATUS_RANK = {status: i for i, status in enumerate(ItemStatus)}


class Priority(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        if not value:
            return cls.MEDIUM
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Invalid priority: {value}")


class MemberStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"

    @classmethod
    def parse(cls, value: Any) -> "MemberStatus":
        if not value:
            return cls.ACTIVE
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Invalid member status: {value}")


class TransactionType(Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"

    @classmethod
    def parse(cls, value: Any) -> "TransactionType":
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(f"Invalid transaction type: {value}")


class BoardKind(Enum):
    """Which board an item lives on. Each kind is scoped by its own parent."""
    TASK = "task"                    # client project task
    INTERNAL_TASK = "internal_task"  # internal project task
    STORY = "story"                  # client project story


# ── Permission catalog ───────────────────────────────────────────────────────

FULL_ACCESS = "full-access"

PERMISSIONS: Dict[str, str] = {
    "transactions:read": "Read transactions",
    "transactions:write": "Create/update transactions",
    "transactions:delete": "Delete transactions",
    "internal-projects:read": "Read internal projects",
    "internal-projects:write": "Create/update internal projects",
    "tasks:read": "Read tasks",
    "tasks:write": "Create/update tasks",
    "tasks:delete": "Delete tasks",
    FULL_ACCESS: "Full API access",
}

DEFAULT_KEY_PERMISSIONS = ["transactions:read", "transactions:write"]


def is_valid_permission(permission: str) -> bool:
    return permission in PERMISSIONS


def has_permission(granted: List[str], required: str) -> bool:
    """Exact match, or the full-access escape hatch."""
    return FULL_ACCESS in granted or required in granted


# ── Records ──────────────────────────────────────────────────────────────────


@dataclass
class BoardItem:
    """A task or story card sitting at position `order` of column (parent, status)."""

    id: str
    kind: BoardKind
    parent_id: str
    title: str
    description: str = ""
    status: ItemStatus = ItemStatus.TODO
    priority: Priority = Priority.MEDIUM
    order: int = 0
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    # Kind-specific columns (story_id, due_date, hours, tags, points)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "kind": self.kind.value,
            "parent_id": self.parent_id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "order": self.order,
            "completed_at": iso(self.completed_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        data.update(self.extra)
        return data


@dataclass
class ApiKey:
    """Stored API key. The raw key is never part of this record."""

    id: str
    name: str
    prefix: str
    key_hash: str
    permissions: List[str] = field(default_factory=list)
    internal_project_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    created_by_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or utc_now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "prefix": self.prefix,
            "permissions": list(self.permissions),
            "internal_project_id": self.internal_project_id,
            "expires_at": iso(self.expires_at),
            "is_active": self.is_active,
            "last_used_at": iso(self.last_used_at),
            "created_by_id": self.created_by_id,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


@dataclass
class Member:
    id: str
    name: str
    email: str
    role: str = ""
    status: MemberStatus = MemberStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "status": self.status.value,
        }


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    member_id: Optional[str] = None
    member: Optional[Member] = None

    def to_dict(self) -> Dict[str, Any]:
        """Public view; the password hash never leaves the store."""
        return {
            "id": self.id,
            "email": self.email,
            "member_id": self.member_id,
            "member": self.member.to_dict() if self.member else None,
        }


# ── Authorization verdicts ───────────────────────────────────────────────────


@dataclass(frozen=True)
class SessionAuth:
    """Identity decoded from a verified session token."""
    auth_type: ClassVar[str] = "jwt"

    user_id: str
    email: str
    member_id: Optional[str] = None


@dataclass(frozen=True)
class ApiKeyAuth:
    """Identity of a verified, active, unexpired API key."""
    auth_type: ClassVar[str] = "api-key"

    key_id: str
    name: str
    permissions: tuple = ()
    internal_project_id: Optional[str] = None
