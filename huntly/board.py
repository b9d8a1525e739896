"""
Kanban board ordering.

Every column (parent, status) keeps its items at orders 0..n-1. A drag-and-drop
move is dispatched two ways:

  * to another column: the vacated column closes its gap, the destination
    column is re-enumerated around the target slot;
  * within the same column: only the interval between the old and the new
    slot shifts by one.

The arithmetic lives in pure functions below; KanbanBoard runs it against the
store inside a single write transaction.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import NotFoundError, ValidationError
from .schema import BoardItem, BoardKind, ItemStatus, Priority, utc_now
from .store import CrmStore, new_id

logger = logging.getLogger(__name__)


# ── Pure column arithmetic ───────────────────────────────────────────────────


def clamp_target(new_order: int, column_length: int) -> int:
    """Clamp a requested slot into [0, column_length]; past the end means append."""
    return max(0, min(new_order, column_length))


def reindex_destination(sibling_ids: Sequence[str], new_order: int) -> Dict[str, int]:
    """
    Re-enumerate a destination column around the slot taken by an incoming item.

    `sibling_ids` are the column's other items in current order. Items before
    the slot keep their index, the rest move up by one.
    """
    return {
        item_id: (index if index < new_order else index + 1)
        for index, item_id in enumerate(sibling_ids)
    }


def shift_within_column(siblings: Sequence[Tuple[str, int]], old_order: int,
                        new_order: int) -> Dict[str, int]:
    """
    New orders for the items displaced by a same-column move.

    Moving down closes the gap behind: (old, new] shifts down by one.
    Moving up makes room ahead: [new, old) shifts up by one.
    Only items whose order changes are returned.
    """
    if new_order > old_order:
        return {i: o - 1 for i, o in siblings if old_order < o <= new_order}
    if new_order < old_order:
        return {i: o + 1 for i, o in siblings if new_order <= o < old_order}
    return {}


def close_gap(siblings: Sequence[Tuple[str, int]], vacated_order: int) -> Dict[str, int]:
    """Shift everything after a vacated slot down by one."""
    return {i: o - 1 for i, o in siblings if o > vacated_order}


def completion_time(old_status: ItemStatus, new_status: ItemStatus,
                    completed_at: Optional[datetime], now: datetime) -> Optional[datetime]:
    """Stamp on entering DONE, keep while staying DONE, clear anywhere else."""
    if not new_status.is_terminal:
        return None
    if old_status.is_terminal:
        return completed_at
    return now


def parse_order(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid order: {value}")
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f"Invalid order: {value}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid order: {value}")


# ── Board service ────────────────────────────────────────────────────────────


class KanbanBoard:
    """Create, edit, move and delete task/story cards while keeping columns gap-free."""

    def __init__(self, store: CrmStore):
        self.store = store

    def list_items(self, kind: BoardKind, parent_id: str) -> List[BoardItem]:
        with self.store.connection() as conn:
            if not self.store.parent_exists(conn, kind, parent_id):
                raise NotFoundError("Project not found")
            return self.store.parent_items(conn, kind, parent_id)

    def get_item(self, kind: BoardKind, parent_id: str, item_id: str) -> BoardItem:
        with self.store.connection() as conn:
            item = self.store.get_item(conn, kind, item_id, parent_id)
        if item is None:
            raise NotFoundError(f"{_label(kind)} not found")
        return item

    def move_item(self, kind: BoardKind, parent_id: str, item_id: str,
                  new_status: Any, new_order: Any) -> List[BoardItem]:
        """
        Drag-and-drop move of one card.

        Returns every item of the parent, sorted by (status, order), as
        committed. Any failure rolls the whole move back.
        """
        status = ItemStatus.parse(new_status)
        order = parse_order(new_order)
        with self.store.transaction() as conn:
            item = self.store.get_item(conn, kind, item_id, parent_id)
            if item is None:
                raise NotFoundError(f"{_label(kind)} not found")
            self._move(conn, item, status, order)
            items = self.store.parent_items(conn, kind, parent_id)
        logger.info(f"Moved {kind.value} {item_id} to {status.value}/{item.order}")
        return items

    def create_item(self, kind: BoardKind, parent_id: str, fields: Dict[str, Any]) -> BoardItem:
        """Create a card at the tail of its column."""
        title = str(fields.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required")
        status = ItemStatus.parse(fields.get("status") or ItemStatus.TODO)
        now = utc_now()
        item = BoardItem(
            id=new_id(),
            kind=kind,
            parent_id=parent_id,
            title=title,
            status=status,
            completed_at=now if status.is_terminal else None,
            created_at=now,
            updated_at=now,
        )
        _apply_fields(item, fields)
        with self.store.transaction() as conn:
            if not self.store.parent_exists(conn, kind, parent_id):
                raise NotFoundError("Project not found")
            item.order = self.store.next_order(conn, kind, parent_id, status)
            self.store.insert_item(conn, item)
        return item

    def update_item(self, kind: BoardKind, parent_id: str, item_id: str,
                    fields: Dict[str, Any]) -> BoardItem:
        """
        Edit a card. A new status without an explicit order appends the card
        to the tail of the new column.
        """
        with self.store.transaction() as conn:
            item = self.store.get_item(conn, kind, item_id, parent_id)
            if item is None:
                raise NotFoundError(f"{_label(kind)} not found")
            if "title" in fields and not str(fields["title"] or "").strip():
                raise ValidationError("title cannot be empty")
            _apply_fields(item, fields)
            self.store.save_item(conn, item)

            status = ItemStatus.parse(fields["status"]) if fields.get("status") else item.status
            if "order" in fields and fields["order"] is not None:
                order = parse_order(fields["order"])
            elif status != item.status:
                order = len(self.store.column_items(conn, kind, parent_id, status))
            else:
                order = item.order
            if fields.get("status") or order != item.order:
                self._move(conn, item, status, order)
        return item

    def delete_item(self, kind: BoardKind, parent_id: str, item_id: str) -> None:
        """Delete a card and close the gap it leaves in its column."""
        with self.store.transaction() as conn:
            item = self.store.get_item(conn, kind, item_id, parent_id)
            if item is None:
                raise NotFoundError(f"{_label(kind)} not found")
            self.store.delete_item(conn, kind, item.id)
            siblings = self.store.column_items(conn, kind, parent_id, item.status)
            self.store.set_orders(conn, kind, close_gap(_positions(siblings), item.order))

    def _move(self, conn, item: BoardItem, status: ItemStatus, order: int) -> None:
        kind, parent_id = item.kind, item.parent_id
        old_status, old_order = item.status, item.order

        item.completed_at = completion_time(old_status, status, item.completed_at, utc_now())

        if status != old_status:
            vacated = self.store.column_items(conn, kind, parent_id, old_status, exclude_id=item.id)
            destination = self.store.column_items(conn, kind, parent_id, status, exclude_id=item.id)
            target = clamp_target(order, len(destination))
            item.status, item.order = status, target
            self.store.write_position(conn, item)
            self.store.set_orders(conn, kind, close_gap(_positions(vacated), old_order))
            self.store.set_orders(conn, kind, reindex_destination([i.id for i in destination], target))
        else:
            siblings = self.store.column_items(conn, kind, parent_id, status, exclude_id=item.id)
            target = clamp_target(order, len(siblings))
            self.store.set_orders(conn, kind, shift_within_column(_positions(siblings), old_order, target))
            item.order = target
            self.store.write_position(conn, item)


def _positions(items: Sequence[BoardItem]) -> List[Tuple[str, int]]:
    return [(i.id, i.order) for i in items]


def _label(kind: BoardKind) -> str:
    return "Story" if kind is BoardKind.STORY else "Task"


def _apply_fields(item: BoardItem, fields: Dict[str, Any]) -> None:
    """Copy editable, non-positional fields from a request body onto an item."""
    if fields.get("title"):
        item.title = str(fields["title"]).strip()
    if "description" in fields:
        item.description = fields["description"] or ""
    if "priority" in fields:
        item.priority = Priority.parse(fields["priority"])

    if item.kind is BoardKind.STORY:
        if "points" in fields:
            try:
                item.extra["points"] = int(fields["points"] or 0)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid points: {fields['points']}")
        item.extra.setdefault("points", 0)
    elif item.kind is BoardKind.INTERNAL_TASK:
        for key in ("story_id", "due_date"):
            if key in fields:
                item.extra[key] = fields[key] or None
        for key in ("estimated_hours", "actual_hours"):
            if key in fields:
                try:
                    item.extra[key] = float(fields[key]) if fields[key] not in (None, "") else None
                except (TypeError, ValueError):
                    raise ValidationError(f"Invalid {key}: {fields[key]}")
        if "tags" in fields:
            tags = fields["tags"] or []
            if not isinstance(tags, list):
                raise ValidationError("tags must be a list")
            item.extra["tags"] = [str(t) for t in tags]
        for key in ("story_id", "due_date", "estimated_hours", "actual_hours"):
            item.extra.setdefault(key, None)
        item.extra.setdefault("tags", [])
