"""Canvas persistence and server-side editor sessions.

The element list lives in a single JSON column and is only written on an
explicit save. Last writer wins.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException
from sqlalchemy.orm import Session

from .books import get_editable_book
from .config import settings
from .editor import CanvasEditor, CanvasElement, CanvasSettings, EditorError, parse_elements, parse_settings
from .models import Book, BookStatus, User, utcnow

logger = logging.getLogger(__name__)


def load_canvas(book: Book) -> dict[str, Any]:
    return {
        "elements": [element.to_dict() for element in parse_elements(book.canvas_elements)],
        "settings": parse_settings(book.canvas_settings).to_dict(),
    }


def open_editor(book: Book) -> CanvasEditor:
    return CanvasEditor.from_json(book.canvas_elements, book.canvas_settings, history_limit=settings.history_limit)


def save_canvas(db: Session, *, book: Book, editor: CanvasEditor) -> Book:
    if editor.editing_id:
        editor.commit_edit()
    book.canvas_elements = editor.to_json()
    book.canvas_settings = editor.settings_json()
    book.pages_count = editor.settings.total_pages
    book.updated_at = utcnow()
    if book.status is None:
        book.status = BookStatus.DRAFT
    db.commit()
    db.refresh(book)
    logger.info(f"Canvas saved for book {book.id}: {len(editor.elements)} elements on {book.pages_count} pages")
    return book


def replace_canvas(
    db: Session,
    *,
    book_id: int,
    actor: User,
    elements: list[dict[str, Any]],
    canvas_settings: dict[str, Any] | None = None,
) -> Book:
    book = get_editable_book(db, book_id, actor)
    try:
        parsed = [CanvasElement.from_dict(item) for item in elements]
        layout = CanvasSettings.from_dict(canvas_settings) if canvas_settings else parse_settings(book.canvas_settings)
    except (EditorError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return save_canvas(db, book=book, editor=CanvasEditor(parsed, layout, history_limit=settings.history_limit))


def editor_state(book_id: int, editor: CanvasEditor) -> dict[str, Any]:
    return {
        "book_id": book_id,
        "elements": editor.to_list(),
        "settings": editor.settings.to_dict(),
        "selected_id": editor.selected_id,
        "editing_id": editor.editing_id,
        "current_page": editor.current_page,
        "history_size": editor.history_size,
        "history_index": editor.history_index,
        "can_undo": editor.can_undo,
        "can_redo": editor.can_redo,
    }


def _require(params: dict[str, Any], *names: str) -> list[Any]:
    missing = [name for name in names if name not in params]
    if missing:
        raise EditorError(f"Missing parameters: {', '.join(missing)}")
    return [params[name] for name in names]


def apply_operation(editor: CanvasEditor, op: str, params: dict[str, Any]) -> None:
    if op == "add":
        tool, x, y = _require(params, "tool", "x", "y")
        page, content = params.get("page"), params.get("content")
        editor.add_element(
            tool,
            float(x),
            float(y),
            page=None if page is None else int(page),
            content=None if content is None else str(content),
            properties=params.get("properties"),
        )
    elif op == "move":
        element_id, dx, dy = _require(params, "id", "dx", "dy")
        editor.move_element(element_id, float(dx), float(dy))
    elif op == "resize":
        element_id, handle, dx, dy = _require(params, "id", "handle", "dx", "dy")
        editor.resize_element(element_id, handle, float(dx), float(dy))
    elif op == "update":
        (element_id,) = _require(params, "id")
        changes = params.get("changes") or {}
        if not isinstance(changes, dict):
            raise EditorError("changes must be an object")
        editor.update_element(element_id, **changes)
    elif op == "properties":
        element_id, properties = _require(params, "id", "properties")
        if not isinstance(properties, dict):
            raise EditorError("properties must be an object")
        editor.update_properties(element_id, properties)
    elif op == "delete":
        (element_id,) = _require(params, "id")
        editor.delete_element(element_id)
    elif op == "duplicate":
        (element_id,) = _require(params, "id")
        editor.duplicate_element(element_id)
    elif op == "front":
        (element_id,) = _require(params, "id")
        editor.bring_to_front(element_id)
    elif op == "back":
        (element_id,) = _require(params, "id")
        editor.send_to_back(element_id)
    elif op == "select":
        element_id = params.get("id")
        if element_id is None:
            editor.clear_selection()
        else:
            editor.select(element_id)
    elif op == "begin_edit":
        (element_id,) = _require(params, "id")
        editor.begin_edit(element_id)
    elif op == "edit_text":
        (text,) = _require(params, "text")
        editor.set_edit_buffer(str(text))
    elif op == "commit_edit":
        editor.commit_edit()
    elif op == "cancel_edit":
        editor.cancel_edit()
    elif op == "undo":
        editor.undo()
    elif op == "redo":
        editor.redo()
    elif op == "add_page":
        editor.add_page()
    elif op == "delete_page":
        (page,) = _require(params, "page")
        editor.delete_page(int(page))
    elif op == "goto_page":
        (page,) = _require(params, "page")
        if not 1 <= int(page) <= editor.settings.total_pages:
            raise EditorError(f"Page {page} does not exist")
        editor.current_page = int(page)
    else:
        raise EditorError(f"Unknown editor operation: {op}")


@dataclass
class EditorSession:
    editor: CanvasEditor
    last_used: float
    lock: threading.Lock = field(default_factory=threading.Lock)


class EditorSessions:
    """In-memory editors keyed by (user id, book id).

    Sessions idle for longer than ``idle_seconds`` are dropped, and once
    ``max_sessions`` are open the least recently used one makes room for a
    new one. Each session has its own lock, held while an operation runs.
    """

    def __init__(self, max_sessions: int | None = None, idle_seconds: float | None = None) -> None:
        self.max_sessions = max_sessions or settings.max_editor_sessions
        self.idle_seconds = idle_seconds or settings.editor_idle_minutes * 60
        self._sessions: OrderedDict[tuple[int, int], EditorSession] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _evict(self, now: float) -> None:
        expired = [key for key, entry in self._sessions.items() if now - entry.last_used > self.idle_seconds]
        for key in expired:
            del self._sessions[key]
        while len(self._sessions) >= self.max_sessions:
            key, _ = self._sessions.popitem(last=False)
            expired.append(key)
        if expired:
            logger.info(f"Evicted {len(expired)} editor session(s)")

    def open(self, user: User, book: Book) -> CanvasEditor:
        editor = open_editor(book)
        with self._lock:
            now = time.monotonic()
            self._sessions.pop((user.id, book.id), None)
            self._evict(now)
            self._sessions[(user.id, book.id)] = EditorSession(editor, last_used=now)
        logger.info(f"Editor session opened for book {book.id} by {user.email}")
        return editor

    @contextmanager
    def use(self, user: User, book_id: int) -> Iterator[CanvasEditor]:
        key = (user.id, book_id)
        with self._lock:
            now = time.monotonic()
            entry = self._sessions.get(key)
            if entry is not None and now - entry.last_used > self.idle_seconds:
                del self._sessions[key]
                entry = None
            if entry is None:
                raise HTTPException(status_code=404, detail="No open editor session for this book")
            entry.last_used = now
            self._sessions.move_to_end(key)
        with entry.lock:
            yield entry.editor

    def close(self, user: User, book_id: int) -> bool:
        with self._lock:
            return self._sessions.pop((user.id, book_id), None) is not None

    def close_book(self, book_id: int) -> int:
        with self._lock:
            keys = [key for key in self._sessions if key[1] == book_id]
            for key in keys:
                del self._sessions[key]
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()


sessions = EditorSessions()
