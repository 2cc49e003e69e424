"""Canvas element model for the book editor.

A page holds a flat list of positioned elements. Every structural change goes
through ``CanvasEditor.update_elements`` which records a full snapshot of the
element list, so undo/redo is just moving an index over those snapshots.
"""

import copy
import json
import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

logger = logging.getLogger(__name__)

MM_TO_PX = 3.7795
MIN_ELEMENT_SIZE = 10
DUPLICATE_OFFSET = 20
DEFAULT_HISTORY_LIMIT = 50
MIN_ZOOM = 10
MAX_ZOOM = 500

ELEMENT_TYPES = ("text", "paragraph", "shape", "line", "image")
EDITABLE_TYPES = ("text", "paragraph")
RESIZE_HANDLES = ("n", "s", "e", "w", "ne", "nw", "se", "sw")

_SHAPE_PROPERTIES = {
    "backgroundColor": "#e0e0e0",
    "borderColor": "#000000",
    "borderWidth": 0,
}

TOOL_DEFAULTS: dict[str, dict[str, Any]] = {
    "text": {
        "type": "text",
        "width": 200,
        "height": 50,
        "content": "Текст",
        "properties": {
            "fontSize": 24,
            "fontFamily": "Arial",
            "fontWeight": "bold",
            "fontStyle": "normal",
            "textDecoration": "none",
            "color": "#333333",
            "backgroundColor": "transparent",
            "textAlign": "center",
            "verticalAlign": "middle",
        },
    },
    "paragraph": {
        "type": "paragraph",
        "width": 400,
        "height": 200,
        "content": "Абзац текста. Здесь вы можете написать более длинный текст с несколькими предложениями.",
        "properties": {
            "fontSize": 16,
            "fontFamily": "Arial",
            "fontWeight": "normal",
            "fontStyle": "normal",
            "textDecoration": "none",
            "color": "#333333",
            "backgroundColor": "transparent",
            "textAlign": "left",
            "verticalAlign": "top",
            "borderRadius": 0,
            "paddingLeft": 8,
            "paddingRight": 8,
        },
    },
    "rectangle": {
        "type": "shape",
        "width": 150,
        "height": 150,
        "properties": {**_SHAPE_PROPERTIES, "shapeType": "rectangle", "borderRadius": 0},
    },
    "circle": {"type": "shape", "width": 150, "height": 150, "properties": {**_SHAPE_PROPERTIES, "shapeType": "circle"}},
    "triangle": {"type": "shape", "width": 150, "height": 150, "properties": {**_SHAPE_PROPERTIES, "shapeType": "triangle"}},
    "star": {"type": "shape", "width": 150, "height": 150, "properties": {**_SHAPE_PROPERTIES, "shapeType": "star"}},
    "heart": {"type": "shape", "width": 150, "height": 150, "properties": {**_SHAPE_PROPERTIES, "shapeType": "heart"}},
    "line": {
        "type": "line",
        "width": 200,
        "height": 2,
        "properties": {"color": "#000000", "lineThickness": 2},
    },
    "arrow": {
        "type": "line",
        "width": 200,
        "height": 20,
        "properties": {"color": "#000000", "lineThickness": 2, "arrowType": "single"},
    },
    "image": {
        "type": "image",
        "width": 320,
        "height": 240,
        "properties": {
            "imageUrl": "",
            "borderRadius": 0,
            "borderColor": "transparent",
            "borderWidth": 0,
            "preserveAspectRatio": True,
        },
    },
}


class EditorError(Exception):
    pass


def new_element_id() -> str:
    return f"element_{uuid.uuid4().hex[:12]}"


@dataclass
class CanvasElement:
    id: str
    type: str
    x: float
    y: float
    width: float
    height: float
    page: int = 1
    z_index: int = 0
    rotation: float = 0
    opacity: float = 1
    content: str = ""
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "page": self.page,
            "zIndex": self.z_index,
            "rotation": self.rotation,
            "opacity": self.opacity,
            "content": self.content,
            "properties": dict(self.properties),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanvasElement":
        try:
            return cls(
                id=str(data["id"]),
                type=str(data["type"]),
                x=float(data.get("x", 0)),
                y=float(data.get("y", 0)),
                width=float(data.get("width", MIN_ELEMENT_SIZE)),
                height=float(data.get("height", MIN_ELEMENT_SIZE)),
                page=int(data.get("page", 1)),
                z_index=int(data.get("zIndex", data.get("z_index", 0))),
                rotation=float(data.get("rotation", 0)),
                opacity=float(data.get("opacity", 1)),
                content=str(data.get("content") or ""),
                properties=dict(data.get("properties") or {}),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise EditorError(f"Invalid canvas element: {exc}") from exc


@dataclass
class CanvasSettings:
    """Page geometry in millimetres; elements are positioned in pixels."""

    canvas_width: float = 210
    canvas_height: float = 297
    total_pages: int = 1
    zoom: float = 100
    grid_size: int = 10
    snap_to_grid: bool = False
    background_color: str = "#ffffff"

    @property
    def page_width_px(self) -> float:
        return self.canvas_width * MM_TO_PX

    @property
    def page_height_px(self) -> float:
        return self.canvas_height * MM_TO_PX

    def to_dict(self) -> dict[str, Any]:
        return {
            "canvasWidth": self.canvas_width,
            "canvasHeight": self.canvas_height,
            "totalPages": self.total_pages,
            "zoom": self.zoom,
            "gridSize": self.grid_size,
            "snapToGrid": self.snap_to_grid,
            "backgroundColor": self.background_color,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanvasSettings":
        defaults = cls()
        width = float(data.get("canvasWidth", defaults.canvas_width))
        height = float(data.get("canvasHeight", defaults.canvas_height))
        if not (math.isfinite(width) and math.isfinite(height)) or width <= 0 or height <= 0:
            raise EditorError(f"Page size must be positive, got {width}x{height}")
        zoom = float(data.get("zoom", defaults.zoom))
        if not math.isfinite(zoom):
            zoom = defaults.zoom
        return cls(
            canvas_width=width,
            canvas_height=height,
            total_pages=max(1, int(data.get("totalPages", defaults.total_pages))),
            zoom=_clamp(zoom, MIN_ZOOM, MAX_ZOOM),
            grid_size=max(1, int(data.get("gridSize", defaults.grid_size))),
            snap_to_grid=bool(data.get("snapToGrid", defaults.snap_to_grid)),
            background_color=str(data.get("backgroundColor", defaults.background_color)),
        )


def _clamp(value: float, low: float, high: float) -> float:
    # An element larger than the page pins to the origin.
    return max(low, min(value, high))


class CanvasEditor:
    """Editing state for one book: elements, selection and linear history."""

    GEOMETRY_FIELDS = ("x", "y", "width", "height")
    FIELD_TYPES: dict[str, type] = {
        "x": float,
        "y": float,
        "width": float,
        "height": float,
        "rotation": float,
        "opacity": float,
        "page": int,
        "z_index": int,
        "content": str,
    }
    UPDATABLE_FIELDS = (*FIELD_TYPES, "properties")

    def __init__(
        self,
        elements: list[CanvasElement] | None = None,
        settings: CanvasSettings | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        if history_limit < 1:
            raise EditorError("history_limit must be at least 1")
        self.settings = settings or CanvasSettings()
        self.history_limit = history_limit
        self.elements: list[CanvasElement] = copy.deepcopy(elements or [])
        self.selected_id: str | None = None
        self.current_page = 1
        self.editing_id: str | None = None
        self.edit_buffer: str | None = None
        self._history: list[list[CanvasElement]] = [copy.deepcopy(self.elements)]
        self._history_index = 0
        self._expand_pages_to_fit()

    # -- history -------------------------------------------------------

    @property
    def history_size(self) -> int:
        return len(self._history)

    @property
    def history_index(self) -> int:
        return self._history_index

    @property
    def can_undo(self) -> bool:
        return self._history_index > 0

    @property
    def can_redo(self) -> bool:
        return self._history_index < len(self._history) - 1

    def update_elements(self, new_elements: list[CanvasElement]) -> None:
        history = self._history[: self._history_index + 1]
        history.append(copy.deepcopy(new_elements))
        if len(history) > self.history_limit:
            history = history[-self.history_limit :]
        self._history = history
        self._history_index = len(history) - 1
        self.elements = copy.deepcopy(new_elements)

    def undo(self) -> bool:
        if not self.can_undo:
            return False
        self._history_index -= 1
        self._restore_snapshot()
        return True

    def redo(self) -> bool:
        if not self.can_redo:
            return False
        self._history_index += 1
        self._restore_snapshot()
        return True

    def _restore_snapshot(self) -> None:
        self.elements = copy.deepcopy(self._history[self._history_index])
        self.cancel_edit()
        if self.selected_id and self._find(self.selected_id) is None:
            self.selected_id = None
        self._expand_pages_to_fit()

    def _expand_pages_to_fit(self) -> None:
        highest = max((el.page for el in self.elements), default=1)
        if highest > self.settings.total_pages:
            self.settings.total_pages = highest

    # -- lookup --------------------------------------------------------

    def _find(self, element_id: str) -> CanvasElement | None:
        for element in self.elements:
            if element.id == element_id:
                return element
        return None

    def get_element(self, element_id: str) -> CanvasElement:
        element = self._find(element_id)
        if element is None:
            raise EditorError(f"Element {element_id} not found")
        return element

    def elements_on_page(self, page: int) -> list[CanvasElement]:
        return sorted((el for el in self.elements if el.page == page), key=lambda el: el.z_index)

    def _next_z_index(self) -> int:
        return max([0] + [el.z_index for el in self.elements]) + 1

    def _check_page(self, page: int) -> None:
        if page < 1 or page > self.settings.total_pages:
            raise EditorError(f"Page {page} does not exist")

    def _clamp_position(self, x: float, y: float, width: float, height: float) -> tuple[float, float]:
        return (
            _clamp(x, 0, self.settings.page_width_px - width),
            _clamp(y, 0, self.settings.page_height_px - height),
        )

    def _coerce(self, changes: dict[str, Any]) -> dict[str, Any]:
        coerced: dict[str, Any] = {}
        for name, value in changes.items():
            if name == "properties":
                if value is not None and not isinstance(value, dict):
                    raise EditorError("properties must be an object")
                coerced[name] = dict(value or {})
                continue
            kind = self.FIELD_TYPES[name]
            if kind is str and value is None:
                coerced[name] = ""
                continue
            if kind is not str and (isinstance(value, bool) or not isinstance(value, (int, float, str))):
                raise EditorError(f"Invalid value for {name}: {value!r}")
            try:
                converted = kind(value)
            except (TypeError, ValueError) as exc:
                raise EditorError(f"Invalid value for {name}: {value!r}") from exc
            if kind is float and not math.isfinite(converted):
                raise EditorError(f"Invalid value for {name}: {value!r}")
            coerced[name] = converted
        return coerced

    def _replace(self, element_id: str, **changes: Any) -> CanvasElement:
        self.get_element(element_id)
        updated = None
        new_elements = []
        for element in self.elements:
            if element.id == element_id:
                updated = replace(element, **changes)
                new_elements.append(updated)
            else:
                new_elements.append(element)
        self.update_elements(new_elements)
        return updated

    # -- selection -----------------------------------------------------

    def select(self, element_id: str) -> CanvasElement:
        element = self.get_element(element_id)
        if self.editing_id and self.editing_id != element_id:
            self.commit_edit()
        self.selected_id = element_id
        return element

    def clear_selection(self) -> None:
        if self.editing_id:
            self.commit_edit()
        self.selected_id = None

    # -- mutations -----------------------------------------------------

    def add_element(
        self,
        tool_id: str,
        x: float,
        y: float,
        page: int | None = None,
        content: str | None = None,
        properties: dict[str, Any] | None = None,
    ) -> CanvasElement:
        """Drop a new element from the tool palette at ``(x, y)``."""
        defaults = TOOL_DEFAULTS.get(tool_id)
        if defaults is None:
            raise EditorError(f"Unknown tool: {tool_id}")
        page = page or self.current_page
        self._check_page(page)

        width, height = defaults["width"], defaults["height"]
        x, y = self._clamp_position(x, y, width, height)
        element = CanvasElement(
            id=new_element_id(),
            type=defaults["type"],
            x=x,
            y=y,
            width=width,
            height=height,
            page=page,
            z_index=self._next_z_index(),
            content=defaults.get("content", "") if content is None else content,
            properties={**copy.deepcopy(defaults["properties"]), **(properties or {})},
        )
        self.update_elements(self.elements + [element])
        self.selected_id = element.id
        return element

    def move_element(self, element_id: str, dx: float, dy: float) -> CanvasElement:
        """Apply a drag delta measured in screen pixels at the current zoom."""
        element = self.get_element(element_id)
        scale = self.settings.zoom / 100
        x, y = self._clamp_position(element.x + dx / scale, element.y + dy / scale, element.width, element.height)
        if self.settings.snap_to_grid:
            grid = self.settings.grid_size
            x, y = self._clamp_position(round(x / grid) * grid, round(y / grid) * grid, element.width, element.height)
        return self._replace(element_id, x=x, y=y)

    def resize_element(self, element_id: str, handle: str, dx: float, dy: float) -> CanvasElement:
        if handle not in RESIZE_HANDLES:
            raise EditorError(f"Unknown resize handle: {handle}")
        element = self.get_element(element_id)
        scale = self.settings.zoom / 100
        dx, dy = dx / scale, dy / scale

        left, top = element.x, element.y
        right, bottom = element.x + element.width, element.y + element.height
        if "w" in handle:
            left = min(left + dx, right - MIN_ELEMENT_SIZE)
        if "e" in handle:
            right = max(right + dx, left + MIN_ELEMENT_SIZE)
        if "n" in handle:
            top = min(top + dy, bottom - MIN_ELEMENT_SIZE)
        if "s" in handle:
            bottom = max(bottom + dy, top + MIN_ELEMENT_SIZE)

        left, top = max(0, left), max(0, top)
        right = min(self.settings.page_width_px, right)
        bottom = min(self.settings.page_height_px, bottom)
        return self._replace(element_id, x=left, y=top, width=right - left, height=bottom - top)

    def update_element(self, element_id: str, **changes: Any) -> CanvasElement:
        unknown = set(changes) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise EditorError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        element = self.get_element(element_id)
        changes = self._coerce(changes)
        if "page" in changes:
            self._check_page(changes["page"])
        if "opacity" in changes:
            changes["opacity"] = _clamp(changes["opacity"], 0, 1)
        if set(changes) & set(self.GEOMETRY_FIELDS):
            width = max(MIN_ELEMENT_SIZE, changes.get("width", element.width))
            height = max(MIN_ELEMENT_SIZE, changes.get("height", element.height))
            x, y = self._clamp_position(changes.get("x", element.x), changes.get("y", element.y), width, height)
            changes.update(x=x, y=y, width=width, height=height)
        return self._replace(element_id, **changes)

    def update_properties(self, element_id: str, properties: dict[str, Any]) -> CanvasElement:
        element = self.get_element(element_id)
        return self._replace(element_id, properties={**element.properties, **properties})

    def delete_element(self, element_id: str) -> None:
        self.get_element(element_id)
        if self.editing_id == element_id:
            self.cancel_edit()
        self.update_elements([el for el in self.elements if el.id != element_id])
        self.selected_id = None

    def duplicate_element(self, element_id: str) -> CanvasElement:
        element = self.get_element(element_id)
        x, y = self._clamp_position(
            element.x + DUPLICATE_OFFSET, element.y + DUPLICATE_OFFSET, element.width, element.height
        )
        clone = replace(
            element,
            id=new_element_id(),
            x=x,
            y=y,
            z_index=self._next_z_index(),
            properties=copy.deepcopy(element.properties),
        )
        self.update_elements(self.elements + [clone])
        self.selected_id = clone.id
        return clone

    def bring_to_front(self, element_id: str) -> CanvasElement:
        self.get_element(element_id)
        return self._replace(element_id, z_index=self._next_z_index())

    def send_to_back(self, element_id: str) -> CanvasElement:
        self.get_element(element_id)
        lowest = min(el.z_index for el in self.elements)
        return self._replace(element_id, z_index=lowest - 1)

    # -- pages ---------------------------------------------------------

    def add_page(self) -> int:
        self.settings.total_pages += 1
        self.current_page = self.settings.total_pages
        return self.current_page

    def delete_page(self, page: int) -> None:
        if self.settings.total_pages <= 1:
            raise EditorError("Cannot delete the only page")
        self._check_page(page)
        remaining = []
        for element in self.elements:
            if element.page == page:
                continue
            if element.page > page:
                element = replace(element, page=element.page - 1)
            remaining.append(element)
        self.settings.total_pages -= 1
        self.update_elements(remaining)
        self.current_page = min(max(1, page - 1), self.settings.total_pages)
        if self.selected_id and self._find(self.selected_id) is None:
            self.selected_id = None

    # -- inline text editing --------------------------------------------

    def begin_edit(self, element_id: str) -> str:
        element = self.select(element_id)
        if element.type not in EDITABLE_TYPES:
            raise EditorError(f"Elements of type {element.type} are not editable inline")
        self.editing_id = element_id
        self.edit_buffer = element.content
        return self.edit_buffer

    def set_edit_buffer(self, text: str) -> None:
        if self.editing_id is None:
            raise EditorError("No element is being edited")
        self.edit_buffer = text

    def commit_edit(self) -> bool:
        if self.editing_id is None:
            return False
        element_id, text = self.editing_id, self.edit_buffer
        self.editing_id = None
        self.edit_buffer = None
        element = self._find(element_id)
        if element is None or element.content == text:
            return False
        self._replace(element_id, content=text)
        return True

    def cancel_edit(self) -> None:
        self.editing_id = None
        self.edit_buffer = None

    # -- serialisation -------------------------------------------------

    def to_list(self) -> list[dict[str, Any]]:
        return [element.to_dict() for element in self.elements]

    def to_json(self) -> str:
        return json.dumps(self.to_list(), ensure_ascii=False)

    def settings_json(self) -> str:
        return json.dumps(self.settings.to_dict(), ensure_ascii=False)

    @classmethod
    def from_json(
        cls,
        elements_text: str | None,
        settings_text: str | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> "CanvasEditor":
        return cls(
            elements=parse_elements(elements_text),
            settings=parse_settings(settings_text),
            history_limit=history_limit,
        )


def parse_elements(text: str | None) -> list[CanvasElement]:
    if not text:
        return []
    try:
        raw = json.loads(text)
    except ValueError:
        logger.warning("Discarding unreadable canvas_elements payload")
        return []
    if not isinstance(raw, list):
        logger.warning("canvas_elements is not a list, starting with an empty canvas")
        return []
    elements = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            elements.append(CanvasElement.from_dict(item))
        except EditorError as exc:
            logger.warning(f"Skipping canvas element: {exc}")
    return elements


def parse_settings(text: str | None) -> CanvasSettings:
    if not text:
        return CanvasSettings()
    try:
        return CanvasSettings.from_dict(json.loads(text))
    except (AttributeError, EditorError, TypeError, ValueError):
        logger.warning("Discarding unreadable canvas_settings payload")
        return CanvasSettings()
