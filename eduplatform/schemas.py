from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .models import BookStatus, CommentStatus, CommentType, UserRole


class LoginRequest(BaseModel):
    email: str = Field(min_length=5, max_length=255)
    password: str = Field(min_length=8)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: UserRole


class RegisterRequest(BaseModel):
    key: str = Field(min_length=4, max_length=64)
    email: str = Field(min_length=5, max_length=255)
    password: str = Field(min_length=8)
    display_name: str = Field(min_length=2, max_length=255)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    display_name: str | None = None
    role: UserRole
    is_active: bool
    school_id: int | None = None
    teacher_id: int | None = None
    created_at: datetime


class UserActiveRequest(BaseModel):
    is_active: bool


class SchoolCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    address: str | None = Field(default=None, max_length=500)
    contact_email: str | None = Field(default=None, max_length=255)


class SchoolOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    address: str | None = None
    contact_email: str | None = None
    is_active: bool
    created_at: datetime


class SchoolSummaryOut(SchoolOut):
    teachers_count: int = 0
    students_count: int = 0
    books_count: int = 0


class SchoolDetailOut(SchoolOut):
    teachers: list[UserOut] = []
    students: list[UserOut] = []
    books_count: int = 0


class BookCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str | None = None
    grade_level: str | None = Field(default=None, max_length=50)
    course: str | None = Field(default=None, max_length=255)
    category: str | None = Field(default=None, max_length=255)
    language: str = Field(default="Русский", max_length=50)
    price: float = Field(default=0, ge=0)
    cover_image: str | None = Field(default=None, max_length=500)


class BookUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    grade_level: str | None = Field(default=None, max_length=50)
    course: str | None = Field(default=None, max_length=255)
    category: str | None = Field(default=None, max_length=255)
    language: str | None = Field(default=None, max_length=50)
    price: float | None = Field(default=None, ge=0)
    cover_image: str | None = Field(default=None, max_length=500)


class BookOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    base_url: str
    title: str
    description: str | None = None
    status: BookStatus
    author_id: int
    moderator_id: int | None = None
    grade_level: str | None = None
    course: str | None = None
    category: str | None = None
    language: str
    price: float
    pages_count: int
    cover_image: str | None = None
    created_at: datetime
    updated_at: datetime


class BookStatsOut(BaseModel):
    total: int
    draft: int
    moderation: int
    approved: int
    active: int


class StructureSection(BaseModel):
    """One node of the table of contents.

    Keys the editor stores alongside a node (``type``, ``order``,
    ``isVisible`` and so on) are kept as they are. ``sections`` is read as
    an older name for ``children``.
    """

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    title: str = Field(min_length=1)
    page: int | None = Field(default=None, ge=1)
    children: list["StructureSection"] = Field(default=[], validation_alias=AliasChoices("children", "sections"))


class StructureRequest(BaseModel):
    chapters: list[StructureSection]


class CanvasPayload(BaseModel):
    elements: list[dict[str, Any]]
    settings: dict[str, Any] | None = None


class EditorOperationRequest(BaseModel):
    op: str = Field(min_length=1)
    params: dict[str, Any] = {}


class EditorStateOut(BaseModel):
    book_id: int
    elements: list[dict[str, Any]]
    settings: dict[str, Any]
    selected_id: str | None = None
    editing_id: str | None = None
    current_page: int
    history_size: int
    history_index: int
    can_undo: bool
    can_redo: bool


class KeyCreateRequest(BaseModel):
    role: UserRole
    max_uses: int = Field(default=1, ge=1, le=10000)
    expires_in_days: int | None = Field(default=None, ge=1, le=3650)
    school_id: int | None = None
    teacher_id: int | None = None


class KeyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    key: str
    role: UserRole
    is_active: bool
    uses: int
    max_uses: int
    expires_at: datetime | None = None
    school_id: int | None = None
    teacher_id: int | None = None
    created_by: int
    created_at: datetime
    is_available: bool = False


class KeyValidationOut(BaseModel):
    key: str
    role: UserRole | None = None
    is_available: bool


class CommentCreateRequest(BaseModel):
    section_id: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1)
    comment_type: CommentType = CommentType.COMMENT
    parent_id: int | None = None


class CommentUpdateRequest(BaseModel):
    content: str | None = Field(default=None, min_length=1)
    status: CommentStatus | None = None


class CommentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    book_id: int
    user_id: int
    section_id: str
    content: str
    comment_type: CommentType
    status: CommentStatus
    parent_id: int | None = None
    created_at: datetime
    updated_at: datetime
    replies: list["CommentOut"] = []


class MessageResponse(BaseModel):
    message: str


StructureSection.model_rebuild()
CommentOut.model_rebuild()
