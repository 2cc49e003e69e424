import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import books as book_service
from . import comments as comment_service
from . import keys as key_service
from . import services
from .canvas import apply_operation, editor_state, load_canvas, replace_canvas, save_canvas, sessions
from .database import get_db_session
from .editor import EditorError
from .middleware import get_current_user, get_optional_user, require_roles
from .models import BookStatus, User, UserRole
from .schemas import (
    BookCreateRequest,
    BookOut,
    BookStatsOut,
    BookUpdateRequest,
    CanvasPayload,
    CommentCreateRequest,
    CommentOut,
    CommentUpdateRequest,
    EditorOperationRequest,
    EditorStateOut,
    KeyCreateRequest,
    KeyOut,
    KeyValidationOut,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    RegisterRequest,
    SchoolCreateRequest,
    SchoolDetailOut,
    SchoolOut,
    SchoolSummaryOut,
    StructureRequest,
    UserActiveRequest,
    UserOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

ELEVATED_LISTING_ROLES = (UserRole.SUPER_ADMIN, UserRole.MODERATOR, UserRole.AUTHOR)


# -- auth ------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse, tags=["Auth"])
def login(payload: LoginRequest, db: Session = Depends(get_db_session)):
    token, user = services.login_user(db, email=payload.email, password=payload.password)
    return LoginResponse(access_token=token, role=user.role)


@router.post("/auth/register", response_model=UserOut, status_code=status.HTTP_201_CREATED, tags=["Auth"])
def register(payload: RegisterRequest, db: Session = Depends(get_db_session)):
    return key_service.register_with_key(
        db,
        raw_key=payload.key,
        email=payload.email,
        password=payload.password,
        display_name=payload.display_name,
    )


@router.get("/auth/keys/{raw_key}", response_model=KeyValidationOut, tags=["Auth"])
def check_key(raw_key: str, db: Session = Depends(get_db_session)):
    key = key_service.find_key(db, raw_key)
    if key is None:
        return KeyValidationOut(key=raw_key, is_available=False)
    return KeyValidationOut(key=key.key, role=key.role, is_available=key_service.is_key_available(key))


@router.get("/me", response_model=UserOut, tags=["Auth"])
def me(current_user: User = Depends(get_current_user)):
    return current_user


# -- users -----------------------------------------------------------------


@router.get("/users", response_model=list[UserOut], tags=["Users"])
def list_users(
    role: UserRole | None = None,
    search: str | None = None,
    school_id: int | None = None,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SCHOOL, UserRole.TEACHER)),
):
    return services.list_users(db, actor=current_user, role=role, search=search, school_id=school_id)


@router.patch("/users/{user_id}/active", response_model=UserOut, tags=["Users"])
def set_user_active(
    user_id: int,
    payload: UserActiveRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
):
    return services.set_user_active(db, user_id=user_id, is_active=payload.is_active, actor=current_user)


@router.delete("/users/{user_id}", response_model=MessageResponse, tags=["Users"])
def delete_user(
    user_id: int,
    confirm: bool = False,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
):
    services.require_confirmation(confirm)
    services.delete_user(db, user_id=user_id, actor=current_user)
    return MessageResponse(message="User deleted")


# -- schools ---------------------------------------------------------------


@router.post("/schools", response_model=SchoolOut, status_code=status.HTTP_201_CREATED, tags=["Schools"])
def create_school(
    payload: SchoolCreateRequest,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
):
    return services.create_school(db, name=payload.name, address=payload.address, contact_email=payload.contact_email)


@router.get("/schools", response_model=list[SchoolSummaryOut], tags=["Schools"])
def list_schools(
    search: str | None = None,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
):
    return services.list_schools(db, search=search)


def _check_school_access(user: User, school_id: int) -> None:
    if user.role != UserRole.SUPER_ADMIN and user.school_id != school_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role privileges")


@router.get("/schools/{school_id}", response_model=SchoolDetailOut, tags=["Schools"])
def get_school(
    school_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SCHOOL)),
):
    _check_school_access(current_user, school_id)
    return services.school_detail(db, school_id)


@router.delete("/schools/{school_id}", response_model=MessageResponse, tags=["Schools"])
def delete_school(
    school_id: int,
    confirm: bool = False,
    db: Session = Depends(get_db_session),
    _: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
):
    services.require_confirmation(confirm)
    services.delete_school(db, school_id=school_id)
    return MessageResponse(message="School deleted")


@router.get("/schools/{school_id}/books", response_model=list[BookOut], tags=["Schools"])
def school_library(
    school_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
):
    _check_school_access(current_user, school_id)
    services.get_school(db, school_id)
    return book_service.list_school_books(db, school_id)


@router.get("/schools/{school_id}/available-books", response_model=list[BookOut], tags=["Schools"])
def school_available_books(
    school_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SCHOOL)),
):
    _check_school_access(current_user, school_id)
    return book_service.list_available_for_school(db, school_id)


# -- registration keys -----------------------------------------------------


@router.post("/keys", response_model=KeyOut, status_code=status.HTTP_201_CREATED, tags=["Keys"])
def create_key(
    payload: KeyCreateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SCHOOL)),
):
    key = key_service.create_registration_key(
        db,
        actor=current_user,
        role=payload.role,
        max_uses=payload.max_uses,
        expires_in_days=payload.expires_in_days,
        school_id=payload.school_id,
        teacher_id=payload.teacher_id,
    )
    return key_service.key_to_dict(key)


@router.get("/keys", response_model=list[KeyOut], tags=["Keys"])
def list_keys(
    role: UserRole | None = None,
    available: bool | None = None,
    search: str | None = None,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SCHOOL)),
):
    keys = key_service.list_keys(db, actor=current_user, role=role, available=available, search=search)
    return [key_service.key_to_dict(key) for key in keys]


@router.post("/keys/{key_id}/toggle", response_model=KeyOut, tags=["Keys"])
def toggle_key(
    key_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SCHOOL)),
):
    return key_service.key_to_dict(key_service.toggle_key(db, key_id=key_id, actor=current_user))


@router.delete("/keys/{key_id}", response_model=MessageResponse, tags=["Keys"])
def delete_key(
    key_id: int,
    confirm: bool = False,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SCHOOL)),
):
    services.require_confirmation(confirm)
    key_service.delete_key(db, key_id=key_id, actor=current_user)
    return MessageResponse(message="Registration key deleted")


# -- books -----------------------------------------------------------------


def _listing_scope(role: str | None, user_id: int | None, current_user: User | None) -> tuple[UserRole | None, int | None]:
    try:
        requested = UserRole(role) if role else (current_user.role if current_user else None)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown role: {role}") from exc

    if requested in ELEVATED_LISTING_ROLES:
        if current_user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        if current_user.role not in (requested, UserRole.SUPER_ADMIN):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role privileges")
    if requested == UserRole.AUTHOR:
        if current_user.role != UserRole.SUPER_ADMIN:
            if user_id is not None and user_id != current_user.id:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot list another author's books")
            user_id = current_user.id
        elif user_id is None:
            user_id = current_user.id
    return requested, user_id


def _parse_user_id(raw: str | None) -> int | None:
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid userId: {raw}") from exc


@router.get("/books", tags=["Books"])
def list_books(
    role: str | None = None,
    user_id: str | None = Query(default=None, alias="userId"),
    authorization: str | None = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db_session),
):
    try:
        current_user = get_optional_user(authorization, db)
        scope_role, scope_user = _listing_scope(role, _parse_user_id(user_id), current_user)
        books = book_service.list_books_for_role(db, scope_role, scope_user)
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    except SQLAlchemyError as exc:
        logger.error(f"Books API error: {exc}")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch books"})
    return {"data": [BookOut.model_validate(book).model_dump(mode="json") for book in books]}


@router.get("/dashboard/books", tags=["Books"])
def dashboard_books(
    search: str | None = None,
    status_filter: BookStatus | None = Query(default=None, alias="status"),
    grade_level: str | None = None,
    course: str | None = None,
    category: str | None = None,
    sort: str = "newest",
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
):
    user_id = current_user.id if current_user.role == UserRole.AUTHOR else None
    visible = book_service.list_books_for_role(db, current_user.role, user_id)
    books = book_service.filter_books(
        visible,
        search=search,
        status=status_filter,
        grade_level=grade_level,
        course=course,
        category=category,
        sort=sort,
    )
    return {
        "books": [BookOut.model_validate(book).model_dump(mode="json") for book in books],
        "stats": BookStatsOut(**book_service.book_stats(visible)).model_dump(),
    }


@router.post("/books", response_model=BookOut, status_code=status.HTTP_201_CREATED, tags=["Books"])
def create_book(
    payload: BookCreateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    data = payload.model_dump()
    title = data.pop("title")
    return book_service.create_book(db, actor=current_user, title=title, **data)


@router.get("/books/by-url/{base_url}", response_model=BookOut, tags=["Books"])
def get_book_by_url(
    base_url: str,
    db: Session = Depends(get_db_session),
    current_user: User | None = Depends(get_optional_user),
):
    book = book_service.get_book_by_base_url(db, base_url)
    if not book_service.can_view(book, current_user):
        raise HTTPException(status_code=404, detail="Book not found")
    return book


@router.get("/books/{book_id}", response_model=BookOut, tags=["Books"])
def get_book(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User | None = Depends(get_optional_user),
):
    return book_service.get_visible_book(db, book_id, current_user)


@router.patch("/books/{book_id}", response_model=BookOut, tags=["Books"])
def update_book(
    book_id: int,
    payload: BookUpdateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    changes = payload.model_dump(exclude_unset=True)
    return book_service.update_book_metadata(db, book_id=book_id, actor=current_user, changes=changes)


@router.delete("/books/{book_id}", response_model=MessageResponse, tags=["Books"])
def delete_book(
    book_id: int,
    confirm: bool = False,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    services.require_confirmation(confirm)
    book_service.delete_book(db, book_id=book_id, actor=current_user)
    sessions.close_book(book_id)
    return MessageResponse(message="Book deleted")


@router.post("/books/{book_id}/duplicate", response_model=BookOut, status_code=status.HTTP_201_CREATED, tags=["Books"])
def duplicate_book(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    return book_service.duplicate_book(db, book_id=book_id, actor=current_user)


@router.post("/books/{book_id}/submit", response_model=BookOut, tags=["Workflow"])
def submit_book(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    return book_service.submit_for_moderation(db, book_id=book_id, actor=current_user)


@router.post("/books/{book_id}/approve", response_model=BookOut, tags=["Workflow"])
def approve_book(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.MODERATOR)),
):
    return book_service.approve_book(db, book_id=book_id, actor=current_user)


@router.post("/books/{book_id}/activate", response_model=BookOut, tags=["Workflow"])
def activate_book(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
):
    return book_service.activate_book(db, book_id=book_id, actor=current_user)


@router.post("/books/{book_id}/school-library", response_model=MessageResponse, status_code=status.HTTP_201_CREATED, tags=["Schools"])
def add_to_school_library(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.SCHOOL)),
):
    book_service.add_book_to_school(db, book_id=book_id, actor=current_user)
    return MessageResponse(message="Book added to the school library")


@router.get("/books/{book_id}/structure", tags=["Books"])
def get_structure(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User | None = Depends(get_optional_user),
):
    book = book_service.get_visible_book(db, book_id, current_user)
    return {"book_id": book.id, "chapters": book_service.get_structure(book)}


@router.put("/books/{book_id}/structure", tags=["Books"])
def put_structure(
    book_id: int,
    payload: StructureRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    chapters = [chapter.model_dump(exclude_none=True) for chapter in payload.chapters]
    return {"book_id": book_id, "chapters": book_service.set_structure(db, book_id=book_id, actor=current_user, chapters=chapters)}


# -- canvas ----------------------------------------------------------------


@router.get("/books/{book_id}/canvas", tags=["Canvas"])
def get_canvas(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User | None = Depends(get_optional_user),
):
    book = book_service.get_visible_book(db, book_id, current_user)
    return {"book_id": book.id, **load_canvas(book)}


@router.put("/books/{book_id}/canvas", tags=["Canvas"])
def put_canvas(
    book_id: int,
    payload: CanvasPayload,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    book = replace_canvas(db, book_id=book_id, actor=current_user, elements=payload.elements, canvas_settings=payload.settings)
    return {"book_id": book.id, **load_canvas(book)}


@router.post("/books/{book_id}/editor", response_model=EditorStateOut, status_code=status.HTTP_201_CREATED, tags=["Canvas"])
def open_editor_session(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    book = book_service.get_editable_book(db, book_id, current_user)
    return editor_state(book.id, sessions.open(current_user, book))


@router.get("/books/{book_id}/editor", response_model=EditorStateOut, tags=["Canvas"])
def get_editor_session(book_id: int, current_user: User = Depends(require_roles(UserRole.AUTHOR))):
    with sessions.use(current_user, book_id) as editor:
        return editor_state(book_id, editor)


@router.post("/books/{book_id}/editor/ops", response_model=EditorStateOut, tags=["Canvas"])
def apply_editor_operation(
    book_id: int,
    payload: EditorOperationRequest,
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    with sessions.use(current_user, book_id) as editor:
        try:
            apply_operation(editor, payload.op, payload.params)
        except (EditorError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return editor_state(book_id, editor)


@router.post("/books/{book_id}/editor/save", response_model=EditorStateOut, tags=["Canvas"])
def save_editor_session(
    book_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(require_roles(UserRole.AUTHOR)),
):
    book = book_service.get_editable_book(db, book_id, current_user)
    with sessions.use(current_user, book_id) as editor:
        save_canvas(db, book=book, editor=editor)
        return editor_state(book_id, editor)


@router.delete("/books/{book_id}/editor", response_model=MessageResponse, tags=["Canvas"])
def close_editor_session(book_id: int, current_user: User = Depends(require_roles(UserRole.AUTHOR))):
    if not sessions.close(current_user, book_id):
        raise HTTPException(status_code=404, detail="No open editor session for this book")
    return MessageResponse(message="Editor session closed")


# -- comments --------------------------------------------------------------


@router.get("/books/{book_id}/comments", response_model=list[CommentOut], tags=["Comments"])
def list_comments(
    book_id: int,
    section_id: str | None = None,
    db: Session = Depends(get_db_session),
    current_user: User | None = Depends(get_optional_user),
):
    return comment_service.list_comments(db, book_id=book_id, actor=current_user, section_id=section_id)


@router.post("/books/{book_id}/comments", response_model=CommentOut, status_code=status.HTTP_201_CREATED, tags=["Comments"])
def add_comment(
    book_id: int,
    payload: CommentCreateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
):
    return comment_service.add_comment(
        db,
        book_id=book_id,
        actor=current_user,
        section_id=payload.section_id,
        content=payload.content,
        comment_type=payload.comment_type,
        parent_id=payload.parent_id,
    )


@router.patch("/comments/{comment_id}", response_model=CommentOut, tags=["Comments"])
def update_comment(
    comment_id: int,
    payload: CommentUpdateRequest,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
):
    return comment_service.update_comment(
        db, comment_id=comment_id, actor=current_user, content=payload.content, new_status=payload.status
    )


@router.delete("/comments/{comment_id}", response_model=MessageResponse, tags=["Comments"])
def delete_comment(
    comment_id: int,
    db: Session = Depends(get_db_session),
    current_user: User = Depends(get_current_user),
):
    comment_service.delete_comment(db, comment_id=comment_id, actor=current_user)
    return MessageResponse(message="Comment deleted")
