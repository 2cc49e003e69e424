import json
import logging
import re
import time
from collections.abc import Iterable, Iterator
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .models import Book, BookComment, BookStatus, SchoolBook, User, UserRole, utcnow
from .workflow import WorkflowError, WorkflowPermissionError, check_transition

logger = logging.getLogger(__name__)

SORT_KEYS = {
    "newest": (lambda book: (book.created_at, book.id), True),
    "oldest": (lambda book: (book.created_at, book.id), False),
    "title": (lambda book: book.title.lower(), False),
    "price": (lambda book: book.price, False),
    "updated": (lambda book: (book.updated_at, book.id), True),
}

# Columns that cannot be cleared through a metadata update.
REQUIRED_FIELDS = ("title", "language", "price")


def slugify(value: str) -> str:
    slug = re.sub(r"[^\w]+", "-", value.lower()).strip("-_")
    return slug or "book"


def unique_base_url(db: Session, title: str) -> str:
    base = slugify(title)
    candidate, suffix = base, 2
    while db.query(Book.id).filter(Book.base_url == candidate).first():
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def get_book(db: Session, book_id: int) -> Book:
    book = db.query(Book).filter(Book.id == book_id).first()
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


def get_book_by_base_url(db: Session, base_url: str) -> Book:
    book = db.query(Book).filter(Book.base_url == base_url).first()
    if not book:
        raise HTTPException(status_code=404, detail="Book not found")
    return book


def can_view(book: Book, user: User | None) -> bool:
    if book.status == BookStatus.ACTIVE:
        return True
    if user is None:
        return False
    if user.role in (UserRole.SUPER_ADMIN, UserRole.MODERATOR):
        return True
    return book.author_id == user.id


def can_edit(book: Book, user: User) -> bool:
    if user.role == UserRole.SUPER_ADMIN:
        return True
    # Authors lose edit rights once a book leaves Draft.
    return book.author_id == user.id and book.status == BookStatus.DRAFT


def get_visible_book(db: Session, book_id: int, user: User | None) -> Book:
    book = get_book(db, book_id)
    if not can_view(book, user):
        raise HTTPException(status_code=404, detail="Book not found")
    return book


def get_editable_book(db: Session, book_id: int, user: User) -> Book:
    book = get_visible_book(db, book_id, user)
    if not can_edit(book, user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Book cannot be edited")
    return book


def create_book(db: Session, *, actor: User, title: str, **metadata: Any) -> Book:
    book = Book(
        title=title.strip(),
        base_url=unique_base_url(db, title),
        status=BookStatus.DRAFT,
        author_id=actor.id,
        **{key: value for key, value in metadata.items() if value is not None},
    )
    db.add(book)
    db.commit()
    db.refresh(book)
    logger.info(f"Book {book.id} '{book.title}' created by {actor.email}")
    return book


def update_book_metadata(db: Session, *, book_id: int, actor: User, changes: dict[str, Any]) -> Book:
    book = get_editable_book(db, book_id, actor)
    for field_name, value in changes.items():
        if value is None and field_name in REQUIRED_FIELDS:
            continue
        if field_name == "title":
            value = value.strip()
        setattr(book, field_name, value)
    db.commit()
    db.refresh(book)
    return book


def delete_book(db: Session, *, book_id: int, actor: User) -> None:
    book = get_visible_book(db, book_id, actor)
    if actor.role != UserRole.SUPER_ADMIN and not (book.author_id == actor.id and book.status == BookStatus.DRAFT):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only draft books can be deleted by their author")
    db.query(BookComment).filter(BookComment.book_id == book.id).delete()
    db.query(SchoolBook).filter(SchoolBook.book_id == book.id).delete()
    db.delete(book)
    db.commit()
    logger.info(f"Book {book_id} deleted by {actor.email}")


def duplicate_book(db: Session, *, book_id: int, actor: User) -> Book:
    source = get_visible_book(db, book_id, actor)
    duplicate = Book(
        title=f"{source.title} (Копия)",
        base_url=f"{source.base_url}-copy-{int(time.time() * 1000)}",
        description=source.description,
        status=BookStatus.DRAFT,
        author_id=actor.id,
        grade_level=source.grade_level,
        course=source.course,
        category=source.category,
        language=source.language or "Русский",
        price=source.price,
        pages_count=source.pages_count,
        cover_image=source.cover_image,
        structure=source.structure,
        canvas_elements=source.canvas_elements,
        canvas_settings=source.canvas_settings,
    )
    db.add(duplicate)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail="Book copy already exists, try again") from exc
    db.refresh(duplicate)
    logger.info(f"Book {source.id} duplicated as {duplicate.id} for {actor.email}")
    return duplicate


# -- listing ---------------------------------------------------------------


def list_books_for_role(db: Session, role: UserRole | None, user_id: int | None = None) -> list[Book]:
    query = db.query(Book)
    if role == UserRole.AUTHOR:
        query = query.filter(Book.author_id == user_id)
    elif role == UserRole.MODERATOR:
        query = query.filter(Book.status == BookStatus.MODERATION)
    elif role == UserRole.SUPER_ADMIN:
        pass
    else:
        query = query.filter(Book.status == BookStatus.ACTIVE)
    books = query.order_by(Book.created_at.desc(), Book.id.desc()).all()
    logger.info(f"Books query for role={role.value if role else 'anonymous'}: {len(books)} found")
    return books


def iter_batches(items: list, size: int | None = None) -> Iterator[list]:
    size = size or settings.batch_size
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _matches(book: Book, search: str | None, criteria: dict[str, Any]) -> bool:
    if search:
        haystack = f"{book.title} {book.description or ''} {book.course or ''} {book.category or ''}".lower()
        if search not in haystack:
            return False
    return all(getattr(book, name) == value for name, value in criteria.items() if value is not None)


def filter_books(
    books: Iterable[Book],
    *,
    search: str | None = None,
    status: BookStatus | None = None,
    grade_level: str | None = None,
    course: str | None = None,
    category: str | None = None,
    sort: str = "newest",
    batch_size: int | None = None,
) -> list[Book]:
    """Filter and sort an already fetched list of books in memory."""
    if sort not in SORT_KEYS:
        raise HTTPException(status_code=400, detail=f"Unknown sort order: {sort}")
    search = search.strip().lower() if search else None
    criteria = {"status": status, "grade_level": grade_level, "course": course, "category": category}

    matched: list[Book] = []
    for batch in iter_batches(list(books), batch_size):
        matched.extend(book for book in batch if _matches(book, search, criteria))

    key, reverse = SORT_KEYS[sort]
    return sorted(matched, key=key, reverse=reverse)


def book_stats(books: Iterable[Book]) -> dict[str, int]:
    stats = {"total": 0, "draft": 0, "moderation": 0, "approved": 0, "active": 0}
    for book in books:
        stats["total"] += 1
        stats[book.status.value.lower()] += 1
    return stats


# -- moderation workflow ---------------------------------------------------


def transition_book(db: Session, *, book_id: int, target: BookStatus, actor: User) -> Book:
    book = get_visible_book(db, book_id, actor)
    try:
        check_transition(book.status, target, actor.role)
    except WorkflowPermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except WorkflowError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    if target == BookStatus.MODERATION and actor.role == UserRole.AUTHOR and book.author_id != actor.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the author can submit this book")

    previous = book.status
    book.status = target
    if target == BookStatus.APPROVED:
        book.moderator_id = actor.id
    db.commit()
    db.refresh(book)
    logger.info(f"Book {book.id} moved {previous.value} -> {target.value} by {actor.email}")
    return book


def submit_for_moderation(db: Session, *, book_id: int, actor: User) -> Book:
    return transition_book(db, book_id=book_id, target=BookStatus.MODERATION, actor=actor)


def approve_book(db: Session, *, book_id: int, actor: User) -> Book:
    return transition_book(db, book_id=book_id, target=BookStatus.APPROVED, actor=actor)


def activate_book(db: Session, *, book_id: int, actor: User) -> Book:
    return transition_book(db, book_id=book_id, target=BookStatus.ACTIVE, actor=actor)


# -- school library --------------------------------------------------------


def add_book_to_school(db: Session, *, book_id: int, actor: User) -> SchoolBook:
    if actor.school_id is None:
        raise HTTPException(status_code=400, detail="School ID not found. Please contact administrator.")
    book = get_book(db, book_id)
    if book.status != BookStatus.ACTIVE:
        raise HTTPException(status_code=409, detail="Only active books can be added to a school library")
    if db.query(SchoolBook).filter(SchoolBook.school_id == actor.school_id, SchoolBook.book_id == book.id).first():
        raise HTTPException(status_code=409, detail="Book is already in the school library")
    entry = SchoolBook(school_id=actor.school_id, book_id=book.id)
    db.add(entry)
    db.commit()
    db.refresh(entry)
    logger.info(f"Book {book.id} added to school {actor.school_id}")
    return entry


def list_school_books(db: Session, school_id: int) -> list[Book]:
    return (
        db.query(Book)
        .join(SchoolBook, SchoolBook.book_id == Book.id)
        .filter(SchoolBook.school_id == school_id)
        .order_by(Book.title)
        .all()
    )


def list_available_for_school(db: Session, school_id: int) -> list[Book]:
    added = db.query(SchoolBook.book_id).filter(SchoolBook.school_id == school_id)
    return (
        db.query(Book)
        .filter(Book.status == BookStatus.ACTIVE, Book.id.not_in(added))
        .order_by(Book.title)
        .all()
    )


# -- structure tree --------------------------------------------------------


def get_structure(book: Book) -> list[dict[str, Any]]:
    if not book.structure:
        return []
    try:
        chapters = json.loads(book.structure)
    except ValueError:
        logger.warning(f"Book {book.id} has an unreadable structure, returning empty tree")
        return []
    return chapters if isinstance(chapters, list) else []


def set_structure(db: Session, *, book_id: int, actor: User, chapters: list[dict[str, Any]]) -> list[dict[str, Any]]:
    book = get_editable_book(db, book_id, actor)
    book.structure = json.dumps(chapters, ensure_ascii=False)
    book.updated_at = utcnow()
    db.commit()
    return chapters
