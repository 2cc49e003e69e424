import logging

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from .books import get_visible_book
from .models import BookComment, CommentStatus, CommentType, User, UserRole

logger = logging.getLogger(__name__)


def _comment_to_dict(comment: BookComment) -> dict:
    return {
        "id": comment.id,
        "book_id": comment.book_id,
        "user_id": comment.user_id,
        "section_id": comment.section_id,
        "content": comment.content,
        "comment_type": comment.comment_type,
        "status": comment.status,
        "parent_id": comment.parent_id,
        "created_at": comment.created_at,
        "updated_at": comment.updated_at,
        "replies": [],
    }


def build_threads(comments: list[BookComment]) -> list[dict]:
    """Nest replies under their parent; orphans are promoted to the top level."""
    nodes = {comment.id: _comment_to_dict(comment) for comment in comments}
    roots = []
    for comment in comments:
        node = nodes[comment.id]
        parent = nodes.get(comment.parent_id) if comment.parent_id else None
        if parent is None:
            roots.append(node)
        else:
            parent["replies"].append(node)
    return roots


def add_comment(
    db: Session,
    *,
    book_id: int,
    actor: User,
    section_id: str,
    content: str,
    comment_type: CommentType = CommentType.COMMENT,
    parent_id: int | None = None,
) -> BookComment:
    book = get_visible_book(db, book_id, actor)
    if parent_id is not None:
        parent = db.query(BookComment).filter(BookComment.id == parent_id, BookComment.book_id == book.id).first()
        if not parent:
            raise HTTPException(status_code=404, detail="Parent comment not found")
    comment = BookComment(
        book_id=book.id,
        user_id=actor.id,
        section_id=section_id,
        content=content.strip(),
        comment_type=comment_type,
        status=CommentStatus.OPEN,
        parent_id=parent_id,
    )
    db.add(comment)
    db.commit()
    db.refresh(comment)
    logger.info(f"Comment {comment.id} added to book {book.id} by {actor.email}")
    return comment


def list_comments(db: Session, *, book_id: int, actor: User | None, section_id: str | None = None) -> list[dict]:
    book = get_visible_book(db, book_id, actor)
    query = db.query(BookComment).filter(BookComment.book_id == book.id)
    if section_id:
        query = query.filter(BookComment.section_id == section_id)
    return build_threads(query.order_by(BookComment.created_at, BookComment.id).all())


def _get_comment(db: Session, comment_id: int) -> BookComment:
    comment = db.query(BookComment).filter(BookComment.id == comment_id).first()
    if not comment:
        raise HTTPException(status_code=404, detail="Comment not found")
    return comment


def update_comment(
    db: Session,
    *,
    comment_id: int,
    actor: User,
    content: str | None = None,
    new_status: CommentStatus | None = None,
) -> BookComment:
    comment = _get_comment(db, comment_id)
    if content is not None:
        if comment.user_id != actor.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the author can edit a comment")
        comment.content = content.strip()
    if new_status is not None:
        book = get_visible_book(db, comment.book_id, actor)
        if comment.user_id != actor.id and book.author_id != actor.id and actor.role not in (
            UserRole.MODERATOR,
            UserRole.SUPER_ADMIN,
        ):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to change comment status")
        comment.status = new_status
    db.commit()
    db.refresh(comment)
    return comment


def delete_comment(db: Session, *, comment_id: int, actor: User) -> None:
    comment = _get_comment(db, comment_id)
    if comment.user_id != actor.id and actor.role != UserRole.SUPER_ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the author can delete a comment")
    # Replies go with their parent, deepest first.
    doomed, frontier = [comment.id], [comment.id]
    while frontier:
        frontier = [row.id for row in db.query(BookComment.id).filter(BookComment.parent_id.in_(frontier)).all()]
        doomed.extend(frontier)
    for doomed_id in reversed(doomed):
        db.query(BookComment).filter(BookComment.id == doomed_id).delete()
    db.commit()
    logger.info(f"Comment {comment_id} deleted by {actor.email}")
