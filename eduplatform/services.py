import logging
import re

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from .config import settings
from .models import Book, BookComment, RegistrationKey, School, SchoolBook, User, UserRole
from .security import create_access_token, hash_password, password_problem, verify_password

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")


def normalize_email(value: str) -> str:
    normalized = value.lower().strip()
    if not EMAIL_PATTERN.match(normalized):
        raise HTTPException(status_code=400, detail="Invalid email format")
    return normalized


def require_confirmation(confirm: bool) -> None:
    if not confirm:
        raise HTTPException(status_code=400, detail="Destructive action requires confirm=true")


def login_user(db: Session, *, email: str, password: str) -> tuple[str, User]:
    user = db.query(User).filter(User.email == normalize_email(email)).first()
    if not user or not user.is_active or not verify_password(password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return create_access_token(user.id, user.role.value), user


def create_user(
    db: Session,
    *,
    email: str,
    raw_password: str,
    role: UserRole,
    display_name: str | None = None,
    school_id: int | None = None,
    teacher_id: int | None = None,
    commit: bool = True,
) -> User:
    email = normalize_email(email)
    problem = password_problem(raw_password)
    if problem:
        raise HTTPException(status_code=400, detail=problem)
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="User email already exists")

    user = User(
        email=email,
        password_hash=hash_password(raw_password),
        display_name=display_name.strip() if display_name else None,
        role=role,
        school_id=school_id,
        teacher_id=teacher_id,
    )
    db.add(user)
    if commit:
        db.commit()
        db.refresh(user)
    else:
        db.flush()
    return user


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def list_users(
    db: Session,
    *,
    actor: User,
    role: UserRole | None = None,
    search: str | None = None,
    school_id: int | None = None,
) -> list[User]:
    query = db.query(User)
    if actor.role == UserRole.SCHOOL:
        # School accounts only see their own people.
        query = query.filter(User.school_id == actor.school_id)
    elif actor.role == UserRole.TEACHER:
        query = query.filter(User.teacher_id == actor.id)
    elif school_id is not None:
        query = query.filter(User.school_id == school_id)
    if role is not None:
        query = query.filter(User.role == role)
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            func.lower(User.email).like(pattern) | func.lower(func.coalesce(User.display_name, "")).like(pattern)
        )
    return query.order_by(User.created_at.desc(), User.id.desc()).all()


def set_user_active(db: Session, *, user_id: int, is_active: bool, actor: User) -> User:
    user = get_user(db, user_id)
    if user.id == actor.id:
        raise HTTPException(status_code=400, detail="You cannot change your own account status")
    user.is_active = is_active
    db.commit()
    db.refresh(user)
    logger.info(f"User {user.email} active={is_active} (by {actor.email})")
    return user


def delete_user(db: Session, *, user_id: int, actor: User) -> None:
    user = get_user(db, user_id)
    if user.id == actor.id:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    if db.query(Book).filter(Book.author_id == user.id).first():
        raise HTTPException(status_code=409, detail="User still owns books")
    if db.query(RegistrationKey).filter(RegistrationKey.created_by == user.id).first():
        raise HTTPException(status_code=409, detail="User still owns registration keys")
    db.query(Book).filter(Book.moderator_id == user.id).update({Book.moderator_id: None})
    own_comments = [row.id for row in db.query(BookComment.id).filter(BookComment.user_id == user.id).all()]
    # Other people's replies become top-level comments.
    db.query(BookComment).filter(BookComment.parent_id.in_(own_comments), BookComment.user_id != user.id).update(
        {BookComment.parent_id: None}, synchronize_session=False
    )
    db.query(BookComment).filter(BookComment.user_id == user.id).delete(synchronize_session=False)
    db.query(User).filter(User.teacher_id == user.id).update({User.teacher_id: None})
    db.query(RegistrationKey).filter(RegistrationKey.teacher_id == user.id).update({RegistrationKey.teacher_id: None})
    db.delete(user)
    db.commit()
    logger.info(f"User {user.email} deleted by {actor.email}")


def create_school(db: Session, *, name: str, address: str | None, contact_email: str | None) -> School:
    if contact_email:
        contact_email = normalize_email(contact_email)
    school = School(name=name.strip(), address=address, contact_email=contact_email, is_active=True)
    db.add(school)
    db.commit()
    db.refresh(school)
    logger.info(f"School created: {school.name} ({school.id})")
    return school


def get_school(db: Session, school_id: int) -> School:
    school = db.query(School).filter(School.id == school_id).first()
    if not school:
        raise HTTPException(status_code=404, detail="School not found")
    return school


def _count_by_school(db: Session, column, *filters) -> dict[int, int]:
    rows = db.query(column, func.count()).filter(*filters).group_by(column).all()
    return {school_id: count for school_id, count in rows if school_id is not None}


def list_schools(db: Session, *, search: str | None = None) -> list[dict]:
    query = db.query(School)
    if search:
        query = query.filter(func.lower(School.name).like(f"%{search.strip().lower()}%"))
    schools = query.order_by(School.name).all()

    teachers = _count_by_school(db, User.school_id, User.role == UserRole.TEACHER)
    students = _count_by_school(db, User.school_id, User.role == UserRole.STUDENT)
    books = _count_by_school(db, SchoolBook.school_id)
    return [
        {
            "id": school.id,
            "name": school.name,
            "address": school.address,
            "contact_email": school.contact_email,
            "is_active": school.is_active,
            "created_at": school.created_at,
            "teachers_count": teachers.get(school.id, 0),
            "students_count": students.get(school.id, 0),
            "books_count": books.get(school.id, 0),
        }
        for school in schools
    ]


def school_detail(db: Session, school_id: int) -> dict:
    school = get_school(db, school_id)
    members = db.query(User).filter(User.school_id == school.id).order_by(User.display_name, User.email).all()
    return {
        "id": school.id,
        "name": school.name,
        "address": school.address,
        "contact_email": school.contact_email,
        "is_active": school.is_active,
        "created_at": school.created_at,
        "teachers": [m for m in members if m.role == UserRole.TEACHER],
        "students": [m for m in members if m.role == UserRole.STUDENT],
        "books_count": db.query(SchoolBook).filter(SchoolBook.school_id == school.id).count(),
    }


def delete_school(db: Session, *, school_id: int) -> None:
    school = get_school(db, school_id)
    if db.query(User).filter(User.school_id == school.id).first():
        raise HTTPException(status_code=409, detail="School still has users")
    db.query(SchoolBook).filter(SchoolBook.school_id == school.id).delete()
    db.query(RegistrationKey).filter(RegistrationKey.school_id == school.id).delete()
    db.delete(school)
    db.commit()
    logger.info(f"School {school.name} ({school_id}) deleted")


def seed_super_admin(db: Session) -> None:
    email = settings.super_admin_email.strip().lower()
    if not email or db.query(User).filter(User.email == email).first():
        return
    db.add(
        User(
            email=email,
            role=UserRole.SUPER_ADMIN,
            display_name="Super Admin",
            password_hash=hash_password(settings.super_admin_password),
            is_active=True,
        )
    )
    db.commit()
    logger.info(f"Seeded super admin {email}")
