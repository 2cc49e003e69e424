import logging
import secrets
from datetime import datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import RegistrationKey, School, User, UserRole, utcnow
from .services import create_user, normalize_email

logger = logging.getLogger(__name__)

KEY_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
KEY_PREFIXES = {
    UserRole.SUPER_ADMIN: "ADM",
    UserRole.SCHOOL: "SCH",
    UserRole.TEACHER: "TCH",
    UserRole.STUDENT: "STU",
    UserRole.AUTHOR: "AUT",
    UserRole.MODERATOR: "MOD",
}
SCHOOL_BOUND_ROLES = {UserRole.SCHOOL, UserRole.TEACHER, UserRole.STUDENT}
SCHOOL_ISSUABLE_ROLES = {UserRole.TEACHER, UserRole.STUDENT}


def generate_key_string(role: UserRole) -> str:
    """Readable key in the form ``ROLE-XXXX-XXXX``."""
    body = "".join(secrets.choice(KEY_ALPHABET) for _ in range(8))
    return f"{KEY_PREFIXES[role]}-{body[:4]}-{body[4:]}"


def is_key_available(key: RegistrationKey, now: datetime | None = None) -> bool:
    now = now or utcnow()
    if not key.is_active or key.uses >= key.max_uses:
        return False
    return key.expires_at is None or key.expires_at > now


def key_to_dict(key: RegistrationKey, now: datetime | None = None) -> dict:
    return {
        "id": key.id,
        "key": key.key,
        "role": key.role,
        "is_active": key.is_active,
        "uses": key.uses,
        "max_uses": key.max_uses,
        "expires_at": key.expires_at,
        "school_id": key.school_id,
        "teacher_id": key.teacher_id,
        "created_by": key.created_by,
        "created_at": key.created_at,
        "is_available": is_key_available(key, now),
    }


def create_registration_key(
    db: Session,
    *,
    actor: User,
    role: UserRole,
    max_uses: int = 1,
    expires_in_days: int | None = None,
    school_id: int | None = None,
    teacher_id: int | None = None,
) -> RegistrationKey:
    if actor.role == UserRole.SCHOOL:
        if role not in SCHOOL_ISSUABLE_ROLES:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Schools can only issue teacher or student keys")
        school_id = actor.school_id
    elif actor.role != UserRole.SUPER_ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role privileges")

    if role in SCHOOL_BOUND_ROLES and school_id is None:
        raise HTTPException(status_code=400, detail="School, teacher and student keys require a school")
    if school_id is not None and not db.query(School).filter(School.id == school_id).first():
        raise HTTPException(status_code=404, detail="School not found")
    if teacher_id is not None:
        teacher = db.query(User).filter(User.id == teacher_id, User.role == UserRole.TEACHER).first()
        if not teacher:
            raise HTTPException(status_code=404, detail="Teacher not found")
        if school_id is not None and teacher.school_id != school_id:
            raise HTTPException(status_code=400, detail="Teacher belongs to another school")

    expires_at = utcnow() + timedelta(days=expires_in_days) if expires_in_days else None
    for _ in range(5):
        key = RegistrationKey(
            key=generate_key_string(role),
            role=role,
            is_active=True,
            uses=0,
            max_uses=max_uses,
            expires_at=expires_at,
            school_id=school_id,
            teacher_id=teacher_id,
            created_by=actor.id,
        )
        db.add(key)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Registration key collision, regenerating")
            continue
        db.refresh(key)
        logger.info(f"Registration key {key.key} created for role {role.value} by {actor.email}")
        return key
    raise HTTPException(status_code=500, detail="Could not generate a unique registration key")


def list_keys(
    db: Session,
    *,
    actor: User,
    role: UserRole | None = None,
    available: bool | None = None,
    search: str | None = None,
) -> list[RegistrationKey]:
    query = db.query(RegistrationKey)
    if actor.role == UserRole.SCHOOL:
        query = query.filter(RegistrationKey.school_id == actor.school_id)
    if role is not None:
        query = query.filter(RegistrationKey.role == role)
    if search:
        query = query.filter(RegistrationKey.key.like(f"%{search.strip().upper()}%"))
    keys = query.order_by(RegistrationKey.created_at.desc(), RegistrationKey.id.desc()).all()
    if available is not None:
        now = utcnow()
        keys = [key for key in keys if is_key_available(key, now) == available]
    return keys


def _get_key_for_actor(db: Session, *, key_id: int, actor: User) -> RegistrationKey:
    key = db.query(RegistrationKey).filter(RegistrationKey.id == key_id).first()
    if not key:
        raise HTTPException(status_code=404, detail="Registration key not found")
    if actor.role == UserRole.SCHOOL and key.school_id != actor.school_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Key belongs to another school")
    return key


def toggle_key(db: Session, *, key_id: int, actor: User) -> RegistrationKey:
    key = _get_key_for_actor(db, key_id=key_id, actor=actor)
    key.is_active = not key.is_active
    db.commit()
    db.refresh(key)
    logger.info(f"Registration key {key.key} active={key.is_active}")
    return key


def delete_key(db: Session, *, key_id: int, actor: User) -> None:
    key = _get_key_for_actor(db, key_id=key_id, actor=actor)
    db.delete(key)
    db.commit()
    logger.info(f"Registration key {key.key} deleted by {actor.email}")


def find_key(db: Session, raw_key: str) -> RegistrationKey | None:
    return db.query(RegistrationKey).filter(RegistrationKey.key == raw_key.strip().upper()).first()


def register_with_key(db: Session, *, raw_key: str, email: str, password: str, display_name: str) -> User:
    key = find_key(db, raw_key)
    if key is None or not key.is_active:
        raise HTTPException(status_code=400, detail="Invalid or expired registration key")
    if key.uses >= key.max_uses:
        raise HTTPException(status_code=400, detail="Registration key has been used up")
    if not is_key_available(key):
        raise HTTPException(status_code=400, detail="Invalid or expired registration key")

    user = create_user(
        db,
        email=normalize_email(email),
        raw_password=password,
        role=key.role,
        display_name=display_name,
        school_id=key.school_id,
        teacher_id=key.teacher_id,
        commit=False,
    )
    key.uses += 1
    db.commit()
    db.refresh(user)
    logger.info(f"User {user.email} registered as {user.role.value} with key {key.key} ({key.uses}/{key.max_uses})")
    return user
