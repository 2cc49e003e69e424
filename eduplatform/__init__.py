from .database import Base, SessionLocal, engine
from .routes import router
from .services import seed_super_admin


def init_db() -> None:
    """Create missing tables and make sure the configured super admin exists."""
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        seed_super_admin(db)


__all__ = ["router", "init_db"]
