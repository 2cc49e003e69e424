import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Values already present in the environment win over the .env file.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env"))


def _csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = os.getenv("EDU_DATABASE_URL", "")
    jwt_secret: str = os.getenv("EDU_JWT_SECRET", os.getenv("JWT_SECRET", "change-me-in-production"))
    jwt_algorithm: str = os.getenv("EDU_JWT_ALGORITHM", "HS256")
    jwt_exp_minutes: int = int(os.getenv("EDU_JWT_EXP_MINUTES", "60"))
    super_admin_email: str = os.getenv("EDU_SUPER_ADMIN_EMAIL", "superadmin@eduplatform.local")
    super_admin_password: str = os.getenv("EDU_SUPER_ADMIN_PASSWORD", "ChangeMe@123")
    cors_origins: list[str] = field(
        default_factory=lambda: _csv(os.getenv("EDU_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"))
    )
    api_base_url: str = os.getenv("EDU_API_BASE_URL", "http://127.0.0.1:8000")
    history_limit: int = int(os.getenv("EDU_HISTORY_LIMIT", "50"))
    max_editor_sessions: int = int(os.getenv("EDU_MAX_EDITOR_SESSIONS", "200"))
    editor_idle_minutes: int = int(os.getenv("EDU_EDITOR_IDLE_MINUTES", "60"))
    batch_size: int = int(os.getenv("EDU_BATCH_SIZE", "100"))
    fetch_timeout_seconds: float = float(os.getenv("EDU_FETCH_TIMEOUT_SECONDS", "10"))
    fetch_retry_delay_seconds: float = float(os.getenv("EDU_FETCH_RETRY_DELAY_SECONDS", "5"))


settings = Settings()
