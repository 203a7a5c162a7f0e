from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://staffhub:staffhub_secret@db:5432/staffhub"
    JWT_SECRET: str = "staffhub-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    AUDIT_STORAGE_PATH: str = "./audit_storage"
    AUDIT_SINK_ENABLED: bool = True

    MESSAGE_EDIT_WINDOW_MINUTES: int = 15
    MAX_EDITS_PER_MESSAGE: int = 5
    MAX_MESSAGE_LENGTH: int = 2000
    MIN_SEARCH_QUERY_LENGTH: int = 2

    class Config:
        env_file = ".env"


settings = Settings()
