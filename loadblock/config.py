from typing import List, Optional
from pydantic import PostgresDsn, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    PROJECT_NAME: str = "LoadBlock BoL Engine"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Relational draft store
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "loadblock"
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # full URL override, e.g. sqlite+aiosqlite for tests

    @computed_field
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(PostgresDsn.build(
            scheme="postgresql+asyncpg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        ))

    # Ledger and document store
    LEDGER_DATABASE_URL: Optional[str] = None
    DOCUMENT_STORE_PATH: str = ".loadblock/content"

    # Store call policy
    STORAGE_TIMEOUT_SECONDS: float = 10.0
    STORAGE_RETRY_ATTEMPTS: int = 3
    STORAGE_RETRY_BASE_DELAY_SECONDS: float = 0.5
    STORAGE_RETRY_MAX_DELAY_SECONDS: float = 8.0

    # Notification / audit sink
    AUDIT_SINK_TIMEOUT_SECONDS: float = 2.0

    # Actors holding the admin role on every BoL
    ADMIN_ACTOR_IDS: List[str] = []

    # Rejection notice rules
    REJECTION_REASON_MIN_LENGTH: int = 10
    REJECTION_REASON_MAX_LENGTH: int = 500

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env")

settings = Settings()
