import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")
    SQLITE_FALLBACK_URL: str = os.getenv("SQLITE_FALLBACK_URL", "sqlite+aiosqlite:///./checkout.db")

    # API
    API_TOKEN: str = os.getenv("API_TOKEN", "")

    # Services
    NOTIFICATIONS_BASE_URL: str = os.getenv("NOTIFICATIONS_BASE_URL", "")

    # Orders
    ORDER_NUMBER_PREFIX: str = os.getenv("ORDER_NUMBER_PREFIX", "ORD")
    ORDER_NUMBER_MAX_ATTEMPTS: int = int(os.getenv("ORDER_NUMBER_MAX_ATTEMPTS", "10"))
    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "USD")

    # Inventory
    LOW_STOCK_THRESHOLD: int = int(os.getenv("LOW_STOCK_THRESHOLD", "10"))

    # Payment confirmation automation
    AUTOMATION_RETRY_SECONDS: int = int(os.getenv("AUTOMATION_RETRY_SECONDS", "3600"))
    RETRY_WORKER_INTERVAL_SECONDS: int = int(os.getenv("RETRY_WORKER_INTERVAL_SECONDS", "60"))
    AUTOMATION_RULES_FILE: str = os.getenv("AUTOMATION_RULES_FILE", "")

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for the application"""
        explicit = os.getenv("DATABASE_URL")
        if explicit:
            return explicit
        if self.POSTGRES_CONNECTION_STRING:
            return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")
        return self.SQLITE_FALLBACK_URL

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Sync URL for Alembic"""
        return (
            self.DATABASE_URL
            .replace("postgresql+asyncpg://", "postgresql://")
            .replace("sqlite+aiosqlite://", "sqlite://")
        )


settings = Settings()
