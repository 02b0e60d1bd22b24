import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    # Database
    mongodb_url: str = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
    database_name: str = os.getenv("DATABASE_NAME", "library_db")

    # Messaging
    rabbitmq_url: Optional[str] = os.getenv("RABBIT_MQ_CONN_STR")
    overdue_queue: str = os.getenv("OVERDUE_QUEUE", "overdue_notices")

    # Tokens
    access_token_secret: str = os.getenv(
        "ACCESS_TOKEN_SECRET", "change-this-access-token-secret-in-production"
    )
    refresh_token_secret: str = os.getenv(
        "REFRESH_TOKEN_SECRET", "change-this-refresh-token-secret-in-production"
    )
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    access_token_ttl_seconds: int = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", "200"))
    refresh_token_ttl_seconds: int = int(
        os.getenv("REFRESH_TOKEN_TTL_SECONDS", str(7 * 24 * 60 * 60))
    )
    refresh_cookie_name: str = os.getenv("REFRESH_COOKIE_NAME", "refresh_token")
    refresh_cookie_path: str = os.getenv("REFRESH_COOKIE_PATH", "/auth/refresh-token")

    # Lending
    default_lending_days: int = int(os.getenv("DEFAULT_LENDING_DAYS", "14"))

    # Application
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


settings = Settings()
