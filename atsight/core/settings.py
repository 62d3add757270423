"""App settings - loaded from environment variables with defaults."""

import os
from typing import List
from dotenv import load_dotenv

load_dotenv()


class Settings:
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8000"))

    DATABASE_URL: str = os.getenv("DB_CONNECTION_STRING", "sqlite+aiosqlite:///./atsight.db")
    CREATE_TABLES: bool = os.getenv("CREATE_TABLES", "true").lower() == "true"

    # Watch companion endpoint that exposes the latest raw readings per child
    SENSOR_API_BASE_URL: str = os.getenv("SENSOR_API_BASE_URL", "http://127.0.0.1:8001")
    SENSOR_POLL_INTERVAL_SECONDS: int = int(os.getenv("SENSOR_POLL_INTERVAL_SECONDS", "30"))
    SENSOR_FETCH_TIMEOUT_SECONDS: int = int(os.getenv("SENSOR_FETCH_TIMEOUT_SECONDS", "5"))

    # Remote AtSight API for the monitor runtime; empty means use the local database
    BACKEND_BASE_URL: str = os.getenv("BACKEND_BASE_URL", "")
    BACKEND_TIMEOUT_SECONDS: int = int(os.getenv("BACKEND_TIMEOUT_SECONDS", "10"))

    ALERT_POLL_INTERVAL_SECONDS: int = int(os.getenv("ALERT_POLL_INTERVAL_SECONDS", "5"))

    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ]
    CORS_EXTRA_ORIGINS: str = os.getenv("CORS_EXTRA_ORIGINS", "")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    VAPID_PRIVATE_KEY: str = os.getenv("VAPID_PRIVATE_KEY", "")
    VAPID_PUBLIC_KEY: str = os.getenv("VAPID_PUBLIC_KEY", "")
    VAPID_EMAIL: str = os.getenv("VAPID_EMAIL", "admin@atsight.app")


settings = Settings()
