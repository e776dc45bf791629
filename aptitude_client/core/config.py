import os
import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import model_validator

logger = logging.getLogger(__name__)

# config.py лежит в /aptitude_client/core/, поднимаемся на 2 уровня вверх к корню проекта
current_file_dir = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.dirname(os.path.dirname(current_file_dir))
ENV_PATH = os.path.join(ROOT_DIR, ".env")


class Settings(BaseSettings):
    # Scoring backend
    API_BASE_URL: str = "http://localhost:3000"
    API_PREFIX: str = "/api"
    REQUEST_TIMEOUT_SECONDS: float = 10.0

    # Повторы для идемпотентных запросов (результаты, история)
    MAX_RETRIES: int = 3
    RETRY_DELAY_SECONDS: float = 1.0

    # Оценка для прогресс-бара, сервер сам решает когда тест закончен
    NOMINAL_TOTAL_QUESTIONS: int = 10

    # Локальное хранилище прогресса
    STORE_DATABASE_URL: str | None = None
    STORE_NAMESPACE: str | None = None

    # Bearer токен (запасной путь авторизации)
    AUTH_TOKEN: str | None = None

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=ENV_PATH,
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @model_validator(mode='after')
    def normalize_urls(self):
        self.API_BASE_URL = self.API_BASE_URL.rstrip("/")
        if self.API_PREFIX and not self.API_PREFIX.startswith("/"):
            self.API_PREFIX = "/" + self.API_PREFIX
        self.API_PREFIX = self.API_PREFIX.rstrip("/")

        # 1. Путь к базе не задан, кладем файл в корень проекта
        if not self.STORE_DATABASE_URL:
            db_path = os.path.join(ROOT_DIR, "aptitude_store.db")
            self.STORE_DATABASE_URL = f"sqlite+aiosqlite:///{db_path}"
            return self

        # 2. Обычный sqlite URL переводим на асинхронный драйвер
        if self.STORE_DATABASE_URL.startswith("sqlite://"):
            self.STORE_DATABASE_URL = self.STORE_DATABASE_URL.replace("sqlite://", "sqlite+aiosqlite://", 1)
            logger.debug("Config: STORE_DATABASE_URL переведен на aiosqlite")

        return self


settings = Settings()
