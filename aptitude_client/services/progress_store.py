"""
Локальное хранилище прогресса теста
aptitude_client/services/progress_store.py

Хранит:
- незавершенную сессию (для восстановления после падения/перезапуска)
- итоговые результаты и флаг завершения теста

Запись best-effort: ошибки логируются и не пробрасываются.
Чтение: отсутствующие, битые или недоступные данные -> None.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from aptitude_client.db.database import engine as default_engine, create_session_factory, init_db
from aptitude_client.db.models import StoreEntry
from aptitude_client.schemas.aptitude_test import (
    AssessmentResults,
    CachedResults,
    SessionProgress,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

PROGRESS_KEY = "test_progress"
RESULTS_KEY = "test_results"
COMPLETED_KEY = "test_completed"


class ProgressStore:
    """Key/value хранилище поверх SQLAlchemy (SQLite на устройстве)"""

    def __init__(
            self,
            engine: AsyncEngine = default_engine,
            namespace: Optional[str] = None
    ):
        self.engine = engine
        self.session_factory = create_session_factory(engine)
        self.namespace = namespace

    async def init(self) -> None:
        await init_db(self.engine)

    def _key(self, name: str) -> str:
        return f"{self.namespace}:{name}" if self.namespace else name

    # ============ НИЗКОУРОВНЕВЫЕ ОПЕРАЦИИ ============

    async def _write(self, name: str, value: str) -> bool:
        key = self._key(name)
        try:
            async with self.session_factory() as db:
                await db.merge(StoreEntry(key=key, value=value, updated_at=datetime.now(timezone.utc)))
                await db.commit()
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Failed to write '{key}' to local store: {e}")
            return False

    async def _read(self, name: str) -> Optional[str]:
        key = self._key(name)
        try:
            async with self.session_factory() as db:
                entry = await db.get(StoreEntry, key)
                return entry.value if entry else None
        except SQLAlchemyError as e:
            logger.warning(f"Failed to read '{key}' from local store: {e}")
            return None

    async def _delete(self, name: str) -> None:
        key = self._key(name)
        try:
            async with self.session_factory() as db:
                await db.execute(delete(StoreEntry).where(StoreEntry.key == key))
                await db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to delete '{key}' from local store: {e}")

    async def _save_model(self, name: str, model: BaseModel) -> bool:
        try:
            payload = model.model_dump_json(by_alias=True)
        except ValueError as e:
            logger.warning(f"Failed to serialize '{name}': {e}")
            return False
        return await self._write(name, payload)

    async def _load_model(self, name: str, model_cls: Type[M]) -> Optional[M]:
        raw = await self._read(name)
        if raw is None:
            return None
        try:
            return model_cls.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Corrupt '{name}' entry in local store, ignoring: {e.error_count()} errors")
            return None

    # ============ ПРОГРЕСС ============

    async def save_progress(self, progress: SessionProgress) -> None:
        """Перезаписать сохраненный прогресс"""
        await self._save_model(PROGRESS_KEY, progress)

    async def load_progress(self) -> Optional[SessionProgress]:
        return await self._load_model(PROGRESS_KEY, SessionProgress)

    async def clear_progress(self) -> None:
        await self._delete(PROGRESS_KEY)

    # ============ РЕЗУЛЬТАТЫ ============

    async def save_results(self, results: AssessmentResults) -> None:
        """Кэшировать результаты и выставить флаг завершения"""
        cached = CachedResults(results=results, synced=True)
        if await self._save_model(RESULTS_KEY, cached):
            await self._write(COMPLETED_KEY, json.dumps(True))

    async def load_cached_results(self) -> Optional[AssessmentResults]:
        cached = await self._load_model(RESULTS_KEY, CachedResults)
        return cached.results if cached else None

    async def clear_results(self) -> None:
        await self._delete(RESULTS_KEY)
        await self._delete(COMPLETED_KEY)

    async def has_completed_flag(self) -> bool:
        raw = await self._read(COMPLETED_KEY)
        if raw is None:
            return False
        try:
            return json.loads(raw) is True
        except json.JSONDecodeError:
            return False
