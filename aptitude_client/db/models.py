from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, DateTime
from aptitude_client.db.database import Base


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StoreEntry(Base):
    """Запись key/value локального хранилища (прогресс, результаты, флаги)"""
    __tablename__ = "store_entries"

    key = Column(String, primary_key=True)
    # JSON строкой: битые данные читаются как "нет записи", а не падают на уровне БД
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)
