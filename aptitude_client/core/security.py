import logging
from datetime import datetime, timezone
from typing import Dict, Optional

import jwt
from jwt.exceptions import PyJWTError

logger = logging.getLogger(__name__)


def token_expiry(token: str) -> Optional[datetime]:
    """Срок действия JWT токена (подпись не проверяем, это делает сервер)"""
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
    except PyJWTError:
        # Непрозрачный (не JWT) токен, срок неизвестен
        return None

    exp = payload.get("exp")
    if exp is None:
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)


class BearerTokenFallback:
    """
    Запасной путь авторизации через Bearer токен.

    Основной путь: cookie-сессия, которую HTTP клиент получил при входе.
    Если сервер ответил 401, запрос повторяется один раз с заголовком
    Authorization. Класс оставлен для совместимости на время перехода
    с токенов на cookie и удаляется вместе с этим путем.
    """

    def __init__(self, token: Optional[str] = None) -> None:
        self._token = token

    def sign_in(self, token: str) -> None:
        """Сохранить токен, полученный при входе"""
        self._token = token

    def sign_out(self) -> None:
        self._token = None

    @property
    def token(self) -> Optional[str]:
        return self._token

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if not self._token:
            return True
        expiry = token_expiry(self._token)
        if expiry is None:
            return False
        return expiry <= (now or datetime.now(timezone.utc))

    def headers(self) -> Dict[str, str]:
        """Заголовки для повторного запроса; пустой dict если токена нет"""
        if not self._token:
            return {}
        if self.is_expired():
            logger.info("Bearer token expired, skipping token fallback")
            return {}
        return {"Authorization": f"Bearer {self._token}"}
