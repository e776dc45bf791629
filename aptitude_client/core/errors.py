# aptitude_client/core/errors.py
import enum
from typing import Any, Optional


class ErrorKind(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    SESSION_NOT_FOUND = "session_not_found"
    ALREADY_COMPLETED = "already_completed"
    INVALID_REQUEST = "invalid_request"
    INVALID_ANSWER = "invalid_answer"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    NETWORK_UNAVAILABLE = "network_unavailable"


# Сообщения для пользователя
ERROR_MESSAGES = {
    ErrorKind.UNAUTHENTICATED: "Please log in to continue",
    ErrorKind.FORBIDDEN: "You don't have permission to access this feature",
    ErrorKind.SESSION_NOT_FOUND: "Test session not found",
    ErrorKind.ALREADY_COMPLETED: "You have already completed the aptitude test",
    ErrorKind.INVALID_REQUEST: "Invalid request. Please try again",
    ErrorKind.INVALID_ANSWER: "This answer is not valid for the current question",
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait and try again",
    ErrorKind.SERVER_ERROR: "Server error. Please try again later",
    ErrorKind.NETWORK_UNAVAILABLE: (
        "Cannot connect to server. Please check if the backend is running "
        "and your network connection"
    ),
}

RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK_UNAVAILABLE,
    ErrorKind.SERVER_ERROR,
    ErrorKind.RATE_LIMITED,
})

ALREADY_COMPLETED_MARKER = "already completed"


class AptitudeTestError(Exception):
    """Базовая ошибка клиента теста"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ScoringApiError(AptitudeTestError):
    """
    Ошибка обращения к scoring backend.

    Хранит вид ошибки (ErrorKind), сообщение для пользователя,
    HTTP статус (если ответ был) и исходную деталь для логов.
    """

    def __init__(
            self,
            kind: ErrorKind,
            message: Optional[str] = None,
            status: Optional[int] = None,
            detail: Optional[str] = None
    ):
        super().__init__(message or ERROR_MESSAGES[kind])
        self.kind = kind
        self.status = status
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def requires_sign_in(self) -> bool:
        return self.kind is ErrorKind.UNAUTHENTICATED

    def __repr__(self) -> str:
        return f"ScoringApiError(kind={self.kind.value!r}, status={self.status!r}, detail={self.detail!r})"


class SessionStateError(AptitudeTestError):
    """Команда недопустима в текущем состоянии сессии"""


class AnswerRejectedError(AptitudeTestError):
    """Ответ отклонен локально, до сетевого запроса"""

    def __init__(self, message: str, question_id: Optional[str] = None):
        super().__init__(message)
        self.question_id = question_id


def extract_detail(body: Any) -> Optional[str]:
    """Достает текст ошибки из тела ответа сервера"""
    if isinstance(body, dict):
        for field in ("error", "message", "detail"):
            value = body.get(field)
            if value:
                return str(value)
        return None
    if body:
        return str(body)
    return None


def map_http_error(
        status: int,
        body: Any = None,
        bad_request_kind: ErrorKind = ErrorKind.INVALID_REQUEST
) -> ScoringApiError:
    """
    HTTP статус -> ScoringApiError

    400 с текстом "already completed" -> ALREADY_COMPLETED,
    остальные 400 -> bad_request_kind (INVALID_ANSWER при отправке ответа).
    """
    detail = extract_detail(body)

    if status == 401:
        kind = ErrorKind.UNAUTHENTICATED
    elif status == 403:
        kind = ErrorKind.FORBIDDEN
    elif status == 404:
        kind = ErrorKind.SESSION_NOT_FOUND
    elif status == 400:
        if detail and ALREADY_COMPLETED_MARKER in detail.lower():
            kind = ErrorKind.ALREADY_COMPLETED
        else:
            kind = bad_request_kind
    elif status == 429:
        kind = ErrorKind.RATE_LIMITED
    elif status >= 500:
        kind = ErrorKind.SERVER_ERROR
    else:
        kind = ErrorKind.INVALID_REQUEST

    return ScoringApiError(kind, status=status, detail=detail)


def network_error(exc: BaseException) -> ScoringApiError:
    return ScoringApiError(
        ErrorKind.NETWORK_UNAVAILABLE,
        detail=f"Network error: {str(exc) or type(exc).__name__}"
    )


def unexpected_error(exc: BaseException) -> ScoringApiError:
    """Любой сбой вне ScoringApiError посреди запроса: для UI это ошибка сервера"""
    if isinstance(exc, ScoringApiError):
        return exc
    return ScoringApiError(ErrorKind.SERVER_ERROR, detail=repr(exc))
