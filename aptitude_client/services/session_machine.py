"""
Машина состояний адаптивного теста
aptitude_client/services/session_machine.py

Единственный источник правды о жизненном цикле сессии:
координирует ScoringClient и ProgressStore, отдает слою UI
небольшой набор команд (check_status, start_session, submit_answer,
reset_test, get_results, retry).

Состояния:
    idle -> loading -> not_started | in_progress | completed | error
Допустимые переходы описаны в TRANSITIONS, reset_test() разрешен всегда.
"""
import enum
import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from aptitude_client.core.config import settings
from aptitude_client.core.errors import (
    AnswerRejectedError,
    AptitudeTestError,
    ErrorKind,
    ScoringApiError,
    SessionStateError,
    unexpected_error,
)
from aptitude_client.schemas.aptitude_test import (
    Answer,
    AssessmentResults,
    Question,
    SessionProgress,
    SessionStatus,
    SubmitAnswerRequest,
)
from aptitude_client.services.progress_store import ProgressStore
from aptitude_client.services.scoring_client import ScoringClient

logger = logging.getLogger(__name__)


class FlowStatus(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


TRANSITIONS: Dict[FlowStatus, FrozenSet[FlowStatus]] = {
    FlowStatus.IDLE: frozenset({FlowStatus.LOADING}),
    FlowStatus.LOADING: frozenset({
        FlowStatus.NOT_STARTED,
        FlowStatus.IN_PROGRESS,
        FlowStatus.COMPLETED,
        FlowStatus.ERROR,
    }),
    FlowStatus.NOT_STARTED: frozenset({FlowStatus.LOADING}),
    FlowStatus.IN_PROGRESS: frozenset({
        FlowStatus.IN_PROGRESS,
        FlowStatus.LOADING,
        FlowStatus.COMPLETED,
        FlowStatus.ERROR,
    }),
    FlowStatus.COMPLETED: frozenset({FlowStatus.LOADING}),
    FlowStatus.ERROR: frozenset({FlowStatus.LOADING, FlowStatus.IDLE}),
}


@dataclass(frozen=True)
class ActiveSession:
    session_id: str
    current_question: Optional[Question]
    # 1-based: сколько вопросов показано, включая текущий
    question_count: int = 1
    answers: Tuple[Answer, ...] = ()
    status: SessionStatus = SessionStatus.ACTIVE

    def answered(self, question_id: str) -> bool:
        return any(a.question_id == question_id for a in self.answers)

    def to_progress(self) -> SessionProgress:
        return SessionProgress(
            session_id=self.session_id,
            answers=list(self.answers),
            current_question_index=self.question_count - 1
        )


@dataclass(frozen=True)
class FlowState:
    status: FlowStatus = FlowStatus.IDLE
    session: Optional[ActiveSession] = None
    results: Optional[AssessmentResults] = None
    error: Optional[AptitudeTestError] = None
    is_submitting: bool = False
    total_questions: int = 10

    @property
    def session_id(self) -> Optional[str]:
        return self.session.session_id if self.session else None

    @property
    def current_question(self) -> Optional[Question]:
        return self.session.current_question if self.session else None

    @property
    def question_count(self) -> int:
        return self.session.question_count if self.session else 0

    @property
    def answers(self) -> Tuple[Answer, ...]:
        return self.session.answers if self.session else ()

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error else None


StateListener = Callable[[FlowState], None]


class AptitudeSessionMachine:
    """Жизненный цикл одной попытки адаптивного теста"""

    def __init__(
            self,
            client: ScoringClient,
            store: ProgressStore,
            total_questions: Optional[int] = None
    ):
        self.client = client
        self.store = store
        self._total_questions = total_questions or settings.NOMINAL_TOTAL_QUESTIONS
        self._state = FlowState(total_questions=self._total_questions)
        self._listeners: List[StateListener] = []

    @property
    def state(self) -> FlowState:
        return self._state

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Подписка на смену состояния; возвращает функцию отписки"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ============ ПЕРЕХОДЫ ============

    def _set_state(self, new_state: FlowState) -> None:
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state)

    def _transition(self, status: FlowStatus, **changes) -> FlowState:
        current = self._state.status
        if status not in TRANSITIONS[current]:
            raise SessionStateError(f"Illegal transition {current.value} -> {status.value}")
        logger.debug(f"Test flow: {current.value} -> {status.value}")
        self._set_state(replace(self._state, status=status, **changes))
        return self._state

    def _fail(self, error: AptitudeTestError) -> None:
        self._transition(FlowStatus.ERROR, error=error, is_submitting=False)

    async def _enter_session(self, session: ActiveSession) -> None:
        """Переход в in_progress с автосохранением прогресса"""
        previous = self._state.session
        self._transition(FlowStatus.IN_PROGRESS, session=session, error=None, is_submitting=False)

        changed = (
            previous is None
            or previous.session_id != session.session_id
            or previous.current_question != session.current_question
        )
        if changed:
            await self.store.save_progress(session.to_progress())

    # ============ КОМАНДЫ ============

    async def check_status(self) -> FlowState:
        """
        Определить, где пользователь находится в тесте.

        Порядок: кэш результатов -> статус на сервере -> локальный прогресс
        + recover_session -> not_started. Ошибки не пробрасываются,
        проверка лишь подсказка и не должна мешать начать тест заново.
        Во время другой загрузки или отправки ответа возвращает текущее состояние.
        """
        if self._state.status is FlowStatus.LOADING or self._state.is_submitting:
            logger.debug(f"Status check skipped: flow is {self._state.status.value}")
            return self._state
        self._transition(FlowStatus.LOADING, error=None)
        await self._resolve_status()
        return self._state

    async def _resolve_status(self) -> None:
        try:
            if await self.store.has_completed_flag():
                cached = await self.store.load_cached_results()
                if cached is not None:
                    self._transition(FlowStatus.COMPLETED, results=cached, session=None)
                    return

            status = await self.client.check_status()
            if status.completed:
                results = status.results or await self._fetch_latest_results()
                if results is not None:
                    await self.store.save_results(results)
                await self.store.clear_progress()
                self._transition(FlowStatus.COMPLETED, results=results, session=None)
                return

            progress = await self.store.load_progress()
            if progress is not None:
                recovery = await self.client.recover_session()
                if recovery.recovered and recovery.current_question is not None:
                    if recovery.progress is not None:
                        answered = recovery.progress.questions_answered
                    else:
                        answered = len(progress.answers)
                    await self._enter_session(ActiveSession(
                        session_id=recovery.session_id or progress.session_id,
                        current_question=recovery.current_question,
                        question_count=answered + 1,
                        answers=tuple(progress.answers)
                    ))
                    logger.info(f"Recovered test session {self._state.session_id} at question {answered + 1}")
                    return

                logger.info(f"Session {progress.session_id} is not recoverable, dropping local progress")
                await self.store.clear_progress()

            self._transition(FlowStatus.NOT_STARTED, session=None)
        except Exception as e:
            logger.warning(f"Failed to check test status: {e!r}")
            self._set_state(replace(
                self._state,
                status=FlowStatus.NOT_STARTED,
                session=None,
                is_submitting=False
            ))

    async def _fetch_latest_results(self) -> Optional[AssessmentResults]:
        try:
            session_id = self._state.session_id
            if session_id:
                return await self.client.get_results(session_id)
            history = await self.client.get_history()
        except ScoringApiError as e:
            logger.warning(f"Failed to fetch results: {e!r}")
            return None
        if not history:
            return None
        return max(history, key=lambda r: r.completed_at)

    async def start_session(self, force_restart: bool = False) -> FlowState:
        """
        Начать тест.

        Без force_restart при активной сессии ничего не делает.
        С force_restart текущая сессия помечается брошенной и прогресс стирается.
        Пока результаты в кэше, новый тест не начать: сначала discard_results().
        """
        if self._state.status is FlowStatus.IN_PROGRESS and not force_restart:
            logger.info(f"Test session {self._state.session_id} already in progress")
            return self._state

        if self._state.results is not None or await self.store.load_cached_results() is not None:
            raise SessionStateError("Test already completed; discard cached results before retaking")

        previous = self._state.session
        if previous is not None and previous.status is SessionStatus.ACTIVE:
            logger.info(f"Abandoning test session {previous.session_id}")
            previous = replace(previous, status=SessionStatus.ABANDONED)
        self._transition(FlowStatus.LOADING, session=previous, error=None)
        if force_restart:
            await self.store.clear_progress()

        try:
            response = await self.client.start_session()
        except ScoringApiError as e:
            if e.kind is ErrorKind.ALREADY_COMPLETED:
                logger.info("Server reports the test as completed, reconciling status")
                await self._resolve_status()
                if self._state.status in (FlowStatus.COMPLETED, FlowStatus.IN_PROGRESS):
                    return self._state
                self._transition(FlowStatus.LOADING)
            self._fail(e)
            raise
        except Exception as e:
            error = unexpected_error(e)
            logger.error(f"Unexpected failure while starting test: {e!r}")
            self._fail(error)
            raise error from e

        await self._enter_session(ActiveSession(
            session_id=response.session_id,
            current_question=response.first_question,
            question_count=1
        ))
        logger.info(f"Started test session {response.session_id}")
        return self._state

    async def submit_answer(self, answer: Answer) -> FlowState:
        state = self._state
        session = state.session
        if state.status is not FlowStatus.IN_PROGRESS or session is None or session.current_question is None:
            raise SessionStateError("No active test session")
        if state.is_submitting:
            raise SessionStateError("An answer is already being submitted")

        question = session.current_question
        if answer.question_id != question.id:
            raise AnswerRejectedError(
                f"Answer is for question {answer.question_id}, current question is {question.id}",
                question_id=answer.question_id
            )
        if session.answered(question.id):
            raise AnswerRejectedError(f"Question {question.id} is already answered", question_id=question.id)
        if not question.accepts(answer.value):
            raise AnswerRejectedError(
                f"Value {answer.value!r} is not valid for {question.type.value} question {question.id}",
                question_id=question.id
            )

        self._set_state(replace(state, is_submitting=True))
        try:
            response = await self.client.submit_answer(SubmitAnswerRequest(
                session_id=session.session_id,
                question_id=question.id,
                answer=answer
            ))
        except ScoringApiError as e:
            self._fail(e)
            raise
        except Exception as e:
            error = unexpected_error(e)
            logger.error(f"Unexpected failure while submitting answer to {question.id}: {e!r}")
            self._fail(error)
            raise error from e

        answers = session.answers + (answer,)
        if response.is_complete:
            finished = replace(
                session,
                current_question=None,
                answers=answers,
                status=SessionStatus.COMPLETED
            )
            await self.store.save_results(response.results)
            await self.store.clear_progress()
            self._transition(
                FlowStatus.COMPLETED,
                session=finished,
                results=response.results,
                is_submitting=False
            )
            logger.info(f"Test session {session.session_id} completed after {len(answers)} answers")
        else:
            await self._enter_session(replace(
                session,
                current_question=response.next_question,
                question_count=session.question_count + 1,
                answers=answers
            ))
        return self._state

    def _blank_state(self) -> FlowState:
        return FlowState(total_questions=self._total_questions)

    async def reset_test(self) -> FlowState:
        """Сбросить сессию (память и сохраненный прогресс). Кэш результатов не трогаем"""
        if self._state.session is not None:
            logger.info(f"Resetting test session {self._state.session_id}")
        self._set_state(self._blank_state())
        await self.store.clear_progress()
        return self._state

    async def discard_results(self) -> None:
        """Стереть кэш результатов. Пересдача = reset_test() + discard_results()"""
        await self.store.clear_results()
        if self._state.results is not None:
            self._set_state(replace(self._state, results=None))

    async def get_results(self) -> Optional[AssessmentResults]:
        if self._state.results is not None:
            return self._state.results

        cached = await self.store.load_cached_results()
        if cached is not None:
            return cached

        results = await self._fetch_latest_results()
        if results is not None:
            await self.store.save_results(results)
        return results

    async def retry(self) -> FlowState:
        if self._state.status is FlowStatus.ERROR:
            return await self.check_status()
        return self._state

    def clear_error(self) -> FlowState:
        if self._state.status is FlowStatus.ERROR:
            self._transition(FlowStatus.IDLE, error=None)
        return self._state

    # ============ ДЛЯ UI ============

    @property
    def can_start_test(self) -> bool:
        return self._state.status in (FlowStatus.NOT_STARTED, FlowStatus.ERROR)

    @property
    def is_in_progress(self) -> bool:
        return self._state.status is FlowStatus.IN_PROGRESS

    @property
    def is_completed(self) -> bool:
        return self._state.status is FlowStatus.COMPLETED

    @property
    def progress_percentage(self) -> int:
        """Процент для прогресс-бара. total - оценка, поэтому обрезаем до 0..100"""
        if self._state.status is FlowStatus.COMPLETED:
            return 100
        total = self._state.total_questions
        if total <= 0:
            return 0
        return max(0, min(100, round(self._state.question_count / total * 100)))
