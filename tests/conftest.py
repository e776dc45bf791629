import asyncio
from collections import deque
from typing import Any, Dict, List, Optional

import pytest

from aptitude_client.core.errors import ErrorKind, ScoringApiError
from aptitude_client.db.database import create_store_engine
from aptitude_client.schemas.aptitude_test import (
    AssessmentResults,
    Question,
    RecoverSessionResponse,
    StartSessionResponse,
    StatusResponse,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
)
from aptitude_client.services.progress_store import ProgressStore


def question_payload(question_id: str = "q1", type_: str = "multiple_choice", **extra) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "id": question_id,
        "type": type_,
        "text": f"Question {question_id}",
        "category": "interests",
    }
    if type_ == "multiple_choice":
        payload["options"] = ["Build things", "Help people", "Analyse data"]
    elif type_ == "rating":
        payload["scale"] = {"min": 1, "max": 5, "labels": ["Never", "Always"]}
        payload["category"] = "personality"
    elif type_ == "image_preference":
        payload["images"] = ["img-lab", "img-studio"]
    payload.update(extra)
    return payload


def results_payload(session_id: str = "s1", openness: float = 72.5) -> Dict[str, Any]:
    stream = {"score": 80, "subjects": ["Physics", "Mathematics"]}
    return {
        "userId": "u1",
        "sessionId": session_id,
        "completedAt": "2026-10-01T10:00:00Z",
        "personalityTraits": {
            "openness": openness,
            "conscientiousness": 64,
            "extraversion": 40,
            "agreeableness": 55,
            "neuroticism": 30,
        },
        "interests": {"stem": 85, "arts": 20, "business": 45, "social": 35, "practical": 60},
        "streamRecommendations": {
            "science": stream,
            "commerce": {"score": 50, "subjects": ["Accountancy"]},
            "arts": {"score": 25, "subjects": ["History"]},
            "vocational": {"score": 40, "subjects": []},
        },
        "careerPaths": [
            {
                "title": "Data Scientist",
                "stream": "science",
                "description": "Finds patterns in data",
                "requiredSubjects": ["Mathematics"],
                "averageSalary": {"min": 800000, "max": 2500000},
                "jobGrowth": 22,
                "matchScore": 91,
            }
        ],
    }


def make_question(question_id: str = "q1", type_: str = "multiple_choice", **extra) -> Question:
    return Question.model_validate(question_payload(question_id, type_, **extra))


def make_results(session_id: str = "s1", openness: float = 72.5) -> AssessmentResults:
    return AssessmentResults.model_validate(results_payload(session_id, openness))


class FakeScoringClient:
    """Шпион вместо ScoringClient: очереди ответов и журнал вызовов"""

    def __init__(self):
        self.calls: List[str] = []
        self.start_responses: deque = deque()
        self.answer_responses: deque = deque()
        self.submitted: List[SubmitAnswerRequest] = []
        self.status: Any = StatusResponse(completed=False)
        self.recovery: RecoverSessionResponse = RecoverSessionResponse(recovered=False)
        self.results_by_session: Dict[str, AssessmentResults] = {}
        self.history: List[AssessmentResults] = []
        self.submit_gate: Optional[asyncio.Event] = None
        self.status_gate: Optional[asyncio.Event] = None

    def count(self, name: str) -> int:
        return self.calls.count(name)

    @staticmethod
    def _unwrap(item):
        if isinstance(item, Exception):
            raise item
        return item

    async def start_session(self) -> StartSessionResponse:
        self.calls.append("start_session")
        return self._unwrap(self.start_responses.popleft())

    async def submit_answer(self, request: SubmitAnswerRequest) -> SubmitAnswerResponse:
        self.calls.append("submit_answer")
        self.submitted.append(request)
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        return self._unwrap(self.answer_responses.popleft())

    async def check_status(self) -> StatusResponse:
        self.calls.append("check_status")
        if self.status_gate is not None:
            await self.status_gate.wait()
        return self._unwrap(self.status)

    async def recover_session(self) -> RecoverSessionResponse:
        self.calls.append("recover_session")
        return self.recovery

    async def get_results(self, session_id: str) -> AssessmentResults:
        self.calls.append("get_results")
        if session_id not in self.results_by_session:
            raise ScoringApiError(ErrorKind.SESSION_NOT_FOUND, status=404)
        return self.results_by_session[session_id]

    async def get_history(self) -> List[AssessmentResults]:
        self.calls.append("get_history")
        return self._unwrap(self.history)

    def queue_start(self, session_id: str, first_question: Question) -> None:
        self.start_responses.append(StartSessionResponse(session_id=session_id, first_question=first_question))

    def queue_next(self, question: Question) -> None:
        self.answer_responses.append(SubmitAnswerResponse(next_question=question, is_complete=False))

    def queue_complete(self, results: AssessmentResults) -> None:
        self.answer_responses.append(SubmitAnswerResponse(is_complete=True, results=results))


@pytest.fixture
def fake_client() -> FakeScoringClient:
    return FakeScoringClient()


@pytest.fixture
async def store_engine(tmp_path):
    engine = create_store_engine(f"sqlite:///{tmp_path / 'store.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
async def store(store_engine) -> ProgressStore:
    progress_store = ProgressStore(store_engine)
    await progress_store.init()
    return progress_store
