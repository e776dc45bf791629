# aptitude_client/services/diagnostics_service.py
import logging
from typing import List

from aptitude_client.core.errors import ScoringApiError
from aptitude_client.schemas.diagnostics import DiagnosticStep
from aptitude_client.services.scoring_client import ScoringClient

logger = logging.getLogger(__name__)


class DiagnosticsService:
    """Проверка связи клиента с backend: куда стучимся и что отвечает"""

    @staticmethod
    async def _probe_endpoint(client: ScoringClient, step: str, path: str) -> DiagnosticStep:
        # 401 значит эндпоинт на месте, просто нужна авторизация
        try:
            status, _ = await client.probe(path)
        except ScoringApiError as e:
            return DiagnosticStep(step=step, success=False, error=e.detail, details={"path": path})

        if status < 400:
            note = "Endpoint working correctly"
        elif status == 401:
            note = "Endpoint available (auth required)"
        elif status == 404:
            note = "Endpoint not found"
        else:
            note = "Endpoint exists but has issues"

        return DiagnosticStep(
            step=step,
            success=status < 400 or status == 401,
            details={"path": path, "status": status, "note": note}
        )

    @staticmethod
    async def run_diagnostics(client: ScoringClient) -> List[DiagnosticStep]:
        steps = [
            DiagnosticStep(step="API URL Check", success=True, details={"url": client.base_url})
        ]

        try:
            status, _ = await client.probe("/", absolute=True)
            steps.append(DiagnosticStep(
                step="Basic Server Connection",
                success=status < 400,
                details={"url": client.base_url, "status": status}
            ))
        except ScoringApiError as e:
            steps.append(DiagnosticStep(
                step="Basic Server Connection",
                success=False,
                error=e.detail,
                details={"url": client.base_url}
            ))

        steps.append(await DiagnosticsService._probe_endpoint(client, "Test Status Endpoint Check", "/test/status"))
        steps.append(await DiagnosticsService._probe_endpoint(client, "Auth Endpoint Check", "/auth/me"))

        failed = [s.step for s in steps if not s.success]
        if failed:
            logger.warning(f"Diagnostics failed steps: {', '.join(failed)}")
        return steps
