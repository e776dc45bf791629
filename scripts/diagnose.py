# scripts/diagnose.py
import asyncio
import logging

from aptitude_client.core.config import settings
from aptitude_client.services.diagnostics_service import DiagnosticsService
from aptitude_client.services.scoring_client import ScoringClient


async def diagnose():
    async with ScoringClient() as client:
        steps = await DiagnosticsService.run_diagnostics(client)

    for step in steps:
        mark = "✅" if step.success else "❌"
        print(f"{mark} {step.step}: {step.details}")
        if step.error:
            print(f"   {step.error}")


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    asyncio.run(diagnose())
