from pydantic import BaseModel
from typing import Optional, Dict, Any


class DiagnosticStep(BaseModel):
    step: str
    success: bool
    error: Optional[str] = None
    details: Dict[str, Any] = {}
