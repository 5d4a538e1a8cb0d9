"""Convenience exports for API schemas.

Re-exports the pydantic models used across the backend so consumers can import from one module.
"""

from .analysis import (
    AnalysisStatusResponse,
    ThemeResource,
    TriggerAnalysisRequest,
    TriggerAnalysisResponse,
)

__all__ = [
    "AnalysisStatusResponse",
    "ThemeResource",
    "TriggerAnalysisRequest",
    "TriggerAnalysisResponse",
]
