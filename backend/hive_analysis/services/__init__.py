"""Service layer exports.

Expose the OpenAIService, AnalysisService, and job helpers for easy importing.
"""

from .openai_client import OpenAIService
from .analysis import AnalysisService
from .repository import AnalysisRepository
from .state import AnalysisState, AnalysisStatus
from .jobs import choose_strategy, claim_job, enqueue_analysis, run_job, run_pending_jobs

__all__ = [
    "OpenAIService",
    "AnalysisService",
    "AnalysisRepository",
    "AnalysisState",
    "AnalysisStatus",
    "choose_strategy",
    "claim_job",
    "enqueue_analysis",
    "run_job",
    "run_pending_jobs",
]
