"""Exception taxonomy for the analysis pipeline.

Input and state errors subclass ValueError; HTTP handlers map them to 404 or
400. Upstream and persistence failures are retried by re-running the whole
orchestrator.
"""

from __future__ import annotations

from uuid import UUID


class AnalysisError(RuntimeError):
    """Base class for failures raised by the analysis pipeline."""


class ConversationNotFoundError(AnalysisError, ValueError):
    def __init__(self, conversation_id: UUID) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class MissingClusterModelsError(AnalysisError, ValueError):
    def __init__(self, conversation_id: UUID) -> None:
        super().__init__(
            f"No cluster models found for conversation {conversation_id} - run a full analysis first"
        )
        self.conversation_id = conversation_id


class EmbeddingGenerationError(AnalysisError):
    def __init__(self, message: str, *, batch_number: int | None = None) -> None:
        super().__init__(message)
        self.batch_number = batch_number


class PersistenceError(AnalysisError):
    def __init__(self, message: str, *, response_id: UUID | None = None) -> None:
        super().__init__(message)
        self.response_id = response_id
