"""Convenience exports for ORM models.

Surface frequently used SQLModel classes so calling code can import them from a single module.
"""

from .conversation import Conversation
from .response import ConversationResponse
from .embedding import ResponseEmbedding
from .cluster_model import ClusterModel
from .theme import ConversationTheme
from .consolidation import ClusterBucket, ClusterBucketMember, UnconsolidatedResponse
from .response_group import ResponseGroup, ResponseGroupMember
from .analysis_job import AnalysisJob, AnalysisJobStatus

__all__ = [
    "Conversation",
    "ConversationResponse",
    "ResponseEmbedding",
    "ClusterModel",
    "ConversationTheme",
    "ClusterBucket",
    "ClusterBucketMember",
    "UnconsolidatedResponse",
    "ResponseGroup",
    "ResponseGroupMember",
    "AnalysisJob",
    "AnalysisJobStatus",
]
