"""Runtime configuration helpers.

Classes:
    Settings: Pydantic settings model capturing environment-driven defaults.

Functions:
    get_settings(): Return a cached Settings instance for dependency injection.
"""

from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Hive Conversation Analysis API"
    database_url: str = "sqlite+aiosqlite:///./data/hive_analysis.db"
    openai_api_key: SecretStr | None = None
    openai_chat_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    openai_embedding_fallback_model: str = "text-embedding-3-large"
    embedding_batch_size: int = 100
    min_clusters_small: int = 3
    min_clusters_large: int = 5
    small_population_max: int = 40
    min_forced_cluster_size: int = 2
    outlier_z_threshold: float = 3.5
    outlier_min_cluster_size: int = 6
    outlier_max_ratio: float = 0.20
    kmeans_seed: int = 42
    kmeans_max_clusters: int | None = None
    kmeans_min_cluster_size: int | None = None
    umap_n_neighbors: int = 15
    umap_min_dist: float = 0.1
    umap_metric: str = "cosine"
    umap_seed: int = 42
    umap_min_points: int = 10
    theme_sample_size: int = 20
    persist_batch_size: int = 100
    spread_radius_padding: float = 1.1
    spread_radius_floor: float = 0.1
    misc_jitter_radius: float = 0.5
    grouping_similarity_threshold: float = 0.80
    grouping_min_group_size: int = 2
    grouping_algorithm_version: str = "v1.1"
    consolidation_max_responses: int = 50
    consolidation_prompt_version: str = "v2.1"
    enable_consolidation: bool = True
    analysis_min_responses: int = 20
    incremental_threshold: int = 10
    job_lock_ttl_seconds: int = 900
    job_max_attempts: int = 3


@lru_cache()
def get_settings() -> Settings:
    return Settings()
