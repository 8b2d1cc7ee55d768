from typing import List
import json

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "SwipeDeckRecommender"
    app_env: str = "dev"
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/app.db"

    # read raw string from env (works with comma-separated values)
    cors_origins: str = ""

    # empty token disables the admin endpoints entirely
    admin_token: str = ""

    ranker_mode: str = "two_stage"  # "two_stage" | "baseline"
    default_model_version: str = "two_stage_v2"

    candidate_window_days: int = 14
    top_genre_count: int = 5

    log_sample_rate: float = 1.0
    request_log_retention_days: int = 14
    # 0 keeps swipe history forever
    swipe_retention_days: int = 0

    # reranker knobs, defaults match the shipped blend
    rank_weight_pop: float = 0.45
    rank_weight_pref: float = 0.25
    rank_weight_cf: float = 0.25
    rank_trending_boost: float = 0.15
    rank_cf_reason_threshold: float = 0.25
    rank_pref_reason_threshold: float = 0.15
    rank_max_per_top_genre: int = 4

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s:
            return []
        if s.startswith("["):
            # also accept JSON list
            return [str(x) for x in json.loads(s)]
        return [part.strip() for part in s.split(",") if part.strip()]

    @property
    def candidate_window_ms(self) -> int:
        return self.candidate_window_days * 24 * 60 * 60 * 1000


settings = Settings()
