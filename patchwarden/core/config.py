"""Core configuration for the PatchWarden engine."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PATCHWARDEN_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "PatchWarden"
    app_env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # ── LLM ──────────────────────────────────────────────────────────────
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    generation_llm_model: str = "claude-sonnet-4-20250514"
    review_llm_model: str = "claude-haiku-4-20250514"
    fallback_llm_model: str = "gpt-4o"
    generation_temperature: float = 0.3
    review_temperature: float = 0.4
    analysis_temperature: float = 0.2
    llm_max_tokens: int = 8192
    llm_max_retries: int = 3
    llm_retry_base_delay: float = 1.0
    llm_timeout_seconds: float = 120.0

    # ── Embeddings ───────────────────────────────────────────────────────
    embedding_base_url: str = "http://localhost:11434"
    embedding_model: str = "nomic-embed-text"
    embedding_dimension: int = 0  # 0 = accept whatever the service returns
    embedding_timeout_seconds: float = 30.0
    embedding_max_input: int = 6000

    # ── Chunking / context ───────────────────────────────────────────────
    chunk_max_size: int = 1500
    chunk_overlap: int = 200
    max_context_size: int = 400_000
    related_context_limit: int = 10

    # ── Scanner ──────────────────────────────────────────────────────────
    scan_batch_size: int = 100
    scan_max_file_size_mb: int = 50
    scan_progress_interval: int = 100
    scan_extensions: list[str] = Field(
        default_factory=lambda: [
            ".java", ".py", ".js", ".ts", ".jsx", ".tsx", ".cpp", ".c", ".h", ".hpp",
            ".kt", ".sql", ".rb", ".go", ".rs", ".swift", ".php", ".cs", ".scala",
            ".xml", ".json", ".yaml", ".yml", ".properties", ".gradle", ".pom",
        ]
    )
    scan_ignored_dirs: list[str] = Field(
        default_factory=lambda: [
            ".git", "node_modules", "__pycache__", ".venv", "venv",
            "dist", "build", "target", ".tox", ".mypy_cache",
        ]
    )

    # ── Worker pool ──────────────────────────────────────────────────────
    worker_pool_size: int = Field(default_factory=lambda: os.cpu_count() or 4)

    # ── Fix generation ───────────────────────────────────────────────────
    template_confidence: float = 0.9
    llm_candidate_confidence: float = 0.8
    score_size_divisor: float = 1000.0
    score_max_size_penalty: float = 0.5
    score_syntax_pass: float = 1.1
    score_syntax_fail: float = 0.5
    score_strategy_bonus: float = 1.05
    score_functionality_bonus: float = 1.1
    fix_diff_margin: int = 10
    fix_context_window: int = 20

    # ── Review workflow ──────────────────────────────────────────────────
    peer_reject_below: float = 6.0
    peer_clean_approve_at: float = 8.0
    peer_clean_max_issues: int = 3
    expert_min_security_score: int = 7
    review_max_retries: int = 2


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
