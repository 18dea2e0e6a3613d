"""Tests for patchwarden.core.config settings loading and overrides."""

from __future__ import annotations

import os
from unittest.mock import patch

from patchwarden.core.config import Settings, get_settings


class TestSettings:
    """Verify settings defaults and environment overrides."""

    def test_default_app_env(self):
        s = Settings(_env_file=None)
        assert s.app_env == "development"

    def test_chunking_defaults(self):
        s = Settings(_env_file=None)
        assert s.chunk_max_size == 1500
        assert s.chunk_overlap == 200
        assert s.max_context_size == 400_000

    def test_llm_defaults(self):
        s = Settings(_env_file=None)
        assert "claude" in s.generation_llm_model
        assert "claude" in s.review_llm_model
        assert s.fallback_llm_model == "gpt-4o"
        assert s.generation_temperature == 0.3
        assert s.review_temperature == 0.4
        assert s.analysis_temperature == 0.2

    def test_scoring_defaults(self):
        s = Settings(_env_file=None)
        assert s.template_confidence == 0.9
        assert s.llm_candidate_confidence == 0.8
        assert s.score_syntax_pass == 1.1
        assert s.score_syntax_fail == 0.5
        assert s.score_strategy_bonus == 1.05
        assert s.score_functionality_bonus == 1.1

    def test_review_defaults(self):
        s = Settings(_env_file=None)
        assert s.peer_reject_below == 6.0
        assert s.peer_clean_approve_at == 8.0
        assert s.peer_clean_max_issues == 3
        assert s.expert_min_security_score == 7
        assert s.review_max_retries == 2

    def test_scanner_defaults(self):
        s = Settings(_env_file=None)
        assert ".py" in s.scan_extensions
        assert ".java" in s.scan_extensions
        assert ".git" in s.scan_ignored_dirs
        assert "node_modules" in s.scan_ignored_dirs
        assert s.worker_pool_size >= 1

    def test_env_override(self):
        env = {"PATCHWARDEN_CHUNK_MAX_SIZE": "800", "PATCHWARDEN_REVIEW_MAX_RETRIES": "5"}
        with patch.dict(os.environ, env):
            s = Settings(_env_file=None)
        assert s.chunk_max_size == 800
        assert s.review_max_retries == 5

    def test_init_kwargs_override(self):
        s = Settings(_env_file=None, worker_pool_size=2, embedding_dimension=768)
        assert s.worker_pool_size == 2
        assert s.embedding_dimension == 768


class TestGetSettings:
    def test_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
