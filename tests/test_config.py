"""Tests for environment-driven settings."""

from unittest.mock import patch

from newswire.config import Settings


def test_defaults():
    s = Settings()
    assert s.serpapi_quota == 100
    assert s.mediastack_quota == 500
    assert s.fetch_timeout_seconds == 10.0
    assert s.pipeline_categories == ["technology", "business", "science"]
    assert s.pipeline_limit == 50
    assert s.dedup_near_threshold == 0.85
    assert s.dedup_similar_threshold == 0.70


def test_from_env_reads_overrides():
    env = {
        "SERPAPI_API_KEY": "serp",
        "MEDIASTACK_QUOTA": "42",
        "FETCH_TIMEOUT_SECONDS": "2.5",
        "PIPELINE_CATEGORIES": "science, health ,,",
        "PIPELINE_LIMIT": "10",
        "STATE_DIR": "/tmp/state",
        "LOG_LEVEL": "DEBUG",
    }
    with patch.dict("os.environ", env, clear=True):
        s = Settings.from_env()
    assert s.serpapi_api_key == "serp"
    assert s.mediastack_api_key == ""
    assert s.mediastack_quota == 42
    assert s.fetch_timeout_seconds == 2.5
    assert s.pipeline_categories == ["science", "health"]
    assert s.pipeline_limit == 10
    assert s.state_dir == "/tmp/state"
    assert s.log_level == "DEBUG"


def test_from_env_empty_environment_matches_defaults():
    with patch.dict("os.environ", {}, clear=True):
        assert Settings.from_env() == Settings()
