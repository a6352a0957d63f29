"""config モジュールのユニットテスト."""

import pytest

from k4k_collector.config import load_config
from k4k_collector.errors import ConfigError

CREDENTIALS = {"DATAFORSEO_LOGIN": "login", "DATAFORSEO_PASSWORD": "secret"}


class TestLoadConfig:
    """load_config のテスト."""

    def test_defaults(self):
        config = load_config(dict(CREDENTIALS))

        assert config.market == "us"
        assert config.default_language_code == "en"
        assert config.default_location_code == "2840"
        assert config.max_terms_per_task == 20
        assert config.device == "desktop"
        assert config.search_partners is False
        assert config.batch_max_seeds == 5000
        assert config.concurrency_task_post == 20
        assert config.poll_interval == 4.0
        assert config.poll_timeout == 900.0
        assert config.poll_strategy == "direct"
        assert config.dry_run is False
        assert config.log_level == "info"

    def test_overrides(self):
        config = load_config({
            **CREDENTIALS,
            "LEXYHUB_MARKET": "jp",
            "K4K_MAX_TERMS_PER_TASK": "5",
            "K4K_DEVICE": "Mobile",
            "K4K_SEARCH_PARTNERS": "true",
            "POLL_INTERVAL_MS": "2500",
            "POLL_STRATEGY": "ready",
            "DRY_RUN": "1",
            "LOG_LEVEL": "WARN",
        })

        assert config.market == "jp"
        assert config.max_terms_per_task == 5
        assert config.device == "mobile"
        assert config.search_partners is True
        assert config.poll_interval == 2.5
        assert config.poll_strategy == "ready"
        assert config.dry_run is True
        assert config.log_level == "warning"

    @pytest.mark.parametrize("missing", ["DATAFORSEO_LOGIN", "DATAFORSEO_PASSWORD"])
    def test_missing_credentials(self, missing):
        env = dict(CREDENTIALS)
        del env[missing]
        with pytest.raises(ConfigError):
            load_config(env)

    @pytest.mark.parametrize("name,value", [
        ("K4K_MAX_TERMS_PER_TASK", "0"),
        ("K4K_MAX_TERMS_PER_TASK", "21"),
        ("CONCURRENCY_TASK_POST", "51"),
        ("POLL_INTERVAL_MS", "500"),
        ("POLL_TIMEOUT_MS", "abc"),
        ("K4K_DEVICE", "watch"),
        ("POLL_STRATEGY", "webhook"),
        ("LOG_LEVEL", "trace"),
    ])
    def test_invalid_values(self, name, value):
        with pytest.raises(ConfigError):
            load_config({**CREDENTIALS, name: value})
