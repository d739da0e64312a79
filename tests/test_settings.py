import json
import logging
import os

import pytest

from pagesmith.core import settings as settings_module
from pagesmith.core.env import load_env
from pagesmith.core.logging import JsonFormatter


def test_test_environment_defaults(tmp_path, monkeypatch):
    (tmp_path / "views").mkdir()
    monkeypatch.setenv("SITE_PATH", str(tmp_path))

    settings = settings_module.get_settings()

    assert settings.environment == "test"
    assert settings.dev is False
    assert settings.site_path == tmp_path.resolve()
    assert settings.views_path == tmp_path.resolve() / "views"
    assert settings.preprocessors_path.name == "preprocessors.py"
    assert settings.api_route == "/api"
    assert settings.worker_start_method == "spawn"
    assert settings.log_file.endswith("pagesmith.log")


def test_invalid_numbers_fall_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("SITE_PATH", str(tmp_path))
    monkeypatch.setenv("PORT", "not-a-port")
    monkeypatch.setenv("WORKER_POOL_SIZE", "0")
    monkeypatch.setenv("PAGE_TIMEOUT", "2.5")

    settings = settings_module.get_settings()

    assert settings.port == settings_module.DEFAULT_PORT
    assert settings.worker_pool_size == settings_module.DEFAULT_WORKER_POOL_SIZE
    assert settings.page_timeout == 2.5


@pytest.mark.parametrize(
    "raw, expected",
    [("_data", "/_data"), ("/v1/", "/v1"), ("/", "/api"), ("", "/api")],
)
def test_api_route_is_normalised(tmp_path, monkeypatch, raw, expected):
    monkeypatch.setenv("SITE_PATH", str(tmp_path))
    monkeypatch.setenv("API_ROUTE", raw)

    assert settings_module.get_settings().api_route == expected


def test_unknown_environment_means_production(tmp_path, monkeypatch):
    monkeypatch.setenv("SITE_PATH", str(tmp_path))
    monkeypatch.setenv("ENVIRONMENT", "qa")
    monkeypatch.delenv("METRICS_ENABLED")

    settings = settings_module.get_settings()

    assert settings.environment == "production"
    assert settings.metrics_enabled is False


def test_development_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("SITE_PATH", str(tmp_path))
    monkeypatch.setenv("ENVIRONMENT", "Development")

    assert settings_module.get_settings().dev is True


def test_load_env_keeps_shell_values(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# comment\n"
        "export PAGESMITH_TEST_A='from file'\n"
        "PAGESMITH_TEST_B=\"quoted\"\n"
        "not a pair\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("PAGESMITH_TEST_B", "from shell")
    monkeypatch.delenv("PAGESMITH_TEST_A", raising=False)

    load_env(env_file)

    assert os.environ["PAGESMITH_TEST_A"] == "from file"
    assert os.environ["PAGESMITH_TEST_B"] == "from shell"
    monkeypatch.delenv("PAGESMITH_TEST_A")


def test_json_formatter_includes_context_fields():
    record = logging.LogRecord(
        name="pagesmith.test",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="Error retrieving resource: %s",
        args=("boom",),
        exc_info=None,
    )
    record.resource_url = "https://api.example.com/x"
    record.view = "index.html"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["message"] == "Error retrieving resource: boom"
    assert payload["resource_url"] == "https://api.example.com/x"
    assert payload["view"] == "index.html"
    assert "route" not in payload


def test_cli_flags_override_environment(tmp_path, monkeypatch):
    from pagesmith.apps.site.main import apply_args, parse_args

    (tmp_path / "views").mkdir()
    for name in ("SITE_PATH", "PORT", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENVIRONMENT", "test")

    apply_args(parse_args(["--site", str(tmp_path), "--port", "9123", "--dev", "--log-level", "warning"]))
    settings = settings_module.get_settings()

    assert settings.site_path == tmp_path.resolve()
    assert settings.port == 9123
    assert settings.dev is True
    assert settings.log_level == "WARNING"
