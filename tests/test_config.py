"""
Settings validation and auth configuration checks.
"""

import pytest
from pydantic import ValidationError

from flowtrack.api.deps import validate_auth_config
from flowtrack.config import Environment, Settings, settings


def test_defaults():
    config = Settings(_env_file=None, database_url="sqlite+aiosqlite://")

    assert config.index_prefix == "flowtrack"
    assert config.mirror_max_retries == 2
    assert config.index_request_timeout_ms == 2000
    assert config.index_configured is False


@pytest.mark.parametrize(
    "url",
    ["postgresql+asyncpg://u:p@db/flowtrack", "postgresql://u:p@db/flowtrack", "sqlite+aiosqlite:///flow.db"],
)
def test_accepted_database_urls(url):
    assert Settings(_env_file=None, database_url=url).database_url == url


def test_rejects_unsupported_database_url():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, database_url="mysql://u:p@db/flowtrack")


def test_elasticsearch_url_from_either_env_name(monkeypatch):
    monkeypatch.delenv("FLOWTRACK_ELASTICSEARCH_URL", raising=False)
    monkeypatch.setenv("ELASTICSEARCH_URL", "https://search.internal:9243/")

    config = Settings(_env_file=None)

    assert config.elasticsearch_url == "https://search.internal:9243"
    assert config.index_configured is True


def test_rejects_non_http_elasticsearch_url(monkeypatch):
    monkeypatch.setenv("FLOWTRACK_ELASTICSEARCH_URL", "tcp://search:9300")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


@pytest.mark.parametrize("port", [0, 70000])
def test_rejects_out_of_range_port(port):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, port=port)


def test_rejects_empty_mirror_queue():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, mirror_queue_size=0)


def test_insecure_dev_outside_development_refuses_to_start(monkeypatch):
    monkeypatch.setattr(settings, "allow_insecure_dev", True)
    monkeypatch.setattr(settings, "env", Environment.PRODUCTION)

    with pytest.raises(RuntimeError):
        validate_auth_config()


def test_missing_api_key_refuses_to_start(monkeypatch):
    monkeypatch.setattr(settings, "allow_insecure_dev", False)
    monkeypatch.setattr(settings, "api_key", None)

    with pytest.raises(RuntimeError):
        validate_auth_config()

    monkeypatch.setattr(settings, "api_key", "shared-secret")
    validate_auth_config()
