from __future__ import annotations

import pytest

from grantflow.clients.blockchain import FilecoinBlockchainClient
from grantflow.clients.platform import GithubPlatform, InMemoryPlatform
from grantflow.config import Settings
from grantflow.context import build_context_from_env
from grantflow.repositories import PostgresAllocatorsRepository, PostgresApplicationsRepository


def test_settings_defaults():
    settings = Settings.from_env({})
    assert settings.base_branch == "main"
    assert settings.applications_folder == "applications"
    assert settings.default_multisig_threshold == 2
    assert settings.http_timeout_s == 30.0
    assert settings.cache_backend == "memory"
    assert settings.github_api_base == "https://api.github.com"


def test_settings_ignore_invalid_numbers_and_clamp():
    settings = Settings.from_env(
        {
            "DEFAULT_MULTISIG_THRESHOLD": "0",
            "HTTP_TIMEOUT_S": "soon",
            "APPLICATIONS_FOLDER": "/apps/",
            "GRANTFLOW_CACHE_BACKEND": " Postgres ",
        }
    )
    assert settings.default_multisig_threshold == 1
    assert settings.http_timeout_s == 30.0
    assert settings.applications_folder == "apps"
    assert settings.cache_backend == "postgres"


def test_context_uses_in_memory_platform_without_token():
    ctx = build_context_from_env({})
    assert isinstance(ctx.platform("filplus", "applications"), InMemoryPlatform)
    assert ctx.platform("filplus", "applications") is ctx.platform("filplus", "applications")
    assert isinstance(ctx.blockchain, FilecoinBlockchainClient)
    assert ctx.document_path("app-1") == "applications/app-1.json"


def test_context_uses_github_with_token():
    ctx = build_context_from_env({"GITHUB_TOKEN": "tkn", "GITHUB_BASE_BRANCH": "develop"})
    platform = ctx.platform("filplus", "applications")
    assert isinstance(platform, GithubPlatform)
    assert platform.base_branch == "develop"


def test_context_postgres_backend_requires_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        build_context_from_env({"GRANTFLOW_CACHE_BACKEND": "postgres"})

    ctx = build_context_from_env(
        {"GRANTFLOW_CACHE_BACKEND": "postgres", "POSTGRES_DSN": "postgresql://localhost/grantflow"}
    )
    assert isinstance(ctx.applications, PostgresApplicationsRepository)
    assert isinstance(ctx.allocators, PostgresAllocatorsRepository)


def test_context_rejects_unknown_backend():
    with pytest.raises(RuntimeError, match="unsupported GRANTFLOW_CACHE_BACKEND"):
        build_context_from_env({"GRANTFLOW_CACHE_BACKEND": "redis"})
