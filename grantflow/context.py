from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from grantflow.clients.blockchain import BlockchainClient, FilecoinBlockchainClient, StaticBlockchain
from grantflow.clients.platform import (
    HostingPlatform,
    InMemoryPlatformRegistry,
    PlatformFactory,
    github_platform_factory,
)
from grantflow.config import Settings
from grantflow.db.postgres import PostgresTxRunner
from grantflow.repositories import (
    InMemoryAllocatorsRepository,
    InMemoryApplicationsRepository,
    PostgresAllocatorsRepository,
    PostgresApplicationsRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class WorkflowContext:
    """Collaborators for one running service, passed into every workflow operation."""

    settings: Settings
    platforms: PlatformFactory
    applications: Any
    allocators: Any
    blockchain: BlockchainClient

    def platform(self, owner: str, repo: str) -> HostingPlatform:
        return self.platforms(owner, repo)

    def document_path(self, application_id: str) -> str:
        return f"{self.settings.applications_folder}/{application_id}.json"


def build_in_memory_context(settings: Settings | None = None) -> WorkflowContext:
    settings = settings or Settings.from_env({})
    return WorkflowContext(
        settings=settings,
        platforms=InMemoryPlatformRegistry(base_branch=settings.base_branch),
        applications=InMemoryApplicationsRepository(),
        allocators=InMemoryAllocatorsRepository(),
        blockchain=StaticBlockchain(),
    )


def build_context_from_env(environ: Mapping[str, str] | None = None) -> WorkflowContext:
    env = os.environ if environ is None else environ
    settings = Settings.from_env(env)
    backend = settings.cache_backend
    if backend == "memory":
        applications: Any = InMemoryApplicationsRepository()
        allocators: Any = InMemoryAllocatorsRepository()
    elif backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when GRANTFLOW_CACHE_BACKEND=postgres")
        tx_runner = PostgresTxRunner(settings.postgres_dsn)
        applications = PostgresApplicationsRepository(tx_runner=tx_runner)
        allocators = PostgresAllocatorsRepository(tx_runner=tx_runner)
    else:
        raise RuntimeError(f"unsupported GRANTFLOW_CACHE_BACKEND: {backend}")

    if settings.github_token:
        platforms: PlatformFactory = github_platform_factory(
            token=settings.github_token,
            api_base=settings.github_api_base,
            base_branch=settings.base_branch,
            timeout_s=settings.http_timeout_s,
        )
    else:
        logger.warning("github_token_missing using in-memory hosting platform")
        platforms = InMemoryPlatformRegistry(base_branch=settings.base_branch)

    blockchain = FilecoinBlockchainClient(
        rpc_url=settings.glif_node_url,
        dmob_api_base=settings.dmob_api_base,
        dmob_api_key=settings.dmob_api_key,
        timeout_s=settings.http_timeout_s,
    )
    logger.info("workflow_context_built cache_backend=%s base_branch=%s", backend, settings.base_branch)
    return WorkflowContext(
        settings=settings,
        platforms=platforms,
        applications=applications,
        allocators=allocators,
        blockchain=blockchain,
    )
