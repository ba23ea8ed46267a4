from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class Settings:
    github_token: str
    github_api_base: str
    base_branch: str
    applications_folder: str
    glif_node_url: str
    dmob_api_base: str
    dmob_api_key: str
    default_multisig_threshold: int
    http_timeout_s: float
    cache_backend: str
    postgres_dsn: str

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            github_token=env.get("GITHUB_TOKEN", "").strip(),
            github_api_base=env.get("GITHUB_API_BASE", "https://api.github.com").strip().rstrip("/")
            or "https://api.github.com",
            base_branch=env.get("GITHUB_BASE_BRANCH", "main").strip() or "main",
            applications_folder=env.get("APPLICATIONS_FOLDER", "applications").strip().strip("/") or "applications",
            glif_node_url=env.get("GLIF_NODE_URL", "https://api.node.glif.io/rpc/v1").strip(),
            dmob_api_base=env.get("DMOB_API_BASE", "https://api.datacapstats.io/public/api").strip().rstrip("/"),
            dmob_api_key=env.get("DMOB_API_KEY", "").strip(),
            default_multisig_threshold=_env_int(env, "DEFAULT_MULTISIG_THRESHOLD", default=2, minimum=1),
            http_timeout_s=_env_float(env, "HTTP_TIMEOUT_S", default=30.0, minimum=0.1),
            cache_backend=env.get("GRANTFLOW_CACHE_BACKEND", "memory").strip().lower() or "memory",
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
        )
