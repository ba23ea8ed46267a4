from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from grantflow.errors import CollaboratorFailure

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS applications (
      id TEXT NOT NULL,
      owner TEXT NOT NULL,
      repo TEXT NOT NULL,
      pr_number BIGINT NOT NULL DEFAULT 0,
      issue_number BIGINT,
      application TEXT,
      updated_at TEXT NOT NULL,
      sha TEXT,
      path TEXT,
      client_contract_address TEXT,
      PRIMARY KEY (id, owner, repo, pr_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS allocators (
      owner TEXT NOT NULL,
      repo TEXT NOT NULL,
      multisig_address TEXT,
      multisig_threshold INTEGER,
      verifiers_gh_handles TEXT,
      address TEXT,
      PRIMARY KEY (owner, repo)
    )
    """,
)


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        try:
            with psycopg.connect(self._dsn) as conn:
                result = fn(conn)
                conn.commit()
                return result
        except psycopg.Error as exc:
            logger.warning("cache_query_failed error=%s", exc)
            raise CollaboratorFailure(code="CACHE_REQUEST_FAILED", message="cache query failed") from exc

    def ensure_schema(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)

        self.run_in_tx(fn=_op)
