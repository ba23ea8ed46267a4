from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any

from grantflow.db.postgres import PostgresTxRunner
from grantflow.models import Allocator
from grantflow.repositories.applications import _validate_identifier


class InMemoryAllocatorsRepository:
    def __init__(self, allocators: dict[tuple[str, str], Allocator] | None = None) -> None:
        self._allocators = allocators if allocators is not None else {}
        self._lock = threading.Lock()

    def get(self, *, owner: str, repo: str) -> Allocator | None:
        with self._lock:
            return self._allocators.get((owner, repo))

    def list(self) -> list[Allocator]:
        with self._lock:
            return list(self._allocators.values())

    def upsert(self, *, allocator: Allocator) -> Allocator:
        with self._lock:
            self._allocators[(allocator.owner, allocator.repo)] = allocator
        return allocator

    def update_threshold(self, *, owner: str, repo: str, value: int) -> bool:
        with self._lock:
            current = self._allocators.get((owner, repo))
            if current is None:
                return False
            self._allocators[(owner, repo)] = replace(current, multisig_threshold=value)
            return True


class PostgresAllocatorsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "allocators") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    @staticmethod
    def _from_row(row: Any) -> Allocator:
        return Allocator(
            owner=row[0],
            repo=row[1],
            multisig_address=row[2] or "",
            multisig_threshold=row[3],
            verifiers_gh_handles=row[4] or "",
            address=row[5],
        )

    def get(self, *, owner: str, repo: str) -> Allocator | None:
        sql = f"""
            SELECT owner, repo, multisig_address, multisig_threshold, verifiers_gh_handles, address
            FROM {self._table_name}
            WHERE owner = %s AND repo = %s
            LIMIT 1
        """

        def _op(conn: Any) -> Allocator | None:
            with conn.cursor() as cur:
                cur.execute(sql, (owner, repo))
                row = cur.fetchone()
            return self._from_row(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def list(self) -> list[Allocator]:
        sql = f"""
            SELECT owner, repo, multisig_address, multisig_threshold, verifiers_gh_handles, address
            FROM {self._table_name}
            ORDER BY owner, repo
        """

        def _op(conn: Any) -> list[Allocator]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return [self._from_row(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def upsert(self, *, allocator: Allocator) -> Allocator:
        sql = f"""
            INSERT INTO {self._table_name} (
                owner, repo, multisig_address, multisig_threshold, verifiers_gh_handles, address
            ) VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT(owner, repo) DO UPDATE SET
                multisig_address = EXCLUDED.multisig_address,
                multisig_threshold = EXCLUDED.multisig_threshold,
                verifiers_gh_handles = EXCLUDED.verifiers_gh_handles,
                address = EXCLUDED.address
        """

        def _op(conn: Any) -> Allocator:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        allocator.owner,
                        allocator.repo,
                        allocator.multisig_address,
                        allocator.multisig_threshold,
                        allocator.verifiers_gh_handles,
                        allocator.address,
                    ),
                )
            return allocator

        return self._tx_runner.run_in_tx(fn=_op)

    def update_threshold(self, *, owner: str, repo: str, value: int) -> bool:
        sql = f"UPDATE {self._table_name} SET multisig_threshold = %s WHERE owner = %s AND repo = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (value, owner, repo))
                return cur.rowcount > 0

        return self._tx_runner.run_in_tx(fn=_op)
