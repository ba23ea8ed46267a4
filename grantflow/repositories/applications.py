from __future__ import annotations

import re
import threading
from typing import Any

from grantflow.codec import dumps_application
from grantflow.db.postgres import PostgresTxRunner
from grantflow.models import ApplicationFile

_COLUMNS = (
    "id",
    "owner",
    "repo",
    "pr_number",
    "issue_number",
    "application",
    "updated_at",
    "sha",
    "path",
    "client_contract_address",
)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _key(row: dict[str, Any]) -> tuple[str, str, str, int]:
    return (str(row["id"]), str(row["owner"]), str(row["repo"]), int(row.get("pr_number") or 0))


def _normalize(row: dict[str, Any]) -> dict[str, Any]:
    item = {name: row.get(name) for name in _COLUMNS}
    item["pr_number"] = int(item["pr_number"] or 0)
    return item


class InMemoryApplicationsRepository:
    """Rows keyed by ``(id, owner, repo, pr_number)``; ``pr_number == 0`` is the merged partition."""

    def __init__(self, rows: dict[tuple[str, str, str, int], dict[str, Any]] | None = None) -> None:
        self._rows = rows if rows is not None else {}
        self._lock = threading.RLock()

    def get(
        self,
        *,
        application_id: str,
        owner: str,
        repo: str,
        pr_number: int | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            if pr_number is not None:
                row = self._rows.get((application_id, owner, repo, pr_number))
                return dict(row) if row is not None else None
            matches = [
                row
                for key, row in self._rows.items()
                if key[0] == application_id and key[1] == owner and key[2] == repo
            ]
            if not matches:
                return None
            return dict(max(matches, key=lambda x: int(x["pr_number"])))

    def list_active(self, *, owner: str, repo: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(row)
                for key, row in self._rows.items()
                if key[1] == owner and key[2] == repo and key[3] != 0
            ]

    def list_merged(self, *, owner: str, repo: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(row)
                for key, row in self._rows.items()
                if key[1] == owner and key[2] == repo and key[3] == 0
            ]

    def create(self, *, row: dict[str, Any]) -> dict[str, Any]:
        item = _normalize(row)
        with self._lock:
            self._rows[_key(item)] = item
        return dict(item)

    def update(self, *, row: dict[str, Any]) -> bool:
        item = _normalize(row)
        with self._lock:
            if _key(item) not in self._rows:
                return False
            self._rows[_key(item)] = item
        return True

    def delete(self, *, application_id: str, owner: str, repo: str, pr_number: int) -> bool:
        with self._lock:
            return self._rows.pop((application_id, owner, repo, pr_number), None) is not None

    def promote(self, *, row: dict[str, Any], from_pr_number: int) -> dict[str, Any]:
        """Move an active row into the merged partition."""
        item = _normalize({**row, "pr_number": 0})
        with self._lock:
            self._rows.pop((item["id"], item["owner"], item["repo"], from_pr_number), None)
            self._rows[_key(item)] = item
        return dict(item)


class PostgresApplicationsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "applications") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def _select(self, where: str, params: tuple[Any, ...], *, order: str = "") -> list[dict[str, Any]]:
        sql = f"""
            SELECT {", ".join(_COLUMNS)}
            FROM {self._table_name}
            WHERE {where}
            {order}
        """

        def _op(conn: Any) -> list[dict[str, Any]]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [_normalize(dict(zip(_COLUMNS, row))) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def get(
        self,
        *,
        application_id: str,
        owner: str,
        repo: str,
        pr_number: int | None = None,
    ) -> dict[str, Any] | None:
        if pr_number is None:
            rows = self._select(
                "id = %s AND owner = %s AND repo = %s",
                (application_id, owner, repo),
                order="ORDER BY pr_number DESC LIMIT 1",
            )
        else:
            rows = self._select(
                "id = %s AND owner = %s AND repo = %s AND pr_number = %s",
                (application_id, owner, repo, pr_number),
                order="LIMIT 1",
            )
        return rows[0] if rows else None

    def list_active(self, *, owner: str, repo: str) -> list[dict[str, Any]]:
        return self._select("owner = %s AND repo = %s AND pr_number <> 0", (owner, repo), order="ORDER BY id")

    def list_merged(self, *, owner: str, repo: str) -> list[dict[str, Any]]:
        return self._select("owner = %s AND repo = %s AND pr_number = 0", (owner, repo), order="ORDER BY id")

    def _upsert_sql(self) -> str:
        return f"""
            INSERT INTO {self._table_name} ({", ".join(_COLUMNS)})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT(id, owner, repo, pr_number) DO UPDATE SET
                issue_number = EXCLUDED.issue_number,
                application = EXCLUDED.application,
                updated_at = EXCLUDED.updated_at,
                sha = EXCLUDED.sha,
                path = EXCLUDED.path,
                client_contract_address = EXCLUDED.client_contract_address
        """

    def create(self, *, row: dict[str, Any]) -> dict[str, Any]:
        item = _normalize(row)
        sql = self._upsert_sql()

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(item[name] for name in _COLUMNS))
            return item

        return self._tx_runner.run_in_tx(fn=_op)

    def update(self, *, row: dict[str, Any]) -> bool:
        item = _normalize(row)
        sql = f"""
            UPDATE {self._table_name}
            SET issue_number = %s, application = %s, updated_at = %s, sha = %s, path = %s,
                client_contract_address = %s
            WHERE id = %s AND owner = %s AND repo = %s AND pr_number = %s
        """
        params = (
            item["issue_number"],
            item["application"],
            item["updated_at"],
            item["sha"],
            item["path"],
            item["client_contract_address"],
            item["id"],
            item["owner"],
            item["repo"],
            item["pr_number"],
        )

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return cur.rowcount > 0

        return self._tx_runner.run_in_tx(fn=_op)

    def delete(self, *, application_id: str, owner: str, repo: str, pr_number: int) -> bool:
        sql = f"DELETE FROM {self._table_name} WHERE id = %s AND owner = %s AND repo = %s AND pr_number = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (application_id, owner, repo, pr_number))
                return cur.rowcount > 0

        return self._tx_runner.run_in_tx(fn=_op)

    def promote(self, *, row: dict[str, Any], from_pr_number: int) -> dict[str, Any]:
        """Move an active row into the merged partition in one transaction."""
        item = _normalize({**row, "pr_number": 0})
        delete_sql = f"DELETE FROM {self._table_name} WHERE id = %s AND owner = %s AND repo = %s AND pr_number = %s"
        upsert_sql = self._upsert_sql()

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(delete_sql, (item["id"], item["owner"], item["repo"], from_pr_number))
                cur.execute(upsert_sql, tuple(item[name] for name in _COLUMNS))
            return item

        return self._tx_runner.run_in_tx(fn=_op)


def application_row(
    *,
    app: ApplicationFile,
    owner: str,
    repo: str,
    pr_number: int,
    sha: str,
    path: str,
    updated_at: str,
) -> dict[str, Any]:
    return {
        "id": app.id,
        "owner": owner,
        "repo": repo,
        "pr_number": pr_number,
        "issue_number": _issue_number_or_none(app.issue_number),
        "application": dumps_application(app),
        "updated_at": updated_at,
        "sha": sha,
        "path": path,
        "client_contract_address": app.client_contract_address,
    }


def _issue_number_or_none(raw: str) -> int | None:
    try:
        return int(str(raw).strip())
    except ValueError:
        return None
