from __future__ import annotations

import logging
from typing import Any

import requests

from grantflow.errors import CollaboratorFailure

logger = logging.getLogger(__name__)


class BlockchainClient:
    def get_multisig_threshold_for_actor(self, address: str) -> int:
        raise NotImplementedError

    def get_allowance_for_address(self, address: str) -> str:
        raise NotImplementedError


def _failure(message: str) -> CollaboratorFailure:
    return CollaboratorFailure(code="BLOCKCHAIN_REQUEST_FAILED", message=message)


class FilecoinBlockchainClient(BlockchainClient):
    """Reads multisig state over Lotus JSON-RPC and allowances from the DMOB API."""

    def __init__(
        self,
        *,
        rpc_url: str,
        dmob_api_base: str,
        dmob_api_key: str = "",
        timeout_s: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._dmob_api_base = dmob_api_base.rstrip("/")
        self._dmob_api_key = dmob_api_key
        self._timeout_s = timeout_s
        self._session = session or requests.Session()

    def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": 1}
        try:
            resp = self._session.post(self._rpc_url, json=payload, timeout=self._timeout_s)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("blockchain_rpc_failed method=%s error=%s", method, exc)
            raise _failure(f"rpc call {method} failed") from exc
        if not isinstance(body, dict) or body.get("error"):
            raise _failure(f"rpc call {method} returned an error")
        return body.get("result")

    def get_multisig_threshold_for_actor(self, address: str) -> int:
        result = self._rpc("Filecoin.StateReadState", [address, None])
        try:
            return int(result["State"]["NumApprovalsThreshold"])
        except (KeyError, TypeError, ValueError) as exc:
            raise _failure(f"no approval threshold in state of {address}") from exc

    def get_allowance_for_address(self, address: str) -> str:
        url = f"{self._dmob_api_base}/getAllowanceForAddress/{address}"
        headers = {"X-api-key": self._dmob_api_key} if self._dmob_api_key else {}
        try:
            resp = self._session.get(url, headers=headers, timeout=self._timeout_s)
            resp.raise_for_status()
            body = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("allowance_lookup_failed address=%s error=%s", address, exc)
            raise _failure(f"allowance lookup for {address} failed") from exc
        if not isinstance(body, dict) or body.get("type") == "error":
            message = body.get("message") if isinstance(body, dict) else None
            raise _failure(f"allowance lookup for {address} failed: {message or 'unexpected response'}")
        return str(body.get("allowance", "0"))


class StaticBlockchain(BlockchainClient):
    """Answers from in-process tables; an address missing from a table counts as an RPC failure."""

    def __init__(
        self,
        *,
        thresholds: dict[str, int] | None = None,
        allowances: dict[str, str] | None = None,
    ) -> None:
        self.thresholds = dict(thresholds or {})
        self.allowances = dict(allowances or {})

    def get_multisig_threshold_for_actor(self, address: str) -> int:
        if address not in self.thresholds:
            raise _failure(f"no multisig state for {address}")
        return self.thresholds[address]

    def get_allowance_for_address(self, address: str) -> str:
        if address not in self.allowances:
            raise _failure(f"no allowance for {address}")
        return self.allowances[address]
