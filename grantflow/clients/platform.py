"""Hosting-platform clients: the canonical store for application documents."""

from __future__ import annotations

import base64
import hashlib
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Callable

import requests

from grantflow.errors import CollaboratorFailure

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class RepoFile:
    path: str
    sha: str
    content: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    head_ref: str
    state: str = "open"
    title: str = ""
    body: str = ""
    updated_at: str = ""


class HostingPlatform:
    """Operations the workflow needs from one owner/repo on the hosting platform."""

    base_branch = "main"

    def get_file(self, path: str, ref: str) -> RepoFile | None:
        raise NotImplementedError

    def create_file(self, *, path: str, message: str, content: str, branch: str) -> str:
        raise NotImplementedError

    def update_file_content(self, *, path: str, message: str, content: str, branch: str, sha: str) -> str:
        raise NotImplementedError

    def list_files(self, folder: str, ref: str) -> list[str]:
        raise NotImplementedError

    def get_last_modification_date(self, path: str, ref: str) -> str:
        """ISO timestamp of the last commit touching ``path``; empty when unknown."""
        raise NotImplementedError

    def create_branch(self, branch: str, from_ref: str) -> None:
        raise NotImplementedError

    def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> PullRequest:
        raise NotImplementedError

    def get_pull_request(self, number: int) -> PullRequest | None:
        raise NotImplementedError

    def get_pull_request_by_head(self, branch: str) -> PullRequest | None:
        raise NotImplementedError

    def list_pull_requests(self) -> list[PullRequest]:
        raise NotImplementedError

    def list_pull_request_files(self, number: int) -> list[str]:
        raise NotImplementedError

    def merge_pull_request(self, number: int) -> None:
        raise NotImplementedError

    def close_pull_request(self, number: int) -> None:
        raise NotImplementedError

    def close_issue(self, number: int) -> None:
        raise NotImplementedError

    def add_comment_to_issue(self, number: int, text: str) -> None:
        raise NotImplementedError

    def replace_issue_labels(self, number: int, labels: list[str]) -> None:
        raise NotImplementedError

    def add_issue_labels(self, number: int, labels: list[str]) -> None:
        raise NotImplementedError


PlatformFactory = Callable[[str, str], HostingPlatform]


class GithubPlatform(HostingPlatform):
    def __init__(
        self,
        *,
        owner: str,
        repo: str,
        token: str,
        api_base: str = "https://api.github.com",
        base_branch: str = "main",
        timeout_s: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.base_branch = base_branch
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout_s = timeout_s
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _repo_url(self, suffix: str) -> str:
        return f"{self._api_base}/repos/{self.owner}/{self.repo}/{suffix.lstrip('/')}"

    def _request(
        self,
        method: str,
        suffix: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> Any:
        url = self._repo_url(suffix)
        try:
            resp = self._session.request(
                method,
                url,
                headers=self._headers(),
                params=params,
                json=payload,
                timeout=self._timeout_s,
            )
        except requests.RequestException as exc:
            logger.warning("github_request_failed method=%s url=%s error=%s", method, url, exc)
            raise CollaboratorFailure(
                code="GITHUB_REQUEST_FAILED",
                message=f"github request failed: {method} {suffix}",
            ) from exc
        if resp.status_code == 404 and allow_404:
            return None
        if resp.status_code == 409:
            raise CollaboratorFailure(
                code="GITHUB_SHA_CONFLICT",
                message=f"github rejected a stale write: {method} {suffix}",
                http_status=409,
            )
        if resp.status_code >= 400:
            logger.warning("github_request_rejected method=%s url=%s status=%s", method, url, resp.status_code)
            raise CollaboratorFailure(
                code="GITHUB_REQUEST_FAILED",
                message=f"github returned {resp.status_code} for {method} {suffix}",
            )
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _quote(path: str) -> str:
        return requests.utils.quote(path, safe="/")

    @staticmethod
    def _to_pull_request(data: dict[str, Any]) -> PullRequest:
        return PullRequest(
            number=int(data["number"]),
            head_ref=str((data.get("head") or {}).get("ref", "")),
            state=str(data.get("state", "open")),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            updated_at=str(data.get("updated_at") or ""),
        )

    def get_file(self, path: str, ref: str) -> RepoFile | None:
        data = self._request("GET", f"contents/{self._quote(path)}", params={"ref": ref}, allow_404=True)
        if not isinstance(data, dict) or data.get("type") != "file":
            return None
        raw = str(data.get("content") or "").replace("\n", "")
        content = base64.b64decode(raw.encode("ascii")).decode("utf-8", errors="replace")
        return RepoFile(path=path, sha=str(data["sha"]), content=content)

    def _put_contents(self, *, path: str, message: str, content: str, branch: str, sha: str | None) -> str:
        payload: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        if sha is not None:
            payload["sha"] = sha
        data = self._request("PUT", f"contents/{self._quote(path)}", payload=payload)
        return str(((data or {}).get("content") or {}).get("sha", ""))

    def create_file(self, *, path: str, message: str, content: str, branch: str) -> str:
        return self._put_contents(path=path, message=message, content=content, branch=branch, sha=None)

    def update_file_content(self, *, path: str, message: str, content: str, branch: str, sha: str) -> str:
        return self._put_contents(path=path, message=message, content=content, branch=branch, sha=sha)

    def list_files(self, folder: str, ref: str) -> list[str]:
        data = self._request("GET", f"contents/{self._quote(folder)}", params={"ref": ref}, allow_404=True)
        if not isinstance(data, list):
            return []
        return [str(item["path"]) for item in data if item.get("type") == "file"]

    def get_last_modification_date(self, path: str, ref: str) -> str:
        data = self._request("GET", "commits", params={"path": path, "sha": ref, "per_page": 1})
        if isinstance(data, list) and data:
            author = ((data[0].get("commit") or {}).get("committer") or {})
            if author.get("date"):
                return str(author["date"])
        return ""

    def create_branch(self, branch: str, from_ref: str) -> None:
        data = self._request("GET", f"git/ref/heads/{from_ref}")
        base_sha = str(((data or {}).get("object") or {}).get("sha", ""))
        self._request("POST", "git/refs", payload={"ref": f"refs/heads/{branch}", "sha": base_sha})

    def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> PullRequest:
        data = self._request("POST", "pulls", payload={"title": title, "body": body, "head": head, "base": base})
        return self._to_pull_request(data)

    def get_pull_request(self, number: int) -> PullRequest | None:
        data = self._request("GET", f"pulls/{number}", allow_404=True)
        if data is None:
            return None
        return self._to_pull_request(data)

    def get_pull_request_by_head(self, branch: str) -> PullRequest | None:
        data = self._request("GET", "pulls", params={"state": "open", "head": f"{self.owner}:{branch}"})
        if not data:
            return None
        return self._to_pull_request(data[0])

    def list_pull_requests(self) -> list[PullRequest]:
        items: list[PullRequest] = []
        page = 1
        while True:
            chunk = self._request("GET", "pulls", params={"state": "open", "per_page": 100, "page": page})
            if not chunk:
                break
            items.extend(self._to_pull_request(x) for x in chunk)
            page += 1
        return items

    def list_pull_request_files(self, number: int) -> list[str]:
        data = self._request("GET", f"pulls/{number}/files", params={"per_page": 100})
        return [str(item["filename"]) for item in data or [] if item.get("status") != "removed"]

    def merge_pull_request(self, number: int) -> None:
        self._request("PUT", f"pulls/{number}/merge", payload={"merge_method": "squash"})

    def close_pull_request(self, number: int) -> None:
        self._request("PATCH", f"pulls/{number}", payload={"state": "closed"})

    def close_issue(self, number: int) -> None:
        self._request("PATCH", f"issues/{number}", payload={"state": "closed", "state_reason": "not_planned"})

    def add_comment_to_issue(self, number: int, text: str) -> None:
        self._request("POST", f"issues/{number}/comments", payload={"body": text})

    def replace_issue_labels(self, number: int, labels: list[str]) -> None:
        self._request("PUT", f"issues/{number}/labels", payload={"labels": list(labels)})

    def add_issue_labels(self, number: int, labels: list[str]) -> None:
        self._request("POST", f"issues/{number}/labels", payload={"labels": list(labels)})


@dataclass
class _Issue:
    state: str = "open"
    labels: list[str] = field(default_factory=list)
    comments: list[str] = field(default_factory=list)


class InMemoryPlatform(HostingPlatform):
    """Process-local stand-in for one repository, used in tests and local runs."""

    def __init__(self, *, base_branch: str = "main") -> None:
        self.base_branch = base_branch
        self._lock = threading.RLock()
        self._branches: dict[str, dict[str, RepoFile]] = {base_branch: {}}
        self._modified_at: dict[tuple[str, str], str] = {}
        self._pulls: dict[int, PullRequest] = {}
        self._issues: dict[int, _Issue] = {}
        self._next_number = 1
        self.calls: list[str] = []

    @staticmethod
    def _sha(content: str) -> str:
        return hashlib.sha1(content.encode("utf-8")).hexdigest()

    def _write(self, *, path: str, content: str, branch: str) -> str:
        files = self._branches.get(branch)
        if files is None:
            raise CollaboratorFailure(code="GITHUB_REQUEST_FAILED", message=f"branch {branch} does not exist")
        sha = self._sha(content)
        files[path] = RepoFile(path=path, sha=sha, content=content)
        self._modified_at[(branch, path)] = _now_iso()
        return sha

    def issue(self, number: int) -> _Issue:
        with self._lock:
            return self._issues.setdefault(number, _Issue())

    def get_file(self, path: str, ref: str) -> RepoFile | None:
        with self._lock:
            self.calls.append("get_file")
            return self._branches.get(ref, {}).get(path)

    def create_file(self, *, path: str, message: str, content: str, branch: str) -> str:
        with self._lock:
            self.calls.append("create_file")
            if path in self._branches.get(branch, {}):
                raise CollaboratorFailure(
                    code="GITHUB_REQUEST_FAILED",
                    message=f"{path} already exists on {branch}",
                    http_status=422,
                )
            return self._write(path=path, content=content, branch=branch)

    def update_file_content(self, *, path: str, message: str, content: str, branch: str, sha: str) -> str:
        with self._lock:
            self.calls.append("update_file_content")
            current = self._branches.get(branch, {}).get(path)
            if current is None or current.sha != sha:
                raise CollaboratorFailure(
                    code="GITHUB_SHA_CONFLICT",
                    message=f"{path} on {branch} does not match sha {sha}",
                    http_status=409,
                )
            return self._write(path=path, content=content, branch=branch)

    def list_files(self, folder: str, ref: str) -> list[str]:
        with self._lock:
            prefix = folder.rstrip("/") + "/"
            return sorted(path for path in self._branches.get(ref, {}) if path.startswith(prefix))

    def get_last_modification_date(self, path: str, ref: str) -> str:
        with self._lock:
            return self._modified_at.get((ref, path), "")

    def set_last_modification_date(self, path: str, ref: str, value: str) -> None:
        with self._lock:
            self._modified_at[(ref, path)] = value

    def create_branch(self, branch: str, from_ref: str) -> None:
        with self._lock:
            self.calls.append("create_branch")
            if branch in self._branches:
                raise CollaboratorFailure(
                    code="GITHUB_REQUEST_FAILED",
                    message=f"branch {branch} already exists",
                    http_status=422,
                )
            source = self._branches.get(from_ref, {})
            self._branches[branch] = dict(source)
            for path in source:
                self._modified_at[(branch, path)] = self._modified_at.get((from_ref, path), _now_iso())

    def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> PullRequest:
        with self._lock:
            self.calls.append("create_pull_request")
            number = self._next_number
            self._next_number += 1
            pull = PullRequest(number=number, head_ref=head, title=title, body=body, updated_at=_now_iso())
            self._pulls[number] = pull
            return pull

    def get_pull_request(self, number: int) -> PullRequest | None:
        with self._lock:
            return self._pulls.get(number)

    def get_pull_request_by_head(self, branch: str) -> PullRequest | None:
        with self._lock:
            for pull in self._pulls.values():
                if pull.head_ref == branch and pull.state == "open":
                    return pull
            return None

    def list_pull_requests(self) -> list[PullRequest]:
        with self._lock:
            return [x for x in self._pulls.values() if x.state == "open"]

    def list_pull_request_files(self, number: int) -> list[str]:
        with self._lock:
            pull = self._pulls.get(number)
            if pull is None:
                return []
            head = self._branches.get(pull.head_ref, {})
            base = self._branches.get(self.base_branch, {})
            return sorted(path for path, item in head.items() if base.get(path) != item)

    def merge_pull_request(self, number: int) -> None:
        with self._lock:
            self.calls.append("merge_pull_request")
            pull = self._pulls.get(number)
            if pull is None or pull.state != "open":
                raise CollaboratorFailure(code="GITHUB_REQUEST_FAILED", message=f"pull request {number} is not open")
            for path, item in self._branches.get(pull.head_ref, {}).items():
                self._branches[self.base_branch][path] = item
                self._modified_at[(self.base_branch, path)] = _now_iso()
            self._pulls[number] = replace(pull, state="merged", updated_at=_now_iso())

    def close_pull_request(self, number: int) -> None:
        with self._lock:
            self.calls.append("close_pull_request")
            pull = self._pulls.get(number)
            if pull is not None:
                self._pulls[number] = replace(pull, state="closed", updated_at=_now_iso())

    def close_issue(self, number: int) -> None:
        self.issue(number).state = "closed"

    def add_comment_to_issue(self, number: int, text: str) -> None:
        self.issue(number).comments.append(text)

    def replace_issue_labels(self, number: int, labels: list[str]) -> None:
        self.issue(number).labels = list(labels)

    def add_issue_labels(self, number: int, labels: list[str]) -> None:
        issue = self.issue(number)
        for label in labels:
            if label not in issue.labels:
                issue.labels.append(label)


class InMemoryPlatformRegistry:
    """Hands out one ``InMemoryPlatform`` per owner/repo."""

    def __init__(self, *, base_branch: str = "main") -> None:
        self._base_branch = base_branch
        self._platforms: dict[tuple[str, str], InMemoryPlatform] = {}
        self._lock = threading.Lock()

    def __call__(self, owner: str, repo: str) -> InMemoryPlatform:
        with self._lock:
            key = (owner, repo)
            if key not in self._platforms:
                self._platforms[key] = InMemoryPlatform(base_branch=self._base_branch)
            return self._platforms[key]


def github_platform_factory(
    *,
    token: str,
    api_base: str,
    base_branch: str,
    timeout_s: float,
) -> PlatformFactory:
    session = requests.Session()

    def _factory(owner: str, repo: str) -> HostingPlatform:
        return GithubPlatform(
            owner=owner,
            repo=repo,
            token=token,
            api_base=api_base,
            base_branch=base_branch,
            timeout_s=timeout_s,
            session=session,
        )

    return _factory
