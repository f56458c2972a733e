"""GitHub REST API adapter for the version-control host interface.

Change requests map to pull requests (the change request id is the pull
request number), CI status maps to the check runs of the pull request's
head commit, and branch deletion maps to deleting the git ref.

Every request uses an httpx client with an explicit timeout. Non-success
responses are turned into TransientExternalError or PermanentExternalError
so callers can decide whether to retry.
"""

from __future__ import annotations

from typing import Any

import httpx

from releasegate.config import GitHubConfig, MergeStrategy
from releasegate.errors import PermanentExternalError, PermanentFailureKind
from releasegate.logging import get_logger
from releasegate.orchestrator.ci_monitor import (
    CheckConclusion,
    CheckRun,
    CheckStatus,
    CIStatusSnapshot,
)
from releasegate.orchestrator.retry import classify_error, error_for_response
from releasegate.orchestrator.state_machine import (
    ChangeRequest,
    ChangeRequestSpec,
    ChangeRequestState,
)

_STATUS_MAP: dict[str, CheckStatus] = {
    "queued": CheckStatus.PENDING,
    "pending": CheckStatus.PENDING,
    "waiting": CheckStatus.PENDING,
    "requested": CheckStatus.PENDING,
    "in_progress": CheckStatus.RUNNING,
    "completed": CheckStatus.DONE,
}

_CONCLUSION_MAP: dict[str, CheckConclusion] = {
    "success": CheckConclusion.SUCCESS,
    "failure": CheckConclusion.FAILURE,
    "timed_out": CheckConclusion.FAILURE,
    "action_required": CheckConclusion.FAILURE,
    "cancelled": CheckConclusion.FAILURE,
    "startup_failure": CheckConclusion.FAILURE,
    "stale": CheckConclusion.FAILURE,
    "neutral": CheckConclusion.NEUTRAL,
    "skipped": CheckConclusion.NEUTRAL,
}


class GitHubHost:
    """Version-control host backed by the GitHub REST API.

    Args:
        config: GitHub connection settings.
        client: Optional pre-built httpx client (tests inject one).
    """

    def __init__(self, config: GitHubConfig, client: httpx.AsyncClient | None = None) -> None:
        if not config.owner or not config.repo:
            raise ValueError("GitHub owner and repo must be configured")
        self.config = config
        self.logger = get_logger(__name__).bind(
            component="GitHubHost", repository=f"{config.owner}/{config.repo}"
        )
        self._client = client

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.config.owner}/{self.config.repo}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
            if self.config.token is not None:
                headers["Authorization"] = f"Bearer {self.config.token.get_secret_value()}"
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and return the response, raising classified errors."""
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise classify_error(e, operation) from e
        if not response.is_success:
            raise error_for_response(response, operation)
        return response

    # ----- change requests -----

    async def create_or_get_change_request(self, spec: ChangeRequestSpec) -> ChangeRequest:
        """Open a pull request for the spec, or return the existing one.

        When GitHub refuses the pull request (422), an open pull request for
        the branch is returned, or else a merged one, so re-running after a
        merge finds the merged change.

        Labels and reviewers are applied best-effort; failures are logged.
        """
        client = await self._get_client()
        operation = "create_change_request"
        try:
            response = await client.post(
                f"{self._repo_path}/pulls",
                json={
                    "title": spec.title,
                    "body": spec.description,
                    "head": spec.source_branch,
                    "base": spec.target_branch,
                },
            )
        except httpx.HTTPError as e:
            raise classify_error(e, operation) from e

        if response.status_code == 422:
            # Already open, or already merged so there is nothing left to compare
            existing = await self._find_existing_pull(spec.source_branch)
            if existing is None:
                raise error_for_response(response, operation)
            self.logger.info(
                "change_request_exists",
                change_request_id=str(existing["number"]),
                work_item_id=spec.work_item_id,
                merged=bool(existing.get("merged_at")),
            )
            return self._to_change_request(existing, spec.work_item_id)

        if not response.is_success:
            raise error_for_response(response, operation)

        pull = response.json()
        number = str(pull["number"])
        self.logger.info(
            "change_request_created",
            change_request_id=number,
            work_item_id=spec.work_item_id,
            url=pull.get("html_url"),
        )

        change_request = self._to_change_request(pull, spec.work_item_id)
        if spec.labels and await self._add_labels(number, spec.labels):
            change_request.labels = list(spec.labels)
        if spec.reviewers and await self._request_reviewers(number, spec.reviewers):
            change_request.reviewers = list(spec.reviewers)
        return change_request

    async def get_change_request(self, change_request_id: str) -> ChangeRequest:
        response = await self._request(
            "GET", f"{self._repo_path}/pulls/{change_request_id}", "get_change_request"
        )
        return self._to_change_request(response.json())

    async def _find_existing_pull(self, branch: str) -> dict[str, Any] | None:
        """Open pull request for the branch, else the most recent merged one."""
        response = await self._request(
            "GET",
            f"{self._repo_path}/pulls",
            "find_change_request",
            params={"head": f"{self.config.owner}:{branch}", "state": "all", "per_page": 100},
        )
        pulls = response.json()
        for pull in pulls:
            if pull.get("state") == "open":
                return pull
        for pull in pulls:
            if pull.get("merged_at"):
                return pull
        return None

    async def _add_labels(self, number: str, labels: list[str]) -> bool:
        try:
            await self._request(
                "POST",
                f"{self._repo_path}/issues/{number}/labels",
                "add_labels",
                json={"labels": labels},
            )
        except Exception as e:
            self.logger.warning("change_request_labels_failed", change_request_id=number, error=str(e))
            return False
        return True

    async def _request_reviewers(self, number: str, reviewers: list[str]) -> bool:
        try:
            await self._request(
                "POST",
                f"{self._repo_path}/pulls/{number}/requested_reviewers",
                "request_reviewers",
                json={"reviewers": reviewers},
            )
        except Exception as e:
            self.logger.warning(
                "change_request_reviewers_failed", change_request_id=number, error=str(e)
            )
            return False
        return True

    # ----- CI -----

    async def fetch_ci_status(self, change_request_id: str) -> CIStatusSnapshot:
        """Check runs of the pull request's current head commit."""
        change_request = await self.get_change_request(change_request_id)
        url: str | None = f"{self._repo_path}/commits/{change_request.head_sha}/check-runs"
        params: dict[str, Any] | None = {"per_page": 100}
        checks: list[CheckRun] = []
        while url is not None:
            response = await self._request("GET", url, "fetch_ci_status", params=params)
            checks.extend(
                self._to_check_run(raw) for raw in response.json().get("check_runs", [])
            )
            # The next link already carries the query string
            url = response.links.get("next", {}).get("url")
            params = None
        return CIStatusSnapshot(checks=checks)

    async def rerun_check(self, check_id: str) -> None:
        await self._request(
            "POST", f"{self._repo_path}/check-runs/{check_id}/rerequest", "rerun_check"
        )
        self.logger.info("check_rerun_requested", check_id=check_id)

    # ----- merge and branches -----

    async def merge_change_request(
        self,
        change_request_id: str,
        strategy: MergeStrategy,
        commit_title: str | None = None,
        commit_message: str | None = None,
    ) -> str | None:
        """Merge the pull request and return the merge commit SHA."""
        body: dict[str, Any] = {"merge_method": strategy.value}
        if commit_title:
            body["commit_title"] = commit_title
        if commit_message:
            body["commit_message"] = commit_message
        response = await self._request(
            "PUT",
            f"{self._repo_path}/pulls/{change_request_id}/merge",
            "merge_change_request",
            json=body,
        )
        payload = response.json()
        if payload.get("merged") is False:
            raise PermanentExternalError(
                payload.get("message") or f"Pull request {change_request_id} was not merged",
                kind=PermanentFailureKind.MERGE_CONFLICT,
                operation="merge_change_request",
                status_code=response.status_code,
            )
        return payload.get("sha")

    async def delete_branch(self, ref: str) -> None:
        """Delete a branch; a branch that is already gone counts as deleted."""
        client = await self._get_client()
        try:
            response = await client.delete(f"{self._repo_path}/git/refs/heads/{ref}")
        except httpx.HTTPError as e:
            raise classify_error(e, "delete_branch") from e

        if response.status_code in (404, 422) and "Reference does not exist" in response.text:
            self.logger.info("branch_already_deleted", branch=ref)
            return
        if not response.is_success:
            raise error_for_response(response, "delete_branch")

    # ----- mapping -----

    @staticmethod
    def _to_change_request(pull: dict[str, Any], work_item_id: str = "") -> ChangeRequest:
        if pull.get("merged") or pull.get("merged_at"):
            state = ChangeRequestState.MERGED
        elif pull.get("state") == "closed":
            state = ChangeRequestState.CLOSED
        else:
            state = ChangeRequestState.OPEN

        head = pull.get("head") or {}
        base = pull.get("base") or {}
        return ChangeRequest(
            id=str(pull["number"]),
            work_item_id=work_item_id,
            title=pull.get("title") or "",
            description=pull.get("body") or "",
            source_branch=head.get("ref", ""),
            target_branch=base.get("ref", ""),
            labels=[label["name"] for label in pull.get("labels", []) if "name" in label],
            reviewers=[r["login"] for r in pull.get("requested_reviewers", []) if "login" in r],
            state=state,
            mergeable=pull.get("mergeable"),
            head_sha=head.get("sha"),
            url=pull.get("html_url"),
            merged_at=pull.get("merged_at"),
        )

    @staticmethod
    def _to_check_run(raw: dict[str, Any]) -> CheckRun:
        status = _STATUS_MAP.get(raw.get("status") or "", CheckStatus.PENDING)
        conclusion = None
        if status is CheckStatus.DONE:
            conclusion = _CONCLUSION_MAP.get(raw.get("conclusion") or "", CheckConclusion.NEUTRAL)
        return CheckRun(
            id=str(raw["id"]),
            name=raw.get("name") or str(raw["id"]),
            status=status,
            conclusion=conclusion,
            url=raw.get("html_url"),
        )
