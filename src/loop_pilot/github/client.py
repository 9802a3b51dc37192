"""GitHub REST client for Loop Pilot.

Issue and pull request operations used by the approval flow and the
task-creation endpoint. Authenticates with a personal access token.
"""

import logging
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from loop_pilot.config import settings

logger = logging.getLogger(__name__)


class GitHubError(Exception):
    """A GitHub API call failed (anything other than "not found")."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class Issue(BaseModel):
    """An issue as returned by the client."""

    number: int
    title: str
    body: Optional[str] = None
    labels: list[str] = Field(default_factory=list)
    state: str
    html_url: str
    created_at: str

    @classmethod
    def from_api(cls, data: dict) -> "Issue":
        return cls(
            number=data["number"],
            title=data["title"],
            body=data.get("body"),
            labels=[
                label if isinstance(label, str) else label.get("name") or ""
                for label in data.get("labels", [])
            ],
            state=data["state"],
            html_url=data["html_url"],
            created_at=data["created_at"],
        )


class PullRequest(BaseModel):
    """A pull request as returned by the client."""

    number: int
    title: str
    html_url: str
    state: str
    merged: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "PullRequest":
        return cls(
            number=data["number"],
            title=data["title"],
            html_url=data["html_url"],
            state=data["state"],
            merged=bool(data.get("merged")),
        )


class GitHubClient:
    """Client for repository-level GitHub operations."""

    def __init__(
        self,
        token: Optional[str],
        api_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.token = token
        self.api_url = (api_url or settings.github_api_url).rstrip("/")
        self._transport = transport
        self._timeout = timeout

    async def _request(
        self,
        method: str,
        endpoint: str,
        **kwargs,
    ) -> httpx.Response:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"

        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._timeout
            ) as client:
                return await client.request(
                    method,
                    f"{self.api_url}{endpoint}",
                    headers=headers,
                    **kwargs,
                )
        except httpx.HTTPError as e:
            raise GitHubError(f"{method} {endpoint} failed: {e}") from e

    def _check(self, response: httpx.Response, action: str) -> None:
        if response.is_error:
            raise GitHubError(
                f"{action} failed with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

    # Issue operations

    async def list_open_issues(self, owner: str, repo: str) -> list[Issue]:
        """List open issues (pull requests filtered out)."""
        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/issues",
            params={"state": "open", "per_page": 100},
        )
        self._check(response, f"Listing issues for {owner}/{repo}")
        return [
            Issue.from_api(item)
            for item in response.json()
            if "pull_request" not in item
        ]

    async def get_issue(self, owner: str, repo: str, issue_number: int) -> Optional[Issue]:
        """Get an issue, or None if it doesn't exist."""
        response = await self._request(
            "GET", f"/repos/{owner}/{repo}/issues/{issue_number}"
        )
        if response.status_code == 404:
            return None
        self._check(response, f"Getting issue #{issue_number}")
        return Issue.from_api(response.json())

    async def create_issue(
        self,
        owner: str,
        repo: str,
        title: str,
        body: Optional[str] = None,
        labels: Optional[list[str]] = None,
    ) -> Issue:
        """Create an issue."""
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues",
            json={"title": title, "body": body or "", "labels": labels or []},
        )
        self._check(response, f"Creating issue in {owner}/{repo}")
        return Issue.from_api(response.json())

    async def comment_on_issue(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        body: str,
    ) -> None:
        """Create a comment on an issue."""
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json={"body": body},
        )
        self._check(response, f"Commenting on issue #{issue_number}")

    async def close_issue(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        comment: Optional[str] = None,
    ) -> None:
        """Close an issue, optionally leaving a comment first."""
        if comment:
            await self.comment_on_issue(owner, repo, issue_number, comment)
        response = await self._request(
            "PATCH",
            f"/repos/{owner}/{repo}/issues/{issue_number}",
            json={"state": "closed"},
        )
        self._check(response, f"Closing issue #{issue_number}")

    async def get_repo_labels(self, owner: str, repo: str) -> list[str]:
        response = await self._request("GET", f"/repos/{owner}/{repo}/labels")
        self._check(response, f"Listing labels for {owner}/{repo}")
        return [label["name"] for label in response.json()]

    # Pull request operations

    async def get_pull_request(
        self, owner: str, repo: str, pr_number: int
    ) -> Optional[PullRequest]:
        """Get a pull request, or None if it doesn't exist."""
        response = await self._request(
            "GET", f"/repos/{owner}/{repo}/pulls/{pr_number}"
        )
        if response.status_code == 404:
            return None
        self._check(response, f"Getting PR #{pr_number}")
        return PullRequest.from_api(response.json())

    async def list_open_pull_requests(self, owner: str, repo: str) -> list[PullRequest]:
        response = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={"state": "open"},
        )
        self._check(response, f"Listing PRs for {owner}/{repo}")
        return [PullRequest.from_api(item) for item in response.json()]

    async def merge_pull_request(self, owner: str, repo: str, pr_number: int) -> bool:
        """Squash-merge a pull request. Returns False on any failure."""
        try:
            response = await self._request(
                "PUT",
                f"/repos/{owner}/{repo}/pulls/{pr_number}/merge",
                json={"merge_method": "squash"},
            )
            self._check(response, f"Merging PR #{pr_number}")
        except GitHubError as e:
            logger.error(f"Failed to merge PR #{pr_number} in {owner}/{repo}: {e}")
            return False
        return True


def format_issue_list(issues: list[Issue]) -> str:
    """Render issues as a plain bullet list."""
    if not issues:
        return "No open issues"
    lines = []
    for issue in issues:
        labels = f" [{', '.join(issue.labels)}]" if issue.labels else ""
        lines.append(f"- #{issue.number}: {issue.title}{labels}")
    return "\n".join(lines)
