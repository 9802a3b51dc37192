"""GitHub REST API integration."""

from loop_pilot.github.client import GitHubClient, GitHubError, Issue, PullRequest

__all__ = ["GitHubClient", "GitHubError", "Issue", "PullRequest"]
