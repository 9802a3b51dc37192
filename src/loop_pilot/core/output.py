"""Classification of coding agent output.

The agent signals progress with plain-text markers in its combined output:
- a completion sentinel, <done>COMPLETE</done> or <done>NO_TASKS</done>
- a GitHub pull request URL when it opened a PR
- usually an issue reference such as "#12" somewhere in the text
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class DoneVariant(str, Enum):
    """Which completion sentinel the agent emitted."""

    COMPLETE = "complete"  # all tasks complete
    NO_TASKS = "no_tasks"  # no tasks remain


SENTINELS: dict[DoneVariant, str] = {
    DoneVariant.COMPLETE: "<done>COMPLETE</done>",
    DoneVariant.NO_TASKS: "<done>NO_TASKS</done>",
}

PR_URL_PATTERN = re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/(\d+)")
ISSUE_REF_PATTERN = re.compile(r"#(\d+)")


@dataclass(frozen=True)
class Done:
    variant: DoneVariant


@dataclass(frozen=True)
class PullRequestFound:
    pr_number: int
    # Best-effort: first "#<digits>" in the output, not validated against the PR
    issue_number: Optional[int] = None


@dataclass(frozen=True)
class NoSignal:
    pass


OutputSignal = Union[Done, PullRequestFound, NoSignal]


def find_done_variant(output: str) -> Optional[DoneVariant]:
    for variant, sentinel in SENTINELS.items():
        if sentinel in output:
            return variant
    return None


def has_completion_sentinel(output: str) -> bool:
    return find_done_variant(output) is not None


def find_pull_request(output: str) -> Optional[int]:
    match = PR_URL_PATTERN.search(output)
    return int(match.group(1)) if match else None


def guess_issue_number(output: str) -> Optional[int]:
    match = ISSUE_REF_PATTERN.search(output)
    return int(match.group(1)) if match else None


def classify_output(output: str) -> OutputSignal:
    """Turn raw agent output into a signal for the iteration driver.

    A completion sentinel wins over a PR URL appearing in the same output.
    """
    variant = find_done_variant(output)
    if variant is not None:
        return Done(variant)

    pr_number = find_pull_request(output)
    if pr_number is not None:
        return PullRequestFound(pr_number, guess_issue_number(output))

    return NoSignal()
