"""Tests for agent output classification."""

from loop_pilot.core.output import (
    Done,
    DoneVariant,
    NoSignal,
    PullRequestFound,
    classify_output,
    find_pull_request,
    guess_issue_number,
    has_completion_sentinel,
)


class TestClassifyOutput:
    def test_complete_sentinel(self):
        assert classify_output("all good\n<done>COMPLETE</done>\n") == Done(DoneVariant.COMPLETE)

    def test_no_tasks_sentinel(self):
        assert classify_output("<done>NO_TASKS</done>") == Done(DoneVariant.NO_TASKS)

    def test_pull_request(self):
        output = "Working on #12\nhttps://github.com/acme/widgets/pull/34\n"
        assert classify_output(output) == PullRequestFound(pr_number=34, issue_number=12)

    def test_pull_request_without_issue_ref(self):
        signal = classify_output("see https://github.com/acme/widgets/pull/5")
        assert signal == PullRequestFound(pr_number=5, issue_number=None)

    def test_sentinel_wins_over_pull_request(self):
        output = "https://github.com/acme/widgets/pull/9\n<done>COMPLETE</done>"
        assert isinstance(classify_output(output), Done)

    def test_nothing(self):
        assert classify_output("thinking...\nedited files") == NoSignal()

    def test_empty(self):
        assert classify_output("") == NoSignal()

    def test_malformed_sentinel_ignored(self):
        assert classify_output("<done>complete</done>") == NoSignal()


class TestHelpers:
    def test_first_pr_url_wins(self):
        output = (
            "https://github.com/acme/widgets/pull/3 and "
            "https://github.com/acme/widgets/pull/4"
        )
        assert find_pull_request(output) == 3

    def test_issue_url_is_not_pull_request(self):
        assert find_pull_request("https://github.com/acme/widgets/issues/3") is None

    def test_issue_guess_takes_first_ref(self):
        assert guess_issue_number("closes #8, related to #9") == 8

    def test_issue_guess_may_be_wrong(self):
        # The heuristic is textual; a PR reference counts too
        assert guess_issue_number("PR #40 fixes issue #8") == 40

    def test_has_completion_sentinel(self):
        assert has_completion_sentinel("x <done>NO_TASKS</done> y")
        assert not has_completion_sentinel("done")
