from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from aihelper.models import (
    DispatchResult,
    IssueEvent,
    PullRequestEvent,
    Repository,
    ReviewCommentEvent,
)
from aihelper.prompts import (
    build_issue_prompt,
    build_review_prompt,
    build_review_response_prompt,
)


REPO = Repository(full_name="octo/widgets", name="widgets", default_branch="trunk")


def test_review_prompt_names_pull_request() -> None:
    prompt = build_review_prompt(
        event=PullRequestEvent(
            action="opened",
            repository=REPO,
            number=4,
            title="Speed up widgets",
            html_url="https://github.com/octo/widgets/pull/4",
            author_login="alice",
            base_ref="trunk",
            head_ref="perf",
            head_sha="deadbeef",
        )
    )

    assert "repository octo/widgets" in prompt
    assert "pull request #4: Speed up widgets" in prompt
    assert "perf (deadbeef)" in prompt
    assert "Do not push commits" in prompt
    assert prompt == prompt.strip()


def test_issue_prompt_includes_body_and_branch() -> None:
    prompt = build_issue_prompt(
        event=IssueEvent(
            action="opened",
            repository=REPO,
            number=9,
            title="Crash on start",
            body="Steps:\n1. run it",
            html_url="https://github.com/octo/widgets/issues/9",
            author_login="bob",
            labels=("bug",),
        )
    )

    assert "Resolve issue #9" in prompt
    assert "default branch: trunk" in prompt
    assert "ai-helper/issue-9" in prompt
    assert prompt.endswith("Steps:\n1. run it")


def test_review_response_prompt_with_and_without_file_context() -> None:
    comment = ReviewCommentEvent(
        action="created",
        repository=REPO,
        pr_number=4,
        pr_url="https://github.com/octo/widgets/pull/4",
        head_ref="perf",
        author_login="carol",
        body="@ai-helper use a set here",
        file_path="src/w.py",
        diff_hunk="@@ -1 +1 @@",
    )
    review = ReviewCommentEvent(
        action="submitted",
        repository=REPO,
        pr_number=4,
        pr_url="https://github.com/octo/widgets/pull/4",
        head_ref="perf",
        author_login="dave",
        body="@ai-helper add tests",
        is_review=True,
    )

    comment_prompt = build_review_response_prompt(event=comment)
    review_prompt = build_review_response_prompt(event=review)

    assert "Review comment by carol:" in comment_prompt
    assert "File: src/w.py" in comment_prompt
    assert "@@ -1 +1 @@" in comment_prompt
    assert "push to perf" in comment_prompt
    assert "Review by dave:" in review_prompt
    assert "(review-level feedback, no file)" in review_prompt


def test_dispatch_result_json_without_task() -> None:
    assert DispatchResult(status="ignored", message="nope").to_json_dict() == {
        "status": "ignored",
        "message": "nope",
    }


def test_repository_is_frozen() -> None:
    with pytest.raises(FrozenInstanceError):
        REPO.name = "other"  # type: ignore[misc]
