from __future__ import annotations

from aihelper.models import IssueEvent, PullRequestEvent, ReviewCommentEvent


def build_review_prompt(*, event: PullRequestEvent) -> str:
    return f"""
You are the code review agent for repository {event.repository.full_name}.

Task:
- Review pull request #{event.number}: {event.title}
- Author: {event.author_login}
- Base branch: {event.base_ref}
- Head branch: {event.head_ref} ({event.head_sha})

How to work:
- Use the GitHub CLI (`gh pr view`, `gh pr diff`) to read the pull request.
- Focus on correctness, security, error handling and test coverage.
- Post inline comments for specific lines and one summary review with `gh pr review`.
- Do not push commits to the branch.

Pull request URL:
{event.html_url}
""".strip()


def build_issue_prompt(*, event: IssueEvent) -> str:
    return f"""
You are the issue resolution agent for repository {event.repository.full_name}.

Task:
- Resolve issue #{event.number} with code changes in the current checkout.
- The checkout is on the default branch: {event.repository.default_branch}
- Create a new branch named ai-helper/issue-{event.number} before committing.
- Add or update tests that cover the change.
- Push the branch and open a pull request with `gh pr create` that references the issue.

Issue title:
{event.title}

Issue URL:
{event.html_url}

Issue body:
{event.body}
""".strip()


def build_review_response_prompt(*, event: ReviewCommentEvent) -> str:
    context_lines: list[str] = []
    if event.file_path is not None:
        context_lines.append(f"File: {event.file_path}")
    if event.diff_hunk:
        context_lines.append("Diff context:")
        context_lines.append(event.diff_hunk)
    context = "\n".join(context_lines) if context_lines else "(review-level feedback, no file)"
    source = "review" if event.is_review else "review comment"

    return f"""
You are the review response agent for repository {event.repository.full_name}.

Task:
- A reviewer asked for changes on pull request #{event.pr_number}.
- The checkout is on the pull request head branch: {event.head_ref}
- Implement the requested changes, commit them and push to {event.head_ref}.
- Reply on the pull request with `gh pr comment` summarizing what changed.

Pull request URL:
{event.pr_url}

{source.capitalize()} by {event.author_login}:
{event.body}

{context}
""".strip()
