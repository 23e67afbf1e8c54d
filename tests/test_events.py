"""Tests for webhook event routing and anti-loop filtering."""

import pytest

from events import (
    ISSUE_COMMENT_NON_PR,
    ISSUE_COMMENT_PR,
    PULL_REQUEST,
    REVIEW_COMMENT,
    get_event_info,
    get_event_type,
    is_bot_comment,
    should_process_event,
)


def comment_payload(user_type="User", login="octocat", on_pr=True):
    issue = {"number": 7}
    if on_pr:
        issue["pull_request"] = {"url": "https://api.github.com/repos/o/r/pulls/7"}
    return {
        "action": "created",
        "issue": issue,
        "comment": {"id": 99, "body": "/zai help", "user": {"login": login, "type": user_type}},
    }


def test_event_types():
    assert get_event_type("pull_request", {}) == PULL_REQUEST
    assert get_event_type("issue_comment", comment_payload()) == ISSUE_COMMENT_PR
    assert get_event_type("issue_comment", comment_payload(on_pr=False)) == ISSUE_COMMENT_NON_PR
    assert get_event_type("pull_request_review_comment", {}) == REVIEW_COMMENT


@pytest.mark.parametrize("user", [
    {"login": "github-actions[bot]", "type": "Bot"},
    {"login": "zai-code-bot[bot]", "type": "User"},
])
def test_bot_comments_detected(user):
    assert is_bot_comment({"user": user})


def test_human_comment_is_not_bot():
    assert not is_bot_comment({"user": {"login": "octocat", "type": "User"}})
    assert not is_bot_comment(None)


def test_bot_comment_skipped():
    """Test that the bot never answers itself."""
    decision = should_process_event("issue_comment", comment_payload(user_type="Bot", login="zai[bot]"))

    assert not decision["process"]
    assert "bot comment" in decision["reason"]


@pytest.mark.parametrize("action,expected", [
    ("opened", True), ("synchronize", True), ("reopened", True), ("closed", False), ("labeled", False),
])
def test_pull_request_actions(action, expected):
    payload = {"action": action, "pull_request": {"number": 3}}

    assert should_process_event("pull_request", payload)["process"] is expected


def test_draft_pull_request_skipped():
    payload = {"action": "opened", "pull_request": {"number": 3, "draft": True}}

    assert not should_process_event("pull_request", payload)["process"]


def test_non_pr_comment_and_unknown_event():
    assert not should_process_event("issue_comment", comment_payload(on_pr=False))["process"]
    assert not should_process_event("push", {})["process"]


def test_edited_comment_ignored():
    payload = comment_payload()
    payload["action"] = "edited"

    assert not should_process_event("issue_comment", payload)["process"]


def test_event_info():
    info = get_event_info("issue_comment", comment_payload())

    assert info.should_process
    assert info.pull_number == 7
    assert info.comment_id == 99
    assert info.comment_author == "octocat"
    assert not info.is_bot
