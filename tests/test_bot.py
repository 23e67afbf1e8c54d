"""End-to-end tests for one webhook run through ZaiBot, with GitHub and the model faked."""

import asyncio

import pytest

from api import AttemptTimeoutError
from bot import PROGRESS_MARKER, REVIEW_MARKER, ZaiBot, is_addressed_to_bot, repo_from_payload
from comments import Reactions
from conftest import FakeFetcher, InMemoryStore
from continuity import CONTINUITY_MARKER, extract_state_from_comment
from handlers import HELP_TEXT
from services import GitHubError

REPOSITORY = {"name": "app", "owner": {"login": "acme"}}


def comment_event(body, comment_id=55, login="dev", user_type="User"):
    return {
        "action": "created",
        "repository": REPOSITORY,
        "issue": {"number": 7, "title": "Add feature", "body": "Adds a feature.",
                  "pull_request": {"url": "https://api.github.com/repos/acme/app/pulls/7"}},
        "comment": {"id": comment_id, "body": body, "user": {"login": login, "type": user_type}},
    }


def pull_request_event(action="opened"):
    return {
        "action": action,
        "number": 7,
        "repository": REPOSITORY,
        "pull_request": {"number": 7, "title": "Add feature", "body": "Adds a feature.",
                         "head": {"sha": "head111", "repo": {"fork": False}}, "user": {"login": "author"}},
    }


@pytest.fixture
def fetcher(sample_files):
    source = "\n".join(f"line {i}" for i in range(1, 61))
    return FakeFetcher(files=sample_files, contents={"src/app.py": source}, permissions={"dev": "write"})


@pytest.fixture
def bot(fetcher, api_client, store):
    return ZaiBot(fetcher, api_client, model="glm-4.7", api_key="key",
                  store_factory=lambda owner, repo, review_comments=False: store)


def run(bot, event_name, payload):
    return asyncio.run(bot.run_event(event_name, payload, correlation_id="test-run"))


def test_helpers():
    assert repo_from_payload({"repository": REPOSITORY}) == ("acme", "app")
    assert repo_from_payload({}) == (None, None)
    assert is_addressed_to_bot("@zai-bot hi")
    assert is_addressed_to_bot("/zai")
    assert not is_addressed_to_bot("LGTM")


def test_command_reply_carries_state_and_reactions(bot, store):
    result = run(bot, "issue_comment", comment_event("/zai help"))

    assert result.status == "processed"
    assert result.command == "help"
    assert result.success
    assert len(store.comments) == 1
    reply = store.comments[0]
    assert reply["reply_to"] == 55
    assert HELP_TEXT in reply["body"]
    assert "<!-- zai-help:55 -->" in reply["body"]
    state = extract_state_from_comment(reply["body"])
    assert state["lastCommand"] == "help"
    assert state["lastUser"] == "dev"
    assert state["turnCount"] == 1
    assert store.reactions == [(55, Reactions.EYES), (55, Reactions.ROCKET)]


def test_turn_count_carries_across_runs(bot, store):
    """Test that each command reads the previous reply's state and advances it."""
    run(bot, "issue_comment", comment_event("/zai help", comment_id=55))
    run(bot, "issue_comment", comment_event("/zai review", comment_id=56))

    assert len(store.comments) == 2
    state = extract_state_from_comment(store.comments[-1]["body"])
    assert state["turnCount"] == 2
    assert state["lastCommand"] == "review"
    assert len(store.bodies_with(CONTINUITY_MARKER)) == 2


def test_redelivery_edits_the_same_reply(bot, store, backend):
    backend.script = ["First take", "Second take"]

    run(bot, "issue_comment", comment_event("/zai review", comment_id=55))
    run(bot, "issue_comment", comment_event("/zai review", comment_id=55))

    assert len(store.comments) == 1
    assert "Second take" in store.comments[0]["body"]
    assert ("update", store.comments[0]["id"]) in store.calls


def test_unauthorized_commenter_gets_error(bot, store, backend):
    result = run(bot, "issue_comment", comment_event("/zai review", login="stranger"))

    assert result.status == "blocked"
    assert not result.success
    assert store.comments[0]["body"].startswith("**Error:** You are not authorized")
    assert backend.requests == []


def test_fork_outsider_is_blocked_silently(bot, fetcher, store, backend):
    fetcher.pull_request["head"]["repo"] = {"fork": True}

    result = run(bot, "issue_comment", comment_event("/zai review", login="stranger"))

    assert result.status == "blocked"
    assert store.comments == []
    assert store.reactions == []
    assert backend.requests == []


def test_fork_author_may_run_commands(bot, fetcher, store):
    fetcher.pull_request["head"]["repo"] = {"fork": True}

    result = run(bot, "issue_comment", comment_event("/zai help", login="author"))

    assert result.status == "processed"
    assert result.success


def test_unknown_command_gets_guidance(bot, store, backend):
    result = run(bot, "issue_comment", comment_event("/zai deploy"))

    assert result.status == "processed"
    assert result.reason == "unknown_command"
    assert "Unknown command" in store.comments[0]["body"]
    assert store.comments[0]["reply_to"] == 55
    assert backend.requests == []


def test_ordinary_comment_is_ignored(bot, store):
    result = run(bot, "issue_comment", comment_event("LGTM, thanks!"))

    assert result.status == "skipped"
    assert store.comments == []


def test_bot_comment_is_ignored(bot, store):
    result = run(bot, "issue_comment", comment_event("/zai help", login="zai-bot[bot]", user_type="Bot"))

    assert result.status == "skipped"
    assert store.comments == []


def test_model_failure_posts_error_and_confused(bot, store, backend):
    backend.script = [Exception("Error code: 401 - Unauthorized")]

    result = run(bot, "issue_comment", comment_event("/zai review"))

    assert result.status == "processed"
    assert not result.success
    assert store.comments[0]["body"].startswith("**Error:** Authentication failed.")
    assert CONTINUITY_MARKER not in store.comments[0]["body"]
    assert store.reactions == [(55, Reactions.EYES), (55, Reactions.CONFUSED)]


def test_unexpected_handler_error_is_reported_generically(bot, fetcher, store):
    def broken(owner, repo, pr_number):
        raise RuntimeError("boom")
    fetcher.get_pr_diffs = broken

    result = run(bot, "issue_comment", comment_event("/zai compare"))

    assert not result.success
    assert "An unexpected error occurred" in store.comments[0]["body"]
    assert "boom" not in store.comments[0]["body"]


def test_github_error_in_handler_is_mapped(bot, fetcher, store):
    def missing(owner, repo, pr_number):
        raise GitHubError(404, "GitHub API error 404 on GET /pulls/7/files: Not Found")
    fetcher.get_pr_diffs = missing

    result = run(bot, "issue_comment", comment_event("/zai compare"))

    assert not result.success
    assert "Content not found" in store.comments[0]["body"]


def test_auto_review_posts_result_and_progress(bot, store, backend):
    result = run(bot, "pull_request", pull_request_event())

    assert result.status == "processed"
    assert result.command == "review"
    progress = store.bodies_with(PROGRESS_MARKER)
    review = store.bodies_with(REVIEW_MARKER)
    assert len(progress) == 1 and len(review) == 1
    assert "✅ Review complete." in progress[0]
    assert "Looks good to me." in review[0]
    assert len(backend.requests) == 1


def test_auto_review_updates_on_synchronize(bot, store, backend):
    backend.script = ["Round one", "Round two"]

    run(bot, "pull_request", pull_request_event("opened"))
    run(bot, "pull_request", pull_request_event("synchronize"))

    assert len(store.comments) == 2
    assert "Round two" in store.bodies_with(REVIEW_MARKER)[0]


def test_auto_review_failure_marks_progress(bot, store, backend):
    backend.script = [Exception("Error code: 400 - bad request")]

    result = run(bot, "pull_request", pull_request_event())

    assert not result.success
    assert store.bodies_with(REVIEW_MARKER) == []
    assert "❌ Review failed" in store.bodies_with(PROGRESS_MARKER)[0]


def test_auto_review_skips_without_patches(api_client, store):
    fetcher = FakeFetcher(files=[{"filename": "logo.png", "status": "added", "patch": ""}])
    bot = ZaiBot(fetcher, api_client, store_factory=lambda owner, repo, review_comments=False: store)

    result = run(bot, "pull_request", pull_request_event())

    assert result.status == "skipped"
    assert store.comments == []


def test_auto_review_file_listing_failure(bot, fetcher, store):
    def unavailable(owner, repo, pr_number):
        raise GitHubError(503, "GitHub API error 503")
    fetcher.get_pr_diffs = unavailable

    result = run(bot, "pull_request", pull_request_event())

    assert result.status == "failed"
    assert result.reason == "Resource temporarily unavailable"
    assert store.comments == []


def test_closed_pull_request_is_skipped(bot, store):
    assert run(bot, "pull_request", pull_request_event("closed")).status == "skipped"


def test_missing_repository_fails(bot):
    payload = comment_event("/zai help")
    del payload["repository"]

    result = run(bot, "issue_comment", payload)

    assert result.status == "failed"


class ProgressLockedStore(InMemoryStore):
    """Store whose progress note can be created but never edited."""

    def update_comment(self, comment_id, body):
        if PROGRESS_MARKER in body:
            raise GitHubError(502, "GitHub API error 502: Bad Gateway")
        return super().update_comment(comment_id, body)


def test_progress_failures_do_not_stop_auto_review(fetcher, api_client, backend):
    """Test that the compact retry still runs when the progress note cannot be edited."""
    store = ProgressLockedStore()
    backend.script = [AttemptTimeoutError("Request timed out"), AttemptTimeoutError("Request timed out"),
                      "Compact review"]
    bot = ZaiBot(fetcher, api_client, store_factory=lambda owner, repo, review_comments=False: store)

    result = run(bot, "pull_request", pull_request_event())

    assert result.status == "processed"
    assert result.success
    assert len(backend.requests) == 3
    assert "Compact review" in store.bodies_with(REVIEW_MARKER)[0]
    assert len(store.bodies_with(PROGRESS_MARKER)) == 1


def test_review_comment_failure_is_reported(fetcher, api_client):
    class NoCreate(InMemoryStore):
        def create_comment(self, thread_id, body, reply_to=None):
            if REVIEW_MARKER in body:
                raise GitHubError(403, "Resource not accessible by integration")
            return super().create_comment(thread_id, body, reply_to)

    store = NoCreate()
    bot = ZaiBot(fetcher, api_client, store_factory=lambda owner, repo, review_comments=False: store)

    result = run(bot, "pull_request", pull_request_event())

    assert result.status == "failed"
    assert result.reason == "Permission denied to access this resource."
