"""Pytest configuration and fixtures."""

import base64

import pytest

from api import ApiClient
from services import GitHubError, GitHubFetcher


class InMemoryStore:
    """Comment store backed by a list; ids are assigned in creation order."""

    def __init__(self, comments=None):
        self.comments = list(comments or [])
        self.reactions = []
        self.calls = []
        self._next_id = max([c["id"] for c in self.comments] + [100]) + 1

    def list_comments(self, thread_id):
        self.calls.append(("list", thread_id))
        return [dict(c) for c in self.comments if c.get("thread_id", thread_id) == thread_id]

    def create_comment(self, thread_id, body, reply_to=None):
        self.calls.append(("create", thread_id, reply_to))
        comment = {"id": self._next_id, "thread_id": thread_id, "body": body, "author": "zai-bot[bot]",
                   "reply_to": reply_to}
        self._next_id += 1
        self.comments.append(comment)
        return dict(comment)

    def update_comment(self, comment_id, body):
        self.calls.append(("update", comment_id))
        for comment in self.comments:
            if comment["id"] == comment_id:
                comment["body"] = body
                return dict(comment)
        raise GitHubError(404, "Not Found")

    def add_reaction(self, comment_id, reaction):
        self.reactions.append((comment_id, reaction))
        return {"content": reaction}

    def bodies_with(self, marker):
        return [c["body"] for c in self.comments if marker in c["body"]]


class FakeBackend:
    """Chat backend that replays a script of responses; exceptions in the script are raised."""

    def __init__(self, script=None):
        self.script = list(script or ["Looks good to me."])
        self.requests = []

    async def complete(self, request, timeout_ms):
        self.requests.append((request, timeout_ms))
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item


class FakeFetcher(GitHubFetcher):
    """GitHubFetcher with the HTTP layer replaced by in-memory data."""

    def __init__(self, files=None, contents=None, pull_request=None, permissions=None,
                 issue_comments=None, commits=None):
        super().__init__("test-token")
        self.files = files or []
        self.contents = contents or {}
        self.pull_request = pull_request or {
            "number": 7,
            "title": "Add feature",
            "body": "Adds a feature.",
            "user": {"login": "author"},
            "base": {"ref": "main", "sha": "base000"},
            "head": {"ref": "feature", "sha": "head111", "repo": {"fork": False}},
        }
        self.permissions = permissions or {}
        self.issue_comments = issue_comments or []
        self.commits = commits or []
        self.updated_bodies = []

    def get_pr_diffs(self, owner, repo, pr_number):
        return [dict(f) for f in self.files]

    def get_pull_request(self, owner, repo, pr_number):
        return dict(self.pull_request)

    def update_pull_request_body(self, owner, repo, pr_number, body):
        self.updated_bodies.append(body)
        self.pull_request["body"] = body
        return dict(self.pull_request)

    def get_pr_commits(self, owner, repo, pr_number, limit=30):
        return list(self.commits)

    def get_collaborator_permission(self, owner, repo, username):
        value = self.permissions.get(username)
        if isinstance(value, Exception):
            raise value
        return value

    def list_issue_comments(self, owner, repo, issue_number):
        return list(self.issue_comments)

    def get_file_at(self, owner, repo, path, ref):
        if path not in self.contents:
            raise GitHubError(404, f"GitHub API error 404 on GET {path}: Not Found")
        value = self.contents[path]
        if isinstance(value, list):
            return value
        if isinstance(value, bytes):
            return {"content": base64.b64encode(value).decode("ascii"), "encoding": "base64"}
        return {"content": base64.b64encode(value.encode("utf-8")).decode("ascii"), "encoding": "base64"}


async def no_sleep(seconds):
    return None


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def api_client(backend):
    return ApiClient(backend, timeout_ms=30000, max_retries=2, base_delay_ms=10, sleep=no_sleep)


@pytest.fixture
def sample_files():
    return [
        {"filename": "src/app.py", "status": "modified", "additions": 2, "deletions": 1, "changes": 3,
         "patch": "@@ -1,3 +1,4 @@\n def main():\n-    pass\n+    run()\n+    return 0", "previous_filename": None},
        {"filename": "README.md", "status": "modified", "additions": 1, "deletions": 0, "changes": 1,
         "patch": "@@ -10,0 +11 @@\n+More docs", "previous_filename": None},
    ]


@pytest.fixture
def fetcher(sample_files):
    source = "\n".join(f"line {i}" for i in range(1, 61))
    return FakeFetcher(files=sample_files, contents={"src/app.py": source})
