"""Tests for the comment-embedded conversation state."""

import base64
import json

import pytest

from continuity import (
    CONTINUITY_MARKER,
    MAX_STATE_SIZE,
    STATE_VERSION,
    StateTooLargeError,
    create_comment_with_state,
    decode_state,
    encode_state,
    extract_state_from_comment,
    load_continuity_state,
    merge_state,
    save_continuity_state,
    strip_state,
)
from conftest import InMemoryStore


STATE = {"lastCommand": "ask", "lastArgs": "why?", "lastUser": "octocat", "turnCount": 2,
         "updatedAt": "2026-01-01T00:00:00+00:00"}


def test_round_trip_adds_only_version():
    """Test that decode(encode(s)) reproduces every field plus v."""
    decoded = decode_state(encode_state(STATE))

    assert decoded.pop("v") == STATE_VERSION
    assert decoded == STATE


def test_token_is_url_safe_and_unpadded():
    token = encode_state({"text": "??>>~~" * 20})

    assert "=" not in token
    assert "+" not in token and "/" not in token


def test_oversized_state_is_rejected():
    with pytest.raises(StateTooLargeError):
        encode_state({"blob": "x" * MAX_STATE_SIZE})


def test_size_is_measured_in_bytes():
    """Test that multi-byte characters count towards the ceiling by their encoded size."""
    with pytest.raises(StateTooLargeError):
        encode_state({"blob": "é" * 1100})


def test_decode_accepts_standard_base64():
    token = base64.b64encode(json.dumps({"v": 1, "a": "b"}).encode()).decode()

    assert decode_state(token) == {"v": 1, "a": "b"}


@pytest.mark.parametrize("token", [None, "", "not base64 !!!", "bm90IGpzb24", base64.b64encode(b"[1, 2]").decode(), 42])
def test_corrupted_tokens_mean_no_state(token):
    assert decode_state(token) is None


def test_newer_version_is_still_read():
    token = base64.urlsafe_b64encode(json.dumps({"v": 99, "lastCommand": "ask"}).encode()).decode()

    assert decode_state(token) == {"v": 99, "lastCommand": "ask"}


def test_merge_state():
    assert merge_state(None, {"a": 1}) == {"a": 1}
    assert merge_state({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}


def test_embedding_round_trip():
    body = create_comment_with_state("Visible answer", STATE)

    assert body.startswith("Visible answer")
    assert CONTINUITY_MARKER in body
    assert extract_state_from_comment(body)["lastCommand"] == "ask"
    assert strip_state(body) == "Visible answer"


def test_missing_end_marker_means_no_state():
    body = create_comment_with_state("text", STATE)

    assert extract_state_from_comment(body.replace(" -->", "")) is None
    assert extract_state_from_comment("plain comment") is None


def test_oversized_state_posts_content_only():
    assert create_comment_with_state("hello", {"blob": "x" * 5000}) == "hello"


def test_load_uses_most_recent_state_comment():
    store = InMemoryStore([
        {"id": 1, "body": create_comment_with_state("old", {"turnCount": 1})},
        {"id": 2, "body": "unrelated"},
        {"id": 3, "body": create_comment_with_state("new", {"turnCount": 5})},
    ])

    assert load_continuity_state(store, 7)["turnCount"] == 5


def test_load_survives_store_failure():
    class Broken:
        def list_comments(self, thread_id):
            raise RuntimeError("boom")

    assert load_continuity_state(Broken(), 7) is None


def test_save_updates_in_place():
    store = InMemoryStore()

    save_continuity_state(store, 7, {"turnCount": 1}, content="First")
    result = save_continuity_state(store, 7, {"turnCount": 2})

    assert result.action == "updated"
    assert len(store.comments) == 1
    assert strip_state(store.comments[0]["body"]).startswith("First")
    assert load_continuity_state(store, 7)["turnCount"] == 2


def test_save_requires_content_for_new_comment():
    with pytest.raises(ValueError):
        save_continuity_state(InMemoryStore(), 7, {"turnCount": 1})
