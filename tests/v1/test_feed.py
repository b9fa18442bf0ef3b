# tests/v1/test_feed.py
"""Tests for the ranked feed endpoint."""

from fastapi import status

from tests.conftest import auth_headers

POSTS = [
    {"id": "p1", "title": "Old news", "user_id": "bob", "created_at": "2026-01-01T10:00:00Z"},
    {"id": "p2", "title": "Fresh", "user_id": "carol", "created_at": "2026-01-01T12:00:00Z"},
    {"id": "p3", "title": "Middle", "user_id": "bob", "created_at": "2026-01-01T11:00:00Z"},
]


def test_rank_falls_back_to_newest_first(client) -> None:
    # The fake ranking model always fails with a server error.
    response = client.post("/api/v1/feed/rank", json={"posts": POSTS}, headers=auth_headers("alice"))

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"ranked_post_ids": ["p2", "p3", "p1"], "fallback": True}


def test_rank_empty_feed(client) -> None:
    response = client.post("/api/v1/feed/rank", json={"posts": []}, headers=auth_headers("alice"))

    assert response.json() == {"ranked_post_ids": [], "fallback": False}
