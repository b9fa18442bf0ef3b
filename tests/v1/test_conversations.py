# tests/v1/test_conversations.py
"""Tests for conversation endpoints: send, list, read state and clear."""

import base64

import pytest
from fastapi import status

from bavard.core.constants import ASSISTANT_USER_ID, SYSTEM_BROADCAST_USER_ID

from tests.conftest import auth_headers

ALICE = auth_headers("alice", name="Alice")
BOB = auth_headers("bob", name="Bob")


@pytest.fixture()
def connected(client, alice, bob) -> None:
    response = client.post("/api/v1/contacts", json={"user_id": "bob"}, headers=ALICE)
    assert response.status_code == status.HTTP_201_CREATED


def _send(client, headers, peer_id: str, text: str, **extra):
    return client.post(
        f"/api/v1/conversations/{peer_id}/messages",
        json={"text": text, **extra},
        headers=headers,
    )


def _unread(client, headers, peer_id: str) -> int:
    contacts = client.get("/api/v1/contacts", headers=headers).json()
    return next(c["unread"] for c in contacts if c["id"] == peer_id)


def test_message_read_flow(client, connected) -> None:
    """Add contact, receive a message, see it unread, open, see zero."""
    sent = _send(client, BOB, "alice", "hi alice")
    assert sent.status_code == status.HTTP_201_CREATED
    assert sent.json()["text"] == "hi alice"
    assert sent.json()["conversation_id"] == "alice_bob"

    assert _unread(client, ALICE, "bob") == 1
    assert _unread(client, BOB, "alice") == 0

    opened = client.post("/api/v1/conversations/bob/open", headers=ALICE)
    assert opened.status_code == status.HTTP_200_OK
    assert opened.json()["unread"] == 0
    assert opened.json()["advanced"] is True

    assert _unread(client, ALICE, "bob") == 0
    reopened = client.post("/api/v1/conversations/bob/open", headers=ALICE).json()
    assert reopened["advanced"] is False


def test_list_messages_in_commit_order(client, connected) -> None:
    for i in range(3):
        _send(client, ALICE if i % 2 == 0 else BOB, "bob" if i % 2 == 0 else "alice", f"m{i}")

    response = client.get("/api/v1/conversations/bob/messages", headers=ALICE)
    assert response.status_code == status.HTTP_200_OK
    messages = response.json()
    assert [m["text"] for m in messages] == ["m0", "m1", "m2"]

    after = client.get(
        "/api/v1/conversations/bob/messages",
        params={"after": messages[0]["created_at"]},
        headers=ALICE,
    ).json()
    assert [m["text"] for m in after] == ["m1", "m2"]


def test_client_timestamp_is_advisory(client, connected) -> None:
    first = _send(client, ALICE, "bob", "first", client_timestamp="2099-01-01T00:00:00Z").json()
    _send(client, ALICE, "bob", "second", client_timestamp="2000-01-01T00:00:00Z")

    assert not first["created_at"].startswith("2099")
    listed = client.get("/api/v1/conversations/bob/messages", headers=ALICE).json()
    assert [m["text"] for m in listed] == ["first", "second"]


@pytest.mark.parametrize(
    ("peer_id", "expected"),
    [
        ("carol", status.HTTP_403_FORBIDDEN),
        (SYSTEM_BROADCAST_USER_ID, status.HTTP_403_FORBIDDEN),
        ("alice", status.HTTP_400_BAD_REQUEST),
    ],
)
def test_send_rejections(client, alice, carol, peer_id: str, expected: int) -> None:
    response = _send(client, ALICE, peer_id, "hello")

    assert response.status_code == expected


def test_non_contact_cannot_read_history(client, connected, carol) -> None:
    _send(client, ALICE, "bob", "private")

    response = client.get("/api/v1/conversations/alice/messages", headers=auth_headers("carol"))

    assert response.status_code == status.HTTP_403_FORBIDDEN


def test_watermark_update(client, connected) -> None:
    first = _send(client, BOB, "alice", "one").json()
    _send(client, BOB, "alice", "two")

    partial = client.put(
        "/api/v1/conversations/bob/watermark",
        json={"timestamp": first["created_at"]},
        headers=ALICE,
    ).json()
    assert partial["unread"] == 1
    assert partial["advanced"] is True

    backwards = client.put(
        "/api/v1/conversations/bob/watermark",
        json={"timestamp": "2000-01-01T00:00:00Z"},
        headers=ALICE,
    ).json()
    assert backwards["advanced"] is False
    assert backwards["unread"] == 1

    full = client.put("/api/v1/conversations/bob/watermark", json={}, headers=ALICE).json()
    assert full["unread"] == 0

    state = client.get("/api/v1/conversations/bob/read-state", headers=ALICE).json()
    assert state["unread"] == 0
    assert state["conversation_id"] == "alice_bob"


def test_watermark_without_messages(client, connected) -> None:
    response = client.put("/api/v1/conversations/bob/watermark", json={}, headers=ALICE)

    assert response.status_code == status.HTTP_404_NOT_FOUND


def test_clear_conversation(client, connected) -> None:
    for text in ("a", "b"):
        _send(client, ALICE, "bob", text)

    response = client.delete("/api/v1/conversations/bob/messages", headers=BOB)

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"deleted": 2, "batch_size": 500, "complete": True}
    assert client.get("/api/v1/conversations/alice/messages", headers=BOB).json() == []


def test_assistant_replies_in_background(client, alice) -> None:
    sent = _send(client, ALICE, ASSISTANT_USER_ID, "hello there")
    assert sent.status_code == status.HTTP_201_CREATED

    messages = client.get(f"/api/v1/conversations/{ASSISTANT_USER_ID}/messages", headers=ALICE).json()

    assert [(m["sender_id"], m["text"]) for m in messages] == [
        ("alice", "hello there"),
        (ASSISTANT_USER_ID, "Hello from JUSU AI"),
    ]
    assert client.get("/api/v1/notifications", headers=ALICE).json() == []


class TestMediaAndViewOnce:
    """Media upload and the view-once reveal flow over HTTP."""

    @pytest.fixture()
    def photo(self, client, connected) -> dict:
        data_uri = "data:image/png;base64," + base64.b64encode(b"holiday photo").decode()
        response = client.post(
            "/api/v1/conversations/bob/media",
            json={"kind": "image", "data_uri": data_uri, "file_name": "beach.png", "view_once": True},
            headers=ALICE,
        )
        assert response.status_code == status.HTTP_201_CREATED
        return response.json()

    def test_view_once_is_redacted_everywhere(self, client, photo) -> None:
        assert photo["view_once_state"] == "sent"
        assert photo["url"] is None

        listed = client.get("/api/v1/conversations/alice/messages", headers=BOB).json()
        assert listed[0]["view_once_state"] == "tap_to_reveal"
        assert listed[0]["url"] is None

        single = client.get(f"/api/v1/messages/{photo['id']}", headers=BOB).json()
        assert single["url"] is None

    def test_reveal_once(self, client, photo) -> None:
        revealed = client.post(f"/api/v1/messages/{photo['id']}/reveal", headers=BOB).json()
        again = client.post(f"/api/v1/messages/{photo['id']}/reveal", headers=BOB).json()
        by_sender = client.post(f"/api/v1/messages/{photo['id']}/reveal", headers=ALICE).json()

        assert revealed["state"] == "revealed"
        assert revealed["message"]["file_name"] == "beach.png"
        assert again == {"state": "viewed", "message": None}
        assert by_sender == {"state": "sent", "message": None}

        media_path = revealed["message"]["url"].removeprefix("http://test")
        media = client.get(media_path)
        assert media.status_code == status.HTTP_200_OK
        assert media.content == b"holiday photo"
        assert media.headers["content-type"] == "image/png"

        listed = client.get("/api/v1/conversations/alice/messages", headers=BOB).json()
        assert listed[0]["view_once_state"] == "viewed"

    def test_outsider_cannot_open(self, client, photo, carol) -> None:
        response = client.post(f"/api/v1/messages/{photo['id']}/reveal", headers=auth_headers("carol"))

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_bad_upload_is_rejected(self, client, connected) -> None:
        response = client.post(
            "/api/v1/conversations/bob/media",
            json={"kind": "file", "data_uri": "not-a-data-uri", "file_name": "x.bin"},
            headers=ALICE,
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert client.get("/api/v1/conversations/bob/messages", headers=ALICE).json() == []


def test_unknown_media_is_404(client) -> None:
    assert client.get("/api/v1/media/" + "0" * 64).status_code == status.HTTP_404_NOT_FOUND
