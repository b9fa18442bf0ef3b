# tests/v1/test_contacts.py
"""Tests for contact list endpoints."""

from fastapi import status

from bavard.core.constants import ASSISTANT_USER_ID

from tests.conftest import auth_headers


def test_new_user_only_has_assistant(client) -> None:
    response = client.get("/api/v1/contacts", headers=auth_headers("alice"))

    assert response.status_code == status.HTTP_200_OK
    [assistant] = response.json()
    assert assistant["id"] == ASSISTANT_USER_ID
    assert assistant["display_name"] == "JUSU AI"
    assert assistant["is_assistant"] is True
    assert assistant["conversation_id"] == "alice_jusu_ai_assistant"


def test_add_contact_by_email(client, alice, bob) -> None:
    response = client.post(
        "/api/v1/contacts",
        json={"email": "bob@example.com"},
        headers=auth_headers("alice"),
    )

    assert response.status_code == status.HTTP_201_CREATED
    data = response.json()
    assert data["id"] == "bob"
    assert data["display_name"] == "Bob"
    assert data["conversation_id"] == "alice_bob"

    # The edge is symmetric: bob sees alice without doing anything.
    listed = client.get("/api/v1/contacts", headers=auth_headers("bob")).json()
    assert [c["id"] for c in listed] == ["alice", ASSISTANT_USER_ID]


def test_re_adding_contact_returns_ok(client, alice, bob) -> None:
    headers = auth_headers("alice")
    client.post("/api/v1/contacts", json={"user_id": "bob"}, headers=headers)

    response = client.post("/api/v1/contacts", json={"user_id": "bob"}, headers=headers)

    assert response.status_code == status.HTTP_200_OK


def test_add_contact_errors(client, alice) -> None:
    headers = auth_headers("alice")

    missing = client.post("/api/v1/contacts", json={"email": "ghost@example.com"}, headers=headers)
    own = client.post("/api/v1/contacts", json={"user_id": "alice"}, headers=headers)
    empty = client.post("/api/v1/contacts", json={}, headers=headers)

    assert missing.status_code == status.HTTP_404_NOT_FOUND
    assert own.status_code == status.HTTP_400_BAD_REQUEST
    assert empty.status_code == 422


def test_remove_contact(client, alice, bob) -> None:
    headers = auth_headers("alice")
    client.post("/api/v1/contacts", json={"user_id": "bob"}, headers=headers)

    response = client.delete("/api/v1/contacts/bob", headers=headers)
    again = client.delete("/api/v1/contacts/bob", headers=headers)

    assert response.status_code == status.HTTP_204_NO_CONTENT
    assert again.status_code == status.HTTP_404_NOT_FOUND
    listed = client.get("/api/v1/contacts", headers=auth_headers("bob")).json()
    assert [c["id"] for c in listed] == [ASSISTANT_USER_ID]
