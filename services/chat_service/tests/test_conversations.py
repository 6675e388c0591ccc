from conftest import auth_headers, create_conversation, send_text

PREFIX = "/api/v1/chat"


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_requires_authentication(client):
    response = client.get(f"{PREFIX}/conversations")
    assert response.status_code == 401
    assert response.json() == {"message": "Authentication required"}


def test_rejects_invalid_token(client):
    response = client.get(f"{PREFIX}/conversations", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401
    assert response.json()["message"] == "Could not validate credentials"


def test_private_conversation_is_created_once(client, broadcaster):
    first = create_conversation(client, 1, [2])
    assert first.status_code == 201
    conversation_id = first.json()["id"]

    second = create_conversation(client, 1, [2])
    assert second.status_code == 200
    assert second.json()["id"] == conversation_id

    # the other participant starting the same chat gets the same conversation
    reverse = create_conversation(client, 2, [1])
    assert reverse.json()["id"] == conversation_id

    rooms = [room for room, _ in broadcaster.named("chat:new_conversation")]
    assert sorted(rooms) == ["user:1", "user:2"]


def test_private_conversation_displays_other_member(client):
    data = create_conversation(client, 1, [2]).json()
    assert data["type"] == "PRIVATE"
    assert data["display_name"] == "Bình Trần"
    assert data["display_avatar"] == f"{PREFIX}/users/2/avatar"
    members = {m["user_id"]: m["is_admin"] for m in data["members"]}
    assert members == {1: True, 2: False}


def test_create_conversation_validation(client):
    response = create_conversation(client, 1, [])
    assert response.status_code == 400
    assert response.json() == {"message": "Member IDs are required"}

    response = create_conversation(client, 1, [2, 3], "GROUP")
    assert response.status_code == 400
    assert response.json() == {"message": "Group name is required"}

    response = create_conversation(client, 1, [2, 3])
    assert response.status_code == 400

    response = create_conversation(client, 1, [99])
    assert response.status_code == 400
    assert "99" in response.json()["message"]

    response = create_conversation(client, 1, [2], "CHANNEL")
    assert response.status_code == 400
    assert response.json() == {"message": "Invalid conversation type"}


def test_group_conversation_with_avatar(client, fake_minio):
    response = client.post(
        f"{PREFIX}/conversations",
        data={"type": "GROUP", "name": "Project X", "member_ids": ["2", "3"]},
        files={"avatar": ("logo.png", b"\x89PNG-avatar", "image/png")},
        headers=auth_headers(1)
    )
    assert response.status_code == 201
    data = response.json()
    assert data["display_name"] == "Project X"
    assert data["avatar_url"] == f"{PREFIX}/conversations/{data['id']}/avatar"
    assert any(key.startswith("chat-avatars/") for key in fake_minio.objects)

    avatar = client.get(data["avatar_url"])
    assert avatar.status_code == 200
    assert avatar.content == b"\x89PNG-avatar"
    assert avatar.headers["cache-control"] == "public, max-age=86400"


def test_list_conversations_orders_by_activity(client):
    private_id = create_conversation(client, 1, [2]).json()["id"]
    group_id = create_conversation(client, 1, [2, 3], "GROUP", "Team").json()["id"]
    send_text(client, 2, private_id, "newest activity")

    response = client.get(f"{PREFIX}/conversations", headers=auth_headers(1))
    assert response.status_code == 200
    data = response.json()
    assert [c["id"] for c in data] == [private_id, group_id]
    assert data[0]["last_message"]["content"] == "newest activity"
    assert data[0]["unread_count"] == 1
    assert data[1]["last_message"] is None


def test_get_conversation_requires_membership(client):
    conversation_id = create_conversation(client, 1, [2]).json()["id"]

    assert client.get(f"{PREFIX}/conversations/{conversation_id}", headers=auth_headers(2)).status_code == 200
    response = client.get(f"{PREFIX}/conversations/{conversation_id}", headers=auth_headers(3))
    assert response.status_code == 404
    assert response.json() == {"message": "Conversation not found"}


def test_update_conversation_admin_only(client, broadcaster):
    conversation_id = create_conversation(client, 1, [2, 3], "GROUP", "Team").json()["id"]

    response = client.put(
        f"{PREFIX}/conversations/{conversation_id}",
        data={"name": "Renamed"},
        headers=auth_headers(2)
    )
    assert response.status_code == 403
    assert response.json() == {"message": "Only admin can update conversation"}

    response = client.put(
        f"{PREFIX}/conversations/{conversation_id}",
        data={"name": "Renamed", "description": "Weekly sync"},
        headers=auth_headers(1)
    )
    assert response.status_code == 200
    assert response.json()["name"] == "Renamed"
    assert response.json()["description"] == "Weekly sync"
    assert len(broadcaster.named("chat:conversation_updated")) == 3


def test_add_members(client, broadcaster):
    group_id = create_conversation(client, 1, [2], "GROUP", "Team").json()["id"]

    response = client.post(
        f"{PREFIX}/conversations/{group_id}/members",
        json={"member_ids": [2, 3, 4]},
        headers=auth_headers(1)
    )
    assert response.status_code == 200
    assert sorted(m["user_id"] for m in response.json()["members"]) == [1, 2, 3, 4]

    new_rooms = [room for room, p in broadcaster.named("chat:new_conversation") if p["conversation_id"] == group_id]
    assert sorted(new_rooms) == ["user:1", "user:2", "user:3", "user:4"]

    forbidden = client.post(
        f"{PREFIX}/conversations/{group_id}/members", json={"member_ids": [3]}, headers=auth_headers(2)
    )
    assert forbidden.status_code == 403


def test_cannot_add_members_to_private_chat(client):
    conversation_id = create_conversation(client, 1, [2]).json()["id"]
    response = client.post(
        f"{PREFIX}/conversations/{conversation_id}/members",
        json={"member_ids": [3]},
        headers=auth_headers(1)
    )
    assert response.status_code == 400
    assert response.json() == {"message": "Cannot add members to private chat"}


def test_add_members_validation_error_is_400(client):
    group_id = create_conversation(client, 1, [2], "GROUP", "Team").json()["id"]
    response = client.post(
        f"{PREFIX}/conversations/{group_id}/members", json={"member_ids": []}, headers=auth_headers(1)
    )
    assert response.status_code == 400
    assert "member_ids" in response.json()["message"]


def test_leave_conversation(client, broadcaster):
    group_id = create_conversation(client, 1, [2, 3], "GROUP", "Team").json()["id"]

    response = client.post(f"{PREFIX}/conversations/{group_id}/leave", headers=auth_headers(3))
    assert response.status_code == 200
    assert response.json() == {"message": "Left conversation successfully"}

    data = client.get(f"{PREFIX}/conversations/{group_id}", headers=auth_headers(1)).json()
    assert sorted(m["user_id"] for m in data["members"]) == [1, 2]

    again = client.post(f"{PREFIX}/conversations/{group_id}/leave", headers=auth_headers(3))
    assert again.status_code == 404


def test_oldest_member_takes_over_when_last_admin_leaves(client, broadcaster):
    group_id = create_conversation(client, 1, [2, 3], "GROUP", "Team").json()["id"]
    client.post(f"{PREFIX}/conversations/{group_id}/members", json={"member_ids": [4]}, headers=auth_headers(1))

    assert client.post(f"{PREFIX}/conversations/{group_id}/leave", headers=auth_headers(1)).status_code == 200

    data = client.get(f"{PREFIX}/conversations/{group_id}", headers=auth_headers(2)).json()
    admins = [m["user_id"] for m in data["members"] if m["is_admin"]]
    assert admins == [2]
    _, payload = broadcaster.named("chat:conversation_updated")[-1]
    assert [m["user_id"] for m in payload["conversation"]["members"] if m["is_admin"]] == [2]

    renamed = client.put(f"{PREFIX}/conversations/{group_id}", data={"name": "Team 2"}, headers=auth_headers(2))
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Team 2"


def test_search(client):
    create_conversation(client, 1, [2])
    create_conversation(client, 1, [3, 4], "GROUP", "Design review")

    by_member = client.get(f"{PREFIX}/conversations/search", params={"q": "carol"}, headers=auth_headers(1))
    assert [c["name"] for c in by_member.json()] == ["Design review"]

    by_name = client.get(f"{PREFIX}/conversations/search", params={"q": "design"}, headers=auth_headers(1))
    assert len(by_name.json()) == 1

    outsider = client.get(f"{PREFIX}/conversations/search", params={"q": "design"}, headers=auth_headers(2))
    assert outsider.json() == []

    users = client.get(f"{PREFIX}/users/search", params={"q": "CAR"}, headers=auth_headers(1))
    assert [u["id"] for u in users.json()] == [3]

    empty = client.get(f"{PREFIX}/users/search", params={"q": "  "}, headers=auth_headers(1))
    assert empty.json() == []


def test_user_avatar_from_data_uri(client):
    response = client.get(f"{PREFIX}/users/2/avatar")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content.startswith(b"\x89PNG")

    assert client.get(f"{PREFIX}/users/1/avatar").status_code == 404
