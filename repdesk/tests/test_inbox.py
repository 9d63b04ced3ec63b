from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from repdesk.models import InstagramConversation, InstagramMessage, InstagramSyncState, InstagramUserCache
from repdesk.services.inbox_sync import sync_inbox
from repdesk.services.instagram_graph import GraphAPIError
from repdesk.services.meta_webhooks import store_message
from repdesk.tests.factories import CUSTOMER_IGSID, IG_ACCOUNT_ID, completion

REMOTE_CONVERSATIONS = [{
    "id": "aWdfZAG06MTpJR01lc3NhZA",
    "updated_time": "2024-06-10T12:05:00+0000",
    "participants": {"data": [{"id": IG_ACCOUNT_ID, "username": "harbordental"}, {"id": CUSTOMER_IGSID, "username": "sam.smiles"}]},
}]

# Graph returns newest first
REMOTE_MESSAGES = [
    {"id": "m3", "created_time": "2024-06-10T12:05:00+0000", "from": {"id": IG_ACCOUNT_ID}, "to": {"data": [{"id": CUSTOMER_IGSID}]}, "message": "See you then!"},
    {"id": "m2", "created_time": "2024-06-10T12:01:00+0000", "from": {"id": CUSTOMER_IGSID}, "to": {"data": [{"id": IG_ACCOUNT_ID}]}, "message": "Can I come at 10?"},
    {"id": "m1", "created_time": "2024-06-10T12:00:00+0000", "from": {"id": CUSTOMER_IGSID}, "to": {"data": [{"id": IG_ACCOUNT_ID}]}, "message": "Hi!"},
]

def _patched_graph():
    return (
        patch("repdesk.services.instagram_graph.list_conversations", return_value=REMOTE_CONVERSATIONS),
        patch("repdesk.services.instagram_graph.list_conversation_messages", side_effect=lambda cid, token: [dict(m) for m in REMOTE_MESSAGES]),
    )

def test_sync_inbox_backfills_without_unread(db, ig_connection):
    convs, msgs = _patched_graph()
    with convs, msgs:
        stats = sync_inbox(db, ig_connection)

    assert stats == {"conversations": 1, "messages": 3, "new_messages": 3}
    conversation = db.get(InstagramConversation, "aWdfZAG06MTpJR01lc3NhZA")
    assert conversation.participant_igsid == CUSTOMER_IGSID
    assert conversation.unread_count == 0
    assert conversation.last_message_preview == "See you then!"
    assert db.get(InstagramMessage, "m3").direction == "outbound"

    state = db.query(InstagramSyncState).one()
    assert state.last_inbox_sync_at is not None

def test_sync_inbox_is_idempotent(db, ig_connection):
    convs, msgs = _patched_graph()
    with convs, msgs:
        sync_inbox(db, ig_connection)
        stats = sync_inbox(db, ig_connection)

    assert stats["new_messages"] == 0
    assert db.query(InstagramMessage).count() == 3
    assert db.query(InstagramConversation).count() == 1

def test_sync_reuses_webhook_conversation(db, ig_connection):
    store_message(
        db,
        ig_account_id=IG_ACCOUNT_ID,
        message_id="m1",
        sender_id=CUSTOMER_IGSID,
        recipient_id=IG_ACCOUNT_ID,
        text="Hi!",
        attachments=None,
        created_time=datetime(2024, 6, 10, 12, 0, tzinfo=timezone.utc),
        raw={},
    )
    convs, msgs = _patched_graph()
    with convs, msgs:
        stats = sync_inbox(db, ig_connection)

    assert stats["new_messages"] == 2
    assert db.query(InstagramConversation).count() == 1
    conversation = db.query(InstagramConversation).one()
    assert conversation.id == f"conv_{IG_ACCOUNT_ID}_{CUSTOMER_IGSID}"
    # The business's last reply clears the unread count
    assert conversation.unread_count == 0

def _seed_thread(db, unread_texts=("Hi!", "Are you open?")):
    for i, text in enumerate(unread_texts):
        msg, _ = store_message(
            db,
            ig_account_id=IG_ACCOUNT_ID,
            message_id=f"seed.{i}",
            sender_id=CUSTOMER_IGSID,
            recipient_id=IG_ACCOUNT_ID,
            text=text,
            attachments=None,
            created_time=datetime(2024, 6, 10, 12, i, tzinfo=timezone.utc),
            raw={},
        )
    return msg.conversation_id

def test_list_conversations_with_identity(client, db, auth_headers, location, ig_connection):
    conversation_id = _seed_thread(db)
    db.add(InstagramUserCache(ig_account_id=IG_ACCOUNT_ID, ig_user_id=CUSTOMER_IGSID, username="sam.smiles", name="Sam", fail_count=0))
    db.commit()

    resp = client.get("/social/instagram/inbox/conversations", params={"location_id": location.id}, headers=auth_headers)
    assert resp.status_code == 200
    [conv] = resp.json()
    assert conv["id"] == conversation_id
    assert conv["participant_username"] == "sam.smiles"
    assert conv["unread_count"] == 2

def test_list_messages_is_chronological(client, db, auth_headers, location, ig_connection):
    conversation_id = _seed_thread(db, ("first", "second", "third"))
    resp = client.get(
        "/social/instagram/inbox/messages",
        params={"location_id": location.id, "conversation_id": conversation_id},
        headers=auth_headers,
    )
    assert [m["text"] for m in resp.json()] == ["first", "second", "third"]

def test_messages_of_unknown_conversation(client, auth_headers, location, ig_connection):
    resp = client.get(
        "/social/instagram/inbox/messages",
        params={"location_id": location.id, "conversation_id": "conv_nope"},
        headers=auth_headers,
    )
    assert resp.status_code == 404

def test_inbox_requires_connection(client, auth_headers, location):
    resp = client.get("/social/instagram/inbox/conversations", params={"location_id": location.id}, headers=auth_headers)
    assert resp.status_code == 404

def test_mark_read(client, db, auth_headers, location, ig_connection):
    conversation_id = _seed_thread(db)
    resp = client.post(
        "/social/instagram/inbox/mark-read",
        json={"location_id": location.id, "conversation_id": conversation_id},
        headers=auth_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["marked"] == 2

    db.expire_all()
    assert db.get(InstagramConversation, conversation_id).unread_count == 0
    assert db.query(InstagramMessage).filter(InstagramMessage.read_at.is_(None)).count() == 0

def test_send_stores_outbound_message(client, db, auth_headers, location, ig_connection):
    conversation_id = _seed_thread(db)
    with patch("repdesk.services.instagram_graph.send_message", return_value={"recipient_id": CUSTOMER_IGSID, "message_id": "mid.sent"}) as send:
        resp = client.post(
            "/social/instagram/inbox/send",
            json={"location_id": location.id, "conversation_id": conversation_id, "text": "Yes, 9 to 2."},
            headers=auth_headers,
        )

    assert resp.status_code == 200
    assert resp.json()["id"] == "mid.sent"
    send.assert_called_once_with(ig_user_id=IG_ACCOUNT_ID, recipient_id=CUSTOMER_IGSID, text="Yes, 9 to 2.", access_token="IGAA-test-token")

    db.expire_all()
    sent = db.get(InstagramMessage, "mid.sent")
    assert sent.direction == "outbound"
    assert db.get(InstagramConversation, conversation_id).unread_count == 0

def test_send_graph_error_is_502(client, db, auth_headers, location, ig_connection):
    conversation_id = _seed_thread(db)
    error = GraphAPIError("(#10) Outside of allowed window", status=400, code=10)
    with patch("repdesk.services.instagram_graph.send_message", side_effect=error):
        resp = client.post(
            "/social/instagram/inbox/send",
            json={"location_id": location.id, "conversation_id": conversation_id, "text": "Hello?"},
            headers=auth_headers,
        )
    assert resp.status_code == 502
    assert resp.json()["meta_error_code"] == 10

def test_sync_route_records_error(client, db, auth_headers, location, ig_connection):
    with patch("repdesk.services.instagram_graph.list_conversations", side_effect=GraphAPIError("Service unavailable", status=503)):
        resp = client.post("/social/instagram/inbox/sync", params={"location_id": location.id}, headers=auth_headers)

    assert resp.status_code == 502
    state = db.query(InstagramSyncState).one()
    assert "Service unavailable" in state.last_sync_error

def test_sync_with_expired_token_asks_for_reconnect(client, db, auth_headers, location, ig_connection):
    expired = MagicMock(status_code=400, reason="Bad Request")
    expired.json.return_value = {"error": {"message": "Error validating access token: Session has expired", "type": "OAuthException", "code": 190, "fbtrace_id": "AxYz"}}
    with patch("repdesk.services.instagram_graph.requests.request", return_value=expired):
        resp = client.post("/social/instagram/inbox/sync", params={"location_id": location.id}, headers=auth_headers)

    assert resp.status_code == 401
    assert resp.json() == {"error": "Error validating access token: Session has expired", "code": "TOKEN_EXPIRED", "provider": "instagram"}
    assert "Session has expired" in db.query(InstagramSyncState).one().last_sync_error

def test_ai_draft(client, db, auth_headers, location, ig_connection):
    conversation_id = _seed_thread(db)
    openai_client = patch("repdesk.services.llm.get_client")
    with openai_client as get_client:
        get_client.return_value.chat.completions.create.return_value = completion('{"reply": "We are open until 2pm!", "needs_human": false}')
        resp = client.post(
            "/social/instagram/inbox/ai-draft",
            json={"location_id": location.id, "conversation_id": conversation_id},
            headers=auth_headers,
        )
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "reply": "We are open until 2pm!", "needs_human": False}
