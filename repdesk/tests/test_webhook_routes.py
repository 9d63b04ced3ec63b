import logging
from unittest.mock import patch

import pytest

from repdesk.config import settings
from repdesk.models import (
    InstagramConversation,
    InstagramDMEvent,
    InstagramDMUnmatchedEvent,
    InstagramMessage,
    InstagramSyncState,
    InstagramUserCache,
)
from repdesk.services.instagram_graph import GraphAPIError
from repdesk.tests.factories import (
    CUSTOMER_IGSID,
    IG_ACCOUNT_ID,
    VERIFY_TOKEN,
    changes_payload,
    messaging_payload,
    signed,
)

URL = "/webhooks/meta/instagram"

@pytest.fixture(autouse=True)
def profile_lookup():
    with patch("repdesk.services.instagram_identity.get_user_profile", return_value={"username": "sam.smiles", "name": "Sam"}) as mocked:
        yield mocked

def _post(client, payload):
    body, headers = signed(payload)
    return client.post(URL, content=body, headers=headers)

def test_verify_handshake_returns_challenge_verbatim(client, db, ig_connection):
    resp = client.get(URL, params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1158201444"})

    assert resp.status_code == 200
    assert resp.text == "1158201444"
    assert resp.headers["content-type"].startswith("text/plain")

    state = db.query(InstagramSyncState).filter_by(business_location_id=ig_connection.business_location_id).one()
    assert state.webhook_verified_at is not None

def test_verify_handshake_rejects_wrong_token(client):
    resp = client.get(URL, params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "123"})
    assert resp.status_code == 403
    assert resp.json() == {"error": "Verification failed"}

def test_verify_handshake_rejects_wrong_mode(client):
    resp = client.get(URL, params={"hub.mode": "unsubscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "123"})
    assert resp.status_code == 403

def test_post_without_secret_configured(client):
    body, headers = signed(messaging_payload("mid.1"))
    with patch.object(settings, "meta_app_secret", None):
        resp = client.post(URL, content=body, headers=headers)
    assert resp.status_code == 500
    assert resp.json() == {"error": "Webhook secret not configured"}

def test_post_with_tampered_body_is_rejected(client, db, ig_connection):
    body, headers = signed(messaging_payload("mid.1"))
    resp = client.post(URL, content=body.replace(b"Saturday", b"Sunday"), headers=headers)

    assert resp.status_code == 403
    assert resp.json() == {"error": "invalid_signature"}
    assert db.query(InstagramMessage).count() == 0

def test_post_without_signature_header(client):
    resp = client.post(URL, content=b'{"object":"instagram"}', headers={"Content-Type": "application/json"})
    assert resp.status_code == 403
    assert resp.json() == {"error": "invalid_signature"}

def test_signature_mismatch_debug_capture(client, caplog):
    caplog.set_level(logging.INFO)
    with patch.object(settings, "meta_webhook_debug_capture", True):
        resp = client.post(URL, content=b'{"object":"instagram"}', headers={"X-Hub-Signature-256": "sha256=" + "0" * 64})

    assert resp.status_code == 403
    record = next(r for r in caplog.records if r.getMessage() == "meta_webhook_invalid_signature")
    assert record.body_b64 == "eyJvYmplY3QiOiJpbnN0YWdyYW0ifQ=="
    assert record.received_prefix == "sha256=00000000"
    assert record.expected_prefix.startswith("sha256=")

def test_invalid_json_after_valid_signature(client):
    body, headers = signed(b"{not json")
    resp = client.post(URL, content=body, headers=headers)
    assert resp.status_code == 400
    assert resp.json() == {"error": "invalid_payload"}

def test_message_is_persisted_and_counted(client, db, ig_connection, profile_lookup):
    resp = _post(client, messaging_payload("mid.abc", text="Do you take walk-ins?"))
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}

    message = db.get(InstagramMessage, "mid.abc")
    assert message is not None
    assert message.direction == "inbound"
    assert message.text == "Do you take walk-ins?"

    conversation = db.get(InstagramConversation, message.conversation_id)
    assert conversation.participant_igsid == CUSTOMER_IGSID
    assert conversation.unread_count == 1

    assert db.query(InstagramDMEvent).filter_by(message_id="mid.abc").count() == 1
    state = db.query(InstagramSyncState).filter_by(business_location_id=ig_connection.business_location_id).one()
    assert state.last_webhook_event_at is not None
    assert state.last_webhook_error is None

    profile_lookup.assert_called_once()
    cached = db.query(InstagramUserCache).filter_by(ig_user_id=CUSTOMER_IGSID).one()
    assert cached.username == "sam.smiles"

def test_duplicate_mid_creates_single_row(client, db, ig_connection):
    _post(client, messaging_payload("mid.dup"))
    _post(client, messaging_payload("mid.dup"))
    # Same message delivered through the other shape
    _post(client, changes_payload("mid.dup"))

    assert db.query(InstagramMessage).filter_by(id="mid.dup").count() == 1
    assert db.query(InstagramDMEvent).filter_by(message_id="mid.dup").count() == 1
    conversation = db.query(InstagramConversation).one()
    assert conversation.unread_count == 1

def test_absurd_timestamp_still_stores_message(client, db, ig_connection):
    resp = _post(client, messaging_payload("mid.far", timestamp=10**20))
    assert resp.status_code == 200
    assert db.get(InstagramMessage, "mid.far") is not None
    state = db.query(InstagramSyncState).filter_by(business_location_id=ig_connection.business_location_id).one()
    assert state.last_webhook_error is None

def test_current_shape_is_processed(client, db, ig_connection):
    resp = _post(client, changes_payload("mid.changes"))
    assert resp.status_code == 200
    assert db.get(InstagramMessage, "mid.changes") is not None

def test_echo_of_business_reply_resets_unread(client, db, ig_connection):
    _post(client, messaging_payload("mid.in1", timestamp=1718000000000))
    _post(client, messaging_payload("mid.in2", timestamp=1718000001000))
    _post(client, messaging_payload("mid.out", text="Yes we do!", sender=IG_ACCOUNT_ID, recipient=CUSTOMER_IGSID, timestamp=1718000002000))

    conversation = db.query(InstagramConversation).one()
    assert conversation.unread_count == 0
    assert conversation.last_message_preview == "Yes we do!"
    assert db.get(InstagramMessage, "mid.out").direction == "outbound"

def test_unknown_account_is_kept_as_unmatched(client, db):
    resp = _post(client, messaging_payload("mid.lost", account="178414999", recipient="178414999"))
    assert resp.status_code == 200

    unmatched = db.query(InstagramDMUnmatchedEvent).one()
    assert unmatched.ig_account_id == "178414999"
    assert unmatched.message_id == "mid.lost"
    assert db.query(InstagramMessage).count() == 0

def test_test_payload_is_acknowledged_and_ignored(client, db):
    resp = _post(client, messaging_payload("mid.test", account="0"))
    assert resp.status_code == 200
    assert db.query(InstagramMessage).count() == 0
    assert db.query(InstagramDMUnmatchedEvent).count() == 0

def test_identity_failure_does_not_block_ingestion(client, db, ig_connection, profile_lookup):
    profile_lookup.side_effect = GraphAPIError("Unsupported get request", status=400, code=100)
    _post(client, messaging_payload("mid.noprofile"))

    assert db.get(InstagramMessage, "mid.noprofile") is not None
    cached = db.query(InstagramUserCache).filter_by(ig_user_id=CUSTOMER_IGSID).one()
    assert cached.fail_count == 1

def test_missing_mid_gets_generated_id(client, db, ig_connection):
    payload = messaging_payload("ignored")
    del payload["entry"][0]["messaging"][0]["message"]["mid"]
    _post(client, payload)

    message = db.query(InstagramMessage).one()
    assert message.id.startswith("wh_")

def test_status_reports_configuration(client, db, auth_headers, location, ig_connection):
    _post(client, messaging_payload("mid.status"))
    resp = client.get(f"{URL}/status", params={"location_id": location.id}, headers=auth_headers)

    assert resp.status_code == 200
    data = resp.json()
    assert data["secret_configured"] is True
    assert data["verify_token_configured"] is True
    assert data["instagram_connected"] is True
    assert data["last_webhook_event_at"] is not None

def test_status_of_foreign_location_is_404(client, auth_headers, user, other_location):
    resp = client.get(f"{URL}/status", params={"location_id": other_location.id}, headers=auth_headers)
    assert resp.status_code == 404
