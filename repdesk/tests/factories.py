import json
from unittest.mock import MagicMock

from repdesk.services.meta_webhooks import compute_signature

APP_SECRET = "test-app-secret"
VERIFY_TOKEN = "test-verify-token"
IG_ACCOUNT_ID = "17841400000000001"
CUSTOMER_IGSID = "990001"

def signed(payload) -> tuple[bytes, dict[str, str]]:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return body, {"X-Hub-Signature-256": compute_signature(body, APP_SECRET), "Content-Type": "application/json"}

def _event(mid, text, sender, recipient, timestamp):
    return {
        "sender": {"id": sender},
        "recipient": {"id": recipient},
        "timestamp": timestamp,
        "message": {"mid": mid, "text": text},
    }

def messaging_payload(mid, text="Hi, are you open Saturday?", sender=CUSTOMER_IGSID, recipient=IG_ACCOUNT_ID, timestamp=1718000000000, account=IG_ACCOUNT_ID):
    """Legacy shape: entry[].messaging[]."""
    return {
        "object": "instagram",
        "entry": [{"id": account, "time": timestamp, "messaging": [_event(mid, text, sender, recipient, timestamp)]}],
    }

def changes_payload(mid, text="Hi, are you open Saturday?", sender=CUSTOMER_IGSID, recipient=IG_ACCOUNT_ID, timestamp=1718000000000, account=IG_ACCOUNT_ID):
    """Current shape: entry[].changes[] with field == "messages"."""
    return {
        "object": "instagram",
        "entry": [{
            "id": account,
            "time": timestamp,
            "changes": [{"field": "messages", "value": _event(mid, text, sender, recipient, timestamp)}],
        }],
    }

def completion(text):
    """Shape of an OpenAI chat completion response, enough for our callers."""
    return MagicMock(choices=[MagicMock(message=MagicMock(content=text))])
