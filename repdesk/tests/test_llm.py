from unittest.mock import MagicMock, patch

import pytest

from repdesk.models import BusinessReview
from repdesk.services import llm
from repdesk.tests.factories import completion

WARM = "Thank you so much for the kind words about our team, we loved having you in and hope to see you again soon!"
WARM_AGAIN = "Thank you so much for the kind words about our team, we loved having you in and hope to see you soon!"
ACTION = "We appreciate you taking the time to share this. Our front desk will follow up on scheduling."
FUTURE = "Feedback like yours shapes how we train new hygienists each season."
DETAILED = "It means a lot that the same-day crown worked out; comfort during long visits is something we keep improving."

def test_similarity_of_near_duplicates():
    assert llm.similarity(WARM, WARM_AGAIN) > 0.8
    assert llm.similarity(WARM, ACTION) < 0.5
    assert llm.similarity("Thanks   so MUCH", "thanks so much") == 1.0

def test_dedupe_keeps_first_occurrence():
    assert llm.dedupe_replies([WARM, WARM_AGAIN, ACTION]) == [WARM, ACTION]

def test_business_context_skips_missing_fields(location):
    context = llm.business_context(location)
    assert "Business name: Harbor Dental" in context
    assert "Phone: (313) 555-0100" in context
    assert "Service highlights: Same-day crowns, Emergency visits" in context
    assert "Address:" not in context

def _client_returning(*texts):
    client = MagicMock()
    client.chat.completions.create.side_effect = [completion(t) for t in texts]
    return client

REVIEW = {"text": "Dr. Kim was great and the crown fit perfectly.", "rating": 5, "author_name": "Pat"}

def test_three_distinct_variations(location):
    client = _client_returning(WARM, ACTION, FUTURE)
    with patch("repdesk.services.llm.get_client", return_value=client):
        replies = llm.generate_review_replies(REVIEW, location, "Warm", "Short")

    assert replies == [WARM, ACTION, FUTURE]
    calls = client.chat.completions.create.call_args_list
    assert [c.kwargs["temperature"] for c in calls] == [0.8, 0.7, 0.9]
    system_prompt = calls[0].kwargs["messages"][0]["content"]
    assert "Harbor Dental" in system_prompt
    assert "Selected tone: Warm" in calls[0].kwargs["messages"][1]["content"]

def test_near_duplicates_are_replaced_by_retries(location):
    # Second draft repeats the first; first retry repeats again; second retry is new
    client = _client_returning(WARM, WARM_AGAIN, ACTION, WARM, DETAILED)
    with patch("repdesk.services.llm.get_client", return_value=client):
        replies = llm.generate_review_replies(REVIEW, location, "Professional", "Medium")

    assert replies == [WARM, ACTION, DETAILED]
    assert client.chat.completions.create.call_count == 5

def test_retries_are_capped(location):
    client = _client_returning(WARM, WARM, WARM, WARM, WARM, WARM)
    with patch("repdesk.services.llm.get_client", return_value=client):
        replies = llm.generate_review_replies(REVIEW, location, "Friendly", "Long")

    assert replies == [WARM]
    assert client.chat.completions.create.call_count == 6

def test_unknown_tone_is_rejected(location):
    with pytest.raises(ValueError):
        llm.generate_review_replies(REVIEW, location, "Sarcastic", "Short")

def test_missing_api_key(location):
    with patch.object(llm.settings, "openai_api_key", None):
        with pytest.raises(llm.LLMError):
            llm.get_client()

def test_generate_reply_route(client, auth_headers, location):
    openai_client = _client_returning(WARM, ACTION, FUTURE)
    with patch("repdesk.services.llm.get_client", return_value=openai_client):
        resp = client.post(
            "/reputation/generate-reply",
            json={"location_id": location.id, "review": REVIEW, "tone": "Warm", "length": "Short"},
            headers=auth_headers,
        )
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "replies": [WARM, ACTION, FUTURE]}

def test_generate_reply_route_validates_tone(client, auth_headers, location):
    resp = client.post(
        "/reputation/generate-reply",
        json={"location_id": location.id, "review": REVIEW, "tone": "Snarky", "length": "Short"},
        headers=auth_headers,
    )
    assert resp.status_code == 422

def test_bulk_reply_drafts_each_review(client, db, auth_headers, location):
    db.add_all([
        BusinessReview(location_id=location.id, source="gbp", review_id="r1", rating=5, review_text="Great visit"),
        BusinessReview(location_id=location.id, source="gbp", review_id="r2", rating=2, review_text="Long wait"),
    ])
    db.commit()

    openai_client = _client_returning(WARM, ACTION)
    with patch("repdesk.services.llm.get_client", return_value=openai_client):
        resp = client.post(
            "/reputation/bulk-reply",
            json={"location_id": location.id, "review_ids": ["missing", "r1", "r2"]},
            headers=auth_headers,
        )

    assert resp.status_code == 200
    drafts = {d["review_id"]: d for d in resp.json()["drafts"]}
    assert drafts["missing"]["error"]
    assert drafts["r1"]["reply"] == WARM
    assert drafts["r2"]["reply"] == ACTION

def test_dm_draft_parses_json(location):
    client = _client_returning('{"reply": "We open at 9 on Saturdays!", "needs_human": false}')
    with patch("repdesk.services.llm.get_client", return_value=client):
        draft = llm.generate_dm_reply([{"direction": "inbound", "text": "Open Saturday?"}], location, participant_name="Sam")

    assert draft == {"reply": "We open at 9 on Saturdays!", "needs_human": False}
    prompt = client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
    assert "Sam: Open Saturday?" in prompt
