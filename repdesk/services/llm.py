import json
import logging
import re
from typing import Any

from openai import OpenAI, OpenAIError

from ..config import settings
from ..logging_setup import log_event
from ..models import BusinessLocation

logger = logging.getLogger(__name__)

TONES = ["Warm", "Professional", "Apologetic", "Friendly", "Short & direct"]
LENGTHS = ["Short", "Medium", "Long"]

VARIATION_COUNT = 3
MAX_EXTRA_ATTEMPTS = 3
SIMILARITY_THRESHOLD = 0.8

VARIATION_APPROACHES = [
    ('Focus on empathy and personal connection. Use "I" statements and be warm and understanding.', 0.8),
    ('Focus on professionalism and action. Be direct about what you\'ll do to resolve the issue. Use "we" statements.', 0.7),
    ("Focus on appreciation and future improvement. Emphasize learning from feedback and commitment to better service.", 0.9),
]

REVIEW_SYSTEM_PROMPT = """You are writing a public reply to a Google review on behalf of a business.
Rules:
- Output ONLY the final reply text. No headings, no quotes, no bullet points.
- Never use placeholders like {{businessName}} or {{name}}. If a field is missing, write naturally without it.
- Never mention any software or tool.
- Keep it human, specific, and not repetitive.
- Do not claim actions you can't verify (refund issued, manager called, etc).
- Don't ask for personal info publicly.
- If negative: apologize, acknowledge the issue, briefly state intent to fix, invite them to contact the business offline (use phone/website if available), and keep it calm.
- If positive: thank them, mirror a specific detail from the review, reinforce trust, invite them back.
- If review is short/vague: keep reply short and warm.

Tone handling:
- Warm = friendly, appreciative, conversational, not too formal.
- Professional = polite, concise, businesslike.
- Apologetic = empathetic, calm, resolution-focused.
- Friendly = upbeat, casual but still respectful.
- Short & direct = minimal words, no fluff.

Length handling:
- Short = 1-2 sentences
- Medium = 3-5 sentences
- Long = 6-9 sentences (only if it stays natural)

Business context (use when relevant):
{context}"""

class LLMError(Exception):
    pass

def get_client():
    if not settings.openai_api_key:
        raise LLMError("OPENAI_API_KEY is missing. Please set it in your environment or .env file.")
    return OpenAI(api_key=settings.openai_api_key)

def business_context(location: BusinessLocation) -> str:
    """Plain-text business facts the model may draw on. Missing fields are left out."""
    parts = [f"Business name: {location.name}"]
    if location.primary_category:
        parts.append(f"Primary category: {location.primary_category}")
    if location.city:
        parts.append(f"Location/city: {location.city}")
    if location.address:
        parts.append(f"Address: {location.address}")
    if location.phone:
        parts.append(f"Phone: {location.phone}")
    if location.website:
        parts.append(f"Website: {location.website}")
    if location.hours_summary:
        parts.append(f"Hours summary: {location.hours_summary}")
    if location.service_highlights:
        parts.append(f"Service highlights: {', '.join(location.service_highlights)}")
    return "\n".join(parts)

def _normalize(text: str) -> list[str]:
    return re.sub(r"\s+", " ", text.strip().lower()).split(" ")

def similarity(a: str, b: str) -> float:
    """Share of words in a that also appear in b, over the longer of the two."""
    words_a = _normalize(a)
    words_b = _normalize(b)
    in_b = set(words_b)
    common = sum(1 for w in words_a if w in in_b)
    return common / max(len(words_a), len(words_b))

def is_near_duplicate(candidate: str, existing: list[str]) -> bool:
    return any(similarity(candidate, other) > SIMILARITY_THRESHOLD for other in existing)

def dedupe_replies(replies: list[str]) -> list[str]:
    unique = []
    for reply in replies:
        if not is_near_duplicate(reply, unique):
            unique.append(reply)
    return unique

def _complete(client, system: str, user: str, temperature: float, max_tokens: int = 500) -> str:
    try:
        response = client.chat.completions.create(
            model=settings.openai_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except OpenAIError as e:
        logger.error("OpenAI API call failed: %s", e)
        raise LLMError(f"LLM generation failed: {e}")

    if not response.choices:
        raise LLMError("OpenAI API returned no choices")
    text = (response.choices[0].message.content or "").strip()
    if not text:
        raise LLMError("OpenAI response did not contain reply text")
    return text

def _review_user_message(review: dict[str, Any], tone: str, length: str) -> str:
    posted = f"Posted: {review['created_at']}\n" if review.get("created_at") else ""
    return (
        "Review details:\n"
        f"Rating: {review.get('rating') or 'Not specified'}/5\n"
        f"Reviewer: {review.get('author_name') or 'Anonymous'}\n"
        f"Review text: {review['text']}\n"
        f"{posted}\n"
        f"Selected tone: {tone}\n"
        f"Selected length: {length}\n\n"
        "Write a reply that matches the tone and length. Use the business context above. "
        "If the review is negative (rating <= 3), include contact information (phone/website) "
        "ONLY if available in the business context."
    )

def _variation_prompt(base: str, approach: str) -> str:
    return (
        f"{base}\n\nIMPORTANT: Generate a reply with this specific approach:\n{approach}\n\n"
        "Make this variation distinctly different from the others. Use different phrasing, structure, and emphasis."
    )

def generate_review_replies(review: dict[str, Any], location: BusinessLocation, tone: str, length: str) -> list[str]:
    """
    Returns up to three distinct reply drafts for a review.

    review keys: text (required), rating, author_name, created_at.
    Drafts whose word overlap with an earlier draft exceeds 80% are dropped,
    then up to three extra attempts try to make up the difference.
    """
    if tone not in TONES:
        raise ValueError(f"Unsupported tone: {tone}")
    if length not in LENGTHS:
        raise ValueError(f"Unsupported length: {length}")

    client = get_client()
    system = REVIEW_SYSTEM_PROMPT.format(context=business_context(location))
    base = _review_user_message(review, tone, length)

    drafts = [_complete(client, system, _variation_prompt(base, approach), temperature) for approach, temperature in VARIATION_APPROACHES]
    unique = dedupe_replies(drafts)

    attempts = 0
    while len(unique) < VARIATION_COUNT and attempts < MAX_EXTRA_ATTEMPTS:
        attempts += 1
        style = "Be more concise and solution-focused." if len(unique) == 1 else "Be more detailed and explanatory."
        try:
            extra = _complete(client, system, _variation_prompt(base, f"Use a completely different style. {style}"), 0.85)
        except LLMError as e:
            log_event("review_reply_retry_failed", level="warning", error=str(e))
            break
        if not is_near_duplicate(extra, unique):
            unique.append(extra)

    log_event("review_replies_generated", business_location_id=location.id, tone=tone, length=length, count=len(unique), extra_attempts=attempts)
    return unique

def generate_bulk_replies(reviews: list[dict[str, Any]], location: BusinessLocation, tone: str = "Professional", length: str = "Short") -> list[dict[str, Any]]:
    """One draft per review. A failure on one review is reported inline and does not stop the batch."""
    client = get_client()
    system = REVIEW_SYSTEM_PROMPT.format(context=business_context(location))
    results = []
    for review in reviews:
        try:
            reply = _complete(client, system, _review_user_message(review, tone, length), 0.7)
            results.append({"review_id": review.get("review_id"), "reply": reply})
        except LLMError as e:
            results.append({"review_id": review.get("review_id"), "error": str(e)})
    return results

def generate_dm_reply(messages: list[dict[str, Any]], location: BusinessLocation, participant_name: str | None = None) -> dict[str, Any]:
    """Drafts the next outbound DM from the recent thread (oldest first)."""
    client = get_client()
    transcript = "\n".join(
        f"{'Business' if m.get('direction') == 'outbound' else (participant_name or 'Customer')}: {m.get('text') or '[attachment]'}"
        for m in messages
    )
    system = (
        "You reply to Instagram direct messages on behalf of a local business. "
        "Be helpful, brief and friendly. Never invent prices, availability or policies that are not in the business context.\n\n"
        f"Business context:\n{business_context(location)}"
    )
    prompt = f"""
    Conversation so far:
    {transcript}

    Write the business's next reply.

    Return JSON:
    {{
        "reply": "the message text",
        "needs_human": false
    }}
    Set needs_human to true when the customer asks something the business context cannot answer.
    """
    try:
        response = client.chat.completions.create(
            model=settings.openai_model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
        )
    except OpenAIError as e:
        logger.error("OpenAI API call failed: %s", e)
        raise LLMError(f"LLM generation failed: {e}")

    try:
        result = json.loads(response.choices[0].message.content)
    except (TypeError, ValueError):
        raise LLMError("OpenAI response was not valid JSON")
    reply = (result.get("reply") or "").strip()
    if not reply:
        raise LLMError("OpenAI response did not contain reply text")
    return {"reply": reply, "needs_human": bool(result.get("needs_human"))}
