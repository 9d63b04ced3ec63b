from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any, Literal

class UserCreate(BaseModel):
    name: str
    email: str
    password: str

class OrgOut(BaseModel):
    id: int
    name: str
    created_at: datetime | None = None
    class Config:
        from_attributes = True

class ApiKeyCreate(BaseModel):
    name: str

class ApiKeyOut(BaseModel):
    id: int
    name: str
    created_at: datetime | None = None
    revoked_at: datetime | None = None
    last_used_at: datetime | None = None
    class Config:
        from_attributes = True

# Locations

class LocationCreate(BaseModel):
    name: str
    primary_category: str | None = None
    city: str | None = None
    address: str | None = None
    phone: str | None = None
    website: str | None = None
    hours_summary: str | None = None
    service_highlights: list[str] | None = None
    place_id: str | None = None

class LocationUpdate(BaseModel):
    name: str | None = None
    primary_category: str | None = None
    city: str | None = None
    address: str | None = None
    phone: str | None = None
    website: str | None = None
    hours_summary: str | None = None
    service_highlights: list[str] | None = None
    place_id: str | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v):
        # Omitted leaves the name unchanged
        if v is None or not v.strip():
            raise ValueError("name cannot be empty")
        return v

class LocationOut(BaseModel):
    id: int
    org_id: int
    name: str
    primary_category: str | None = None
    city: str | None = None
    address: str | None = None
    phone: str | None = None
    website: str | None = None
    hours_summary: str | None = None
    service_highlights: list[str] | None = None
    place_id: str | None = None
    google_location_name: str | None = None
    created_at: datetime | None = None
    class Config:
        from_attributes = True

# Integrations

class InstagramTokenIn(BaseModel):
    location_id: int
    access_token: str
    instagram_user_id: str | None = None
    instagram_username: str | None = None
    token_expires_at: datetime | None = None

class FacebookTokenIn(BaseModel):
    location_id: int
    page_id: str
    page_name: str | None = None
    access_token: str
    expires_at: datetime | None = None

class GBPLocationSelect(BaseModel):
    location_id: int
    google_location_name: str
    title: str | None = None

# Reviews

class ReviewOut(BaseModel):
    id: int
    location_id: int
    source: str
    review_id: str
    review_name: str | None = None
    rating: int | None = None
    review_text: str | None = None
    author_name: str | None = None
    author_photo_url: str | None = None
    published_at: datetime | None = None
    reply_comment: str | None = None
    reply_updated_at: datetime | None = None
    class Config:
        from_attributes = True

class ReviewReplyIn(BaseModel):
    location_id: int
    comment: str
    review_name: str | None = None
    review_id: str | None = None

class ReviewDraftInput(BaseModel):
    review_id: str | None = None
    author_name: str | None = None
    rating: int | None = Field(default=None, ge=1, le=5)
    text: str = Field(min_length=1)
    created_at: str | None = None

class GenerateReplyIn(BaseModel):
    location_id: int
    review: ReviewDraftInput
    tone: Literal["Warm", "Professional", "Apologetic", "Friendly", "Short & direct"]
    length: Literal["Short", "Medium", "Long"]

class BulkReplyIn(BaseModel):
    location_id: int
    review_ids: list[str] = Field(min_length=1, max_length=50)
    tone: Literal["Warm", "Professional", "Apologetic", "Friendly", "Short & direct"] = "Professional"
    length: Literal["Short", "Medium", "Long"] = "Short"

# Inbox

class ConversationOut(BaseModel):
    id: str
    ig_account_id: str
    participant_igsid: str
    participant_username: str | None = None
    participant_name: str | None = None
    participant_profile_pic: str | None = None
    last_message_preview: str | None = None
    last_message_at: datetime | None = None
    updated_time: datetime | None = None
    unread_count: int = 0

class MessageOut(BaseModel):
    id: str
    conversation_id: str
    direction: str
    from_id: str
    to_id: str
    text: str | None = None
    attachments: Any = None
    created_time: datetime
    read_at: datetime | None = None
    class Config:
        from_attributes = True

class MarkReadIn(BaseModel):
    location_id: int
    conversation_id: str

class SendMessageIn(BaseModel):
    location_id: int
    conversation_id: str
    text: str = Field(min_length=1, max_length=1000)

class AIDraftIn(BaseModel):
    location_id: int
    conversation_id: str

# Comments

class CommentOut(BaseModel):
    id: str
    media_id: str
    media_permalink: str | None = None
    parent_id: str | None = None
    text: str | None = None
    username: str | None = None
    timestamp: datetime | None = None
    like_count: int | None = None
    replied: bool = False
    reply_text: str | None = None
    replied_at: datetime | None = None
    class Config:
        from_attributes = True

class CommentReplyIn(BaseModel):
    location_id: int
    comment_id: str
    message: str = Field(min_length=1, max_length=2200)
