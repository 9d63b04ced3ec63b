# Copyright (c) 2026 Mohammed Hassan. All rights reserved.
# Proprietary and confidential. Unauthorized copying, modification, distribution, or use is prohibited.

from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, Boolean, UniqueConstraint, Index
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()

class Org(Base):
    __tablename__ = "orgs"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    members = relationship("OrgMember", back_populates="org")
    api_keys = relationship("ApiKey", back_populates="org")
    locations = relationship("BusinessLocation", back_populates="org")

class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=True)
    name = Column(String, nullable=True)
    is_active = Column(Boolean, default=True)
    is_superadmin = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    memberships = relationship("OrgMember", back_populates="user")

class OrgMember(Base):
    __tablename__ = "org_members"
    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, ForeignKey("orgs.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    role = Column(String, default="member") # owner, admin, member
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    org = relationship("Org", back_populates="members")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_org_user"),)

class ApiKey(Base):
    __tablename__ = "api_keys"
    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, ForeignKey("orgs.id"), nullable=False)
    name = Column(String, nullable=False)
    key_hash = Column(String, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    org = relationship("Org", back_populates="api_keys")

class BusinessLocation(Base):
    __tablename__ = "business_locations"
    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, ForeignKey("orgs.id"), nullable=False, index=True)

    name = Column(String, nullable=False)
    primary_category = Column(String, nullable=True)
    city = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    phone = Column(String, nullable=True)
    website = Column(String, nullable=True)
    hours_summary = Column(Text, nullable=True)
    service_highlights = Column(JSON, nullable=True) # list of strings
    place_id = Column(String, nullable=True)

    # "accounts/{account}/locations/{location}" once a GBP location is picked
    google_location_name = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    org = relationship("Org", back_populates="locations")
    instagram_connection = relationship("InstagramConnection", back_populates="location", uselist=False, cascade="all, delete-orphan")
    connected_accounts = relationship("ConnectedAccount", back_populates="location", cascade="all, delete-orphan")
    sync_state = relationship("InstagramSyncState", back_populates="location", uselist=False, cascade="all, delete-orphan")
    reviews = relationship("BusinessReview", back_populates="location", cascade="all, delete-orphan")

class InstagramConnection(Base):
    __tablename__ = "instagram_connections"
    id = Column(Integer, primary_key=True, index=True)
    business_location_id = Column(Integer, ForeignKey("business_locations.id", ondelete="CASCADE"), nullable=False, unique=True)

    instagram_user_id = Column(String, nullable=False, index=True)
    instagram_username = Column(String, nullable=True)
    access_token = Column(Text, nullable=False)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSON, nullable=True)

    connected_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    location = relationship("BusinessLocation", back_populates="instagram_connection")

class ConnectedAccount(Base):
    """OAuth connections other than Instagram (Google Business Profile, Facebook pages)."""
    __tablename__ = "connected_accounts"
    id = Column(Integer, primary_key=True, index=True)
    business_location_id = Column(Integer, ForeignKey("business_locations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    provider = Column(String, nullable=False) # google_gbp, facebook
    status = Column(String, nullable=False, default="connected") # connected, revoked, error
    provider_account_id = Column(String, nullable=True)
    account_name = Column(String, nullable=True) # GBP "accounts/123"
    display_name = Column(String, nullable=True)

    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    location = relationship("BusinessLocation", back_populates="connected_accounts")

    __table_args__ = (UniqueConstraint("business_location_id", "provider", name="uq_location_provider"),)

class InstagramSyncState(Base):
    __tablename__ = "instagram_sync_state"
    id = Column(Integer, primary_key=True, index=True)
    business_location_id = Column(Integer, ForeignKey("business_locations.id", ondelete="CASCADE"), nullable=False, unique=True)

    webhook_verified_at = Column(DateTime(timezone=True), nullable=True)
    last_webhook_event_at = Column(DateTime(timezone=True), nullable=True)
    last_webhook_error = Column(Text, nullable=True)

    last_inbox_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_comments_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_error = Column(Text, nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    location = relationship("BusinessLocation", back_populates="sync_state")

class InstagramDMEvent(Base):
    """Append-only log of every webhook message event, keyed by Meta's message id."""
    __tablename__ = "instagram_dm_events"
    id = Column(Integer, primary_key=True, index=True)
    business_location_id = Column(Integer, ForeignKey("business_locations.id", ondelete="CASCADE"), nullable=False)
    ig_user_id = Column(String, nullable=True)
    sender_id = Column(String, nullable=True)
    recipient_id = Column(String, nullable=True)
    message_id = Column(String, nullable=True, unique=True)
    text = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=True)
    raw = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_dm_events_location_timestamp", "business_location_id", "timestamp"),)

class InstagramDMUnmatchedEvent(Base):
    __tablename__ = "instagram_dm_unmatched_events"
    id = Column(Integer, primary_key=True, index=True)
    ig_account_id = Column(String, nullable=False, index=True)
    message_id = Column(String, nullable=True)
    payload_json = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class InstagramConversation(Base):
    __tablename__ = "instagram_conversations"
    id = Column(String, primary_key=True) # conversation id from the API, or conv_<account>_<participant>
    ig_account_id = Column(String, nullable=False, index=True)
    participant_igsid = Column(String, nullable=False)
    updated_time = Column(DateTime(timezone=True), nullable=False)
    last_message_preview = Column(Text, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=False)
    unread_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    messages = relationship("InstagramMessage", back_populates="conversation", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("ig_account_id", "participant_igsid", name="uq_conversation_participant"),)

class InstagramMessage(Base):
    __tablename__ = "instagram_messages"
    id = Column(String, primary_key=True) # message mid
    ig_account_id = Column(String, nullable=False, index=True)
    conversation_id = Column(String, ForeignKey("instagram_conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    direction = Column(String, nullable=False) # inbound, outbound
    from_id = Column(String, nullable=False)
    to_id = Column(String, nullable=False)
    text = Column(Text, nullable=True)
    attachments = Column(JSON, nullable=True)
    created_time = Column(DateTime(timezone=True), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    raw = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    conversation = relationship("InstagramConversation", back_populates="messages")

class InstagramUserCache(Base):
    __tablename__ = "instagram_user_cache"
    id = Column(Integer, primary_key=True, index=True)
    ig_account_id = Column(String, nullable=False, index=True)
    ig_user_id = Column(String, nullable=False, index=True)
    username = Column(String, nullable=True)
    name = Column(String, nullable=True)
    profile_pic = Column(Text, nullable=True)
    follower_count = Column(Integer, nullable=True)
    is_user_follow_business = Column(Boolean, nullable=True)
    last_fetched_at = Column(DateTime(timezone=True), nullable=True)
    fail_count = Column(Integer, nullable=False, default=0)
    last_failed_at = Column(DateTime(timezone=True), nullable=True)
    raw = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("ig_account_id", "ig_user_id", name="uq_user_cache_account_user"),)

class InstagramComment(Base):
    __tablename__ = "instagram_comments"
    id = Column(String, primary_key=True) # comment id from the API
    business_location_id = Column(Integer, ForeignKey("business_locations.id", ondelete="CASCADE"), nullable=False, index=True)
    ig_account_id = Column(String, nullable=False)
    media_id = Column(String, nullable=False, index=True)
    media_permalink = Column(Text, nullable=True)
    parent_id = Column(String, nullable=True)
    text = Column(Text, nullable=True)
    username = Column(String, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=True)
    like_count = Column(Integer, nullable=True)

    replied = Column(Boolean, nullable=False, default=False)
    reply_text = Column(Text, nullable=True)
    reply_id = Column(String, nullable=True)
    replied_at = Column(DateTime(timezone=True), nullable=True)

    raw = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class BusinessReview(Base):
    __tablename__ = "business_reviews"
    id = Column(Integer, primary_key=True, index=True)
    location_id = Column(Integer, ForeignKey("business_locations.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String, nullable=False) # gbp, apify
    review_id = Column(String, nullable=False)
    review_name = Column(String, nullable=True) # GBP resource name, used for replies

    rating = Column(Integer, nullable=True, index=True)
    review_text = Column(Text, nullable=True)
    author_name = Column(String, nullable=True)
    author_photo_url = Column(Text, nullable=True)
    published_at = Column(DateTime(timezone=True), nullable=True, index=True)
    review_url = Column(Text, nullable=True)

    reply_comment = Column(Text, nullable=True)
    reply_updated_at = Column(DateTime(timezone=True), nullable=True)

    raw_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    location = relationship("BusinessLocation", back_populates="reviews")

    __table_args__ = (UniqueConstraint("location_id", "source", "review_id", name="uq_location_source_review"),)

class OAuthState(Base):
    __tablename__ = "oauth_states"
    state = Column(String, primary_key=True)
    provider = Column(String, nullable=False) # instagram, google_gbp
    business_location_id = Column(Integer, ForeignKey("business_locations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    return_to = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
