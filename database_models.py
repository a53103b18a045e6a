from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from database import Base

SENDER_USER = "user"
SENDER_PERSONA = "persona"

# Closed set of subscription states mirrored from the payment processor
SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_TRIALING = "trialing"
SUBSCRIPTION_PAST_DUE = "past_due"
SUBSCRIPTION_CANCELED = "canceled"
SUBSCRIPTION_INACTIVE = "inactive"
SUBSCRIPTION_STATUSES = (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_TRIALING,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_INACTIVE,
)


class User(Base):
    """
    Registered account with its billing state.
    Credits never go below zero; lifetime access is never revoked by the chat flow.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_operator = Column(Boolean, default=False, nullable=False)
    credits = Column(Integer, default=0, nullable=False)
    lifetime_access = Column(Boolean, default=False, nullable=False)
    stripe_customer_id = Column(String, nullable=True, unique=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    subscription = relationship(
        "Subscription", back_populates="user", uselist=False, lazy="noload"
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )


class Message(Base):
    """
    One turn of a (user, persona) conversation. Rows are never updated;
    the autoincrement id is the ordering key.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    persona_id = Column(String, nullable=False)
    sender = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("sender IN ('user', 'persona')", name="ck_messages_sender"),
        Index("ix_messages_pair_order", "user_id", "persona_id", "id"),
        Index("ix_messages_user_sender", "user_id", "sender"),
    )


class Subscription(Base):
    """Per-user mirror of the Stripe subscription object."""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    tier = Column(String, nullable=True)
    status = Column(String, default=SUBSCRIPTION_INACTIVE, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    current_period_end = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    # Epoch seconds of the processor state this row reflects
    processor_updated_at = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="subscription")

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'trialing', 'past_due', 'canceled', 'inactive')",
            name="ck_subscriptions_status",
        ),
    )


class TakeoverRecord(Base):
    """Human operator ownership of a (user, persona) conversation."""
    __tablename__ = "takeovers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    persona_id = Column(String, nullable=False)
    operator_name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # At most one active record per pair
        Index(
            "uq_takeovers_active_pair",
            "user_id",
            "persona_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class ProcessedWebhookEvent(Base):
    """Stripe event ids already applied; guards against at-least-once redelivery."""
    __tablename__ = "processed_webhook_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)
