from __future__ import annotations
from sqlalchemy import Column, Integer, String, DateTime
from app.core.database import Base

# Upstream tables written by the publishing/moderation/integration services.
# The controller only runs aggregate reads against them.

class PromotionEvent(Base):
    __tablename__ = "promotion_events"
    id = Column(Integer, primary_key=True)
    event_type = Column(String(64), nullable=False, index=True)   # published | publish_blocked | publish_failed | ...
    channel = Column(String(64), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, index=True)

class ModerationTask(Base):
    __tablename__ = "media_moderation_tasks"
    id = Column(Integer, primary_key=True)
    status = Column(String(32), default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    due_at = Column(DateTime(timezone=True), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

class SyncRun(Base):
    __tablename__ = "integration_sync_runs"
    id = Column(Integer, primary_key=True)
    integration = Column(String(64), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True, index=True)
