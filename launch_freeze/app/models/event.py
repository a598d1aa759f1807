from __future__ import annotations
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index
from app.core.database import Base
from app.utils.clock import utc_now

# source tags (the discriminator of the append-only log)
AUDIT_SOURCE = "launch_freeze_audit"
OVERRIDE_SOURCE = "launch_freeze_override"
OVERRIDE_REQUEST_SOURCE = "launch_freeze_override_request"
OVERRIDE_DECISION_SOURCE = "launch_freeze_override_decision"
POSTMORTEM_SOURCE = "launch_freeze_postmortem"
POSTMORTEM_SLA_SOURCE = "launch_freeze_postmortem_sla"
LAUNCH_BLOCK_SOURCE = "launch_freeze"


class FreezeEvent(Base):
    """One immutable row of the launch-freeze log. Rows are only ever inserted."""
    __tablename__ = "freeze_events"
    id = Column(Integer, primary_key=True)
    source = Column(String(64), nullable=False, index=True)
    event = Column(String(32), nullable=True)            # entered | cleared | recovery_hold | updated | ...
    status = Column(String(32), nullable=True)           # active | cleared | pending | approved | completed | open
    severity = Column(String(16), default="info")        # info | warning | critical
    incident_key = Column(String(200), nullable=True, index=True)
    ref_id = Column(Integer, nullable=True, index=True)  # decision -> request id
    actor = Column(String(255), nullable=True)
    title = Column(String(300), nullable=False, default="")
    message = Column(Text, nullable=True)
    details = Column(JSON, default=dict)
    dedupe_key = Column(String(255), nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False, index=True)

    __table_args__ = (
        Index("ix_freeze_events_source_created", "source", "created_at"),
    )
