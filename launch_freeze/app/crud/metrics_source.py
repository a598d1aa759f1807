"""
Read-only aggregate queries the window evaluator depends on.

`MetricsSource` is the contract; `SqlMetricsSource` answers it from the upstream
promotion/moderation/sync tables. Query errors are not caught here.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime
from typing import NamedTuple, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.models.signals import ModerationTask, PromotionEvent, SyncRun
from app.utils.clock import as_utc

PUBLISH_EVENT_TYPES = ("published", "publish_blocked", "publish_failed")


class PublishCounts(NamedTuple):
    published: int = 0
    blocked: int = 0
    failed: int = 0

    @property
    def evaluated(self) -> int:
        return self.published + self.blocked + self.failed


class ModerationCounts(NamedTuple):
    due: int = 0
    on_time: int = 0
    late: int = 0


class MetricsSource(ABC):
    @abstractmethod
    def publish_counts(self, since: datetime, until: datetime) -> PublishCounts:
        ...

    @abstractmethod
    def moderation_counts(self, since: datetime, until: datetime) -> ModerationCounts:
        """Tasks created in [since, until] that carry a due time; on-time = reviewed-or-until <= due."""

    @abstractmethod
    def latest_sync_completed_at(self) -> Optional[datetime]:
        """Most recent completion across all sync runs; not window-scoped."""


class SqlMetricsSource(MetricsSource):
    def __init__(self, db: Session):
        self.db = db

    def publish_counts(self, since: datetime, until: datetime) -> PublishCounts:
        def _count(kind: str):
            return func.coalesce(func.sum(case((PromotionEvent.event_type == kind, 1), else_=0)), 0)

        row = (
            self.db.query(_count("published"), _count("publish_blocked"), _count("publish_failed"))
            .filter(
                PromotionEvent.event_type.in_(PUBLISH_EVENT_TYPES),
                PromotionEvent.occurred_at >= since,
                PromotionEvent.occurred_at <= until,
            )
            .one()
        )
        return PublishCounts(int(row[0] or 0), int(row[1] or 0), int(row[2] or 0))

    def moderation_counts(self, since: datetime, until: datetime) -> ModerationCounts:
        rows = (
            self.db.query(ModerationTask.reviewed_at, ModerationTask.due_at)
            .filter(
                ModerationTask.due_at.isnot(None),
                ModerationTask.created_at >= since,
                ModerationTask.created_at <= until,
            )
            .all()
        )
        until = as_utc(until)
        on_time = late = 0
        for reviewed_at, due_at in rows:
            if (as_utc(reviewed_at) or until) <= as_utc(due_at):
                on_time += 1
            else:
                late += 1
        return ModerationCounts(due=on_time + late, on_time=on_time, late=late)

    def latest_sync_completed_at(self) -> Optional[datetime]:
        latest = (
            self.db.query(func.max(SyncRun.completed_at))
            .filter(SyncRun.completed_at.isnot(None))
            .scalar()
        )
        if isinstance(latest, str):
            # sqlite hands back max() of a DateTime column as text
            latest = datetime.fromisoformat(latest)
        return as_utc(latest)
