import os, tempfile
from datetime import datetime, timedelta, timezone

# must be set before anything under app/ is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["MONITOR_ENABLED"] = "0"
os.environ["AUDIT_DIR"] = tempfile.mkdtemp(prefix="freeze-audit-")
os.environ.pop("OPS_ALERT_WEBHOOK_URL", None)
for _k in [k for k in os.environ if k.startswith("LAUNCH_FREEZE_")]:
    os.environ.pop(_k)

import pytest

from app.core.database import Base, SessionLocal, engine
from app.crud.metrics_source import MetricsSource, ModerationCounts, PublishCounts
from app.services import ops_channel
from app.services.ops_channel import OpsAlertResult
from app.utils.runtime_config import set_ops_webhook
import app.models  # noqa: F401

NOW = datetime(2026, 3, 2, 12, 30, tzinfo=timezone.utc)


class FakeMetricsSource(MetricsSource):
    """Same counts for every window; `latest_sync` may be None (never synced)."""

    def __init__(self, publish=PublishCounts(), moderation=ModerationCounts(), latest_sync=None, error=None):
        self.publish = publish
        self.moderation = moderation
        self.latest_sync = latest_sync
        self.error = error
        self.calls = 0

    def publish_counts(self, since, until):
        self.calls += 1
        if self.error:
            raise self.error
        return self.publish

    def moderation_counts(self, since, until):
        return self.moderation

    def latest_sync_completed_at(self):
        return self.latest_sync


class RecordingSink:
    def __init__(self, delivered=True, reason=None):
        self.delivered = delivered
        self.reason = reason
        self.calls = []

    def __call__(self, source, severity, title, message, details=None):
        self.calls.append({"source": source, "severity": severity, "title": title,
                           "message": message, "details": details or {}})
        return OpsAlertResult(delivered=self.delivered, reason=None if self.delivered else (self.reason or "http_500"))


def healthy_source(now=NOW):
    return FakeMetricsSource(
        publish=PublishCounts(published=100, blocked=0, failed=0),
        moderation=ModerationCounts(due=10, on_time=10, late=0),
        latest_sync=now - timedelta(hours=1),
    )

def critical_source(now=NOW):
    # 90/5/5 against a 0.97 target burns ~333% of the budget
    return FakeMetricsSource(
        publish=PublishCounts(published=90, blocked=5, failed=5),
        moderation=ModerationCounts(due=10, on_time=10, late=0),
        latest_sync=now - timedelta(hours=1),
    )

def empty_source():
    return FakeMetricsSource()


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture(autouse=True)
def _reset_ops_channel():
    set_ops_webhook("")
    ops_channel.reset_rate_limit_cache()
    yield
    set_ops_webhook("")
    ops_channel.reset_rate_limit_cache()
