from .freeze import (
    SloWindowSummary, PublishSummary, ModerationSummary, SyncFreshnessSummary,
    Trigger, FreezeState, AuditSnapshot, LaunchScope, LaunchIncidentResult, AuditSyncSummary,
)
from .override import (
    OverrideDelta, OverrideRecord, OverrideRequestRecord,
    OverrideApplyResult, OverrideRequestResult, OverrideDecisionResult,
)
from .postmortem import PostmortemRecord, PostmortemIncident, PostmortemSlaSummary, PostmortemCompletion
