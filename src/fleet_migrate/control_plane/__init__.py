"""Control-plane public API."""

from fleet_migrate.control_plane.followup import FollowupOutcome, FollowupRunner, FollowupStatus
from fleet_migrate.control_plane.orchestrator import MigrationOrchestrator, RunOptions, RunSummary

__all__ = [
    "FollowupOutcome",
    "FollowupRunner",
    "FollowupStatus",
    "MigrationOrchestrator",
    "RunOptions",
    "RunSummary",
]
