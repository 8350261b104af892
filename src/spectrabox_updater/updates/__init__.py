"""
Self-update mechanism for SpectraBox.

This package implements the complete self-update functionality:
- Version file management (Version.txt) and version comparison
- GitHub release and commit lookup with caching
- Update status broadcasting to connected observers
- Install script validation and execution
- Orchestration pipeline with step-specific recovery
"""

from spectrabox_updater.updates.github import (
    CommitInfo,
    GitHubResolver,
    RateLimitInfo,
    ReleaseInfo,
    UpdateCheckResult,
)
from spectrabox_updater.updates.manager import UpdateManager
from spectrabox_updater.updates.orchestrator import (
    BackupRecord,
    StepRecord,
    UpdateAttempt,
    UpdateOrchestrator,
)
from spectrabox_updater.updates.progress import ProgressEstimator
from spectrabox_updater.updates.recovery import (
    RECOVERY_ACTIONS,
    PipelineStep,
    RecoveryAction,
    recovery_action_for,
)
from spectrabox_updater.updates.script import (
    OutputLine,
    ScriptProcess,
    ScriptResult,
    ScriptRunner,
    validate_update_script,
)
from spectrabox_updater.updates.status import (
    UpdateStatus,
    UpdateStatusBroadcaster,
    UpdateStatusValue,
)
from spectrabox_updater.updates.version import (
    VersionStore,
    VersionValidation,
    compare_versions,
    is_commit_hash,
    is_semantic_version,
    validate_version_string,
)

__all__ = [
    # Version management
    "VersionStore",
    "VersionValidation",
    "compare_versions",
    "is_commit_hash",
    "is_semantic_version",
    "validate_version_string",
    # GitHub
    "GitHubResolver",
    "ReleaseInfo",
    "CommitInfo",
    "RateLimitInfo",
    "UpdateCheckResult",
    # Status
    "UpdateStatusBroadcaster",
    "UpdateStatus",
    "UpdateStatusValue",
    # Script execution
    "validate_update_script",
    "ScriptRunner",
    "ScriptProcess",
    "ScriptResult",
    "OutputLine",
    "ProgressEstimator",
    # Orchestration
    "UpdateOrchestrator",
    "UpdateAttempt",
    "StepRecord",
    "BackupRecord",
    "PipelineStep",
    "RecoveryAction",
    "RECOVERY_ACTIONS",
    "recovery_action_for",
    "UpdateManager",
]
