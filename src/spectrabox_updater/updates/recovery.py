"""
Pipeline steps and the recovery action taken when each one fails.
"""

from __future__ import annotations

from enum import Enum


class PipelineStep(str, Enum):
    """
    Steps of an orchestration run, in execution order.

    UNCLASSIFIED marks failures that happen outside any step.
    """

    VALIDATION = "validation"
    BACKUP = "backup"
    SHUTDOWN_PREP = "shutdown_prep"
    SHUTDOWN = "shutdown"
    UPDATE_EXECUTION = "update_execution"
    UNCLASSIFIED = "unclassified"


class RecoveryAction(str, Enum):
    """
    What to do after a step fails.

    - continue: keep the service running unchanged
    - rollback: note the prior version, notify observers, then restart
    - restart: exit with a non-zero code so the supervisor relaunches
    """

    CONTINUE = "continue"
    ROLLBACK = "rollback"
    RESTART = "restart"


PIPELINE_ORDER: tuple[PipelineStep, ...] = (
    PipelineStep.VALIDATION,
    PipelineStep.BACKUP,
    PipelineStep.SHUTDOWN_PREP,
    PipelineStep.SHUTDOWN,
    PipelineStep.UPDATE_EXECUTION,
)

# Every PipelineStep must have an entry
RECOVERY_ACTIONS: dict[PipelineStep, RecoveryAction] = {
    PipelineStep.VALIDATION: RecoveryAction.CONTINUE,
    PipelineStep.BACKUP: RecoveryAction.CONTINUE,
    PipelineStep.SHUTDOWN_PREP: RecoveryAction.CONTINUE,
    # Listener is already closed: only a restart brings the service back
    PipelineStep.SHUTDOWN: RecoveryAction.RESTART,
    PipelineStep.UPDATE_EXECUTION: RecoveryAction.ROLLBACK,
    PipelineStep.UNCLASSIFIED: RecoveryAction.RESTART,
}


def recovery_action_for(step: PipelineStep | str) -> RecoveryAction:
    """
    Return the recovery action for a failed step.

    Unknown step names are treated as unclassified.
    """
    try:
        step = PipelineStep(step)
    except ValueError:
        step = PipelineStep.UNCLASSIFIED
    return RECOVERY_ACTIONS[step]
