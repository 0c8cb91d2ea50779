"""Node annotation keys and the maintenance state vocabulary."""

from enum import Enum

# Annotation keys
MAINTENANCE_STATE = "drainsafe.azure.com/maintenancestate"
MAINTENANCE_TYPE = "drainsafe.azure.com/maintenancetype"
MAINTENANCE_OWNER = "drainsafe.azure.com/maintenanceowner"


class MaintenanceState(str, Enum):
    """Values stored under MAINTENANCE_STATE, in pipeline order"""

    SCHEDULED = "MaintenanceScheduled"
    PENDING = "MaintenancePending"
    APPROVED = "MaintenanceApproved"
    CORDONING = "NodeCordoning"
    CORDONED = "NodeCordoned"
    DRAINING = "NodeDraining"
    DRAINED = "NodeDrained"
    STARTED = "MaintenanceStarted"
    RUNNING = "NodeRunning"

    def __str__(self) -> str:
        return self.value


# Emitted as an event reason only, never stored
UNCORDONED = "NodeUncordoned"

# Warning event reasons
APPROVAL_FAILED = "MaintenanceApprovalFailed"
CORDON_FAILED = "NodeCordonFailed"
DRAIN_FAILED = "NodeDrainFailed"
UNCORDON_FAILED = "NodeUncordonFailed"
EVENT_APPROVE_FAILED = "ScheduledEventApproveFailed"
EVENT_LIST_FAILED = "ScheduledEventListFailed"
STATE_UPDATE_FAILED = "MaintenanceStateUpdateFailed"

# Maintenance types as reported by the metadata service
REBOOT = "Reboot"
REDEPLOY = "Redeploy"
PREEMPT = "Preempt"
TERMINATE = "Terminate"
FREEZE = "Freeze"

DISRUPTIVE_TYPES = (REBOOT, REDEPLOY, PREEMPT, TERMINATE, FREEZE)

# Drain grace period in seconds, by maintenance type
GRACE_PERIODS = {
    REBOOT: 840,
    FREEZE: 840,
    REDEPLOY: 540,
    PREEMPT: 15,
}
DEFAULT_GRACE_PERIOD = 60


def grace_period(maintenance_type: str) -> int:
    """Drain budget for a maintenance type; unknown or empty types get the default."""
    return GRACE_PERIODS.get(maintenance_type or "", DEFAULT_GRACE_PERIOD)


def parse_state(value):
    """Return the MaintenanceState for a stored value, or None when absent or unknown."""
    if not value:
        return None
    try:
        return MaintenanceState(value)
    except ValueError:
        return None
