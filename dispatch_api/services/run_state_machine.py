from enum import Enum


class CampaignRunKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class CampaignRunStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    PAUSED = "paused"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({CampaignRunStatus.DONE, CampaignRunStatus.FAILED})

VALID_TRANSITIONS = {
    CampaignRunStatus.QUEUED: [CampaignRunStatus.SENDING, CampaignRunStatus.PAUSED, CampaignRunStatus.FAILED],
    CampaignRunStatus.SENDING: [CampaignRunStatus.DONE, CampaignRunStatus.FAILED, CampaignRunStatus.PAUSED],
    CampaignRunStatus.PAUSED: [CampaignRunStatus.QUEUED, CampaignRunStatus.SENDING],
    CampaignRunStatus.DONE: [],
    CampaignRunStatus.FAILED: [],
}


class InvalidRunTransitionError(Exception):
    def __init__(self, from_status: CampaignRunStatus, to_status: CampaignRunStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid run transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: CampaignRunStatus, to_status: CampaignRunStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_status, [])
    return to_status in allowed


def transition(from_status: CampaignRunStatus, to_status: CampaignRunStatus) -> CampaignRunStatus:
    """Perform run transition. Raises InvalidRunTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidRunTransitionError(from_status, to_status)
    return to_status


def is_terminal(status: CampaignRunStatus) -> bool:
    return status in TERMINAL_STATUSES
