from dispatch_api.services.guardrail_policy import (
    GUARDRAIL_POLICIES,
    GuardrailPolicy,
    PaceProfile,
    resolve_policy,
)
from dispatch_api.services.run_state_machine import (
    CampaignRunKind,
    CampaignRunStatus,
    InvalidRunTransitionError,
    can_transition,
    transition,
)
