from dataclasses import dataclass
from enum import Enum


class PaceProfile(str, Enum):
    SAFE = "safe"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class GuardrailPolicy:
    profile: PaceProfile
    # inclusive bounds for spacing between consecutive dispatches
    per_send_min_seconds: int
    per_send_max_seconds: int
    # long pause after every N dispatches
    pause_every_n: int
    pause_min_seconds: int
    pause_max_seconds: int
    max_targets_per_run: int


GUARDRAIL_POLICIES = {
    PaceProfile.SAFE: GuardrailPolicy(
        profile=PaceProfile.SAFE,
        per_send_min_seconds=90,
        per_send_max_seconds=180,
        pause_every_n=10,
        pause_min_seconds=300,
        pause_max_seconds=600,
        max_targets_per_run=30,
    ),
    PaceProfile.BALANCED: GuardrailPolicy(
        profile=PaceProfile.BALANCED,
        per_send_min_seconds=60,
        per_send_max_seconds=120,
        pause_every_n=10,
        pause_min_seconds=240,
        pause_max_seconds=480,
        max_targets_per_run=50,
    ),
    PaceProfile.AGGRESSIVE: GuardrailPolicy(
        profile=PaceProfile.AGGRESSIVE,
        per_send_min_seconds=30,
        per_send_max_seconds=60,
        pause_every_n=10,
        pause_min_seconds=120,
        pause_max_seconds=240,
        max_targets_per_run=80,
    ),
}


def normalize_profile(value) -> PaceProfile:
    """Map any input to a known profile; anything unrecognized is SAFE."""
    if isinstance(value, PaceProfile):
        return value
    try:
        return PaceProfile(str(value or "").strip().lower())
    except ValueError:
        return PaceProfile.SAFE


def resolve_policy(profile) -> GuardrailPolicy:
    return GUARDRAIL_POLICIES[normalize_profile(profile)]
