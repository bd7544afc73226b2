from kvm_fleet.models import ProvisioningState


# Provisioning order. FAILED is not part of it: it is reachable from anywhere
# and resumes from the record's last completed state.
PIPELINE_ORDER: list[str] = [
    ProvisioningState.PLANNED.value,
    ProvisioningState.CLONED.value,
    ProvisioningState.CONFIGURED.value,
    ProvisioningState.NETWORK_ATTACHED.value,
    ProvisioningState.CUSTOMIZED.value,
    ProvisioningState.STARTED.value,
    ProvisioningState.REACHABLE.value,
]


def _rank(state: str) -> int:
    try:
        return PIPELINE_ORDER.index(state)
    except ValueError:
        raise ValueError(f"unknown provisioning state {state}") from None


def can_transition(current: str, target: str, last_completed: str | None = None) -> bool:
    if current == target:
        return True
    if target == ProvisioningState.FAILED.value:
        return True
    if current == ProvisioningState.FAILED.value:
        if last_completed is None:
            return False
        return _rank(target) == _rank(last_completed) + 1
    if target not in PIPELINE_ORDER or current not in PIPELINE_ORDER:
        return False
    return _rank(target) == _rank(current) + 1


def is_completed(state: str, last_completed: str) -> bool:
    """True when ``state`` was already reached by a record whose last
    successful state is ``last_completed``."""
    return _rank(state) <= _rank(last_completed)


def is_terminal_success(state: str) -> bool:
    return state == ProvisioningState.REACHABLE.value
