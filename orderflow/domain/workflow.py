"""Stage, substage and outsource transition rules.

The tables below are the single source of truth for which moves are
legal; the checks raise typed errors before anything is written.
"""

from typing import Dict, FrozenSet, List, Optional, Sequence

from orderflow.domain.actor import Actor
from orderflow.domain.constants import (
    DEFAULT_PRODUCTION_SEQUENCE,
    DEPARTMENTS,
    STAGES,
    SUBSTAGES,
    OutsourceStage,
    Role,
    Stage,
)
from orderflow.domain.errors import (
    InvalidStageError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)

# Forward flow of an item through the shop
NEXT_STAGES: Dict[str, FrozenSet[str]] = {
    Stage.SALES.value: frozenset({Stage.DESIGN.value}),
    Stage.DESIGN.value: frozenset({Stage.PREPRESS.value}),
    Stage.PREPRESS.value: frozenset({Stage.PRODUCTION.value}),
    Stage.PRODUCTION.value: frozenset({Stage.OUTSOURCE.value, Stage.DISPATCH.value}),
    Stage.OUTSOURCE.value: frozenset({Stage.PRODUCTION.value, Stage.DISPATCH.value}),
    Stage.DISPATCH.value: frozenset({Stage.COMPLETED.value}),
    Stage.COMPLETED.value: frozenset(),
}

# Who may hand an item to which department; admins may use any
DEPARTMENT_ASSIGNMENT_MATRIX: Dict[str, FrozenSet[str]] = {
    Role.SALES.value: frozenset({"design", "prepress", "outsource"}),
    Role.DESIGN.value: frozenset({"prepress", "production"}),
    Role.PREPRESS.value: frozenset({"production", "design", "outsource"}),
    Role.PRODUCTION.value: frozenset(),
}

# Department that owns an item once it reaches a stage
DEPARTMENT_FOR_STAGE: Dict[str, str] = {
    Stage.SALES.value: "sales",
    Stage.DESIGN.value: "design",
    Stage.PREPRESS.value: "prepress",
    Stage.PRODUCTION.value: "production",
    Stage.OUTSOURCE.value: "outsource",
    Stage.DISPATCH.value: "dispatch",
    Stage.COMPLETED.value: "production",
}

OUTSOURCE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    OutsourceStage.OUTSOURCED.value: frozenset({OutsourceStage.VENDOR_IN_PROGRESS.value}),
    OutsourceStage.VENDOR_IN_PROGRESS.value: frozenset({
        OutsourceStage.VENDOR_DISPATCHED.value,
        OutsourceStage.OUTSOURCED.value,
    }),
    OutsourceStage.VENDOR_DISPATCHED.value: frozenset({OutsourceStage.RECEIVED_FROM_VENDOR.value}),
    OutsourceStage.RECEIVED_FROM_VENDOR.value: frozenset({OutsourceStage.QUALITY_CHECK.value}),
    OutsourceStage.QUALITY_CHECK.value: frozenset({
        OutsourceStage.DECISION_PENDING.value,
        OutsourceStage.VENDOR_IN_PROGRESS.value,
    }),
    OutsourceStage.DECISION_PENDING.value: frozenset(),
}

QC_RESULTS = {
    "pass": OutsourceStage.DECISION_PENDING.value,
    "fail": OutsourceStage.VENDOR_IN_PROGRESS.value,
}

POST_QC_DESTINATIONS = (Stage.PRODUCTION.value, Stage.DISPATCH.value)

# Roles that follow up with vendors once a job is outsourced
OUTSOURCE_MANAGERS = frozenset({Role.SALES.value, Role.PREPRESS.value, "outsource"})

# Department a stage name maps to when assigning by department
STAGE_FOR_DEPARTMENT: Dict[str, str] = {
    "sales": Stage.SALES.value,
    "design": Stage.DESIGN.value,
    "prepress": Stage.PREPRESS.value,
    "production": Stage.PRODUCTION.value,
    "outsource": Stage.OUTSOURCE.value,
    "dispatch": Stage.DISPATCH.value,
}

# Substage a production item starts on when no sequence was configured
DEFAULT_ENTRY_SUBSTAGE = "printing"


def validate_stage(stage: str) -> str:
    value = (stage or "").strip().lower()
    if value not in STAGES:
        raise InvalidStageError(f"Unknown stage '{stage}'")
    return value


def validate_department(department: str) -> str:
    value = (department or "").strip().lower()
    if value not in DEPARTMENTS:
        raise InvalidStageError(f"Unknown department '{department}'")
    return value


def department_for_stage(stage: str) -> str:
    return DEPARTMENT_FOR_STAGE[validate_stage(stage)]


def check_stage_change(current: Optional[str], new: str, actor: Actor) -> str:
    """Validate a direct stage move and return the normalized target stage."""
    target = validate_stage(new)
    if target == Stage.OUTSOURCE.value:
        raise ValidationError("Items are sent to outsource through a vendor assignment")
    if actor.is_admin or target == current:
        return target

    allowed = set(NEXT_STAGES.get(current or "", ()))
    allowed |= DEPARTMENT_ASSIGNMENT_MATRIX.get(actor.role or "", frozenset())
    if target not in allowed:
        raise InvalidTransitionError(f"Cannot move item from {current} to {target}")
    return target


def check_department_assignment(actor: Actor, department: str) -> str:
    target = validate_department(department)
    if actor.is_admin:
        return target
    if actor.role not in DEPARTMENT_ASSIGNMENT_MATRIX:
        raise PermissionDeniedError("Your role cannot assign orders to departments")
    if target not in DEPARTMENT_ASSIGNMENT_MATRIX[actor.role]:
        raise PermissionDeniedError(f"{actor.role.title()} cannot assign items to {target}")
    return target


def check_outsource_manager(actor: Actor) -> None:
    if actor.is_admin or actor.home_department in OUTSOURCE_MANAGERS:
        return
    raise PermissionDeniedError("Only admin, sales and prepress can manage outsourced jobs")


def should_unassign(assignee_department: Optional[str], new_department: str) -> bool:
    """An assignee from another department (or of unknown department) loses the item."""
    return (assignee_department or "").strip().lower() != new_department


# Production sequencing

def production_sequence(item) -> List[str]:
    return list(item.production_stage_sequence or DEFAULT_PRODUCTION_SEQUENCE)


def validate_sequence(sequence: Sequence[str]) -> List[str]:
    cleaned = [(s or "").strip().lower() for s in sequence or []]
    if not cleaned:
        raise ValidationError("Production sequence must contain at least one substage")
    unknown = [s for s in cleaned if s not in SUBSTAGES]
    if unknown:
        raise InvalidStageError(f"Unknown production substage: {', '.join(unknown)}")
    if len(set(cleaned)) != len(cleaned):
        raise ValidationError("Production sequence cannot repeat a substage")
    return cleaned


def entry_substage(item) -> str:
    if item.production_stage_sequence:
        return item.production_stage_sequence[0]
    return DEFAULT_ENTRY_SUBSTAGE


def next_substage(sequence: Sequence[str], current: str) -> Optional[str]:
    """Substage after ``current``, or None when ``current`` is the last one."""
    if current not in sequence:
        raise InvalidTransitionError(f"Substage '{current}' is not part of the production sequence")
    index = list(sequence).index(current)
    if index + 1 < len(sequence):
        return sequence[index + 1]
    return None


def check_substage_advance(sequence: Sequence[str], current: Optional[str], new: str) -> str:
    target = (new or "").strip().lower()
    if target not in sequence:
        raise InvalidTransitionError(f"Substage '{new}' is not part of the production sequence")
    if current and current in sequence and list(sequence).index(target) <= list(sequence).index(current):
        raise InvalidTransitionError(f"Cannot move production back from {current} to {target}")
    return target


# Outsource sub-machine

def check_outsource_transition(current: Optional[str], new: str) -> str:
    target = (new or "").strip().lower()
    if target not in OUTSOURCE_TRANSITIONS:
        raise InvalidStageError(f"Unknown outsource stage '{new}'")
    if target not in OUTSOURCE_TRANSITIONS.get(current or "", frozenset()):
        raise InvalidTransitionError(f"Cannot move outsource job from {current} to {target}")
    return target


def qc_outcome(result: str) -> str:
    key = (result or "").strip().lower()
    if key not in QC_RESULTS:
        raise ValidationError("Quality check result must be 'pass' or 'fail'")
    return QC_RESULTS[key]


def check_post_qc_decision(current_outsource_stage: Optional[str], decision: str) -> str:
    target = (decision or "").strip().lower()
    if target not in POST_QC_DESTINATIONS:
        raise ValidationError("Decision must be 'production' or 'dispatch'")
    if current_outsource_stage != OutsourceStage.DECISION_PENDING.value:
        raise InvalidTransitionError("Item is not awaiting a post-QC decision")
    return target
