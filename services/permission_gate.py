# services/permission_gate.py
"""
Table-driven permission gate.

Each rule reads: ``action`` may be performed from ``status`` (optionally only
at ``stage``) by any of ``roles``. Adding a role or an action means adding
rows here; the evaluation code does not change.
"""
from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Tuple

from models.application import Action, ApplicationStatus, Role, Stage

ANY_STAGE = None

_REVIEWERS = frozenset({Role.INTAKE_AGENT, Role.REVIEW_COMMISSION, Role.FINAL_AUTHORITY})


@dataclass(frozen=True)
class TransitionRule:
    action: Action
    status: ApplicationStatus
    stage: Optional[Stage]
    roles: FrozenSet[Role]


TRANSITION_RULES: Tuple[TransitionRule, ...] = (
    TransitionRule(Action.SUBMIT, ApplicationStatus.DRAFT, ANY_STAGE, frozenset({Role.CANDIDATE})),
    TransitionRule(Action.BEGIN_REVIEW, ApplicationStatus.SUBMITTED, ANY_STAGE, frozenset({Role.INTAKE_AGENT})),
    TransitionRule(Action.AGENT_FORWARD, ApplicationStatus.UNDER_REVIEW, Stage.AGENT_REVIEW,
                   frozenset({Role.INTAKE_AGENT})),
    TransitionRule(Action.COMMISSION_VALIDATE, ApplicationStatus.UNDER_REVIEW, Stage.COMMISSION_REVIEW,
                   frozenset({Role.REVIEW_COMMISSION})),
    TransitionRule(Action.COMMISSION_ESCALATE, ApplicationStatus.UNDER_REVIEW, Stage.COMMISSION_REVIEW,
                   frozenset({Role.REVIEW_COMMISSION})),
    TransitionRule(Action.PRESIDENT_DECIDE, ApplicationStatus.UNDER_REVIEW, Stage.PRESIDENT_REVIEW,
                   frozenset({Role.FINAL_AUTHORITY})),
    TransitionRule(Action.REJECT, ApplicationStatus.SUBMITTED, ANY_STAGE, _REVIEWERS),
    TransitionRule(Action.REJECT, ApplicationStatus.UNDER_REVIEW, ANY_STAGE, _REVIEWERS),
)


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str
    role: Optional[Role] = None


def _rules_for(action, status, stage):
    for rule in TRANSITION_RULES:
        if rule.action != action or rule.status != status:
            continue
        if rule.stage is not ANY_STAGE and rule.stage != stage:
            continue
        yield rule


def evaluate(role, status, stage, action) -> GateDecision:
    role = Role.parse(role)
    status = ApplicationStatus(status)
    stage = Stage(stage) if stage is not None else None
    action = Action(action)

    rules = list(_rules_for(action, status, stage))
    if not rules:
        where = status.value if stage is None else f"{status.value}/{stage.value}"
        return GateDecision(False, f"action '{action.value}' is not available from {where}")
    if role is None:
        return GateDecision(False, "unknown role")
    for rule in rules:
        if role in rule.roles:
            return GateDecision(True, f"{role.value} may {action.value}", role)
    return GateDecision(False, f"role '{role.value}' may not {action.value} at stage {stage.value if stage else '-'}")


def stage_owners(status, stage) -> FrozenSet[Role]:
    """Roles that move a case forward from this position (reject excluded)."""
    status = ApplicationStatus(status)
    stage = Stage(stage) if stage is not None else None
    owners = set()
    for rule in TRANSITION_RULES:
        if rule.action == Action.REJECT or rule.status != status:
            continue
        if rule.stage is not ANY_STAGE and rule.stage != stage:
            continue
        owners |= rule.roles
    return frozenset(owners)


def evaluate_any(roles: Iterable, status, stage, action) -> GateDecision:
    """
    Allow when at least one of the presented roles is entitled.

    With several entitled roles the one owning the current stage is chosen,
    so the decision is attributed to that stage's reviewer.
    """
    roles = Role.parse_many(roles)
    if not roles:
        return GateDecision(False, "no role presented")
    allowed = []
    last = None
    for role in sorted(roles, key=lambda r: r.value):
        decision = evaluate(role, status, stage, action)
        if decision.allowed:
            allowed.append(decision)
        else:
            last = decision
    if not allowed:
        return last
    owners = stage_owners(status, stage)
    for decision in allowed:
        if decision.role in owners:
            return decision
    return allowed[0]


def actionable_positions(role, *, include_reject=False):
    """(status, stage) pairs where ``role`` can move a case forward."""
    role = Role.parse(role)
    positions = []
    for rule in TRANSITION_RULES:
        if role not in rule.roles:
            continue
        if rule.action == Action.REJECT and not include_reject:
            continue
        pos = (rule.status, rule.stage)
        if pos not in positions:
            positions.append(pos)
    return positions
