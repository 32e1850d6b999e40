"""
Permission gate: every (role, position, action) combination.

The expected table below is written out independently of TRANSITION_RULES so
that an accidental edit to the rules shows up here.
"""

import pytest

from models.application import STAGE_STATUS, Action, ApplicationStatus, Role, Stage
from services import permission_gate

REVIEWERS = {Role.INTAKE_AGENT, Role.REVIEW_COMMISSION, Role.FINAL_AUTHORITY}

EXPECTED = {
    (Action.SUBMIT, Stage.DRAFT): {Role.CANDIDATE},
    (Action.BEGIN_REVIEW, Stage.INTAKE): {Role.INTAKE_AGENT},
    (Action.AGENT_FORWARD, Stage.AGENT_REVIEW): {Role.INTAKE_AGENT},
    (Action.COMMISSION_VALIDATE, Stage.COMMISSION_REVIEW): {Role.REVIEW_COMMISSION},
    (Action.COMMISSION_ESCALATE, Stage.COMMISSION_REVIEW): {Role.REVIEW_COMMISSION},
    (Action.PRESIDENT_DECIDE, Stage.PRESIDENT_REVIEW): {Role.FINAL_AUTHORITY},
    (Action.REJECT, Stage.INTAKE): REVIEWERS,
    (Action.REJECT, Stage.AGENT_REVIEW): REVIEWERS,
    (Action.REJECT, Stage.COMMISSION_REVIEW): REVIEWERS,
    (Action.REJECT, Stage.PRESIDENT_REVIEW): REVIEWERS,
}

CASES = [
    (role, stage, action)
    for role in Role
    for stage in Stage
    for action in Action
]


# =============================================================================
# Full table
# =============================================================================


@pytest.mark.parametrize("role,stage,action", CASES,
                         ids=[f"{r.value}-{s.value}-{a.value}" for r, s, a in CASES])
def test_gate_matches_table(role, stage, action) -> None:
    decision = permission_gate.evaluate(role, STAGE_STATUS[stage], stage, action)
    allowed = role in EXPECTED.get((action, stage), set())
    assert decision.allowed is allowed, decision.reason
    if allowed:
        assert decision.role == role
    else:
        assert decision.reason


# =============================================================================
# Terminal positions and odd inputs
# =============================================================================


class TestTerminalPositions:
    @pytest.mark.parametrize("stage", [Stage.COMPLETED, Stage.REJECTED])
    def test_nothing_leaves_a_terminal_stage(self, stage) -> None:
        for role in Role:
            for action in Action:
                assert not permission_gate.evaluate(role, STAGE_STATUS[stage], stage, action).allowed

    def test_reason_names_the_unavailable_action(self) -> None:
        decision = permission_gate.evaluate(
            Role.FINAL_AUTHORITY, ApplicationStatus.VALIDATED, Stage.COMPLETED, Action.REJECT
        )
        assert "reject" in decision.reason
        assert "validated" in decision.reason


class TestRoleParsing:
    def test_unknown_role_is_denied(self) -> None:
        decision = permission_gate.evaluate(
            "janitor", ApplicationStatus.SUBMITTED, Stage.INTAKE, Action.BEGIN_REVIEW
        )
        assert not decision.allowed
        assert decision.reason == "unknown role"

    def test_legacy_role_names_are_accepted(self) -> None:
        decision = permission_gate.evaluate(
            "president", ApplicationStatus.UNDER_REVIEW, Stage.PRESIDENT_REVIEW, Action.PRESIDENT_DECIDE
        )
        assert decision.allowed
        assert decision.role == Role.FINAL_AUTHORITY

    def test_hyphenated_role(self) -> None:
        assert Role.parse("intake-agent") == Role.INTAKE_AGENT

    def test_parse_many_drops_unknown(self) -> None:
        assert Role.parse_many(["agent", "nobody", "commission"]) == frozenset(
            {Role.INTAKE_AGENT, Role.REVIEW_COMMISSION}
        )


class TestEvaluateAny:
    def test_one_entitled_role_is_enough(self) -> None:
        decision = permission_gate.evaluate_any(
            ["candidate", "review_commission"],
            ApplicationStatus.UNDER_REVIEW, Stage.COMMISSION_REVIEW, Action.COMMISSION_VALIDATE,
        )
        assert decision.allowed
        assert decision.role == Role.REVIEW_COMMISSION

    def test_no_roles(self) -> None:
        decision = permission_gate.evaluate_any(
            [], ApplicationStatus.DRAFT, Stage.DRAFT, Action.SUBMIT
        )
        assert not decision.allowed
        assert decision.reason == "no role presented"

    def test_stage_owner_wins_among_entitled_roles(self) -> None:
        decision = permission_gate.evaluate_any(
            ["intake_agent", "review_commission"],
            ApplicationStatus.UNDER_REVIEW, Stage.COMMISSION_REVIEW, Action.REJECT,
        )
        assert decision.allowed
        assert decision.role == Role.REVIEW_COMMISSION

    def test_stage_owner_at_agent_review(self) -> None:
        decision = permission_gate.evaluate_any(
            ["final_authority", "intake_agent", "review_commission"],
            ApplicationStatus.UNDER_REVIEW, Stage.AGENT_REVIEW, Action.REJECT,
        )
        assert decision.role == Role.INTAKE_AGENT

    def test_no_owner_falls_back_to_first_entitled(self) -> None:
        decision = permission_gate.evaluate_any(
            ["review_commission", "final_authority"],
            ApplicationStatus.SUBMITTED, Stage.INTAKE, Action.REJECT,
        )
        assert decision.role == Role.FINAL_AUTHORITY

    def test_stage_owners(self) -> None:
        assert permission_gate.stage_owners(ApplicationStatus.SUBMITTED, Stage.INTAKE) == {Role.INTAKE_AGENT}
        assert permission_gate.stage_owners(
            ApplicationStatus.UNDER_REVIEW, Stage.PRESIDENT_REVIEW
        ) == {Role.FINAL_AUTHORITY}
        assert permission_gate.stage_owners(ApplicationStatus.REJECTED, Stage.REJECTED) == set()

    def test_system_role_cannot_transition(self) -> None:
        for stage in Stage:
            for action in Action:
                assert not permission_gate.evaluate_any(
                    [Role.SYSTEM], STAGE_STATUS[stage], stage, action
                ).allowed


class TestActionablePositions:
    def test_intake_agent_queue(self) -> None:
        assert permission_gate.actionable_positions(Role.INTAKE_AGENT) == [
            (ApplicationStatus.SUBMITTED, None),
            (ApplicationStatus.UNDER_REVIEW, Stage.AGENT_REVIEW),
        ]

    def test_commission_queue_is_deduplicated(self) -> None:
        assert permission_gate.actionable_positions("commission") == [
            (ApplicationStatus.UNDER_REVIEW, Stage.COMMISSION_REVIEW),
        ]

    def test_reject_positions_are_opt_in(self) -> None:
        positions = permission_gate.actionable_positions(Role.FINAL_AUTHORITY, include_reject=True)
        assert (ApplicationStatus.UNDER_REVIEW, Stage.PRESIDENT_REVIEW) in positions
        assert (ApplicationStatus.SUBMITTED, None) in positions

    def test_system_has_no_queue(self) -> None:
        assert permission_gate.actionable_positions(Role.SYSTEM) == []
