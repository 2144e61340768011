import pytest

from pricehub.models.rule import (
    RunStatus,
    TargetStatus,
    can_transition_run,
    can_transition_target,
    final_run_status,
)


@pytest.mark.parametrize("success,errors,partial,expected", [
    (3, 0, True, RunStatus.APPLIED),
    (0, 3, True, RunStatus.FAILED),
    (2, 1, True, RunStatus.PARTIAL),
    (2, 1, False, RunStatus.APPLIED),
    (0, 0, True, RunStatus.APPLIED),
])
def test_final_run_status(success, errors, partial, expected):
    assert final_run_status(success, errors, partial) == expected


def test_run_transitions():
    assert can_transition_run(RunStatus.QUEUED, RunStatus.APPLYING)
    assert can_transition_run(RunStatus.APPLYING, RunStatus.PARTIAL)
    assert can_transition_run(RunStatus.FAILED, RunStatus.QUEUED)
    assert not can_transition_run(RunStatus.QUEUED, RunStatus.APPLIED)
    assert not can_transition_run(RunStatus.APPLIED, RunStatus.APPLYING)


def test_applied_target_is_final():
    assert can_transition_target(TargetStatus.QUEUED, TargetStatus.APPLIED)
    assert can_transition_target(TargetStatus.FAILED, TargetStatus.QUEUED)
    assert not can_transition_target(TargetStatus.APPLIED, TargetStatus.QUEUED)
    assert not can_transition_target(TargetStatus.APPLIED, TargetStatus.FAILED)
