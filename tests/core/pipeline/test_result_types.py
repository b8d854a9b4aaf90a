# tests/core/pipeline/test_result_types.py
"""
Testes dos tipos canônicos de resultado (Status, Lifecycle, RunReport).

Os testes asseguram que:
- a agregação de status escolhe o pior status presente
- a máquina de estados rejeita transições inválidas
- ExecutionResult e RunReport fazem round-trip por dict
- o exit code do RunReport reflete SUCCESS/UNSTABLE como 0
"""

import pytest

from esteira.core.exceptions import InvalidTransitionError
from esteira.core.pipeline.types import (
    AttemptRecord,
    ExecutionResult,
    Lifecycle,
    ResultKind,
    RunReport,
    Status,
    worst_status,
)


def test_worst_status():
    assert worst_status([]) is Status.SUCCESS
    assert worst_status([Status.SUCCESS, Status.UNSTABLE]) is Status.UNSTABLE
    assert worst_status([Status.UNSTABLE, Status.FAILURE, Status.SUCCESS]) is Status.FAILURE
    assert worst_status([Status.FAILURE, Status.ABORTED]) is Status.ABORTED


def test_lifecycle_happy_path():
    lc = Lifecycle("stage build")
    assert lc.status is Status.PENDING

    lc.transition(Status.RUNNING)
    lc.transition(Status.SUCCESS)

    assert lc.status is Status.SUCCESS


def test_lifecycle_pending_may_abort_before_running():
    lc = Lifecycle("run app-1")
    lc.transition(Status.ABORTED)
    assert lc.status is Status.ABORTED


@pytest.mark.parametrize(
    "path",
    [
        [Status.SUCCESS],
        [Status.RUNNING, Status.RUNNING],
        [Status.RUNNING, Status.FAILURE, Status.SUCCESS],
        [Status.RUNNING, Status.PENDING],
    ],
)
def test_lifecycle_rejects_invalid_transitions(path):
    """
    Verifica que nenhuma transição sai de um estado terminal e que RUNNING
    é alcançado no máximo uma vez.
    """
    lc = Lifecycle("step")
    with pytest.raises(InvalidTransitionError):
        for target in path:
            lc.transition(target)


def test_report_round_trip_and_lookup():
    step = ExecutionResult(
        id="build/0",
        kind=ResultKind.STEP,
        status=Status.FAILURE,
        duration_ms=12,
        exit_code=2,
        attempts=(
            AttemptRecord(attempt=1, status=Status.FAILURE, duration_ms=5, exit_code=2),
            AttemptRecord(attempt=2, status=Status.FAILURE, duration_ms=7, exit_code=2),
        ),
    )
    stage = ExecutionResult(id="build", kind=ResultKind.STAGE, status=Status.FAILURE, children=(step,))
    report = RunReport(run_id="app-1", pipeline="app", build_number=1, status=Status.FAILURE, stages=[stage])

    again = RunReport.from_dict(report.to_dict())

    assert again == report
    assert again.find("build/0").attempts[1].attempt == 2
    assert again.find("missing") is None


@pytest.mark.parametrize(
    "status, code",
    [(Status.SUCCESS, 0), (Status.UNSTABLE, 0), (Status.FAILURE, 1), (Status.ABORTED, 1)],
)
def test_report_exit_code(status, code):
    assert RunReport(run_id="r", pipeline="p", build_number=1, status=status).exit_code == code
