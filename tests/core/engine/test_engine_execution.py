# tests/core/engine/test_engine_execution.py
"""
Testes de semântica de execução do Pipeline Engine.

Os testes asseguram que:
- um parallel group com uma branch falhando é FAILURE e todas as branches
  terminam com resultado terminal (nenhuma fica RUNNING)
- o stage seguinte nunca inicia antes do join do parallel group
- stages após uma falha são registrados como pulados
- o timeout global termina a run como ABORTED e libera locks
- hooks `always` após o abort são limitados por `hook_grace`
- stage aninhado com o lock do ancestral é rejeitado; branches irmãs com
  o mesmo lock são serializadas
- espera por lock interrompida pela run é ABORTED, não contenção
- `fail_fast` cancela branches irmãs
- `best_effort` transforma falha do stage em UNSTABLE sem interromper a run
- guards falsos pulam o stage sem afetar o status da run
- o limite de concorrência vale para steps de branches paralelas
- retries ficam registrados como cadeia de tentativas e eventos

Decisões arquiteturais:
    - Ações tipadas (duck typing) são usadas onde o teste precisa observar
      concorrência; comandos shell onde o teste observa processos

Limites explícitos:
    - Persistência e retenção são cobertas em tests/core/persistence
"""

import threading
import time

import pytest

from esteira.core.engine import Engine
from esteira.core.errors import LOCK_CONTENTION, RUN_TIMEOUT, STEP_ABORTED
from esteira.core.exceptions import ValidationError
from esteira.core.pipeline.types import Status


def _events(report, event_type):
    return [e for e in report.events if e["event_type"] == event_type]


def _index(report, event_type, subject):
    for i, e in enumerate(report.events):
        if e["event_type"] == event_type and e.get("subject") == subject:
            return i
    raise AssertionError(f"evento {event_type} de {subject} ausente")


def test_parallel_group_with_failing_branch(engine, make_definition):
    """
    Verifica o agregado de um parallel group de 3 branches com a 2ª falhando.

    Invariantes:
        - O grupo é FAILURE
        - As 3 branches têm resultado terminal
        - O stage seguinte é pulado por falha upstream
    """
    d = make_definition(
        stages=[
            {"name": "quality", "parallel": [
                {"name": "lint", "steps": ["sleep 0.2; echo lint ok"]},
                {"name": "unit", "steps": ["echo 2 failed; exit 1"]},
                {"name": "sonar", "steps": ["sleep 0.3; echo sonar ok"]},
            ]},
            {"name": "package", "steps": ["echo never"]},
        ]
    )

    report = engine.run(d)

    quality = report.find("quality")
    assert report.status is Status.FAILURE
    assert report.exit_code == 1
    assert quality.status is Status.FAILURE
    assert [c.id for c in quality.children] == ["quality/lint", "quality/unit", "quality/sonar"]
    assert [c.status for c in quality.children] == [Status.SUCCESS, Status.FAILURE, Status.SUCCESS]
    assert all(c.status.is_terminal for c in quality.children)
    assert quality.summary == "2 failed"

    package = report.find("package")
    assert package.skipped == "upstream_failure"
    assert package.status is Status.ABORTED
    assert "package" not in [e.get("subject") for e in _events(report, "stage_started")]


def test_next_stage_starts_after_parallel_join(engine, make_definition):
    d = make_definition(
        stages=[
            {"name": "build", "parallel": [
                {"name": "api", "steps": [{"action": "sleep", "args": {"seconds": 0.2}}]},
                {"name": "web", "steps": [{"action": "sleep", "args": {"seconds": 0.05}}]},
            ]},
            {"name": "package", "steps": [{"action": "echo", "args": {"message": "ok"}}]},
        ]
    )

    report = engine.run(d)

    assert report.status is Status.SUCCESS
    started = _index(report, "stage_started", "package")
    assert _index(report, "stage_finished", "build/api") < started
    assert _index(report, "stage_finished", "build/web") < started
    assert _index(report, "stage_finished", "build") < started


def test_global_timeout_aborts_run_and_releases_locks(engine, make_definition):
    """
    Verifica que o timeout global termina a run como ABORTED.

    Invariantes:
        - A run termina logo após o timeout (grace limitado)
        - O lock detido pelo stage em andamento é liberado
        - Stages seguintes são pulados como "aborted"
        - Hooks `always` da pipeline ainda executam
    """
    d = make_definition(
        options={"timeout": 0.5},
        stages=[
            {"name": "deploy", "lock": "prod-env", "steps": ["sleep 30"]},
            {"name": "smoke", "steps": ["echo never"]},
        ],
        post={"always": [{"name": "notify", "action": "echo", "args": {"message": "fim"}}]},
    )

    started = time.monotonic()
    report = engine.run(d)
    elapsed = time.monotonic() - started

    assert report.status is Status.ABORTED
    assert report.error["type"] == RUN_TIMEOUT
    assert 0.5 <= elapsed < 5
    assert not engine.locks.is_held("prod-env")
    assert _events(report, "lock_released")[0]["subject"] == "deploy"

    deploy = report.find("deploy")
    assert deploy.status is Status.ABORTED
    assert deploy.children[0].error["type"] == STEP_ABORTED
    assert report.find("smoke").skipped == "aborted"
    assert report.find("post.always/notify").status is Status.SUCCESS


def test_fail_fast_cancels_sibling_branches(engine, make_definition):
    d = make_definition(
        stages=[{"name": "checks", "fail_fast": True, "parallel": [
            {"name": "lint", "steps": [{"action": "error", "args": {"message": "E501"}}]},
            {"name": "e2e", "steps": [{"action": "sleep", "args": {"seconds": 30}}]},
        ]}]
    )

    started = time.monotonic()
    report = engine.run(d)

    assert time.monotonic() - started < 5
    assert report.status is Status.FAILURE
    assert report.find("checks").status is Status.FAILURE
    assert report.find("checks/lint").status is Status.FAILURE
    assert report.find("checks/e2e").status is Status.ABORTED


def test_branch_failure_does_not_cancel_siblings_by_default(engine, make_definition):
    d = make_definition(
        stages=[{"name": "checks", "parallel": [
            {"name": "lint", "steps": [{"action": "error"}]},
            {"name": "unit", "steps": [{"action": "sleep", "args": {"seconds": 0.2}}]},
        ]}]
    )

    report = engine.run(d)

    assert report.find("checks/unit").status is Status.SUCCESS


def test_best_effort_stage_is_unstable_and_run_continues(engine, make_definition):
    d = make_definition(
        stages=[
            {"name": "audit", "best_effort": True, "steps": ["exit 1"]},
            {"name": "package", "steps": ["echo packaged"]},
        ]
    )

    report = engine.run(d)

    assert report.find("audit").status is Status.UNSTABLE
    assert report.find("package").status is Status.SUCCESS
    assert report.status is Status.UNSTABLE
    assert report.exit_code == 0


def test_unstable_step_makes_run_unstable(engine, make_definition):
    d = make_definition(stages=[{"name": "test", "steps": [{"command": "exit 3", "unstable_exit_codes": [3]}]},
                                {"name": "package", "steps": ["true"]}])

    report = engine.run(d)

    assert report.status is Status.UNSTABLE
    assert report.find("package").status is Status.SUCCESS


def test_guard_false_skips_stage(engine, make_definition):
    d = make_definition(
        parameters={"DEPLOY": "false"},
        stages=[
            {"name": "build", "steps": ["true"]},
            {"name": "deploy", "when": {"param": "DEPLOY"}, "steps": ["exit 1"]},
        ],
    )

    report = engine.run(d)

    assert report.status is Status.SUCCESS
    assert report.find("deploy").skipped == "guard"

    report = engine.run(d, {"DEPLOY": "true"})
    assert report.status is Status.FAILURE


def test_concurrency_limit_applies_across_branches(settings, secret_store, make_definition, registry_with):
    state = {"running": 0, "peak": 0}
    guard = threading.Lock()

    def tracked(request):
        with guard:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        request.cancel.wait(0.1)
        with guard:
            state["running"] -= 1

    engine = Engine(settings, secret_store=secret_store, actions=registry_with(tracked=tracked))
    d = make_definition(
        options={"concurrency": 1},
        stages=[{"name": "matrix", "parallel": [
            {"name": f"py3{i}", "steps": [{"action": "tracked"}]} for i in range(4)
        ]}],
    )

    report = engine.run(d)

    assert report.status is Status.SUCCESS
    assert state["peak"] == 1


def test_retries_are_recorded(settings, secret_store, make_definition, registry_with, FlakyAction):
    flaky = FlakyAction(succeed_on=3)
    engine = Engine(settings, secret_store=secret_store, actions=registry_with(flaky=flaky))
    d = make_definition(stages=[{"name": "publish", "steps": [{"name": "upload", "action": "flaky", "retry": 4}]}])

    report = engine.run(d)

    step = report.find("publish/upload")
    assert flaky.calls == 3
    assert step.status is Status.SUCCESS
    assert [a.status for a in step.attempts] == [Status.FAILURE, Status.FAILURE, Status.SUCCESS]
    assert [e["payload"]["attempt"] for e in _events(report, "step_attempt")] == [1, 2, 3]


def test_lock_contention_fails_stage(engine, make_definition):
    d = make_definition(stages=[{"name": "deploy", "lock": "prod-env", "lock_timeout": 0.1, "steps": ["true"]}])

    with engine.locks.hold("prod-env", cancel=threading.Event()):
        report = engine.run(d)

    deploy = report.find("deploy")
    assert report.status is Status.FAILURE
    assert deploy.error["type"] == LOCK_CONTENTION
    assert deploy.error["details"]["lock"] == "prod-env"


@pytest.mark.parametrize("step_timeout, status", [(0.2, Status.FAILURE), (None, Status.SUCCESS)])
def test_pipeline_step_timeout_is_inherited(engine, make_definition, step_timeout, status):
    options = {"step_timeout": step_timeout} if step_timeout is not None else {}
    d = make_definition(options=options, stages=[{"name": "build", "steps": ["sleep 0.5"]}])

    assert engine.run(d).status is status


def test_nested_stage_reusing_ancestor_lock_is_rejected(engine, make_definition, settings):
    """
    Verifica que um stage aninhado não pode pedir o lock que o pai já detém.

    Invariantes:
        - A definição é rejeitada antes de qualquer execução
        - Nenhum lock fica detido
    """
    d = make_definition(
        options={"timeout": 3},
        stages=[
            {"name": "deploy", "lock": "env", "parallel": [
                {"name": "a", "lock": "env", "steps": ["echo a"]},
            ]},
        ],
    )

    with pytest.raises(ValidationError) as exc_info:
        engine.run(d)

    assert exc_info.value.problems == [
        "stage 'deploy/a': lock 'env' já é detido por um stage ancestral (a run esperaria por si mesma)"
    ]
    assert not engine.locks.is_held("env")
    assert not settings.runs_dir.exists()


def test_sibling_branches_sharing_a_lock_are_serialized(engine, make_definition):
    d = make_definition(
        stages=[
            {"name": "deploy", "parallel": [
                {"name": "eu", "lock": "cluster", "steps": ["sleep 0.3"]},
                {"name": "us", "lock": "cluster", "steps": ["sleep 0.3"]},
            ]},
        ],
    )

    started = time.monotonic()
    report = engine.run(d)
    elapsed = time.monotonic() - started

    assert report.status is Status.SUCCESS
    assert elapsed >= 0.6
    assert len(_events(report, "lock_acquired")) == 2
    assert not engine.locks.is_held("cluster")


def test_always_hook_is_bounded_after_global_timeout(engine, make_definition, settings):
    """
    Verifica que hooks `always` não estendem a run indefinidamente após o abort.

    Invariantes:
        - O hook é cancelado `hook_grace` segundos após o timeout global
        - O hook cancelado fica ABORTED e a run continua ABORTED por timeout
    """
    assert settings.hook_grace == 1.0
    d = make_definition(
        options={"timeout": 0.5},
        stages=[{"name": "deploy", "steps": ["sleep 30"]}],
        post={"always": [{"name": "drain", "command": "sleep 6"}]},
    )

    started = time.monotonic()
    report = engine.run(d)
    elapsed = time.monotonic() - started

    assert elapsed < 3
    assert report.status is Status.ABORTED
    assert report.error["type"] == RUN_TIMEOUT
    drain = report.find("post.always/drain")
    assert drain.status is Status.ABORTED
    assert drain.error["type"] == STEP_ABORTED


def test_always_hook_finishing_within_grace_still_succeeds(engine, make_definition):
    d = make_definition(
        options={"timeout": 0.3},
        stages=[{"name": "deploy", "steps": ["sleep 30"]}],
        post={"always": [{"name": "notify", "command": "sleep 0.2; echo enviado"}]},
    )

    report = engine.run(d)

    assert report.status is Status.ABORTED
    assert report.find("post.always/notify").status is Status.SUCCESS


def test_lock_wait_interrupted_by_timeout_is_aborted(engine, make_definition):
    """
    Verifica que uma espera por lock encerrada pelo timeout global não é contenção.

    Invariantes:
        - O stage termina ABORTED com STEP_ABORTED (motivo "timeout")
        - Nenhum LOCK_CONTENTION é registrado
    """
    d = make_definition(
        options={"timeout": 0.3},
        stages=[{"name": "deploy", "lock": "prod-env", "steps": ["true"]}],
    )

    with engine.locks.hold("prod-env", cancel=threading.Event()):
        report = engine.run(d)

    deploy = report.find("deploy")
    assert report.status is Status.ABORTED
    assert deploy.status is Status.ABORTED
    assert deploy.error["type"] == STEP_ABORTED
    assert deploy.error["details"]["reason"] == "timeout"
    assert LOCK_CONTENTION not in str(report.events)
