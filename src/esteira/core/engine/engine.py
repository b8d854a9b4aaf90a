# src/esteira/core/engine/engine.py
"""
Pipeline Engine da Esteira.

O Engine percorre o plano produzido pelo Resolver, despacha stages e
steps ao Step Executor (via Retry Wrapper e Credential Scope Manager),
agrega resultados, avalia post-hooks e calcula o status da run.

Semântica de execução:
    - Stages de topo rodam em ordem de declaração, nunca sobrepostos
    - Parallel groups despacham todas as branches em um ThreadPoolExecutor
      dimensionado ao grupo e aguardam todas (join) antes de concluir;
      a falha de uma branch não cancela as irmãs, exceto com `fail_fast`
    - Status de parallel group: FAILURE se qualquer branch falhou,
      senão o pior status das branches
    - Depois de cada stage: hooks `always`, depois o hook do desfecho
      (`success`, `unstable` ou `failure`; ABORTED dispara `failure`)
    - Falha de stage interrompe a run, exceto stages `best_effort`
      (o stage vira UNSTABLE)
    - Stages não executados após falha ou abort ficam registrados como
      pulados, com status terminal
    - Timeout global: o token da run é cancelado, steps em andamento são
      encerrados e a run termina ABORTED; locks são liberados

Decisões arquiteturais:
    - Exclusão mútua por pipeline: uma segunda run com o mesmo nome é
      recusada (ConcurrentRunError) enquanto outra está em andamento,
      salvo `options.allow_concurrent_runs`
    - Um semáforo por run limita steps executando ao mesmo tempo
      (`options.concurrency`, senão `engine.max_concurrency`)
    - Hooks recebem um token de cancelamento próprio da run: rodam mesmo
      após abort, mas esse token expira `engine.hook_grace` segundos depois
      do abort; suas falhas são apenas registradas
    - O Event Log do Manifest é serializado por um lock da run

Limites explícitos:
    - Não faz parsing da definição (ver `pipeline.serialization`)
    - Não interpreta os comandos executados
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..config import EngineSettings, compute_config_hash
from ..errors import engine_execution_error, lock_contention, run_cancelled, run_timeout, step_aborted
from ..exceptions import ConcurrentRunError, LockContentionError
from ..pipeline.context import RunContext, build_context
from ..pipeline.definition import PipelineDefinition, PostHooks, StepDefinition
from ..pipeline.registry import ActionRegistry
from ..pipeline.serialization import definition_to_dict
from ..pipeline.types import ExecutionResult, Lifecycle, ResultKind, RunReport, Status, worst_status
from ..traceability.manifest import RunManifest, add_event, create_manifest, stage_finished, stage_started
from ...persistence.run_store import RunStore, safe_name
from .cancel import CancelToken
from .credentials import DotenvSecretStore, EnvironmentSecretStore, SecretStore
from .executor import StepExecutor
from .locks import LockManager
from .planner import ExecutionPlan, PlannedStage, resolve_plan
from .retry import with_retry
from .runners import RegistryActionRunner, ShellActionRunner

logger = logging.getLogger(__name__)

ESTEIRA_VERSION = "0.1.0"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


def _group_status(statuses: List[Status]) -> Status:
    if Status.FAILURE in statuses:
        return Status.FAILURE
    return worst_status(statuses)


@dataclass
class _Run:
    """Estado mutável de uma run em andamento (interno ao Engine)."""

    plan: ExecutionPlan
    ctx: RunContext
    report: RunReport
    manifest: RunManifest
    lifecycle: Lifecycle
    cancel: CancelToken
    executor: StepExecutor
    semaphore: threading.BoundedSemaphore
    exclusive: bool
    hooks_cancel: CancelToken
    lock: threading.Lock = field(default_factory=threading.Lock)
    done: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    grace_timer: Optional[threading.Timer] = None

    @property
    def definition(self) -> PipelineDefinition:
        return self.plan.definition


class Engine:
    """Engine canônico da Esteira (resolver + execução + hooks)."""

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        *,
        config: Optional[Dict[str, Any]] = None,
        secret_store: Optional[SecretStore] = None,
        actions: Optional[ActionRegistry] = None,
        store: Optional[RunStore] = None,
        locks: Optional[LockManager] = None,
        shell_runner: Optional[ShellActionRunner] = None,
    ) -> None:
        self.settings = settings or EngineSettings.from_config(config)
        self.config_hash = compute_config_hash(config) if config is not None else None
        self.actions = actions or ActionRegistry.with_builtins()
        self.secret_store = secret_store if secret_store is not None else self._default_secret_store()
        self.store = store or RunStore(runs_dir=self.settings.runs_dir)
        self.locks = locks or LockManager(poll_interval=self.settings.poll_interval)
        self.shell_runner = shell_runner or ShellActionRunner(
            poll_interval=self.settings.poll_interval,
            kill_grace=self.settings.kill_grace,
            hidden_prefixes=(self.settings.env_prefix,),
        )
        self.action_runner = RegistryActionRunner(self.actions, poll_interval=self.settings.poll_interval)

        self._guard = threading.Lock()
        self._active: Dict[str, _Run] = {}
        self._runs: Dict[str, _Run] = {}

    def _default_secret_store(self) -> SecretStore:
        if self.settings.dotenv_path is not None:
            return DotenvSecretStore(self.settings.dotenv_path)
        return EnvironmentSecretStore(prefix=self.settings.env_prefix)

    # ------------------------------------------------------------------
    # API pública
    # ------------------------------------------------------------------
    def validate(self, definition: PipelineDefinition, parameters: Optional[Mapping[str, str]] = None) -> ExecutionPlan:
        return resolve_plan(definition, parameters, actions=self.actions)

    def start_run(
        self,
        definition: PipelineDefinition,
        parameters: Optional[Mapping[str, str]] = None,
        *,
        workspace: Optional[Path] = None,
    ) -> str:
        """Valida, registra e dispara a run em background. Retorna o run_id."""
        run = self._prepare(definition, parameters, workspace)
        run.thread = threading.Thread(
            target=self._execute, args=(run,), name=f"esteira-run-{run.report.run_id}", daemon=True
        )
        run.thread.start()
        return run.report.run_id

    def run(
        self,
        definition: PipelineDefinition,
        parameters: Optional[Mapping[str, str]] = None,
        *,
        workspace: Optional[Path] = None,
    ) -> RunReport:
        """Executa a run na thread atual e devolve o RunReport final."""
        run = self._prepare(definition, parameters, workspace)
        return self._execute(run)

    def get_status(self, run_id: str) -> RunReport:
        """
        Snapshot da run (em andamento) ou report persistido (concluída).

        Raises:
            RunNotFoundError: Run inexistente ou purgada.
        """
        with self._guard:
            run = self._runs.get(run_id)
        if run is not None:
            return self._snapshot(run)
        return self.store.load_report(run_id)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> RunReport:
        with self._guard:
            run = self._runs.get(run_id)
        if run is None:
            return self.store.load_report(run_id)
        run.done.wait(timeout)
        return self._snapshot(run)

    def cancel(self, run_id: str, reason: str = "cancelled") -> bool:
        """Solicita cancelamento cooperativo. Retorna False se a run não está ativa."""
        with self._guard:
            run = self._runs.get(run_id)
        if run is None or run.done.is_set():
            return False
        logger.info("Cancelamento solicitado para a run %s (%s)", run_id, reason)
        self._abort(run, reason)
        return True

    # ------------------------------------------------------------------
    # Preparação
    # ------------------------------------------------------------------
    def _prepare(
        self,
        definition: PipelineDefinition,
        parameters: Optional[Mapping[str, str]],
        workspace: Optional[Path],
    ) -> _Run:
        plan = self.validate(definition, parameters)
        exclusive = not definition.options.allow_concurrent_runs

        with self._guard:
            if exclusive and definition.name in self._active:
                other = self._active[definition.name].report.run_id
                raise ConcurrentRunError(
                    message=f"Pipeline '{definition.name}' já possui uma run em andamento ({other})",
                    details={"pipeline": definition.name, "active_run_id": other},
                    hint="Aguarde o término da run atual ou habilite options.allow_concurrent_runs.",
                )

            build_number = self.store.next_build_number(definition.name)
            run_id = f"{safe_name(definition.name)}-{build_number}"
            started = _now()
            ws = Path(workspace or self.settings.workspace).resolve()
            ws.mkdir(parents=True, exist_ok=True)

            ctx = build_context(
                definition,
                run_id=run_id,
                build_number=build_number,
                created_at=started.isoformat(),
                workspace=ws,
                parameters=plan.parameters,
            )
            definition_hash = compute_config_hash(definition_to_dict(definition))
            report = RunReport(
                run_id=run_id,
                pipeline=definition.name,
                build_number=build_number,
                status=Status.PENDING,
                parameters=dict(ctx.parameters),
                started_at=started.isoformat(),
                definition_hash=definition_hash,
            )
            manifest = create_manifest(
                run_id=run_id,
                pipeline=definition.name,
                build_number=build_number,
                started_at=started,
                esteira_version=ESTEIRA_VERSION,
                definition_hash=definition_hash,
                config_hash=self.config_hash,
                parameters=dict(ctx.parameters),
            )
            store = self.store
            executor = StepExecutor(
                shell_runner=self.shell_runner,
                action_runner=self.action_runner,
                secret_store=self.secret_store,
                sink=lambda subject, attempt, text: str(
                    store.write_output(definition.name, run_id, subject, attempt, text)
                ),
            )
            concurrency = definition.options.concurrency or self.settings.max_concurrency
            run = _Run(
                plan=plan,
                ctx=ctx,
                report=report,
                manifest=manifest,
                lifecycle=Lifecycle(f"run {run_id}"),
                cancel=CancelToken(poll_interval=self.settings.poll_interval),
                executor=executor,
                semaphore=threading.BoundedSemaphore(concurrency),
                exclusive=exclusive,
                hooks_cancel=CancelToken(poll_interval=self.settings.poll_interval),
            )
            self._runs[run_id] = run
            if exclusive:
                self._active[definition.name] = run

        logger.info("Run %s registrada (pipeline=%s, build=%d)", run_id, definition.name, build_number)
        return run

    # ------------------------------------------------------------------
    # Execução
    # ------------------------------------------------------------------
    def _execute(self, run: _Run) -> RunReport:
        started = time.monotonic()
        definition = run.definition
        timer = None
        status = Status.FAILURE
        error: Optional[Dict[str, Any]] = None

        try:
            run.lifecycle.transition(Status.RUNNING)
            run.report.status = Status.RUNNING
            self._event(run, "run_started", payload={"build_number": run.report.build_number})
            logger.info("Run %s iniciada", run.report.run_id)

            if definition.options.timeout is not None:
                timer = threading.Timer(definition.options.timeout, self._on_timeout, args=(run,))
                timer.daemon = True
                timer.start()

            try:
                results = self._walk(run, run.plan.stages, run.cancel, top_level=True)
                status = _group_status([r.status for r in results if r.skipped is None])
            except Exception as exc:  # noqa: BLE001 - falha do motor vira payload
                logger.exception("Falha inesperada no motor durante a run %s", run.report.run_id)
                error = engine_execution_error(exc_type=exc.__class__.__name__, exc_message=str(exc)).to_dict()
                status = Status.FAILURE
            finally:
                if timer is not None:
                    timer.cancel()

            if run.cancel.is_set():
                status = Status.ABORTED
                if run.cancel.reason == "timeout":
                    error = run_timeout(timeout=definition.options.timeout or 0.0).to_dict()
                else:
                    error = run_cancelled(reason=run.cancel.reason).to_dict()

            if not definition.post.is_empty:
                self._run_hooks(run, definition.post, status, prefix="post")

            if definition.archive:
                try:
                    run.report.artifacts = self.store.archive(
                        definition.name, run.report.run_id, run.ctx.workspace, definition.archive
                    )
                except OSError as exc:
                    logger.error("Falha ao arquivar artefatos da run %s: %s", run.report.run_id, exc)
        finally:
            self._finish(run, status, error, started)

        return self._snapshot(run)

    def _finish(self, run: _Run, status: Status, error: Optional[Dict[str, Any]], started: float) -> None:
        run_id = run.report.run_id
        try:
            run.lifecycle.transition(status)
            with run.lock:
                run.report.status = status
                run.report.error = error
                run.report.finished_at = _now().isoformat()
                run.report.duration_ms = _elapsed_ms(started)
            self._event(run, "run_finished", payload={"status": status.value, "duration_ms": run.report.duration_ms})
            with run.lock:
                run.report.events = [dict(e) for e in run.manifest.events]

            self.store.save_manifest(run.definition.name, run_id, run.manifest)
            self.store.save_report(run.report)

            keep = run.definition.options.retention
            if keep is None:
                keep = self.settings.retention
            with self._guard:
                protect = {r for r, other in self._runs.items() if other is not run and not other.done.is_set()}
            self.store.purge(run.definition.name, keep=keep, protect=protect)
            logger.info("Run %s finalizada: %s", run_id, status.value)
        finally:
            if run.grace_timer is not None:
                run.grace_timer.cancel()
            with self._guard:
                if run.exclusive and self._active.get(run.definition.name) is run:
                    del self._active[run.definition.name]
                self._runs.pop(run_id, None)
            run.done.set()

    def _on_timeout(self, run: _Run) -> None:
        logger.warning(
            "Run %s excedeu o timeout global de %ss; cancelando",
            run.report.run_id,
            run.definition.options.timeout,
        )
        self._abort(run, "timeout")

    def _abort(self, run: _Run, reason: str) -> None:
        """Cancela a run e limita os hooks restantes a `hook_grace` segundos."""
        with run.lock:
            if run.cancel.is_set():
                return
            run.cancel.cancel(reason)
            run.grace_timer = threading.Timer(self.settings.hook_grace, self._expire_hooks, args=(run,))
            run.grace_timer.daemon = True
            run.grace_timer.start()

    def _expire_hooks(self, run: _Run) -> None:
        logger.warning(
            "Run %s: hooks excederam o grace de %ss após o abort; cancelando",
            run.report.run_id,
            self.settings.hook_grace,
        )
        run.hooks_cancel.cancel("hook_grace")

    def _snapshot(self, run: _Run) -> RunReport:
        with run.lock:
            data = run.report.to_dict()
            data["events"] = [dict(e) for e in run.manifest.events]
        data["status"] = run.lifecycle.status.value
        return RunReport.from_dict(data)

    # ------------------------------------------------------------------
    # Event Log
    # ------------------------------------------------------------------
    def _event(self, run: _Run, event_type: str, *, subject: Optional[str] = None, payload: Optional[Dict[str, Any]] = None) -> None:
        with run.lock:
            add_event(run.manifest, event_type=event_type, ts=_now(), subject=subject, payload=payload)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _walk(self, run: _Run, nodes, token: CancelToken, *, top_level: bool = False) -> List[ExecutionResult]:
        results: List[ExecutionResult] = []
        halted: Optional[str] = None
        for node in nodes:
            if halted is None and token.is_set():
                halted = "aborted"
            if halted is not None:
                result = self._skip(run, node, halted)
            else:
                result = self._run_stage(run, node, token)
                if result.status is Status.ABORTED:
                    halted = "aborted"
                elif result.status is Status.FAILURE:
                    halted = "upstream_failure"
            results.append(result)
            if top_level:
                with run.lock:
                    run.report.stages.append(result)
        return results

    def _skip(self, run: _Run, node: PlannedStage, reason: str) -> ExecutionResult:
        status = Status.SUCCESS if reason == "guard" else Status.ABORTED
        children = tuple(self._skip(run, child, reason) for child in node.children)
        with run.lock:
            stage_finished(run.manifest, stage=node.path, ts=_now(), status=status.value, skipped=reason)
        logger.info("Stage '%s' pulado (%s)", node.path, reason)
        return ExecutionResult(id=node.path, kind=ResultKind.STAGE, status=status, children=children, skipped=reason)

    @contextmanager
    def _stage_lock(self, run: _Run, node: PlannedStage, token: CancelToken) -> Iterator[None]:
        name = node.definition.lock
        if not name:
            yield
            return
        with self.locks.hold(name, cancel=token, timeout=node.definition.lock_timeout) as waited:
            self._event(run, "lock_acquired", subject=node.path, payload={"lock": name, "waited": round(waited, 3)})
            try:
                yield
            finally:
                self._event(run, "lock_released", subject=node.path, payload={"lock": name})

    def _run_stage(self, run: _Run, node: PlannedStage, token: CancelToken) -> ExecutionResult:
        if not node.enabled:
            return self._skip(run, node, "guard")

        stage = node.definition
        lifecycle = Lifecycle(f"stage {node.path}")
        lifecycle.transition(Status.RUNNING)
        with run.lock:
            stage_started(run.manifest, stage=node.path, kind="parallel" if stage.is_parallel else "sequence", ts=_now())
        started = time.monotonic()
        error: Optional[Dict[str, Any]] = None
        children: List[ExecutionResult] = []

        try:
            with self._stage_lock(run, node, token):
                if stage.is_parallel:
                    children = self._run_parallel(run, node, token)
                else:
                    children = self._run_steps(run, node, token)
                status = self._stage_status(node, children, token)
                self._run_hooks(run, stage.post, status, prefix=f"{node.path}/post")
        except LockContentionError as exc:
            if exc.details.get("cancelled"):
                error = step_aborted(step=node.path, reason=token.reason).to_dict()
                status = Status.ABORTED
            else:
                waited = float(exc.details.get("waited", 0.0))
                error = lock_contention(stage=node.path, lock=stage.lock or "", waited=waited).to_dict()
                status = Status.UNSTABLE if stage.best_effort else Status.FAILURE
            logger.error("Stage '%s': %s", node.path, exc.message)
            self._run_hooks(run, stage.post, status, prefix=f"{node.path}/post")

        lifecycle.transition(status)
        if error is None:
            error = next((c.error for c in children if not c.status.is_ok and c.error), None)
        with run.lock:
            stage_finished(run.manifest, stage=node.path, ts=_now(), status=status.value, error=error)
        logger.info("Stage '%s' terminou com %s", node.path, status.value)

        failed = next((c for c in children if not c.status.is_ok), None)
        return ExecutionResult(
            id=node.path,
            kind=ResultKind.STAGE,
            status=status,
            duration_ms=_elapsed_ms(started),
            output=failed.output if failed is not None else None,
            summary=failed.summary if failed is not None else "",
            error=error,
            children=tuple(children),
        )

    def _stage_status(self, node: PlannedStage, children: List[ExecutionResult], token: CancelToken) -> Status:
        status = _group_status([c.status for c in children if c.skipped is None])
        if token.is_set() and status.is_ok:
            status = Status.ABORTED
        if status is Status.FAILURE and node.definition.best_effort:
            logger.warning("Stage '%s' falhou mas é best_effort; marcado UNSTABLE", node.path)
            status = Status.UNSTABLE
        return status

    def _run_steps(self, run: _Run, node: PlannedStage, token: CancelToken) -> List[ExecutionResult]:
        results: List[ExecutionResult] = []
        for index, step in enumerate(node.definition.steps):
            if token.is_set():
                break
            result = self._run_step(run, step, f"{node.path}/{step.label(index)}", token)
            results.append(result)
            if not result.status.is_ok:
                break
        return results

    def _run_parallel(self, run: _Run, node: PlannedStage, token: CancelToken) -> List[ExecutionResult]:
        stage = node.definition
        group = token.child() if stage.fail_fast else token
        branches = list(node.children)

        with ThreadPoolExecutor(max_workers=len(branches), thread_name_prefix=f"esteira-{safe_name(node.path)}") as pool:
            futures = [pool.submit(self._run_branch, run, branch, group) for branch in branches]
            for future in as_completed(futures):
                if stage.fail_fast and future.result().status is Status.FAILURE and not group.is_set():
                    logger.info("Parallel group '%s': fail_fast cancelando branches irmãs", node.path)
                    group.cancel("fail_fast")
            return [f.result() for f in futures]

    def _run_branch(self, run: _Run, node: PlannedStage, token: CancelToken) -> ExecutionResult:
        try:
            return self._run_stage(run, node, token)
        except Exception as exc:  # noqa: BLE001 - uma branch nunca derruba o join
            logger.exception("Falha inesperada na branch '%s'", node.path)
            payload = engine_execution_error(step=node.path, exc_type=exc.__class__.__name__, exc_message=str(exc))
            with run.lock:
                stage_finished(run.manifest, stage=node.path, ts=_now(), status=Status.FAILURE.value, error=payload.to_dict())
            return ExecutionResult(
                id=node.path, kind=ResultKind.STAGE, status=Status.FAILURE, summary=payload.message, error=payload.to_dict()
            )

    # ------------------------------------------------------------------
    # Steps e hooks
    # ------------------------------------------------------------------
    def _timeout_for(self, run: _Run, step: StepDefinition) -> float:
        if step.timeout is not None:
            return step.timeout
        if run.definition.options.step_timeout is not None:
            return run.definition.options.step_timeout
        return self.settings.default_step_timeout

    @contextmanager
    def _slot(self, run: _Run, token: CancelToken) -> Iterator[bool]:
        acquired = False
        while not acquired and not token.is_set():
            acquired = run.semaphore.acquire(timeout=self.settings.poll_interval)
        try:
            yield acquired
        finally:
            if acquired:
                run.semaphore.release()

    def _attempts(self, run: _Run, step: StepDefinition, step_id: str, token: CancelToken, kind: ResultKind) -> ExecutionResult:
        timeout = self._timeout_for(run, step)

        def attempt(number: int) -> ExecutionResult:
            return run.executor.execute(
                step, step_id=step_id, ctx=run.ctx, cancel=token, timeout=timeout, attempt=number, kind=kind
            )

        def record(number: int, result: ExecutionResult) -> None:
            self._event(
                run,
                "step_attempt",
                subject=step_id,
                payload={
                    "attempt": number,
                    "status": result.status.value,
                    "exit_code": result.exit_code,
                    "duration_ms": result.duration_ms,
                },
            )

        return with_retry(step.retry, attempt, backoff=step.backoff, cancel=token, on_attempt=record)

    def _run_step(self, run: _Run, step: StepDefinition, step_id: str, token: CancelToken) -> ExecutionResult:
        with self._slot(run, token) as acquired:
            if not acquired:
                payload = step_aborted(step=step_id, reason=token.reason)
                return ExecutionResult(
                    id=step_id, kind=ResultKind.STEP, status=Status.ABORTED,
                    summary=payload.message, error=payload.to_dict(),
                )
            return self._attempts(run, step, step_id, token, ResultKind.STEP)

    def _run_hooks(self, run: _Run, post: PostHooks, status: Status, *, prefix: str) -> List[ExecutionResult]:
        if post.is_empty:
            return []
        if status is Status.SUCCESS:
            outcome = "success"
        elif status is Status.UNSTABLE:
            outcome = "unstable"
        else:
            outcome = "failure"

        # Sobrevive ao abort da run; expira `hook_grace` segundos depois dele
        token = run.hooks_cancel
        results: List[ExecutionResult] = []
        for kind in ("always", outcome):
            for index, step in enumerate(getattr(post, kind)):
                hook_id = f"{prefix}.{kind}/{step.label(index)}"
                result = self._attempts(run, step, hook_id, token, ResultKind.HOOK)
                if not result.status.is_ok:
                    logger.warning("Hook '%s' terminou com %s (não altera a run)", hook_id, result.status.value)
                self._event(run, "hook_finished", subject=hook_id, payload={"status": result.status.value})
                with run.lock:
                    run.report.hooks.append(result)
                results.append(result)
        return results
