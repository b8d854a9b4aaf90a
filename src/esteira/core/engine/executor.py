"""
Step Executor.

Executa UMA tentativa de um step e devolve um ExecutionResult:

    1. abre o escopo de credenciais do step (`with_credentials`)
    2. renderiza o command template com o ambiente da run
    3. delega ao runner (shell ou ação tipada) com timeout e cancelamento
    4. mascara output, resumo e erro ANTES de persistir qualquer coisa
    5. classifica o desfecho

Classificação:
    - exit 0                           → SUCCESS
    - exit em `unstable_exit_codes`    → UNSTABLE
    - timeout                          → FAILURE (STEP_TIMEOUT)
    - cancelamento                     → ABORTED (STEP_ABORTED)
    - credencial não resolvida         → FAILURE (CREDENTIAL_RESOLUTION_ERROR)
    - exceção inesperada               → FAILURE (ENGINE_EXECUTION_ERROR)
    - demais                           → FAILURE (STEP_FAILURE)

Invariantes:
    - O executor nunca levanta: todo desfecho vira ExecutionResult
    - Nenhum valor de segredo aparece em output, summary ou error
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..errors import (
    credential_resolution_error,
    engine_execution_error,
    step_aborted,
    step_failure,
    step_timeout,
)
from ..exceptions import CredentialResolutionError
from ..pipeline.context import RunContext
from ..pipeline.definition import StepDefinition
from ..pipeline.step import ActionOutcome, ActionRequest, ActionRunner
from ..pipeline.types import ExecutionResult, ResultKind, Status
from .cancel import CancelToken
from .credentials import SecretMasker, SecretStore, with_credentials

logger = logging.getLogger(__name__)

# (subject, attempt, texto mascarado) -> referência persistida
OutputSink = Callable[[str, int, str], str]

_SUMMARY_LIMIT = 200


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


def _summarize(output: str) -> str:
    for line in reversed(output.splitlines()):
        if line.strip():
            line = line.strip()
            return line if len(line) <= _SUMMARY_LIMIT else line[: _SUMMARY_LIMIT - 3] + "..."
    return ""


class StepExecutor:
    def __init__(
        self,
        *,
        shell_runner: ActionRunner,
        action_runner: ActionRunner,
        secret_store: Optional[SecretStore] = None,
        sink: Optional[OutputSink] = None,
    ) -> None:
        self.shell_runner = shell_runner
        self.action_runner = action_runner
        self.secret_store = secret_store
        self.sink = sink

    def execute(
        self,
        step: StepDefinition,
        *,
        step_id: str,
        ctx: RunContext,
        cancel: CancelToken,
        timeout: Optional[float] = None,
        attempt: int = 1,
        kind: ResultKind = ResultKind.STEP,
    ) -> ExecutionResult:
        started = time.monotonic()

        if cancel.is_set():
            payload = step_aborted(step=step_id, reason=cancel.reason)
            return ExecutionResult(
                id=step_id, kind=kind, status=Status.ABORTED, summary=payload.message, error=payload.to_dict()
            )

        try:
            with with_credentials(step.credentials, self.secret_store) as scope:
                try:
                    outcome = self._run(step, step_id=step_id, ctx=ctx, cancel=cancel,
                                        timeout=timeout, extra_env=scope.environment)
                except Exception as exc:  # noqa: BLE001 - convertido em ENGINE_EXECUTION_ERROR
                    message = scope.masker.mask(str(exc))
                    # Sem traceback: o texto da exceção pode conter segredos do escopo
                    logger.error(
                        "Falha inesperada executando step '%s': %s: %s", step_id, exc.__class__.__name__, message
                    )
                    payload = engine_execution_error(
                        step=step_id,
                        exc_type=exc.__class__.__name__,
                        exc_message=message,
                    )
                    return ExecutionResult(
                        id=step_id, kind=kind, status=Status.FAILURE, duration_ms=_elapsed_ms(started),
                        summary=payload.message, error=payload.to_dict(),
                    )
                return self._classify(
                    step, outcome, step_id=step_id, kind=kind, attempt=attempt,
                    timeout=timeout, cancel=cancel, masker=scope.masker, started=started,
                )
        except CredentialResolutionError as exc:
            credential_id = str(exc.details.get("credential_id", ""))
            logger.error("Step '%s': %s", step_id, exc.message)
            payload = credential_resolution_error(step=step_id, credential_id=credential_id, message=exc.message)
            return ExecutionResult(
                id=step_id, kind=kind, status=Status.FAILURE, duration_ms=_elapsed_ms(started),
                summary=payload.message, error=payload.to_dict(),
            )

    def _run(
        self,
        step: StepDefinition,
        *,
        step_id: str,
        ctx: RunContext,
        cancel: CancelToken,
        timeout: Optional[float],
        extra_env: Dict[str, str],
    ) -> ActionOutcome:
        workdir = Path(ctx.workspace)
        if step.directory:
            workdir = workdir / ctx.render(step.directory)
        workdir.mkdir(parents=True, exist_ok=True)

        args: Dict[str, Any] = {
            k: ctx.render(v) if isinstance(v, str) else v for k, v in step.args.items()
        }
        request = ActionRequest(
            step_id=step_id,
            environment=ctx.step_environment(extra_env),
            workdir=workdir,
            cancel=cancel,
            timeout=timeout,
            command=ctx.render(step.command) if step.command else None,
            action=step.action,
            args=args,
        )
        runner = self.shell_runner if step.command else self.action_runner
        logger.debug("Step '%s' iniciado em %s (timeout=%s)", step_id, workdir, timeout)
        return runner.run(request)

    def _classify(
        self,
        step: StepDefinition,
        outcome: ActionOutcome,
        *,
        step_id: str,
        kind: ResultKind,
        attempt: int,
        timeout: Optional[float],
        cancel: CancelToken,
        masker: SecretMasker,
        started: float,
    ) -> ExecutionResult:
        output = masker.mask(outcome.output) or ""
        reason = masker.mask(outcome.error)
        reference = None
        if output and self.sink is not None:
            reference = self.sink(step_id, attempt, output)

        duration_ms = _elapsed_ms(started)
        base: Dict[str, Any] = dict(id=step_id, kind=kind, duration_ms=duration_ms,
                                    output=reference, exit_code=outcome.exit_code)

        if outcome.cancelled:
            payload = step_aborted(step=step_id, reason=cancel.reason)
            return ExecutionResult(status=Status.ABORTED, summary=payload.message, error=payload.to_dict(), **base)

        if outcome.timed_out:
            payload = step_timeout(step=step_id, timeout=timeout or 0.0, output=reference)
            return ExecutionResult(
                status=Status.FAILURE, summary=reason or payload.message, error=payload.to_dict(), **base
            )

        if outcome.exit_code == 0:
            return ExecutionResult(status=Status.SUCCESS, summary=_summarize(output), **base)

        if outcome.exit_code is not None and outcome.exit_code in step.unstable_exit_codes:
            return ExecutionResult(status=Status.UNSTABLE, summary=_summarize(output), **base)

        payload = step_failure(step=step_id, exit_code=outcome.exit_code, output=reference, reason=reason)
        summary = reason or _summarize(output) or payload.message
        return ExecutionResult(status=Status.FAILURE, summary=summary, error=payload.to_dict(), **base)
