"""
Retry Wrapper.

Reexecuta a tentativa de um step até `retries` vezes adicionais quando o
resultado é FAILURE. Construído sobre `tenacity.Retrying`:

    - stop:  `stop_after_attempt(retries + 1) | stop_when_event_set(cancel)`
    - retry: `retry_if_result` (somente FAILURE retentável)
    - wait:  `wait_none`, `wait_fixed` ou `wait_exponential`, conforme o Backoff
    - sleep: `cancel.wait`, para que o backoff seja interrompível

Invariantes:
    - O resultado final é o da última tentativa, com a cadeia completa
      de AttemptRecord em `attempts`
    - FAILURE com CREDENTIAL_RESOLUTION_ERROR ou STEP_ABORTED nunca é
      retentado
    - UNSTABLE e ABORTED nunca são retentados
    - `retries=0` executa exatamente uma tentativa
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, List, Optional

from tenacity import (
    Retrying,
    retry_if_result,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
    wait_fixed,
    wait_none,
)

from ..errors import NON_RETRYABLE_ERRORS
from ..pipeline.definition import Backoff
from ..pipeline.types import AttemptRecord, ExecutionResult, Status
from .cancel import CancelToken

logger = logging.getLogger(__name__)

AttemptFn = Callable[[int], ExecutionResult]


def _should_retry(result: ExecutionResult) -> bool:
    if result.status is not Status.FAILURE:
        return False
    error_type = (result.error or {}).get("type")
    return error_type not in NON_RETRYABLE_ERRORS


def _wait_strategy(backoff: Optional[Backoff]):
    if backoff is None or backoff.seconds <= 0:
        return wait_none()
    if backoff.kind == "exponential":
        if backoff.max_seconds is not None:
            return wait_exponential(multiplier=backoff.seconds, max=backoff.max_seconds)
        return wait_exponential(multiplier=backoff.seconds)
    return wait_fixed(backoff.seconds)


def _record(attempt: int, result: ExecutionResult) -> AttemptRecord:
    return AttemptRecord(
        attempt=attempt,
        status=result.status,
        duration_ms=result.duration_ms,
        exit_code=result.exit_code,
        output=result.output,
        summary=result.summary,
    )


def with_retry(
    retries: int,
    attempt_fn: AttemptFn,
    *,
    backoff: Optional[Backoff] = None,
    cancel: Optional[CancelToken] = None,
    on_attempt: Optional[Callable[[int, ExecutionResult], None]] = None,
) -> ExecutionResult:
    """
    Executa `attempt_fn(attempt_number)` com a política de retry do step.

    `attempt_fn` nunca deve levantar: falhas são devolvidas como
    ExecutionResult (o Step Executor já converte exceções).
    """
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise ValueError(f"retries must be a non-negative int, got {retries!r}")

    cancel = cancel or CancelToken()
    records: List[AttemptRecord] = []
    results: List[ExecutionResult] = []

    def _attempt() -> ExecutionResult:
        number = len(records) + 1
        result = attempt_fn(number)
        records.append(_record(number, result))
        results.append(result)
        if on_attempt is not None:
            on_attempt(number, result)
        if _should_retry(result) and number <= retries:
            logger.info("Step '%s' falhou (tentativa %d/%d); retentando", result.id, number, retries + 1)
        return result

    retrying = Retrying(
        stop=stop_after_attempt(retries + 1) | stop_when_event_set(cancel),
        wait=_wait_strategy(backoff),
        retry=retry_if_result(_should_retry),
        retry_error_callback=lambda state: state.outcome.result(),
        sleep=cancel.wait,
        reraise=True,
    )
    last = retrying(_attempt)

    return replace(
        last,
        duration_ms=sum(r.duration_ms for r in results),
        attempts=tuple(records),
    )
