"""
Esteira — Canonical Error Structures (v1)

Este módulo define o padrão canônico de erros da Esteira.
Erros são artefatos de execução e fazem parte do contrato operacional
do motor, devendo ser:

- explícitos
- serializáveis
- rastreáveis
- acionáveis

Nenhum stack trace cru é exposto ao operador: o RunReport carrega
apenas o payload estruturado.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


# ---------------------------------------------------------------------------
# Payload canônico
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EsteiraErrorPayload:
    """
    Payload canônico de erro da Esteira.

    Campos:
    - type: código estável do erro (não é texto livre)
    - message: mensagem curta, humana e objetiva
    - details: dados estruturados relevantes para diagnóstico
    - hint: ação sugerida ao operador (onde corrigir)
    """

    type: str
    message: str
    details: Dict[str, Any]
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Retorna representação serializável do erro."""
        return asdict(self)


# ---------------------------------------------------------------------------
# Catálogo canônico de tipos de erro (v1)
# ---------------------------------------------------------------------------

# Steps
STEP_FAILURE = "STEP_FAILURE"
STEP_TIMEOUT = "STEP_TIMEOUT"
STEP_ABORTED = "STEP_ABORTED"

# Recursos compartilhados
CREDENTIAL_RESOLUTION_ERROR = "CREDENTIAL_RESOLUTION_ERROR"
LOCK_CONTENTION = "LOCK_CONTENTION"

# Run
RUN_TIMEOUT = "RUN_TIMEOUT"
RUN_CANCELLED = "RUN_CANCELLED"

# Engine / Execução
ENGINE_EXECUTION_ERROR = "ENGINE_EXECUTION_ERROR"

# Falhas que o Retry Wrapper nunca reexecuta.
NON_RETRYABLE_ERRORS = frozenset({CREDENTIAL_RESOLUTION_ERROR, STEP_ABORTED})


# ---------------------------------------------------------------------------
# Helpers de fábrica
# ---------------------------------------------------------------------------

def step_failure(
    *,
    step: str,
    exit_code: Optional[int],
    output: Optional[str] = None,
    reason: Optional[str] = None,
) -> EsteiraErrorPayload:
    return EsteiraErrorPayload(
        type=STEP_FAILURE,
        message=reason or f"Step terminou com exit status {exit_code}",
        details={"step": step, "exit_code": exit_code, "output": output},
        hint="Consulte o output capturado do step para diagnosticar a falha.",
    )


def step_timeout(*, step: str, timeout: float, output: Optional[str] = None) -> EsteiraErrorPayload:
    return EsteiraErrorPayload(
        type=STEP_TIMEOUT,
        message=f"Step excedeu o timeout de {timeout:g}s e foi encerrado",
        details={"step": step, "timeout": timeout, "output": output},
        hint="Aumente o timeout do step ou investigue o processo travado.",
    )


def step_aborted(*, step: str, reason: Optional[str] = None) -> EsteiraErrorPayload:
    return EsteiraErrorPayload(
        type=STEP_ABORTED,
        message="Step cancelado antes de concluir",
        details={"step": step, "reason": reason},
        hint=None,
    )


def credential_resolution_error(*, step: str, credential_id: str, message: str) -> EsteiraErrorPayload:
    return EsteiraErrorPayload(
        type=CREDENTIAL_RESOLUTION_ERROR,
        message=message,
        details={"step": step, "credential_id": credential_id},
        hint="Cadastre a credencial no secret store ou corrija o credential_id do binding.",
    )


def lock_contention(*, stage: str, lock: str, waited: float) -> EsteiraErrorPayload:
    return EsteiraErrorPayload(
        type=LOCK_CONTENTION,
        message=f"Lock '{lock}' continuou ocupado após {waited:g}s",
        details={"stage": stage, "lock": lock, "waited": waited},
        hint="Aguarde a run que detém o recurso ou aumente lock_timeout.",
    )


def run_timeout(*, timeout: float) -> EsteiraErrorPayload:
    return EsteiraErrorPayload(
        type=RUN_TIMEOUT,
        message=f"Run excedeu o timeout global de {timeout:g}s",
        details={"timeout": timeout},
        hint="Revise options.timeout da pipeline ou o stage que excedeu o tempo.",
    )


def run_cancelled(*, reason: Optional[str] = None) -> EsteiraErrorPayload:
    return EsteiraErrorPayload(
        type=RUN_CANCELLED,
        message="Run cancelada por requisição externa",
        details={"reason": reason},
        hint=None,
    )


def engine_execution_error(
    *,
    step: Optional[str] = None,
    exc_type: Optional[str] = None,
    exc_message: Optional[str] = None,
) -> EsteiraErrorPayload:
    return EsteiraErrorPayload(
        type=ENGINE_EXECUTION_ERROR,
        message="Falha inesperada durante a execução do step",
        details={
            "step": step,
            "exc_type": exc_type,
            "exc_message": exc_message,
        },
        hint="Verifique o log técnico do motor. Nenhum fallback é aplicado automaticamente.",
    )
