
"""
Esteira — Canonical Exceptions (v1)

Este módulo define exceções tipadas internas da Esteira.

Objetivo:
- Permitir que Resolver/Engine/Executor levantem exceções semânticas tipadas
- Facilitar o mapeamento determinístico para EsteiraErrorPayload
- Evitar ValueError/RuntimeError genéricos em guardrails críticos

Regras:
- Exceções devem carregar apenas dados estruturados (serializáveis).
- Valores de segredo nunca entram em `message` ou `details`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional


@dataclass(frozen=True, eq=False)
class EsteiraException(Exception):
    """Base class para exceções internas da Esteira.

    Importante:
    - Sempre carregar dados estruturados em `details`
    - Não embedar stack trace em payloads de erro
    - Mensagem deve ser curta e humana
    """

    message: str
    details: Dict[str, Any]
    hint: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover
        return self.message


# ---------------------------------------------------------------------------
# Definição
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ValidationError(EsteiraException):
    """Definição malformada. Lista todos os problemas, não apenas o primeiro."""

    @classmethod
    def from_problems(cls, problems: Iterable[str]) -> "ValidationError":
        items = list(problems)
        summary = "; ".join(items)
        return cls(
            message=f"Definição de pipeline inválida ({len(items)} problema(s)): {summary}",
            details={"problems": items},
            hint="Corrija todos os problemas listados antes de disparar a run novamente.",
        )

    @property
    def problems(self) -> List[str]:
        return list(self.details.get("problems", []))


# ---------------------------------------------------------------------------
# Execução de steps
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class StepFailure(EsteiraException):
    """
    Ação tipada sinaliza falha do step.

    `details["exit_code"]` (opcional, não-zero) vira o exit status do step.
    """


@dataclass(frozen=True, eq=False)
class StepTimeoutError(EsteiraException):
    """Ação tipada sinaliza que a operação externa excedeu seu próprio limite de tempo."""


@dataclass(frozen=True, eq=False)
class CredentialResolutionError(EsteiraException):
    """Secret store não conseguiu fornecer uma credencial vinculada."""


@dataclass(frozen=True, eq=False)
class LockContentionError(EsteiraException):
    """Recurso nomeado permaneceu ocupado além do lock_timeout configurado."""


# ---------------------------------------------------------------------------
# Engine / Run
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class ConcurrentRunError(EsteiraException):
    """Já existe uma run em andamento para a mesma pipeline."""


@dataclass(frozen=True, eq=False)
class InvalidTransitionError(EsteiraException):
    """Transição de estado não permitida (ex.: sair de um estado terminal)."""


@dataclass(frozen=True, eq=False)
class RunNotFoundError(EsteiraException):
    """Run inexistente ou já purgada pela política de retenção."""
