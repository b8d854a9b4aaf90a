"""
Contrato uniforme de ação de step.

Cada step invoca exatamente uma ação externa através da mesma chamada:

    (command-or-action-id, ambiente resolvido, working directory)
        -> (exit status, output capturado)

O motor é agnóstico ao que a ação faz (build, scanner, upload, container).

Componentes:
    - ActionRequest → entrada da ação (inclui token de cancelamento e deadline)
    - ActionOutcome → saída da ação (exit status, output, motivo de término)
    - ActionRunner  → protocolo implementado pelos runners (shell, ações tipadas)
    - Action        → protocolo de uma ação tipada registrada por id

Decisões arquiteturais:
    - Cancelamento é cooperativo: runners observam `cancel` a cada
      intervalo de polling
    - O output devolvido é bruto; o mascaramento de segredos é feito pelo
      Executor antes de qualquer persistência
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable


@runtime_checkable
class CancelSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: Optional[float] = None) -> bool: ...


@dataclass
class ActionRequest:
    step_id: str
    environment: Dict[str, str]
    workdir: Path
    cancel: CancelSignal
    timeout: Optional[float] = None
    command: Optional[str] = None
    action: Optional[str] = None
    args: Mapping[str, Any] = field(default_factory=dict)
    _lines: List[str] = field(default_factory=list, init=False, repr=False)

    def write(self, text: str) -> None:
        """Usado por ações tipadas para produzir output capturado."""
        self._lines.append(text if text.endswith("\n") else text + "\n")

    @property
    def written(self) -> str:
        return "".join(self._lines)


@dataclass(frozen=True)
class ActionOutcome:
    exit_code: Optional[int]
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False
    error: Optional[str] = None


@runtime_checkable
class ActionRunner(Protocol):
    def run(self, request: ActionRequest) -> ActionOutcome:
        """Executa a ação e só retorna depois de todo efeito colateral ser reaped."""
        ...


class Action(Protocol):
    """Ação tipada. Pode retornar ActionOutcome, um exit code ou None (sucesso)."""

    def __call__(self, request: ActionRequest) -> Union[ActionOutcome, int, None]: ...
