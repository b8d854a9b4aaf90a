"""
Registro de ações tipadas.

Steps com `action: <id>` são resolvidos neste registry em vez de irem
para o shell. O registry valida unicidade de ids e preserva a ordem de
registro, como um catálogo explícito de integrações.

Ações embutidas (espelham steps básicos de servidores de CI):
    - echo  → escreve `args.message` no output
    - sleep → espera `args.seconds`, observando cancelamento
    - error → falha com `args.message`

Invariantes:
    - Cada action id é único no registry
    - Nenhuma ação inválida (id vazio, não-callable) é aceita
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from .step import Action, ActionOutcome, ActionRequest


class DuplicateActionIdError(ValueError):
    """Duas ações registradas com o mesmo id."""


class UnknownActionError(KeyError):
    """Step referencia uma ação que não existe no registry."""


def _echo(request: ActionRequest) -> None:
    request.write(str(request.args.get("message", "")))


def _sleep(request: ActionRequest) -> ActionOutcome:
    seconds = float(request.args.get("seconds", 0))
    if request.cancel.wait(seconds):
        return ActionOutcome(exit_code=None, cancelled=True)
    return ActionOutcome(exit_code=0)


def _error(request: ActionRequest) -> ActionOutcome:
    message = str(request.args.get("message", "error step"))
    request.write(message)
    return ActionOutcome(exit_code=1, error=message)


@dataclass
class ActionRegistry:
    _actions: Dict[str, Action] = field(default_factory=dict, init=False, repr=False)
    _order: List[str] = field(default_factory=list, init=False, repr=False)

    @classmethod
    def with_builtins(cls) -> "ActionRegistry":
        registry = cls()
        registry.add("echo", _echo)
        registry.add("sleep", _sleep)
        registry.add("error", _error)
        return registry

    def add(self, action_id: str, action: Action) -> None:
        if not isinstance(action_id, str) or not action_id.strip():
            raise ValueError("action id must be a non-empty string")
        if not callable(action):
            raise TypeError(f"action '{action_id}' must be callable")
        if action_id in self._actions:
            raise DuplicateActionIdError(f"Duplicate action id: {action_id}")

        self._actions[action_id] = action
        self._order.append(action_id)

    def get(self, action_id: str) -> Action:
        try:
            return self._actions[action_id]
        except KeyError:
            raise UnknownActionError(action_id)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    def list(self) -> List[str]:
        return list(self._order)
