# src/esteira/core/engine/planner.py
"""
Stage/Graph Resolver.

Valida uma PipelineDefinition antes de qualquer execução e produz um
plano imutável consumido pelo Engine.

A árvore de stages é percorrida uma única vez, acumulando TODOS os
problemas encontrados; ao final, se houver algum, um único
`ValidationError` é levantado com a lista completa. O operador recebe o
feedback inteiro em uma passada.

Regras verificadas:
    - nomes de stage vazios ou duplicados (pipeline inteira, cada duplicata listada)
    - referências cíclicas entre stages aninhados (a definição deve ser uma árvore)
    - stage com `steps` e `parallel` ao mesmo tempo, ou com nenhum dos dois
    - stage aninhado que declara o mesmo lock de um stage ancestral
    - `fail_fast` fora de parallel group
    - step com `command` e `action` ao mesmo tempo, ou com nenhum dos dois
    - ação tipada desconhecida (quando um ActionRegistry é informado)
    - retry inteiro >= 0; timeout, backoff e lock_timeout finitos e >= 0
    - opções globais (concurrency >= 1, retention >= 1, timeouts finitos)
    - guards malformados ou que referenciam parâmetros não declarados
    - parâmetros da run não declarados, ou obrigatórios ausentes

Decisões arquiteturais:
    - Guards são avaliados aqui, antes do agendamento: stages desabilitados
      ficam marcados no plano (`enabled=False`) em vez de pulados ad hoc
    - A ordem do plano é a ordem de declaração

Limites explícitos:
    - Não executa steps
    - Não interage com RunContext nem com o Manifest
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from ..exceptions import ValidationError
from ..pipeline.definition import HOOK_KINDS, PipelineDefinition, PostHooks, StageDefinition, StepDefinition, frozen_mapping
from ..pipeline.guards import evaluate_guard, guard_problems
from ..pipeline.registry import ActionRegistry


@dataclass(frozen=True)
class PlannedStage:
    """Nó do plano: stage validado + decisão do guard."""

    path: str
    definition: StageDefinition
    enabled: bool
    children: Tuple["PlannedStage", ...] = ()

    @property
    def name(self) -> str:
        return self.definition.name


@dataclass(frozen=True)
class ExecutionPlan:
    definition: PipelineDefinition
    stages: Tuple[PlannedStage, ...]
    parameters: Mapping[str, str]

    def walk(self):
        """Pré-ordem sobre todos os nós do plano."""
        stack = list(reversed(self.stages))
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


def _non_negative(value: Any, *, integer: bool = False) -> bool:
    if isinstance(value, bool):
        return False
    if integer:
        return isinstance(value, int) and value >= 0
    return isinstance(value, (int, float)) and math.isfinite(value) and value >= 0


class _Resolver:
    def __init__(self, definition: PipelineDefinition, actions: Optional[ActionRegistry]) -> None:
        self.definition = definition
        self.actions = actions
        self.declared: Set[str] = set(definition.parameters)
        self.problems: List[str] = []
        self.names: Dict[str, List[str]] = {}

    def check_step(self, step: StepDefinition, where: str) -> None:
        if bool(step.command) == bool(step.action):
            self.problems.append(f"{where}: informe exatamente um de 'command' ou 'action'")
        elif step.action and self.actions is not None and step.action not in self.actions:
            self.problems.append(f"{where}: ação desconhecida '{step.action}'")
        if not _non_negative(step.retry, integer=True):
            self.problems.append(f"{where}: retry deve ser inteiro >= 0 (recebido {step.retry!r})")
        if step.timeout is not None and not _non_negative(step.timeout):
            self.problems.append(f"{where}: timeout deve ser finito e >= 0 (recebido {step.timeout!r})")
        if step.backoff is not None:
            if not _non_negative(step.backoff.seconds):
                self.problems.append(f"{where}: backoff.seconds deve ser finito e >= 0")
            if step.backoff.max_seconds is not None and not _non_negative(step.backoff.max_seconds):
                self.problems.append(f"{where}: backoff.max_seconds deve ser finito e >= 0")
        for binding in step.credentials:
            if not binding.credential_id:
                self.problems.append(f"{where}: credential_id vazio")
            if not binding.variables:
                self.problems.append(f"{where}: credencial '{binding.credential_id}' não expõe nenhuma variável")

    def check_hooks(self, post: PostHooks, where: str) -> None:
        for kind in HOOK_KINDS:
            for i, step in enumerate(getattr(post, kind)):
                self.check_step(step, f"{where}.post.{kind}[{i}]")

    def stage(
        self,
        stage: StageDefinition,
        prefix: str,
        ancestors: Tuple[int, ...],
        held: Tuple[str, ...] = (),
    ) -> PlannedStage:
        name = stage.name if isinstance(stage.name, str) else ""
        path = f"{prefix}{name}"
        where = f"stage '{path}'"

        if not name.strip():
            self.problems.append(f"stage sem nome em '{prefix or '<raiz>'}'")
        else:
            self.names.setdefault(name, []).append(path)

        if stage.is_parallel and stage.steps:
            self.problems.append(f"{where}: use 'steps' ou 'parallel', não ambos")
        elif not stage.is_parallel and not stage.steps:
            self.problems.append(f"{where}: stage vazio (sem 'steps' nem 'parallel')")
        if stage.fail_fast and not stage.is_parallel:
            self.problems.append(f"{where}: 'fail_fast' só se aplica a parallel groups")
        if stage.lock_timeout is not None and not _non_negative(stage.lock_timeout):
            self.problems.append(f"{where}: lock_timeout deve ser finito e >= 0")
        if stage.lock is not None and not str(stage.lock).strip():
            self.problems.append(f"{where}: lock com nome vazio")
        elif stage.lock is not None and stage.lock in held:
            self.problems.append(
                f"{where}: lock '{stage.lock}' já é detido por um stage ancestral (a run esperaria por si mesma)"
            )

        if stage.when is not None:
            _, problems = guard_problems(stage.when, self.declared, f"{where}.when")
            self.problems.extend(problems)

        for i, step in enumerate(stage.steps):
            self.check_step(step, f"{where}.steps[{step.label(i)}]")
        self.check_hooks(stage.post, where)

        children = []
        held_here = held + (stage.lock,) if stage.lock else held
        for branch in stage.parallel:
            if id(branch) in ancestors or branch is stage:
                self.problems.append(f"{where}: referência cíclica para o stage '{branch.name}'")
                continue
            children.append(self.stage(branch, f"{path}/", ancestors + (id(stage),), held_here))

        return PlannedStage(path=path, definition=stage, enabled=True, children=tuple(children))

    def check_options(self) -> None:
        opts = self.definition.options
        if opts.concurrency is not None and (not _non_negative(opts.concurrency, integer=True) or opts.concurrency < 1):
            self.problems.append(f"options.concurrency deve ser inteiro >= 1 (recebido {opts.concurrency!r})")
        if opts.retention is not None and (not _non_negative(opts.retention, integer=True) or opts.retention < 1):
            self.problems.append(f"options.retention deve ser inteiro >= 1 (recebido {opts.retention!r})")
        for key in ("timeout", "step_timeout"):
            value = getattr(opts, key)
            if value is not None and not _non_negative(value):
                self.problems.append(f"options.{key} deve ser finito e >= 0 (recebido {value!r})")

    def check_parameters(self, parameters: Mapping[str, str]) -> Dict[str, str]:
        for name in sorted(set(parameters) - self.declared):
            self.problems.append(f"parâmetro não declarado na pipeline: '{name}'")
        effective = {k: v for k, v in self.definition.parameters.items() if v is not None}
        effective.update({k: str(v) for k, v in parameters.items() if k in self.declared})
        for name in sorted(self.declared - set(effective)):
            self.problems.append(f"parâmetro obrigatório ausente: '{name}'")
        return effective


def _apply_guards(node: PlannedStage, parameters: Mapping[str, str], parent_enabled: bool = True) -> PlannedStage:
    guard = node.definition.when
    enabled = parent_enabled and (guard is None or evaluate_guard(guard, parameters))
    children = tuple(_apply_guards(c, parameters, enabled) for c in node.children)
    return PlannedStage(path=node.path, definition=node.definition, enabled=enabled, children=children)


def resolve_plan(
    definition: PipelineDefinition,
    parameters: Optional[Mapping[str, str]] = None,
    *,
    actions: Optional[ActionRegistry] = None,
) -> ExecutionPlan:
    """
    Valida a definição e produz o plano de execução.

    Args:
        definition: Definição parseada.
        parameters: Parâmetros informados no disparo da run.
        actions: Registry para validar ids de ações tipadas (opcional).

    Returns:
        ExecutionPlan: plano imutável com guards já avaliados.

    Raises:
        ValidationError: Com todos os problemas encontrados.
    """
    resolver = _Resolver(definition, actions)
    if not isinstance(definition.name, str) or not definition.name.strip():
        resolver.problems.append("pipeline sem nome")
    if not definition.stages:
        resolver.problems.append("pipeline sem stages")

    resolver.check_options()
    nodes = [resolver.stage(stage, "", ()) for stage in definition.stages]
    resolver.check_hooks(definition.post, "pipeline")

    for name, paths in resolver.names.items():
        if len(paths) > 1:
            resolver.problems.append(f"nome de stage duplicado '{name}' ({len(paths)}x: {', '.join(paths)})")

    effective = resolver.check_parameters(dict(parameters or {}))

    if resolver.problems:
        raise ValidationError.from_problems(resolver.problems)

    return ExecutionPlan(
        definition=definition,
        stages=tuple(_apply_guards(n, effective) for n in nodes),
        parameters=frozen_mapping(effective),
    )
