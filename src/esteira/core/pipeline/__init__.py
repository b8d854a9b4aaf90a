# src/esteira/core/pipeline/__init__.py
"""
# Pipeline Core — Esteira

Este pacote define o **modelo declarativo** de uma pipeline e os
**contratos** entre a definição e o motor de execução.

## Componentes

- **definition**: árvore de stages (StepSequence | ParallelGroup), steps,
  bindings de credencial, hooks e opções globais
- **serialization**: round-trip YAML/JSON ↔ PipelineDefinition
- **guards**: predicados `when` sobre parâmetros
- **context**: `RunContext` imutável passado a cada step
- **step**: contrato uniforme de ação (ActionRequest/ActionOutcome/ActionRunner)
- **registry**: `ActionRegistry` de ações tipadas
- **types**: Status, ExecutionResult, RunReport e a máquina de estados

## Limites Explícitos

- Não valida semântica da definição (ver `core.engine.planner`)
- Não executa pipeline
"""

from .context import RunContext, build_context
from .definition import (
    Backoff,
    CredentialBinding,
    PipelineDefinition,
    PipelineOptions,
    PostHooks,
    StageDefinition,
    StepDefinition,
)
from .registry import ActionRegistry
from .serialization import (
    definition_from_dict,
    definition_to_dict,
    dumps_definition,
    load_definition,
    loads_definition,
)
from .step import ActionOutcome, ActionRequest, ActionRunner
from .types import ExecutionResult, ResultKind, RunReport, Status

__all__ = [
    "ActionOutcome",
    "ActionRegistry",
    "ActionRequest",
    "ActionRunner",
    "Backoff",
    "CredentialBinding",
    "ExecutionResult",
    "PipelineDefinition",
    "PipelineOptions",
    "PostHooks",
    "ResultKind",
    "RunContext",
    "RunReport",
    "StageDefinition",
    "Status",
    "StepDefinition",
    "build_context",
    "definition_from_dict",
    "definition_to_dict",
    "dumps_definition",
    "load_definition",
    "loads_definition",
]
