"""
Engine da Esteira.

Este pacote contém a implementação responsável por **validar** e
**executar** pipelines, respeitando ordem, isolamento e semântica de falha.

Componentes principais:
    - planner     → Stage/Graph Resolver (validação completa + guards)
    - engine      → Pipeline Engine (stages, parallel groups, hooks, timeout)
    - executor    → Step Executor (uma tentativa, classificação do desfecho)
    - retry       → Retry Wrapper (tenacity)
    - credentials → Credential Scope Manager, secret stores e mascaramento
    - runners     → execução shell (process group) e ações tipadas
    - locks       → locks nomeados de recurso
    - cancel      → tokens de cancelamento hierárquicos

Invariantes:
    - Stage N+1 nunca inicia antes de todas as branches do stage N terminarem
    - Nenhum resultado fica em RUNNING ao final da run
    - Segredos nunca aparecem em output persistido
"""

from .cancel import CancelToken
from .credentials import (
    DotenvSecretStore,
    EnvironmentSecretStore,
    InMemorySecretStore,
    SecretMasker,
    SecretStore,
    with_credentials,
)
from .engine import Engine
from .executor import StepExecutor
from .locks import LockManager
from .planner import ExecutionPlan, PlannedStage, resolve_plan
from .retry import with_retry
from .runners import RegistryActionRunner, ShellActionRunner

__all__ = [
    "CancelToken",
    "DotenvSecretStore",
    "Engine",
    "EnvironmentSecretStore",
    "ExecutionPlan",
    "InMemorySecretStore",
    "LockManager",
    "PlannedStage",
    "RegistryActionRunner",
    "SecretMasker",
    "SecretStore",
    "ShellActionRunner",
    "StepExecutor",
    "resolve_plan",
    "with_credentials",
    "with_retry",
]
