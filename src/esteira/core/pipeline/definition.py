"""
Modelo declarativo de pipeline da Esteira.

A definição é uma árvore de stages modelada como tipo-soma:

    StageDefinition = StepSequence (steps ordenados)
                    | ParallelGroup (branches independentes, cada uma um StageDefinition)

Componentes:
    - CredentialBinding  → referência opaca a um segredo + variáveis expostas
    - Backoff            → espera entre tentativas de um step
    - StepDefinition     → descritor de ação (command template ou action id)
    - PostHooks          → steps disparados pelo desfecho de um stage ou run
    - StageDefinition    → stage nomeado (sequencial ou parallel group)
    - PipelineOptions    → opções globais (concorrência, retenção, timeout)
    - PipelineDefinition → raiz imutável, parseada uma vez por run

Invariantes:
    - Nenhum valor de segredo vive na definição, apenas `credential_id`
    - A definição é imutável após o load (dataclasses frozen, mappings read-only)

Limites explícitos:
    - Não valida a definição (responsabilidade do planner)
    - Não faz parsing de texto (responsabilidade de `serialization`)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence


def frozen_mapping(data: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class CredentialBinding:
    """
    Vínculo declarativo com um segredo do secret store.

    `variables` mapeia nome de variável de ambiente → campo do segredo.
    Segredos do tipo texto expõem o campo `value`; credenciais
    usuário/senha expõem `username` e `password`.
    """

    credential_id: str
    variables: Mapping[str, str] = field(default_factory=frozen_mapping)


@dataclass(frozen=True)
class Backoff:
    """Espera entre tentativas: `fixed` (constante) ou `exponential` (dobra a cada tentativa)."""

    kind: str = "fixed"
    seconds: float = 0.0
    max_seconds: Optional[float] = None


@dataclass(frozen=True)
class StepDefinition:
    """
    Menor unidade agendável de uma pipeline.

    Exatamente um de `command` (shell, com template `${VAR}`) ou `action`
    (id de uma ação tipada registrada no ActionRegistry) deve ser informado.
    `timeout=None` herda o timeout padrão da pipeline.
    """

    name: Optional[str] = None
    command: Optional[str] = None
    action: Optional[str] = None
    args: Mapping[str, Any] = field(default_factory=frozen_mapping)
    credentials: Sequence[CredentialBinding] = ()
    retry: int = 0
    timeout: Optional[float] = None
    backoff: Optional[Backoff] = None
    directory: Optional[str] = None
    unstable_exit_codes: Sequence[int] = ()

    def label(self, index: int) -> str:
        return self.name or str(index)


@dataclass(frozen=True)
class PostHooks:
    """Hooks por desfecho. `always` roda primeiro, depois o hook do desfecho."""

    always: Sequence[StepDefinition] = ()
    success: Sequence[StepDefinition] = ()
    unstable: Sequence[StepDefinition] = ()
    failure: Sequence[StepDefinition] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.always or self.success or self.unstable or self.failure)


HOOK_KINDS = ("always", "success", "unstable", "failure")


@dataclass(frozen=True)
class StageDefinition:
    """
    Stage nomeado: sequência de steps OU parallel group de branches.

    - `when`: guard (predicado sobre parâmetros da pipeline)
    - `lock`: recurso nomeado adquirido durante todo o stage
    - `best_effort`: falha do stage vira UNSTABLE e não interrompe a run
    - `fail_fast`: em parallel groups, a primeira falha cancela as branches irmãs
    """

    name: str
    steps: Sequence[StepDefinition] = ()
    parallel: Sequence["StageDefinition"] = ()
    when: Optional[Mapping[str, Any]] = None
    post: PostHooks = field(default_factory=PostHooks)
    lock: Optional[str] = None
    lock_timeout: Optional[float] = None
    best_effort: bool = False
    fail_fast: bool = False

    @property
    def is_parallel(self) -> bool:
        return bool(self.parallel)


@dataclass(frozen=True)
class PipelineOptions:
    concurrency: Optional[int] = None
    retention: Optional[int] = None
    timeout: Optional[float] = None
    step_timeout: Optional[float] = None
    allow_concurrent_runs: bool = False


@dataclass(frozen=True)
class PipelineDefinition:
    """
    Raiz imutável da definição de pipeline.

    - `parameters`: parâmetros declarados (nome → default, None = obrigatório)
    - `environment`: variáveis globais; valores aceitam `${VAR}` referenciando
      parâmetros, BUILD_NUMBER, RUN_ID, PIPELINE_NAME e variáveis anteriores
    - `archive`: padrões glob (relativos ao workspace) arquivados ao final da run
    """

    name: str
    stages: Sequence[StageDefinition] = ()
    options: PipelineOptions = field(default_factory=PipelineOptions)
    parameters: Mapping[str, Optional[str]] = field(default_factory=frozen_mapping)
    environment: Mapping[str, str] = field(default_factory=frozen_mapping)
    post: PostHooks = field(default_factory=PostHooks)
    archive: Sequence[str] = ()

