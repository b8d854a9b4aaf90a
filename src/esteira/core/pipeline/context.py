# src/esteira/core/pipeline/context.py
"""
Contexto de execução imutável de uma run.

Em vez de variáveis globais mutáveis (ambiente calculado entre stages,
versão derivada do número do build), a Esteira resolve tudo uma única
vez no início da run e passa o mesmo `RunContext` a cada chamada do
Step Executor.

O RunContext consolida:
    - identidade da execução (run_id, pipeline, build_number, created_at)
    - parâmetros efetivos (declarados + informados no disparo)
    - ambiente resolvido (parâmetros, variáveis de build e `environment`)
    - workspace onde os steps executam

Invariantes:
    - O contexto nunca é mutado após criado (mappings read-only)
    - Segredos nunca fazem parte do contexto: eles existem apenas no
      ambiente por-step montado pelo Credential Scope Manager

Limites explícitos:
    - Não executa steps
    - Não registra eventos (ver `traceability.manifest`)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Dict, Mapping, Optional

from .definition import PipelineDefinition, frozen_mapping


@dataclass(frozen=True)
class RunContext:
    run_id: str
    pipeline: str
    build_number: int
    created_at: str
    workspace: Path
    parameters: Mapping[str, str] = field(default_factory=frozen_mapping)
    environment: Mapping[str, str] = field(default_factory=frozen_mapping)

    def render(self, template: str) -> str:
        """Substitui `${VAR}` conhecidos; referências desconhecidas ficam para o shell."""
        return Template(template).safe_substitute(self.environment)

    def step_environment(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Cópia nova do ambiente da run, opcionalmente enriquecida (ex.: credenciais)."""
        env = dict(self.environment)
        if extra:
            env.update(extra)
        return env


def build_context(
    definition: PipelineDefinition,
    *,
    run_id: str,
    build_number: int,
    created_at: str,
    workspace: Path,
    parameters: Mapping[str, str],
) -> RunContext:
    """
    Resolve parâmetros e ambiente da run.

    Parâmetros informados sobrescrevem defaults declarados. Valores de
    `environment` são renderizados na ordem de declaração, podendo
    referenciar variáveis anteriores (ex.: VERSION = "1.0.${BUILD_NUMBER}").
    """
    effective: Dict[str, str] = {
        name: default for name, default in definition.parameters.items() if default is not None
    }
    effective.update({k: str(v) for k, v in parameters.items()})

    env: Dict[str, str] = {
        "RUN_ID": run_id,
        "BUILD_NUMBER": str(build_number),
        "PIPELINE_NAME": definition.name,
        "WORKSPACE": str(workspace),
    }
    env.update(effective)
    for name, value in definition.environment.items():
        env[name] = Template(value).safe_substitute(env)

    return RunContext(
        run_id=run_id,
        pipeline=definition.name,
        build_number=build_number,
        created_at=created_at,
        workspace=workspace,
        parameters=frozen_mapping(effective),
        environment=frozen_mapping(env),
    )
