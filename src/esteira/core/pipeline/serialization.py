"""
Forma textual (YAML/JSON) da definição de pipeline.

Round-trip sem perdas:

    loads_definition(dumps_definition(d)) == d

`definition_to_dict` omite campos com valor default; `definition_from_dict`
reconstrói exatamente os mesmos defaults, de forma que a equivalência
estrutural é preservada.

Erros estruturais (tipos errados, chaves desconhecidas, campos
obrigatórios ausentes) são acumulados durante o parsing e levantados
juntos em um único `ValidationError`. Regras semânticas (nomes duplicados,
guards, faixas de retry/timeout) ficam no planner.

Exemplo:

    name: app
    parameters: {DEPLOY: "false"}
    environment: {VERSION: "1.0.${BUILD_NUMBER}"}
    stages:
      - name: build
        steps:
          - command: mvn -B package
            retry: 2
      - name: quality
        parallel:
          - name: sonar
            steps:
              - command: mvn sonar:sonar
                credentials:
                  - credential_id: sonar-token
                    variable: SONAR_TOKEN
          - name: unit
            steps: [{command: mvn test}]
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from ..exceptions import ValidationError
from .definition import (
    HOOK_KINDS,
    Backoff,
    CredentialBinding,
    PipelineDefinition,
    PipelineOptions,
    PostHooks,
    StageDefinition,
    StepDefinition,
    frozen_mapping,
)

_PIPELINE_KEYS = {"name", "stages", "options", "parameters", "environment", "post", "archive"}
_STAGE_KEYS = {"name", "steps", "parallel", "when", "post", "lock", "lock_timeout", "best_effort", "fail_fast"}
_STEP_KEYS = {
    "name", "command", "action", "args", "credentials", "retry",
    "timeout", "backoff", "directory", "unstable_exit_codes",
}
_OPTION_KEYS = {"concurrency", "retention", "timeout", "step_timeout", "allow_concurrent_runs"}
_BACKOFF_KEYS = {"kind", "seconds", "max_seconds"}


# ---------------------------------------------------------------------------
# dict -> PipelineDefinition
# ---------------------------------------------------------------------------

class _Parser:
    def __init__(self) -> None:
        self.problems: List[str] = []

    def problem(self, where: str, message: str) -> None:
        self.problems.append(f"{where}: {message}")

    def mapping(self, value: Any, where: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            self.problem(where, f"esperado mapping, recebido {type(value).__name__}")
            return {}
        return dict(value)

    def sequence(self, value: Any, where: str) -> List[Any]:
        if value is None:
            return []
        if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
            self.problem(where, f"esperado lista, recebido {type(value).__name__}")
            return []
        return list(value)

    def unknown_keys(self, data: Mapping[str, Any], allowed: set, where: str) -> None:
        for key in sorted(set(data) - allowed):
            self.problem(where, f"chave desconhecida '{key}'")

    def optional_str(self, data: Mapping[str, Any], key: str, where: str) -> Optional[str]:
        value = data.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            self.problem(where, f"'{key}' deve ser string")
            return None
        return value

    def optional_number(self, data: Mapping[str, Any], key: str, where: str) -> Optional[float]:
        value = data.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.problem(where, f"'{key}' deve ser numérico")
            return None
        return float(value)

    def optional_int(self, data: Mapping[str, Any], key: str, where: str) -> Optional[int]:
        value = data.get(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            self.problem(where, f"'{key}' deve ser inteiro")
            return None
        return value

    def flag(self, data: Mapping[str, Any], key: str, where: str) -> bool:
        value = data.get(key, False)
        if not isinstance(value, bool):
            self.problem(where, f"'{key}' deve ser booleano")
            return False
        return value

    def string_map(self, value: Any, where: str, *, allow_none: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, item in self.mapping(value, where).items():
            if item is None and allow_none:
                out[str(key)] = None
            elif isinstance(item, (str, int, float)) and not isinstance(item, bool):
                out[str(key)] = str(item)
            else:
                self.problem(where, f"valor de '{key}' deve ser escalar")
        return out

    # -- elementos ---------------------------------------------------------

    def credential(self, raw: Any, where: str) -> Optional[CredentialBinding]:
        data = self.mapping(raw, where)
        if not data:
            self.problem(where, "binding de credencial vazio")
            return None
        self.unknown_keys(data, {"credential_id", "variable", "variables"}, where)
        credential_id = data.get("credential_id")
        if not isinstance(credential_id, str) or not credential_id.strip():
            self.problem(where, "'credential_id' é obrigatório")
            return None
        variables: Dict[str, str] = {}
        if "variable" in data:
            if not isinstance(data["variable"], str):
                self.problem(where, "'variable' deve ser string")
            else:
                variables[data["variable"]] = "value"
        for var, secret_field in self.mapping(data.get("variables"), f"{where}.variables").items():
            if not isinstance(secret_field, str):
                self.problem(where, f"campo do segredo para '{var}' deve ser string")
                continue
            variables[str(var)] = secret_field
        if not variables:
            self.problem(where, f"credencial '{credential_id}' não expõe nenhuma variável")
        return CredentialBinding(credential_id=credential_id, variables=frozen_mapping(variables))

    def backoff(self, raw: Any, where: str) -> Optional[Backoff]:
        if raw is None:
            return None
        data = self.mapping(raw, where)
        self.unknown_keys(data, _BACKOFF_KEYS, where)
        kind = data.get("kind", "fixed")
        if kind not in ("fixed", "exponential"):
            self.problem(where, f"kind de backoff desconhecido: {kind!r}")
            kind = "fixed"
        seconds = self.optional_number(data, "seconds", where)
        return Backoff(
            kind=kind,
            seconds=0.0 if seconds is None else seconds,
            max_seconds=self.optional_number(data, "max_seconds", where),
        )

    def step(self, raw: Any, where: str) -> StepDefinition:
        if isinstance(raw, str):
            return StepDefinition(command=raw)
        data = self.mapping(raw, where)
        self.unknown_keys(data, _STEP_KEYS, where)
        retry = self.optional_int(data, "retry", where)
        codes = []
        for code in self.sequence(data.get("unstable_exit_codes"), f"{where}.unstable_exit_codes"):
            if isinstance(code, bool) or not isinstance(code, int):
                self.problem(where, "unstable_exit_codes deve conter inteiros")
            else:
                codes.append(code)
        return StepDefinition(
            name=self.optional_str(data, "name", where),
            command=self.optional_str(data, "command", where),
            action=self.optional_str(data, "action", where),
            args=frozen_mapping(self.mapping(data.get("args"), f"{where}.args")),
            credentials=tuple(
                binding
                for i, item in enumerate(self.sequence(data.get("credentials"), f"{where}.credentials"))
                for binding in [self.credential(item, f"{where}.credentials[{i}]")]
                if binding is not None
            ),
            retry=0 if retry is None else retry,
            timeout=self.optional_number(data, "timeout", where),
            backoff=self.backoff(data.get("backoff"), f"{where}.backoff"),
            directory=self.optional_str(data, "directory", where),
            unstable_exit_codes=tuple(codes),
        )

    def steps(self, raw: Any, where: str) -> tuple:
        return tuple(
            self.step(item, f"{where}[{i}]") for i, item in enumerate(self.sequence(raw, where))
        )

    def post(self, raw: Any, where: str) -> PostHooks:
        data = self.mapping(raw, where)
        self.unknown_keys(data, set(HOOK_KINDS), where)
        return PostHooks(**{kind: self.steps(data.get(kind), f"{where}.{kind}") for kind in HOOK_KINDS})

    def stage(self, raw: Any, where: str) -> Optional[StageDefinition]:
        data = self.mapping(raw, where)
        if not data:
            self.problem(where, "stage vazio")
            return None
        self.unknown_keys(data, _STAGE_KEYS, where)
        name = data.get("name")
        if not isinstance(name, str):
            self.problem(where, "'name' é obrigatório e deve ser string")
            name = ""
        label = f"stage '{name}'" if name else where
        when = data.get("when")
        if when is not None and not isinstance(when, Mapping):
            self.problem(label, "'when' deve ser um mapping")
            when = None
        return StageDefinition(
            name=name,
            steps=self.steps(data.get("steps"), f"{label}.steps"),
            parallel=self.stages(data.get("parallel"), f"{label}.parallel"),
            when=frozen_mapping(when) if when is not None else None,
            post=self.post(data.get("post"), f"{label}.post"),
            lock=self.optional_str(data, "lock", label),
            lock_timeout=self.optional_number(data, "lock_timeout", label),
            best_effort=self.flag(data, "best_effort", label),
            fail_fast=self.flag(data, "fail_fast", label),
        )

    def stages(self, raw: Any, where: str) -> tuple:
        out = []
        for i, item in enumerate(self.sequence(raw, where)):
            stage = self.stage(item, f"{where}[{i}]")
            if stage is not None:
                out.append(stage)
        return tuple(out)

    def options(self, raw: Any, where: str) -> PipelineOptions:
        data = self.mapping(raw, where)
        self.unknown_keys(data, _OPTION_KEYS, where)
        return PipelineOptions(
            concurrency=self.optional_int(data, "concurrency", where),
            retention=self.optional_int(data, "retention", where),
            timeout=self.optional_number(data, "timeout", where),
            step_timeout=self.optional_number(data, "step_timeout", where),
            allow_concurrent_runs=self.flag(data, "allow_concurrent_runs", where),
        )

    def pipeline(self, raw: Any) -> PipelineDefinition:
        data = self.mapping(raw, "pipeline")
        self.unknown_keys(data, _PIPELINE_KEYS, "pipeline")
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            self.problem("pipeline", "'name' é obrigatório")
            name = ""
        archive = []
        for pattern in self.sequence(data.get("archive"), "pipeline.archive"):
            if isinstance(pattern, str):
                archive.append(pattern)
            else:
                self.problem("pipeline.archive", "padrões devem ser strings")
        return PipelineDefinition(
            name=name,
            stages=self.stages(data.get("stages"), "pipeline.stages"),
            options=self.options(data.get("options"), "pipeline.options"),
            parameters=frozen_mapping(self.string_map(data.get("parameters"), "pipeline.parameters", allow_none=True)),
            environment=frozen_mapping(self.string_map(data.get("environment"), "pipeline.environment")),
            post=self.post(data.get("post"), "pipeline.post"),
            archive=tuple(archive),
        )


def definition_from_dict(data: Mapping[str, Any]) -> PipelineDefinition:
    """Constrói a definição a partir de um dict; acumula todos os erros estruturais."""
    parser = _Parser()
    definition = parser.pipeline(data)
    if parser.problems:
        raise ValidationError.from_problems(parser.problems)
    return definition


# ---------------------------------------------------------------------------
# PipelineDefinition -> dict
# ---------------------------------------------------------------------------

def _credential_to_dict(binding: CredentialBinding) -> Dict[str, Any]:
    return {"credential_id": binding.credential_id, "variables": dict(binding.variables)}


def _step_to_dict(step: StepDefinition) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if step.name is not None:
        out["name"] = step.name
    if step.command is not None:
        out["command"] = step.command
    if step.action is not None:
        out["action"] = step.action
    if step.args:
        out["args"] = dict(step.args)
    if step.credentials:
        out["credentials"] = [_credential_to_dict(c) for c in step.credentials]
    if step.retry:
        out["retry"] = step.retry
    if step.timeout is not None:
        out["timeout"] = step.timeout
    if step.backoff is not None:
        backoff: Dict[str, Any] = {"kind": step.backoff.kind, "seconds": step.backoff.seconds}
        if step.backoff.max_seconds is not None:
            backoff["max_seconds"] = step.backoff.max_seconds
        out["backoff"] = backoff
    if step.directory is not None:
        out["directory"] = step.directory
    if step.unstable_exit_codes:
        out["unstable_exit_codes"] = list(step.unstable_exit_codes)
    return out


def _post_to_dict(post: PostHooks) -> Dict[str, Any]:
    return {
        kind: [_step_to_dict(s) for s in getattr(post, kind)]
        for kind in HOOK_KINDS
        if getattr(post, kind)
    }


def _stage_to_dict(stage: StageDefinition) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": stage.name}
    if stage.when is not None:
        out["when"] = dict(stage.when)
    if stage.lock is not None:
        out["lock"] = stage.lock
    if stage.lock_timeout is not None:
        out["lock_timeout"] = stage.lock_timeout
    if stage.best_effort:
        out["best_effort"] = True
    if stage.fail_fast:
        out["fail_fast"] = True
    if stage.steps:
        out["steps"] = [_step_to_dict(s) for s in stage.steps]
    if stage.parallel:
        out["parallel"] = [_stage_to_dict(b) for b in stage.parallel]
    if not stage.post.is_empty:
        out["post"] = _post_to_dict(stage.post)
    return out


def definition_to_dict(definition: PipelineDefinition) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": definition.name}
    options = {
        key: getattr(definition.options, key)
        for key in ("concurrency", "retention", "timeout", "step_timeout")
        if getattr(definition.options, key) is not None
    }
    if definition.options.allow_concurrent_runs:
        options["allow_concurrent_runs"] = True
    if options:
        out["options"] = options
    if definition.parameters:
        out["parameters"] = dict(definition.parameters)
    if definition.environment:
        out["environment"] = dict(definition.environment)
    out["stages"] = [_stage_to_dict(s) for s in definition.stages]
    if not definition.post.is_empty:
        out["post"] = _post_to_dict(definition.post)
    if definition.archive:
        out["archive"] = list(definition.archive)
    return out


# ---------------------------------------------------------------------------
# Texto
# ---------------------------------------------------------------------------

def loads_definition(text: str) -> PipelineDefinition:
    """Parseia YAML (JSON é um subconjunto de YAML)."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ValidationError.from_problems([f"documento: YAML inválido ({exc})"])
    return definition_from_dict(data if data is not None else {})


def dumps_definition(definition: PipelineDefinition, *, fmt: str = "yaml") -> str:
    data = definition_to_dict(definition)
    if fmt == "json":
        return json.dumps(data, indent=2, ensure_ascii=False)
    if fmt != "yaml":
        raise ValueError(f"Unsupported definition format: {fmt}")
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def load_definition(path: str | Path) -> PipelineDefinition:
    file = Path(path)
    if file.suffix.lower() not in {".yaml", ".yml", ".json"}:
        raise ValidationError.from_problems([f"{file}: formato não suportado ({file.suffix})"])
    if not file.exists():
        raise ValidationError.from_problems([f"{file}: arquivo não encontrado"])
    return loads_definition(file.read_text(encoding="utf-8"))
