"""
Tipos canônicos de resultado da Esteira.

Este módulo define as estruturas que padronizam a comunicação entre
Executor, Engine, persistência e CLI:

    - Status          → estados de runs, stages e steps (inclui PENDING/RUNNING)
    - ResultKind      → classificação do resultado (stage, step, hook)
    - Lifecycle       → máquina de estados com transições validadas
    - AttemptRecord   → uma tentativa individual de um step (cadeia de retries)
    - ExecutionResult → resultado imutável de stage/step/hook
    - RunReport       → resumo machine-readable de uma run

Invariantes:
    - Enums possuem valores textuais canônicos (serializáveis em JSON)
    - ExecutionResult é imutável
    - Nenhuma transição sai de um estado terminal
    - RUNNING é alcançado no máximo uma vez

Limites explícitos:
    - Não executa steps
    - Não decide políticas de execução
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..exceptions import InvalidTransitionError


class Status(str, Enum):
    """
    Estados possíveis de uma run, stage ou step.

    PENDING e RUNNING são transitórios; os demais são terminais.
    ExecutionResult só carrega estados terminais.
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    UNSTABLE = "UNSTABLE"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_ok(self) -> bool:
        """SUCCESS e UNSTABLE não interrompem a pipeline."""
        return self in (Status.SUCCESS, Status.UNSTABLE)


TERMINAL_STATUSES = frozenset({Status.SUCCESS, Status.UNSTABLE, Status.FAILURE, Status.ABORTED})

# Gravidade crescente: o agregado de um conjunto é o pior status presente.
_SEVERITY = {
    Status.SUCCESS: 0,
    Status.UNSTABLE: 1,
    Status.FAILURE: 2,
    Status.ABORTED: 3,
}


def worst_status(statuses: Iterable[Status]) -> Status:
    """Agrega status terminais; conjunto vazio é SUCCESS."""
    worst = Status.SUCCESS
    for s in statuses:
        if _SEVERITY[s] > _SEVERITY[worst]:
            worst = s
    return worst


class ResultKind(str, Enum):
    STAGE = "stage"
    STEP = "step"
    HOOK = "hook"


_ALLOWED_TRANSITIONS = {
    Status.PENDING: frozenset({Status.RUNNING, Status.ABORTED}),
    Status.RUNNING: TERMINAL_STATUSES,
}


class Lifecycle:
    """
    Máquina de estados `PENDING -> RUNNING -> terminal`.

    PENDING -> ABORTED é permitido para runs canceladas antes de iniciar.
    Thread-safe: a run é lida por `get_status` enquanto o worker escreve.
    """

    def __init__(self, subject: str) -> None:
        self.subject = subject
        self._status = Status.PENDING
        self._lock = threading.Lock()

    @property
    def status(self) -> Status:
        with self._lock:
            return self._status

    def transition(self, target: Status) -> None:
        with self._lock:
            allowed = _ALLOWED_TRANSITIONS.get(self._status, frozenset())
            if target not in allowed:
                raise InvalidTransitionError(
                    message=f"Transição inválida para '{self.subject}': {self._status.value} -> {target.value}",
                    details={"subject": self.subject, "from": self._status.value, "to": target.value},
                )
            self._status = target


@dataclass(frozen=True)
class AttemptRecord:
    """Uma tentativa de execução de um step."""

    attempt: int
    status: Status
    duration_ms: int
    exit_code: Optional[int] = None
    output: Optional[str] = None
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "exit_code": self.exit_code,
            "output": self.output,
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttemptRecord":
        return cls(
            attempt=int(data["attempt"]),
            status=Status(data["status"]),
            duration_ms=int(data.get("duration_ms", 0)),
            exit_code=data.get("exit_code"),
            output=data.get("output"),
            summary=data.get("summary", ""),
        )


@dataclass(frozen=True)
class ExecutionResult:
    """
    Resultado imutável da execução de um stage, step ou hook.

    Campos:
        - id: caminho estável (ex.: "quality/sonar", "build/0", "build/post.always/0")
        - kind: stage, step ou hook
        - status: estado terminal
        - duration_ms: duração de parede
        - output: referência (path) ao output capturado, quando houver
        - summary: resumo textual (já mascarado)
        - exit_code: exit status da ação externa, quando houver
        - error: EsteiraErrorPayload serializado, em caso de falha
        - attempts: cadeia de tentativas (steps com retry)
        - children: resultados de steps (stage sequencial) ou branches (parallel)
        - skipped: motivo quando o stage não foi executado ("guard", "upstream_failure", "aborted")
    """

    id: str
    kind: ResultKind
    status: Status
    duration_ms: int = 0
    output: Optional[str] = None
    summary: str = ""
    exit_code: Optional[int] = None
    error: Optional[Dict[str, Any]] = None
    attempts: Tuple[AttemptRecord, ...] = ()
    children: Tuple["ExecutionResult", ...] = ()
    skipped: Optional[str] = None

    def find(self, result_id: str) -> Optional["ExecutionResult"]:
        if self.id == result_id:
            return self
        for child in self.children:
            found = child.find(result_id)
            if found is not None:
                return found
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "output": self.output,
            "summary": self.summary,
            "exit_code": self.exit_code,
            "error": self.error,
            "attempts": [a.to_dict() for a in self.attempts],
            "children": [c.to_dict() for c in self.children],
            "skipped": self.skipped,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionResult":
        return cls(
            id=data["id"],
            kind=ResultKind(data["kind"]),
            status=Status(data["status"]),
            duration_ms=int(data.get("duration_ms", 0)),
            output=data.get("output"),
            summary=data.get("summary", ""),
            exit_code=data.get("exit_code"),
            error=data.get("error"),
            attempts=tuple(AttemptRecord.from_dict(a) for a in data.get("attempts", []) or []),
            children=tuple(cls.from_dict(c) for c in data.get("children", []) or []),
            skipped=data.get("skipped"),
        )


@dataclass
class RunReport:
    """
    Resumo machine-readable de uma run.

    Durante a execução é um snapshot (status PENDING/RUNNING); ao final
    reflete o estado terminal e é persistido em `report.json`.
    """

    run_id: str
    pipeline: str
    build_number: int
    status: Status
    parameters: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: int = 0
    stages: List[ExecutionResult] = field(default_factory=list)
    hooks: List[ExecutionResult] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    definition_hash: Optional[str] = None

    @property
    def exit_code(self) -> int:
        """Exit code do processo disparador: 0 para SUCCESS/UNSTABLE."""
        return 0 if self.status.is_ok else 1

    def find(self, result_id: str) -> Optional[ExecutionResult]:
        for result in list(self.stages) + list(self.hooks):
            found = result.find(result_id)
            if found is not None:
                return found
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "build_number": self.build_number,
            "status": self.status.value,
            "parameters": dict(self.parameters),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "stages": [s.to_dict() for s in self.stages],
            "hooks": [h.to_dict() for h in self.hooks],
            "artifacts": list(self.artifacts),
            "events": [dict(e) for e in self.events],
            "error": self.error,
            "definition_hash": self.definition_hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunReport":
        return cls(
            run_id=data["run_id"],
            pipeline=data["pipeline"],
            build_number=int(data["build_number"]),
            status=Status(data["status"]),
            parameters=dict(data.get("parameters", {}) or {}),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration_ms=int(data.get("duration_ms", 0)),
            stages=[ExecutionResult.from_dict(s) for s in data.get("stages", []) or []],
            hooks=[ExecutionResult.from_dict(h) for h in data.get("hooks", []) or []],
            artifacts=list(data.get("artifacts", []) or []),
            events=[dict(e) for e in data.get("events", []) or []],
            error=data.get("error"),
            definition_hash=data.get("definition_hash"),
        )
