# src/esteira/core/traceability/manifest.py
"""
Manifest de run — rastreabilidade de execuções na Esteira.

O Manifest consolida, de forma determinística e auditável:
    - metadados da run (run_id, pipeline, build_number, started_at)
    - hashes semânticos de entrada (definição e configuração do motor)
    - estado incremental de cada stage (por path, ex.: "quality/sonar")
    - Event Log ordenado de eventos explícitos

Eventos emitidos pelo motor:
    run_started, stage_started, stage_finished, step_attempt,
    hook_finished, lock_acquired, lock_released, run_finished

Princípios fundamentais:
    - Nenhum evento é emitido implicitamente
    - Toda mutação ocorre por chamadas explícitas da API
    - A ordem do Event Log reflete a ordem real de execução
    - O Manifest é serializável e reconstruível (round-trip)

Decisões arquiteturais:
    - UTC é o timezone canônico para todos os timestamps
    - O formato de persistência é JSON determinístico
    - O Manifest não sincroniza acesso: branches paralelas registram
      eventos através do Engine, que serializa as chamadas

Limites explícitos:
    - Não executa pipeline
    - Não decide políticas de execução
    - Não carrega output de steps (apenas referências já mascaradas)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


def _ensure_tzaware_utc(dt: datetime) -> datetime:
    """Timestamps timezone-naive são assumidos como UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: datetime) -> str:
    return _ensure_tzaware_utc(dt).isoformat()


def _ms_between(start: datetime, end: datetime) -> int:
    s = _ensure_tzaware_utc(start)
    e = _ensure_tzaware_utc(end)
    return max(0, int((e - s).total_seconds() * 1000))


@dataclass
class RunManifest:
    """
    Registro forense de uma run.

    Campos principais:
        - run: metadados da execução
        - inputs: hashes da definição e da configuração, parâmetros efetivos
        - stages: estado incremental de cada stage, indexado por path
        - events: Event Log ordenado

    Invariantes:
        - `stages` é sempre um dicionário indexado por path
        - `events` é sempre uma lista ordenada
        - A estrutura completa é serializável
    """

    run: Dict[str, Any]
    inputs: Dict[str, Any]
    stages: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run": dict(self.run),
            "inputs": dict(self.inputs),
            "stages": {k: dict(v) for k, v in self.stages.items()},
            "events": [dict(e) for e in self.events],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunManifest":
        return cls(
            run=dict(data.get("run", {}) or {}),
            inputs=dict(data.get("inputs", {}) or {}),
            stages={k: dict(v) for k, v in (data.get("stages", {}) or {}).items()},
            events=[dict(e) for e in (data.get("events", []) or [])],
        )

    def events_of(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e.get("event_type") == event_type]


def create_manifest(
    *,
    run_id: str,
    pipeline: str,
    build_number: int,
    started_at: datetime,
    esteira_version: str,
    definition_hash: str,
    config_hash: Optional[str] = None,
    parameters: Optional[Dict[str, str]] = None,
) -> RunManifest:
    """
    Cria o Manifest inicial de uma run.

    ⚠️ Importante: esta função **não emite eventos implicitamente**.
    `run_started` é registrado pelo Engine via `add_event`.
    """
    return RunManifest(
        run={
            "run_id": run_id,
            "pipeline": pipeline,
            "build_number": build_number,
            "started_at": _iso(started_at),
            "esteira_version": esteira_version,
        },
        inputs={
            "definition_hash": definition_hash,
            "config_hash": config_hash,
            "parameters": dict(parameters or {}),
        },
        stages={},
        events=[],
    )


def add_event(
    manifest: RunManifest,
    *,
    event_type: str,
    ts: datetime,
    subject: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Adiciona um evento explícito ao Event Log.

    `subject` identifica o stage/step/hook associado (path estável);
    eventos de escopo de run não possuem subject.

    Returns:
        Dict[str, Any]: o evento registrado.
    """
    ev: Dict[str, Any] = {"event_type": event_type, "timestamp": _iso(ts)}
    if subject is not None:
        ev["subject"] = subject
    if payload is not None:
        ev["payload"] = payload

    manifest.events.append(ev)
    return ev


def stage_started(manifest: RunManifest, *, stage: str, kind: str, ts: datetime) -> None:
    """Marca o stage como RUNNING e registra `stage_started`. `kind` é "sequence" ou "parallel"."""
    s = manifest.stages.setdefault(stage, {})
    s.update(
        {
            "stage": stage,
            "kind": kind,
            "status": "RUNNING",
            "started_at": _iso(ts),
        }
    )
    add_event(manifest, event_type="stage_started", ts=ts, subject=stage, payload={"kind": kind})


def stage_finished(
    manifest: RunManifest,
    *,
    stage: str,
    ts: datetime,
    status: str,
    skipped: Optional[str] = None,
    error: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Registra o desfecho de um stage.

    Stages pulados (guard falso, falha upstream, abort) são registrados
    sem `stage_started`: a duração é zero e `skipped` carrega o motivo.
    """
    s = manifest.stages.setdefault(stage, {"stage": stage})
    started_iso = s.get("started_at")
    started_dt = datetime.fromisoformat(started_iso) if started_iso else ts

    s.update(
        {
            "status": status,
            "finished_at": _iso(ts),
            "duration_ms": _ms_between(started_dt, ts),
            "skipped": skipped,
            "error": error,
        }
    )

    payload: Dict[str, Any] = {"status": status, "duration_ms": s["duration_ms"]}
    if skipped is not None:
        payload["skipped"] = skipped
    add_event(manifest, event_type="stage_finished", ts=ts, subject=stage, payload=payload)


def save_manifest(manifest: RunManifest, path: Path) -> None:
    """
    Persiste o Manifest em JSON determinístico (`sort_keys=True`).

    Raises:
        OSError: Em caso de falha ao criar diretórios ou escrever o arquivo.
        TypeError: Se o conteúdo não for serializável em JSON.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(manifest.to_dict(), ensure_ascii=False, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def load_manifest(path: Path) -> RunManifest:
    """
    Carrega um Manifest persistido.

    Raises:
        OSError: Em caso de falha de leitura do arquivo.
        json.JSONDecodeError: Em caso de JSON inválido.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    return RunManifest.from_dict(data)
