# src/esteira/core/traceability/__init__.py
"""
Pacote de rastreabilidade da Esteira — Manifest de run.

API pública exposta:
    - RunManifest     → estrutura canônica do Manifest
    - create_manifest → criação explícita do Manifest
    - add_event       → registro explícito de eventos no Event Log
    - stage_started   → marca início de um stage
    - stage_finished  → registra desfecho de um stage (inclusive pulado)
    - save_manifest   → persistência em JSON
    - load_manifest   → restauração determinística

Invariantes:
    - O Manifest inicia com `stages` e `events` vazios
    - Eventos nunca são reordenados automaticamente
"""

from .manifest import (
    RunManifest,
    add_event,
    create_manifest,
    load_manifest,
    save_manifest,
    stage_finished,
    stage_started,
)

__all__ = [
    "RunManifest",
    "add_event",
    "create_manifest",
    "load_manifest",
    "save_manifest",
    "stage_finished",
    "stage_started",
]
