# src/esteira/core/config/settings.py
"""
Materialização tipada da configuração do motor.

`load_config` devolve um dict puro; `EngineSettings.from_config` converte
esse dict em um objeto imutável com tipos e faixas validadas, para que
Engine, Executor e CLI não precisem reinterpretar chaves soltas.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import InvalidSettingError
from .loader import DEFAULT_CONFIG

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _positive_float(section: Dict[str, Any], key: str, *, allow_zero: bool = False) -> float:
    value = section.get(key, DEFAULT_CONFIG["engine"][key])
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidSettingError(f"engine.{key} deve ser numérico, recebido: {value!r}")
    if not math.isfinite(number) or number < 0 or (number == 0 and not allow_zero):
        raise InvalidSettingError(f"engine.{key} fora da faixa permitida: {value!r}")
    return number


def _positive_int(section: Dict[str, Any], key: str) -> int:
    value = section.get(key, DEFAULT_CONFIG["engine"][key])
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise InvalidSettingError(f"engine.{key} deve ser inteiro >= 1, recebido: {value!r}")
    return value


@dataclass(frozen=True)
class EngineSettings:
    """Configuração efetiva e validada do motor."""

    log_level: str = "INFO"
    runs_dir: Path = Path(".esteira/runs")
    workspace: Path = Path(".")
    default_step_timeout: float = 3600.0
    poll_interval: float = 0.1
    kill_grace: float = 5.0
    hook_grace: float = 30.0
    max_concurrency: int = 4
    retention: int = 10
    dotenv_path: Optional[Path] = None
    env_prefix: str = "ESTEIRA_SECRET_"

    @property
    def log_level_number(self) -> int:
        return getattr(logging, self.log_level)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "EngineSettings":
        cfg = config or {}
        engine = dict(cfg.get("engine", {}) or {})
        secrets = dict(cfg.get("secrets", {}) or {})

        level = str(engine.get("log_level", "INFO")).upper()
        if level not in _LOG_LEVELS:
            raise InvalidSettingError(f"engine.log_level inválido: {level!r}")

        dotenv_path = secrets.get("dotenv_path")

        return cls(
            log_level=level,
            runs_dir=Path(engine.get("runs_dir", DEFAULT_CONFIG["engine"]["runs_dir"])),
            workspace=Path(engine.get("workspace", DEFAULT_CONFIG["engine"]["workspace"])),
            default_step_timeout=_positive_float(engine, "default_step_timeout"),
            poll_interval=_positive_float(engine, "poll_interval"),
            kill_grace=_positive_float(engine, "kill_grace", allow_zero=True),
            hook_grace=_positive_float(engine, "hook_grace", allow_zero=True),
            max_concurrency=_positive_int(engine, "max_concurrency"),
            retention=_positive_int(engine, "retention"),
            dotenv_path=Path(dotenv_path) if dotenv_path else None,
            env_prefix=str(secrets.get("env_prefix", DEFAULT_CONFIG["secrets"]["env_prefix"])),
        )
