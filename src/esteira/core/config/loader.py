# src/esteira/core/config/loader.py
"""
Loader canônico de configuração do motor Esteira.

A configuração efetiva é resolvida em três camadas, sempre nesta ordem:
    1. `DEFAULT_CONFIG` embutido no pacote
    2. arquivo de defaults do projeto (opcional; se informado, deve existir)
    3. arquivo local de overrides (opcional; ignorado se ausente)

Cada camada é aplicada com `deep_merge`, de forma que overrides nunca
mutam as camadas anteriores.

Invariantes:
    - O resultado é sempre um dicionário puro (`dict`)
    - A mesma entrada sempre produz a mesma configuração final

Limites explícitos:
    - Não valida faixas de valores (responsabilidade de `EngineSettings`)
    - Não interage com Engine ou steps
"""

import json
import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml  # PyYAML

from .errors import (
    DefaultsNotFoundError,
    InvalidConfigRootTypeError,
    UnsupportedConfigFormatError,
)
from .hashing import compute_config_hash
from .merge import deep_merge

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "engine": {
        "log_level": "INFO",
        "runs_dir": ".esteira/runs",
        "workspace": ".",
        "default_step_timeout": 3600.0,
        "poll_interval": 0.1,
        "kill_grace": 5.0,
        "hook_grace": 30.0,
        "max_concurrency": 4,
        "retention": 10,
    },
    "secrets": {
        "dotenv_path": None,
        "env_prefix": "ESTEIRA_SECRET_",
    },
}


def read_document(path: Path) -> Dict[str, Any]:
    """
    Lê um documento YAML/JSON do disco e valida que a raiz é um dicionário.

    Arquivos vazios são interpretados como dicionários vazios.

    Raises:
        DefaultsNotFoundError: Se o arquivo não existir.
        UnsupportedConfigFormatError: Se o formato do arquivo não for suportado.
        InvalidConfigRootTypeError: Se o conteúdo raiz não for um dicionário.
    """
    if not path.exists():
        raise DefaultsNotFoundError(f"Arquivo de configuração não encontrado: {path}")

    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    elif suffix == ".json":
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    else:
        raise UnsupportedConfigFormatError(f"Formato não suportado: {path.suffix}")

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise InvalidConfigRootTypeError(
            f"Config root deve ser dict, recebido: {type(data).__name__}"
        )

    return data


def load_config(
    *,
    defaults_path: Optional[str] = None,
    local_path: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Carrega e resolve a configuração efetiva do motor.

    Args:
        defaults_path (Optional[str]): Arquivo de defaults do projeto.
        local_path (Optional[str]): Overrides locais; ignorado se não existir.

    Returns:
        Dict[str, Any]: Configuração final resolvida.

    Raises:
        DefaultsNotFoundError: Se `defaults_path` for informado e não existir.
        UnsupportedConfigFormatError: Se o formato do arquivo não for suportado.
        InvalidConfigRootTypeError: Se o conteúdo não for um dicionário.
        ConfigTypeConflictError: Se ocorrer conflito estrutural durante o merge.
    """
    effective = deepcopy(DEFAULT_CONFIG)

    if defaults_path is not None:
        effective = deep_merge(effective, read_document(Path(defaults_path)))

    if local_path is not None:
        local_file = Path(local_path)
        if local_file.exists():
            effective = deep_merge(effective, read_document(local_file))
        else:
            logger.debug("Config local ausente, ignorada: %s", local_file)

    logger.debug("Config efetiva resolvida (hash=%s)", compute_config_hash(effective))
    return effective
