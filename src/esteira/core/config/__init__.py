# src/esteira/core/config/__init__.py
"""
Camada de configuração do motor Esteira.

Este pacote carrega, mescla e identifica a configuração do *motor*
(diretório de runs, timeouts padrão, intervalo de polling, secret store).
A definição da pipeline em si (stages, steps) não é configuração: ela vive
em `esteira.core.pipeline`.

Responsabilidades do pacote:
    - Carregamento de arquivos de configuração (defaults + overrides locais)
    - Resolução de configuração final via deep-merge determinístico
    - Geração de hash canônico para rastreabilidade
    - Materialização tipada em `EngineSettings`

Invariantes:
    - A configuração final é um dicionário puro (dict)
    - A mesma entrada sempre produz a mesma configuração final
    - Conflitos estruturais são tratados como erro
"""

from .errors import (
    ConfigError,
    ConfigTypeConflictError,
    DefaultsNotFoundError,
    InvalidConfigRootTypeError,
    InvalidSettingError,
    UnsupportedConfigFormatError,
)
from .hashing import compute_config_hash
from .loader import load_config
from .merge import deep_merge
from .settings import EngineSettings

__all__ = [
    "ConfigError",
    "ConfigTypeConflictError",
    "DefaultsNotFoundError",
    "InvalidConfigRootTypeError",
    "InvalidSettingError",
    "UnsupportedConfigFormatError",
    "EngineSettings",
    "compute_config_hash",
    "deep_merge",
    "load_config",
]
