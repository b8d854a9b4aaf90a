# src/esteira/core/config/errors.py
"""
Exceções canônicas da camada de configuração da Esteira.

As exceções aqui definidas representam violações estruturais da
configuração do motor, e não falhas de execução de steps.

Invariantes:
    - Todas as exceções de configuração herdam de `ConfigError`
    - Nenhuma exceção representa falha de step ou de run

Limites explícitos:
    - Não executa pipeline
    - Não realiza fallback ou recovery
"""


class ConfigError(Exception):
    """
    Exceção base para erros relacionados à configuração do motor.

    Permite captura genérica (ex.: pela CLI, que converte em exit code 2)
    e distingue falhas de configuração de falhas de execução.
    """


class DefaultsNotFoundError(ConfigError):
    """
    Exceção levantada quando o arquivo de configuração base (defaults)
    não é encontrado no caminho especificado.

    Decisões arquiteturais:
        - Quando um arquivo de defaults é informado, ele é obrigatório
        - Não há criação implícita de defaults em disco
    """


class UnsupportedConfigFormatError(ConfigError):
    """
    Exceção levantada quando o formato do arquivo não é suportado.

    Formatos suportados (v1):
        - YAML (.yaml, .yml)
        - JSON (.json)
    """


class InvalidConfigRootTypeError(ConfigError):
    """
    Exceção levantada quando o conteúdo raiz da configuração
    não é um dicionário (`dict`).
    """


class ConfigTypeConflictError(ConfigError):
    """
    Exceção levantada quando ocorre conflito de tipos durante o deep-merge.

    Exemplo de conflito:
        - base:     {"engine": {"poll_interval": 0.1}}
        - override: {"engine": "DEBUG"}

    Nenhum merge parcial é produzido em caso de conflito.
    """


class InvalidSettingError(ConfigError):
    """Valor de configuração com tipo ou faixa inválida (ex.: timeout negativo)."""
