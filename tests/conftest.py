# tests/conftest.py
"""
Fixtures compartilhados para testes da Esteira.

Este módulo define fixtures reutilizáveis que fornecem:
- configurações mínimas e determinísticas (YAML como string)
- EngineSettings apontando para diretórios temporários
- um secret store em memória com segredos conhecidos
- um Engine pronto, com polling curto para testes rápidos
- um construtor de definições a partir de dicts
- ações tipadas dummy (duck typing) para retry e cancelamento

Decisões arquiteturais:
    - Fixtures são mantidas simples e explícitas
    - Estado em disco vive sempre em `tmp_path`
    - Ações dummy utilizam duck typing em vez de herança
    - Intervalos de polling e grace são reduzidos para manter a suíte rápida

Invariantes:
    - Nenhuma fixture depende de variáveis de ambiente do operador
    - Nenhuma fixture contém lógica de domínio
    - Segredos das fixtures são valores sintéticos e únicos (fáceis de procurar em output)

Limites explícitos:
    - Não substituir testes de integração (ver tests/e2e)
"""

import threading

import pytest


# =====================================================
# Config fixtures
# =====================================================

@pytest.fixture
def project_like_config_defaults_yaml() -> str:
    """
    YAML de defaults semelhante ao `esteira.defaults.yaml` de um projeto real.

    Invariantes:
        - YAML sintaticamente válido
        - Pode ser combinado com config local sem ambiguidade
    """
    return """
engine:
  log_level: INFO
  runs_dir: .esteira/runs
  default_step_timeout: 600
  poll_interval: 0.1
  max_concurrency: 4
  retention: 20
secrets:
  env_prefix: CI_SECRET_
"""


@pytest.fixture
def project_like_config_local_yaml() -> str:
    """Override local: só as chaves que o operador quer mudar."""
    return """
engine:
  log_level: DEBUG
  retention: 5
secrets:
  dotenv_path: .secrets.env
"""


# =====================================================
# Engine fixtures
# =====================================================

SONAR_TOKEN = "sonar-7f3c9e1d-secret"
NEXUS_PASSWORD = "nexus-Pa55w0rd-91ab"


@pytest.fixture
def settings(tmp_path):
    from esteira.core.config import EngineSettings

    return EngineSettings(
        log_level="DEBUG",
        runs_dir=tmp_path / "runs",
        workspace=tmp_path / "workspace",
        default_step_timeout=30.0,
        poll_interval=0.02,
        kill_grace=0.5,
        hook_grace=1.0,
        max_concurrency=8,
        retention=10,
    )


@pytest.fixture
def secret_store():
    """Secret store em memória com um segredo texto e um usuário/senha."""
    from esteira.core.engine.credentials import InMemorySecretStore

    return InMemorySecretStore(
        {
            "sonar-token": SONAR_TOKEN,
            "nexus": {"username": "deployer", "password": NEXUS_PASSWORD},
        }
    )


@pytest.fixture
def secrets():
    return {"sonar": SONAR_TOKEN, "nexus_password": NEXUS_PASSWORD}


@pytest.fixture
def engine(settings, secret_store):
    from esteira.core.engine import Engine

    return Engine(settings, secret_store=secret_store)


@pytest.fixture
def make_definition():
    """Retorna um construtor `dict -> PipelineDefinition`."""
    from esteira.core.pipeline.serialization import definition_from_dict

    def _make(**data):
        data.setdefault("name", "app")
        return definition_from_dict(data)

    return _make


# =====================================================
# Ações dummy
# =====================================================

@pytest.fixture
def FlakyAction():
    """
    Retorna uma *classe* de ação tipada que falha até a tentativa `succeed_on`.

    `succeed_on=None` falha sempre. A instância conta as chamadas em `calls`,
    permitindo verificar o número exato de tentativas do Retry Wrapper.
    """

    class _FlakyAction:
        def __init__(self, succeed_on=None):
            self.succeed_on = succeed_on
            self.calls = 0
            self._lock = threading.Lock()

        def __call__(self, request):
            with self._lock:
                self.calls += 1
                attempt = self.calls
            request.write(f"attempt {attempt}")
            if self.succeed_on is not None and attempt >= self.succeed_on:
                return 0
            return 1

    return _FlakyAction


@pytest.fixture
def registry_with():
    """Registry com as ações embutidas + ações extras informadas."""
    from esteira.core.pipeline.registry import ActionRegistry

    def _build(**actions):
        registry = ActionRegistry.with_builtins()
        for action_id, action in actions.items():
            registry.add(action_id, action)
        return registry

    return _build
