"""
Credential Scope Manager.

`with_credentials(bindings, store)` resolve cada CredentialBinding no
secret store, injeta os valores em um ambiente *por step* e entrega um
`SecretMasker` para que todo output, resumo e mensagem de erro produzido
dentro do escopo seja mascarado antes de sair dele.

Garantias em toda saída do bloco (sucesso, falha ou cancelamento):
    - o dict de ambiente do escopo é esvaziado
    - o masker esquece os valores de segredo
    - `os.environ` do motor nunca é tocado

Vazar um segredo em output persistido é uma violação de correção.

Secret stores disponíveis:
    - InMemorySecretStore    → dict em memória (testes, embutir no processo)
    - EnvironmentSecretStore → variáveis `<prefix><ID>` / `<prefix><ID>__<FIELD>`
    - DotenvSecretStore      → arquivo .env lido com python-dotenv, mesmas chaves
"""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Protocol, Sequence, Union, runtime_checkable

from dotenv import dotenv_values

from ..exceptions import CredentialResolutionError
from ..pipeline.definition import CredentialBinding

logger = logging.getLogger(__name__)

MASK = "****"

SecretValue = Union[str, Mapping[str, str]]


@runtime_checkable
class SecretStore(Protocol):
    def resolve(self, credential_id: str) -> SecretValue:
        """Retorna o segredo (texto ou mapping de campos). Levanta se ausente."""
        ...


class InMemorySecretStore:
    def __init__(self, secrets: Optional[Mapping[str, SecretValue]] = None) -> None:
        self._secrets: Dict[str, SecretValue] = dict(secrets or {})
        self.resolved: List[str] = []

    def put(self, credential_id: str, value: SecretValue) -> None:
        self._secrets[credential_id] = value

    def resolve(self, credential_id: str) -> SecretValue:
        self.resolved.append(credential_id)
        if credential_id not in self._secrets:
            raise CredentialResolutionError(
                message=f"Credencial '{credential_id}' não encontrada",
                details={"credential_id": credential_id},
            )
        return self._secrets[credential_id]


def _env_key(credential_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", credential_id).upper()


class _KeyValueSecretStore(ABC):
    """
    Convenção de chaves compartilhada pelos stores baseados em chave/valor.

    - `<prefix>SONAR_TOKEN=...`             → segredo texto (campo `value`)
    - `<prefix>NEXUS__USERNAME=...`          → campo `username` de `nexus`
    - `<prefix>NEXUS__PASSWORD=...`          → campo `password` de `nexus`
    """

    prefix: str = ""

    @abstractmethod
    def _values(self) -> Mapping[str, Optional[str]]:
        """Fonte das chaves (ambiente do processo, arquivo .env, ...)."""

    def resolve(self, credential_id: str) -> SecretValue:
        values = self._values()
        base = f"{self.prefix}{_env_key(credential_id)}"
        if values.get(base) is not None:
            return str(values[base])
        fields = {
            key[len(base) + 2:].lower(): str(value)
            for key, value in values.items()
            if key.startswith(f"{base}__") and value is not None
        }
        if not fields:
            raise CredentialResolutionError(
                message=f"Credencial '{credential_id}' não encontrada",
                details={"credential_id": credential_id, "key": base},
            )
        return fields


class EnvironmentSecretStore(_KeyValueSecretStore):
    def __init__(self, prefix: str = "ESTEIRA_SECRET_", environ: Optional[Mapping[str, str]] = None) -> None:
        self.prefix = prefix
        self._environ = environ

    def _values(self) -> Mapping[str, Optional[str]]:
        return self._environ if self._environ is not None else os.environ


class DotenvSecretStore(_KeyValueSecretStore):
    """Lê o .env a cada resolução, para refletir rotação de segredos sem reiniciar."""

    def __init__(self, path: Union[str, Path], prefix: str = "") -> None:
        self.path = Path(path)
        self.prefix = prefix

    def _values(self) -> Mapping[str, Optional[str]]:
        if not self.path.exists():
            raise CredentialResolutionError(
                message=f"Arquivo de segredos não encontrado: {self.path}",
                details={"path": str(self.path)},
            )
        return dotenv_values(self.path)


class SecretMasker:
    """Substitui ocorrências de segredos conhecidos por `****`."""

    def __init__(self) -> None:
        self._secrets: List[str] = []

    def add(self, secret: str) -> None:
        if secret and secret not in self._secrets:
            self._secrets.append(secret)
            # Mais longos primeiro: um segredo pode conter outro
            self._secrets.sort(key=len, reverse=True)

    def mask(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        for secret in self._secrets:
            text = text.replace(secret, MASK)
        return text

    def forget(self) -> None:
        self._secrets.clear()

    def __len__(self) -> int:
        return len(self._secrets)


@dataclass
class CredentialScope:
    environment: Dict[str, str] = field(default_factory=dict)
    masker: SecretMasker = field(default_factory=SecretMasker)


def _fields_of(credential_id: str, secret: SecretValue) -> Mapping[str, str]:
    if isinstance(secret, str):
        return {"value": secret}
    if isinstance(secret, Mapping):
        return {str(k): str(v) for k, v in secret.items()}
    raise CredentialResolutionError(
        message=f"Credencial '{credential_id}' possui formato não suportado",
        details={"credential_id": credential_id, "type": type(secret).__name__},
    )


@contextmanager
def with_credentials(bindings: Sequence[CredentialBinding], store: Optional[SecretStore]) -> Iterator[CredentialScope]:
    """
    Abre um escopo de credenciais para a duração de um step.

    Raises:
        CredentialResolutionError: Se o store não fornecer um binding
            (ou um campo exigido). Fatal para o step que solicitou.
    """
    scope = CredentialScope()
    try:
        for binding in bindings:
            if store is None:
                raise CredentialResolutionError(
                    message="Nenhum secret store configurado",
                    details={"credential_id": binding.credential_id},
                )
            try:
                secret = store.resolve(binding.credential_id)
            except CredentialResolutionError:
                raise
            except Exception as exc:
                raise CredentialResolutionError(
                    message=f"Falha ao resolver credencial '{binding.credential_id}'",
                    details={"credential_id": binding.credential_id, "exc_type": exc.__class__.__name__},
                ) from exc

            fields = _fields_of(binding.credential_id, secret)
            for value in fields.values():
                scope.masker.add(value)
            for variable, secret_field in binding.variables.items():
                if secret_field not in fields:
                    raise CredentialResolutionError(
                        message=f"Credencial '{binding.credential_id}' não possui o campo '{secret_field}'",
                        details={"credential_id": binding.credential_id, "field": secret_field},
                    )
                scope.environment[variable] = fields[secret_field]
            logger.debug("Credencial '%s' vinculada a %s", binding.credential_id, sorted(binding.variables))

        yield scope
    finally:
        scope.environment.clear()
        scope.masker.forget()
