# src/esteira/core/config/hashing.py
"""
Hashing canônico de estruturas declarativas da Esteira.

Usado para a configuração efetiva do motor e para a definição da
pipeline serializada: o hash entra no Manifest de cada run e permite
responder "esta run usou exatamente qual definição?".

Política de hashing (v1):
    - Serialização JSON canônica (chaves ordenadas, separadores compactos)
    - Codificação UTF-8
    - SHA-256
"""

import hashlib
import json
from typing import Any, Dict


def compute_config_hash(config: Dict[str, Any]) -> str:
    """
    Gera um hash determinístico de um dicionário declarativo.

    Args:
        config (Dict[str, Any]): Configuração ou definição serializada.

    Returns:
        str: Hash SHA-256 hexadecimal (64 caracteres).

    Raises:
        TypeError: Se o objeto fornecido não for um dicionário.
    """
    if not isinstance(config, dict):
        raise TypeError(
            f"Config para hashing deve ser dict, recebido: {type(config).__name__}"
        )

    canonical_json = json.dumps(
        config,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
