# src/esteira/__init__.py
"""
Esteira — motor de execução de pipelines CI/CD.

Interpreta uma definição declarativa de pipeline (stages, parallel
groups, retries, guards, steps com credenciais) e a executa com ordem,
isolamento e semântica de falha corretas. Ferramentas de build, scanners,
uploaders e containers são ações externas opacas, invocadas por uma
interface uniforme de step.

Arquitetura em alto nível:
    - core.config       → carregamento, merge e hashing de configuração
    - core.pipeline     → modelo declarativo, serialização, contexto e contratos de ação
    - core.engine       → resolver, engine, executor, retry, credenciais e locks
    - core.traceability → Manifest e Event Log da run
    - persistence       → reports, output, artefatos e retenção
    - cli               → superfície de disparo (`esteira run|status|validate`)

Limites explícitos:
    - Não é uma linguagem de workflow completa
    - Não possui marketplace de plugins nem UI
"""

from .core.engine import Engine
from .core.engine.engine import ESTEIRA_VERSION as __version__
from .core.pipeline import RunReport, Status, load_definition, loads_definition

__all__ = ["Engine", "RunReport", "Status", "load_definition", "loads_definition", "__version__"]
