# src/esteira/core/__init__.py
"""
Core da Esteira.

Implementação canônica e independente de adapters (CLI) do motor:

    - config       → resolução de configuração (merge, validação, hashing)
    - pipeline     → modelo declarativo da pipeline e contratos de ação
    - engine       → validação e execução controlada de runs
    - traceability → Manifest e Event Log para auditoria
    - errors       → payloads de erro serializáveis
    - exceptions   → exceções tipadas

Princípios fundamentais:
    - Nenhuma decisão silenciosa: todo desfecho é explícito no RunReport
    - A definição é imutável durante a run
    - Segredos nunca persistem fora do step que os solicitou
"""
