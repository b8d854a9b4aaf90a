"""
Guards declarativos de stage (`when`).

Um guard é um predicado sobre os parâmetros da run, escrito como mapping:

    {param: DEPLOY}                          # parâmetro "truthy" (true/1/yes/on)
    {param: BRANCH, equals: main}
    {param: BRANCH, not_equals: main}
    {param: ENV, in: [staging, prod]}
    {all: [<guard>, ...]}
    {any: [<guard>, ...]}
    {not: <guard>}

O planner usa `guard_problems` para validar (incluindo referências a
parâmetros não declarados) e `evaluate_guard` para decidir, antes do
agendamento, se o stage roda.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Set, Tuple

_TRUTHY = {"true", "1", "yes", "on", "y"}
_COMPARATORS = ("equals", "not_equals", "in")


def guard_problems(expr: Any, declared: Set[str], where: str) -> Tuple[Set[str], List[str]]:
    """Retorna (parâmetros referenciados, problemas encontrados)."""
    refs: Set[str] = set()
    problems: List[str] = []
    _collect(expr, declared, where, refs, problems)
    return refs, problems


def _collect(expr: Any, declared: Set[str], where: str, refs: Set[str], problems: List[str]) -> None:
    if not isinstance(expr, Mapping) or not expr:
        problems.append(f"{where}: guard deve ser um mapping não vazio")
        return

    if "all" in expr or "any" in expr:
        key = "all" if "all" in expr else "any"
        if len(expr) != 1:
            problems.append(f"{where}: '{key}' não pode ser combinado com outras chaves")
        items = expr[key]
        if not isinstance(items, list) or not items:
            problems.append(f"{where}: '{key}' exige lista não vazia de guards")
            return
        for i, item in enumerate(items):
            _collect(item, declared, f"{where}.{key}[{i}]", refs, problems)
        return

    if "not" in expr:
        if len(expr) != 1:
            problems.append(f"{where}: 'not' não pode ser combinado com outras chaves")
        _collect(expr["not"], declared, f"{where}.not", refs, problems)
        return

    if "param" not in expr:
        problems.append(f"{where}: guard sem 'param', 'all', 'any' ou 'not'")
        return

    name = expr["param"]
    if not isinstance(name, str):
        problems.append(f"{where}: 'param' deve ser string")
        return
    refs.add(name)
    if name not in declared:
        problems.append(f"{where}: guard referencia parâmetro não declarado '{name}'")

    comparators = [c for c in _COMPARATORS if c in expr]
    extra = set(expr) - {"param", *_COMPARATORS}
    if extra:
        problems.append(f"{where}: chaves desconhecidas no guard: {sorted(extra)}")
    if len(comparators) > 1:
        problems.append(f"{where}: use apenas um de {list(_COMPARATORS)}")
    if "in" in expr and not isinstance(expr["in"], list):
        problems.append(f"{where}: 'in' exige uma lista")


def _text(value: Any) -> str:
    # YAML converte `true` em bool; parâmetros são sempre strings
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def evaluate_guard(expr: Mapping[str, Any], parameters: Mapping[str, str]) -> bool:
    """Avalia um guard já validado."""
    if "all" in expr:
        return all(evaluate_guard(e, parameters) for e in expr["all"])
    if "any" in expr:
        return any(evaluate_guard(e, parameters) for e in expr["any"])
    if "not" in expr:
        return not evaluate_guard(expr["not"], parameters)

    value = parameters.get(expr["param"])
    if "equals" in expr:
        return value == _text(expr["equals"])
    if "not_equals" in expr:
        return value != _text(expr["not_equals"])
    if "in" in expr:
        return value in [_text(v) for v in expr["in"]]
    return value is not None and value.strip().lower() in _TRUTHY
