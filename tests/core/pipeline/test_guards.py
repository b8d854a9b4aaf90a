# tests/core/pipeline/test_guards.py
"""
Testes dos guards declarativos de stage (`when`).

Os testes asseguram que:
- cada forma de guard é avaliada corretamente sobre parâmetros string
- valores booleanos do YAML são comparados como texto ("true"/"false")
- referências a parâmetros não declarados são reportadas
- guards malformados acumulam problemas em vez de falhar no primeiro
"""

import pytest

from esteira.core.pipeline.guards import evaluate_guard, guard_problems


@pytest.mark.parametrize(
    "expr, params, expected",
    [
        ({"param": "DEPLOY"}, {"DEPLOY": "true"}, True),
        ({"param": "DEPLOY"}, {"DEPLOY": "Yes"}, True),
        ({"param": "DEPLOY"}, {"DEPLOY": "false"}, False),
        ({"param": "DEPLOY"}, {}, False),
        ({"param": "BRANCH", "equals": "main"}, {"BRANCH": "main"}, True),
        ({"param": "BRANCH", "not_equals": "main"}, {"BRANCH": "main"}, False),
        ({"param": "ENV", "in": ["staging", "prod"]}, {"ENV": "prod"}, True),
        ({"param": "RELEASE", "equals": True}, {"RELEASE": "true"}, True),
        ({"all": [{"param": "A"}, {"param": "B"}]}, {"A": "1", "B": "0"}, False),
        ({"any": [{"param": "A"}, {"param": "B"}]}, {"A": "1", "B": "0"}, True),
        ({"not": {"param": "A"}}, {"A": "0"}, True),
    ],
)
def test_evaluate_guard(expr, params, expected):
    assert evaluate_guard(expr, params) is expected


def test_guard_problems_collects_refs_and_undeclared_params():
    refs, problems = guard_problems(
        {"all": [{"param": "DEPLOY"}, {"param": "REGION", "equals": "eu"}]},
        {"DEPLOY"},
        "stage 'deploy'.when",
    )

    assert refs == {"DEPLOY", "REGION"}
    assert problems == ["stage 'deploy'.when.all[1]: guard referencia parâmetro não declarado 'REGION'"]


def test_guard_problems_reports_every_malformation():
    _, problems = guard_problems(
        {"any": [{}, {"param": "A", "equals": "x", "in": ["y"]}, {"param": "A", "in": "y", "foo": 1}]},
        {"A"},
        "w",
    )

    assert len(problems) == 4
    assert any("mapping não vazio" in p for p in problems)
    assert any("use apenas um de" in p for p in problems)
    assert any("'in' exige uma lista" in p for p in problems)
    assert any("chaves desconhecidas" in p for p in problems)


def test_empty_combinator_is_a_problem():
    _, problems = guard_problems({"all": []}, set(), "w")
    assert problems == ["w: 'all' exige lista não vazia de guards"]
