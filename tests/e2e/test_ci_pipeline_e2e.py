# tests/e2e/test_ci_pipeline_e2e.py
"""
E2E — pipeline de CI completa pela linha de comando.

Valida o motor de ponta a ponta com a definição de referência
`fixtures/pipelines/ci_app.yaml`:
- config de defaults + override local apontando para um .env de segredos
- build → gates de qualidade em paralelo → empacotamento → deploy condicional
- step UNSTABLE não interrompe a run e resulta em exit code 0
- segredos nunca aparecem em nenhum arquivo persistido
- artefatos arquivados e report recuperável via `esteira status`
- retenção configurada na definição

Requisitos:
- pytest -q, `/bin/sh` e `tar` disponíveis
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from esteira.cli import EXIT_OK, main
from esteira.core.traceability.manifest import load_manifest

FIXTURES = Path(__file__).parents[1] / "fixtures" / "pipelines"

SONAR_TOKEN = "sqp_e2e_9c1b7f"
NEXUS_PASSWORD = "nx-e2e-Pa55"


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".secrets.env").write_text(
        f"SONAR_TOKEN={SONAR_TOKEN}\nNEXUS__USERNAME=deployer\nNEXUS__PASSWORD={NEXUS_PASSWORD}\n",
        encoding="utf-8",
    )
    (tmp_path / "esteira.local.yaml").write_text(
        "engine:\n  runs_dir: runs\n  workspace: ws\nsecrets:\n  dotenv_path: .secrets.env\n",
        encoding="utf-8",
    )
    return tmp_path


def _run(*argv):
    return main(["--config", str(FIXTURES / "esteira.defaults.yaml"), *argv])


def _json_after_run_id(out: str) -> dict:
    return json.loads(out[out.index("{"):])


def test_ci_pipeline_end_to_end(workdir: Path, capsys) -> None:
    definition = str(FIXTURES / "ci_app.yaml")

    code = _run("run", definition, "--json")
    report = _json_after_run_id(capsys.readouterr().out)

    assert code == EXIT_OK
    assert report["run_id"] == "ci-app-1"
    assert report["status"] == "UNSTABLE"
    stages = {s["id"]: s for s in report["stages"]}
    assert [s["id"] for s in report["stages"]] == ["build", "quality", "package", "deploy"]
    assert stages["quality"]["status"] == "UNSTABLE"
    assert [c["status"] for c in stages["quality"]["children"]] == ["SUCCESS", "UNSTABLE"]
    assert stages["deploy"]["skipped"] == "guard"
    assert report["artifacts"] == ["dist/app-1.0.1.tar"]
    assert [h["id"] for h in report["hooks"]] == ["post.always/summary"]

    code = _run("run", definition, "-p", "DEPLOY=true", "--json")
    report = _json_after_run_id(capsys.readouterr().out)

    assert code == EXIT_OK
    deploy = next(s for s in report["stages"] if s["id"] == "deploy")
    assert deploy["status"] == "SUCCESS"
    assert deploy["skipped"] is None
    assert [h["id"] for h in report["hooks"]] == ["deploy/post.success/0", "post.always/summary"]
    assert "dist/app-1.0.2.tar" in report["artifacts"]

    run_dir = workdir / "runs" / "ci-app" / "ci-app-2"
    upload_log = (run_dir / "output" / "deploy__upload.attempt-1.log").read_text(encoding="utf-8")
    assert upload_log == "upload app-1.0.2.tar as ****:****\n"

    manifest = load_manifest(run_dir / "manifest.json")
    assert manifest.inputs["parameters"]["DEPLOY"] == "true"
    assert [e["subject"] for e in manifest.events_of("lock_acquired")] == ["deploy"]

    for path in (workdir / "runs").rglob("*"):
        if path.is_file():
            text = path.read_text(encoding="utf-8", errors="replace")
            assert SONAR_TOKEN not in text
            assert NEXUS_PASSWORD not in text

    code = _run("status", "ci-app-1")
    persisted = json.loads(capsys.readouterr().out)
    assert code == EXIT_OK
    assert persisted["status"] == "UNSTABLE"


def test_ci_pipeline_retention(workdir: Path, capsys) -> None:
    definition = str(FIXTURES / "ci_app.yaml")

    for _ in range(4):
        assert _run("run", definition) == EXIT_OK
    capsys.readouterr()

    remaining = sorted(p.name for p in (workdir / "runs" / "ci-app").iterdir() if p.is_dir())
    assert remaining == ["ci-app-2", "ci-app-3", "ci-app-4"]
    assert _run("status", "ci-app-1") == 1
