"""Persistência canônica de runs.

A RunStore guarda, por pipeline, o histórico de runs em disco:

    <runs_dir>/<pipeline>/
        build_number                 → contador persistido (último número emitido)
        <run_id>/
            report.json              → RunReport final (ou snapshot)
            manifest.json            → Manifest com o Event Log
            output/<id>.attempt-N.log → output capturado (já mascarado)
            artifacts/...            → arquivos arquivados por `archive`

Decisões:
- Formato: JSON determinístico (`sort_keys=True`)
- Caminhos de output derivados do id estável do step (`/` vira `__`)
- Build numbers são monotônicos por pipeline, mesmo após purge
- Retenção: mantém as K runs mais recentes (por build_number); runs ativas
  nunca são removidas

Limites explícitos:
- Não executa steps
- Não mascara segredos (recebe texto já mascarado do Executor)
"""

from __future__ import annotations

import glob
import json
import logging
import re
import shutil
import threading
from pathlib import Path
from typing import Collection, Iterable, List, Optional, Union

from esteira.core.exceptions import RunNotFoundError
from esteira.core.pipeline.types import RunReport
from esteira.core.traceability.manifest import RunManifest, save_manifest

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(value: str) -> str:
    """Nome de arquivo estável para ids com `/` e caracteres arbitrários."""
    return _UNSAFE.sub("_", value.replace("/", "__")).strip("_") or "_"


class RunStore:
    """Store canônica de reports, manifests, output e artefatos de runs."""

    def __init__(self, *, runs_dir: Union[str, Path]):
        self.runs_dir = Path(runs_dir)
        self._counter_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def pipeline_dir(self, pipeline: str) -> Path:
        return self.runs_dir / safe_name(pipeline)

    def run_dir(self, pipeline: str, run_id: str) -> Path:
        return self.pipeline_dir(pipeline) / run_id

    def output_path(self, pipeline: str, run_id: str, subject: str, attempt: int) -> Path:
        return self.run_dir(pipeline, run_id) / "output" / f"{safe_name(subject)}.attempt-{attempt}.log"

    # ------------------------------------------------------------------
    # Build numbers
    # ------------------------------------------------------------------
    def next_build_number(self, pipeline: str) -> int:
        """Incrementa e persiste o contador de builds da pipeline."""
        path = self.pipeline_dir(pipeline) / "build_number"
        with self._counter_lock:
            current = 0
            if path.exists():
                text = path.read_text(encoding="utf-8").strip()
                current = int(text) if text else 0
            number = current + 1
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{number}\n", encoding="utf-8")
        return number

    # ------------------------------------------------------------------
    # Persist / Load
    # ------------------------------------------------------------------
    def write_output(self, pipeline: str, run_id: str, subject: str, attempt: int, text: str) -> Path:
        path = self.output_path(pipeline, run_id, subject, attempt)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def save_report(self, report: RunReport) -> Path:
        path = self.run_dir(report.pipeline, report.run_id) / "report.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(report.to_dict(), ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        return path

    def save_manifest(self, pipeline: str, run_id: str, manifest: RunManifest) -> Path:
        path = self.run_dir(pipeline, run_id) / "manifest.json"
        save_manifest(manifest, path)
        return path

    def load_report(self, run_id: str, pipeline: Optional[str] = None) -> RunReport:
        """
        Carrega o report de uma run.

        Raises:
            RunNotFoundError: Run inexistente ou já purgada.
        """
        if pipeline is not None:
            candidates = [self.run_dir(pipeline, run_id) / "report.json"]
        else:
            pattern = str(self.runs_dir / "*" / glob.escape(run_id) / "report.json")
            candidates = [Path(p) for p in glob.glob(pattern)]

        for path in candidates:
            if path.exists():
                return RunReport.from_dict(json.loads(path.read_text(encoding="utf-8")))

        raise RunNotFoundError(
            message=f"Run '{run_id}' não encontrada",
            details={"run_id": run_id, "runs_dir": str(self.runs_dir)},
            hint="A run pode ter sido removida pela política de retenção.",
        )

    def list_reports(self, pipeline: str) -> List[RunReport]:
        """Reports da pipeline ordenados por build_number crescente."""
        reports = []
        for path in self.pipeline_dir(pipeline).glob("*/report.json"):
            try:
                reports.append(RunReport.from_dict(json.loads(path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Report ilegível ignorado em %s: %s", path, exc)
        return sorted(reports, key=lambda r: r.build_number)

    # ------------------------------------------------------------------
    # Artefatos
    # ------------------------------------------------------------------
    def archive(self, pipeline: str, run_id: str, workspace: Path, patterns: Iterable[str]) -> List[str]:
        """
        Copia arquivos do workspace que casam com `patterns` para `artifacts/`.

        Returns:
            List[str]: caminhos relativos ao workspace, ordenados.
        """
        target = self.run_dir(pipeline, run_id) / "artifacts"
        archived = set()
        for pattern in patterns:
            matches = [m for m in sorted(workspace.glob(pattern)) if m.is_file()]
            if not matches:
                logger.warning("Padrão de archive '%s' não casou nenhum arquivo", pattern)
            for match in matches:
                rel = match.relative_to(workspace)
                dest = target / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(match, dest)
                archived.add(rel.as_posix())
        return sorted(archived)

    # ------------------------------------------------------------------
    # Retenção
    # ------------------------------------------------------------------
    def purge(self, pipeline: str, *, keep: int, protect: Collection[str] = ()) -> List[str]:
        """
        Remove runs além das `keep` mais recentes.

        Runs em `protect` (ativas) nunca são removidas nem contam como
        removíveis. Retorna os run_ids removidos.
        """
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")

        finished = [r for r in self.list_reports(pipeline) if r.run_id not in protect and r.status.is_terminal]
        excess = finished[: max(0, len(finished) - keep)]

        removed = []
        for report in excess:
            shutil.rmtree(self.run_dir(pipeline, report.run_id), ignore_errors=True)
            removed.append(report.run_id)
        if removed:
            logger.info("Retenção de '%s': %d run(s) removida(s)", pipeline, len(removed))
        return removed


__all__ = ["RunStore", "safe_name"]
