"""Command-line interface da Esteira.

Comandos:
    esteira run DEFINITION [-p K=V ...]   dispara a run e espera o desfecho
    esteira status RUN_ID                 imprime o RunReport em JSON
    esteira validate DEFINITION           valida a definição sem executar

Exit codes:
    0  run SUCCESS ou UNSTABLE (ou definição válida)
    1  run FAILURE ou ABORTED (ou run não encontrada)
    2  definição inválida, erro de configuração ou run concorrente recusada
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Dict, List, Optional, Sequence

from .core.config import ConfigError, EngineSettings, load_config
from .core.engine import Engine
from .core.exceptions import ConcurrentRunError, RunNotFoundError, ValidationError
from .core.pipeline import RunReport, load_definition

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def _parse_parameters(items: Sequence[str]) -> Dict[str, str]:
    parameters: Dict[str, str] = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise argparse.ArgumentTypeError(f"parâmetro inválido '{item}': use NOME=VALOR")
        parameters[name.strip()] = value
    return parameters


def _build_engine(args) -> Engine:
    config = load_config(defaults_path=args.config, local_path=args.local_config)
    if args.runs_dir:
        config["engine"]["runs_dir"] = args.runs_dir
    if args.verbose:
        config["engine"]["log_level"] = "DEBUG"
    settings = EngineSettings.from_config(config)
    logging.basicConfig(
        level=settings.log_level_number,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return Engine(settings, config=config)


def _print_problems(exc: ValidationError) -> None:
    print(f"Definição de pipeline inválida ({len(exc.problems)} problema(s)):", file=sys.stderr)
    for problem in exc.problems:
        print(f"  - {problem}", file=sys.stderr)


def _print_summary(report: RunReport) -> None:
    print(f"Run {report.run_id} (build #{report.build_number}): {report.status.value}")
    for stage in report.stages:
        suffix = f" [{stage.skipped}]" if stage.skipped else ""
        print(f"  {stage.id}: {stage.status.value} ({stage.duration_ms} ms){suffix}")
        if not stage.status.is_ok and stage.summary:
            print(f"    {stage.summary}")
    for hook in report.hooks:
        print(f"  hook {hook.id}: {hook.status.value}")
    if report.error:
        print(f"  erro: {report.error.get('message')}")


def cmd_run(args) -> int:
    """Dispara a run e espera o desfecho (Ctrl-C cancela a run)."""
    try:
        parameters = _parse_parameters(args.param or [])
    except argparse.ArgumentTypeError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_INVALID

    engine = _build_engine(args)
    try:
        definition = load_definition(args.definition)
        run_id = engine.start_run(definition, parameters, workspace=args.workspace)
    except ValidationError as exc:
        _print_problems(exc)
        return EXIT_INVALID
    except ConcurrentRunError as exc:
        print(exc.message, file=sys.stderr)
        return EXIT_INVALID

    print(run_id)
    try:
        report = engine.wait(run_id)
    except KeyboardInterrupt:
        engine.cancel(run_id, reason="interrupted")
        report = engine.wait(run_id)

    if args.json:
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    else:
        _print_summary(report)
    return report.exit_code


def cmd_status(args) -> int:
    """Imprime o RunReport persistido de uma run."""
    engine = _build_engine(args)
    try:
        report = engine.get_status(args.run_id)
    except RunNotFoundError as exc:
        print(exc.message, file=sys.stderr)
        return EXIT_FAILED
    print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    return report.exit_code if report.status.is_terminal else EXIT_OK


def cmd_validate(args) -> int:
    """Valida a definição (e parâmetros opcionais) sem executar nada."""
    try:
        parameters = _parse_parameters(args.param or [])
    except argparse.ArgumentTypeError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_INVALID

    engine = _build_engine(args)
    try:
        plan = engine.validate(load_definition(args.definition), parameters)
    except ValidationError as exc:
        _print_problems(exc)
        return EXIT_INVALID

    print(f"Pipeline '{plan.definition.name}' válida")
    for node in plan.walk():
        marker = "" if node.enabled else " (desabilitado pelo guard)"
        print(f"  {node.path}{marker}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="esteira",
        description="Esteira - motor de execução de pipelines CI/CD",
    )
    parser.add_argument("--config", help="Arquivo de defaults do motor (YAML/JSON)")
    parser.add_argument(
        "--local-config",
        default="esteira.local.yaml",
        help="Overrides locais, ignorado se ausente (default: esteira.local.yaml)",
    )
    parser.add_argument("--runs-dir", help="Sobrescreve engine.runs_dir")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log em nível DEBUG")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Dispara uma run")
    run_parser.add_argument("definition", help="Arquivo da definição de pipeline")
    run_parser.add_argument("--param", "-p", action="append", metavar="NOME=VALOR", help="Parâmetro da run")
    run_parser.add_argument("--workspace", "-w", help="Diretório de trabalho dos steps")
    run_parser.add_argument("--json", action="store_true", help="Imprime o RunReport completo em JSON")

    status_parser = subparsers.add_parser("status", help="Mostra o report de uma run")
    status_parser.add_argument("run_id")

    validate_parser = subparsers.add_parser("validate", help="Valida uma definição")
    validate_parser.add_argument("definition")
    validate_parser.add_argument("--param", "-p", action="append", metavar="NOME=VALOR")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        "run": cmd_run,
        "status": cmd_status,
        "validate": cmd_validate,
    }
    try:
        return commands[args.command](args)
    except ConfigError as exc:
        print(f"Erro de configuração: {exc}", file=sys.stderr)
        return EXIT_INVALID


if __name__ == "__main__":
    sys.exit(main())
