"""
Runners de ação: shell e ações tipadas.

ShellActionRunner
    Executa `command` via `/bin/sh -c` em uma sessão (process group)
    própria. O output (stdout+stderr) vai para um arquivo temporário
    anônimo, nunca para um caminho nomeado: só o Executor persiste output,
    e apenas depois de mascarar segredos. Timeout e cancelamento encerram
    o grupo inteiro (SIGTERM, depois SIGKILL após `kill_grace`), e o grupo
    é varrido também no término normal, para não deixar processos órfãos.
    Variáveis herdadas com prefixo em `hidden_prefixes` (segredos do
    EnvironmentSecretStore) não chegam ao processo.

RegistryActionRunner
    Executa ações Python registradas no ActionRegistry em uma thread
    dedicada. Threads não podem ser encerradas à força: a ação recebe o
    token de cancelamento e deve observá-lo. Em timeout o token da ação é
    cancelado e o resultado é FAILURE mesmo que a ação demore a sair.
    A ação pode sinalizar o desfecho levantando StepFailure (exit code em
    `details["exit_code"]`) ou StepTimeoutError (tratado como timeout).
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from typing import Tuple

from ..exceptions import StepFailure, StepTimeoutError
from ..pipeline.registry import ActionRegistry, UnknownActionError
from ..pipeline.step import ActionOutcome, ActionRequest
from .cancel import CancelToken

logger = logging.getLogger(__name__)


class ShellActionRunner:
    def __init__(
        self,
        *,
        poll_interval: float = 0.1,
        kill_grace: float = 5.0,
        inherit_environ: bool = True,
        hidden_prefixes: Tuple[str, ...] = (),
    ) -> None:
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace
        self.inherit_environ = inherit_environ
        self.hidden_prefixes = tuple(p for p in hidden_prefixes if p)

    def _environment(self, request: ActionRequest) -> dict:
        env = {}
        if self.inherit_environ:
            # Segredos do EnvironmentSecretStore só chegam ao step via binding
            env = {k: v for k, v in os.environ.items() if not k.startswith(self.hidden_prefixes)}
        env.update(request.environment)
        return env

    def _signal_group(self, pgid: int, sig: int) -> None:
        try:
            os.killpg(pgid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _terminate(self, proc: subprocess.Popen) -> None:
        self._signal_group(proc.pid, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            logger.warning("Processo %s ignorou SIGTERM; enviando SIGKILL", proc.pid)
            self._signal_group(proc.pid, signal.SIGKILL)
            proc.wait()

    def run(self, request: ActionRequest) -> ActionOutcome:
        if not request.command:
            return ActionOutcome(exit_code=None, error="step sem command")

        deadline = None if request.timeout is None else time.monotonic() + request.timeout
        timed_out = cancelled = False

        with tempfile.TemporaryFile() as buffer:
            try:
                proc = subprocess.Popen(
                    request.command,
                    shell=True,
                    cwd=str(request.workdir),
                    env=self._environment(request),
                    stdin=subprocess.DEVNULL,
                    stdout=buffer,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                return ActionOutcome(exit_code=None, error=f"falha ao iniciar processo: {exc}")

            try:
                while True:
                    try:
                        proc.wait(timeout=self.poll_interval)
                        break
                    except subprocess.TimeoutExpired:
                        pass
                    if request.cancel.is_set():
                        cancelled = True
                        self._terminate(proc)
                        break
                    if deadline is not None and time.monotonic() >= deadline:
                        timed_out = True
                        self._terminate(proc)
                        break
            finally:
                if proc.poll() is None:
                    self._terminate(proc)
                # Descendentes em background ainda no grupo
                self._signal_group(proc.pid, signal.SIGKILL)

            buffer.seek(0)
            output = buffer.read().decode("utf-8", errors="replace")

        return ActionOutcome(
            exit_code=proc.returncode,
            output=output,
            timed_out=timed_out,
            cancelled=cancelled,
        )


class RegistryActionRunner:
    def __init__(self, registry: ActionRegistry, *, poll_interval: float = 0.1, join_grace: float = 1.0) -> None:
        self.registry = registry
        self.poll_interval = poll_interval
        self.join_grace = join_grace

    def run(self, request: ActionRequest) -> ActionOutcome:
        try:
            action = self.registry.get(request.action or "")
        except UnknownActionError:
            return ActionOutcome(exit_code=None, error=f"ação desconhecida: {request.action}")

        parent = request.cancel
        token = parent.child() if isinstance(parent, CancelToken) else CancelToken(poll_interval=self.poll_interval)
        request.cancel = token
        box: dict = {}

        def _target() -> None:
            try:
                box["value"] = action(request)
            except Exception as exc:  # noqa: BLE001 - falha da ação vira outcome
                box["error"] = exc

        worker = threading.Thread(target=_target, name=f"esteira-action-{request.step_id}", daemon=True)
        deadline = None if request.timeout is None else time.monotonic() + request.timeout
        worker.start()

        timed_out = cancelled = False
        while worker.is_alive():
            worker.join(self.poll_interval)
            if not worker.is_alive():
                break
            if parent.is_set():
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            if cancelled or timed_out:
                token.cancel("timeout" if timed_out else "cancelled")
                worker.join(self.join_grace)
                if worker.is_alive():
                    logger.warning("Ação '%s' não respeitou o cancelamento em %ss", request.action, self.join_grace)
                break

        return self._outcome(request, box, timed_out=timed_out, cancelled=cancelled)

    def _outcome(self, request: ActionRequest, box: dict, *, timed_out: bool, cancelled: bool) -> ActionOutcome:
        written = request.written
        if timed_out or cancelled:
            return ActionOutcome(exit_code=None, output=written, timed_out=timed_out, cancelled=cancelled)

        if "error" in box:
            exc = box["error"]
            if isinstance(exc, StepTimeoutError):
                return ActionOutcome(exit_code=None, output=written, timed_out=True, error=exc.message)
            if isinstance(exc, StepFailure):
                exit_code = exc.details.get("exit_code", 1)
                if isinstance(exit_code, bool) or not isinstance(exit_code, int) or exit_code == 0:
                    exit_code = 1
                return ActionOutcome(exit_code=exit_code, output=f"{written}{exc.message}\n", error=exc.message)
            text = f"{written}{exc.__class__.__name__}: {exc}\n"
            return ActionOutcome(exit_code=1, output=text, error=str(exc) or exc.__class__.__name__)

        value = box.get("value")
        if isinstance(value, ActionOutcome):
            output = written + value.output
            return ActionOutcome(
                exit_code=value.exit_code,
                output=output,
                timed_out=value.timed_out,
                cancelled=value.cancelled,
                error=value.error,
            )
        if value is None:
            return ActionOutcome(exit_code=0, output=written)
        if isinstance(value, bool) or not isinstance(value, int):
            return ActionOutcome(
                exit_code=1,
                output=written,
                error=f"ação retornou tipo inválido: {type(value).__name__}",
            )
        return ActionOutcome(exit_code=value, output=written)
