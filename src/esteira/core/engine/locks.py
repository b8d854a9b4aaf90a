"""
Locks nomeados de recurso.

Um stage com `lock: <nome>` detém o recurso durante toda a sua execução
(steps e hooks do stage). Runs diferentes que disputam o mesmo nome são
serializadas. A espera é cancelável e limitada por `lock_timeout`.

Invariantes:
    - O lock é liberado em toda saída do stage, incluindo falha,
      timeout global e cancelamento
    - Locks são por processo do motor (um LockManager por Engine)
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from ..exceptions import LockContentionError
from ..pipeline.step import CancelSignal

logger = logging.getLogger(__name__)


class LockManager:
    def __init__(self, *, poll_interval: float = 0.05) -> None:
        self.poll_interval = poll_interval
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def is_held(self, name: str) -> bool:
        return self._lock_for(name).locked()

    @contextmanager
    def hold(self, name: str, *, cancel: CancelSignal, timeout: Optional[float] = None) -> Iterator[float]:
        """
        Adquire `name` e libera ao sair do bloco. Devolve os segundos de espera.

        Raises:
            LockContentionError: recurso ocupado além de `timeout`.
        """
        lock = self._lock_for(name)
        started = time.monotonic()
        acquired = False
        while not acquired:
            acquired = lock.acquire(timeout=self.poll_interval)
            if acquired:
                break
            waited = time.monotonic() - started
            if cancel.is_set():
                raise LockContentionError(
                    message=f"Espera pelo lock '{name}' cancelada",
                    details={"lock": name, "waited": waited, "cancelled": True},
                )
            if timeout is not None and waited >= timeout:
                raise LockContentionError(
                    message=f"Lock '{name}' continuou ocupado após {timeout:g}s",
                    details={"lock": name, "waited": waited, "cancelled": False},
                )

        waited = time.monotonic() - started
        logger.debug("Lock '%s' adquirido após %.3fs", name, waited)
        try:
            yield waited
        finally:
            lock.release()
            logger.debug("Lock '%s' liberado", name)
