"""
Tokens de cancelamento hierárquicos.

A run possui um token raiz; cada parallel group com `fail_fast` cria
um token filho por branch. Cancelar um token cancela todos os seus
descendentes, nunca os ancestrais. O cancelamento é cooperativo: quem
executa trabalho consulta `is_set()` ou espera com `wait()` em fatias
de no máximo `poll_interval` segundos.
"""

from __future__ import annotations

import threading
import time
from typing import Optional


class CancelToken:
    def __init__(self, parent: Optional["CancelToken"] = None, *, poll_interval: float = 0.05) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._reason: Optional[str] = None
        self.poll_interval = poll_interval

    def child(self) -> "CancelToken":
        return CancelToken(self, poll_interval=self.poll_interval)

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def is_set(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.is_set()

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Espera até o cancelamento ou `timeout`; retorna True se cancelado."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_set():
            if deadline is None:
                slice_ = self.poll_interval
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                slice_ = min(self.poll_interval, remaining)
            self._event.wait(slice_)
        return True
