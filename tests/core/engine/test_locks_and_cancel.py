# tests/core/engine/test_locks_and_cancel.py
"""
Testes de locks nomeados e tokens de cancelamento.

Os testes asseguram que:
- o lock é liberado em toda saída do bloco, inclusive com exceção
- a espera respeita `timeout` e levanta LockContentionError
- a espera é interrompida por cancelamento
- cancelar um token cancela os descendentes, nunca os ancestrais
"""

import threading
import time

import pytest

from esteira.core.engine.cancel import CancelToken
from esteira.core.engine.locks import LockManager
from esteira.core.exceptions import LockContentionError


def test_lock_is_released_on_exception():
    locks = LockManager(poll_interval=0.01)

    with pytest.raises(RuntimeError):
        with locks.hold("prod-env", cancel=CancelToken()):
            assert locks.is_held("prod-env")
            raise RuntimeError("deploy falhou")

    assert not locks.is_held("prod-env")


def test_lock_timeout_raises_contention():
    locks = LockManager(poll_interval=0.01)

    with locks.hold("prod-env", cancel=CancelToken()):
        with pytest.raises(LockContentionError) as exc_info:
            with locks.hold("prod-env", cancel=CancelToken(), timeout=0.1):
                pytest.fail("lock não deveria ser adquirido")

    assert exc_info.value.details["lock"] == "prod-env"
    assert exc_info.value.details["cancelled"] is False
    assert exc_info.value.details["waited"] >= 0.1


def test_waiter_acquires_after_release():
    locks = LockManager(poll_interval=0.01)
    acquired = threading.Event()

    def waiter():
        with locks.hold("db", cancel=CancelToken()) as waited:
            assert waited >= 0.1
            acquired.set()

    with locks.hold("db", cancel=CancelToken()):
        t = threading.Thread(target=waiter)
        t.start()
        time.sleep(0.15)
        assert not acquired.is_set()

    t.join(2)
    assert acquired.is_set()


def test_lock_wait_is_cancellable():
    locks = LockManager(poll_interval=0.01)
    token = CancelToken()

    with locks.hold("db", cancel=CancelToken()):
        threading.Timer(0.05, token.cancel).start()
        with pytest.raises(LockContentionError) as exc_info:
            with locks.hold("db", cancel=token):
                pass

    assert exc_info.value.details["cancelled"] is True


def test_cancel_propagates_to_descendants_only():
    root = CancelToken()
    child = root.child()
    grandchild = child.child()
    sibling = root.child()

    child.cancel("fail_fast")

    assert child.is_set() and grandchild.is_set()
    assert grandchild.reason == "fail_fast"
    assert not root.is_set()
    assert not sibling.is_set()

    root.cancel("timeout")
    assert sibling.is_set()
    assert sibling.reason == "timeout"
    assert child.reason == "fail_fast"


def test_wait_returns_on_cancel_or_timeout():
    token = CancelToken(poll_interval=0.01)

    assert token.wait(0.05) is False

    threading.Timer(0.05, token.cancel).start()
    started = time.monotonic()
    assert token.wait(10) is True
    assert time.monotonic() - started < 2
