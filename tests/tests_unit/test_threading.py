from threading import Thread
from time import sleep, time

import pytest

from simplescheduler.threading import CancellationToken


def test_wait_times_out() -> None:
    token = CancellationToken()

    start = time()
    assert not token.wait(0.2)
    assert time() - start == pytest.approx(0.2, abs=0.1)
    assert not token.is_cancelled


def test_cancel_wakes_up_waiter() -> None:
    token = CancellationToken()

    def cancel_soon() -> None:
        sleep(0.1)
        token.cancel()

    thread = Thread(target=cancel_soon)
    start = time()
    thread.start()

    assert token.wait(5)
    assert time() - start < 2
    thread.join()


def test_child_token() -> None:
    parent = CancellationToken()
    child = parent.create_child_token()
    other_child = parent.create_child_token()

    child.cancel()
    assert child.is_cancelled
    assert not parent.is_cancelled
    assert not other_child.is_cancelled

    parent.cancel()
    assert other_child.is_cancelled
    assert other_child.wait(0)
    assert repr(other_child).endswith(": cancelled>")
