from threading import Condition
from time import time


class CancellationToken:
    """
    Hierarchical cancellation token used to shut down the scheduler loop.

    Waiting on the token is used instead of ``time.sleep`` between ticks, so that a cancelled scheduler stops right
    away instead of finishing its sleep. Use ``create_child_token`` to get a token that is cancelled together with its
    parent, but that can also be cancelled on its own.
    """

    def __init__(self, condition: Condition | None = None) -> None:
        self._cv: Condition = condition or Condition()
        self._is_cancelled_int: bool = False
        self._parent: "CancellationToken | None" = None

    def __repr__(self) -> str:
        cls = self.__class__
        status = "cancelled" if self.is_cancelled else "not cancelled"
        return f"<{cls.__module__}.{cls.__qualname__} at {id(self):#x}: {status}>"

    @property
    def is_cancelled(self) -> bool:
        """
        ``True`` if this token, or any of its parents, has been cancelled.
        """
        return self._is_cancelled_int or self._parent is not None and self._parent.is_cancelled

    def cancel(self) -> None:
        """
        Cancel the token and wake up every thread waiting on it.
        """
        if self.is_cancelled:
            return

        with self._cv:
            self._is_cancelled_int = True
            self._cv.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        """
        Block until the token is cancelled or the timeout has passed.

        Args:
            timeout: Max number of seconds to wait. Wait forever if ``None``.

        Returns:
            ``True`` if the token was cancelled, ``False`` on timeout.
        """
        endtime = None
        if timeout is not None:
            endtime = time() + timeout

        while not self.is_cancelled:
            with self._cv:
                if endtime is not None:
                    remaining_time = endtime - time()
                    if remaining_time <= 0.0:
                        return self.is_cancelled
                    timed_out = not self._cv.wait(remaining_time)
                    if timed_out:
                        return self.is_cancelled
                else:
                    self._cv.wait()
        return True

    def create_child_token(self) -> "CancellationToken":
        child = CancellationToken(self._cv)
        child._parent = self
        return child
