"""
Minimal push-updated value used for summary panels and deep links.
"""

import logging
from typing import Callable
from typing import Generic
from typing import TypeVar

T = TypeVar("T")

_logger = logging.getLogger(__name__)


class ObservableValue(Generic[T]):
    """Holds a value and notifies subscribers synchronously on every set.

    Subscribers run in subscription order before the setter returns, so a
    mutation that assigns ``.value`` has reached every listener by the time
    the mutating call completes.
    """

    def __init__(self, value: T):
        self._value = value
        self._listeners: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    @value.setter
    def value(self, new_value: T):
        self._value = new_value
        for listener in list(self._listeners):
            try:
                listener(new_value)
            except Exception:
                # One broken panel must not stop the others from updating.
                _logger.exception("Observable listener %r failed", listener)

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe():
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Callable[[T], None]):
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)
