"""
Idempotency guard: bounded memory of recently applied request ids
"""
from collections import OrderedDict
from typing import Any, Optional


class IdempotencyGuard:
    """
    Insertion-ordered bounded map of request id -> first result

    When capacity is exceeded the oldest inserted id is evicted (strict FIFO,
    a repeated lookup does not refresh an id).
    """

    def __init__(self, capacity: int = 200):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._ids: "OrderedDict[str, Any]" = OrderedDict()

    def seen(self, request_id: str) -> bool:
        return request_id in self._ids

    def result_for(self, request_id: str) -> Optional[Any]:
        """Result recorded when the id was first applied (None if unknown)"""
        return self._ids.get(request_id)

    def remember(self, request_id: str, result: Any = None) -> None:
        if request_id in self._ids:
            return
        self._ids[request_id] = result
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)

    def __len__(self) -> int:
        return len(self._ids)
