from collections import Counter
from threading import Lock


FLEET_COUNTERS = (
    "vms_provisioned_total",
    "vms_already_provisioned_total",
    "vms_failed_total",
    "stages_completed_total",
    "vms_destroyed_total",
    "vms_destroy_failed_total",
    "vms_not_found_total",
    "command_retries_total",
)


class Metrics:
    """Process-local counters served at ``/metrics``.

    Names given up front are reported as 0 until their first increment, so
    the endpoint always has the same shape.
    """

    def __init__(self, names: tuple[str, ...] = ()) -> None:
        self._lock = Lock()
        self._names = names
        self._counts: Counter[str] = Counter()

    def inc(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            values = dict.fromkeys(self._names, 0)
            values.update(self._counts)
            return values

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


metrics = Metrics(FLEET_COUNTERS)
