"""Reconcile counters exposed on the metrics endpoint."""

import threading
from collections import defaultdict
from typing import Dict, Tuple


class ControllerMetrics:
    """Thread-safe counters rendered in Prometheus text format."""

    def __init__(self):
        self._lock = threading.Lock()
        self._reconcile_total: Dict[Tuple[str, str], int] = defaultdict(int)
        self._reconcile_errors: Dict[str, int] = defaultdict(int)
        self._active_workers: Dict[str, int] = defaultdict(int)
        self._max_workers: Dict[str, int] = {}

    def set_max_workers(self, controller: str, count: int) -> None:
        with self._lock:
            self._max_workers[controller] = count

    def observe_reconcile(self, controller: str, result: str) -> None:
        """Count one reconcile; result is success, error, requeue or requeue_after."""
        with self._lock:
            self._reconcile_total[(controller, result)] += 1
            if result == "error":
                self._reconcile_errors[controller] += 1

    def worker_started(self, controller: str) -> None:
        with self._lock:
            self._active_workers[controller] += 1

    def worker_finished(self, controller: str) -> None:
        with self._lock:
            self._active_workers[controller] -= 1

    def reconcile_count(self, controller: str, result: str) -> int:
        with self._lock:
            return self._reconcile_total.get((controller, result), 0)

    def render(self) -> str:
        """Render all counters in the Prometheus exposition format."""
        lines = [
            "# HELP controller_runtime_reconcile_total Total number of reconciliations per controller",
            "# TYPE controller_runtime_reconcile_total counter",
        ]
        with self._lock:
            for (controller, result), value in sorted(self._reconcile_total.items()):
                lines.append(
                    f'controller_runtime_reconcile_total{{controller="{controller}",result="{result}"}} {value}'
                )
            lines += [
                "# HELP controller_runtime_reconcile_errors_total Total number of reconciliation errors per controller",
                "# TYPE controller_runtime_reconcile_errors_total counter",
            ]
            for controller, value in sorted(self._reconcile_errors.items()):
                lines.append(f'controller_runtime_reconcile_errors_total{{controller="{controller}"}} {value}')
            lines += [
                "# HELP controller_runtime_active_workers Number of currently used workers per controller",
                "# TYPE controller_runtime_active_workers gauge",
            ]
            for controller, value in sorted(self._active_workers.items()):
                lines.append(f'controller_runtime_active_workers{{controller="{controller}"}} {value}')
            lines += [
                "# HELP controller_runtime_max_concurrent_reconciles Maximum number of concurrent reconciles per controller",
                "# TYPE controller_runtime_max_concurrent_reconciles gauge",
            ]
            for controller, value in sorted(self._max_workers.items()):
                lines.append(f'controller_runtime_max_concurrent_reconciles{{controller="{controller}"}} {value}')
        return "\n".join(lines) + "\n"
