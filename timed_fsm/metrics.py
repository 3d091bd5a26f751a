"""
Prometheus metrics for a state machine instance.
"""

import re
import time
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Enum as PrometheusEnum


class MachineMetrics:
    """
    Per-machine metric set.

    Each machine registers on its own ``CollectorRegistry`` unless one is
    passed in, so two machines sharing a name do not clash. Expose the
    registry with ``prometheus_client.generate_latest(metrics.registry)``.
    """

    def __init__(self,
                 name: str,
                 state_names: Iterable[str],
                 registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        metric_name = metric_prefix(name)
        self._entered_at = time.monotonic()

        # Current state as enum metric
        self.state = PrometheusEnum(
            f'{metric_name}_state',
            f'Current state of {name}',
            states=list(state_names),
            registry=self.registry
        )

        self.state_duration = Histogram(
            f'{metric_name}_state_duration_seconds',
            'Time spent in each state',
            labelnames=['state'],
            buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300, 600),
            registry=self.registry
        )

        self.transitions = Counter(
            f'{metric_name}_transitions_total',
            'Total state transitions',
            labelnames=['from_state', 'to_state', 'trigger'],
            registry=self.registry
        )

        self.timeouts = Counter(
            f'{metric_name}_timeouts_total',
            'State timers that fired',
            labelnames=['state'],
            registry=self.registry
        )

        self.handler_errors = Counter(
            f'{metric_name}_handler_errors_total',
            'Handler calls that raised',
            labelnames=['state', 'event'],
            registry=self.registry
        )

        self.unhandled_events = Counter(
            f'{metric_name}_unhandled_events_total',
            'Events with no handler in the current state',
            labelnames=['state', 'event'],
            registry=self.registry
        )

    def entered(self, state: str):
        self.state.state(state)
        self._entered_at = time.monotonic()

    def transitioned(self, from_state: str, to_state: str, trigger: str):
        """Record leaving ``from_state`` and entering ``to_state``"""
        self.state_duration.labels(state=from_state).observe(time.monotonic() - self._entered_at)
        self.transitions.labels(from_state=from_state, to_state=to_state, trigger=trigger).inc()
        self.entered(to_state)


def metric_prefix(name: str) -> str:
    """Turn a machine name into a valid Prometheus metric name prefix"""
    prefix = re.sub(r'[^a-zA-Z0-9_]', '_', name.lower())
    if not prefix or prefix[0].isdigit():
        prefix = f'fsm_{prefix}'
    return prefix
