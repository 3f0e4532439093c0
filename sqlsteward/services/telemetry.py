from __future__ import annotations

from collections import defaultdict


_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards (blocked statements, forced rollbacks, audit failures).
    _counters[name] += value


def counter_value(name: str) -> int:
    return int(_counters.get(name, 0))


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_counters() -> None:
    # Only used by tests to isolate counter assertions.
    _counters.clear()
