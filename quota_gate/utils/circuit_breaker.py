"""In-memory circuit breaker for the counter store (process-local).

While OPEN the admission path fails closed immediately instead of waiting on
a store timeout for every request. Each process keeps its own view.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict

from quota_gate.config import COUNTER_STORE_BREAKER


@dataclass
class BreakerState:
    failures: int = 0
    state: str = "CLOSED"
    opened_at: float | None = None
    half_open_probes: int = 0
    probe_started_at: float | None = None


class CircuitBreaker:
    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._states: Dict[str, BreakerState] = {}
        self._clock = clock

    def _get(self, name: str) -> BreakerState:
        return self._states.setdefault(name, BreakerState())

    def allow_call(self, name: str) -> tuple[bool, str | None]:
        st = self._get(name)
        if st.state == "CLOSED":
            return True, None
        cooldown = float(COUNTER_STORE_BREAKER["open_cooldown_seconds"])
        if st.state == "OPEN":
            if st.opened_at is not None and self._clock() - st.opened_at >= cooldown:
                st.state = "HALF_OPEN"
                st.half_open_probes = 0
                st.probe_started_at = None
            else:
                return False, "circuit_open"
        if st.state == "HALF_OPEN":
            probe_limit = int(COUNTER_STORE_BREAKER["half_open_probe_count"])
            if st.half_open_probes >= probe_limit:
                # A probe that never reported back stops blocking after one cooldown
                if st.probe_started_at is None or self._clock() - st.probe_started_at < cooldown:
                    return False, "half_open_probe_exhausted"
                st.half_open_probes = 0
            st.half_open_probes += 1
            st.probe_started_at = self._clock()
            return True, None
        return True, None

    def release_probe(self, name: str) -> None:
        """Give back a HALF_OPEN probe slot whose call ended without an outcome."""
        st = self._get(name)
        if st.state == "HALF_OPEN" and st.half_open_probes > 0:
            st.half_open_probes -= 1

    def record_success(self, name: str) -> None:
        st = self._get(name)
        st.failures = 0
        if st.state in {"OPEN", "HALF_OPEN"}:
            st.state = "CLOSED"
            st.opened_at = None
            st.half_open_probes = 0
            st.probe_started_at = None

    def record_failure(self, name: str) -> bool:
        """Count a failure; returns True when this call tripped the breaker OPEN."""
        st = self._get(name)
        st.failures += 1
        threshold = int(COUNTER_STORE_BREAKER["failure_threshold"])
        if st.state == "CLOSED" and st.failures >= threshold:
            st.state = "OPEN"
            st.opened_at = self._clock()
            return True
        if st.state == "HALF_OPEN":
            st.state = "OPEN"
            st.opened_at = self._clock()
            return True
        return False

    def reset(self) -> None:
        self._states.clear()

    def snapshot(self) -> dict[str, dict[str, object]]:
        return {
            k: {
                "failures": v.failures,
                "state": v.state,
                "opened_at": v.opened_at,
                "half_open_probes": v.half_open_probes,
                "probe_started_at": v.probe_started_at,
            }
            for k, v in self._states.items()
        }


__all__ = ["CircuitBreaker", "BreakerState"]
