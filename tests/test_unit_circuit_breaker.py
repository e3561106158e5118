from quota_gate.utils.circuit_breaker import CircuitBreaker


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_circuit_opens_and_half_open_cycle():
    clock = _Clock()
    cb = CircuitBreaker(clock=clock)
    name = "counter_store"
    # Failure threshold from config is 5
    tripped = [cb.record_failure(name) for _ in range(5)]
    assert tripped == [False, False, False, False, True]
    allowed, reason = cb.allow_call(name)
    assert allowed is False and reason == "circuit_open"
    st = cb._states[name]
    assert st.state == "OPEN"
    assert st.opened_at == 1000.0

    # After the open cooldown one probe is let through
    clock.now += 10
    assert cb.allow_call(name) == (True, None)
    assert cb._states[name].state == "HALF_OPEN"
    assert cb.allow_call(name) == (False, "half_open_probe_exhausted")

    cb.record_success(name)
    assert cb._states[name].state == "CLOSED"
    assert cb.allow_call(name) == (True, None)


def test_failed_probe_reopens_circuit():
    clock = _Clock()
    cb = CircuitBreaker(clock=clock)
    for _ in range(5):
        cb.record_failure("s")
    clock.now += 11
    assert cb.allow_call("s")[0] is True
    assert cb.record_failure("s") is True
    assert cb._states["s"].state == "OPEN"
    assert cb._states["s"].opened_at == clock.now


def test_success_resets_failure_count():
    cb = CircuitBreaker()
    for _ in range(4):
        cb.record_failure("s")
    cb.record_success("s")
    assert cb.record_failure("s") is False
    assert cb.snapshot()["s"]["failures"] == 1
    cb.reset()
    assert cb.snapshot() == {}


def test_unreported_half_open_call_expires_after_cooldown():
    clock = _Clock()
    cb = CircuitBreaker(clock=clock)
    for _ in range(5):
        cb.record_failure("s")
    clock.now += 10
    assert cb.allow_call("s") == (True, None)
    # Trial call never reports back
    clock.now += 9
    assert cb.allow_call("s") == (False, "half_open_probe_exhausted")
    clock.now += 1
    assert cb.allow_call("s") == (True, None)
    assert cb.snapshot()["s"]["probe_started_at"] == clock.now


def test_released_half_open_slot_is_reusable():
    clock = _Clock()
    cb = CircuitBreaker(clock=clock)
    for _ in range(5):
        cb.record_failure("s")
    clock.now += 10
    assert cb.allow_call("s")[0] is True
    cb.release_probe("s")
    assert cb.allow_call("s") == (True, None)
    assert cb._states["s"].state == "HALF_OPEN"
    # No-op outside HALF_OPEN
    cb.record_success("s")
    cb.release_probe("s")
    assert cb._states["s"].half_open_probes == 0
