"""Usage ledger sync: batching, retries, idempotent replays and overage triggering."""
import asyncio
import threading
from unittest.mock import MagicMock

from quota_gate.core.policy import build_policy_table
from quota_gate.config import QUOTA_POLICIES, OVERAGE_RATES
from quota_gate.integrations.plans import StaticPlanResolver
from quota_gate.models.db.enums import AlertType, ResourceType
from quota_gate.services.admission import AdmissionController
from quota_gate.services.ledger_repository import SqlUsageLedger
from quota_gate.services.ledger_sync import UsageLedgerSync

MONTH = "2023-11"


class FlakyLedger(SqlUsageLedger):
    """Applies the write, then reports a failure (ambiguous outcome) on chosen calls."""

    def __init__(self, *args, fail_after_apply=0, fail_before_apply=0, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_after_apply = fail_after_apply
        self.fail_before_apply = fail_before_apply
        self.calls = []

    def increment_monthly_usage(self, tenant_id, resource_type, amount, *, delta_id, billing_month):
        self.calls.append(delta_id)
        if self.fail_before_apply:
            self.fail_before_apply -= 1
            raise ConnectionError("ledger unreachable")
        update = super().increment_monthly_usage(
            tenant_id, resource_type, amount, delta_id=delta_id, billing_month=billing_month
        )
        if self.fail_after_apply:
            self.fail_after_apply -= 1
            raise TimeoutError("commit acknowledgement lost")
        return update


def _small_vote_limits():
    # growth tenants may cast 3 votes a month
    return build_policy_table(QUOTA_POLICIES, {"growth": {"votes": 3}}, OVERAGE_RATES)


def _sync(repository, clock, *, policies=None, overage=None, alerts=None, **kwargs):
    resolver = StaticPlanResolver({"t1": "growth", "t2": "growth"})
    return UsageLedgerSync(
        repository,
        resolver,
        policies or build_policy_table(),
        overage,
        alerts=alerts,
        clock=clock,
        **kwargs,
    )


def test_flush_aggregates_deltas_into_one_batch(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    sync = _sync(repository, clock)
    for _ in range(5):
        sync.record_usage("t1", ResourceType.EVENTS)
    sync.record_usage("t1", ResourceType.VOTES, 2)

    applied = asyncio.run(sync.flush())
    assert applied == 2
    assert len(repository.calls) == 2
    usage = repository.get_monthly_usage("t1", MONTH)
    assert usage.counts["events"] == 5
    assert usage.counts["votes"] == 2
    assert sync.snapshot()["queue_depth"] == 0
    assert sync.snapshot()["pending_batches"] == 0


def test_deltas_split_by_billing_month(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    sync = _sync(repository, clock)
    sync.record_usage("t1", ResourceType.EVENTS, timestamp=clock() - 20 * 86_400)  # October
    sync.record_usage("t1", ResourceType.EVENTS)
    assert asyncio.run(sync.flush()) == 2
    assert repository.get_monthly_usage("t1", "2023-10").counts["events"] == 1
    assert repository.get_monthly_usage("t1", MONTH).counts["events"] == 1


def test_ambiguous_failure_retried_without_double_count(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock, fail_after_apply=1)
    sync = _sync(repository, clock)
    for _ in range(4):
        sync.record_usage("t1", ResourceType.EVENTS)

    assert asyncio.run(sync.flush()) == 0
    assert sync.snapshot()["pending_batches"] == 1
    # Backoff not yet elapsed
    assert asyncio.run(sync.flush()) == 0
    assert len(repository.calls) == 1

    clock.advance(5)
    assert asyncio.run(sync.flush()) == 1
    assert repository.calls[0] == repository.calls[1]
    assert repository.get_monthly_usage("t1", MONTH).counts["events"] == 4


def test_batch_lost_after_max_retries(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock, fail_before_apply=10)
    alerts = MagicMock()
    sync = _sync(repository, clock, alerts=alerts, max_retries=3)
    sync.record_usage("t1", ResourceType.EVENTS, 7)

    for _ in range(3):
        asyncio.run(sync.flush(force=True))
    snapshot = sync.snapshot()
    assert snapshot["pending_batches"] == 0
    assert snapshot["lost_deltas"] == 7
    assert len(repository.calls) == 3
    alerts.raise_alert.assert_called_once()
    assert alerts.raise_alert.call_args.args[0] == AlertType.LEDGER_DELTAS_LOST
    assert alerts.raise_alert.call_args.kwargs["tenant_id"] == "t1"


def test_full_queue_drops_oldest(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    sync = _sync(repository, clock, max_queue_size=3)
    sync.record_usage("old", ResourceType.EVENTS)
    for _ in range(3):
        sync.record_usage("t1", ResourceType.EVENTS)
    assert sync.snapshot()["queue_depth"] == 3
    assert sync.dropped_deltas == 1

    asyncio.run(sync.flush())
    assert repository.get_monthly_usage("old", MONTH) is None
    assert repository.get_monthly_usage("t1", MONTH).counts["events"] == 3


def test_overage_fires_once_when_monthly_limit_crossed(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    overage = MagicMock()
    sync = _sync(repository, clock, policies=_small_vote_limits(), overage=overage)

    for _ in range(3):
        sync.record_usage("t1", ResourceType.VOTES)
    asyncio.run(sync.flush())
    overage.on_threshold_crossed.assert_not_called()

    sync.record_usage("t1", ResourceType.VOTES)
    asyncio.run(sync.flush())
    overage.on_threshold_crossed.assert_called_once_with(
        "t1", ResourceType.VOTES, 1, plan="growth", billing_month=MONTH
    )

    for _ in range(5):
        sync.record_usage("t1", ResourceType.VOTES)
        asyncio.run(sync.flush())
    assert overage.on_threshold_crossed.call_count == 1
    assert repository.get_monthly_usage("t1", MONTH).counts["votes"] == 9


def test_two_sync_instances_fire_overage_once(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    overage = MagicMock()
    policies = _small_vote_limits()
    first = _sync(repository, clock, policies=policies, overage=overage)
    second = _sync(repository, clock, policies=policies, overage=overage)

    first.record_usage("t1", ResourceType.VOTES, 4)
    second.record_usage("t1", ResourceType.VOTES, 1)
    assert asyncio.run(first.flush()) == 1
    assert asyncio.run(second.flush()) == 1

    # Both observed a total past the limit; only the flag flip charges
    assert repository.get_monthly_usage("t1", MONTH).counts["votes"] == 5
    overage.on_threshold_crossed.assert_called_once_with(
        "t1", ResourceType.VOTES, 1, plan="growth", billing_month=MONTH
    )


def test_replayed_batch_past_limit_still_triggers_overage(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock, fail_after_apply=1)
    overage = MagicMock()
    sync = _sync(repository, clock, policies=_small_vote_limits(), overage=overage)
    sync.record_usage("t1", ResourceType.VOTES, 5)

    asyncio.run(sync.flush())
    overage.on_threshold_crossed.assert_not_called()
    asyncio.run(sync.flush(force=True))
    overage.on_threshold_crossed.assert_called_once_with(
        "t1", ResourceType.VOTES, 2, plan="growth", billing_month=MONTH
    )


def test_overage_errors_do_not_break_flush(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    overage = MagicMock()
    overage.on_threshold_crossed.side_effect = RuntimeError("billing exploded")
    sync = _sync(repository, clock, policies=_small_vote_limits(), overage=overage)
    sync.record_usage("t1", ResourceType.VOTES, 4)
    assert asyncio.run(sync.flush()) == 1
    assert sync.snapshot()["pending_batches"] == 0


def test_stop_flushes_remaining_usage(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    sync = _sync(repository, clock, flush_interval_seconds=3600)

    async def run():
        sync.start()
        assert sync.running
        sync.record_usage("t1", ResourceType.EVENTS, 3)
        await sync.stop()

    asyncio.run(run())
    assert sync.running is False
    assert repository.get_monthly_usage("t1", MONTH).counts["events"] == 3


def test_zero_amount_deltas_are_skipped(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    sync = _sync(repository, clock)
    sync.record_usage("t1", ResourceType.EVENTS, 0)
    assert asyncio.run(sync.flush()) == 0
    assert repository.calls == []


def test_overage_uses_plan_usage_was_admitted_under(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    overage = MagicMock()
    sync = _sync(repository, clock, policies=_small_vote_limits(), overage=overage)
    # Unassigned tenant would resolve to foundation, which has no vote cap here
    for _ in range(4):
        sync.record_usage("t-new", ResourceType.VOTES, plan="growth")
    asyncio.run(sync.flush(force=True))
    overage.on_threshold_crossed.assert_called_once_with(
        "t-new", ResourceType.VOTES, 1, plan="growth", billing_month=MONTH
    )


def test_admitted_plan_flows_from_admission_to_overage(session_factory, store, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    overage = MagicMock()
    policies = _small_vote_limits()
    sync = _sync(repository, clock, policies=policies, overage=overage)
    controller = AdmissionController(store, policies, clock=clock, ledger_sync=sync)

    for _ in range(4):
        result = asyncio.run(controller.check_and_admit("t-new", "growth", resource_type=ResourceType.VOTES))
        assert result.allowed
    asyncio.run(sync.flush(force=True))
    assert overage.on_threshold_crossed.call_count == 1
    assert overage.on_threshold_crossed.call_args.kwargs["plan"] == "growth"


def test_deltas_admitted_under_different_plans_stay_separate(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock)
    sync = _sync(repository, clock)
    sync.record_usage("t1", ResourceType.EVENTS, 2, plan="growth")
    sync.record_usage("t1", ResourceType.EVENTS, 3, plan="premium")
    assert asyncio.run(sync.flush()) == 2
    assert repository.get_monthly_usage("t1", MONTH).counts["events"] == 5


def test_lost_batch_alert_is_written_off_the_event_loop(session_factory, clock):
    repository = FlakyLedger(session_factory, clock=clock, fail_before_apply=1)
    loop_thread = threading.get_ident()
    alert_threads = []
    alerts = MagicMock()
    alerts.raise_alert.side_effect = lambda *a, **kw: alert_threads.append(threading.get_ident())
    sync = _sync(repository, clock, alerts=alerts, max_retries=1)
    sync.record_usage("t1", ResourceType.EVENTS)

    asyncio.run(sync.flush())
    assert sync.lost_deltas == 1
    assert len(alert_threads) == 1
    assert alert_threads[0] != loop_thread
