"""Core configuration & tunable quota rules.

Plan limits, overage rates, counter store and ledger sync tuning are
centralized here so they can be adjusted without diving into service logic.
Values are plain module-level dicts (tests monkeypatch them); environment
variables override the infrastructure knobs. The policy table consumed by the
admission path is built ONCE from these dicts at startup
(see ``quota_gate.core.policy.build_policy_table``) and is read-only after that.
"""
from __future__ import annotations

import json
import os

# ------------------------------- Plan tiers ------------------------------- #
# Ordered from most to least restrictive. Unknown plans resolve to DEFAULT_PLAN.
PLAN_ORDER: list[str] = ["foundation", "growth", "premium", "enterprise"]
DEFAULT_PLAN: str = "foundation"

# ------------------------- Ephemeral window limits ------------------------- #
QUOTA_POLICIES: dict[str, dict[str, int]] = {
	"foundation": {
		"events_per_minute": 5,
		"events_per_hour": 50,
		"events_per_day": 200,
		"cooldown_period_seconds": 10,
		"burst_allowance": 0,
	},
	"growth": {
		"events_per_minute": 10,
		"events_per_hour": 100,
		"events_per_day": 500,
		"cooldown_period_seconds": 0,
		"burst_allowance": 2,
	},
	"premium": {
		"events_per_minute": 30,
		"events_per_hour": 1000,
		"events_per_day": 5000,
		"cooldown_period_seconds": 0,
		"burst_allowance": 10,
	},
	"enterprise": {
		"events_per_minute": 100,
		"events_per_hour": 5000,
		"events_per_day": 50000,
		"cooldown_period_seconds": 0,
		"burst_allowance": 50,
	},
}

# ------------------------ Contractual monthly limits ----------------------- #
# Keys are ResourceType values. Crossing one of these triggers overage billing.
MONTHLY_LIMITS: dict[str, dict[str, int]] = {
	"foundation": {"api_calls": 1_000, "certificates": 10, "votes": 100, "events": 2_000},
	"growth": {"api_calls": 25_000, "certificates": 500, "votes": 5_000, "events": 10_000},
	"premium": {"api_calls": 100_000, "certificates": 2_500, "votes": 25_000, "events": 100_000},
	"enterprise": {"api_calls": 1_000_000, "certificates": 25_000, "votes": 250_000, "events": 1_000_000},
}

# --------------------------- Overage rate table ---------------------------- #
# Cents per unit beyond the monthly limit. Foundation has no overage billing.
OVERAGE_RATES: dict[str, dict[str, int]] = {
	"foundation": {"api_calls": 0, "certificates": 0, "votes": 0, "events": 0},
	"growth": {"api_calls": 1, "certificates": 100, "votes": 5, "events": 1},
	"premium": {"api_calls": 1, "certificates": 75, "votes": 3, "events": 1},
	"enterprise": {"api_calls": 1, "certificates": 50, "votes": 2, "events": 1},
}

# Static tenant -> plan assignments for the bundled plan resolver.
# Real deployments plug in the tenant-management service instead.
_tenant_plans_raw = os.getenv("TENANT_PLANS_JSON", "").strip()
TENANT_PLANS: dict[str, str] = json.loads(_tenant_plans_raw) if _tenant_plans_raw else {}

# ------------------------------ Counter store ----------------------------- #
COUNTER_STORE_SETTINGS: dict[str, str | int | float | bool] = {
	"backend": os.getenv("COUNTER_STORE_BACKEND", "memory"),  # memory | redis
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"timeout_ms": int(os.getenv("COUNTER_STORE_TIMEOUT_MS", "100")),
	"health_check_timeout": 2.0,
	# Extra lifetime past the bucket length before a counter key expires
	"grace_seconds": 60,
	"key_prefix": os.getenv("COUNTER_KEY_PREFIX", "quota"),
}

# Fail fast (closed) while the counter store is known to be down.
COUNTER_STORE_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,        # Consecutive failures before OPEN
	"open_cooldown_seconds": 10,   # Stay OPEN before probing again
	"half_open_probe_count": 1,    # Probes allowed in HALF_OPEN
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 1,
	"factor": 2,          # Exponential factor
	"max_seconds": 60,
	"jitter_pct": 0.10,   # +/-10% jitter
}

# ------------------------------- Ledger sync ------------------------------ #
LEDGER_SYNC_SETTINGS: dict[str, int | float] = {
	"flush_interval_seconds": float(os.getenv("LEDGER_FLUSH_INTERVAL_SECONDS", "5")),
	"max_queue_size": int(os.getenv("LEDGER_MAX_QUEUE_SIZE", "10000")),
	"max_retries": 5,
	"warn_depth": 5000,
}

# -------------------------------- Alerting -------------------------------- #
ALERTING_SETTINGS: dict[str, float | int] = {
	"repeat_window_hours": 6,  # Same alert type for a tenant inside the window escalates
}

__all__ = [
	"PLAN_ORDER",
	"DEFAULT_PLAN",
	"QUOTA_POLICIES",
	"MONTHLY_LIMITS",
	"OVERAGE_RATES",
	"TENANT_PLANS",
	"COUNTER_STORE_SETTINGS",
	"COUNTER_STORE_BREAKER",
	"BACKOFF_POLICY",
	"LEDGER_SYNC_SETTINGS",
	"ALERTING_SETTINGS",
]
