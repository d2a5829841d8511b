"""Observed status computation.

The reconciler owns ``record_id``, ``zone_id`` and ``conditions``. ``pending``
is carried through unchanged; only the DNS health checker writes it after
the initial value.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence, Tuple

from cloudflare_dns_operator.errors import OperatorError
from cloudflare_dns_operator.resources import Condition, ObservedStatus

SYNCED = "Synced"
RECONCILED = "Reconciled"


def now_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class Outcome:
    """Result of one reconcile attempt.

    ``record_id``/``zone_id`` of None mean "keep the previous value".
    """

    record_id: Optional[str] = None
    zone_id: Optional[str] = None
    error: Optional[OperatorError] = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.error is None


def _max_generation(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def upsert_condition(conditions: Sequence[Condition], new: Condition) -> Tuple[Condition, ...]:
    """Insert or replace the condition of ``new.type``.

    The transition time is kept when the status did not flip, and the
    observed generation never goes backwards. Duplicate entries of the same
    type are collapsed.
    """
    result = []
    replaced = False
    for condition in conditions:
        if condition.type != new.type:
            result.append(condition)
            continue
        if replaced:
            continue
        replaced = True
        transition = new.last_transition_time
        if condition.status == new.status and condition.last_transition_time:
            transition = condition.last_transition_time
        result.append(
            replace(
                new,
                last_transition_time=transition,
                observed_generation=_max_generation(
                    condition.observed_generation, new.observed_generation
                ),
            )
        )
    if not replaced:
        result.append(new)
    return tuple(result)


def compute_status(
    previous: ObservedStatus,
    outcome: Outcome,
    generation: Optional[int] = None,
    now: Optional[str] = None,
) -> ObservedStatus:
    now = now or now_timestamp()
    if outcome.succeeded:
        condition = Condition(
            type=SYNCED,
            status="True",
            reason=RECONCILED,
            message=outcome.message,
            last_transition_time=now,
            observed_generation=generation,
        )
    else:
        condition = Condition(
            type=SYNCED,
            status="False",
            reason=outcome.error.reason,
            message=outcome.error.message or str(outcome.error),
            last_transition_time=now,
            observed_generation=generation,
        )

    return ObservedStatus(
        record_id=previous.record_id if outcome.record_id is None else outcome.record_id,
        zone_id=previous.zone_id if outcome.zone_id is None else outcome.zone_id,
        pending=previous.pending,
        conditions=upsert_condition(previous.conditions, condition),
    )


def reconciler_fields(status: ObservedStatus) -> Dict[str, Any]:
    """The part of the status the reconciler writes (everything but ``pending``)."""
    data = status.to_dict()
    data.pop("pending", None)
    return data
