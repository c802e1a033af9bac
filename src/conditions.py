#!/usr/bin/env python3
# src/conditions.py
"""
Status condition aggregation for MariaDB resources.

Pure functions over plain dictionaries. A condition keeps its
lastTransitionTime unless its status flips, so re-applying an identical
outcome never produces a different status document.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

CONDITION_READY = "Ready"
CONDITION_PRIMARY_SWITCHED = "PrimarySwitched"
CONDITION_GALERA_READY = "GaleraReady"

STATUS_TRUE = "True"
STATUS_FALSE = "False"


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _as_status(value) -> str:
    if isinstance(value, bool):
        return STATUS_TRUE if value else STATUS_FALSE
    return str(value)


def find_condition(
    conditions: List[Dict[str, Any]], condition_type: str
) -> Optional[Dict[str, Any]]:
    for condition in conditions or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def is_true(conditions: List[Dict[str, Any]], condition_type: str) -> bool:
    condition = find_condition(conditions, condition_type)
    return bool(condition and condition.get("status") == STATUS_TRUE)


def set_condition(
    conditions: List[Dict[str, Any]],
    condition_type: str,
    status,
    reason: str,
    message: str,
    now: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Return a new condition list with condition_type set.

    The transition time only moves when the boolean status changes; reason
    and message are updated in place.
    """
    status = _as_status(status)
    updated: List[Dict[str, Any]] = []
    found = False

    for condition in conditions or []:
        if condition.get("type") != condition_type:
            updated.append(dict(condition))
            continue
        found = True
        transition = condition.get("lastTransitionTime")
        if condition.get("status") != status or not transition:
            transition = now or now_iso()
        updated.append(
            {
                "type": condition_type,
                "status": status,
                "reason": reason,
                "message": message,
                "lastTransitionTime": transition,
            }
        )

    if not found:
        updated.append(
            {
                "type": condition_type,
                "status": status,
                "reason": reason,
                "message": message,
                "lastTransitionTime": now or now_iso(),
            }
        )
    return updated


def statefulset_ready(statefulset: Optional[Dict[str, Any]], replicas: int) -> bool:
    if not statefulset:
        return False
    status = statefulset.get("status", {}) or {}
    return int(status.get("readyReplicas", 0) or 0) >= replicas


def ready_condition(
    conditions: List[Dict[str, Any]],
    statefulset: Optional[Dict[str, Any]],
    replicas: int,
    topology_ready: bool,
    reason: str,
    message: str,
    now: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Derive Ready from StatefulSet readiness and the topology outcome."""
    if not statefulset_ready(statefulset, replicas):
        ready_replicas = 0
        if statefulset:
            ready_replicas = int(
                (statefulset.get("status", {}) or {}).get("readyReplicas", 0) or 0
            )
        return set_condition(
            conditions,
            CONDITION_READY,
            False,
            "StatefulSetNotReady",
            f"{ready_replicas}/{replicas} instances ready",
            now,
        )
    return set_condition(conditions, CONDITION_READY, topology_ready, reason, message, now)


def failed_condition(
    conditions: List[Dict[str, Any]], reason: str, message: str, now: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Ready=False carrying an error reason; used for every error class."""
    return set_condition(conditions, CONDITION_READY, False, reason, message, now)
