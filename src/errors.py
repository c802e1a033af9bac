#!/usr/bin/env python3
# src/errors.py
"""
Error taxonomy for topology reconciliation.

The reconciler maps each class to a Condition and a requeue decision:
- TransientError: retried with exponential back-off
- ConflictingObservationError: blocks topology progress until the observation clears
- ConfigurationError: persistent until the spec changes
- RecoveryHaltedError: persistent until an operator acts
"""

from typing import Optional


class TopologyError(Exception):
    """Base class for errors raised while deciding or applying topology actions."""

    reason = "ReconcileError"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class TransientError(TopologyError):
    """Platform API unavailable, instance command timed out, dependents not ready."""

    reason = "Transient"

    def __init__(
        self, message: str, reason: Optional[str] = None, delay: Optional[float] = None
    ):
        super().__init__(message, reason)
        self.delay = delay


class ConflictingObservationError(TopologyError):
    """Ambiguous membership or role data that must never be resolved by guessing."""

    reason = "TopologyConflict"


class ConfigurationError(TopologyError):
    """Invalid declared spec."""

    reason = "InvalidSpec"


class RecoveryHaltedError(TopologyError):
    """No instance carries a usable transaction marker."""

    reason = "RecoveryHalted"


class ReconcileAborted(Exception):
    """Process shutdown observed mid-pass; nothing further may be committed."""
