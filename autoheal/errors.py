"""
Error taxonomy for the auto-heal engine.

Per-record failures (``UnresolvableTarget``, ``DispatchWriteFailure``) are
caught by the engine, audited, and never abort a cycle.  ``StoreTimeout``
aborts the cycle that hit it.
"""


class AutoHealError(Exception):
    """Base class for all auto-heal errors."""


class PolicyDenied(AutoHealError):
    """The severity policy gate refused a record.

    An expected outcome, not a failure.  Only raised by manual operations
    that must explain a refusal to the caller.
    """


class UnresolvableTarget(AutoHealError):
    """No pod or deployment could be identified for a remediation."""

    def __init__(self, reason: str = "no target identified"):
        super().__init__(reason)
        self.reason = reason


class DispatchWriteFailure(AutoHealError):
    """Writing the command for a remediation failed."""


class StoreError(AutoHealError):
    """A durable store operation failed."""


class StoreTimeout(StoreError):
    """A durable store operation exceeded its time budget."""


class StoreUnavailable(StoreError):
    """The durable store is not connected."""


class CommandNotFound(AutoHealError):
    """No command exists with the given id."""


class ProblemNotFound(AutoHealError):
    """No problem record exists with the given id."""


class InvalidTransition(AutoHealError):
    """A command status change is not allowed from its current status."""

    def __init__(self, command_id: str, current: str, target: str):
        super().__init__(
            f"Command {command_id} cannot move from {current} to {target}"
        )
        self.command_id = command_id
        self.current = current
        self.target = target


class RetryExhausted(AutoHealError):
    """A failed command reached its retry cap and will not be re-armed."""


class ClusterBusy(AutoHealError):
    """Another cycle or manual fix holds the cluster lock."""
