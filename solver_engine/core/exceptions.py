"""
Error taxonomy for the solver engine.

Validation errors are raised before an order exists. State machine errors
guard the per-order lifecycle. Collaborator errors (delivery, settlement) are
raised by implementations and turned into Failed transitions by the handlers.
"""

from __future__ import annotations

from typing import Optional


class SolverError(Exception):
    """Base class for all engine errors."""


class ConfigError(SolverError):
    """Invalid or missing configuration."""


class ValidationError(SolverError):
    """Intent is malformed, expired or otherwise unacceptable."""


class UnsupportedStandardError(ValidationError):
    """No protocol standard is registered for the intent's tag."""

    def __init__(self, standard: str) -> None:
        super().__init__(f"unsupported standard: {standard}")
        self.standard = standard


class OrderExistsError(SolverError):
    """An order with the same identifier is already stored."""

    def __init__(self, order_id: str) -> None:
        super().__init__(f"order already exists: {order_id}")
        self.order_id = order_id


class OrderNotFoundError(SolverError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"order not found: {order_id}")
        self.order_id = order_id


class InvalidTransitionError(SolverError):
    """
    Raised when a status transition is rejected.

    Either the persisted status does not match the caller's expectation
    (another handler advanced the order first) or the target status is not
    a legal successor.
    """

    def __init__(
        self,
        order_id: str,
        current: object,
        target: object,
        expected: Optional[object] = None,
    ) -> None:
        self.order_id = order_id
        self.current = current
        self.target = target
        self.expected = expected
        if expected is not None and expected != current:
            msg = (
                f"order {order_id}: expected status {_name(expected)} "
                f"but found {_name(current)}"
            )
        else:
            msg = f"order {order_id}: illegal transition {_name(current)} -> {_name(target)}"
        super().__init__(msg)


class DeliveryError(SolverError):
    """Transaction submission or confirmation failed."""


class SettlementError(SolverError):
    """Settlement collaborator could not produce a transaction or proof."""


def _name(status: object) -> str:
    return getattr(status, "name", str(status))
