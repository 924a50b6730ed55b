"""
Invoice status transitions

All status changes go through InvoiceStatusManager so the lifecycle
uploaded -> processing -> {processed | failed} -> validated
is enforced in one place.
"""
from typing import Dict, FrozenSet

from core.models.schemas import InvoiceStatus
from core.utils.error_handler import InvalidStatusTransitionError
from core.utils.logging_config import get_logger

logger = get_logger(__name__)


ALLOWED_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    # callbacks can land before the trigger call has settled
    InvoiceStatus.UPLOADED: frozenset({
        InvoiceStatus.PROCESSING, InvoiceStatus.PROCESSED, InvoiceStatus.FAILED, InvoiceStatus.VALIDATED
    }),
    # validated directly from processing when the extraction is confident enough
    InvoiceStatus.PROCESSING: frozenset({
        InvoiceStatus.PROCESSED, InvoiceStatus.FAILED, InvoiceStatus.VALIDATED
    }),
    InvoiceStatus.PROCESSED: frozenset({InvoiceStatus.VALIDATED}),
    InvoiceStatus.VALIDATED: frozenset({InvoiceStatus.PROCESSED}),
    InvoiceStatus.FAILED: frozenset({
        InvoiceStatus.PROCESSING, InvoiceStatus.PROCESSED, InvoiceStatus.VALIDATED
    }),
}

# Statuses an extraction callback may still be applied to
CALLBACK_STATUSES: FrozenSet[InvoiceStatus] = frozenset({
    InvoiceStatus.UPLOADED, InvoiceStatus.PROCESSING, InvoiceStatus.FAILED
})


class InvoiceStatusManager:
    """
    Utility class for invoice status changes
    """

    @staticmethod
    def can_transition(current: str, target: str) -> bool:
        """
        Check whether an invoice may move from one status to another

        Args:
            current: Current status value
            target: Requested status value

        Returns:
            True if the transition is part of the lifecycle
        """
        try:
            current_status = InvoiceStatus(current)
            target_status = InvoiceStatus(target)
        except ValueError:
            return False
        return target_status in ALLOWED_TRANSITIONS.get(current_status, frozenset())

    @staticmethod
    def accepts_callback(current: str) -> bool:
        try:
            return InvoiceStatus(current) in CALLBACK_STATUSES
        except ValueError:
            return False

    @classmethod
    def transition(cls, invoice, target: str) -> None:
        """
        Move an invoice to a new status

        Args:
            invoice: Invoice ORM instance
            target: Requested status value

        Raises:
            InvalidStatusTransitionError: if the lifecycle forbids the move
        """
        target = InvoiceStatus(target).value
        if invoice.status == target:
            return
        if not cls.can_transition(invoice.status, target):
            raise InvalidStatusTransitionError(invoice.status, target)

        logger.debug(f"Invoice {invoice.id}: {invoice.status} -> {target}")
        invoice.status = target


status_manager = InvoiceStatusManager()
