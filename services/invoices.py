"""
Invoice settlement
Manual admin settlement and the reconciliation path share one idempotent compare-and-set
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from models import Invoice, InvoiceStatus
from services import events
from services.errors import InvalidTransition, OrderNotFound
from services.events import CoreEvent
from services.order_state import INVOICE_PAYABLE_STATES
from services.repositories import InvoiceRepository

logger = logging.getLogger(__name__)

@dataclass
class InvoiceSettlement:
    invoice: Invoice
    already_paid: bool = False
    events: List[CoreEvent] = field(default_factory=list)

class InvoiceService:

    def __init__(self, invoices: InvoiceRepository):
        self.invoices = invoices

    async def mark_invoice_paid(self, invoice_number: str, actor_id: str, payment_method: str = 'manual',
                                notes: Optional[str] = None) -> InvoiceSettlement:
        """
        Admin manual settlement of an invoice

        Re-marking an invoice that is already paid is a no-op and reports
        already_paid=True. A refunded invoice cannot be marked paid.

        Raises:
            OrderNotFound: No invoice with this number
            InvalidTransition: Invoice is refunded
        """
        invoice = await self.invoices.get_by_number(invoice_number)
        if invoice is None:
            raise OrderNotFound(f"Invoice {invoice_number} not found")

        if invoice.status is InvoiceStatus.PAID:
            logger.info(f"Invoice {invoice_number} already paid, nothing to do")
            return InvoiceSettlement(invoice=invoice, already_paid=True)

        if invoice.status not in INVOICE_PAYABLE_STATES:
            raise InvalidTransition('invoice', invoice.status.value, InvoiceStatus.PAID.value)

        if not await self.invoices.mark_paid(invoice.id, payment_method, notes=notes):
            # Lost the race to another settlement path
            current = await self.invoices.get(invoice.id)
            logger.info(f"🔒 Invoice {invoice_number} was settled concurrently")
            return InvoiceSettlement(invoice=current, already_paid=True)

        settled = await self.invoices.get(invoice.id)
        logger.info(f"✅ Invoice {invoice_number} marked paid by {actor_id} ({payment_method})")
        return InvoiceSettlement(invoice=settled, events=[
            events.notification('invoice_paid', invoice.id, invoice.customer_id,
                                invoice_number=invoice.invoice_number),
            events.audit('invoice_marked_paid', invoice.id, actor_id=actor_id,
                         invoice_number=invoice.invoice_number, payment_method=payment_method, notes=notes),
        ])

    async def settle_invoice_for_session(self, invoice_id: str, session_id: str) -> InvoiceSettlement:
        """Mark the invoice linked to a paid checkout session as paid"""
        invoice = await self.invoices.get(invoice_id)
        if invoice is None:
            raise OrderNotFound(f"Invoice {invoice_id} not found")

        if not await self.invoices.mark_paid(invoice_id, 'stripe', session_id=session_id):
            logger.info(f"Invoice {invoice.invoice_number} is {invoice.status.value}, not re-settling")
            return InvoiceSettlement(invoice=invoice, already_paid=invoice.status is InvoiceStatus.PAID)

        settled = await self.invoices.get(invoice_id)
        logger.info(f"✅ Invoice {invoice.invoice_number} settled by session {session_id}")
        return InvoiceSettlement(invoice=settled, events=[
            events.notification('invoice_paid', invoice.id, invoice.customer_id,
                                invoice_number=invoice.invoice_number),
            events.audit('invoice_settled', invoice.id, session_id=session_id),
        ])
