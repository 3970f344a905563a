"""
Order Provisioning Orchestrator
===============================

Turns a paid Stripe checkout session into an eSIM order outcome.

Flow (one short-lived call, no state kept between calls):
1. Verify the checkout session is paid (Stripe)
2. Resolve the first purchased SKU to a carrier package
3. Buy the profile from the carrier under a deadline
4. Classify the carrier answer
5. Best-effort follow-up query for a fuller record

The frontend polls this with the same session id until it sees completed or
error. Every attempt reuses the session id as externalOrderNo, so repeated
purchases are de-duplicated by the carrier rather than by a lock here.
"""

import logging
import time
from typing import Callable, Optional, Tuple

from .catalog import PackageTable
from .carrier.base import CarrierError, InfrastructureNotConfigured, ProvisioningRequest
from .classifier import ProvisioningOutcome, ProvisioningStatus, classify, merge_query
from .config import DeadlineConfig, MIN_CARRIER_DEADLINE
from .payments import CheckoutSession, PaymentVerifier

logger = logging.getLogger(__name__)


class OrderOrchestrator:
    """
    Payment check, package lookup, carrier purchase and classification.

    Payment errors (InvalidSessionReference, PaymentNotCompleted,
    PaymentProviderUnavailable) propagate to the caller. Carrier errors never
    do: they are folded into the returned outcome's status.
    """

    def __init__(
        self,
        verifier: PaymentVerifier,
        carrier,
        package_table: PackageTable,
        deadlines: Optional[DeadlineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            verifier: Confirms the checkout session is paid
            carrier: EsimAccessClient (or anything with purchase/query_order/is_configured)
            package_table: SKU -> carrier package lookup
            deadlines: Time budget for one call
            clock: Monotonic clock, injectable for tests
        """
        self.verifier = verifier
        self.carrier = carrier
        self.package_table = package_table
        self.deadlines = deadlines or DeadlineConfig()
        self.clock = clock

    async def verify_session(self, session_id: str) -> ProvisioningOutcome:
        """Verify payment, then provision. Returns only the outcome."""
        _, outcome = await self.verify_and_provision(session_id)
        return outcome

    async def verify_and_provision(self, session_id: str) -> Tuple[CheckoutSession, ProvisioningOutcome]:
        """Same as verify_session, also handing back the verified session (cart lines for the ledger)."""
        started = self.clock()

        session = await self.verifier.verify(session_id)
        return session, await self.provision(session, started)

    async def provision(self, session: CheckoutSession, started: Optional[float] = None) -> ProvisioningOutcome:
        """Buy and classify for an already verified session."""
        if started is None:
            started = self.clock()

        sku_ids = session.sku_ids
        sku_id = sku_ids[0] if sku_ids else None
        package = self.package_table.resolve(sku_id)
        log_extra = {"session_id": session.id, "sku": sku_id}

        logger.info(
            f"Provisioning session {session.id}: sku={sku_id} -> "
            f"{package.location_code}/{package.package_code}",
            extra=log_extra,
        )
        if len(sku_ids) > 1:
            logger.warning(
                f"Session {session.id} has {len(sku_ids)} SKUs; only the first is provisioned automatically",
                extra=log_extra,
            )

        context = {
            "order_id": session.id,
            "email": session.customer_email,
            "total": session.amount_paid,
            "currency": session.currency,
        }

        if not self.carrier.is_configured:
            logger.warning("Carrier credentials missing, deferring to manual fulfillment", extra=log_extra)
            return classify(error=InfrastructureNotConfigured("Carrier AppKey/AppSecret are not configured"), **context)

        request = ProvisioningRequest(
            location_code=package.location_code,
            package_code=package.package_code,
            external_order_no=session.id,
            email=session.customer_email,
        )

        try:
            response = await self.carrier.purchase(request, deadline=self._purchase_deadline(started))
        except CarrierError as e:
            logger.warning(f"Carrier purchase did not complete: {e}", extra=log_extra)
            outcome = classify(error=e, **context)
        else:
            outcome = classify(response=response, **context)
            if response.is_success and self._needs_query(outcome):
                outcome = await self._enrich(outcome, started)

        logger.info(
            f"Session {session.id} outcome: {outcome.status.value}",
            extra={**log_extra, "order_no": outcome.order_no, "status": outcome.status.value},
        )
        return outcome

    def _needs_query(self, outcome: ProvisioningOutcome) -> bool:
        """A follow-up query is worth it while the record is still missing pieces."""
        if not self.deadlines.query_enabled or not outcome.order_no:
            return False
        return outcome.status != ProvisioningStatus.COMPLETED or not outcome.iccid

    def _purchase_deadline(self, started: float) -> float:
        """Configured carrier deadline, shrunk by time already spent verifying payment."""
        remaining = self.deadlines.usable_budget - (self.clock() - started)
        return max(MIN_CARRIER_DEADLINE, min(self.deadlines.effective_carrier_deadline, remaining))

    async def _enrich(self, outcome: ProvisioningOutcome, started: float) -> ProvisioningOutcome:
        """Follow-up order query within whatever budget is left. Never downgrades."""
        remaining = self.deadlines.usable_budget - (self.clock() - started)
        if remaining < MIN_CARRIER_DEADLINE:
            logger.debug(f"Skipping order query for {outcome.order_no}: budget spent")
            return outcome

        try:
            response = await self.carrier.query_order(outcome.order_no, deadline=remaining)
        except CarrierError as e:
            logger.info(
                f"Order query for {outcome.order_no} failed, keeping purchase result: {e}",
                extra={"session_id": outcome.id, "order_no": outcome.order_no},
            )
            return outcome

        enriched = merge_query(outcome, response)
        if outcome.status == ProvisioningStatus.PENDING and enriched.status == ProvisioningStatus.COMPLETED:
            logger.info(
                f"Order query delivered activation code for {outcome.order_no}",
                extra={"session_id": outcome.id, "order_no": outcome.order_no},
            )
        return enriched
