#!/usr/bin/env python3
"""
Order Status Poller
===================

Client side of the confirmation screen: keeps asking the storefront about a
checkout session until the order reaches a terminal status (completed or
error) or the attempt budget runs out.

Every poll re-runs the server-side purchase with the same session id, so the
interval and attempt count bound how hard the carrier is hit.

Usage:
    python -m storefront.poller cs_test_123 --base-url https://landed.example
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .classifier import ProvisioningStatus
from .config import PollConfig, StorefrontConfig
from .payments import InvalidSessionReference, PaymentError, PaymentNotCompleted

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {status.value for status in ProvisioningStatus if status.is_terminal}


@dataclass
class PollPolicy:
    interval_seconds: float = 8.0
    max_attempts: int = 20

    def __post_init__(self):
        if self.interval_seconds < 0:
            raise ValueError("Poll interval cannot be negative")
        if self.max_attempts < 1:
            raise ValueError("At least one poll attempt is required")

    @classmethod
    def from_config(cls, config: PollConfig) -> "PollPolicy":
        return cls(interval_seconds=config.interval_seconds, max_attempts=config.max_attempts)


@dataclass
class PollResult:
    """Last outcome seen. outcome is None when every attempt failed in transit."""
    outcome: Optional[Dict[str, Any]]
    attempts: int
    gave_up: bool

    @property
    def status(self) -> Optional[str]:
        return self.outcome.get("status") if self.outcome else None


class OrderStatusPoller:
    """
    Repeats fetch(session_id) until a terminal status appears.

    Network errors and unexpected HTTP statuses count as a spent attempt.
    PaymentNotCompleted and InvalidSessionReference are raised straight
    through: polling again cannot change either answer.
    """

    def __init__(
        self,
        fetch: Callable[[str], Awaitable[Dict[str, Any]]],
        policy: Optional[PollPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetch = fetch
        self.policy = policy or PollPolicy()
        self.sleep = sleep

    async def poll(self, session_id: str) -> PollResult:
        outcome: Optional[Dict[str, Any]] = None

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                outcome = await self.fetch(session_id)
            except httpx.HTTPError as e:
                logger.warning(
                    f"Poll {attempt}/{self.policy.max_attempts} for {session_id} failed: {e}",
                    extra={"session_id": session_id},
                )
            else:
                status = outcome.get("status")
                logger.info(
                    f"Poll {attempt}/{self.policy.max_attempts} for {session_id}: {status}",
                    extra={"session_id": session_id, "status": status},
                )
                if status in TERMINAL_STATUSES:
                    return PollResult(outcome=outcome, attempts=attempt, gave_up=False)

            if attempt < self.policy.max_attempts:
                await self.sleep(self.policy.interval_seconds)

        logger.warning(
            f"Giving up on {session_id} after {self.policy.max_attempts} attempts",
            extra={"session_id": session_id},
        )
        return PollResult(outcome=outcome, attempts=self.policy.max_attempts, gave_up=True)


class StorefrontClient:
    """Thin httpx client for the storefront order endpoints."""

    def __init__(self, base_url: str, http_client: Optional[httpx.AsyncClient] = None):
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=30.0)

    async def __aenter__(self) -> "StorefrontClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def verify_session(self, session_id: str) -> Dict[str, Any]:
        response = await self.client.get("/orders/verify-session", params={"sessionId": session_id})
        if response.status_code == 400:
            error = response.json().get("error")
            if error == PaymentNotCompleted.MESSAGE:
                raise PaymentNotCompleted(session_id, None)
            if error == InvalidSessionReference.MESSAGE:
                raise InvalidSessionReference(error)
        response.raise_for_status()
        return response.json()


async def _run(args: argparse.Namespace) -> int:
    policy = PollPolicy(interval_seconds=args.interval, max_attempts=args.max_attempts)

    async with StorefrontClient(args.base_url) as client:
        poller = OrderStatusPoller(client.verify_session, policy)
        try:
            result = await poller.poll(args.session_id)
        except PaymentError as e:
            print(json.dumps({"error": e.message, "details": e.details}, indent=2))
            return 1

    print(json.dumps({
        "attempts": result.attempts,
        "gaveUp": result.gave_up,
        "outcome": result.outcome,
    }, indent=2))

    if result.gave_up:
        return 2
    return 0 if result.status == ProvisioningStatus.COMPLETED.value else 1


def main():
    defaults = StorefrontConfig.from_env().poll
    parser = argparse.ArgumentParser(description="Poll a storefront order until it settles")
    parser.add_argument("session_id", help="Stripe checkout session id")
    parser.add_argument("--base-url", default="http://localhost:8001", help="Storefront API base URL")
    parser.add_argument("--interval", type=float, default=defaults.interval_seconds, help="Seconds between polls")
    parser.add_argument("--max-attempts", type=int, default=defaults.max_attempts, help="Attempts before giving up")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
