"""
Storefront Order Ledger
=======================

Denormalized copies of order outcomes, keyed by checkout session id, used to
resume the confirmation screen and to back the account dashboard.

The ledger is never authoritative: Stripe owns payment state and the carrier
owns the eSIM. Entries are upserted every time the frontend polls.

Two backends:
- InMemoryOrderRepository: process-local (serverless instances, tests)
- JsonFileOrderRepository: single JSON document on disk

In production, this should be replaced with a real database.
"""

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .classifier import ProvisioningOutcome, ProvisioningStatus, is_placeholder

logger = logging.getLogger(__name__)


# Anyone holding these can install the eSIM
INSTALL_SECRETS = ("activationCode", "qrCode")


def _normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class OrderLedgerEntry:
    """One order as the dashboard sees it."""
    id: str
    email: str
    status: str
    timestamp: str = field(default_factory=_utcnow)
    items: List[Dict[str, Any]] = field(default_factory=list)
    iccid: Optional[str] = None
    activation_code: Optional[str] = None
    order_no: Optional[str] = None
    message: Optional[str] = None
    total: Optional[float] = None
    currency: Optional[str] = None
    qr_code: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome: ProvisioningOutcome, items: Optional[List[Dict[str, Any]]] = None) -> "OrderLedgerEntry":
        return cls(
            id=outcome.id,
            email=_normalize_email(outcome.email),
            status=outcome.status.value,
            items=list(items or []),
            iccid=outcome.iccid,
            activation_code=outcome.activation_code,
            order_no=outcome.order_no,
            message=outcome.message,
            total=outcome.total,
            currency=outcome.currency,
            qr_code=outcome.qr_code,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase shape the dashboard reads."""
        return {
            "id": self.id,
            "email": self.email,
            "status": self.status,
            "timestamp": self.timestamp,
            "items": self.items,
            "iccid": self.iccid,
            "activationCode": self.activation_code,
            "orderNo": self.order_no,
            "message": self.message,
            "total": self.total,
            "currency": self.currency,
            "qrCode": self.qr_code,
        }

    def to_summary(self) -> Dict[str, Any]:
        """Dashboard listing: the entry without the codes that install the profile."""
        data = self.to_dict()
        for key in INSTALL_SECRETS:
            data.pop(key)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderLedgerEntry":
        return cls(
            id=data["id"],
            email=_normalize_email(data.get("email")),
            status=data.get("status", ProvisioningStatus.PENDING.value),
            timestamp=data.get("timestamp") or _utcnow(),
            items=list(data.get("items") or []),
            iccid=data.get("iccid"),
            activation_code=data.get("activationCode"),
            order_no=data.get("orderNo"),
            message=data.get("message"),
            total=data.get("total"),
            currency=data.get("currency"),
            qr_code=data.get("qrCode"),
        )


def _merge(existing: Optional[OrderLedgerEntry], incoming: OrderLedgerEntry) -> OrderLedgerEntry:
    """
    Combine a stored entry with a fresh one.

    The first timestamp and any earlier cart lines are kept. A completed
    entry is not replaced by a later non-terminal poll result.
    """
    if existing is None:
        return incoming

    if existing.status == ProvisioningStatus.COMPLETED.value and incoming.status != existing.status:
        return existing

    incoming.timestamp = existing.timestamp
    if not incoming.items:
        incoming.items = existing.items
    incoming.iccid = incoming.iccid or existing.iccid
    incoming.order_no = incoming.order_no or existing.order_no
    return incoming


class OrderRepository(ABC):
    """Storage-agnostic ledger interface."""

    @abstractmethod
    def _load(self, order_id: str) -> Optional[OrderLedgerEntry]:
        pass

    @abstractmethod
    def _store(self, entry: OrderLedgerEntry) -> None:
        pass

    @abstractmethod
    def _all(self) -> List[OrderLedgerEntry]:
        pass

    @abstractmethod
    def _locked(self):
        """Context manager serializing read-modify-write cycles."""
        pass

    def save(self, outcome: ProvisioningOutcome, items: Optional[List[Dict[str, Any]]] = None) -> OrderLedgerEntry:
        """Upsert the ledger entry for an outcome."""
        with self._locked():
            entry = _merge(self._load(outcome.id), OrderLedgerEntry.from_outcome(outcome, items))
            self._store(entry)
        logger.debug(f"Saved order {entry.id} status={entry.status}", extra={"session_id": entry.id})
        return entry

    def get(self, order_id: str) -> Optional[OrderLedgerEntry]:
        with self._locked():
            return self._load(order_id)

    def find_by_email(self, email: str) -> List[OrderLedgerEntry]:
        """All entries for an email, newest first."""
        wanted = _normalize_email(email)
        if not wanted:
            return []
        with self._locked():
            entries = [entry for entry in self._all() if entry.email == wanted]
        return sorted(entries, key=lambda entry: entry.timestamp, reverse=True)

    def update_from_carrier(
        self,
        external_order_no: str,
        iccid: Optional[str] = None,
        activation_code: Optional[str] = None,
        order_no: Optional[str] = None,
    ) -> Optional[OrderLedgerEntry]:
        """
        Apply a carrier delivery notification to an existing entry.

        Returns None when the order is unknown to this ledger.
        """
        with self._locked():
            entry = self._load(external_order_no)
            if entry is None:
                return None

            entry.iccid = iccid or entry.iccid
            entry.order_no = order_no or entry.order_no
            if not is_placeholder(activation_code):
                entry.activation_code = activation_code
                entry.status = ProvisioningStatus.COMPLETED.value
                entry.message = None
                entry.qr_code = ProvisioningOutcome(
                    id=entry.id, email=entry.email, status=ProvisioningStatus.COMPLETED,
                    activation_code=activation_code,
                ).qr_code
            self._store(entry)

        logger.info(
            f"Carrier notification applied to order {external_order_no}",
            extra={"session_id": external_order_no, "order_no": order_no},
        )
        return entry


class InMemoryOrderRepository(OrderRepository):
    """Thread-safe in-memory ledger."""

    def __init__(self):
        self._entries: Dict[str, OrderLedgerEntry] = {}
        self._lock = threading.Lock()

    def _locked(self):
        return self._lock

    def _load(self, order_id: str) -> Optional[OrderLedgerEntry]:
        entry = self._entries.get(order_id)
        return OrderLedgerEntry.from_dict(entry.to_dict()) if entry else None

    def _store(self, entry: OrderLedgerEntry) -> None:
        self._entries[entry.id] = OrderLedgerEntry.from_dict(entry.to_dict())

    def _all(self) -> List[OrderLedgerEntry]:
        return [OrderLedgerEntry.from_dict(entry.to_dict()) for entry in self._entries.values()]


class JsonFileOrderRepository(OrderRepository):
    """
    Ledger persisted as one JSON document: {"orders": {session_id: entry}}.

    Writes go to a temp file in the same directory and are moved into place
    with os.replace, so readers never see a half-written file.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)

    def _locked(self):
        return self._lock

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path) as f:
            data = json.load(f)
        return data.get("orders", {})

    def _write(self, orders: Dict[str, Dict[str, Any]]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".orders-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump({"orders": orders}, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load(self, order_id: str) -> Optional[OrderLedgerEntry]:
        data = self._read().get(order_id)
        return OrderLedgerEntry.from_dict(data) if data else None

    def _store(self, entry: OrderLedgerEntry) -> None:
        orders = self._read()
        orders[entry.id] = entry.to_dict()
        self._write(orders)

    def _all(self) -> List[OrderLedgerEntry]:
        return [OrderLedgerEntry.from_dict(data) for data in self._read().values()]


def create_repository(path: str = "") -> OrderRepository:
    """JSON file ledger when a path is configured, otherwise in-memory."""
    if path:
        logger.info(f"Order ledger: JSON file at {path}")
        return JsonFileOrderRepository(path)
    logger.info("Order ledger: in-memory")
    return InMemoryOrderRepository()
