"""Invoice persistence with per-invoice compare-and-transition."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import (
    DuplicateId,
    DuplicatePaymentReference,
    IllegalTransition,
    InvoiceNotFound,
    StaleState,
    StoreError,
)
from .formatting import parse_timestamp
from .models import Invoice, InvoiceState, LineItem, Party, is_valid_invoice_id

logger = logging.getLogger(__name__)

Mutator = Callable[[Invoice], Invoice]


class InvoiceStore(ABC):
    """Durable mapping from invoice id to invoice state.

    Invoices are never deleted. The only way to change an invoice is
    :meth:`compare_and_transition`, which is atomic per invoice.
    """

    name = "abstract"

    @abstractmethod
    def create(self, invoice: Invoice) -> str:
        ...

    @abstractmethod
    def get(self, invoice_id: str) -> Invoice:
        ...

    @abstractmethod
    def compare_and_transition(
        self,
        invoice_id: str,
        expected: InvoiceState,
        new_state: InvoiceState,
        mutator: Optional[Mutator] = None,
    ) -> Invoice:
        ...

    @abstractmethod
    def find_by_payment_reference(self, reference: str) -> Invoice:
        ...

    @abstractmethod
    def list_by_state(self, state: InvoiceState) -> List[Invoice]:
        ...


class InMemoryInvoiceStore(InvoiceStore):
    """Thread-safe store kept in process memory.

    ``_registry_lock`` only guards the invoice table, the per-invoice lock
    table and the payment-reference index, and is never held while a
    transition's mutator runs or while anything is written out.
    """

    name = "memory"

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._invoices: Dict[str, Invoice] = {}
        self._invoice_locks: Dict[str, threading.Lock] = {}
        self._payment_refs: Dict[str, str] = {}

    def _persist(self, invoice: Invoice) -> None:
        """Hook for durable stores; must commit before returning."""

    def create(self, invoice: Invoice) -> str:
        if not is_valid_invoice_id(invoice.id):
            raise StoreError(f"invalid invoice id {invoice.id!r}")
        with self._registry_lock:
            if invoice.id in self._invoices or invoice.id in self._invoice_locks:
                raise DuplicateId(f"invoice {invoice.id} already exists")
            lock = threading.Lock()
            self._invoice_locks[invoice.id] = lock

        with lock:
            try:
                self._persist(invoice)
            except Exception:
                with self._registry_lock:
                    self._invoice_locks.pop(invoice.id, None)
                raise
            with self._registry_lock:
                self._invoices[invoice.id] = invoice
        return invoice.id

    def get(self, invoice_id: str) -> Invoice:
        with self._registry_lock:
            invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"invoice {invoice_id!r} not found")
        return invoice

    def _lock_for(self, invoice_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._invoice_locks.get(invoice_id)
        if lock is None:
            raise InvoiceNotFound(f"invoice {invoice_id!r} not found")
        return lock

    def _reserve_reference(self, invoice_id: str, reference: str) -> bool:
        with self._registry_lock:
            owner = self._payment_refs.get(reference)
            if owner is not None and owner != invoice_id:
                raise DuplicatePaymentReference(
                    f"payment reference {reference} already belongs to invoice {owner}"
                )
            self._payment_refs[reference] = invoice_id
            return owner is None

    def _release_reference(self, reference: str) -> None:
        with self._registry_lock:
            self._payment_refs.pop(reference, None)

    def compare_and_transition(
        self,
        invoice_id: str,
        expected: InvoiceState,
        new_state: InvoiceState,
        mutator: Optional[Mutator] = None,
    ) -> Invoice:
        if not expected.can_transition_to(new_state):
            raise IllegalTransition(f"{expected.value} -> {new_state.value} is not allowed")

        with self._lock_for(invoice_id):
            current = self.get(invoice_id)
            if current.state is not expected:
                raise StaleState(invoice_id, expected.value, current.state.value)

            updated = mutator(current) if mutator is not None else current
            if updated.id != invoice_id:
                raise StoreError("a transition may not change the invoice id")
            updated = replace(updated, state=new_state)

            reserved = False
            reference = updated.payment_reference
            if reference and reference != current.payment_reference:
                reserved = self._reserve_reference(invoice_id, reference)
            try:
                self._persist(updated)
            except Exception:
                if reserved:
                    self._release_reference(reference)
                raise

            with self._registry_lock:
                self._invoices[invoice_id] = updated
            return updated

    def find_by_payment_reference(self, reference: str) -> Invoice:
        with self._registry_lock:
            invoice_id = self._payment_refs.get(reference)
            invoice = self._invoices.get(invoice_id) if invoice_id else None
        if invoice is None or invoice.payment_reference != reference:
            raise InvoiceNotFound(f"no invoice for payment reference {reference!r}")
        return invoice

    def list_by_state(self, state: InvoiceState) -> List[Invoice]:
        with self._registry_lock:
            invoices = [invoice for invoice in self._invoices.values() if invoice.state is state]
        return sorted(invoices, key=lambda invoice: (invoice.created_at, invoice.id))

    def _load(self, invoice: Invoice) -> None:
        self._invoices[invoice.id] = invoice
        self._invoice_locks[invoice.id] = threading.Lock()
        if invoice.payment_reference:
            self._payment_refs[invoice.payment_reference] = invoice.id


def invoice_to_record(invoice: Invoice) -> Dict[str, Any]:
    return invoice.to_dict()


def invoice_from_record(record: Dict[str, Any]) -> Invoice:
    try:
        return Invoice(
            id=record["id"],
            recipient_address=record["recipient_address"],
            line_items=tuple(
                LineItem(
                    description=item["description"],
                    quantity=float(item["quantity"]),
                    unit_price=float(item["unit_price"]),
                )
                for item in record["line_items"]
            ),
            issuer=Party(**record.get("issuer", {})),
            bill_to=Party(**record.get("bill_to", {})),
            currency=record["currency"],
            state=InvoiceState(record["state"]),
            payment_link=record.get("payment_link"),
            payment_reference=record.get("payment_reference"),
            failure_reason=record.get("failure_reason"),
            created_at=parse_timestamp(record["created_at"]),
            paid_at=parse_timestamp(record.get("paid_at")),
            delivered_at=parse_timestamp(record.get("delivered_at")),
            failed_at=parse_timestamp(record.get("failed_at")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise StoreError(f"malformed invoice record: {exc}") from exc


class JsonFileInvoiceStore(InMemoryInvoiceStore):
    """Keeps one JSON document per invoice in a directory.

    Every create and transition is written to a temporary file, fsynced and
    atomically renamed over ``<id>.json`` before the call returns, so the
    stored state always runs ahead of any delivery that depends on it.
    """

    name = "json"
    SUFFIX = ".json"

    def __init__(self, directory: Union[str, Path]) -> None:
        super().__init__()
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._load_all()

    def _path_for(self, invoice_id: str) -> Path:
        return self.directory / f"{invoice_id}{self.SUFFIX}"

    def _load_all(self) -> None:
        count = 0
        for path in sorted(self.directory.glob(f"*{self.SUFFIX}")):
            try:
                with path.open("r", encoding="utf-8") as f:
                    record = json.load(f)
            except (OSError, json.JSONDecodeError) as exc:
                raise StoreError(f"cannot read invoice file {path}: {exc}") from exc
            self._load(invoice_from_record(record))
            count += 1
        logger.info("Loaded %d invoices from %s", count, self.directory)

    def _persist(self, invoice: Invoice) -> None:
        payload = json.dumps(invoice_to_record(invoice), ensure_ascii=False, indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{invoice.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path_for(invoice.id))
        except OSError as exc:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise StoreError(f"cannot write invoice {invoice.id}: {exc}") from exc
