from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol

from ordersync.assembler import build_invoice
from ordersync.config import SyncSettings
from ordersync.customers import CustomerDirectory, PlaceholderDirectory
from ordersync.errors import DuplicateCheckError, ReconciliationInvariantError
from ordersync.merit_client import existing_order_ids
from ordersync.models import Invoice, SourceOrder
from ordersync.sync_store import release_order_id, reserve_order_id, update_order_record
from ordersync.woo_client import OrderFilter

logger = logging.getLogger(__name__)

MAX_BULK_PAGES = 10
MAX_BULK_ORDERS = 1000
PAGE_SIZE = 100


class OrderSource(Protocol):
    def fetch_orders(self, order_filter: OrderFilter) -> list[Dict[str, Any]]: ...

    def fetch_order(self, order_id: int | str) -> Dict[str, Any]: ...


class AccountingGateway(Protocol):
    def submit_invoice(self, invoice: Invoice) -> Dict[str, Any]: ...

    def list_invoices(self, start: date, end: date, unpaid_only: bool = False) -> list[Dict[str, Any]]: ...

    def get_next_invoice_number(self) -> str: ...


class OrderLedger(Protocol):
    def reserve(self, order_id: str) -> bool: ...

    def record(self, order_id: str, fields: Dict[str, Any]) -> None: ...

    def release(self, order_id: str) -> None: ...


class FirestoreLedger:
    """Persistent claim per storefront order, so a restart cannot resubmit."""

    def reserve(self, order_id: str) -> bool:
        return reserve_order_id(order_id)

    def record(self, order_id: str, fields: Dict[str, Any]) -> None:
        update_order_record(order_id, fields)

    def release(self, order_id: str) -> None:
        release_order_id(order_id)


@dataclass
class SyncState:
    """Everything one sync context remembers between runs."""

    in_flight: bool = False
    auto_sync_running: bool = False
    stop_requested: bool = False
    start_order_id: Optional[int] = None
    current_order_id: Optional[int] = None
    last_sync_time: Optional[datetime] = None
    last_invoice_number: Optional[int] = None
    processed_order_ids: set[str] = field(default_factory=set)
    task: Optional["asyncio.Task[None]"] = None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "isRunning": self.auto_sync_running,
            "inFlight": self.in_flight,
            "startOrderId": self.start_order_id,
            "currentOrderId": self.current_order_id,
            "lastSyncTime": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "lastInvoiceNumber": self.last_invoice_number,
        }


@dataclass
class OrderOutcome:
    order_id: str
    status: str
    invoice_no: Optional[str] = None
    message: Optional[str] = None
    response: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status in {"created", "skipped"}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "order_id": self.order_id,
            "invoice_no": self.invoice_no,
            "message": self.message,
        }


@dataclass
class SyncResults:
    status: str = "completed"
    reason: Optional[str] = None
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    succeeded: int = 0
    invoices: list[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "total": self.total,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "succeeded": self.succeeded,
            "invoices": list(self.invoices),
        }


def _order_key(payload: Dict[str, Any]) -> int:
    try:
        return int(payload.get("id") or 0)
    except (TypeError, ValueError):
        return 0


class OrderSync:
    def __init__(
        self,
        source: OrderSource,
        accounting: AccountingGateway,
        settings: SyncSettings,
        state: Optional[SyncState] = None,
        ledger: Optional[OrderLedger] = None,
        directory: Optional[CustomerDirectory] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.source = source
        self.accounting = accounting
        self.settings = settings
        self.state = state or SyncState()
        self.ledger = ledger
        self.directory = directory or PlaceholderDirectory()
        self.clock = clock
        self._stop_event = asyncio.Event()

    # -----------------------------------------------------------------------
    # Single order
    # -----------------------------------------------------------------------

    async def existing_order_ids(self) -> set[str]:
        today = self.clock().date()
        start = today - timedelta(days=self.settings.duplicate_lookback_days)
        try:
            invoices = await asyncio.to_thread(self.accounting.list_invoices, start, today, False)
        except Exception as exc:
            logger.error("Could not list existing invoices: %s", exc)
            raise DuplicateCheckError(f"Could not list existing invoices: {exc}") from exc
        found = existing_order_ids(invoices)
        logger.info("Found %s existing invoices with order references", len(found))
        return found | self.state.processed_order_ids

    def _sequence_number(self, proposed: str) -> str:
        last = self.state.last_invoice_number
        if not proposed.isdigit():
            return str(last + 1) if last is not None else proposed
        number = int(proposed)
        if last is not None and number <= last:
            number = last + 1
        return str(number)

    async def _submit(self, order: SourceOrder) -> OrderOutcome:
        order_id = str(order.id)
        if self.ledger is not None:
            reserved = await asyncio.to_thread(self.ledger.reserve, order_id)
            if not reserved:
                logger.info("Order #%s already claimed in ledger. Skipping.", order_id)
                return OrderOutcome(order_id, "skipped", message="Order already synced")

        try:
            proposed = await asyncio.to_thread(self.accounting.get_next_invoice_number)
            invoice_no = self._sequence_number(proposed)
            invoice = build_invoice(
                order,
                invoice_no,
                self.settings.vat_tax_id,
                document_date=self.clock(),
                directory=self.directory,
            )
            response = await asyncio.to_thread(self.accounting.submit_invoice, invoice)
        except Exception:
            if self.ledger is not None:
                await asyncio.to_thread(self.ledger.release, order_id)
            raise

        assigned = str(response.get("InvoiceNo") or invoice_no)
        if invoice_no.isdigit():
            self.state.last_invoice_number = int(invoice_no)
        self.state.processed_order_ids.add(order_id)
        self.state.current_order_id = order.id
        if self.ledger is not None:
            await asyncio.to_thread(
                self.ledger.record,
                order_id,
                {"status": "posted", "invoice_no": assigned, "merit": response},
            )
        logger.info("Created Merit invoice %s for order #%s", assigned, order_id)
        return OrderOutcome(order_id, "created", invoice_no=assigned, response=response)

    async def create_invoice_for_order(self, payload: Dict[str, Any]) -> OrderOutcome:
        """Webhook and manual trigger path: one order, duplicate-checked."""
        order = SourceOrder.from_payload(payload)
        order_id = str(order.id)
        existing = await self.existing_order_ids()
        if order_id in existing:
            logger.info("Order #%s already has a Merit invoice. Skipping.", order_id)
            return OrderOutcome(order_id, "skipped", message="Invoice already exists")
        return await self._submit(order)

    async def create_invoice_for_order_id(self, order_id: int | str) -> OrderOutcome:
        payload = await asyncio.to_thread(self.source.fetch_order, order_id)
        return await self.create_invoice_for_order(payload)

    # -----------------------------------------------------------------------
    # Batches
    # -----------------------------------------------------------------------

    async def _run_batch(
        self, orders: list[Dict[str, Any]], existing: set[str], stoppable: bool = False
    ) -> SyncResults:
        results = SyncResults(total=len(orders))
        for payload in sorted(orders, key=_order_key):
            if stoppable and self.state.stop_requested:
                logger.info("Auto-sync stopped; leaving remaining orders for the next run")
                break

            order_id = str(payload.get("id"))
            if order_id in existing:
                logger.info("Order #%s already has a Merit invoice. Skipping.", order_id)
                results.skipped += 1
                continue

            status = str(payload.get("status") or "").lower()
            if status not in self.settings.order_statuses:
                logger.info("Order #%s has status %r, skipping", order_id, status)
                results.skipped += 1
                continue

            try:
                order = SourceOrder.from_payload(payload)
                outcome = await self._submit(order)
            except ReconciliationInvariantError as exc:
                logger.critical("Order #%s failed reconciliation: %s", order_id, exc, extra=exc.context())
                results.processed += 1
                results.failed += 1
            except Exception as exc:
                logger.exception("Failed to process order #%s: %s", order_id, exc)
                results.processed += 1
                results.failed += 1
            else:
                existing.add(order_id)
                if outcome.status != "created":
                    results.skipped += 1
                    continue
                results.processed += 1
                results.succeeded += 1
                results.invoices.append({"order_id": order_id, "invoice_no": outcome.invoice_no})

            await asyncio.sleep(self.settings.submit_delay_seconds)

        logger.info("Batch finished: %s", results.to_dict())
        return results

    async def _guarded(self, name: str, run: Callable[[], Any]) -> SyncResults:
        if self.state.in_flight:
            logger.warning("Sync already in progress, skipping %s request", name)
            return SyncResults(status="skipped", reason="Sync already in progress")

        self.state.in_flight = True
        try:
            return await run()
        except DuplicateCheckError as exc:
            logger.error("%s aborted: %s", name, exc)
            return SyncResults(status="error", reason=str(exc))
        finally:
            self.state.in_flight = False

    async def _fetch_all(self, order_filter: OrderFilter) -> list[Dict[str, Any]]:
        collected: list[Dict[str, Any]] = []
        page = 1
        while page <= MAX_BULK_PAGES and len(collected) < MAX_BULK_ORDERS:
            batch = await asyncio.to_thread(
                self.source.fetch_orders, order_filter.model_copy(update={"page": page})
            )
            if not batch:
                break
            collected.extend(batch)
            if len(batch) < order_filter.per_page:
                break
            page += 1
        return collected

    async def sync_orders(self, from_date: datetime, to_date: datetime) -> SyncResults:
        """Invoice every qualifying order created in ``[from_date, to_date]``."""

        async def run() -> SyncResults:
            logger.info("Starting order synchronization from %s to %s", from_date, to_date)
            started = self.clock()
            try:
                orders = await self._fetch_all(
                    OrderFilter(after=from_date, before=to_date, per_page=PAGE_SIZE, order="asc")
                )
            except Exception as exc:
                logger.exception("Order fetch failed: %s", exc)
                return SyncResults(status="error", reason=f"Order fetch failed: {exc}")
            logger.info("Found %s orders to process", len(orders))
            existing = await self.existing_order_ids()
            results = await self._run_batch(orders, existing)
            self.state.last_sync_time = started
            return results

        return await self._guarded("sync", run)

    async def sync_recent(self) -> SyncResults:
        to_date = self.clock()
        from_date = to_date - timedelta(hours=self.settings.lookback_hours)
        return await self.sync_orders(from_date, to_date)

    async def sync_from(self, start_order_id: int) -> SyncResults:
        """Catch up on every non-cancelled order with an id >= start_order_id."""

        async def run() -> SyncResults:
            logger.info("Starting bulk sync from order ID %s", start_order_id)
            started = self.clock()
            existing = await self.existing_order_ids()

            collected: list[Dict[str, Any]] = []
            page = 1
            while page <= MAX_BULK_PAGES and len(collected) < MAX_BULK_ORDERS:
                try:
                    batch = await asyncio.to_thread(
                        self.source.fetch_orders,
                        OrderFilter(page=page, per_page=PAGE_SIZE, order="desc"),
                    )
                except Exception as exc:
                    logger.error("Error fetching orders (page %s): %s", page, exc)
                    break
                if not batch:
                    break
                matching = [
                    o for o in batch if _order_key(o) >= start_order_id and o.get("status") != "cancelled"
                ]
                collected.extend(matching)
                # newest first: once a page dips below the start id nothing older qualifies
                if len(batch) < PAGE_SIZE or len(matching) < len(batch):
                    break
                page += 1

            logger.info("Collected %s orders from #%s", len(collected), start_order_id)
            results = await self._run_batch(collected, existing, stoppable=True)
            self.state.last_sync_time = started
            return results

        return await self._guarded("bulk sync", run)

    async def sync_new_orders(self) -> SyncResults:
        """Invoice orders created since the last completed run."""

        async def run() -> SyncResults:
            since = self.state.last_sync_time or (self.clock() - timedelta(hours=self.settings.lookback_hours))
            started = self.clock()
            existing = await self.existing_order_ids()
            try:
                orders = await self._fetch_all(OrderFilter(after=since, per_page=PAGE_SIZE, order="asc"))
            except Exception as exc:
                logger.exception("Order fetch failed: %s", exc)
                return SyncResults(status="error", reason=f"Order fetch failed: {exc}")
            orders = [o for o in orders if o.get("status") != "cancelled"]
            if not orders:
                logger.info("No new orders since %s", since.isoformat())
            results = await self._run_batch(orders, existing, stoppable=True)
            self.state.last_sync_time = started
            return results

        return await self._guarded("periodic sync", run)

    # -----------------------------------------------------------------------
    # Auto-sync
    # -----------------------------------------------------------------------

    def start_auto_sync(self, start_order_id: int) -> bool:
        """Schedule bulk catch-up plus polling; returns without waiting for either."""
        if self.state.auto_sync_running:
            return False
        self.state.auto_sync_running = True
        self.state.stop_requested = False
        self.state.start_order_id = start_order_id
        self.state.current_order_id = start_order_id
        # one event per run; stop only ever sets the current run's event
        self._stop_event = asyncio.Event()
        self.state.task = asyncio.get_running_loop().create_task(
            self._auto_sync_loop(start_order_id, self._stop_event)
        )
        return True

    def stop_auto_sync(self) -> bool:
        if not self.state.auto_sync_running:
            return False
        self.state.auto_sync_running = False
        self.state.stop_requested = True
        self._stop_event.set()
        return True

    async def _auto_sync_loop(self, start_order_id: int, stop_event: asyncio.Event) -> None:
        try:
            await self.sync_from(start_order_id)
        except Exception as exc:
            logger.exception("Error in bulk processing: %s", exc)

        interval = self.settings.poll_interval_seconds
        logger.info("Checking for new orders every %s seconds", interval)
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if stop_event.is_set():
                break
            try:
                await self.sync_new_orders()
            except Exception as exc:
                logger.exception("Error in periodic sync: %s", exc)
        logger.info("Auto-sync loop exited")
