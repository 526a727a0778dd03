"""
Ledger Sync (Google Sheets)

Mirrors orders into a spreadsheet the kitchen and delivery staff work from.
The sheet has no relationship to the database: rows are keyed by order code
(column A) and every write is an upsert by that key, never by row position.

Buckets map to sheets:
    new       -> neworders
    delivered -> delivered
    cancelled -> cancelled
    selfpick  -> selfpick

Columns A:K: order code, time, phone, name, items, total, method,
payment label, status label, address (or "Self Pickup"), partner.

The ledger is a best-effort mirror. Failures raise LedgerSyncFailure, which
the effect dispatcher logs; the order transition is never rolled back.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

import httpx

from orderflow.core.config import settings
from orderflow.core.exceptions import LedgerSyncFailure
from orderflow.core.utils import business_local_time, format_amount
from orderflow.models.order import OrderStatus, PaymentStatus, ServiceType
from orderflow.services.lifecycle import (
    BUCKET_CANCELLED,
    BUCKET_DELIVERED,
    BUCKET_NEW,
    BUCKET_SELFPICK,
    bucket_for,
)

logger = logging.getLogger(__name__)

BUCKETS = (BUCKET_NEW, BUCKET_DELIVERED, BUCKET_CANCELLED, BUCKET_SELFPICK)

SHEET_NAMES = {
    BUCKET_NEW: "neworders",
    BUCKET_DELIVERED: "delivered",
    BUCKET_CANCELLED: "cancelled",
    BUCKET_SELFPICK: "selfpick",
}

HEADER = [
    "Order ID", "Time", "Phone", "Name", "Items", "Total",
    "Method", "Payment", "Status", "Address", "Delivery Partner",
]

COL_PAYMENT = 7
COL_STATUS = 8
COL_ADDRESS = 9
COL_PARTNER = 10

# Row background colours (RGB 0-1), presentation only
STATUS_COLORS = {
    "pending": {"red": 1, "green": 0.95, "blue": 0.8},
    "confirmed": {"red": 0.85, "green": 0.92, "blue": 1},
    "preparing": {"red": 1, "green": 0.9, "blue": 0.8},
    "ready": {"red": 0.9, "green": 0.85, "blue": 1},
    "out_for_delivery": {"red": 0.85, "green": 0.88, "blue": 1},
    "delivered": {"red": 0.85, "green": 1, "blue": 0.85},
    "cancelled": {"red": 1, "green": 0.85, "blue": 0.85},
    "refunded": {"red": 0.95, "green": 0.9, "blue": 0.95},
    "refund_failed": {"red": 1, "green": 0.7, "blue": 0.7},
    "selfpick": {"red": 0.9, "green": 0.95, "blue": 1},
    "picked_up": {"red": 0.8, "green": 1, "blue": 0.9},
}

STATUS_LABELS = {
    "pending": "Pending",
    "confirmed": "Confirmed",
    "preparing": "Preparing",
    "ready": "Ready",
    "out_for_delivery": "On the Way",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
    "refunded": "Refunded",
    "refund_failed": "Refund Failed",
    "selfpick": "Self Pickup",
    "ready_for_pickup": "Ready for Pickup",
    "picked_up": "Picked Up",
}

PAYMENT_LABELS = {
    "pending": "Pending",
    "paid": "Paid",
    "failed": "Failed",
    "cancelled": "Cancelled",
    "refund_processing": "Refund Processing",
    "refunded": "Refunded",
    "refund_failed": "Refund Failed",
}


# =============================================================================
# ROW BUILDING
# =============================================================================

def display_status(order) -> str:
    """Status key used for label and colour; pickup orders read as picked up / ready for pickup."""
    if order.service_type == ServiceType.PICKUP:
        if order.status == OrderStatus.DELIVERED:
            return "picked_up"
        if order.status == OrderStatus.READY:
            return "ready_for_pickup"
    return order.status.value


def payment_label(order) -> str:
    if (
        order.service_type == ServiceType.PICKUP
        and order.payment_status == PaymentStatus.PAID
        and order.actual_payment_method is not None
    ):
        return "Paid (Cash)" if order.actual_payment_method.value == "cash" else "Paid (UPI)"
    return PAYMENT_LABELS.get(order.payment_status.value, order.payment_status.value)


def build_row(order) -> List[str]:
    items = ", ".join(
        f"{item.name} x{item.quantity} ({format_amount(item.line_total)})" for item in order.items
    )
    if order.service_type == ServiceType.PICKUP:
        address = "Self Pickup"
    else:
        address = order.delivery_address or order.customer_address or ""
    created = business_local_time(order.created_at)
    return [
        order.order_code,
        created.strftime("%d/%m/%Y %I:%M %p"),
        order.customer_phone or "",
        order.customer_name or "",
        items,
        format_amount(order.total_amount),
        order.payment_method.value.upper(),
        payment_label(order),
        STATUS_LABELS.get(display_status(order), order.status.value),
        address,
        order.partner_name or "",
    ]


def refresh_labels(row: List[str], order) -> List[str]:
    row = list(row) + [""] * (len(HEADER) - len(row))
    row[COL_PAYMENT] = payment_label(order)
    row[COL_STATUS] = STATUS_LABELS.get(display_status(order), order.status.value)
    if order.partner_name:
        row[COL_PARTNER] = order.partner_name
    return row


def row_color_key(order, bucket: str) -> str:
    if order.service_type == ServiceType.PICKUP and bucket in (BUCKET_NEW, BUCKET_SELFPICK):
        return "picked_up" if order.status == OrderStatus.DELIVERED else "selfpick"
    return order.status.value


# =============================================================================
# LEDGER BACKENDS
# =============================================================================

@dataclass
class LedgerRow:
    order_code: str
    values: List[str]
    row_index: int = -1  # 0-based sheet row, -1 when not backed by a sheet position


class Ledger(Protocol):
    async def upsert_row(self, bucket: str, order_code: str, row: List[str]) -> bool: ...

    async def find_row(self, bucket: str, order_code: str) -> Optional[LedgerRow]: ...

    async def move_row(self, from_bucket: str, to_bucket: str, order_code: str) -> bool: ...

    async def delete_row(self, bucket: str, order_code: str) -> bool: ...

    async def set_row_color(self, bucket: str, order_code: str, color_key: str) -> bool: ...


class InMemoryLedger:
    """Ledger kept in process memory. Used in development and tests."""

    def __init__(self):
        self.buckets: Dict[str, "OrderedDict[str, List[str]]"] = {b: OrderedDict() for b in BUCKETS}
        self.colors: Dict[str, Dict[str, str]] = {b: {} for b in BUCKETS}

    def rows(self, bucket: str) -> List[List[str]]:
        return [list(r) for r in self.buckets[bucket].values()]

    def codes(self, bucket: str) -> List[str]:
        return list(self.buckets[bucket].keys())

    async def upsert_row(self, bucket: str, order_code: str, row: List[str]) -> bool:
        self.buckets[bucket][order_code] = list(row)
        return True

    async def find_row(self, bucket: str, order_code: str) -> Optional[LedgerRow]:
        values = self.buckets[bucket].get(order_code)
        if values is None:
            return None
        index = list(self.buckets[bucket]).index(order_code)
        return LedgerRow(order_code=order_code, values=list(values), row_index=index + 1)

    async def move_row(self, from_bucket: str, to_bucket: str, order_code: str) -> bool:
        values = self.buckets[from_bucket].get(order_code)
        if values is None:
            return False
        if order_code not in self.buckets[to_bucket]:
            self.buckets[to_bucket][order_code] = list(values)
        del self.buckets[from_bucket][order_code]
        self.colors[from_bucket].pop(order_code, None)
        return True

    async def delete_row(self, bucket: str, order_code: str) -> bool:
        self.colors[bucket].pop(order_code, None)
        return self.buckets[bucket].pop(order_code, None) is not None

    async def set_row_color(self, bucket: str, order_code: str, color_key: str) -> bool:
        if order_code not in self.buckets[bucket]:
            return False
        self.colors[bucket][order_code] = color_key
        return True


class SheetsLedger:
    """Google Sheets v4 REST backend over httpx."""

    def __init__(
        self,
        spreadsheet_id: Optional[str] = None,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.spreadsheet_id = spreadsheet_id or settings.GOOGLE_SHEET_ID
        self.access_token = access_token if access_token is not None else settings.GOOGLE_SHEETS_ACCESS_TOKEN
        self.base_url = (base_url or settings.GOOGLE_SHEETS_API_BASE).rstrip("/")
        self._http_client = http_client
        self._sheet_ids: Dict[str, int] = {}

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=30.0,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._http_client

    async def close(self):
        """Explicit cleanup method."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    @property
    def _spreadsheet_url(self) -> str:
        return f"{self.base_url}/spreadsheets/{self.spreadsheet_id}"

    async def _request(self, method: str, url: str, bucket: Optional[str] = None, **kwargs) -> dict:
        http = await self._get_http_client()
        try:
            resp = await http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise LedgerSyncFailure(f"Sheets request failed: {e}", bucket=bucket) from e
        if resp.status_code >= 400:
            raise LedgerSyncFailure(
                f"Sheets API {resp.status_code}: {resp.text[:200]}",
                bucket=bucket,
                details={"status_code": resp.status_code},
            )
        return resp.json() if resp.content else {}

    async def _sheet_id(self, bucket: str) -> int:
        title = SHEET_NAMES[bucket]
        if title not in self._sheet_ids:
            data = await self._request("GET", self._spreadsheet_url, bucket=bucket,
                                       params={"fields": "sheets.properties"})
            for sheet in data.get("sheets", []):
                props = sheet.get("properties", {})
                self._sheet_ids[props.get("title")] = props.get("sheetId")
            if title not in self._sheet_ids:
                raise LedgerSyncFailure(f"Sheet '{title}' not found in spreadsheet", bucket=bucket)
        return self._sheet_ids[title]

    async def find_row(self, bucket: str, order_code: str) -> Optional[LedgerRow]:
        title = SHEET_NAMES[bucket]
        data = await self._request("GET", f"{self._spreadsheet_url}/values/{title}!A:K", bucket=bucket)
        for index, values in enumerate(data.get("values", [])):
            if values and values[0] == order_code:
                return LedgerRow(order_code=order_code, values=list(values), row_index=index)
        return None

    async def upsert_row(self, bucket: str, order_code: str, row: List[str]) -> bool:
        title = SHEET_NAMES[bucket]
        existing = await self.find_row(bucket, order_code)
        if existing is not None:
            n = existing.row_index + 1
            await self._request(
                "PUT",
                f"{self._spreadsheet_url}/values/{title}!A{n}:K{n}",
                bucket=bucket,
                params={"valueInputOption": "RAW"},
                json={"values": [row]},
            )
        else:
            await self._request(
                "POST",
                f"{self._spreadsheet_url}/values/{title}!A:K:append",
                bucket=bucket,
                params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                json={"values": [row]},
            )
        return True

    async def delete_row(self, bucket: str, order_code: str) -> bool:
        existing = await self.find_row(bucket, order_code)
        if existing is None:
            return False
        sheet_id = await self._sheet_id(bucket)
        await self._request(
            "POST",
            f"{self._spreadsheet_url}:batchUpdate",
            bucket=bucket,
            json={"requests": [{
                "deleteDimension": {
                    "range": {
                        "sheetId": sheet_id,
                        "dimension": "ROWS",
                        "startIndex": existing.row_index,
                        "endIndex": existing.row_index + 1,
                    }
                }
            }]},
        )
        return True

    async def move_row(self, from_bucket: str, to_bucket: str, order_code: str) -> bool:
        source = await self.find_row(from_bucket, order_code)
        if source is None:
            return False
        if await self.find_row(to_bucket, order_code) is None:
            await self.upsert_row(to_bucket, order_code, source.values)
        await self.delete_row(from_bucket, order_code)
        return True

    async def set_row_color(self, bucket: str, order_code: str, color_key: str) -> bool:
        existing = await self.find_row(bucket, order_code)
        if existing is None:
            return False
        sheet_id = await self._sheet_id(bucket)
        color = STATUS_COLORS.get(color_key, STATUS_COLORS["pending"])
        await self._request(
            "POST",
            f"{self._spreadsheet_url}:batchUpdate",
            bucket=bucket,
            json={"requests": [{
                "repeatCell": {
                    "range": {
                        "sheetId": sheet_id,
                        "startRowIndex": existing.row_index,
                        "endRowIndex": existing.row_index + 1,
                        "startColumnIndex": 0,
                        "endColumnIndex": len(HEADER),
                    },
                    "cell": {"userEnteredFormat": {"backgroundColor": color}},
                    "fields": "userEnteredFormat.backgroundColor",
                }
            }]},
        )
        return True


# =============================================================================
# SYNC
# =============================================================================

# Orders in these buckets are listed by status for reconciliation
_BUCKET_STATUSES = {
    BUCKET_NEW: [
        OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING,
        OrderStatus.READY, OrderStatus.OUT_FOR_DELIVERY,
    ],
    BUCKET_DELIVERED: [OrderStatus.DELIVERED],
    BUCKET_SELFPICK: [OrderStatus.DELIVERED],
    BUCKET_CANCELLED: [OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.REFUND_FAILED],
}


class LedgerSync:
    """
    Idempotent upsert-or-move of orders into ledger buckets.

    Running sync twice for the same order and bucket leaves exactly one row
    in the destination and none in ``new``.
    """

    def __init__(self, ledger: Ledger, store=None):
        self.ledger = ledger
        self.store = store

    async def sync(self, order, bucket: str) -> bool:
        if bucket not in SHEET_NAMES:
            raise LedgerSyncFailure(f"Unknown ledger bucket '{bucket}'", order_code=order.order_code, bucket=bucket)
        try:
            if bucket == BUCKET_NEW:
                existing = await self.ledger.find_row(BUCKET_NEW, order.order_code)
                row = refresh_labels(existing.values, order) if existing else build_row(order)
                await self.ledger.upsert_row(BUCKET_NEW, order.order_code, row)
            else:
                moved = await self.ledger.move_row(BUCKET_NEW, bucket, order.order_code)
                current = await self.ledger.find_row(bucket, order.order_code)
                if current is not None:
                    row = refresh_labels(current.values, order)
                else:
                    # Source row missing (replay, or created before the ledger existed)
                    source = await self._rebuild_source(order)
                    row = build_row(source)
                    logger.info(f"Ledger row for {order.order_code} rebuilt from the order store into {bucket}")
                await self.ledger.upsert_row(bucket, order.order_code, row)
                if not moved:
                    # Pickup rows may still sit in selfpick/delivered from an earlier move
                    for other in BUCKETS:
                        if other not in (bucket, BUCKET_NEW):
                            await self.ledger.delete_row(other, order.order_code)
            await self.ledger.set_row_color(bucket, order.order_code, row_color_key(order, bucket))
        except LedgerSyncFailure as e:
            e.details["order_code"] = e.details.get("order_code") or order.order_code
            e.details["bucket"] = e.details.get("bucket") or bucket
            raise
        except Exception as e:
            raise LedgerSyncFailure(
                f"Ledger sync failed: {e}", order_code=order.order_code, bucket=bucket
            ) from e

        logger.debug(f"Ledger synced {order.order_code} -> {SHEET_NAMES[bucket]}")
        return True

    async def _rebuild_source(self, order):
        if self.store is None:
            return order
        return await self.store.get(order.order_code)

    async def update_partner(self, order, partner_name: str) -> bool:
        """Write the delivery partner into column K of the order's row."""
        bucket = bucket_for(order.status, order.service_type)
        try:
            existing = await self.ledger.find_row(bucket, order.order_code)
            if existing is None:
                logger.info(f"Ledger row for {order.order_code} missing in {bucket}; rebuilding for partner update")
                row = build_row(order)
            else:
                row = refresh_labels(existing.values, order)
            row[COL_PARTNER] = partner_name
            await self.ledger.upsert_row(bucket, order.order_code, row)
        except LedgerSyncFailure:
            raise
        except Exception as e:
            raise LedgerSyncFailure(
                f"Ledger partner update failed: {e}", order_code=order.order_code, bucket=bucket
            ) from e
        return True

    async def resync_bucket(self, bucket: str) -> Dict[str, int]:
        """
        Reconcile every visible order that belongs in ``bucket``.

        Stragglers whose sync failed earlier end up in the right sheet.
        """
        if self.store is None:
            raise LedgerSyncFailure("Resync needs an order store", bucket=bucket)

        summary = {"checked": 0, "synced": 0, "failed": 0}
        orders = await self.store.list_by_status(_BUCKET_STATUSES[bucket])
        for order in orders:
            if bucket_for(order.status, order.service_type) != bucket:
                continue
            summary["checked"] += 1
            try:
                await self.sync(order, bucket)
                summary["synced"] += 1
            except LedgerSyncFailure as e:
                summary["failed"] += 1
                logger.warning(f"[LedgerResync] {order.order_code} -> {bucket} failed: {e.message}")

        logger.info(f"[LedgerResync] {SHEET_NAMES[bucket]}: {summary}")
        return summary


def build_ledger(backend: Optional[str] = None) -> Ledger:
    backend = backend or settings.LEDGER_BACKEND
    if backend == "sheets":
        return SheetsLedger()
    return InMemoryLedger()
