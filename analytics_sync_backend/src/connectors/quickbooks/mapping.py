from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from src.core.logging import get_logger
from src.sync.models import MetricPoint, PartialSeries, SeriesGroup
from src.sync.summary import Bucket, SummaryTable

logger = get_logger(__name__)

INVOICE_TOTAL = "INVOICE_TOTAL"
INVOICE_BALANCE = "INVOICE_BALANCE"
INVOICE_PAID = "INVOICE_PAID"
INVOICE_COUNT = "INVOICE_COUNT"

QUICKBOOKS_TABLE = SummaryTable(
    [
        Bucket("invoiced", (INVOICE_TOTAL,)),
        Bucket("collected", (INVOICE_PAID,)),
        Bucket("outstanding", (INVOICE_BALANCE,)),
        Bucket("invoices", (INVOICE_COUNT,)),
    ]
)


def query_items(payload: Dict[str, Any], entity: str) -> List[Dict[str, Any]]:
    """QueryResponse.<Entity> as a list; the API returns a bare object for single results."""
    items = ((payload or {}).get("QueryResponse") or {}).get(entity)
    if items is None:
        return []
    if isinstance(items, dict):
        return [items]
    return list(items)


def _amount(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _txn_date(value: Any) -> Optional[date]:
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None


# PUBLIC_INTERFACE
def invoice_status(total: float, balance: float) -> str:
    if balance == 0:
        return "paid"
    if balance == total and total > 0:
        return "unpaid"
    if 0 < balance < total:
        return "partial"
    return "unknown"


# PUBLIC_INTERFACE
def parse_invoices(invoices: List[Dict[str, Any]]) -> PartialSeries:
    """Daily invoice series keyed by TxnDate: total, balance, paid (total - balance) and count."""
    per_day: Dict[date, Dict[str, float]] = {}
    for inv in invoices:
        day = _txn_date(inv.get("TxnDate"))
        if day is None:
            logger.warning("skipping invoice without a valid TxnDate", extra={"invoice_id": inv.get("Id")})
            continue
        total = _amount(inv.get("TotalAmt"))
        balance = _amount(inv.get("Balance"))
        row = per_day.setdefault(day, {INVOICE_TOTAL: 0.0, INVOICE_BALANCE: 0.0, INVOICE_PAID: 0.0, INVOICE_COUNT: 0.0})
        row[INVOICE_TOTAL] += total
        row[INVOICE_BALANCE] += balance
        row[INVOICE_PAID] += total - balance
        row[INVOICE_COUNT] += 1
    days = sorted(per_day)
    return PartialSeries(
        groups=[
            SeriesGroup(metric=m, points=[MetricPoint(date=d, value=per_day[d][m]) for d in days])
            for m in (INVOICE_TOTAL, INVOICE_BALANCE, INVOICE_PAID, INVOICE_COUNT)
        ]
    )


# PUBLIC_INTERFACE
def normalize_invoice(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map a raw QuickBooks Invoice to the normalized invoice shape."""
    total = _amount(raw.get("TotalAmt"))
    balance = _amount(raw.get("Balance"))
    customer = raw.get("CustomerRef") or {}
    currency = raw.get("CurrencyRef") or {}
    return {
        "id": raw.get("Id"),
        "doc_number": raw.get("DocNumber"),
        "txn_date": raw.get("TxnDate"),
        "due_date": raw.get("DueDate"),
        "total_amount": total,
        "balance": balance,
        "status": invoice_status(total, balance),
        "customer_ref": {"value": customer.get("value"), "name": customer.get("name")},
        "currency": currency.get("value"),
        "bill_email": (raw.get("BillEmail") or {}).get("Address"),
        "invoice_link": raw.get("InvoiceLink"),
        "line_items": [
            {
                "description": line.get("Description"),
                "amount": _amount(line.get("Amount")),
                "detail_type": line.get("DetailType"),
            }
            for line in raw.get("Line") or []
            if line.get("DetailType") != "SubTotalLineDetail"
        ],
    }


# PUBLIC_INTERFACE
def normalize_customer(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": raw.get("Id"),
        "display_name": raw.get("DisplayName"),
        "company_name": raw.get("CompanyName"),
        "email": (raw.get("PrimaryEmailAddr") or {}).get("Address"),
        "balance": _amount(raw.get("Balance")),
        "active": bool(raw.get("Active", True)),
    }
