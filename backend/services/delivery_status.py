"""
Delivery Status Resolver.

Display status is derived from per-message evidence on every read and never
persisted as its own field. Timestamps are authoritative; the provider status
code is only consulted when no timestamp exists.

Precedence (first match wins):
  1. read_at set            -> read
  2. delivered_at set       -> delivered
  3. provider_status failed -> failed
  4. provider_status sent   -> sent
  5. otherwise              -> pending
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from models import DeliveryStatus

Timestamp = Union[datetime, str, None]

# Provider vocabulary (pt-BR and en) -> normalized status
PROVIDER_STATUS_MAP = {
    "sent": "sent",
    "enviado": "sent",
    "server": "sent",
    "delivered": "delivered",
    "entregue": "delivered",
    "received": "delivered",
    "recebido": "delivered",
    "read": "read",
    "lido": "read",
    "viewed": "read",
    "visualizado": "read",
    "failed": "failed",
    "erro": "failed",
    "error": "failed",
    "falha": "failed",
    "pending": "pending",
    "pendente": "pending",
    "queued": "pending",
}

# WPPConnect ack codes (4 = played, for audio)
WPPCONNECT_ACK_MAP = {
    -1: "failed",
    0: "pending",
    1: "sent",
    2: "delivered",
    3: "read",
    4: "read",
}


def resolve_status(
    sent_at: Timestamp,
    delivered_at: Timestamp = None,
    read_at: Timestamp = None,
    provider_status: Optional[str] = None,
) -> DeliveryStatus:
    if read_at:
        return DeliveryStatus.READ
    if delivered_at:
        return DeliveryStatus.DELIVERED
    code = (provider_status or "").strip().lower()
    if code == "failed":
        return DeliveryStatus.FAILED
    if code == "sent":
        return DeliveryStatus.SENT
    return DeliveryStatus.PENDING


def resolve_record_status(record: Dict[str, Any]) -> DeliveryStatus:
    """resolve_status over a notifications_sent document."""
    return resolve_status(
        record.get("sent_at"),
        record.get("delivered_at"),
        record.get("read_at"),
        record.get("provider_status"),
    )


@dataclass
class DeliveryCounts:
    """Aggregate counts. read also counts as delivered and sent; delivered also counts as sent."""
    total: int = 0
    pending: int = 0
    sent: int = 0
    delivered: int = 0
    read: int = 0
    failed: int = 0

    def add(self, status: DeliveryStatus) -> None:
        self.total += 1
        if status == DeliveryStatus.READ:
            self.read += 1
            self.delivered += 1
            self.sent += 1
        elif status == DeliveryStatus.DELIVERED:
            self.delivered += 1
            self.sent += 1
        elif status == DeliveryStatus.SENT:
            self.sent += 1
        elif status == DeliveryStatus.FAILED:
            self.failed += 1
        else:
            self.pending += 1

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def summarize_statuses(records: Iterable[Dict[str, Any]]) -> DeliveryCounts:
    counts = DeliveryCounts()
    for record in records:
        counts.add(resolve_record_status(record))
    return counts


def normalize_provider_status(raw: Optional[str]) -> Optional[str]:
    """Map a provider's status word onto the five display statuses.
    Unknown values pass through lower-cased."""
    if raw is None:
        return None
    key = str(raw).strip().lower()
    return PROVIDER_STATUS_MAP.get(key, key)


def normalize_wppconnect_ack(ack: Any) -> str:
    try:
        return WPPCONNECT_ACK_MAP.get(int(ack), "unknown")
    except (TypeError, ValueError):
        return "unknown"
