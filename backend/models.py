from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"

class DeliveryStatus(str, Enum):
    """Display-level status of an outbound message. Derived, never stored."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"  # Some per-item errors
    ERROR = "error"      # Uncaught failure
    SKIPPED = "skipped"  # Job paused

class TriggerType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"

class WhatsAppProvider(str, Enum):
    ZPRO = "zpro"
    ZAPI = "zapi"
    EVOLUTION = "evolution"
    WPPCONNECT = "wppconnect"

class TemplateSlug(str, Enum):
    INVOICE_GENERATED = "invoice_generated"
    TRIAL_ENDED_FREE = "trial_ended_free"
    TRIAL_ENDING = "trial_ending"

class AuditAction(str, Enum):
    # Billing
    INVOICE_CREATED = "INVOICE_CREATED"
    SUBSCRIPTION_TRIAL_ENDED = "SUBSCRIPTION_TRIAL_ENDED"
    SUBSCRIPTION_PERIOD_RENEWED = "SUBSCRIPTION_PERIOD_RENEWED"

    # Notifications
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    NOTIFICATION_PROVIDER_NOT_CONFIGURED = "NOTIFICATION_PROVIDER_NOT_CONFIGURED"

    # Jobs
    JOB_PAUSED = "JOB_PAUSED"
    JOB_RESUMED = "JOB_RESUMED"
    JOB_MANUAL_RUN = "JOB_MANUAL_RUN"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# DATA MODELS
# ============================================================================

class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    condominium_id: str  # Tenant
    plan: str
    active: bool = True
    is_trial: bool = False
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None

    # Usage counters, reset on every period rollover
    notifications_used: int = 0
    warnings_used: int = 0
    fines_used: int = 0

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

class Invoice(BaseModel):
    """One invoice per (subscription_id, period_start)."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subscription_id: str
    condominium_id: str
    amount: float
    status: InvoiceStatus = InvoiceStatus.PENDING
    due_date: str  # YYYY-MM-DD
    period_start: str  # YYYY-MM-DD
    period_end: str  # YYYY-MM-DD
    description: str
    created_at: datetime = Field(default_factory=_utcnow)

class NotificationTemplate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    slug: str
    name: str = ""
    content: str
    variables: List[str] = Field(default_factory=list)
    is_active: bool = True

class ProviderConfig(BaseModel):
    """Active WhatsApp provider row (whatsapp_config)."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    provider: WhatsAppProvider = WhatsAppProvider.ZPRO
    api_url: str
    api_key: str
    instance_id: str = ""
    is_active: bool = True
    app_url: Optional[str] = None

class NotificationSent(BaseModel):
    """Dispatch attempt record. Dispatch fields are append-only; delivery fields
    (delivered_at, read_at, provider_status) are filled in later by webhooks."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recipient_phone: str
    template_slug: str
    rendered_body: str
    provider: Optional[str] = None
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    sent_at: datetime = Field(default_factory=_utcnow)
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    provider_status: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)

class ExecutionLogEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    function_name: str
    trigger_type: TriggerType = TriggerType.MANUAL
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    condominium_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)
