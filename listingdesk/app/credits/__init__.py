"""Credits domain package: ledger, price catalog, and billing reconciliation."""

from .catalog import CheckoutItem, PriceCatalog, TierDefinition, build_price_catalog
from .config import CreditsConfig, load_credits_config
from .exceptions import (
    ConfigurationError,
    CreditsError,
    InsufficientCreditsError,
    TransientError,
    WebhookVerificationError,
)
from .ledger import BalanceProjector, project_balance
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingEvent,
    BillingEventKind,
    CheckoutCompletedPayload,
    CheckoutMode,
    InvoicePaidPayload,
    LedgerEntry,
    LedgerHistoryItem,
    LedgerReason,
    PlanChange,
    PlanStatus,
    PlanTier,
    ProcessingOutcome,
    ProcessingResult,
    Profile,
    SavedListing,
    SubscriptionDeletedPayload,
    SubscriptionUpdatedPayload,
)
from .service import BillingEventLogger, ReconciliationEngine
from .store import CreditsRepository, CreditsStore, InMemoryCreditsStore

__all__ = [
    "BalanceProjector",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingEvent",
    "BillingEventKind",
    "BillingEventLogger",
    "CheckoutCompletedPayload",
    "CheckoutItem",
    "CheckoutMode",
    "ConfigurationError",
    "CreditsConfig",
    "CreditsError",
    "CreditsRepository",
    "CreditsStore",
    "InMemoryCreditsStore",
    "InsufficientCreditsError",
    "InvoicePaidPayload",
    "LedgerEntry",
    "LedgerHistoryItem",
    "LedgerReason",
    "PlanChange",
    "PlanStatus",
    "PlanTier",
    "PriceCatalog",
    "ProcessingOutcome",
    "ProcessingResult",
    "Profile",
    "ReconciliationEngine",
    "SavedListing",
    "SubscriptionDeletedPayload",
    "SubscriptionUpdatedPayload",
    "TierDefinition",
    "TransientError",
    "WebhookVerificationError",
    "build_price_catalog",
    "load_credits_config",
    "project_balance",
]
