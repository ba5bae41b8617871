"""Package lifecycle and renewal engine."""

from .catalog import DEFAULT_PLANS, PlanCatalog, StaticPlanCatalog, get_default_catalog
from .lifecycle import (
    RENEWAL_WINDOW,
    compute_renewal_eligibility,
    is_expired,
    reconcile,
    renewal_eligible_at,
    update_renewal_eligibility,
)
from .models import (
    Currency,
    EntitlementState,
    PackageOwner,
    PackagePlan,
    PackageStatus,
    PackageType,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    RenewalChain,
    RenewalEligibility,
    TimeRemaining,
    TransitionResult,
    UserPackage,
)
from .repository import InMemoryPackageRepository, PostgresPackageRepository
from .service import NullPackageNotifier, PackageNotifier, PackageRepository, PackageService

__all__ = [
    "DEFAULT_PLANS",
    "RENEWAL_WINDOW",
    "Currency",
    "EntitlementState",
    "InMemoryPackageRepository",
    "NullPackageNotifier",
    "PackageNotifier",
    "PackageOwner",
    "PackagePlan",
    "PackageRepository",
    "PackageService",
    "PackageStatus",
    "PackageType",
    "PaymentInfo",
    "PaymentMethod",
    "PaymentStatus",
    "PlanCatalog",
    "PostgresPackageRepository",
    "RenewalChain",
    "RenewalEligibility",
    "StaticPlanCatalog",
    "TimeRemaining",
    "TransitionResult",
    "UserPackage",
    "compute_renewal_eligibility",
    "get_default_catalog",
    "is_expired",
    "reconcile",
    "renewal_eligible_at",
    "update_renewal_eligibility",
]
