"""
Per-user Quota Management for the Consultation RAG

Free users get a fixed number of consultations/documents; premium plans
bypass the cap. The invariant documents_used <= documents_limit (unless
premium) is enforced by a single conditional UPDATE in the store, so two
concurrent requests can never both take the last unit.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import RAGError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionPlan:
    """Usage limits attached to a subscription plan."""
    name: str
    documents_limit: int
    is_premium: bool = False


# Predefined plans
SUBSCRIPTION_PLANS = {
    "free": SubscriptionPlan(name="free", documents_limit=1),
    "basic": SubscriptionPlan(name="basic", documents_limit=3),
    "premium": SubscriptionPlan(name="premium", documents_limit=999, is_premium=True),
    "business": SubscriptionPlan(name="business", documents_limit=999, is_premium=True),
}


def get_plan(name: Optional[str]) -> SubscriptionPlan:
    """Plan by name, falling back to free."""
    return SUBSCRIPTION_PLANS.get(name or "free", SUBSCRIPTION_PLANS["free"])


@dataclass
class UserQuota:
    """Current quota state for a user."""
    user_id: str
    documents_used: int
    documents_limit: int
    is_premium: bool = False
    subscription_plan: str = "free"

    @property
    def can_use_document(self) -> bool:
        return self.is_premium or self.documents_used < self.documents_limit

    @property
    def remaining(self) -> Optional[int]:
        if self.is_premium:
            return None
        return max(self.documents_limit - self.documents_used, 0)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "can_use_document": self.can_use_document,
            "documents_used": self.documents_used,
            "documents_limit": self.documents_limit,
            "remaining": self.remaining,
            "is_premium": self.is_premium,
            "subscription_plan": self.subscription_plan,
        }


class QuotaExceededError(RAGError):
    """Raised when a quota limit is exceeded."""

    def __init__(self, message: str, quota_type: str = "documents", current: int = 0, limit: int = 0):
        super().__init__(message)
        self.quota_type = quota_type
        self.current = current
        self.limit = limit

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "quota_type": self.quota_type,
            "current": self.current,
            "limit": self.limit,
        })
        return data


class UserNotFoundError(ValidationError):
    """No user row for the given id."""


class QuotaManager:
    """
    Reads and consumes per-user quotas.

    Usage:
        manager = QuotaManager(consultation_store)

        # Gate before doing any work
        manager.ensure_can_use(user_id)

        # Standalone atomic consume (persistence path uses the store's transaction)
        if not manager.try_consume_quota(user_id):
            ...
    """

    def __init__(self, store=None):
        """
        Args:
            store: ConsultationStore (or compatible) owning the users table
        """
        self.store = store

    def check_user_limits(self, user_id: str) -> UserQuota:
        """
        Pure read of the user's quota.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        row = self.store.get_user_quota_row(user_id)
        if row is None:
            raise UserNotFoundError(f"User {user_id} not found")

        plan = get_plan(row.get("subscription_plan"))
        is_premium = bool(row.get("is_premium")) or plan.is_premium
        limit = row.get("documents_limit")
        if limit is None:
            limit = plan.documents_limit

        return UserQuota(
            user_id=str(user_id),
            documents_used=int(row.get("documents_used") or 0),
            documents_limit=int(limit),
            is_premium=is_premium,
            subscription_plan=plan.name,
        )

    def ensure_can_use(self, user_id: str) -> UserQuota:
        """
        Gate for a consultation or document.

        Raises:
            QuotaExceededError: If the user has no quota left
        """
        quota = self.check_user_limits(user_id)
        if not quota.can_use_document:
            logger.info(
                f"Quota exceeded for user {user_id}: "
                f"{quota.documents_used}/{quota.documents_limit}"
            )
            raise QuotaExceededError(
                f"Document limit reached ({quota.documents_limit} documents)",
                quota_type="documents",
                current=quota.documents_used,
                limit=quota.documents_limit,
            )
        return quota

    def try_consume_quota(self, user_id: str) -> bool:
        """
        Atomically consume one unit.

        Returns:
            True if a unit was consumed, False if the user is at the limit
        """
        consumed = self.store.try_consume_quota(user_id)
        if not consumed:
            logger.info(f"Quota consume refused for user {user_id}")
        return consumed

    def set_subscription_plan(self, user_id: str, plan_name: str) -> UserQuota:
        """Switch a user's plan; limit and premium flag follow the plan."""
        if plan_name not in SUBSCRIPTION_PLANS:
            raise ValidationError(
                f"Unknown plan '{plan_name}'. Expected one of: {', '.join(SUBSCRIPTION_PLANS)}"
            )
        plan = SUBSCRIPTION_PLANS[plan_name]
        self.store.update_user_plan(user_id, plan.name, plan.documents_limit, plan.is_premium)
        logger.info(f"User {user_id} moved to plan {plan.name}")
        return self.check_user_limits(user_id)


# Global quota manager instance
_manager = None


def get_quota_manager(store=None) -> QuotaManager:
    """Get the global quota manager instance."""
    global _manager
    if _manager is None:
        _manager = QuotaManager(store)
    elif store and _manager.store is None:
        _manager.store = store
    return _manager


# CLI for testing
if __name__ == "__main__":
    print("=== Subscription Plans ===")
    for plan_name, plan in SUBSCRIPTION_PLANS.items():
        print(f"\n{plan_name.upper()}:")
        print(f"  Documents: {plan.documents_limit}")
        print(f"  Premium: {plan.is_premium}")

    quota = UserQuota(user_id="demo", documents_used=1, documents_limit=1)
    print(f"\nFree user at 1/1 can use document: {quota.can_use_document}")
