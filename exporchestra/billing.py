"""
Billing gate - authorization before a step spends credits.

The runtime asks the gate once per step, on the first attempt that would
create an artifact; retries reuse that authorization. A refusal fails the
step with AuthorizationDenied, which is never retried. Pricing rules live
behind the gate, not in the runtime.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Authorization:
    """Outcome of an authorization check."""
    allowed: bool
    reason: Optional[str] = None


class BillingGate(ABC):
    """Abstract base class for billing/credit gates."""

    @abstractmethod
    def authorize(self, artifact_type: str, cost: int) -> Authorization:
        """
        Decide whether a step may create an artifact.

        Args:
            artifact_type: Artifact type about to be created
            cost: Credits the step declares

        Returns:
            Authorization with allowed flag and a reason when refused
        """
        pass


class AllowAllGate(BillingGate):
    """Gate that authorizes everything (default)."""

    def authorize(self, artifact_type: str, cost: int) -> Authorization:
        return Authorization(allowed=True)


class CreditBudgetGate(BillingGate):
    """
    Gate backed by a fixed credit budget.

    Each authorized step consumes its cost. Safe to share between
    concurrent steps.
    """

    def __init__(self, budget: int):
        if budget < 0:
            raise ValueError("budget must be >= 0")
        self._remaining = budget
        self._lock = threading.Lock()

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    def authorize(self, artifact_type: str, cost: int) -> Authorization:
        with self._lock:
            if cost > self._remaining:
                logger.info(
                    f"Credit budget refused {artifact_type} (cost {cost}, remaining {self._remaining})",
                    extra={"stage": "execute", "event": "billing_denied", "metadata": {
                        "artifact_type": artifact_type,
                        "cost": cost,
                        "remaining": self._remaining,
                    }},
                )
                return Authorization(
                    allowed=False,
                    reason=f"insufficient credits (needs {cost}, {self._remaining} remaining)",
                )
            self._remaining -= cost
            return Authorization(allowed=True)
