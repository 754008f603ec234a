"""
planpilot/models/subscription.py

Per-request view of a user's subscription, as consumed by the entitlement
resolver. Built from the subscription store (or a session claim) and
discarded when the request completes.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class UserEntitlementView(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    plan_id: str = "free"
    status: str = "none"
    billing_cycle: Optional[str] = None
    next_billing_date: Optional[datetime] = None
