"""
Pydantic Schemas：HTTP 層的請求 / 回應模型

欄位名稱使用 snake_case；snapshot 與退房摘要本身是 camelCase 的 dict，
原樣回傳給前端。
"""
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from models import (
    Actor,
    CheckinMode,
    Language,
    MembershipPurchaseIntent,
    PaymentMethod,
    RentalType,
    ResourceKind,
)


# ============ Lane Session ============

class IdentifyCustomer(BaseModel):
    staff_id: Optional[str] = None
    customer_id: Optional[UUID] = None
    customer_name: Optional[str] = Field(None, max_length=255)
    membership_scan_value: Optional[str] = None
    id_scan_value: Optional[str] = None
    visit_id: Optional[UUID] = None


class IdentifyCustomerResponse(BaseModel):
    session_id: UUID
    lane_id: str
    customer_id: UUID
    mode: CheckinMode
    allowed_rentals: List[RentalType]
    past_due_balance: Decimal
    past_due_blocked: bool


class SetLanguage(BaseModel):
    language: Language


class ProposeSelection(BaseModel):
    rental_type: RentalType
    proposed_by: Actor
    waitlist_desired_type: Optional[RentalType] = None
    backup_rental_type: Optional[RentalType] = None


class ConfirmSelection(BaseModel):
    confirmed_by: Actor


class AssignResource(BaseModel):
    resource_type: ResourceKind
    resource_id: UUID


class AssignResourceResponse(BaseModel):
    session_id: UUID
    lane_id: str
    resource_type: ResourceKind
    resource_id: UUID
    number: int


class PastDueBypass(BaseModel):
    bypassed: bool = True
    staff_id: Optional[str] = None


class MembershipIntent(BaseModel):
    """intent 為 None 表示單次入場"""
    intent: Optional[MembershipPurchaseIntent] = None
    session_id: Optional[UUID] = None


class CompleteMembership(BaseModel):
    membership_number: str = Field(..., min_length=1, max_length=64)
    session_id: Optional[UUID] = None


class SignAgreement(BaseModel):
    session_id: UUID
    signature: str = Field(..., min_length=1)


class SignAgreementResponse(BaseModel):
    session_id: UUID
    lane_id: str
    visit_id: UUID
    checkin_block_id: UUID
    resource_type: ResourceKind
    resource_id: UUID
    number: int
    checkout_at: datetime
    waitlist_entry_id: Optional[UUID] = None


class ResetLane(BaseModel):
    staff_id: Optional[str] = None


class TerminalResult(BaseModel):
    outcome: str = Field(..., pattern="^(CASH|CARD)_(SUCCESS|DECLINE)$")


class WaitlistInfoResponse(BaseModel):
    position: int
    estimatedReadyAt: Optional[str] = None


class LaneSessionSummary(BaseModel):
    session_id: UUID
    lane_id: str
    status: str
    customer_name: Optional[str] = None
    updated_at: datetime


# ============ Payments ============

class PaymentIntentResponse(BaseModel):
    session_id: UUID
    lane_id: str
    payment_intent_id: UUID
    amount: Decimal
    quote: Dict[str, Any]


class MarkPaid(BaseModel):
    method: PaymentMethod = PaymentMethod.CASH


class MarkPaidResponse(BaseModel):
    payment_intent_id: UUID
    status: str
    session_id: Optional[UUID] = None
    already_paid: bool


# ============ Checkout ============

class SubmitCheckout(BaseModel):
    occupancy_id: UUID
    kiosk_device_id: Optional[str] = None
    checklist: Dict[str, Any] = Field(default_factory=dict)


class StaffAction(BaseModel):
    staff_id: str = Field(..., min_length=1)


class ClaimResponse(BaseModel):
    request_id: UUID
    claimed_by: str
    claimed_at: datetime
    claim_expires_at: datetime


class ChecklistProgress(BaseModel):
    request_id: UUID
    items_confirmed: bool
    fee_paid: bool


class CompleteCheckoutResponse(BaseModel):
    request_id: UUID
    visit_id: UUID
    cancelled_waitlist_ids: List[UUID]


class ManualResolve(BaseModel):
    occupancy_id: Optional[UUID] = None
    number: Optional[int] = None


class ManualComplete(BaseModel):
    occupancy_id: UUID
    staff_id: str = Field(..., min_length=1)


class ManualCompleteResponse(BaseModel):
    occupancy_id: UUID
    visit_id: UUID
    already_checked_out: bool
    late_minutes: int
    fee_amount: Decimal
    ban_applied: bool
