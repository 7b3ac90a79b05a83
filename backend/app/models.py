from typing import Literal, Optional

from pydantic import BaseModel, Field

Urgency = Literal["immediate", "week", "month"]

RequestStatus = Literal[
    "pending",
    "accepted",
    "quoted",
    "pending_confirmation",
    "scheduled",
    "completed",
    "cancelled",
]

LeadStatus = Literal["new", "accepted", "declined"]

QuoteStatus = Literal["submitted", "pending_confirmation", "confirmed", "expired", "declined"]

AppointmentStatus = Literal[
    "pending_confirmation",
    "scheduled",
    "in_progress",
    "completed",
    "cancelled",
    "expired",
]

ReferralFeeStatus = Literal["pending", "paid", "expired", "cancelled", "refunded"]

CancellationReason = Literal[
    "cancelled_by_customer",
    "cancelled_after_requote",
    "no_show",
    "cancelled_off_platform",
]


class Professional(BaseModel):
    id: str
    business_name: str
    email: str = ""
    categories: list[str] = Field(default_factory=list)
    service_zips: list[str] = Field(default_factory=list)
    status: Literal["active", "inactive"] = "active"


class ProfessionalCreateRequest(BaseModel):
    admin_user_id: str
    pro_id: str
    business_name: str
    email: str = ""
    categories: list[str] = Field(default_factory=list)
    service_zips: list[str] = Field(default_factory=list)


class ServiceRequestCreate(BaseModel):
    user_id: str
    contact_email: str = ""
    vehicle_year: int
    vehicle_make: str
    vehicle_model: str
    category: str
    zip: str
    address: str = ""
    description: str = ""
    urgency: Urgency = "week"


class ServiceRequest(BaseModel):
    id: str
    customer_id: str
    contact_email: str = ""
    vehicle_year: int
    vehicle_make: str
    vehicle_model: str
    category: str
    zip: str
    address: str = ""
    description: str = ""
    urgency: Urgency = "week"
    status: RequestStatus
    accepted_pro_id: Optional[str] = None
    accept_expires_at: Optional[str] = None
    created_at: str
    updated_at: str

    @property
    def vehicle(self) -> str:
        return f"{self.vehicle_year} {self.vehicle_make} {self.vehicle_model}"


class ServiceRequestCreated(BaseModel):
    request: ServiceRequest
    lead_count: int


class RequestActorRequest(BaseModel):
    user_id: str


class JobLock(BaseModel):
    request_id: str
    locked: bool
    accepted_pro_id: Optional[str] = None
    accept_expires_at: Optional[str] = None
    locked_by_other: bool = False
    seconds_remaining: Optional[int] = None


class Lead(BaseModel):
    id: str
    request_id: str
    pro_id: str
    status: LeadStatus
    created_at: str
    updated_at: str


class LeadInboxItem(BaseModel):
    lead: Lead
    category: str
    vehicle: str
    zip: str
    urgency: Urgency
    request_status: RequestStatus
    lock: JobLock


class LeadActionRequest(BaseModel):
    pro_id: str


class LeadAcceptResult(BaseModel):
    lead: Lead
    lock: JobLock
    acquired: bool = True


class QuoteSubmitRequest(BaseModel):
    pro_id: str
    estimated_price: float = Field(gt=0)
    description: str
    notes: str = ""


class Quote(BaseModel):
    id: str
    request_id: str
    pro_id: str
    estimated_price: float
    description: str
    notes: str = ""
    status: QuoteStatus
    confirmation_timer_minutes: int
    confirmation_timer_expires_at: Optional[str] = None
    is_revised: bool = False
    original_quote_id: Optional[str] = None
    created_at: str
    updated_at: str
    seconds_remaining: Optional[int] = None


class QuoteSelectRequest(BaseModel):
    user_id: str
    starts_at: Optional[str] = None


class QuoteActionRequest(BaseModel):
    pro_id: str


class Appointment(BaseModel):
    id: str
    request_id: str
    quote_id: str
    pro_id: str
    customer_id: str
    starts_at: str
    status: AppointmentStatus
    confirmation_expires_at: Optional[str] = None
    cancellation_reason: Optional[str] = None
    notes: str = ""
    created_at: str
    updated_at: str


class ReferralFee(BaseModel):
    id: str
    request_id: str
    quote_id: str
    pro_id: str
    amount: float = 0.0
    status: ReferralFeeStatus
    payment_method: Optional[str] = None
    notes: str = ""
    paid_at: Optional[str] = None
    created_at: str
    updated_at: str


class QuoteSelection(BaseModel):
    quote: Quote
    appointment: Appointment
    referral_fee: ReferralFee


class QuoteConfirmation(BaseModel):
    quote: Quote
    appointment: Appointment


class AppointmentScheduleRequest(BaseModel):
    pro_id: str
    starts_at: str
    notes: str = ""


class AppointmentStatusUpdateRequest(BaseModel):
    actor_user_id: str
    status: Literal["in_progress", "completed"]


class AppointmentCancelRequest(BaseModel):
    actor_user_id: str
    reason: CancellationReason


class ReferralFeeMarkPaidRequest(BaseModel):
    admin_user_id: str
    amount: Optional[float] = Field(default=None, ge=0)
    payment_method: str = "manual"
    notes: str = ""


class SweepResult(BaseModel):
    expired_quotes: int = 0
    expired_appointments: int = 0
    released_locks: int = 0
    failed_quotes: int = 0
    notifications_attempted: int = 0
    ran_at: str


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "doneez-demo"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    is_admin: bool = False


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["lead", "quote", "appointment", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
