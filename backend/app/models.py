from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
ApprovalStatus = Literal["pending", "approved", "rejected"]
ApprovalDecision = Literal["approved", "rejected"]
TrackingPhase = Literal["preparing", "en_route", "arrived"]
NotificationType = Literal[
    "booking_confirmation",
    "donation_receipt",
    "contact_acknowledgment",
    "provider_application_status",
]


class Booking(BaseModel):
    id: str
    requester_id: str
    provider_id: str
    scheduled_at: str
    purpose: str
    address: str
    notes: Optional[str] = None
    price: float = Field(ge=0)
    status: BookingStatus
    journey_started: bool = False
    estimated_arrival: Optional[str] = None
    payment_reference: Optional[str] = None
    version: int = 1
    created_at: str
    updated_at: str


class BookingRequest(BaseModel):
    provider_id: str
    scheduled_at: str
    purpose: str
    address: str
    price: float = 0
    notes: Optional[str] = None
    payment_reference: Optional[str] = None


class BookingTransitionRequest(BaseModel):
    status: BookingStatus
    expected_version: Optional[int] = None


class BookingPaymentRequest(BaseModel):
    outcome: Literal["succeeded", "failed", "cancelled"]
    payment_reference: Optional[str] = None


class JourneyStartRequest(BaseModel):
    estimated_arrival: Optional[str] = None


class Review(BaseModel):
    id: str
    booking_id: str
    provider_id: str
    reviewer_id: str
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    created_at: str


class ReviewRequest(BaseModel):
    rating: int
    comment: Optional[str] = None


class ProviderProfile(BaseModel):
    id: str
    user_id: str
    name: str
    description: str
    specialties: list[str] = Field(default_factory=list)
    experience_years: int = 1
    base_price: float = 100
    availability: str = "Available for booking"
    location: str = "Temple"
    avatar_url: str = "/placeholder.svg"
    approval_status: ApprovalStatus = "pending"
    rating: float = 0.0
    created_at: str
    updated_at: str


class ProviderProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    specialties: Optional[list[str]] = None
    experience_years: Optional[int] = Field(default=None, ge=0)
    base_price: Optional[float] = Field(default=None, ge=0)
    availability: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = None


class AccountProfile(BaseModel):
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_admin: bool = False
    is_provider: bool = False
    provider_status: Optional[ApprovalStatus] = None
    created_at: str
    updated_at: str


class ProviderDecisionRequest(BaseModel):
    decision: ApprovalDecision


class AdminFlagRequest(BaseModel):
    is_admin: bool


class ApprovalOutcome(BaseModel):
    success: bool
    user_id: str
    provider_status: Optional[ApprovalStatus] = None
    is_provider: bool = False
    provider_profile_id: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class LocationReport(BaseModel):
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None


class LocationSample(BaseModel):
    booking_id: str
    provider_id: str
    latitude: float
    longitude: float
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None
    captured_at: str


class LocationReportResult(BaseModel):
    accepted: bool
    booking_id: str


class TrackingStatus(BaseModel):
    booking_id: str
    booking_status: BookingStatus
    phase: TrackingPhase
    last_sample: Optional[LocationSample] = None
    eta_estimate: Optional[str] = None
    estimated_arrival: Optional[str] = None


class NotificationPayload(BaseModel):
    type: NotificationType
    recipient: str
    data: Dict[str, Any] = Field(default_factory=dict)


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "seva-demo"
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    is_admin: bool = False
    is_provider: bool = False


class DeviceTokenRegisterRequest(BaseModel):
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["booking", "application", "donation", "contact", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None
