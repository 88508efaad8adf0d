"""
Database Schemas for Recycle-IT

Each Pydantic model below a "collections" header corresponds to a MongoDB
collection (lowercased class name). The rest are request bodies.
"""
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from pickup_workflow import (
    DeviceCondition,
    InspectionCondition,
    InspectionStatus,
    PaymentStatus,
    PickupStatus,
)

PINCODE_PATTERN = r"^[0-9]{6}$"
PHONE_PATTERN = r"^[0-9]{10}$"
TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"

VehicleType = Literal["Bike", "Car", "Van", "Truck", "Pickup", "Auto"]
Weekday = Literal["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
ApprovalStatus = Literal["pending", "approved", "rejected"]

DEFAULT_WORKING_DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


# ------------------ Collections ------------------
class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="pbkdf2_sha256 hash")
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    address: Optional[str] = None
    is_verified: bool = False
    otp: Optional[str] = None
    otp_expiry: Optional[datetime] = None


class VerificationDocument(BaseModel):
    document_type: str
    document_url: str
    uploaded_at: datetime
    status: ApprovalStatus = "pending"


class Recycler(BaseModel):
    owner_name: str
    company_name: str
    email: EmailStr
    password_hash: str
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    address: str
    city: str
    state: str
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    verification_documents: List[VerificationDocument] = []
    is_verified: bool = Field(False, description="Email verified via OTP")
    approval_status: ApprovalStatus = Field("pending", description="Admin approval")
    terms_accepted: bool = False
    terms_accepted_at: Optional[datetime] = None
    conduct_accepted: bool = False
    conduct_accepted_at: Optional[datetime] = None
    otp: Optional[str] = None
    otp_expiry: Optional[datetime] = None


class Admin(BaseModel):
    email: EmailStr
    password_hash: str
    name: str = "Admin"
    is_active: bool = True


class Pickup(BaseModel):
    user_id: str = Field(..., description="Owner user id")
    device_type: str
    brand: str
    model: str
    purchase_date: Optional[date] = None
    condition: DeviceCondition
    weight: Optional[float] = None
    notes: Optional[str] = None
    pickup_address: str
    city: str
    state: str
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    preferred_pickup_date: date
    pickup_status: PickupStatus = PickupStatus.PENDING
    assigned_recycler_id: Optional[str] = None
    assigned_delivery_agent_id: Optional[str] = None
    status_history: List[dict] = []


class Inspection(BaseModel):
    pickup_id: str
    recycler_id: str
    user_id: str
    inspection_status: InspectionStatus = InspectionStatus.PENDING
    condition: Optional[InspectionCondition] = None
    estimated_value: Optional[float] = None
    notes: Optional[str] = None
    physical_damage: Optional[float] = None
    working_components: List[str] = []
    reusable_semiconductors: Optional[int] = None
    evidence: List[dict] = []
    inspection_date: Optional[datetime] = None


class Payment(BaseModel):
    pickup_id: str
    inspection_id: str
    recycler_id: str
    user_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    proposed_amount: Optional[float] = None
    final_amount: Optional[float] = None
    currency: str = "INR"
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    payout_intent_id: Optional[str] = None
    gateway_status: Optional[str] = None
    paid_at: Optional[datetime] = None


class ServiceArea(BaseModel):
    city: str
    pincode: str = Field(..., pattern=PINCODE_PATTERN)


class WorkingHours(BaseModel):
    start: str = Field("09:00", pattern=TIME_PATTERN)
    end: str = Field("18:00", pattern=TIME_PATTERN)


class Deliverypartner(BaseModel):
    recycler_id: str
    name: str = Field(..., max_length=100)
    email: EmailStr
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    vehicle_type: VehicleType = "Bike"
    vehicle_number: str = Field(..., max_length=15)
    service_areas: List[ServiceArea] = []
    is_available: bool = True
    working_hours: WorkingHours = WorkingHours()
    working_days: List[Weekday] = DEFAULT_WORKING_DAYS
    total_pickups: int = 0
    completed_pickups: int = 0
    rating: float = Field(5.0, ge=1, le=5)
    status: Literal["Active", "Inactive", "Suspended"] = "Active"
    notes: Optional[str] = Field(None, max_length=500)


class Testimonial(BaseModel):
    recycler_id: str
    user_id: str
    feedback: str
    rating: int = Field(..., ge=1, le=5)


# ------------------ Auth requests ------------------
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserRegister(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    address: Optional[str] = None


class RecyclerRegister(BaseModel):
    owner_name: str = Field(..., min_length=1)
    company_name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone_number: str = Field(..., pattern=PHONE_PATTERN)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    terms_accepted: bool = False
    conduct_accepted: bool = False


class AcceptTerms(BaseModel):
    email: EmailStr
    password: str
    terms_accepted: bool = False
    conduct_accepted: bool = False


class OtpVerify(BaseModel):
    email: EmailStr
    otp: str


class EmailRequest(BaseModel):
    email: EmailStr


class PasswordReset(BaseModel):
    email: EmailStr
    otp: str
    new_password: str = Field(..., min_length=6)


class UserProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[str] = None
    password: Optional[str] = Field(None, min_length=6)


class RecyclerProfileUpdate(BaseModel):
    owner_name: Optional[str] = None
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    password: Optional[str] = Field(None, min_length=6)


class ApprovalUpdate(BaseModel):
    approval_status: ApprovalStatus


# ------------------ Pickup requests ------------------
class PickupCreate(BaseModel):
    device_type: str = Field(..., min_length=1)
    brand: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    purchase_date: Optional[date] = None
    condition: DeviceCondition
    weight: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None
    pickup_address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., pattern=PINCODE_PATTERN)
    preferred_pickup_date: date

    @field_validator("purchase_date")
    @classmethod
    def purchase_not_in_future(cls, value):
        if value is not None and value > date.today():
            raise ValueError("Purchase date cannot be in the future")
        return value


class PickupUpdate(BaseModel):
    pickup_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = Field(None, pattern=PINCODE_PATTERN)
    preferred_pickup_date: Optional[date] = None
    notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: PickupStatus
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class AssignRecycler(BaseModel):
    recycler_id: Optional[str] = Field(None, description="Required when an admin assigns")


class AssignPartner(BaseModel):
    partner_id: str


# ------------------ Inspection & payment requests ------------------
class InspectionStatusUpdate(BaseModel):
    status: InspectionStatus


class RecyclerInspectionStatus(BaseModel):
    pickup_id: str
    status: InspectionStatus


class InspectionReport(BaseModel):
    condition: InspectionCondition
    estimated_value: float = Field(..., ge=0)
    notes: Optional[str] = None
    physical_damage: Optional[float] = Field(None, ge=0, le=100)
    working_components: List[str] = []
    reusable_semiconductors: Optional[int] = Field(None, ge=0)


class PaymentProposal(BaseModel):
    amount: float = Field(..., ge=0)
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class PayoutEvent(BaseModel):
    event: Literal["payout.captured", "payout.failed"]
    intent_id: str
    reference: Optional[str] = None
    failure_reason: Optional[str] = None


# ------------------ Delivery partner & testimonial requests ------------------
class DeliveryPartnerCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone_number: str
    vehicle_type: VehicleType
    vehicle_number: str = Field(..., min_length=1, max_length=15)
    service_areas: List[ServiceArea] = []
    working_hours: Optional[WorkingHours] = None
    working_days: Optional[List[Weekday]] = None
    notes: Optional[str] = Field(None, max_length=500)


class DeliveryPartnerUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None
    vehicle_type: Optional[VehicleType] = None
    vehicle_number: Optional[str] = Field(None, max_length=15)
    service_areas: Optional[List[ServiceArea]] = None
    working_hours: Optional[WorkingHours] = None
    working_days: Optional[List[Weekday]] = None
    status: Optional[Literal["Active", "Inactive", "Suspended"]] = None
    notes: Optional[str] = Field(None, max_length=500)


class AvailabilityUpdate(BaseModel):
    is_available: bool


class TestimonialCreate(BaseModel):
    recycler_id: str
    feedback: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
