"""Pydantic models for API request/response validation."""
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from stylebook.clients import ClientSummary
from stylebook.models import Appointment, AppointmentStatus, ServiceCatalog
from stylebook.scheduler import BookingRequest, as_utc


class ServiceResponse(BaseModel):
    """Bookable service as shown to clients."""
    id: str
    name: str
    price: float
    duration_minutes: int
    description: Optional[str] = None

    @classmethod
    def from_service(cls, service: ServiceCatalog) -> "ServiceResponse":
        return cls(
            id=service.id,
            name=service.name,
            price=float(service.price or 0),
            duration_minutes=service.duration_minutes,
            description=service.description,
        )


class CreateAppointmentRequest(BaseModel):
    """Request schema for public booking."""
    client_name: str = Field(
        ...,
        min_length=1,
        max_length=120,
        description="Client display name",
        examples=["Juan Perez"]
    )
    client_phone: str = Field(
        ...,
        min_length=1,
        max_length=40,
        description="Phone in any format; 8-15 digits after normalization",
        examples=["+54 (911) 1111-1111"]
    )
    service_id: str = Field(..., min_length=1, max_length=36, description="Service identifier")
    appointment_at: datetime = Field(
        ...,
        description="Requested slot (ISO 8601). Naive values are UTC; seconds are dropped"
    )
    notes: Optional[str] = Field(None, max_length=300, description="Optional notes for the barber")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "client_name": "Juan Perez",
                "client_phone": "+54 (911) 1111-1111",
                "service_id": "0b6f2c9e-8f0e-4c8e-9a57-5a3c4f0d6d11",
                "appointment_at": "2026-11-03T15:30:00Z",
                "notes": "Short on the sides"
            }
        }
    )

    def to_booking(self) -> BookingRequest:
        return BookingRequest(
            client_name=self.client_name,
            client_phone=self.client_phone,
            service_id=self.service_id,
            appointment_at=self.appointment_at,
            notes=self.notes,
        )


class AdminAppointmentUpsertRequest(CreateAppointmentRequest):
    """Staff edit of an existing appointment (status is changed separately)."""


class UpdateAppointmentStatusRequest(BaseModel):
    status: AppointmentStatus = Field(..., description="Target status", examples=["CONFIRMED"])


class PublicAppointmentResponse(BaseModel):
    """Booking confirmation returned to the client."""
    id: str
    service_id: str
    service_name: str
    appointment_at: datetime
    status: AppointmentStatus

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> "PublicAppointmentResponse":
        return cls(
            id=appointment.id,
            service_id=appointment.service_id,
            service_name=appointment.service.name,
            appointment_at=as_utc(appointment.appointment_at),
            status=appointment.status,
        )


class AppointmentResponse(PublicAppointmentResponse):
    """Full appointment view for staff."""
    client_id: str
    client_name: str
    client_phone: str
    notes: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> "AppointmentResponse":
        return cls(
            id=appointment.id,
            service_id=appointment.service_id,
            service_name=appointment.service.name,
            appointment_at=as_utc(appointment.appointment_at),
            status=appointment.status,
            client_id=appointment.client_id,
            client_name=appointment.client.name,
            client_phone=appointment.client.phone,
            notes=appointment.notes,
            created_at=as_utc(appointment.created_at),
        )


class OccupiedSlotsResponse(BaseModel):
    """Taken slots for one service on one UTC day."""
    service_id: str
    day: date
    occupied: List[datetime] = Field(default_factory=list)


class ClientSummaryResponse(BaseModel):
    id: str
    name: str
    phone: str
    completed_count: int
    last_visit: Optional[datetime] = None

    @classmethod
    def from_summary(cls, summary: ClientSummary) -> "ClientSummaryResponse":
        return cls(
            id=summary.id,
            name=summary.name,
            phone=summary.phone,
            completed_count=summary.completed_count,
            last_visit=as_utc(summary.last_visit) if summary.last_visit else None,
        )


class ClientUpsertRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    phone: str = Field(..., min_length=1, max_length=40)


class MergeClientsRequest(BaseModel):
    """Move every appointment of source to target, then delete source."""
    source_client_id: str = Field(..., min_length=1, max_length=36)
    target_client_id: str = Field(..., min_length=1, max_length=36)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=120, examples=["admin@stylebook.local"])
    password: str = Field(..., min_length=1, max_length=200)


class LoginResponse(BaseModel):
    access_token: str = Field(..., description="Signed bearer token")
    token_type: str = Field(default="Bearer")
    expires_in: int = Field(..., description="Token lifetime in seconds")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "access_token": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...",
                "token_type": "Bearer",
                "expires_in": 28800
            }
        }
    )


class HaircutSuggestionRequest(BaseModel):
    image_data_url: str = Field(
        ...,
        min_length=1,
        max_length=8_000_000,
        description="Photo as a data: URL (base64)",
        examples=["data:image/jpeg;base64,/9j/4AAQSkZJRg..."]
    )


class HaircutSuggestionItem(BaseModel):
    name: str
    reason: str


class HaircutSuggestionResponse(BaseModel):
    """Suggestions produced by the external haircut advisor."""
    detected_description: str = ""
    suggestions: List[HaircutSuggestionItem] = Field(default_factory=list)
    preview_image_data_url: Optional[str] = None
    preview_style_name: Optional[str] = None
    preview_message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error response schema."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    code: Optional[str] = Field(None, description="Error code")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Rate limit exceeded",
                "detail": "Too many requests in a short time. Try again in a minute.",
                "code": "RATE_LIMITED"
            }
        }
    )
