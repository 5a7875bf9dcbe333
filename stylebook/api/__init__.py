"""API package initialization."""
from stylebook.api.models import CreateAppointmentRequest, AppointmentResponse, ErrorResponse

__all__ = ["CreateAppointmentRequest", "AppointmentResponse", "ErrorResponse"]
