"""FastAPI server for the Stylebook booking service.

Features:
- Public booking with per-IP sliding-window limits
- Admin login with exponential lockout, bearer-token admin routes
- Haircut suggestions behind a rate limit and a concurrency gate
- Global exception handling with one error body shape
- Request IDs in logs and response headers
"""
from contextlib import asynccontextmanager
from datetime import date
from http import HTTPStatus
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from stylebook.api.dependencies import (
    get_ai_gate,
    get_ai_limiter,
    get_authenticator,
    get_booking_limiter,
    get_client_directory,
    get_client_ip,
    get_scheduler,
    get_token_service,
    require_admin,
    reset_dependencies,
)
from stylebook.api.models import (
    AdminAppointmentUpsertRequest,
    AppointmentResponse,
    ClientSummaryResponse,
    ClientUpsertRequest,
    CreateAppointmentRequest,
    ErrorResponse,
    HaircutSuggestionRequest,
    HaircutSuggestionResponse,
    LoginRequest,
    LoginResponse,
    MergeClientsRequest,
    OccupiedSlotsResponse,
    PublicAppointmentResponse,
    ServiceResponse,
    UpdateAppointmentStatusRequest,
)
from stylebook.config import Settings, get_settings
from stylebook.database import close_database, init_database
from stylebook.errors import RateLimitExceeded, ServiceUnavailable, StylebookError
from stylebook.logging_config import RequestIDMiddleware, get_logger, setup_structured_logging
from stylebook.scheduler import as_utc

logger = get_logger(__name__)

API_VERSION = "1.0.0"

# Receives the image data URL, returns the suggestion payload
HaircutSuggester = Callable[[str], HaircutSuggestionResponse]

AI_BUSY_MESSAGE = "High demand for haircut previews right now. Try again in a few seconds."


def _error_body(status_code: int, detail: str, code: str) -> dict:
    return ErrorResponse(
        error=HTTPStatus(status_code).phrase,
        detail=detail,
        code=code
    ).model_dump()


# ----------------------------------------------------------------------
# Public routes

public_router = APIRouter(prefix="/api/public", tags=["Public"])


@public_router.get("/services", response_model=List[ServiceResponse])
def list_services():
    """Active services, by name."""
    return [ServiceResponse.from_service(s) for s in get_scheduler().list_services()]


@public_router.post(
    "/appointments",
    response_model=PublicAppointmentResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_appointment(request: CreateAppointmentRequest, client_ip: str = Depends(get_client_ip)):
    """
    Book a slot. The appointment starts as PENDING.

    Raises:
        429: Booking rate limit for this address
        422: Invalid phone, inactive service or slot already taken
        404: Unknown service
    """
    get_booking_limiter().acquire(client_ip)
    appointment = get_scheduler().book(request.to_booking())
    return PublicAppointmentResponse.from_appointment(appointment)


@public_router.get("/appointments/occupied", response_model=OccupiedSlotsResponse)
def list_occupied(
    service_id: str = Query(..., min_length=1, max_length=36),
    day: date = Query(..., alias="date", description="UTC day (YYYY-MM-DD)"),
):
    slots = get_scheduler().list_occupied(service_id, day)
    return OccupiedSlotsResponse(service_id=service_id, day=day, occupied=[as_utc(s) for s in slots])


@public_router.post("/ai/haircut-suggestions", response_model=HaircutSuggestionResponse)
def suggest_haircut(
    body: HaircutSuggestionRequest,
    request: Request,
    client_ip: str = Depends(get_client_ip),
):
    """
    Ask the external advisor for haircut ideas.

    Raises:
        429: Rate limit for this address, or every advisor slot is busy
        503: No advisor configured
    """
    get_ai_limiter().acquire(client_ip)

    suggester: Optional[HaircutSuggester] = request.app.state.haircut_suggester
    if suggester is None:
        raise ServiceUnavailable("Haircut suggestions are not available right now")

    with get_ai_gate().acquire(AI_BUSY_MESSAGE):
        return suggester(body.image_data_url)


# ----------------------------------------------------------------------
# Authentication

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])


@auth_router.post("/login", response_model=LoginResponse)
def login(body: LoginRequest, client_ip: str = Depends(get_client_ip)):
    """
    Raises:
        429: Address or e-mail locked out after failed attempts
        422: Invalid credentials
    """
    token = get_authenticator().login(body.email, body.password, client_ip)
    return LoginResponse(access_token=token, expires_in=get_token_service().expiration_seconds)


# ----------------------------------------------------------------------
# Admin routes

admin_router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@admin_router.get("/appointments", response_model=List[AppointmentResponse])
def list_appointments(
    month: Optional[str] = Query(None, description="YYYY-MM (UTC)"),
    limit: int = Query(500),
    page: int = Query(0),
):
    appointments = get_scheduler().list_appointments(month=month, limit=limit, page=page)
    return [AppointmentResponse.from_appointment(a) for a in appointments]


@admin_router.get("/appointments/stale-pending", response_model=List[AppointmentResponse])
def list_stale_pending(older_than_minutes: int = Query(30)):
    """PENDING appointments nobody has confirmed or cancelled yet."""
    appointments = get_scheduler().list_stale_pending(older_than_minutes)
    return [AppointmentResponse.from_appointment(a) for a in appointments]


@admin_router.patch("/appointments/{appointment_id}/status", response_model=AppointmentResponse)
def change_status(appointment_id: str, body: UpdateAppointmentStatusRequest):
    appointment = get_scheduler().change_status(appointment_id, body.status)
    return AppointmentResponse.from_appointment(appointment)


@admin_router.put("/appointments/{appointment_id}", response_model=AppointmentResponse)
def update_appointment(appointment_id: str, body: AdminAppointmentUpsertRequest):
    appointment = get_scheduler().update(appointment_id, body.to_booking())
    return AppointmentResponse.from_appointment(appointment)


@admin_router.delete("/appointments/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(appointment_id: str):
    get_scheduler().delete(appointment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@admin_router.get("/clients", response_model=List[ClientSummaryResponse])
def list_clients():
    return [ClientSummaryResponse.from_summary(s) for s in get_client_directory().list_clients()]


@admin_router.put("/clients/{client_id}", response_model=ClientSummaryResponse)
def update_client(client_id: str, body: ClientUpsertRequest):
    directory = get_client_directory()
    directory.update_client(client_id, body.name, body.phone)
    return ClientSummaryResponse.from_summary(directory.get_summary(client_id))


@admin_router.post("/clients/merge", response_model=ClientSummaryResponse)
def merge_clients(body: MergeClientsRequest):
    directory = get_client_directory()
    target = directory.merge(body.source_client_id, body.target_client_id)
    return ClientSummaryResponse.from_summary(directory.get_summary(target.id))


@admin_router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_client(client_id: str):
    get_client_directory().delete_client(client_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ----------------------------------------------------------------------
# Application factory

def create_app(settings: Optional[Settings] = None, haircut_suggester: Optional[HaircutSuggester] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration (defaults to get_settings())
        haircut_suggester: External advisor; None answers 503 on that route
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown logic."""
        setup_structured_logging(settings.log_level)
        logger.info("server_starting", version=API_VERSION)

        try:
            init_database(settings.database_url)
        except Exception:
            logger.error("database_init_failed", exc_info=True)
            raise

        if settings.admin_bootstrap_email and settings.admin_bootstrap_password:
            get_authenticator().ensure_admin(settings.admin_bootstrap_email, settings.admin_bootstrap_password)

        yield

        close_database()
        reset_dependencies()
        logger.info("server_stopped")

    app = FastAPI(
        title="Stylebook API",
        description="Barber shop booking with admission control",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.settings = settings
    app.state.haircut_suggester = haircut_suggester

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(StylebookError)
    async def stylebook_error_handler(request: Request, exc: StylebookError):
        """Map the error taxonomy onto status codes and one body shape."""
        logger.info("request_rejected", path=request.url.path, code=exc.code, status=exc.status_code)
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, exc.message, exc.code),
            headers=headers
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        code = "UNAUTHORIZED" if exc.status_code == status.HTTP_401_UNAUTHORIZED else "HTTP_ERROR"
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.status_code, str(exc.detail), code),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle Pydantic validation errors consistently."""
        logger.warning("validation_error", path=request.url.path, errors=str(exc.errors()))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ErrorResponse(
                error="Validation Error",
                detail=str(exc.errors()),
                code="VALIDATION_ERROR"
            ).model_dump()
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all handler for unexpected exceptions."""
        logger.error("unexpected_error", path=request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail="An unexpected error occurred. Please try again later.",
                code="INTERNAL_ERROR"
            ).model_dump()
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint for load balancers."""
        return {
            "status": "healthy",
            "service": "stylebook-api",
            "version": API_VERSION
        }

    app.include_router(public_router)
    app.include_router(auth_router)
    app.include_router(admin_router)
    return app


app = create_app()
