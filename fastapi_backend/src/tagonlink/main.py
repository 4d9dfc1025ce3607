import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import Depends, FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.tagonlink.auth_utils import (
    TokenCodec,
    get_current_user_id,
    get_token_codec,
    hash_password,
    verify_password,
)
from src.tagonlink.config import configure_logging, get_settings
from src.tagonlink.db import REQUIRED_TABLES, Database, get_db
from src.tagonlink.errors import (
    ApiError,
    DatabaseError,
    ErrorKind,
    bad_request,
    not_found,
    register_error_handlers,
    server_error,
)
from src.tagonlink.repository import LinkRepository, UserRepository, get_link_repository, get_user_repository
from src.tagonlink.schemas import (
    APIMessage,
    AuthResponse,
    ErrorResponse,
    ForgotPasswordRequest,
    HealthStatus,
    Link,
    LinkWrite,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    StatusMessage,
    UserPublic,
    VerifyResponse,
)

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

# Identical for known and unknown accounts.
INVALID_CREDENTIALS = "Invalid email or password."
FORGOT_PASSWORD_MESSAGE = "If the email exists, a recovery link will be sent."

openapi_tags = [
    {"name": "Health", "description": "Service and database health checks."},
    {"name": "Auth", "description": "Registration, login, password reset and token verification."},
    {"name": "Links", "description": "CRUD on the authenticated user's links."},
]

_error_responses: Dict[Any, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the connection pool on startup and close it on shutdown."""
    db: Database = app.state.db
    try:
        db.open()
    except DatabaseError as exc:
        # The pool is opened lazily on the next request; /api/health reports the outage.
        logger.error("Database unavailable at startup: %s", exc.message)
    yield
    db.close()


app = FastAPI(
    title="TagOnLink API",
    description=(
        "Backend API for TagOnLink, a personal link bookmarking service. "
        "Includes registration/login, password reset and per-user link CRUD.\n\n"
        "Auth: Use the `Authorization: Bearer <token>` header for protected routes."
    ),
    version="1.0.0",
    openapi_tags=openapi_tags,
    lifespan=lifespan,
)
app.state.db = Database.from_settings(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_allow_origins),
    allow_origin_regex=r"https://.*\.vercel\.app",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

register_error_handlers(app)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _public_user(row: Dict[str, Any]) -> UserPublic:
    return UserPublic(id=row["id"], email=row["email"], name=row["name"])


# =========================
# Health
# =========================

@app.get("/", response_model=StatusMessage, tags=["Health"], summary="Service status")
def root() -> StatusMessage:
    """Liveness message used by the frontend to verify backend availability."""
    return StatusMessage(message="TagOnLink backend is running.", status="ok", timestamp=_now())


@app.get(
    "/api/health",
    response_model=HealthStatus,
    responses={500: {"model": ErrorResponse}},
    tags=["Health"],
    summary="Database health check",
)
def health(db: Database = Depends(get_db)) -> Any:
    """Run a trivial query and report which required tables are missing."""
    try:
        db.ping()
        missing = db.missing_tables(REQUIRED_TABLES)
    except DatabaseError as exc:
        logger.error("Health check failed (%s): %s", exc.kind.value, exc.message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "status": "error",
                "database": "disconnected",
                "error": "Could not connect to the database.",
                "code": "DATABASE_UNAVAILABLE",
                "details": exc.message,
                "timestamp": _now().isoformat(),
            },
        )
    if missing:
        logger.warning("Missing tables: %s", ", ".join(missing))
    return HealthStatus(status="ok", database="connected", missing_tables=missing, timestamp=_now())


# =========================
# Auth
# =========================

@app.post(
    "/api/auth/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_error_responses,
    tags=["Auth"],
    summary="Register",
)
def register(
    payload: RegisterRequest,
    users: UserRepository = Depends(get_user_repository),
    codec: TokenCodec = Depends(get_token_codec),
) -> AuthResponse:
    """Create a user and return a token plus the public user fields."""
    try:
        if users.email_exists(payload.email):
            raise bad_request("Email already registered.", code="EMAIL_TAKEN")
        user = users.create(payload.email, hash_password(payload.password), payload.name)
    except DatabaseError as exc:
        if exc.kind is ErrorKind.conflict:
            raise bad_request("Email already registered.", code="EMAIL_TAKEN")
        logger.error("Error creating user: %s", exc.message)
        raise server_error("Error creating user.")

    logger.info("Registered user %s", user["id"])
    return AuthResponse(token=codec.issue(user["id"]), user=_public_user(user))


@app.post("/api/auth/login", response_model=AuthResponse, responses=_error_responses, tags=["Auth"], summary="Login")
def login(
    payload: LoginRequest,
    users: UserRepository = Depends(get_user_repository),
    codec: TokenCodec = Depends(get_token_codec),
) -> AuthResponse:
    """Authenticate by email and password."""
    try:
        user = users.find_by_email(payload.email)
    except DatabaseError as exc:
        logger.error("Error during login: %s", exc.message)
        raise server_error("Error logging in.")

    if not user or not verify_password(payload.password, user["password"]):
        raise ApiError(status.HTTP_401_UNAUTHORIZED, INVALID_CREDENTIALS)

    return AuthResponse(token=codec.issue(user["id"]), user=_public_user(user))


@app.post(
    "/api/auth/forgot-password",
    response_model=APIMessage,
    responses=_error_responses,
    tags=["Auth"],
    summary="Request a password reset",
)
def forgot_password(
    payload: ForgotPasswordRequest,
    users: UserRepository = Depends(get_user_repository),
    codec: TokenCodec = Depends(get_token_codec),
) -> APIMessage:
    """Always answers with the same message so account existence is not disclosed.

    A reset token is issued but no email is sent.
    """
    try:
        user = users.find_by_email(payload.email)
    except DatabaseError as exc:
        logger.error("Error processing password reset request: %s", exc.message)
        raise server_error("Error processing request.")

    if user:
        codec.issue(user["id"])
        logger.info("Password reset token issued for user %s; email delivery is not configured", user["id"])
    return APIMessage(message=FORGOT_PASSWORD_MESSAGE)


@app.post(
    "/api/auth/reset-password",
    response_model=APIMessage,
    responses=_error_responses,
    tags=["Auth"],
    summary="Reset password with a token",
)
def reset_password(
    payload: ResetPasswordRequest,
    users: UserRepository = Depends(get_user_repository),
    codec: TokenCodec = Depends(get_token_codec),
) -> APIMessage:
    """Set a new password for the user the token identifies."""
    user_id = codec.validate(payload.token)
    if user_id is None:
        raise bad_request("Invalid or expired token.", code="INVALID_TOKEN")

    try:
        users.update_password(user_id, hash_password(payload.new_password))
    except DatabaseError as exc:
        logger.error("Error resetting password: %s", exc.message)
        raise server_error("Error resetting password.")
    return APIMessage(message="Password changed successfully.")


@app.get(
    "/api/auth/verify",
    response_model=VerifyResponse,
    responses=_error_responses,
    tags=["Auth"],
    summary="Get the token's user",
)
def verify(
    user_id: int = Depends(get_current_user_id),
    users: UserRepository = Depends(get_user_repository),
) -> VerifyResponse:
    """Return the authenticated user; 404 if the account no longer exists."""
    try:
        user = users.get_public(user_id)
    except DatabaseError as exc:
        logger.error("Error verifying token: %s", exc.message)
        raise server_error("Error verifying token.")
    if not user:
        raise not_found("User")
    return VerifyResponse(user=_public_user(user))


# =========================
# Links
# =========================

@app.get("/api/links", response_model=List[Link], responses=_error_responses, tags=["Links"], summary="List links")
def list_links(
    user_id: int = Depends(get_current_user_id),
    links: LinkRepository = Depends(get_link_repository),
) -> List[Dict[str, Any]]:
    """List the caller's links, newest first."""
    try:
        return links.list_for_owner(user_id)
    except DatabaseError as exc:
        logger.error("Error fetching links: %s", exc.message)
        raise server_error("Error fetching links.")


@app.post(
    "/api/links",
    response_model=Link,
    status_code=status.HTTP_201_CREATED,
    responses=_error_responses,
    tags=["Links"],
    summary="Create link",
)
def create_link(
    payload: LinkWrite,
    user_id: int = Depends(get_current_user_id),
    links: LinkRepository = Depends(get_link_repository),
) -> Dict[str, Any]:
    """Create a link owned by the caller."""
    try:
        return links.create(user_id, payload.title, payload.url, payload.description, payload.tags)
    except DatabaseError as exc:
        logger.error("Error saving link (%s, pgcode=%s): %s", exc.kind.value, exc.pgcode, exc.message)
        if exc.kind is ErrorKind.foreign_key:
            raise bad_request("Owner not found, log in again.", code="USER_NOT_FOUND")
        if exc.kind is ErrorKind.conflict:
            raise server_error("Duplicate link.", code="DUPLICATE_LINK")
        if exc.kind is ErrorKind.undefined_table:
            raise server_error("Database schema is missing; the links table does not exist.", code="TABLE_NOT_FOUND")
        raise server_error("Error saving link.", code="DATABASE_ERROR")


@app.put("/api/links/{link_id}", response_model=Link, responses=_error_responses, tags=["Links"], summary="Update link")
def update_link(
    link_id: int,
    payload: LinkWrite,
    user_id: int = Depends(get_current_user_id),
    links: LinkRepository = Depends(get_link_repository),
) -> Dict[str, Any]:
    """Replace a link's fields. Ownership is checked before the owner-filtered update."""
    try:
        owner_id = links.get_owner_id(link_id)
        if owner_id is None:
            raise not_found("Link")
        if owner_id != user_id:
            raise ApiError(status.HTTP_403_FORBIDDEN, "Access denied.", code="FORBIDDEN")

        # Zero rows here means the link was deleted after the ownership check.
        updated = links.update(link_id, user_id, payload.title, payload.url, payload.description, payload.tags)
    except DatabaseError as exc:
        logger.error("Error updating link %s: %s", link_id, exc.message)
        raise server_error("Error updating link.")
    if not updated:
        raise not_found("Link")
    return updated


@app.delete(
    "/api/links/{link_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    responses=_error_responses,
    tags=["Links"],
    summary="Delete link",
)
def delete_link(
    link_id: int,
    user_id: int = Depends(get_current_user_id),
    links: LinkRepository = Depends(get_link_repository),
) -> Response:
    """Delete one of the caller's links; 404 if it does not exist or is not theirs."""
    try:
        affected = links.delete(link_id, user_id)
    except DatabaseError as exc:
        logger.error("Error deleting link %s: %s", link_id, exc.message)
        raise server_error("Error deleting link.")
    if affected == 0:
        raise not_found("Link")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# PUBLIC_INTERFACE
def run() -> None:
    """Start a uvicorn listener unless deployed on a platform that imports `app`."""
    if settings.vercel:
        logger.info("VERCEL is set; not starting a listener.")
        return
    import uvicorn

    logger.info("Server running at http://localhost:%s", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
