# HTTP API: agent protocol routes and the admin JSON API
import hmac
import logging
import uuid
from http import HTTPStatus
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.exceptions import HTTPException as StarletteHTTPException

from server.core.coordinator import Coordinator
from shared.errors import AuthenticationError, CheckValidationError, NotFoundError
from shared.models import CheckDefinition, Endpoint
from shared.protocol import (
    AGENT_SECRET_HEADER,
    CheckDefinitionRequest,
    ChecksResponse,
    DashboardSummary,
    DeleteResponse,
    EndpointDetail,
    ErrorResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    RegisterRequest,
    RegisterResponse,
    ResultResponse,
    SubmitResultsBatch,
    SubmitResultsResponse,
)

logger = logging.getLogger(__name__)

AGENT_API_PREFIX = "/api/agent/"

# Newer interpreters renamed this phrase; keep the wire text stable
REASON_PHRASES = {422: "Unprocessable Entity"}


def secrets_match(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison; a missing value never matches."""
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    phrase = REASON_PHRASES.get(status_code) or HTTPStatus(status_code).phrase
    body = ErrorResponse(error=f"{status_code} {phrase}", message=message)
    return JSONResponse(body.model_dump(), status_code=status_code, headers=headers)


class ApiInterface:
    """
    FastAPI application exposing the Coordinator over HTTP.

    Routes:
    - /api/agent/*: agent protocol, every request must carry the shared
      secret in the X-Agent-Secret header (checked before the body is read)
    - /api/endpoints, /api/checks, /api/results, /api/reports/summary,
      /api/check-types: admin API, bearer ADMIN_TOKEN; answers 503 while no
      token is configured
    - /health: unauthenticated liveness probe

    Every error body is an ErrorResponse {"error", "message"}.
    """

    def __init__(self, coordinator: Coordinator, agent_secret: str, admin_token: Optional[str] = None):
        """
        Args:
            coordinator (Coordinator): Service handling every request
            agent_secret (str): Shared secret agents must present
            admin_token (str): Bearer token for the admin API, None to disable it
        """
        self.coordinator = coordinator
        self.agent_secret = agent_secret
        self.admin_token = admin_token

        self.app = FastAPI(title="Endpoint Assessment Server")
        self._setup_error_handlers()
        self._setup_agent_auth()
        self._setup_routes()

    def _setup_error_handlers(self):
        """Translate domain and framework errors into ErrorResponse bodies."""

        @self.app.exception_handler(StarletteHTTPException)
        async def http_error(request: Request, exc: StarletteHTTPException):
            return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

        @self.app.exception_handler(RequestValidationError)
        async def validation_error(request: Request, exc: RequestValidationError):
            details = "; ".join(
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
            )
            return error_response(422, f"Invalid request: {details}")

        @self.app.exception_handler(CheckValidationError)
        async def check_validation_error(request: Request, exc: CheckValidationError):
            return error_response(422, str(exc))

        @self.app.exception_handler(NotFoundError)
        async def not_found_error(request: Request, exc: NotFoundError):
            return error_response(404, str(exc))

        @self.app.exception_handler(AuthenticationError)
        async def authentication_error(request: Request, exc: AuthenticationError):
            return error_response(401, str(exc), headers={"WWW-Authenticate": "Bearer"})

    def _setup_agent_auth(self):
        """
        Reject agent protocol requests without the right secret.

        Done as middleware rather than a dependency so the check happens
        before FastAPI parses or validates the request body.
        """

        @self.app.middleware("http")
        async def require_agent_secret(request: Request, call_next):
            if request.url.path.startswith(AGENT_API_PREFIX):
                if not secrets_match(request.headers.get(AGENT_SECRET_HEADER), self.agent_secret):
                    logger.warning(f"Rejected agent request to {request.url.path} from {request.client}")
                    return error_response(401, "Invalid or missing agent secret")
            return await call_next(request)

    def _setup_routes(self):
        """
        Configure the HTTP routes.

        Handlers are plain functions: the Coordinator and its repository are
        synchronous, so FastAPI runs them in its threadpool.
        """

        @self.app.get("/health")
        def health():
            return {"status": "ok"}

        # Agent protocol

        agent_router = APIRouter(prefix="/api/agent", tags=["agent"])

        @agent_router.post("/register", response_model=RegisterResponse)
        def register(request: RegisterRequest):
            return self.coordinator.register(request)

        @agent_router.post("/heartbeat", response_model=HeartbeatResponse)
        def heartbeat(request: HeartbeatRequest):
            return self.coordinator.heartbeat(request)

        @agent_router.get("/checks", response_model=ChecksResponse)
        def get_checks():
            return self.coordinator.list_agent_checks()

        @agent_router.post("/results", response_model=SubmitResultsResponse)
        def submit_results(request: SubmitResultsBatch):
            return self.coordinator.submit_results(request)

        self.app.include_router(agent_router)

        # Admin API

        bearer = HTTPBearer(auto_error=False)

        def require_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)):
            if not self.admin_token:
                raise HTTPException(status_code=503, detail="Admin API is disabled: ADMIN_TOKEN is not configured")
            provided = credentials.credentials if credentials else None
            if not secrets_match(provided, self.admin_token):
                raise AuthenticationError("Invalid authentication credentials")

        admin_router = APIRouter(prefix="/api", tags=["admin"], dependencies=[Depends(require_admin)])

        @admin_router.get("/endpoints", response_model=List[Endpoint])
        def list_endpoints():
            return self.coordinator.list_endpoints()

        @admin_router.get("/endpoints/{endpoint_id}", response_model=EndpointDetail)
        def get_endpoint(endpoint_id: uuid.UUID):
            """Endpoint with its latest snapshot and latest result per check."""
            return self.coordinator.get_endpoint_detail(endpoint_id)

        @admin_router.delete("/endpoints/{endpoint_id}", response_model=DeleteResponse)
        def delete_endpoint(endpoint_id: uuid.UUID):
            self.coordinator.delete_endpoint(endpoint_id)
            return DeleteResponse(message="Endpoint deleted")

        @admin_router.get("/checks", response_model=List[CheckDefinition])
        def list_checks():
            return self.coordinator.list_checks()

        @admin_router.post("/checks", response_model=CheckDefinition)
        def create_check(request: CheckDefinitionRequest):
            return self.coordinator.create_check(request)

        @admin_router.get("/checks/{check_id}", response_model=CheckDefinition)
        def get_check(check_id: uuid.UUID):
            return self.coordinator.get_check(check_id)

        @admin_router.put("/checks/{check_id}", response_model=CheckDefinition)
        def update_check(check_id: uuid.UUID, request: CheckDefinitionRequest):
            return self.coordinator.update_check(check_id, request)

        @admin_router.delete("/checks/{check_id}", response_model=DeleteResponse)
        def delete_check(check_id: uuid.UUID):
            self.coordinator.delete_check(check_id)
            return DeleteResponse(message="Check deleted")

        @admin_router.get("/results", response_model=List[ResultResponse])
        def list_results(
            endpoint_id: Optional[uuid.UUID] = None,
            check_id: Optional[uuid.UUID] = None,
            limit: int = Query(default=100, ge=1, le=1000),
        ):
            return self.coordinator.list_results(endpoint_id, check_id, limit)

        @admin_router.get("/reports/summary", response_model=DashboardSummary)
        def get_summary():
            return self.coordinator.get_summary()

        @admin_router.get("/check-types", response_model=Dict[str, str])
        def get_check_types():
            return self.coordinator.check_types()

        self.app.include_router(admin_router)
