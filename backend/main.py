from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from datetime import timedelta
from functools import partial
from teleconsulta.routes import calls, websocket
from teleconsulta.core.config import settings
from teleconsulta.core.errors import TeleconsultaError
from teleconsulta.core.firebase import FirebaseService
from teleconsulta.core.websocket import ConnectionManager
from teleconsulta.rtc.ice import build_rtc_configuration
from teleconsulta.rtc.media import MediaAcquisition, MediaConstraints
from teleconsulta.rtc.peer import PeerConnectionManager
from teleconsulta.services.appointments import AppointmentDirectory, build_invite_link
from teleconsulta.services.room_janitor import run_janitor
from teleconsulta.session.manager import SessionManager
from teleconsulta.signaling import create_signaling_store
from teleconsulta.utils.logger import safe_print
from dotenv import load_dotenv
import asyncio
import json
import traceback

load_dotenv()


# Custom JSON encoder that preserves Unicode characters (patient and professional names)
class UnicodeJSONResponse(JSONResponse):
    def render(self, content) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


def _cors_headers(request: Request, config) -> dict:
    origin = request.headers.get("origin")
    headers = {}
    if origin in config.CORS_ORIGINS:
        headers["Access-Control-Allow-Origin"] = origin
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def create_app(config=settings, media=None, peer_factory=None, store=None, appointments=None) -> FastAPI:
    """Build the API. Tests pass their own store, media source and peer factory."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        firebase = None
        if (store is None and config.SIGNALING_BACKEND == "firestore") or (appointments is None and config.APPOINTMENT_LOOKUP):
            firebase = FirebaseService()

        signaling = store or create_signaling_store(config, firebase)
        ws_manager = ConnectionManager()
        app.state.ws_manager = ws_manager
        app.state.appointments = appointments or (AppointmentDirectory(firebase.firestore) if firebase and config.APPOINTMENT_LOOKUP else None)
        app.state.sessions = SessionManager(
            store=signaling,
            media=media or MediaAcquisition(MediaConstraints.from_settings(config)),
            peer_factory=peer_factory or partial(PeerConnectionManager, configuration=build_rtc_configuration(config)),
            invite_link_builder=partial(build_invite_link, config.APP_BASE_URL),
            publisher=ws_manager.broadcast_to_session,
            retention=config.SESSION_RETENTION_SECONDS,
        )
        safe_print(f"Teleconsulta API started with the {config.SIGNALING_BACKEND} signaling backend")

        janitor = None
        if config.ROOM_JANITOR_INTERVAL_SECONDS > 0:
            janitor = asyncio.ensure_future(run_janitor(
                signaling,
                timedelta(minutes=config.ROOM_TTL_MINUTES),
                config.ROOM_JANITOR_INTERVAL_SECONDS,
            ))
        try:
            yield
        finally:
            if janitor is not None:
                janitor.cancel()
            await app.state.sessions.shutdown()
            await signaling.close()
            safe_print("Teleconsulta API stopped")

    app = FastAPI(
        title="Teleconsulta API",
        description="Video consultation signaling and call sessions",
        version="1.0.0",
        openapi_tags=[
            {"name": "Teleconsulta", "description": "Join screen and call session endpoints"},
            {"name": "WebSocket", "description": "WebSocket endpoints"},
        ],
        # Configure default JSON response class to preserve Unicode
        default_response_class=UnicodeJSONResponse,
        lifespan=lifespan,
    )

    # Add request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming API requests"""
        method = request.method
        path = request.url.path
        query_params = str(request.query_params) if request.query_params else ""

        safe_print("\n" + "=" * 60)
        safe_print(f"[{method}] {path}")
        if query_params:
            safe_print(f"Query Params: {query_params}")
        safe_print(f"Client: {request.client.host if request.client else 'Unknown'}")
        safe_print("=" * 60)

        response = await call_next(request)

        safe_print(f"[{method}] {path} - Status: {response.status_code}")
        safe_print("=" * 60 + "\n")
        return response

    # Configure CORS - MUST be added before routes
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    # Exception handlers keep CORS headers on error responses
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return UnicodeJSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=_cors_headers(request, config)
        )

    @app.exception_handler(TeleconsultaError)
    async def teleconsulta_exception_handler(request: Request, exc: TeleconsultaError):
        safe_print(f"Call error on {request.url.path}: {exc}")
        return UnicodeJSONResponse(
            status_code=502,
            content={"detail": exc.user_message, "error": type(exc).__name__},
            headers=_cors_headers(request, config)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return UnicodeJSONResponse(
            status_code=422,
            content={"detail": jsonable_errors(exc)},
            headers=_cors_headers(request, config)
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        try:
            traceback.print_exc()
        except UnicodeEncodeError:
            safe_print("Traceback contains Unicode - check logs")
        return UnicodeJSONResponse(
            status_code=500,
            content={"detail": f"Internal server error: {str(exc)}"},
            headers=_cors_headers(request, config)
        )

    # Include routers
    app.include_router(calls.router, prefix="/api/teleconsulta", tags=["Teleconsulta"])
    app.include_router(websocket.router, prefix="/api", tags=["WebSocket"])

    @app.get("/")
    async def root():
        return {"message": "Welcome to the Teleconsulta API"}

    @app.get("/api/health")
    async def health_check():
        sessions = getattr(app.state, "sessions", None)
        return {
            "status": "healthy",
            "signaling_backend": config.SIGNALING_BACKEND,
            "active_sessions": sessions.active_count if sessions is not None else 0,
        }

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    # pydantic error contexts may carry exception objects
    return json.loads(json.dumps(exc.errors(), default=str))


app = create_app()

# Run uvicorn server when file is executed directly
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )
