"""story-relay: stateless relay between the story client and its AI servers."""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthManager, require_principal
from config import Settings, load_settings
from dispatcher import RelayDispatcher
from errors import (
    AiServerError,
    AuthenticationError,
    AuthorizationError,
    ErrorResponse,
    RelayValidationError,
    validation_errors_from,
)
from health import HealthAggregator
from middleware import RequestContextMiddleware
from models import (
    CharacterIndexRequest,
    CharacterSetRequest,
    ChatMessageRequest,
    ChatMessageResponse,
    GameProgressUpdateRequest,
    HealthReport,
    ImageGenerationRequest,
    ImageGenerationResponse,
    MusicRequest,
    MusicResponse,
    NovelIndexRequest,
    NovelStyleLearnRequest,
    NovelStyleLearnResponse,
    Principal,
    SubtreeRegenerationRequest,
    SubtreeRegenerationResponse,
)
from services import AnalysisClient, ChatClient, ImageClient, MusicClient

VERSION = "1.0.0"

logger = logging.getLogger("story-relay")


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


# Exception handlers

def _error_response(request: Request, status: int, error: str, message: str,
                    validation_errors: Optional[Dict[str, str]] = None) -> JSONResponse:
    envelope = ErrorResponse(
        status=status,
        error=error,
        message=message,
        path=request.url.path,
        validation_errors=validation_errors,
    )
    return JSONResponse(status_code=status, content=envelope.to_content())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Handle FastAPI body validation errors."""
    fields = validation_errors_from(exc.errors())
    logger.warning(f"Validation error on {request.url.path}: {fields}")
    return _error_response(request, 400, "Validation Failed", "Invalid input parameters", fields)


async def relay_validation_handler(request: Request, exc: RelayValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.field_errors}")
    return _error_response(request, 400, "Validation Failed", "Invalid input parameters", exc.field_errors)


async def authentication_handler(request: Request, exc: AuthenticationError):
    return _error_response(request, 401, "Authentication Failed", AuthenticationError.MESSAGE)


async def authorization_handler(request: Request, exc: AuthorizationError):
    return _error_response(request, 403, "Access Denied", AuthorizationError.MESSAGE)


async def ai_server_handler(request: Request, exc: AiServerError):
    logger.error(f"AI server error ({exc.server_type}) on {request.url.path}: {exc}")
    return _error_response(request, 502, "AI Server Error", str(exc))


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with the standard envelope."""
    return _error_response(request, exc.status_code, "HTTP Error", str(exc.detail))


async def global_exception_handler(request: Request, exc: Exception):
    """Last resort: log the detail, expose a generic message."""
    logger.error(f"Unhandled exception in {request.url.path}: {exc}", exc_info=True)
    return _error_response(request, 500, "Internal Server Error", "An unexpected error occurred")


# Routes

router = APIRouter(prefix="/ai")


def get_dispatcher(request: Request) -> RelayDispatcher:
    return request.app.state.dispatcher


@router.post("/analyze", tags=["Analysis"])
async def analyze_novel(
    payload: Dict[str, Any] = Body(...),
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Extract summary, characters and gauges from novel text."""
    return await dispatcher.analyze(payload)


@router.post("/analyze-from-s3", tags=["Analysis"])
async def analyze_novel_from_s3(
    payload: Dict[str, Any] = Body(...),
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    return await dispatcher.analyze_from_s3(payload)


@router.post("/generate", tags=["Analysis"])
async def generate_story(
    payload: Dict[str, Any] = Body(...),
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    return await dispatcher.generate(payload)


@router.post("/generate-next-episode", tags=["Analysis"])
async def generate_next_episode(
    payload: Dict[str, Any] = Body(...),
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    return await dispatcher.generate_next_episode(payload)


@router.post("/finalize-analysis", tags=["Analysis"])
async def finalize_analysis(
    payload: Dict[str, Any] = Body(...),
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """Generate final endings from the selected gauges."""
    return await dispatcher.finalize_analysis(payload)


@router.post("/regenerate-subtree", response_model=SubtreeRegenerationResponse, tags=["Analysis"])
async def regenerate_subtree(
    payload: SubtreeRegenerationRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.regenerate_subtree(payload)


@router.post("/generate-image", response_model=ImageGenerationResponse, tags=["Image"])
async def generate_image(
    payload: ImageGenerationRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.generate_image(payload)


@router.post("/learn-style", response_model=NovelStyleLearnResponse, tags=["Image"])
async def learn_style(
    payload: NovelStyleLearnRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.learn_style(payload)


@router.post("/chat/index-character", tags=["Chat"])
async def index_character(
    payload: CharacterIndexRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> bool:
    return await dispatcher.index_character(payload)


@router.post("/chat/index-novel", tags=["Chat"])
async def index_novel(
    payload: NovelIndexRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> bool:
    return await dispatcher.index_novel(payload)


@router.post("/chat/set-character", tags=["Chat"])
async def set_character(
    payload: CharacterSetRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> bool:
    return await dispatcher.set_character(payload)


@router.post("/chat/message", response_model=ChatMessageResponse, tags=["Chat"])
async def send_chat_message(
    payload: ChatMessageRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.send_message(payload)


@router.post("/chat/update-progress", tags=["Chat"])
async def update_game_progress(
    payload: GameProgressUpdateRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
) -> bool:
    return await dispatcher.update_progress(payload)


@router.post("/recommend-music", response_model=MusicResponse, tags=["Music"])
async def recommend_music(
    payload: MusicRequest,
    principal: Principal = Depends(require_principal),
    dispatcher: RelayDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.recommend_music(payload)


@router.get("/health", response_model=HealthReport, tags=["System"])
async def health(dispatcher: RelayDispatcher = Depends(get_dispatcher)):
    """Relay and AI server health. Public; always answers 200."""
    return await dispatcher.health()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(f"story-relay {VERSION} starting on {settings.HOST}:{settings.PORT} (debug: {settings.DEBUG})")
    for client in app.state.clients:
        logger.info(f"  {client.name} AI server: {client.descriptor.base_url}")
    yield
    logger.info("Shutting down story-relay...")
    for client in app.state.clients:
        try:
            await client.close()
        except Exception as e:
            logger.error(f"Error closing {client.name} client: {e}")


def create_app(settings: Optional[Settings] = None, transport=None) -> FastAPI:
    """Build the relay application.

    Settings are validated once here and every component gets what it needs by
    reference. ``transport`` replaces the httpx transport of all clients.
    """
    if settings is None:
        settings = load_settings()
    else:
        settings.validate_settings()
    configure_logging(settings)

    descriptors = settings.descriptors()
    analysis = AnalysisClient(descriptors["Analysis"], transport=transport)
    image = ImageClient(descriptors["Image"], transport=transport)
    chat = ChatClient(descriptors["Chat"], transport=transport)
    music = MusicClient(descriptors["Music"], transport=transport)
    clients = [analysis, image, chat, music]

    app = FastAPI(
        title="story-relay",
        description="Relay between the story client and its AI servers",
        version=VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.clients = clients
    app.state.auth_manager = AuthManager(
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
        required_role=settings.JWT_REQUIRED_ROLE,
        default_roles=settings.JWT_DEFAULT_ROLES,
        trust_token_roles=settings.JWT_TRUST_TOKEN_ROLES,
    )
    app.state.dispatcher = RelayDispatcher(analysis, image, chat, music, HealthAggregator(clients))

    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(RelayValidationError, relay_validation_handler)
    app.add_exception_handler(AuthenticationError, authentication_handler)
    app.add_exception_handler(AuthorizationError, authorization_handler)
    app.add_exception_handler(AiServerError, ai_server_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    app.include_router(router)

    @app.get("/", tags=["Root"])
    async def root():
        return {
            "service": "story-relay",
            "version": VERSION,
            "endpoints": {
                "health": "/ai/health",
                "docs": "/docs" if settings.DEBUG else None,
            },
        }

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = load_settings()
    uvicorn.run("main:create_app", factory=True, host=_settings.HOST, port=_settings.PORT,
                log_level="debug" if _settings.DEBUG else "info")
