"""Relay dispatcher: validates a relay request and selects the client operation."""
import logging
from typing import Any, Dict, Mapping, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from errors import RelayValidationError, validation_errors_from
from health import HealthAggregator
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
    SubtreeRegenerationRequest,
    SubtreeRegenerationResponse,
)
from services import AnalysisClient, ChatClient, ImageClient, MusicClient

logger = logging.getLogger("story-relay.dispatcher")

M = TypeVar("M", bound=BaseModel)


def validate_request(model: Type[M], payload: Union[M, Mapping[str, Any]]) -> M:
    """Coerce a raw payload into its request model.

    Raises:
        RelayValidationError: With per-field detail when the payload is invalid.
    """
    if isinstance(payload, model):
        return payload
    if not isinstance(payload, Mapping):
        raise RelayValidationError({"body": "Request body must be a JSON object"})
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise RelayValidationError(validation_errors_from(e.errors())) from e


def validate_mapping(payload: Any) -> Dict[str, Any]:
    """Open key/value operations only require a JSON object."""
    if not isinstance(payload, Mapping):
        raise RelayValidationError({"body": "Request body must be a JSON object"})
    return dict(payload)


class RelayDispatcher:
    """One entry point per relay operation.

    The dispatcher does not retry and does not catch downstream errors: the
    timeout and fallback policy live in the service clients, and errors are
    mapped into the error envelope at the HTTP boundary.
    """

    def __init__(
        self,
        analysis: AnalysisClient,
        image: ImageClient,
        chat: ChatClient,
        music: MusicClient,
        health: HealthAggregator,
    ):
        self.analysis = analysis
        self.image = image
        self.chat = chat
        self.music = music
        self.health_aggregator = health

    # Analysis server (open key/value payloads)

    async def analyze(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        request = validate_mapping(payload)
        if "novelText" in request:
            logger.info(f"Analyze request: novel text of {len(str(request['novelText']))} characters")
        return await self.analysis.analyze(request)

    async def analyze_from_s3(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.analysis.analyze_from_s3(validate_mapping(payload))

    async def generate(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        request = validate_mapping(payload)
        logger.info(f"Generate request with fields: {sorted(request)}")
        return await self.analysis.generate(request)

    async def generate_next_episode(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.analysis.generate_next_episode(validate_mapping(payload))

    async def finalize_analysis(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.analysis.finalize_analysis(validate_mapping(payload))

    # Fixed-schema operations

    async def regenerate_subtree(
        self, payload: Union[SubtreeRegenerationRequest, Mapping[str, Any]]
    ) -> SubtreeRegenerationResponse:
        return await self.analysis.regenerate_subtree(validate_request(SubtreeRegenerationRequest, payload))

    async def generate_image(
        self, payload: Union[ImageGenerationRequest, Mapping[str, Any]]
    ) -> ImageGenerationResponse:
        return await self.image.generate_image(validate_request(ImageGenerationRequest, payload))

    async def learn_style(
        self, payload: Union[NovelStyleLearnRequest, Mapping[str, Any]]
    ) -> NovelStyleLearnResponse:
        return await self.image.learn_style(validate_request(NovelStyleLearnRequest, payload))

    async def index_character(self, payload: Union[CharacterIndexRequest, Mapping[str, Any]]) -> bool:
        return await self.chat.index_character(validate_request(CharacterIndexRequest, payload))

    async def index_novel(self, payload: Union[NovelIndexRequest, Mapping[str, Any]]) -> bool:
        return await self.chat.index_novel(validate_request(NovelIndexRequest, payload))

    async def set_character(self, payload: Union[CharacterSetRequest, Mapping[str, Any]]) -> bool:
        return await self.chat.set_character(validate_request(CharacterSetRequest, payload))

    async def send_message(
        self, payload: Union[ChatMessageRequest, Mapping[str, Any]]
    ) -> ChatMessageResponse:
        return await self.chat.send_message(validate_request(ChatMessageRequest, payload))

    async def update_progress(self, payload: Union[GameProgressUpdateRequest, Mapping[str, Any]]) -> bool:
        return await self.chat.update_progress(validate_request(GameProgressUpdateRequest, payload))

    async def recommend_music(self, payload: Union[MusicRequest, Mapping[str, Any]]) -> MusicResponse:
        return await self.music.recommend(validate_request(MusicRequest, payload))

    async def health(self) -> HealthReport:
        return await self.health_aggregator.check()
