"""Clients for the four downstream AI servers."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping
from urllib.parse import quote_plus

import httpx

from models import (
    CharacterIndexRequest,
    CharacterSetRequest,
    ChatMessageRequest,
    ChatMessageResponse,
    GameProgressUpdateRequest,
    ImageGenerationRequest,
    ImageGenerationResponse,
    MusicAnalysis,
    MusicRequest,
    MusicResponse,
    MusicTrack,
    NovelIndexRequest,
    NovelStyleLearnRequest,
    NovelStyleLearnResponse,
    SubtreeRegenerationRequest,
    SubtreeRegenerationResponse,
)
from proxy import EmptyResponseError, Policy, ServiceClient, probe_status
from reconcile import chat_reply, reconcile_chat, reconcile_image, reconcile_music, reconcile_style, reconcile_subtree

logger = logging.getLogger("story-relay.services")

PLACEHOLDER_IMAGE_URL = "https://via.placeholder.com/800x600/1a1a1a/ffffff?text="
CHARACTER_ID_PREFIX = "story_"
DEFAULT_CHARACTER_NAME = "Character"
CHAT_FALLBACK_MESSAGE = "Sorry, I can't talk right now. Please try again in a moment."


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_mapping(body: Any) -> Dict[str, Any]:
    if not isinstance(body, Mapping):
        raise ValueError(f"Expected a JSON object, got {type(body).__name__}")
    return dict(body)


def _status_equals(expected: str):
    def translate(body: Any) -> bool:
        return _require_mapping(body).get("status") == expected
    return translate


class AnalysisClient(ServiceClient):
    """Novel analysis and story generation server. No operation has a fallback."""

    policies = {
        "analyze": Policy.FAIL_FAST,
        "analyze_from_s3": Policy.FAIL_FAST,
        "generate": Policy.FAIL_FAST,
        "generate_next_episode": Policy.FAIL_FAST,
        "finalize_analysis": Policy.FAIL_FAST,
        "regenerate_subtree": Policy.FAIL_FAST,
    }

    async def _forward(self, operation: str, path: str, request: Mapping[str, Any], action: str) -> Dict[str, Any]:
        logger.info(f"Calling analysis AI server: {action.lower()} ({len(request)} fields)")
        return await self.call(
            operation, "POST", path,
            payload=dict(request),
            translate=_require_mapping,
            action=action,
        )

    async def analyze(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        """Extract summary, characters and gauges from novel text."""
        return await self._forward("analyze", "/analyze", request, "Analysis")

    async def analyze_from_s3(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        """Same as :meth:`analyze`, for a novel referenced by a storage locator."""
        return await self._forward("analyze_from_s3", "/analyze-from-s3", request, "S3 analysis")

    async def generate(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._forward("generate", "/generate", request, "Story generation")

    async def generate_next_episode(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._forward(
            "generate_next_episode", "/generate-next-episode", request, "Next episode generation"
        )

    async def finalize_analysis(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        """Generate the final endings from the selected gauges."""
        return await self._forward("finalize_analysis", "/finalize-analysis", request, "Finalize analysis")

    async def regenerate_subtree(self, request: SubtreeRegenerationRequest) -> SubtreeRegenerationResponse:
        logger.info(
            f"Regenerating subtree from node {request.parent_node.node_id} "
            f"(depth {request.current_depth}/{request.max_depth})"
        )
        response = await self.call(
            "regenerate_subtree", "POST", "/regenerate-subtree",
            payload=request.model_dump(mode="json", by_alias=True, exclude_none=True),
            translate=lambda body: reconcile_subtree(_require_mapping(body)),
            action="Subtree regeneration",
        )
        logger.info(f"Subtree regeneration completed: {response.total_nodes_regenerated} nodes regenerated")
        return response


class ImageClient(ServiceClient):
    """Image generation server. Both operations degrade instead of failing."""

    policies = {
        "generate_image": Policy.FALLBACK,
        "learn_style": Policy.FALLBACK,
    }

    def is_healthy(self, response: httpx.Response) -> bool:
        return probe_status(response) == "running"

    @staticmethod
    def build_prompt(request: ImageGenerationRequest) -> str:
        prompt = f"{request.episode_title}: {request.node_text}"
        if request.situation:
            prompt += f". {request.situation}"
        return prompt

    def build_payload(self, request: ImageGenerationRequest) -> Dict[str, Any]:
        payload = {
            "story_id": request.story_id or f"story_{uuid.uuid4()}",
            "user_prompt": self.build_prompt(request),
            "context_text": request.node_text,
        }
        if request.image_s3_url:
            payload["s3_url"] = request.image_s3_url
        else:
            logger.error("No S3 presigned URL provided for image upload; the image server will not be able to store it")
        return payload

    @staticmethod
    def placeholder(request: ImageGenerationRequest) -> ImageGenerationResponse:
        """Visibly fake image record used when the image server is unavailable."""
        image_url = PLACEHOLDER_IMAGE_URL + quote_plus(request.episode_title)
        return ImageGenerationResponse(
            image_url=image_url,
            file_key=image_url,
            enhanced_prompt=request.node_text,
            story_id="mock_story",
            node_id="mock_node",
            generated_at=_now(),
            degraded=True,
        )

    @staticmethod
    def _translate_image(body: Any) -> ImageGenerationResponse:
        fields = reconcile_image(_require_mapping(body))
        if not fields["image_url"]:
            raise EmptyResponseError("Image server returned no image URL")
        return ImageGenerationResponse(file_key=fields["image_url"], generated_at=_now(), **fields)

    async def generate_image(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        if request.generate_image is False:
            logger.info("Image generation skipped as per request")
            return ImageGenerationResponse()

        logger.info(
            f"Generating image for story {request.story_id}, node {request.node_id}, "
            f"episode '{request.episode_title}' (order {request.episode_order})"
        )
        response = await self.call(
            "generate_image", "POST", "/api/v1/generate-image",
            payload=self.build_payload(request),
            translate=self._translate_image,
            fallback=lambda: self.placeholder(request),
            action="Image generation",
        )
        logger.info(f"Image generation finished: {response.image_url}")
        return response

    async def learn_style(self, request: NovelStyleLearnRequest) -> NovelStyleLearnResponse:
        logger.info(f"Learning novel style for story: {request.story_id}")
        return await self.call(
            "learn_style", "POST", "/api/v1/learn-style",
            payload=request.model_dump(mode="json", exclude_none=True),
            translate=lambda body: reconcile_style(_require_mapping(body)),
            fallback=lambda: NovelStyleLearnResponse(degraded=True),
            action="Style learning",
        )


def derive_character_name(character_id: str) -> str:
    """Best-effort character name from an id shaped like ``story_<hash>_<name>``.

    Everything after the second underscore is taken as the name, so
    ``story_39a5d3b1_Mary_Jane`` gives ``Mary_Jane``. Any other shape gives the
    generic placeholder. This is a heuristic; ids are not guaranteed to follow
    the pattern.
    """
    if character_id and character_id.startswith(CHARACTER_ID_PREFIX):
        # Trailing separators carry no name
        parts = character_id.rstrip("_").split("_")
        if len(parts) >= 3:
            name = "_".join(parts[2:])
            if name:
                return name
    return DEFAULT_CHARACTER_NAME


class ChatClient(ServiceClient):
    """RAG server behind the character chat."""

    policies = {
        "index_character": Policy.FAIL_FAST,
        "index_novel": Policy.FAIL_FAST,
        "set_character": Policy.FAIL_FAST,
        "update_progress": Policy.FAIL_FAST,
        "send_message": Policy.FALLBACK,
    }

    def is_healthy(self, response: httpx.Response) -> bool:
        return probe_status(response) == "running"

    @staticmethod
    def build_character_description(request: CharacterIndexRequest) -> str:
        sections = []
        if request.description:
            sections.append(f"Description:\n{request.description}\n")
        if request.personality:
            sections.append(f"Personality:\n{request.personality}\n")
        if request.background:
            sections.append(f"Background:\n{request.background}\n")
        if request.dialogue_samples:
            lines = "".join(f"- {line}\n" for line in request.dialogue_samples)
            sections.append(f"Dialogue samples:\n{lines}")
        if request.relationships:
            lines = "".join(f"- {who}: {relation}\n" for who, relation in request.relationships.items())
            sections.append(f"Relationships:\n{lines}")
        if request.additional_info:
            lines = "".join(f"- {key}: {value}\n" for key, value in request.additional_info.items())
            sections.append(f"Additional info:\n{lines}")
        return "\n".join(sections)

    async def index_character(self, request: CharacterIndexRequest) -> bool:
        logger.info(f"Indexing character: {request.name} ({request.character_id})")
        indexed = await self.call(
            "index_character", "POST", "/api/ai/character",
            payload={
                "session_id": request.character_id,
                "character_name": request.name,
                "character_description": self.build_character_description(request),
            },
            translate=_status_equals("character_set"),
            action="Character indexing",
        )
        logger.info(f"Character indexing {'successful' if indexed else 'rejected'}: {request.character_id}")
        return indexed

    async def index_novel(self, request: NovelIndexRequest) -> bool:
        logger.info(f"Indexing novel: {request.title} ({request.story_id}) from {request.bucket}/{request.file_key}")
        return await self.call(
            "index_novel", "POST", "/api/ai/train-from-s3",
            payload={
                "session_id": request.story_id,
                "file_key": request.file_key,
                "bucket": request.bucket,
                # characters are set later through set_character
                "character_name": "",
            },
            translate=_status_equals("trained"),
            action="Novel indexing",
        )

    async def set_character(self, request: CharacterSetRequest) -> bool:
        logger.info(f"Setting character: {request.character_name} ({request.character_id})")
        return await self.call(
            "set_character", "POST", "/api/ai/character",
            payload={
                "session_id": request.character_id,
                "character_name": request.character_name,
                "character_description": request.character_description or "",
            },
            translate=_status_equals("character_set"),
            action="Character update",
        )

    async def update_progress(self, request: GameProgressUpdateRequest) -> bool:
        logger.info(f"Updating game progress for character: {request.character_id}")
        return await self.call(
            "update_progress", "POST", "/api/ai/update",
            payload={
                "session_id": request.character_id,
                "content": request.content,
                "metadata": request.metadata or {},
            },
            translate=_status_equals("updated"),
            action="Game progress update",
        )

    @staticmethod
    def build_chat_payload(request: ChatMessageRequest) -> Dict[str, str]:
        # The RAG vector store is keyed by story, so the story id wins over the character id
        session_id = request.story_id or request.character_id
        character_name = request.character_name or derive_character_name(request.character_id)
        return {
            "session_id": session_id,
            "character_name": character_name,
            "message": request.user_message,
        }

    @staticmethod
    def apology(request: ChatMessageRequest) -> ChatMessageResponse:
        return ChatMessageResponse(
            character_id=request.character_id,
            ai_message=CHAT_FALLBACK_MESSAGE,
            sources=[],
            timestamp=_now(),
            degraded=True,
        )

    @staticmethod
    def _translate_chat(request: ChatMessageRequest):
        def translate(body: Any) -> ChatMessageResponse:
            body = _require_mapping(body)
            if not chat_reply(body):
                raise EmptyResponseError("Chat server returned an empty reply")
            return reconcile_chat(body, request.character_id, _now())
        return translate

    async def send_message(self, request: ChatMessageRequest) -> ChatMessageResponse:
        payload = self.build_chat_payload(request)
        logger.info(
            f"Sending message to character {payload['character_name']} "
            f"(session {payload['session_id']}, {len(request.user_message)} chars)"
        )
        return await self.call(
            "send_message", "POST", "/api/ai/chat",
            payload=payload,
            translate=self._translate_chat(request),
            fallback=lambda: self.apology(request),
            action="Chat",
        )


class MusicClient(ServiceClient):
    """Background music recommendation server."""

    policies = {
        "recommend": Policy.FALLBACK,
    }

    def is_healthy(self, response: httpx.Response) -> bool:
        return probe_status(response) == "healthy"

    @staticmethod
    def default_recommendation() -> MusicResponse:
        """Neutral-mood answer used while the music server is unavailable."""
        return MusicResponse(
            analysis=MusicAnalysis(
                primary_mood="peaceful",
                intensity=0.5,
                reasoning="Music server unavailable, using default mood",
            ),
            music=MusicTrack(mood="peaceful", filename="default.mp3"),
            degraded=True,
        )

    @staticmethod
    def _translate_music(body: Any) -> MusicResponse:
        response = reconcile_music(_require_mapping(body))
        if response.music is None:
            raise EmptyResponseError("Music server returned no track")
        return response

    async def recommend(self, request: MusicRequest) -> MusicResponse:
        prompt = request.prompt
        logger.info(f"Requesting music recommendation for prompt: {prompt[:50]}{'...' if len(prompt) > 50 else ''}")
        response = await self.call(
            "recommend", "POST", "/api/analyze",
            payload={"prompt": prompt},
            translate=self._translate_music,
            fallback=self.default_recommendation,
            action="Music recommendation",
        )
        if response.music is not None:
            logger.info(f"Music recommended: mood={response.music.mood}, file={response.music.filename}")
        return response
