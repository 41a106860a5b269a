"""Data models for story-relay requests, responses and principals."""
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value


NonBlankStr = Annotated[str, AfterValidator(_not_blank)]


class CamelModel(BaseModel):
    """Model exchanged with clients using camelCase JSON names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Principal(BaseModel):
    """Authenticated identity, scoped to one request."""
    subject: str
    roles: List[str] = []


# Image generation

class ImageGenerationRequest(CamelModel):
    story_id: Optional[str] = None
    node_id: Optional[str] = None
    node_text: NonBlankStr = Field(max_length=1000)
    situation: Optional[str] = Field(default=None, max_length=200)
    npc_emotions: Optional[Dict[str, str]] = None
    episode_title: NonBlankStr = Field(max_length=200)
    episode_order: int = Field(ge=0)
    node_depth: Optional[int] = Field(default=None, ge=0)
    image_style: Optional[str] = Field(default=None, max_length=100)
    additional_context: Optional[str] = Field(default=None, max_length=500)
    generate_image: Optional[bool] = True
    novel_s3_bucket: Optional[str] = None
    novel_s3_key: Optional[str] = None
    image_s3_url: Optional[str] = None


class ImageGenerationResponse(CamelModel):
    image_url: Optional[str] = None
    file_key: Optional[str] = None
    enhanced_prompt: Optional[str] = None
    story_id: Optional[str] = None
    node_id: Optional[str] = None
    generated_at: Optional[str] = None
    degraded: bool = False


class NovelStyleLearnRequest(BaseModel):
    """Style learning request; the image server's snake_case names are the contract."""
    story_id: NonBlankStr
    novel_text: Optional[str] = None
    title: Optional[str] = None
    novel_s3_bucket: Optional[str] = None
    novel_s3_key: Optional[str] = None
    thumbnail_s3_url: Optional[str] = None
    thumbnail_s3_bucket: Optional[str] = None
    thumbnail_s3_key: Optional[str] = None


class NovelStyleLearnResponse(BaseModel):
    story_id: Optional[str] = None
    style_summary: Optional[str] = None
    atmosphere: Optional[str] = None
    visual_style: Optional[str] = None
    created_at: Optional[str] = None
    thumbnail_image_url: Optional[str] = None
    degraded: bool = False


# Subtree regeneration

class ParentNodeInfo(CamelModel):
    node_id: NonBlankStr = Field(max_length=100)
    text: NonBlankStr = Field(max_length=1000)
    choices: Optional[List[str]] = None
    situation: Optional[str] = Field(default=None, max_length=200)
    npc_emotions: Optional[Dict[str, str]] = None
    tags: Optional[List[str]] = None
    depth: int = Field(ge=0)


class SubtreeRegenerationRequest(CamelModel):
    episode_title: NonBlankStr = Field(max_length=200)
    episode_order: int = Field(ge=0)
    parent_node: ParentNodeInfo
    current_depth: int = Field(ge=0)
    max_depth: int = Field(ge=1)
    novel_context: Optional[str] = Field(default=None, max_length=10000)
    previous_choices: Optional[List[str]] = None
    selected_gauge_ids: Optional[List[str]] = None
    # Cached analysis results; make novel_context optional
    summary: Optional[str] = None
    characters_json: Optional[str] = None
    gauges_json: Optional[str] = None


class Choice(CamelModel):
    text: Optional[str] = None
    tags: List[str] = []
    immediate_reaction: Optional[str] = None


class NodeDetails(CamelModel):
    situation: Optional[str] = None
    npc_emotions: Dict[str, str] = {}
    tags: List[str] = []


class RegeneratedNode(CamelModel):
    node_id: Optional[str] = Field(default=None, alias="id")
    text: Optional[str] = None
    choices: List[Choice] = []
    depth: Optional[int] = None
    parent_id: Optional[str] = None
    details: NodeDetails = Field(default_factory=NodeDetails)
    children: List["RegeneratedNode"] = []


class SubtreeRegenerationResponse(CamelModel):
    status: Optional[str] = None
    message: Optional[str] = None
    regenerated_nodes: List[RegeneratedNode] = []
    total_nodes_regenerated: int = 0


# Character chat

class ConversationMessage(CamelModel):
    role: NonBlankStr = Field(max_length=20)
    content: NonBlankStr = Field(max_length=2000)


class ChatMessageRequest(CamelModel):
    character_id: NonBlankStr = Field(max_length=100)
    character_name: Optional[str] = Field(default=None, max_length=100)
    story_id: Optional[str] = None
    user_message: NonBlankStr = Field(max_length=2000)
    conversation_history: Optional[List[ConversationMessage]] = None
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4000)


class RagSource(CamelModel):
    text: Optional[str] = None
    score: Optional[float] = None
    source_type: Optional[str] = None


class ChatMessageResponse(CamelModel):
    character_id: Optional[str] = None
    ai_message: Optional[str] = None
    sources: List[RagSource] = []
    timestamp: Optional[str] = None
    degraded: bool = False


class CharacterIndexRequest(CamelModel):
    character_id: NonBlankStr = Field(max_length=100)
    name: NonBlankStr = Field(max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    personality: Optional[str] = Field(default=None, max_length=1000)
    background: Optional[str] = Field(default=None, max_length=2000)
    dialogue_samples: Optional[List[str]] = None
    relationships: Optional[Dict[str, str]] = None
    additional_info: Optional[Dict[str, Any]] = None


class CharacterSetRequest(CamelModel):
    character_id: NonBlankStr
    character_name: NonBlankStr
    character_description: Optional[str] = None


class NovelIndexRequest(BaseModel):
    """Novel indexing request; uses the RAG server's snake_case names."""
    story_id: NonBlankStr = Field(max_length=100)
    title: NonBlankStr = Field(max_length=500)
    file_key: NonBlankStr
    bucket: NonBlankStr


class GameProgressUpdateRequest(CamelModel):
    character_id: NonBlankStr = Field(max_length=100)
    content: NonBlankStr = Field(max_length=5000)
    metadata: Optional[Dict[str, Any]] = None


# Music recommendation

class MusicRequest(BaseModel):
    prompt: NonBlankStr


class MusicAnalysis(BaseModel):
    primary_mood: Optional[str] = None
    secondary_mood: Optional[str] = None
    intensity: Optional[float] = None
    emotional_tags: List[str] = []
    reasoning: Optional[str] = None


class MusicTrack(BaseModel):
    mood: Optional[str] = None
    filename: Optional[str] = None
    file_path: Optional[str] = None
    streaming_url: Optional[str] = None


class MusicResponse(BaseModel):
    analysis: Optional[MusicAnalysis] = None
    music: Optional[MusicTrack] = None
    degraded: bool = False


# Health

class ServerHealth(BaseModel):
    status: str


class HealthReport(CamelModel):
    status: str = "healthy"
    relay_server: str = "up"
    ai_servers: Dict[str, ServerHealth] = {}
