"""Field reconciliation for downstream responses.

The AI servers have shipped several naming schemes for the same concepts
(camelCase vs snake_case, nested vs flat ``details``, choices as strings vs
objects). Every concept below has exactly one reader that tries the canonical
name first and then each known alias, in the order listed. When a response
carries more than one of the names, the first one found wins.
"""
from typing import Any, Dict, List, Mapping, Optional

from models import (
    ChatMessageResponse,
    Choice,
    MusicAnalysis,
    MusicResponse,
    MusicTrack,
    NodeDetails,
    NovelStyleLearnResponse,
    RagSource,
    RegeneratedNode,
    SubtreeRegenerationResponse,
)

NODE_ID_NAMES = ("id", "nodeId", "node_id")
PARENT_ID_NAMES = ("parentId", "parent_id")
CHILDREN_NAMES = ("children", "child_nodes")
NPC_EMOTION_NAMES = ("npcEmotions", "npc_emotions")
IMMEDIATE_REACTION_NAMES = ("immediateReaction", "immediate_reaction")
REGENERATED_NODES_NAMES = ("regeneratedNodes", "regenerated_nodes")
TOTAL_NODES_NAMES = ("totalNodesRegenerated", "total_nodes_regenerated")

IMAGE_URL_NAMES = ("imageUrl", "image_url")
ENHANCED_PROMPT_NAMES = ("enhancedPrompt", "enhanced_prompt")
STORY_ID_NAMES = ("storyId", "story_id")
IMAGE_NODE_ID_NAMES = ("nodeId", "node_id")

CHAT_REPLY_NAMES = ("reply", "aiMessage", "ai_message")
SOURCE_TYPE_NAMES = ("sourceType", "source_type")


def pick(mapping: Optional[Mapping[str, Any]], *names: str, default: Any = None) -> Any:
    """Return the value of the first name present with a non-null value."""
    if not mapping:
        return default
    for name in names:
        value = mapping.get(name)
        if value is not None:
            return value
    return default


def _camel(snake: str) -> str:
    head, *rest = snake.split("_")
    return head + "".join(part.title() for part in rest)


def pick_field(mapping: Optional[Mapping[str, Any]], snake_name: str, default: Any = None) -> Any:
    """Read a field by its camelCase name, falling back to its snake_case name."""
    return pick(mapping, _camel(snake_name), snake_name, default=default)


def _as_list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"Expected a list for {what}, got {type(value).__name__}")
    return list(value)


def _as_mapping(value: Any, what: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected an object for {what}, got {type(value).__name__}")
    return dict(value)


def _choice(raw: Any) -> Choice:
    if isinstance(raw, str):
        return Choice(text=raw)
    if not isinstance(raw, Mapping):
        raise ValueError(f"Unsupported choice shape: {type(raw).__name__}")
    return Choice(
        text=raw.get("text"),
        tags=_as_list(raw.get("tags"), "choice tags"),
        immediate_reaction=pick(raw, *IMMEDIATE_REACTION_NAMES),
    )


def _details(raw: Mapping[str, Any]) -> NodeDetails:
    # Nested "details" object first, then the flat fields on the node itself
    source = raw.get("details")
    if not isinstance(source, Mapping):
        source = raw
    return NodeDetails(
        situation=source.get("situation"),
        npc_emotions=_as_mapping(pick(source, *NPC_EMOTION_NAMES), "npc emotions"),
        tags=_as_list(source.get("tags"), "node tags"),
    )


def reconcile_node(raw: Mapping[str, Any]) -> RegeneratedNode:
    """Reconcile one regenerated node and, recursively, its children."""
    if not isinstance(raw, Mapping):
        raise ValueError(f"Unsupported node shape: {type(raw).__name__}")
    return RegeneratedNode(
        node_id=pick(raw, *NODE_ID_NAMES),
        text=raw.get("text"),
        choices=[_choice(choice) for choice in _as_list(raw.get("choices"), "choices")],
        depth=raw.get("depth"),
        parent_id=pick(raw, *PARENT_ID_NAMES),
        details=_details(raw),
        children=[reconcile_node(child) for child in _as_list(pick(raw, *CHILDREN_NAMES), "children")],
    )


def count_nodes(nodes: List[RegeneratedNode]) -> int:
    return sum(1 + count_nodes(node.children) for node in nodes)


def reconcile_subtree(raw: Mapping[str, Any]) -> SubtreeRegenerationResponse:
    nodes = [reconcile_node(node) for node in _as_list(pick(raw, *REGENERATED_NODES_NAMES), "regenerated nodes")]
    total = pick(raw, *TOTAL_NODES_NAMES)
    return SubtreeRegenerationResponse(
        status=raw.get("status"),
        message=raw.get("message"),
        regenerated_nodes=nodes,
        total_nodes_regenerated=total if total is not None else count_nodes(nodes),
    )


def reconcile_image(raw: Mapping[str, Any]) -> Dict[str, Optional[str]]:
    """Canonical fields of an image generation answer."""
    return {
        "image_url": pick(raw, *IMAGE_URL_NAMES),
        "enhanced_prompt": pick(raw, *ENHANCED_PROMPT_NAMES),
        "story_id": pick(raw, *STORY_ID_NAMES),
        "node_id": pick(raw, *IMAGE_NODE_ID_NAMES),
    }


def reconcile_style(raw: Mapping[str, Any]) -> NovelStyleLearnResponse:
    return NovelStyleLearnResponse(
        **{field: pick_field(raw, field) for field in (
            "story_id", "style_summary", "atmosphere", "visual_style",
            "created_at", "thumbnail_image_url",
        )}
    )


def chat_reply(raw: Mapping[str, Any]) -> Optional[str]:
    return pick(raw, *CHAT_REPLY_NAMES)


def reconcile_sources(raw: Mapping[str, Any]) -> List[RagSource]:
    return [
        RagSource(
            text=source.get("text"),
            score=source.get("score"),
            source_type=pick(source, *SOURCE_TYPE_NAMES),
        )
        for source in raw.get("sources") or []
        if isinstance(source, Mapping)
    ]


def reconcile_chat(raw: Mapping[str, Any], character_id: str, timestamp: str) -> ChatMessageResponse:
    return ChatMessageResponse(
        character_id=character_id,
        ai_message=chat_reply(raw),
        sources=reconcile_sources(raw),
        timestamp=timestamp,
    )


def reconcile_music(raw: Mapping[str, Any]) -> MusicResponse:
    analysis = raw.get("analysis")
    music = raw.get("music")
    return MusicResponse(
        analysis=MusicAnalysis(
            primary_mood=pick_field(analysis, "primary_mood"),
            secondary_mood=pick_field(analysis, "secondary_mood"),
            intensity=pick_field(analysis, "intensity"),
            emotional_tags=_as_list(pick_field(analysis, "emotional_tags"), "emotional tags"),
            reasoning=pick_field(analysis, "reasoning"),
        ) if isinstance(analysis, Mapping) else None,
        music=MusicTrack(
            mood=pick_field(music, "mood"),
            filename=pick_field(music, "filename"),
            file_path=pick_field(music, "file_path"),
            streaming_url=pick_field(music, "streaming_url"),
        ) if isinstance(music, Mapping) else None,
    )
