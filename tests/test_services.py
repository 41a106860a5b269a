"""Tests for the downstream AI server clients."""
import asyncio
import json

import httpx
import pytest

from errors import AiServerError
from models import (
    CharacterIndexRequest,
    CharacterSetRequest,
    ChatMessageRequest,
    GameProgressUpdateRequest,
    ImageGenerationRequest,
    MusicRequest,
    NovelIndexRequest,
    NovelStyleLearnRequest,
    SubtreeRegenerationRequest,
)
from proxy import Policy, ServiceClient
from services import (
    CHAT_FALLBACK_MESSAGE,
    DEFAULT_CHARACTER_NAME,
    PLACEHOLDER_IMAGE_URL,
    AnalysisClient,
    ChatClient,
    ImageClient,
    derive_character_name,
)
from tests.conftest import ANALYSIS_URL, FAST_TIMEOUTS, IMAGE_URL, MUSIC_URL, RAG_URL, make_settings


def _sent_json(route):
    return json.loads(route.calls.last.request.content)


def image_request(**overrides):
    values = {
        "storyId": "story-7",
        "nodeId": "node-3",
        "nodeText": "Romeo climbs the garden wall",
        "episodeTitle": "The Balcony",
        "episodeOrder": 1,
        "imageS3Url": "https://bucket.example/upload?sig=abc",
    }
    values.update(overrides)
    return ImageGenerationRequest.model_validate(values)


def chat_request(**overrides):
    values = {"characterId": "story_39a5d3b1_Romeo", "userMessage": "Who are you?"}
    values.update(overrides)
    return ChatMessageRequest.model_validate(values)


# Analysis

async def test_generate_forwards_payload_and_returns_body(analysis_client, downstream):
    route = downstream.post(f"{ANALYSIS_URL}/generate").mock(
        return_value=httpx.Response(200, json={"episode": {"title": "Prologue"}, "nodes": []})
    )

    result = await analysis_client.generate({"novelText": "Once upon a time", "maxDepth": 3})

    assert result == {"episode": {"title": "Prologue"}, "nodes": []}
    assert _sent_json(route) == {"novelText": "Once upon a time", "maxDepth": 3}


@pytest.mark.parametrize("operation, path", [
    ("analyze", "/analyze"),
    ("analyze_from_s3", "/analyze-from-s3"),
    ("generate_next_episode", "/generate-next-episode"),
    ("finalize_analysis", "/finalize-analysis"),
])
async def test_analysis_operations_use_their_paths(analysis_client, downstream, operation, path):
    route = downstream.post(f"{ANALYSIS_URL}{path}").mock(return_value=httpx.Response(200, json={"ok": True}))

    assert await getattr(analysis_client, operation)({"storyId": "s-1"}) == {"ok": True}
    assert route.call_count == 1


@pytest.mark.parametrize("response", [
    httpx.Response(500, json={"detail": "boom"}),
    httpx.Response(200, content=b""),
    httpx.Response(200, content=b"null"),
    httpx.Response(200, json=[1, 2, 3]),
    httpx.Response(200, content=b"<html>not json</html>"),
])
async def test_analysis_failures_raise_ai_server_error(analysis_client, downstream, response):
    downstream.post(f"{ANALYSIS_URL}/generate").mock(return_value=response)

    with pytest.raises(AiServerError) as exc_info:
        await analysis_client.generate({"novelText": "x"})

    assert exc_info.value.server_type == "Analysis"
    assert str(exc_info.value).startswith("[Analysis] Story generation failed")


async def test_analysis_transport_failure_raises(analysis_client, downstream):
    downstream.post(f"{ANALYSIS_URL}/analyze").mock(side_effect=httpx.ConnectError)

    with pytest.raises(AiServerError, match=r"^\[Analysis\] Analysis failed"):
        await analysis_client.analyze({"novelText": "x"})


async def test_generation_is_bounded_by_its_timeout():
    descriptor = make_settings(**FAST_TIMEOUTS).descriptors()["Analysis"]

    async def slow_backend(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"late": True})

    client = AnalysisClient(descriptor, transport=httpx.MockTransport(slow_backend))
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        with pytest.raises(AiServerError) as exc_info:
            await client.generate({"novelText": "x"})
    finally:
        await client.close()

    assert loop.time() - started < 2
    assert "timed out after 0.2 seconds" in str(exc_info.value)
    assert isinstance(exc_info.value.cause, asyncio.TimeoutError)


async def test_regenerate_subtree_sends_camel_case_and_reconciles(analysis_client, downstream):
    route = downstream.post(f"{ANALYSIS_URL}/regenerate-subtree").mock(
        return_value=httpx.Response(200, json={
            "status": "success",
            "regenerated_nodes": [{"node_id": "n-2", "text": "New branch", "choices": ["Go left"]}],
        })
    )
    request = SubtreeRegenerationRequest.model_validate({
        "episodeTitle": "The Gate",
        "episodeOrder": 2,
        "parentNode": {"nodeId": "n-1", "text": "At the gate", "depth": 1},
        "currentDepth": 1,
        "maxDepth": 3,
    })

    response = await analysis_client.regenerate_subtree(request)

    sent = _sent_json(route)
    assert sent["parentNode"]["nodeId"] == "n-1"
    assert sent["maxDepth"] == 3
    assert "novelContext" not in sent
    assert response.regenerated_nodes[0].node_id == "n-2"
    assert response.regenerated_nodes[0].choices[0].text == "Go left"
    assert response.total_nodes_regenerated == 1


async def test_malformed_subtree_answer_raises(analysis_client, downstream):
    downstream.post(f"{ANALYSIS_URL}/regenerate-subtree").mock(
        return_value=httpx.Response(200, json={"regeneratedNodes": [{"id": "n-2", "tags": "tense"}]})
    )
    request = SubtreeRegenerationRequest.model_validate({
        "episodeTitle": "The Gate",
        "episodeOrder": 2,
        "parentNode": {"nodeId": "n-1", "text": "At the gate", "depth": 1},
        "currentDepth": 1,
        "maxDepth": 3,
    })

    with pytest.raises(AiServerError, match=r"^\[Analysis\] Subtree regeneration failed"):
        await analysis_client.regenerate_subtree(request)


async def test_slow_image_server_falls_back_after_its_deadline():
    descriptor = make_settings(**FAST_TIMEOUTS).descriptors()["Image"]

    async def slow_backend(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"imageUrl": "https://cdn.example/late.png"})

    client = ImageClient(descriptor, transport=httpx.MockTransport(slow_backend))
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        response = await client.generate_image(image_request())
    finally:
        await client.close()

    assert loop.time() - started < 2
    assert response.degraded is True
    assert response.image_url == PLACEHOLDER_IMAGE_URL + "The+Balcony"


# Image

async def test_generate_image_translates_response(image_client, downstream):
    route = downstream.post(f"{IMAGE_URL}/api/v1/generate-image").mock(
        return_value=httpx.Response(200, json={
            "image_url": "https://cdn.example/story-7/node-3.png",
            "enhanced_prompt": "A moonlit garden wall",
            "story_id": "story-7",
            "node_id": "node-3",
        })
    )

    response = await image_client.generate_image(image_request())

    assert _sent_json(route) == {
        "story_id": "story-7",
        "user_prompt": "The Balcony: Romeo climbs the garden wall",
        "context_text": "Romeo climbs the garden wall",
        "s3_url": "https://bucket.example/upload?sig=abc",
    }
    assert response.image_url == "https://cdn.example/story-7/node-3.png"
    assert response.file_key == response.image_url
    assert response.enhanced_prompt == "A moonlit garden wall"
    assert response.generated_at
    assert response.degraded is False


async def test_generate_image_synthesizes_story_id(image_client, downstream):
    route = downstream.post(f"{IMAGE_URL}/api/v1/generate-image").mock(
        return_value=httpx.Response(200, json={"imageUrl": "https://cdn.example/1.png"})
    )

    await image_client.generate_image(image_request(storyId=None, imageS3Url=None, situation="Night"))

    sent = _sent_json(route)
    assert sent["story_id"].startswith("story_")
    assert sent["user_prompt"] == "The Balcony: Romeo climbs the garden wall. Night"
    assert "s3_url" not in sent


@pytest.mark.parametrize("mock", [
    {"side_effect": httpx.ConnectError},
    {"side_effect": httpx.ReadTimeout},
    {"return_value": httpx.Response(503)},
    {"return_value": httpx.Response(200, content=b"")},
    {"return_value": httpx.Response(200, json={"status": "ok"})},
])
async def test_generate_image_falls_back_to_placeholder(image_client, downstream, mock):
    downstream.post(f"{IMAGE_URL}/api/v1/generate-image").mock(**mock)

    response = await image_client.generate_image(image_request())

    assert response.degraded is True
    assert response.image_url == PLACEHOLDER_IMAGE_URL + "The+Balcony"
    assert response.story_id == "mock_story"
    assert response.node_id == "mock_node"
    assert response.enhanced_prompt == "Romeo climbs the garden wall"


async def test_generate_image_can_be_skipped(image_client, downstream):
    route = downstream.post(f"{IMAGE_URL}/api/v1/generate-image")

    response = await image_client.generate_image(image_request(generateImage=False))

    assert route.call_count == 0
    assert response.image_url is None
    assert response.degraded is False


async def test_learn_style(image_client, downstream):
    route = downstream.post(f"{IMAGE_URL}/api/v1/learn-style").mock(
        return_value=httpx.Response(200, json={"story_id": "s-1", "style_summary": "Gothic", "atmosphere": "gloomy"})
    )

    response = await image_client.learn_style(NovelStyleLearnRequest(story_id="s-1", title="Dracula"))

    assert _sent_json(route) == {"story_id": "s-1", "title": "Dracula"}
    assert response.style_summary == "Gothic"
    assert response.degraded is False


async def test_learn_style_degrades_to_empty_record(image_client, downstream):
    downstream.post(f"{IMAGE_URL}/api/v1/learn-style").mock(side_effect=httpx.ConnectError)

    response = await image_client.learn_style(NovelStyleLearnRequest(story_id="s-1"))

    assert response.degraded is True
    assert response.style_summary is None


# Chat

@pytest.mark.parametrize("character_id, expected", [
    ("story_39a5d3b1_Romeo", "Romeo"),
    ("story_39a5d3b1_Mary_Jane", "Mary_Jane"),
    ("story_39a5d3b1_Mary_", "Mary"),
    ("story_39a5d3b1__", DEFAULT_CHARACTER_NAME),
    ("story_39a5d3b1_", DEFAULT_CHARACTER_NAME),
    ("story_39a5d3b1", DEFAULT_CHARACTER_NAME),
    ("char_1_Romeo", DEFAULT_CHARACTER_NAME),
    ("", DEFAULT_CHARACTER_NAME),
])
def test_derive_character_name(character_id, expected):
    assert derive_character_name(character_id) == expected


def test_chat_payload_prefers_story_id_and_given_name():
    payload = ChatClient.build_chat_payload(chat_request(storyId="story-7", characterName="Juliet"))

    assert payload == {"session_id": "story-7", "character_name": "Juliet", "message": "Who are you?"}


def test_chat_payload_falls_back_to_character_id_and_derived_name():
    payload = ChatClient.build_chat_payload(chat_request())

    assert payload == {"session_id": "story_39a5d3b1_Romeo", "character_name": "Romeo", "message": "Who are you?"}


async def test_send_message(chat_client, downstream):
    downstream.post(f"{RAG_URL}/api/ai/chat").mock(
        return_value=httpx.Response(200, json={
            "reply": "I am Romeo of house Montague.",
            "sources": [{"text": "Act 2", "score": 0.87, "sourceType": "novel"}],
        })
    )

    response = await chat_client.send_message(chat_request())

    assert response.ai_message == "I am Romeo of house Montague."
    assert response.character_id == "story_39a5d3b1_Romeo"
    assert response.sources[0].score == 0.87
    assert response.degraded is False


@pytest.mark.parametrize("mock", [
    {"side_effect": httpx.ConnectError},
    {"return_value": httpx.Response(500)},
    {"return_value": httpx.Response(200, json={"reply": ""})},
    {"return_value": httpx.Response(200, json={"sources": []})},
])
async def test_send_message_falls_back_to_apology(chat_client, downstream, mock):
    downstream.post(f"{RAG_URL}/api/ai/chat").mock(**mock)

    response = await chat_client.send_message(chat_request())

    assert response.degraded is True
    assert response.ai_message == CHAT_FALLBACK_MESSAGE
    assert response.character_id == "story_39a5d3b1_Romeo"
    assert response.sources == []


async def test_index_character_builds_description(chat_client, downstream):
    route = downstream.post(f"{RAG_URL}/api/ai/character").mock(
        return_value=httpx.Response(200, json={"status": "character_set"})
    )
    request = CharacterIndexRequest.model_validate({
        "characterId": "story_1_Romeo",
        "name": "Romeo",
        "personality": "Impulsive",
        "dialogueSamples": ["But soft!"],
        "relationships": {"Juliet": "beloved"},
    })

    assert await chat_client.index_character(request) is True

    sent = _sent_json(route)
    assert sent["session_id"] == "story_1_Romeo"
    assert sent["character_name"] == "Romeo"
    assert sent["character_description"] == (
        "Personality:\nImpulsive\n\nDialogue samples:\n- But soft!\n\nRelationships:\n- Juliet: beloved\n"
    )


async def test_index_character_unexpected_status_is_false(chat_client, downstream):
    downstream.post(f"{RAG_URL}/api/ai/character").mock(return_value=httpx.Response(200, json={"status": "error"}))

    request = CharacterIndexRequest(character_id="story_1_Romeo", name="Romeo")
    assert await chat_client.index_character(request) is False


async def test_index_character_transport_failure_raises(chat_client, downstream):
    downstream.post(f"{RAG_URL}/api/ai/character").mock(side_effect=httpx.ConnectError)

    with pytest.raises(AiServerError, match=r"^\[Chat\] Character indexing failed"):
        await chat_client.index_character(CharacterIndexRequest(character_id="story_1_Romeo", name="Romeo"))


async def test_index_novel(chat_client, downstream):
    route = downstream.post(f"{RAG_URL}/api/ai/train-from-s3").mock(
        return_value=httpx.Response(200, json={"status": "trained"})
    )
    request = NovelIndexRequest(story_id="s-1", title="Dracula", file_key="novels/dracula.txt", bucket="novels")

    assert await chat_client.index_novel(request) is True
    assert _sent_json(route) == {
        "session_id": "s-1",
        "file_key": "novels/dracula.txt",
        "bucket": "novels",
        "character_name": "",
    }


async def test_set_character(chat_client, downstream):
    route = downstream.post(f"{RAG_URL}/api/ai/character").mock(
        return_value=httpx.Response(200, json={"status": "character_set"})
    )
    request = CharacterSetRequest(character_id="s-1", character_name="Mina")

    assert await chat_client.set_character(request) is True
    assert _sent_json(route)["character_description"] == ""


async def test_update_progress(chat_client, downstream):
    route = downstream.post(f"{RAG_URL}/api/ai/update").mock(
        return_value=httpx.Response(200, json={"status": "updated"})
    )
    request = GameProgressUpdateRequest(character_id="s-1", content="Chapter 3 reached")

    assert await chat_client.update_progress(request) is True
    assert _sent_json(route) == {"session_id": "s-1", "content": "Chapter 3 reached", "metadata": {}}


# Music

async def test_recommend_music(music_client, downstream):
    route = downstream.post(f"{MUSIC_URL}/api/analyze").mock(
        return_value=httpx.Response(200, json={
            "analysis": {"primary_mood": "tense", "intensity": 0.9},
            "music": {"mood": "tense", "filename": "tense_01.mp3"},
        })
    )

    response = await music_client.recommend(MusicRequest(prompt="A chase through the castle"))

    assert _sent_json(route) == {"prompt": "A chase through the castle"}
    assert response.music.filename == "tense_01.mp3"
    assert response.analysis.primary_mood == "tense"
    assert response.degraded is False


@pytest.mark.parametrize("mock", [
    {"side_effect": httpx.ConnectError},
    {"return_value": httpx.Response(502)},
    {"return_value": httpx.Response(200, json={"analysis": {"primary_mood": "tense"}})},
])
async def test_recommend_music_falls_back_to_default(music_client, downstream, mock):
    downstream.post(f"{MUSIC_URL}/api/analyze").mock(**mock)

    response = await music_client.recommend(MusicRequest(prompt="A chase"))

    assert response.degraded is True
    assert response.analysis.primary_mood == "peaceful"
    assert response.analysis.intensity == 0.5
    assert response.music.filename == "default.mp3"


# Probes

@pytest.mark.parametrize("body, expected", [
    ({"status": "running"}, True),
    ({"status": "starting"}, False),
    ({}, False),
])
async def test_image_probe_requires_running_status(image_client, downstream, body, expected):
    downstream.get(f"{IMAGE_URL}/").mock(return_value=httpx.Response(200, json=body))

    assert await image_client.probe() is expected


async def test_music_probe_requires_healthy_status(music_client, downstream):
    downstream.get(f"{MUSIC_URL}/api/health").mock(return_value=httpx.Response(200, json={"status": "healthy"}))

    assert await music_client.probe() is True


async def test_analysis_probe_accepts_any_successful_answer(analysis_client, downstream):
    downstream.get(f"{ANALYSIS_URL}/health").mock(return_value=httpx.Response(200, text="OK"))

    assert await analysis_client.probe() is True


@pytest.mark.parametrize("mock", [
    {"side_effect": httpx.ConnectError},
    {"return_value": httpx.Response(503, json={"status": "running"})},
    {"return_value": httpx.Response(200, text="not json")},
])
async def test_probe_never_raises(chat_client, downstream, mock):
    downstream.get(f"{RAG_URL}/").mock(**mock)

    assert await chat_client.probe() is False


async def test_fallback_operation_requires_fallback(descriptors):
    class Unconfigured(ServiceClient):
        policies = {"recommend": Policy.FALLBACK}

    client = Unconfigured(descriptors["Music"])
    try:
        with pytest.raises(ValueError, match="no fallback"):
            await client.call("recommend", "POST", "/api/analyze", translate=dict)
    finally:
        await client.close()
