from types import SimpleNamespace
from uuid import uuid4

import pytest

from hive_analysis.core.errors import EmbeddingGenerationError
from hive_analysis.services.openai_client import (
    FALLBACK_BUCKET_NAME,
    OpenAIService,
    parse_consolidation_payload,
    sample_diverse_texts,
)


class FakeEmbeddingsAPI:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []

    async def create(self, *, model, input):
        self.calls.append(list(input))
        return SimpleNamespace(
            model=f"{model}-rev",
            data=[SimpleNamespace(embedding=[float(len(text)), 1.0]) for text in input],
        )


class FakeChatAPI:
    def __init__(self, content: str) -> None:
        self.content = content
        self.payloads: list[dict] = []

    async def create(self, **payload):
        self.payloads.append(payload)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    def __init__(self, chat_content: str = "{}") -> None:
        self.embeddings = FakeEmbeddingsAPI()
        self.chat = SimpleNamespace(completions=FakeChatAPI(chat_content))


def test_sample_diverse_texts_is_evenly_spaced():
    texts = [str(index) for index in range(100)]
    sample = sample_diverse_texts(texts, 20)
    assert len(sample) == 20
    assert sample[0] == "0"
    assert sample[1] == "5"
    assert sample[-1] == "95"
    assert sample_diverse_texts(texts[:3], 20) == ["0", "1", "2"]


def test_parse_consolidation_drops_unknown_ids_and_keeps_missing_ones():
    known = [(uuid4(), f"text {index}") for index in range(4)]
    payload = {
        "buckets": [
            {
                "bucket_name": "Transport",
                "consolidated_statement": "More buses",
                "response_ids": [str(known[0][0]), "made-up-id", str(known[1][0])],
            },
            {"bucket_name": "Broken", "response_ids": [str(known[2][0])]},
        ],
        "unconsolidated_ids": ["another-made-up-id"],
    }

    result = parse_consolidation_payload(3, payload, known)

    assert result.cluster_index == 3
    assert len(result.buckets) == 1
    assert result.buckets[0].response_ids == [known[0][0], known[1][0]]
    assert result.unconsolidated_ids == [known[2][0], known[3][0]]


def test_parse_consolidation_falls_back_on_malformed_payload():
    known = [(uuid4(), "a"), (uuid4(), "b")]
    result = parse_consolidation_payload(0, ["not", "a", "mapping"], known)
    assert [bucket.name for bucket in result.buckets] == [FALLBACK_BUCKET_NAME, FALLBACK_BUCKET_NAME]
    assert [bucket.response_ids for bucket in result.buckets] == [[known[0][0]], [known[1][0]]]


@pytest.mark.asyncio
async def test_unconfigured_service_falls_back():
    service = OpenAIService()
    assert not service.is_configured

    themes = await service.generate_themes({0: ["a", "b"], 1: ["c", "d", "e"]}, {0: 2, 1: 3})
    assert [(theme.cluster_index, theme.name, theme.size) for theme in themes] == [(1, "Theme 2", 3), (0, "Theme 1", 2)]

    single_id, pair = uuid4(), [(uuid4(), "x"), (uuid4(), "y")]
    consolidations = await service.consolidate_clusters({0: [(single_id, "only")], 1: pair})
    assert consolidations[0].buckets[0].response_ids == [single_id]
    assert consolidations[0].buckets[0].statement == "only"
    assert len(consolidations[1].buckets) == 2

    with pytest.raises(EmbeddingGenerationError):
        await service.embed_texts(["hello"])
    empty = await service.embed_texts([])
    assert empty.vectors == []


@pytest.mark.asyncio
async def test_embed_texts_batches_requests():
    client = FakeClient()
    service = OpenAIService(client=client)

    batch = await service.embed_texts([f"text {index}" for index in range(250)])

    assert [len(call) for call in client.embeddings.calls] == [100, 100, 50]
    assert len(batch.vectors) == 250
    assert batch.dim == 2
    assert batch.model_revision.endswith("-rev")


@pytest.mark.asyncio
async def test_generate_themes_uses_model_reply():
    client = FakeClient('{"name": "Safer streets", "description": "Lighting and crossings"}')
    service = OpenAIService(client=client)

    themes = await service.generate_themes({0: ["more lights", "zebra crossing"]}, {0: 7})

    assert themes[0].name == "Safer streets"
    assert themes[0].size == 7
    assert client.chat.completions.payloads[0]["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_consolidation_reports_overflow_as_unconsolidated(monkeypatch):
    client = FakeClient('{"buckets": [], "unconsolidated_ids": []}')
    service = OpenAIService(client=client)
    monkeypatch.setattr(service._settings, "consolidation_max_responses", 2)
    responses = [(uuid4(), f"r{index}") for index in range(3)]

    [result] = await service.consolidate_clusters({0: responses})

    assert result.buckets == []
    assert result.unconsolidated_ids == [response_id for response_id, _ in responses]
    assert result.prompt_version == "v2.1"
