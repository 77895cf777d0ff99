"""End-to-end tests: chat session -> relay -> fake inference server."""

import httpx
import pytest

from local_llm_chat.client.reassembler import ERROR_REPLY
from local_llm_chat.client.relay import RelayClient
from local_llm_chat.client.session import ChatSession, compose_message
from local_llm_chat.config import Config
from local_llm_chat.domain.models import Attachment, Message
from local_llm_chat.repositories.memory import InMemoryConversationStore
from local_llm_chat.repositories.storage import InMemoryStorage

from conftest import delta, ndjson


@pytest.fixture
def store():
    return InMemoryConversationStore()


def make_session(store, transport, **settings):
    relay = RelayClient("http://test", transport=transport)
    return ChatSession(store, relay, settings={"model": "llama2", **settings})


@pytest.mark.asyncio
async def test_whole_response_exchange(store, relay_transport):
    session = make_session(store, relay_transport)
    conversation = session.new_conversation()

    reply = await session.send("Hi", stream=False)

    stored = store.get(conversation.id)
    assert [(m.role, m.content) for m in stored.messages] == [
        ("user", "Hi"),
        ("assistant", "Hello there"),
    ]
    assert reply == stored.messages[-1]
    assert stored.title == "Hi"
    await session.relay.aclose()


@pytest.mark.asyncio
async def test_streamed_exchange_reports_deltas(store, relay_transport, fake_ollama):
    fake_ollama.stream_chunks = [
        ndjson(delta(thinking="Greeting "))[:7],
        ndjson(delta(thinking="Greeting "))[7:] + ndjson(delta("Hel")),
        ndjson(delta("lo"), delta("", done=True)),
    ]
    session = make_session(store, relay_transport)
    seen = []

    reply = await session.send("Hi", on_delta=seen.append)

    assert reply.content == "Hello"
    assert reply.thinking == "Greeting "
    assert "".join(d.content for d in seen) == "Hello"
    assert store.current.messages[-1] == reply
    assert len(store.current.messages) == 2
    await session.relay.aclose()


@pytest.mark.asyncio
async def test_history_is_sent_with_following_messages(store, relay_transport, fake_ollama):
    session = make_session(store, relay_transport, systemPrompt="")
    await session.send("Hi", stream=False)
    await session.send("Again", stream=False)

    messages = fake_ollama.payloads[-1]["messages"]
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "Hi"),
        ("assistant", "Hello there"),
        ("user", "Again"),
    ]
    await session.relay.aclose()


@pytest.mark.asyncio
async def test_send_creates_conversation_when_none_is_current(store, relay_transport):
    session = make_session(store, relay_transport)
    assert store.current_id == ""
    await session.send("Hi", stream=False)
    assert store.current is not None
    assert len(store.current.messages) == 2
    await session.relay.aclose()


@pytest.mark.asyncio
async def test_blank_input_is_not_sent(store, relay_transport, fake_ollama):
    session = make_session(store, relay_transport)
    assert await session.send("   ") is None
    assert fake_ollama.requests == []
    await session.relay.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("stream", [True, False])
async def test_relay_failure_becomes_single_error_message(store, relay_transport, fake_ollama, stream):
    fake_ollama.chat_status = 404
    session = make_session(store, relay_transport)

    reply = await session.send("Hi", stream=stream)

    assert reply.role == "assistant"
    assert reply.content == ERROR_REPLY
    assert [m.role for m in store.current.messages] == ["user", "assistant"]
    await session.relay.aclose()


@pytest.mark.asyncio
async def test_transport_failure_mid_stream_discards_partial_text(store):
    async def handler(request):
        async def body():
            yield b'{"message":{"content":"partial"},"done":false}\n'
            raise httpx.ReadError("connection reset")

        return httpx.Response(200, content=body())

    session = make_session(store, httpx.MockTransport(handler))
    reply = await session.send("Hi")
    assert reply.content == ERROR_REPLY
    assert "partial" not in [m.content for m in store.current.messages]
    await session.relay.aclose()


@pytest.mark.asyncio
async def test_load_models_selects_first_available(store, relay_transport):
    session = make_session(store, relay_transport)
    models = await session.load_models()
    assert [m.name for m in models] == ["llama2:latest", "qwen3:8b"]
    assert session.settings.model == "llama2:latest"
    await session.relay.aclose()


@pytest.mark.asyncio
async def test_load_models_failure_leaves_empty_list(store, relay_transport, fake_ollama):
    fake_ollama.refuse = True
    session = make_session(store, relay_transport)
    assert await session.load_models() == []
    assert session.available_models == []
    assert session.settings.model == "llama2"
    await session.relay.aclose()


def test_settings_merge_once_with_defaults(store):
    session = ChatSession(store, RelayClient("http://test"), settings={"temperature": None, "topK": 5})
    assert session.settings.temperature == 0.7
    assert session.settings.top_k == 5
    session.update_settings(model="", apiUrl="http://remote:11434")
    assert session.settings.model == "llama2"
    assert session.settings.api_url == "http://remote:11434"


def test_compose_message_with_attachments():
    text = compose_message(
        "Summarize this",
        [
            Attachment(name="notes.txt", size=11, mime_type="text/plain", content="hello world"),
            Attachment(name="photo.png", size=2048, mime_type="image/png"),
        ],
    )
    assert text.startswith("Summarize this\n\n[Attachment: notes.txt (text/plain, 11 bytes)]\nhello world")
    assert text.endswith("[Attachment: photo.png (image/png, 2048 bytes)]")


def test_dark_mode_preference_is_persisted(store):
    storage = InMemoryStorage()
    session = ChatSession(store, RelayClient("http://test"), storage=storage)
    assert session.toggle_dark_mode() is True
    assert storage.load_preferences().dark_mode is True


def test_conversation_management_delegates_to_store(store):
    session = ChatSession(store, RelayClient("http://test"))
    first = session.new_conversation()
    second = session.new_conversation()
    session.switch_to(first.id)
    session.rename(first.id, "Named")
    store.append_message(first.id, Message(content="x"))
    session.clear()
    assert store.get(first.id).messages == []
    session.delete(first.id)
    assert store.current_id == second.id


def test_session_from_config(tmp_path):
    config = Config(api_url="http://gpu-box:11434", port=4000, max_message_pairs=1, data_dir=tmp_path)
    session = ChatSession.from_config(config)
    assert session.settings.api_url == "http://gpu-box:11434"
    assert session.settings.model == "llama2"

    conversation = session.new_conversation()
    for text in ["q0", "a0", "q1", "a1"]:
        role = "user" if text.startswith("q") else "assistant"
        session.store.append_message(conversation.id, Message(role=role, content=text))
    assert [m.content for m in session.store.get(conversation.id).messages] == ["q1", "a1"]
    assert (tmp_path / "conversations.json").exists()
