import asyncio
import json

import httpx
import pytest

from chat_core.api.service import ChatService
from chat_core.domain.exceptions import SessionBusyError, ValidationError
from chat_core.domain.models import ChatConfig
from chat_core.infrastructure.storage.json_store import JsonConfigStore
from chat_core.prompts import DEFAULT_SYSTEM_PROMPT
from chat_core.streaming.session import SessionState


CONFIG = ChatConfig(
    credential="azure-key-123456",
    endpoint="https://example.openai.azure.com/",
    deployment="gpt-4o",
    system_prompt="You are a support bot.",
    temperature=0.7,
    display_name="SupportAI",
)


def delta_line(text: str) -> bytes:
    return f"data: {json.dumps({'choices': [{'delta': {'content': text}}]})}\n".encode("utf-8")


class FakeAzure:
    """按顺序返回预设响应，并记录收到的请求体。"""

    def __init__(self, *responses):
        self._responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({"headers": dict(request.headers), "payload": json.loads(request.content)})
        return self._responses.pop(0)()

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def stream(*chunks, gate=None):
    async def body():
        for chunk in chunks:
            if chunk is None:
                await gate.wait()
                continue
            yield chunk

    return lambda: httpx.Response(200, content=body())


def make_service(fake, config=CONFIG, **kwargs):
    events = []
    service = ChatService(config=config, transport=fake.transport, on_event=events.append, **kwargs)
    return service, events


@pytest.mark.asyncio
async def test_send_streams_answer_into_conversation():
    fake = FakeAzure(stream(delta_line("Your"), delta_line(" order"), delta_line(" is on the way."), b"data: [DONE]\n"))
    service, events = make_service(fake)
    cid = service.store.active_id

    session = service.start("  Where is my order?  ")
    conv = service.store.get_conversation(cid)
    assert conv.title == "Where is my order?"
    assert [(m.role, m.content) for m in conv.messages] == [("user", "Where is my order?"), ("assistant", "")]
    assert service.is_streaming(cid)

    state = await session.run()

    assert state is SessionState.COMPLETED
    conv = service.store.get_conversation(cid)
    assert [(m.role, m.content) for m in conv.messages] == [
        ("user", "Where is my order?"),
        ("assistant", "Your order is on the way."),
    ]
    assert conv.messages[1].id == session.message_id
    assert [e.kind for e in events] == ["delta", "delta", "delta", "completed"]
    assert not service.is_streaming(cid)


@pytest.mark.asyncio
async def test_request_contains_system_prompt_history_and_new_message():
    fake = FakeAzure(
        stream(delta_line("Hello!"), b"data: [DONE]\n"),
        stream(delta_line("Sure."), b"data: [DONE]\n"),
    )
    service, _ = make_service(fake)

    await service.send("Hi")
    await service.send("Can you help?")

    payload = fake.requests[1]["payload"]
    assert payload["messages"] == [
        {"role": "system", "content": "You are a support bot."},
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "Can you help?"},
    ]
    assert payload["temperature"] == 0.7
    assert payload["max_tokens"] == 4096
    assert payload["top_p"] == 1.0
    assert payload["stream"] is True
    assert fake.requests[1]["headers"]["api-key"] == "azure-key-123456"


@pytest.mark.asyncio
async def test_empty_system_prompt_uses_default():
    fake = FakeAzure(stream(b"data: [DONE]\n"))
    service, _ = make_service(fake, config=ChatConfig(credential="k" * 16, endpoint="https://e", deployment="d"))
    await service.send("hi")
    assert fake.requests[0]["payload"]["messages"][0] == {"role": "system", "content": DEFAULT_SYSTEM_PROMPT}


@pytest.mark.asyncio
async def test_http_error_removes_placeholder():
    fake = FakeAzure(lambda: httpx.Response(429, json={"error": {"message": "rate limited"}}))
    service, events = make_service(fake)

    session = await service.send("Where is my order?")

    assert session.state is SessionState.FAILED
    assert [(e.kind, e.error) for e in events] == [("failed", "rate limited")]
    assert [m.role for m in service.store.active.messages] == ["user"]
    assert not service.is_streaming()


@pytest.mark.asyncio
async def test_missing_config_fails_without_request():
    fake = FakeAzure()
    service, events = make_service(fake, config=ChatConfig(endpoint="https://e", deployment="d"))

    session = await service.send("hello")

    assert session.state is SessionState.FAILED
    assert fake.requests == []
    assert events[0].error == "Please configure your Azure OpenAI settings first."
    assert [m.role for m in service.store.active.messages] == ["user"]


@pytest.mark.asyncio
async def test_stop_keeps_partial_answer():
    gate = asyncio.Event()
    fake = FakeAzure(stream(delta_line("Partial"), None, delta_line(" never"), gate=gate))
    service, events = make_service(fake)
    cid = service.store.active_id

    session = service.start("Tell me a story")
    task = asyncio.create_task(session.run())
    while not events:
        await asyncio.sleep(0)
    assert service.stop(cid) is True
    assert service.stop(cid) is False
    await task

    assert session.state is SessionState.ABORTED
    assert [e.kind for e in events] == ["delta", "aborted"]
    assert service.store.get_conversation(cid).messages[-1].content == "Partial"
    assert not service.is_streaming(cid)


@pytest.mark.asyncio
async def test_send_timeout_cancels_session():
    gate = asyncio.Event()
    fake = FakeAzure(stream(delta_line("Slow"), None, gate=gate))
    service, events = make_service(fake)

    session = await service.send("hi", timeout=0.05)

    assert session.state is SessionState.ABORTED
    assert events[-1].kind == "aborted"
    assert service.store.active.messages[-1].content == "Slow"


def test_empty_message_is_rejected():
    service, _ = make_service(FakeAzure())
    with pytest.raises(ValidationError):
        service.start("   ")
    assert service.store.active.messages == ()


@pytest.mark.asyncio
async def test_second_send_in_same_conversation_is_rejected():
    fake = FakeAzure(stream(b"data: [DONE]\n"), stream(b"data: [DONE]\n"))
    service, _ = make_service(fake)
    first_cid = service.store.active_id

    first = service.start("one")
    with pytest.raises(SessionBusyError):
        service.start("two")
    assert len(service.store.get_conversation(first_cid).messages) == 2

    other = service.new_conversation()
    second = service.start("other conversation")
    assert len(service.open_sessions()) == 2

    await asyncio.gather(first.run(), second.run())
    assert service.open_sessions() == []
    assert service.store.get_conversation(other.id).title == "other conversation"


@pytest.mark.asyncio
async def test_deltas_reach_unfocused_conversation():
    gate = asyncio.Event()
    fake = FakeAzure(stream(delta_line("A"), None, delta_line("B"), b"data: [DONE]\n", gate=gate))
    service, events = make_service(fake)
    target = service.store.active_id

    session = service.start("question")
    task = asyncio.create_task(session.run())
    while not events:
        await asyncio.sleep(0)
    focused = service.new_conversation()
    gate.set()
    await task

    assert service.store.active_id == focused.id
    assert service.store.get_conversation(target).messages[-1].content == "AB"
    assert service.store.get_conversation(focused.id).messages == ()


@pytest.mark.asyncio
async def test_config_change_does_not_affect_open_session():
    fake = FakeAzure(stream(b"data: [DONE]\n"))
    service, _ = make_service(fake)

    session = service.start("hi")
    service.update_config(ChatConfig(credential="other-key-000000", endpoint="https://other", deployment="x"), persist=False)
    await session.run()

    assert fake.requests[0]["headers"]["api-key"] == "azure-key-123456"
    assert service.config.credential == "other-key-000000"


@pytest.mark.asyncio
async def test_aborted_empty_answer_is_not_resent():
    fake = FakeAzure(stream(b"data: [DONE]\n"))
    service, _ = make_service(fake)

    empty = service.start("first")
    empty.cancel()
    await empty.run()
    await service.send("second")

    messages = fake.requests[0]["payload"]["messages"]
    assert [m["role"] for m in messages] == ["system", "user", "user"]
    assert [m.role for m in service.store.active.messages] == ["user", "assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_clear_cancels_pending_session():
    fake = FakeAzure()
    service, events = make_service(fake)
    cid = service.store.active_id
    session = service.start("hi")

    service.clear(cid)
    await session.run()

    assert session.state is SessionState.ABORTED
    assert fake.requests == []
    assert [e.kind for e in events] == ["aborted"]
    assert service.store.get_conversation(cid).messages == ()
    assert service.store.get_conversation(cid).title == ""
    assert not service.is_streaming(cid)


@pytest.mark.asyncio
async def test_delete_conversation_while_streaming():
    gate = asyncio.Event()
    fake = FakeAzure(stream(delta_line("x"), None, gate=gate))
    service, events = make_service(fake)
    doomed = service.store.active_id
    keep = service.new_conversation()
    service.select(doomed)

    session = service.start("hi")
    task = asyncio.create_task(session.run())
    while not events:
        await asyncio.sleep(0)
    service.delete(doomed)
    await task

    assert session.state is SessionState.ABORTED
    assert service.store.find_conversation(doomed) is None
    assert service.store.active_id == keep.id


def test_config_is_loaded_from_and_saved_to_store(tmp_path):
    config_store = JsonConfigStore(root=tmp_path)
    config_store.save({"apiKey": "saved-key-123456", "endpoint": "https://saved", "deployment": "dep", "temperature": "0.2"})

    service = ChatService(config_store=config_store)
    assert service.config.credential == "saved-key-123456"
    assert service.config.temperature == 0.2

    service.update_config(ChatConfig(credential="new-key-1234567", endpoint="https://new", deployment="d2"))
    assert config_store.load()["apiKey"] == "new-key-1234567"


@pytest.mark.asyncio
async def test_non_ascii_api_key_fails_and_conversation_recovers():
    fake = FakeAzure(stream(delta_line("ok"), b"data: [DONE]\n"))
    bad = ChatConfig(credential="clé-azure-123456", endpoint="https://example.openai.azure.com", deployment="gpt-4o")
    service, events = make_service(fake, config=bad)
    cid = service.store.active_id

    session = await service.send("hello")

    assert session.state is SessionState.FAILED
    assert [e.kind for e in events] == ["failed"]
    assert fake.requests == []
    assert [m.role for m in service.store.get_conversation(cid).messages] == ["user"]
    assert not service.is_streaming(cid)

    service.update_config(CONFIG, persist=False)
    retry = await service.send("hello again")

    assert retry.state is SessionState.COMPLETED
    assert service.store.get_conversation(cid).messages[-1].content == "ok"


@pytest.mark.asyncio
async def test_invalid_endpoint_fails_without_leaving_session_open():
    fake = FakeAzure()
    bad = ChatConfig(credential="azure-key-123456", endpoint="https://example.com:notaport", deployment="gpt-4o")
    service, events = make_service(fake, config=bad)

    session = await service.send("hello")

    assert session.state is SessionState.FAILED
    assert [e.kind for e in events] == ["failed"]
    assert fake.requests == []
    assert [m.role for m in service.store.active.messages] == ["user"]
    assert service.open_sessions() == []
