import asyncio
import base64
import json

import httpx
import pytest

from outreach.whatsapp_client import (
    ChatMessage,
    WhatsAppClient,
    WhatsAppError,
    build_clean_chatlog,
    contact_number,
    parse_webhook_payload,
)


def _client(handler, **kwargs):
    return WhatsAppClient(
        base_url="http://waha.test",
        session="default",
        api_key="secret",
        send_delay=0,
        media_delay=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_send_message_types_then_sends_text():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"id": "msg-1"})

    result = asyncio.run(_client(handler).send_message("94771234567@c.us", "Hello"))

    assert result == {"id": "msg-1"}
    assert [r.url.path for r in requests] == ["/api/startTyping", "/api/sendText"]
    assert json.loads(requests[1].content) == {"session": "default", "chatId": "94771234567@c.us", "text": "Hello"}
    assert requests[1].headers["X-Api-Key"] == "secret"


def test_send_message_survives_typing_failure():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        if request.url.path == "/api/startTyping":
            return httpx.Response(500, json={"message": "no typing"})
        return httpx.Response(201, json={"id": "msg-2"})

    asyncio.run(_client(handler).send_message("1@c.us", "Hi"))

    assert paths == ["/api/startTyping", "/api/sendText"]


def test_http_errors_raise_whatsapp_error():
    def handler(request):
        return httpx.Response(422, json={"message": "chat not found"})

    with pytest.raises(WhatsAppError) as exc:
        asyncio.run(_client(handler).react_to("msg-1", "👍"))

    assert exc.value.status_code == 422
    assert exc.value.endpoint == "/api/reaction"
    assert "chat not found" in str(exc.value)


def test_network_errors_raise_whatsapp_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(WhatsAppError):
        asyncio.run(_client(handler).mark_seen("1@c.us"))


def test_send_media_sends_visible_files_in_order(tmp_path):
    (tmp_path / "b.jpg").write_bytes(b"bbb")
    (tmp_path / "a.png").write_bytes(b"aaa")
    (tmp_path / "c.pdf").write_bytes(b"ccc")
    (tmp_path / ".DS_Store").write_bytes(b"x")
    (tmp_path / "nested").mkdir()
    sent = []

    def handler(request):
        body = json.loads(request.content)
        sent.append((request.url.path, body["file"]["filename"], body["file"]["data"]))
        return httpx.Response(200, json={})

    assert asyncio.run(_client(handler).send_media("1@c.us", str(tmp_path))) is True

    assert [(path, name) for path, name, _ in sent] == [
        ("/api/sendImage", "a.png"),
        ("/api/sendImage", "b.jpg"),
        ("/api/sendFile", "c.pdf"),
    ]
    assert base64.b64decode(sent[0][2]) == b"aaa"


def test_send_media_empty_and_missing_directory(tmp_path):
    def handler(request):  # pragma: no cover - must not be called
        raise AssertionError("unexpected request")

    client = _client(handler)
    assert asyncio.run(client.send_media("1@c.us", str(tmp_path))) is False
    with pytest.raises(WhatsAppError):
        asyncio.run(client.send_media("1@c.us", str(tmp_path / "missing")))


def test_fetch_history_builds_clean_transcript():
    def handler(request):
        assert request.url.path == "/api/default/chats/94771234567@c.us/messages"
        assert request.url.params["limit"] == "250"
        assert request.url.params["downloadMedia"] == "false"
        return httpx.Response(
            200,
            json=[
                {"id": "3", "fromMe": False, "body": "", "hasMedia": True, "type": "image", "timestamp": 3},
                {"id": "2", "fromMe": True, "body": "Hello, interested?", "timestamp": 2},
                {"id": "1", "fromMe": False, "body": "  ", "timestamp": 1},
            ],
        )

    transcript = asyncio.run(_client(handler).fetch_history("94771234567@c.us", 250))

    assert transcript == "me: Hello, interested?\nthem: [media:image]"


def test_is_typing_subscribes_once():
    paths = []

    def handler(request):
        paths.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(200, json={})
        return httpx.Response(
            200,
            json={"id": "1@c.us", "presences": [{"participant": "1@c.us", "lastKnownPresence": "typing"}]},
        )

    client = _client(handler)

    async def run():
        return await client.is_typing("1@c.us"), await client.is_typing("1@c.us")

    assert asyncio.run(run()) == (True, True)
    assert paths.count(("POST", "/api/default/presence/1@c.us/subscribe")) == 1


def test_is_registered_uses_check_exists():
    def handler(request):
        assert request.url.path == "/api/contacts/check-exists"
        assert request.url.params["phone"] == "94771234567"
        return httpx.Response(200, json={"numberExists": False, "chatId": None})

    assert asyncio.run(_client(handler).is_registered("94771234567@c.us")) is False


def test_session_status_reports_qr_when_scanning():
    def handler(request):
        if request.url.path == "/api/sessions/default":
            return httpx.Response(200, json={"name": "default", "status": "SCAN_QR_CODE"})
        return httpx.Response(200, json={"value": "2@abc"})

    status = asyncio.run(_client(handler).session_status())

    assert status["ready"] is False
    assert status["status"] == "scan_qr_code"
    assert status["qr"] == "2@abc"


def test_session_status_unreachable_is_not_ready():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    assert asyncio.run(_client(handler).is_ready()) is False


def test_parse_webhook_payload():
    body = {
        "event": "message",
        "session": "default",
        "payload": {
            "id": "false_94771234567@c.us_ABC",
            "from": "94771234567@c.us",
            "body": "Is it still available?",
            "fromMe": False,
            "hasMedia": False,
            "timestamp": 1700000000,
        },
    }

    message = parse_webhook_payload(body)

    assert message.id == "false_94771234567@c.us_ABC"
    assert message.chat_id == message.sender == "94771234567@c.us"
    assert not message.is_group
    assert parse_webhook_payload({"event": "session.status", "payload": {}}) is None


def test_group_messages_are_flagged():
    message = parse_webhook_payload(
        {"event": "message", "payload": {"id": "x", "from": "123@g.us", "participant": "1@c.us", "body": "hi"}}
    )

    assert message.is_group
    assert message.sender == "1@c.us"


def test_chatlog_and_contact_helpers():
    assert build_clean_chatlog([ChatMessage(id=None, from_me=False, has_media=True)]) == "them: [media:media]"
    assert contact_number({"id": "94771234567@c.us"}) == "94771234567"
    assert contact_number({"number": "+94 77 123 4567"}) == "94771234567"
    assert contact_number(None) == ""
