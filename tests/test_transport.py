"""REST APIs over a mocked httpx transport, plus realtime envelope handling."""

import asyncio
import json

import httpx
import pytest

from deskline.auth import AuthAPI
from deskline.directory import DirectoryAPI
from deskline.errors import AuthError, DesklineError, SubscriptionDropped
from deskline.messages import MessagesAPI
from deskline.models.events import C2SEvent, ChangeEvent, ChangeFilter, ChangeType, S2CEvent, SessionEvent
from deskline.models.identity import Role
from deskline.models.message import MessageDraft, MessageFilter
from deskline.transport.envelope import build_envelope, parse_envelope, to_change_event
from deskline.transport.http import HttpClient
from deskline.transport import realtime
from deskline.transport.realtime import RealtimeFeed

ROW = {
    "id": "m1",
    "sender_id": "u1",
    "receiver_id": None,
    "message": "hello",
    "is_admin_message": None,
    "created_at": "2024-05-01T12:00:00+00:00",
}

USER = {"id": "u1", "email": "carol@example.com", "user_metadata": {"full_name": "Carol"}}


def mock_http(handler, token="tok") -> HttpClient:
    http = HttpClient(base_url="http://test", token=token)
    http._client = httpx.AsyncClient(base_url="http://test", transport=httpx.MockTransport(handler))
    return http


class TestMessagesAPI:
    @pytest.mark.asyncio
    async def test_query_params(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[ROW])

        api = MessagesAPI(mock_http(handler))
        rows = await api.query(MessageFilter(involving="u1"), descending=True, limit=1)

        assert rows[0].body == "hello"
        params = seen[0].url.params
        assert seen[0].url.path == "/rest/v1/chat_messages"
        assert params["or"] == "(sender_id.eq.u1,receiver_id.eq.u1)"
        assert params["order"] == "created_at.desc,id.desc"
        assert params["limit"] == "1"
        assert seen[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_insert_posts_wire_row(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json=[ROW])

        api = MessagesAPI(mock_http(handler))
        message = await api.insert(MessageDraft(sender_id="u1", body="hello"))

        assert message.id == "m1"
        assert seen[0].headers["Prefer"] == "return=representation"
        assert json.loads(seen[0].content) == [
            {"sender_id": "u1", "receiver_id": None, "message": "hello", "is_admin_message": False}
        ]

    @pytest.mark.asyncio
    async def test_http_errors_carry_status(self):
        api = MessagesAPI(mock_http(lambda request: httpx.Response(503, text="unavailable")))
        with pytest.raises(DesklineError) as exc:
            await api.query(MessageFilter(involving="u1"))
        assert exc.value.code == "http_error"
        assert exc.value.details == {"status_code": 503}


class TestDirectoryAPI:
    @pytest.mark.asyncio
    async def test_role_row(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["user_id"] == "eq.admin-a"
            return httpx.Response(200, json=[{"user_id": "admin-a", "role": "admin"}])

        assert await DirectoryAPI(mock_http(handler)).get_role("admin-a") == Role.ADMIN

    @pytest.mark.asyncio
    async def test_missing_role_row(self):
        api = DirectoryAPI(mock_http(lambda request: httpx.Response(200, json=[])))
        assert await api.get_role("u2") is None

    @pytest.mark.asyncio
    async def test_profiles(self):
        rows = [{"id": "u1", "email": "carol@example.com", "full_name": "Carol"},
                {"id": "u2", "email": "dave@example.com", "full_name": None}]
        api = DirectoryAPI(mock_http(lambda request: httpx.Response(200, json=rows)))
        profiles = await api.list_profiles()
        assert [p.display_name for p in profiles] == ["Carol", "dave"]


class TestAuthAPI:
    @pytest.mark.asyncio
    async def test_sign_in_sets_token_and_notifies(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            return httpx.Response(200, json={"access_token": "new", "refresh_token": "r1", "user": USER})

        http = mock_http(handler, token=None)
        auth = AuthAPI(http)
        events = []
        auth.on_session_change(lambda event, identity: events.append((event, identity)))

        identity = await auth.sign_in("carol@example.com", "secret")

        assert identity.display_name == "Carol"
        assert http.token == "new"
        assert auth.refresh_token == "r1"
        assert events == [(SessionEvent.SIGNED_IN, identity)]

    @pytest.mark.asyncio
    async def test_bad_credentials(self):
        auth = AuthAPI(mock_http(lambda request: httpx.Response(400, json={"error": "invalid_grant"}), token=None))
        with pytest.raises(AuthError):
            await auth.sign_in("carol@example.com", "wrong")

    @pytest.mark.asyncio
    async def test_expired_token_reads_as_signed_out(self):
        http = mock_http(lambda request: httpx.Response(401, json={"msg": "expired"}))
        auth = AuthAPI(http)
        assert await auth.get_current_session() is None
        assert http.token is None

    @pytest.mark.asyncio
    async def test_sign_out_is_local_even_if_server_fails(self):
        http = mock_http(lambda request: httpx.Response(500))
        auth = AuthAPI(http)
        events = []
        auth.on_session_change(lambda event, identity: events.append(event))

        await auth.sign_out()

        assert http.token is None
        assert events == [SessionEvent.SIGNED_OUT]

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, request.url.params.get("grant_type")))
            if request.url.path == "/auth/v1/user":
                return httpx.Response(401, json={"msg": "expired"})
            assert json.loads(request.content) == {"refresh_token": "r1"}
            return httpx.Response(200, json={"access_token": "fresh", "refresh_token": "r2", "user": USER})

        http = mock_http(handler)
        auth = AuthAPI(http)
        auth.restore("stale", "r1")
        events = []
        auth.on_session_change(lambda event, identity: events.append(event))

        identity = await auth.get_current_session()

        assert identity.id == "u1"
        assert http.token == "fresh"
        assert auth.refresh_token == "r2"
        assert events == [SessionEvent.TOKEN_REFRESHED]
        assert seen == [("GET", "/auth/v1/user", None), ("POST", "/auth/v1/token", "refresh_token")]

    @pytest.mark.asyncio
    async def test_rejected_refresh_reads_as_signed_out(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/v1/user":
                return httpx.Response(401)
            return httpx.Response(400, json={"error": "invalid_grant"})

        auth = AuthAPI(mock_http(handler))
        auth.restore("stale", "revoked")

        assert await auth.get_current_session() is None
        assert auth.refresh_token is None

    @pytest.mark.asyncio
    async def test_refresh_without_token(self):
        auth = AuthAPI(mock_http(lambda request: httpx.Response(200)))
        with pytest.raises(AuthError):
            await auth.refresh()

    @pytest.mark.asyncio
    async def test_password_reset(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        await AuthAPI(mock_http(handler, token=None)).request_password_reset("carol@example.com")

        assert seen[0].url.path == "/auth/v1/recover"
        assert json.loads(seen[0].content) == {"email": "carol@example.com"}

    @pytest.mark.asyncio
    async def test_password_reset_failure(self):
        auth = AuthAPI(mock_http(lambda request: httpx.Response(429), token=None))
        with pytest.raises(AuthError):
            await auth.request_password_reset("carol@example.com")


class TestEnvelope:
    def test_build_subscribe(self):
        env = build_envelope(C2SEvent.REALTIME_SUBSCRIBE, "u1", "dev1", subscription_id="s1",
                             table="chat_messages", change_type=ChangeType.INSERT)
        assert env["type"] == "realtime:subscribe"
        assert env["metadata"]["source"] == {"user_id": "u1", "device_id": "dev1"}
        assert env["payload"]["subscription_id"] == "s1"
        assert env["payload"]["table"] == "chat_messages"

    def test_parse_change(self):
        raw = {
            "metadata": {"event_id": "e1", "timestamp": "2024-05-01T12:00:00Z"},
            "type": "realtime:change",
            "payload": {"subscription_id": "s1", "table": "chat_messages", "type": "INSERT", "record": ROW},
        }
        event = to_change_event(parse_envelope(raw))
        assert event == ChangeEvent(type=ChangeType.INSERT, table="chat_messages", record=ROW)

    def test_invalid_envelope(self):
        assert parse_envelope({"type": "realtime:change"}) is None

    def test_non_insert_ignored(self):
        raw = {
            "metadata": {"event_id": "e1", "timestamp": "2024-05-01T12:00:00Z"},
            "type": "realtime:change",
            "payload": {"table": "chat_messages", "type": "DELETE", "record": ROW},
        }
        assert to_change_event(parse_envelope(raw)) is None


class TestRealtimeDispatch:
    def test_dispatch_routes_by_subscription_and_filter(self):
        feed = RealtimeFeed("http://test", token="tok")
        got_a, got_b = [], []
        a = feed.subscribe(ChangeFilter(), got_a.append)
        feed.subscribe(ChangeFilter(table="profiles"), got_b.append)

        insert = ChangeEvent(type=ChangeType.INSERT, record=ROW)
        feed._dispatch(insert)
        feed._dispatch(insert, only="someone-else")
        feed._dispatch(ChangeEvent.dropped())

        assert got_a == [insert, ChangeEvent.dropped()]
        assert got_b == [ChangeEvent.dropped()]

        feed.unsubscribe(a)
        feed._dispatch(insert)
        assert len(got_a) == 2

    @pytest.mark.asyncio
    async def test_connect_requires_token(self):
        feed = RealtimeFeed("http://test")
        with pytest.raises(DesklineError) as exc:
            await feed.connect()
        assert exc.value.code == "connection_error"


class FakeSocket:
    """Stands in for socketio.AsyncClient: records traffic, lets tests fire server events."""

    def __init__(self, **kwargs):
        self.handlers = {}
        self.connected = False
        self.log = []
        self.reject_subscribe = False

    def on(self, event, handler=None):
        def register(fn):
            self.handlers[event] = fn
            return fn
        return register

    def event(self, fn):
        self.handlers[fn.__name__] = fn
        return fn

    async def connect(self, url, **kwargs):
        self.connected = True
        asyncio.get_running_loop().create_task(self.handlers["ready"]())

    async def call(self, event, data, timeout=None):
        if self.reject_subscribe:
            raise TimeoutError("no ack")
        self.log.append(("call", event, data["payload"]["subscription_id"]))
        return {"ok": True}

    async def emit(self, event, data):
        self.log.append(("emit", event, data["payload"]["subscription_id"]))

    async def disconnect(self):
        self.connected = False
        await self.handlers["disconnect"]("client disconnect")


@pytest.fixture
def sockets(monkeypatch):
    created = []

    def factory(**kwargs):
        sock = FakeSocket(**kwargs)
        created.append(sock)
        return sock

    monkeypatch.setattr(realtime.socketio, "AsyncClient", factory)
    return created


class TestRealtimeFeed:
    @pytest.mark.asyncio
    async def test_subscription_confirmed_by_ack(self, sockets):
        feed = RealtimeFeed("http://test", token="tok", ready_timeout=1)
        await feed.connect()
        assert feed.connected

        handle = feed.subscribe(ChangeFilter(), lambda event: None)
        await feed.wait_subscribed(handle)

        assert sockets[0].log == [("call", C2SEvent.REALTIME_SUBSCRIBE, handle)]

    @pytest.mark.asyncio
    async def test_early_subscription_confirmed_on_ready(self, sockets):
        feed = RealtimeFeed("http://test", token="tok", ready_timeout=1)
        handle = feed.subscribe(ChangeFilter(), lambda event: None)
        waiter = asyncio.ensure_future(feed.wait_subscribed(handle))
        await asyncio.sleep(0)
        assert not waiter.done()

        await feed.connect()
        await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_missing_ack_raises(self, sockets):
        feed = RealtimeFeed("http://test", token="tok", ready_timeout=1)
        await feed.connect()
        sockets[0].reject_subscribe = True

        handle = feed.subscribe(ChangeFilter(), lambda event: None)
        with pytest.raises(SubscriptionDropped):
            await feed.wait_subscribed(handle)

    @pytest.mark.asyncio
    async def test_drop_then_ready_replays_before_reconnected(self, sockets):
        feed = RealtimeFeed("http://test", token="tok", ready_timeout=1)
        await feed.connect()
        sock = sockets[0]
        handle = feed.subscribe(ChangeFilter(), lambda event: sock.log.append(("event", event.type)))
        await feed.wait_subscribed(handle)

        await sock.handlers["disconnect"]("transport close")
        assert not feed.connected
        assert sock.log[-1] == ("event", ChangeType.DROPPED)

        await sock.handlers["ready"]()

        assert feed.connected
        assert sock.log[-2:] == [
            ("call", C2SEvent.REALTIME_SUBSCRIBE, handle),
            ("event", ChangeType.RECONNECTED),
        ]
        await feed.wait_subscribed(handle)

    @pytest.mark.asyncio
    async def test_deliberate_disconnect_is_not_a_drop(self, sockets):
        feed = RealtimeFeed("http://test", token="tok", ready_timeout=1)
        events = []
        handle = feed.subscribe(ChangeFilter(), events.append)
        waiter = asyncio.ensure_future(feed.wait_subscribed(handle))
        await asyncio.sleep(0)

        await feed.disconnect()

        assert events == []
        with pytest.raises(SubscriptionDropped):
            await waiter

        await feed.connect()
        await feed.disconnect()
        assert events == []

    @pytest.mark.asyncio
    async def test_changes_reach_their_subscription(self, sockets):
        feed = RealtimeFeed("http://test", token="tok", ready_timeout=1)
        await feed.connect()
        mine, other = [], []
        handle = feed.subscribe(ChangeFilter(), mine.append)
        feed.subscribe(ChangeFilter(), other.append)

        await sockets[0].handlers[S2CEvent.REALTIME_CHANGE]({
            "metadata": {"event_id": "e1", "timestamp": "2024-05-01T12:00:00Z"},
            "type": "realtime:change",
            "payload": {"subscription_id": handle, "table": "chat_messages", "type": "INSERT", "record": ROW},
        })
        await sockets[0].handlers[S2CEvent.REALTIME_CHANGE]({"type": "garbage"})

        assert [e.record["id"] for e in mine] == ["m1"]
        assert other == []

    @pytest.mark.asyncio
    async def test_unsubscribe_is_sent(self, sockets):
        feed = RealtimeFeed("http://test", token="tok", ready_timeout=1)
        await feed.connect()
        handle = feed.subscribe(ChangeFilter(), lambda event: None)
        await feed.wait_subscribed(handle)

        feed.unsubscribe(handle)
        await asyncio.sleep(0)

        assert sockets[0].log[-1] == ("emit", C2SEvent.REALTIME_UNSUBSCRIBE, handle)
        with pytest.raises(SubscriptionDropped):
            await feed.wait_subscribed(handle)
