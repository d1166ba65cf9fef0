import json

import pytest

from app.services.socket_hub import SocketHub


class FakeSocket:
    def __init__(self, fail_sends=False):
        self.accepted = False
        self.sent = []
        self.fail_sends = fail_sends

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("socket closed")
        self.sent.append(data)


@pytest.fixture
def hub():
    return SocketHub()


async def _connect(hub, socket=None):
    socket = socket or FakeSocket()
    client_id = await hub.connect(socket)
    socket.sent.clear()
    return client_id, socket


@pytest.mark.asyncio
async def test_connect_sends_client_id(hub):
    socket = FakeSocket()
    client_id = await hub.connect(socket)

    assert socket.accepted
    assert socket.sent[0]["type"] == "connection"
    assert socket.sent[0]["clientId"] == client_id
    assert "timestamp" in socket.sent[0]
    assert hub.status()["connections"] == 1


@pytest.mark.asyncio
async def test_ping_pong(hub):
    client_id, socket = await _connect(hub)

    await hub.handle_message(client_id, json.dumps({"type": "ping"}))

    assert socket.sent[0]["type"] == "pong"


@pytest.mark.asyncio
async def test_subscribed_client_receives_only_its_topic(hub):
    subscriber_id, subscriber = await _connect(hub)
    other_id, other = await _connect(hub)

    await hub.handle_message(subscriber_id, json.dumps({"type": "subscribe", "topic": "run-42"}))
    await hub.handle_message(other_id, json.dumps({"type": "subscribe", "topic": "run-7"}))
    subscriber.sent.clear()
    other.sent.clear()

    delivered = await hub.send_to_subscribers("run-42", {"type": "progress", "percent": 50})

    assert delivered == 1
    assert len(subscriber.sent) == 1
    message = subscriber.sent[0]
    assert message["workflowId"] == "run-42"
    assert message["topic"] == "run-42"
    assert message["timestamp"]
    assert message["percent"] == 50
    assert other.sent == []


@pytest.mark.asyncio
async def test_subscribe_acknowledgement_and_workflow_id_alias(hub):
    client_id, socket = await _connect(hub)

    await hub.handle_message(client_id, json.dumps({"type": "subscribe", "workflowId": "wf-1"}))

    assert socket.sent[0]["type"] == "subscribed"
    assert socket.sent[0]["workflowId"] == "wf-1"
    assert hub.subscribers("wf-1") == {client_id}


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(hub):
    client_id, socket = await _connect(hub)
    await hub.handle_message(client_id, json.dumps({"type": "subscribe", "topic": "t"}))
    await hub.handle_message(client_id, json.dumps({"type": "unsubscribe", "topic": "t"}))
    socket.sent.clear()

    assert await hub.send_to_subscribers("t", {"type": "status"}) == 0
    assert socket.sent == []
    assert hub.status()["subscriptions"] == {}


@pytest.mark.parametrize(
    "raw, message",
    [
        ("not json", "Malformed message"),
        ("[1, 2]", "Malformed message"),
        ('{"type": "dance"}', "Unknown message type"),
        ('{"type": "subscribe"}', "subscribe requires a topic"),
    ],
)
@pytest.mark.asyncio
async def test_bad_messages_get_error_reply(hub, raw, message):
    client_id, socket = await _connect(hub)

    await hub.handle_message(client_id, raw)

    assert socket.sent == [{"type": "error", "message": message}]


@pytest.mark.asyncio
async def test_disconnect_removes_all_subscriptions(hub):
    client_id, _socket = await _connect(hub)
    await hub.handle_message(client_id, json.dumps({"type": "subscribe", "topic": "a"}))
    await hub.handle_message(client_id, json.dumps({"type": "subscribe", "topic": "b"}))

    hub.disconnect(client_id)

    status = hub.status()
    assert hub.subscribers("a") == frozenset()
    assert status["connections"] == 0
    assert status["subscriptions"] == {}


@pytest.mark.asyncio
async def test_broadcast_drops_dead_sockets(hub):
    _alive_id, alive = await _connect(hub)
    _dead_id, dead = await _connect(hub)
    dead.fail_sends = True

    delivered = await hub.broadcast({"type": "notice"})

    assert delivered == 1
    assert alive.sent == [{"type": "notice"}]
    assert hub.status()["connections"] == 1


@pytest.mark.asyncio
async def test_failed_welcome_frame_leaves_no_connection(hub):
    with pytest.raises(RuntimeError):
        await hub.connect(FakeSocket(fail_sends=True))

    assert hub.status()["connections"] == 0
