"""Tests for the broadcast dispatcher: fan-out, stale pruning, fault isolation and metrics."""
import json

import pytest

from constants import TRANSPORT_GATEWAY, TRANSPORT_LOCAL
from errors import StoreError, ValidationError
from services.broadcast import BroadcastDispatcher, parse_new_image

from conftest import FakeGatewaySink, FakeLocalSink

TS = 1735689600123  # 2025-01-01T00:00:00.123Z


def insert_record(room_id="general", message_id="m-1", text="hello", **extra):
    image = {
        "id": {"S": message_id},
        "room_id": {"S": room_id},
        "user_id": {"S": "u-1"},
        "username": {"S": "alice"},
        "message_text": {"S": text},
        "ts": {"N": str(TS)},
    }
    image.update(extra)
    return {"eventName": "INSERT", "dynamodb": {"NewImage": image}}


async def register(backend, connection_id, room_id="general", transport=TRANSPORT_GATEWAY, push_target=None):
    await backend.put_connection({
        "connection_id": connection_id,
        "room_id": room_id,
        "user_id": "u",
        "username": "user",
        "transport": transport,
        "push_target": push_target or connection_id,
        "connected_at": 0,
        "expires_at": 0,
    }, ttl=86400)


async def live_ids(backend, room_id="general"):
    return sorted(c["connection_id"] for c in await backend.get_room_connections(room_id))


@pytest.mark.asyncio
async def test_gone_gateway_connection_is_pruned_and_others_kept(backend, metrics):
    for connection_id in ("c1", "c2", "c3"):
        await register(backend, connection_id)
    sink = FakeGatewaySink(gone={"c2"})
    dispatcher = BroadcastDispatcher(backend, metrics, gateway_sink=sink)

    (result,) = await dispatcher.dispatch_batch([insert_record()])

    assert result.status == "broadcast"
    assert (result.attempts, result.successes, result.failures) == (3, 2, 1)
    assert result.pruned == ["c2"]
    assert metrics.values("BroadcastSuccesses") == [2.0]
    assert metrics.values("BroadcastFailures") == [1.0]
    assert metrics.values("BroadcastAttempts") == [3.0]
    assert await live_ids(backend) == ["c1", "c3"]
    assert await backend.get_connection("c2") is None


@pytest.mark.asyncio
async def test_transient_gateway_error_counts_failure_without_pruning(backend, metrics):
    await register(backend, "c1")
    await register(backend, "c2")
    dispatcher = BroadcastDispatcher(backend, metrics, gateway_sink=FakeGatewaySink(transient={"c1"}))

    (result,) = await dispatcher.dispatch_batch([insert_record()])

    assert (result.successes, result.failures) == (1, 1)
    assert result.pruned == []
    assert await live_ids(backend) == ["c1", "c2"]


@pytest.mark.asyncio
async def test_modify_event_does_nothing(backend, metrics, gateway_sink, dispatcher):
    await register(backend, "c1")
    record = insert_record()
    record["eventName"] = "MODIFY"

    (result,) = await dispatcher.dispatch_batch([record])

    assert result.status == "skipped"
    assert gateway_sink.sent == []
    assert metrics.documents == []


@pytest.mark.asyncio
async def test_malformed_record_fails_alone(backend, metrics, gateway_sink, dispatcher):
    await register(backend, "c1")
    broken = insert_record()
    del broken["dynamodb"]["NewImage"]["username"]
    bad_ts = insert_record(ts={"N": "not-a-number"})

    results = await dispatcher.dispatch_batch([broken, bad_ts, {"eventName": "INSERT"}, insert_record(message_id="m-2")])

    assert [r.status for r in results] == ["failed", "failed", "failed", "broadcast"]
    assert "username" in results[0].error
    assert len(gateway_sink.sent) == 1


@pytest.mark.asyncio
async def test_payload_shape(backend, gateway_sink, dispatcher):
    await register(backend, "c1")

    await dispatcher.dispatch_batch([insert_record(client_message_id={"S": "client-7"})])

    (_, data) = gateway_sink.sent[0]
    payload = json.loads(data)
    assert payload == {
        "id": "m-1",
        "roomId": "general",
        "userId": "u-1",
        "username": "alice",
        "text": "hello",
        "createdAt": "2025-01-01T00:00:00.123000Z",
        "clientMessageId": "client-7",
    }


def test_optional_fields_default():
    record = insert_record()
    del record["dynamodb"]["NewImage"]["user_id"]

    message = parse_new_image(record)

    assert message.user_id == "unknown"
    assert message.client_message_id is None
    assert "clientMessageId" not in message.to_payload()


def test_parse_rejects_missing_image():
    with pytest.raises(ValidationError):
        parse_new_image({"eventName": "INSERT", "dynamodb": {}})


@pytest.mark.asyncio
async def test_only_room_members_receive(backend, gateway_sink, dispatcher):
    await register(backend, "in-room", room_id="general")
    await register(backend, "elsewhere", room_id="random")

    await dispatcher.dispatch_batch([insert_record()])

    assert [connection_id for connection_id, _ in gateway_sink.sent] == ["in-room"]


@pytest.mark.asyncio
async def test_empty_room_emits_zero_attempts(metrics, dispatcher):
    (result,) = await dispatcher.dispatch_batch([insert_record(room_id="empty")])

    assert result.attempts == 0
    assert metrics.values("MessagesPosted") == [1.0]
    assert metrics.values("MessageLength") == [5.0]
    assert metrics.values("BroadcastFailures") == [0.0]


@pytest.mark.asyncio
async def test_local_transport_status_handling(backend, metrics):
    targets = {
        "ok": "http://local/dev/conn/ok/send",
        "missing": "http://local/dev/conn/missing/send",
        "gone": "http://local/dev/conn/gone/send",
        "broken": "http://local/dev/conn/broken/send",
        "refused": "http://local/dev/conn/refused/send",
    }
    for connection_id, target in targets.items():
        await register(backend, connection_id, transport=TRANSPORT_LOCAL, push_target=target)
    sink = FakeLocalSink(
        statuses={targets["missing"]: 404, targets["gone"]: 410, targets["broken"]: 500},
        errors={targets["refused"]},
    )
    dispatcher = BroadcastDispatcher(backend, metrics, local_sink=sink)

    (result,) = await dispatcher.dispatch_batch([insert_record()])

    assert (result.attempts, result.successes, result.failures) == (5, 1, 4)
    assert sorted(result.pruned) == ["gone", "missing"]
    assert await live_ids(backend) == ["broken", "ok", "refused"]
    pushed_payload = dict(sink.sent)[targets["ok"]]
    assert pushed_payload["text"] == "hello"


@pytest.mark.asyncio
async def test_unknown_transport_is_not_an_attempt(backend, metrics, gateway_sink, dispatcher):
    await register(backend, "c1")
    await register(backend, "pigeon", transport="carrier-pigeon")

    (result,) = await dispatcher.dispatch_batch([insert_record()])

    assert (result.attempts, result.successes, result.failures) == (1, 1, 0)
    assert await live_ids(backend) == ["c1", "pigeon"]


@pytest.mark.asyncio
async def test_registry_lookup_failure_fails_record_only(backend, metrics, gateway_sink, dispatcher, monkeypatch):
    await register(backend, "c1")
    original = backend.get_room_connections

    async def flaky(room_id):
        if room_id == "down":
            raise StoreError("timeout")
        return await original(room_id)

    monkeypatch.setattr(backend, "get_room_connections", flaky)

    results = await dispatcher.dispatch_batch([insert_record(room_id="down"), insert_record()])

    assert [r.status for r in results] == ["failed", "broadcast"]
    assert len(gateway_sink.sent) == 1


@pytest.mark.asyncio
async def test_prune_failure_is_logged_not_raised(backend, metrics, monkeypatch):
    await register(backend, "c1")
    await register(backend, "c2")

    async def broken_delete(connection_id, room_id=None):
        raise StoreError("read only replica")

    monkeypatch.setattr(backend, "delete_connection", broken_delete)
    dispatcher = BroadcastDispatcher(backend, metrics, gateway_sink=FakeGatewaySink(gone={"c1"}))

    (result,) = await dispatcher.dispatch_batch([insert_record()])

    assert result.status == "broadcast"
    assert (result.successes, result.failures) == (1, 1)
    assert result.pruned == []


@pytest.mark.asyncio
async def test_missing_gateway_sink_counts_as_failure(backend, metrics):
    await register(backend, "c1")
    dispatcher = BroadcastDispatcher(backend, metrics)

    (result,) = await dispatcher.dispatch_batch([insert_record()])

    assert (result.attempts, result.failures) == (1, 1)
    assert await live_ids(backend) == ["c1"]


@pytest.mark.asyncio
async def test_handle_stream_event(backend, gateway_sink, dispatcher):
    await register(backend, "c1")

    response = await dispatcher.handle_stream_event({"Records": [insert_record(), {"eventName": "REMOVE"}]})

    assert response["statusCode"] == 200
    assert [r["status"] for r in response["results"]] == ["broadcast", "skipped"]
