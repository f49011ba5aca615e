"""Tests for EMF metric documents."""
import json
import logging

from metrics import MetricsEmitter

from conftest import RecordingMetrics


def test_document_structure():
    emitter = MetricsEmitter("EphemeralChat", "beta", sink=lambda doc: None)

    doc = emitter.build_document("MessagesPosted", 1.0, "Count", {"RoomId": "general"})

    directive = doc["_aws"]["CloudWatchMetrics"][0]
    assert directive["Namespace"] == "EphemeralChat/beta"
    assert directive["Dimensions"] == [["Stage", "RoomId"]]
    assert directive["Metrics"] == [{"Name": "MessagesPosted", "Unit": "Count"}]
    assert isinstance(doc["_aws"]["Timestamp"], int)
    assert doc["Stage"] == "beta"
    assert doc["RoomId"] == "general"
    assert doc["MessagesPosted"] == 1.0


def test_document_without_custom_dimensions():
    emitter = MetricsEmitter("EphemeralChat", "beta", sink=lambda doc: None)

    doc = emitter.build_document("Heartbeat", 1.0, "None")

    assert doc["_aws"]["CloudWatchMetrics"][0]["Dimensions"] == [["Stage"]]


def test_broadcast_triple():
    metrics = RecordingMetrics()

    metrics.emit_message_broadcast("general", attempts=5, successes=3)

    assert metrics.values("BroadcastAttempts") == [5.0]
    assert metrics.values("BroadcastSuccesses") == [3.0]
    assert metrics.values("BroadcastFailures") == [2.0]


def test_message_sent_emits_count_and_length():
    metrics = RecordingMetrics()

    metrics.emit_message_sent("general", 42)

    (count,) = metrics.documents_for("MessagesPosted")
    (length,) = metrics.documents_for("MessageLength")
    assert count["_aws"]["CloudWatchMetrics"][0]["Metrics"][0]["Unit"] == "Count"
    assert length["_aws"]["CloudWatchMetrics"][0]["Metrics"][0]["Unit"] == "None"
    assert length["MessageLength"] == 42.0


def test_connection_event_with_gauge():
    metrics = RecordingMetrics()

    metrics.emit_connection_event("connect", "general", total_connections=7)

    assert metrics.values("ConnectionEvents") == [1.0]
    assert metrics.values("ActiveConnections") == [7.0]


def test_duration_unit():
    metrics = RecordingMetrics()

    metrics.emit_duration_ms("BroadcastDuration", 12.5)

    (doc,) = metrics.documents
    assert doc["_aws"]["CloudWatchMetrics"][0]["Metrics"][0]["Unit"] == "Milliseconds"


def test_broken_sink_is_swallowed():
    def sink(doc):
        raise IOError("stdout closed")

    MetricsEmitter("EphemeralChat", "beta", sink=sink).emit_count("MessagesPosted", 1)


def test_default_sink_logs_one_json_line(caplog, monkeypatch):
    emitter = MetricsEmitter("EphemeralChat", "beta")
    monkeypatch.setattr(logging.getLogger("metrics"), "propagate", True)

    with caplog.at_level(logging.INFO, logger="metrics"):
        emitter.emit_count("MessagesPosted", 1, {"RoomId": "general"})

    (record,) = [r for r in caplog.records if r.name == "metrics"]
    assert json.loads(record.getMessage())["MessagesPosted"] == 1.0
