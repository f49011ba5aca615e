"""Shared test fixtures: an async fakeredis-backed store, recorded metrics and fake delivery sinks."""
import fakeredis
import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import RedisBackend
from config import Settings
from constants import TRANSPORT_GATEWAY, TRANSPORT_LOCAL
from errors import StaleConnectionError, TransientDeliveryError
from metrics import MetricsEmitter
from services.broadcast import BroadcastDispatcher
from services.connections import ConnectionLifecycleManager
from services.messages import MessageService


class RecordingMetrics(MetricsEmitter):
    """MetricsEmitter that keeps every EMF document instead of logging it."""

    def __init__(self):
        self.documents = []
        super().__init__("EphemeralChat", "test", sink=self.documents.append)

    def values(self, metric_name):
        return [doc[metric_name] for doc in self.documents if metric_name in doc]

    def documents_for(self, metric_name):
        return [doc for doc in self.documents if metric_name in doc]


class FakeGatewaySink:
    def __init__(self, gone=(), transient=()):
        self.gone = set(gone)
        self.transient = set(transient)
        self.sent = []

    async def deliver(self, connection_id, data):
        if connection_id in self.gone:
            raise StaleConnectionError(f"{connection_id} is gone", target=connection_id)
        if connection_id in self.transient:
            raise TransientDeliveryError(f"{connection_id} throttled", target=connection_id)
        self.sent.append((connection_id, data))


class FakeLocalSink:
    def __init__(self, statuses=None, errors=()):
        self.statuses = statuses or {}
        self.errors = set(errors)
        self.sent = []

    async def deliver(self, push_target, payload):
        if push_target in self.errors:
            raise TransientDeliveryError(f"connection refused: {push_target}", target=push_target)
        self.sent.append((push_target, payload))
        return self.statuses.get(push_target, 200)


@pytest.fixture
def redis_client():
    # Own server per test: instances with default args would share one
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def backend(redis_client):
    return RedisBackend(redis_client)


@pytest.fixture
def metrics():
    return RecordingMetrics()


@pytest.fixture
def message_service(backend):
    return MessageService(backend)


@pytest.fixture
def gateway_lifecycle(backend, metrics):
    return ConnectionLifecycleManager(backend, metrics, transport=TRANSPORT_GATEWAY, ttl_seconds=86400)


@pytest.fixture
def local_lifecycle(backend, metrics):
    return ConnectionLifecycleManager(backend, metrics, transport=TRANSPORT_LOCAL, ttl_seconds=86400)


@pytest.fixture
def gateway_sink():
    return FakeGatewaySink()


@pytest.fixture
def local_sink():
    return FakeLocalSink()


@pytest.fixture
def dispatcher(backend, metrics, gateway_sink, local_sink):
    return BroadcastDispatcher(backend, metrics, gateway_sink=gateway_sink, local_sink=local_sink)


@pytest.fixture
def settings():
    return Settings(dispatch_enabled=False, version="9.9.9")


@pytest.fixture
def api_client(settings, redis_client, metrics, gateway_sink, local_sink):
    app = create_app(settings, redis_client=redis_client, metrics=metrics,
                     gateway_sink=gateway_sink, local_sink=local_sink)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def production_client(redis_client, metrics, gateway_sink, local_sink):
    settings = Settings(mode="production", gateway_endpoint_url="https://gw.example", dispatch_enabled=False)
    app = create_app(settings, redis_client=redis_client, metrics=metrics,
                     gateway_sink=gateway_sink, local_sink=local_sink)
    with TestClient(app) as client:
        yield client
