import asyncio
import sys

sys.path.insert(0, '.')

import pytest
from fastapi.testclient import TestClient

from api import fastapi_server
from ingest.messages import parse_message
from ingest.snapshot_fetcher import SnapshotFetcher
from ingest.websocket_client import ConnectionManager
from orchestration.state_store import StateStore
from tests.fakes import TEST_CONFIG, FakeAPIClient, flow_frame, status_payload


@pytest.fixture
def api(monkeypatch):
    client = FakeAPIClient()
    store = StateStore(
        TEST_CONFIG,
        connection=ConnectionManager(TEST_CONFIG),
        fetcher=SnapshotFetcher(client, TEST_CONFIG),
    )
    monkeypatch.setattr(fastapi_server, 'state_store', store)
    # No context manager: the lifespan would build a live store
    return TestClient(fastapi_server.app), store, client


def test_not_ready_without_store(monkeypatch):
    monkeypatch.setattr(fastapi_server, 'state_store', None)
    http = TestClient(fastapi_server.app)
    assert http.get('/api/state').json() == {'error': 'State store not initialized'}
    assert http.get('/').json()['status'] == 'stopped'
    assert http.get('/health').json()['stream'] == 'DISCONNECTED'


def test_state_and_views(api):
    http, store, client = api
    client.statuses.append(status_payload(
        enabled=True,
        positions=[{'symbol': 'SPY', 'strike': 450, 'status': 'OPEN', 'entry': 1.0, 'current': 1.5}],
        recent_orders=[{'symbol': 'SPY', 'status': 'CLOSED', 'dollarPnl': 75}],
    ))
    asyncio.run(store.refresh())
    asyncio.run(store.handle_message(parse_message(flow_frame('SPY', 80))))

    state = http.get('/api/state').json()
    assert state['enabled'] is True
    assert state['version'] == store.read_model.version

    flows = http.get('/api/flows').json()
    assert flows['count'] == 1
    assert flows['sentiment'] == [{'symbol': 'SPY', 'bullish': 1, 'bearish': 0, 'neutral': 0}]

    positions = http.get('/api/positions').json()
    assert positions['openPositions'][0]['key'] == 'SPY-450-0'
    assert positions['openPositions'][0]['pnlPct'] == pytest.approx(50.0)

    stats = http.get('/api/stats').json()
    assert stats['stats'] == {'totalPnL': 75.0, 'winRate': 100.0, 'totalTrades': 1, 'openPositions': 1}


def test_toggle_endpoint_issues_command(api):
    http, _, client = api
    client.statuses.append(status_payload(enabled=True))

    body = http.post('/api/auto-trade/toggle').json()

    assert body == {'ok': True, 'enabled': True, 'error': None}
    assert client.commands() == [('enable',)]


def test_simulate_endpoint_rejects_bad_side(api):
    http, _, client = api

    body = http.post('/api/auto-trade/simulate', json={'symbol': 'SPY', 'side': 'UP'}).json()

    assert body['ok'] is False
    assert body['error'].startswith('simulate:')
    assert client.calls == []


def test_websocket_sends_current_state(api):
    http, store, _ = api
    with http.websocket_connect('/ws') as ws:
        message = ws.receive_json()
    assert message['type'] == 'state'
    assert message['data']['version'] == store.read_model.version
    assert fastapi_server.manager.queues == []


def test_broadcast_manager_keeps_latest_only():
    manager = fastapi_server.BroadcastManager()
    queue = manager.connect()
    manager.publish('first')
    manager.publish('second')
    assert queue.qsize() == 1
    assert queue.get_nowait() == 'second'
    manager.disconnect(queue)
    assert manager.queues == []
