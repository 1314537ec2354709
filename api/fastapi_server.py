import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config
from config.utils import get_config_section
from monitoring.logging_utils import setup_logging_from_config


state_store = None
server_cfg = get_config_section(config, 'server')


@asynccontextmanager
async def lifespan(app: FastAPI):
    global state_store
    from orchestration.state_store import StateStore
    state_store = StateStore(config)
    state_store.subscribe(manager.publish)
    task = asyncio.create_task(state_store.start())
    try:
        yield
    finally:
        if state_store:
            await state_store.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="FlowDesk API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=server_cfg.get('cors_origins', ['*']),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class BroadcastManager:
    """Fan read-model updates out to connected view clients, latest value wins."""

    def __init__(self):
        self.queues: List[asyncio.Queue] = []

    def connect(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self.queues.append(queue)
        return queue

    def disconnect(self, queue: asyncio.Queue):
        if queue in self.queues:
            self.queues.remove(queue)

    def publish(self, model) -> None:
        for queue in self.queues:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(model)


manager = BroadcastManager()


def _not_ready() -> Dict[str, str]:
    return {"error": "State store not initialized"}


@app.get("/")
async def root():
    return {
        "service": "FlowDesk",
        "version": "1.0.0",
        "status": "running" if state_store and state_store.running else "stopped"
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health():
    model = state_store.read_model if state_store else None
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "stream": model.status.value if model else "DISCONNECTED",
        "last_fetch_error": model.last_fetch_error if model else None,
    }


@app.get("/api/state")
async def get_state():
    if not state_store:
        return _not_ready()
    return state_store.read_model.to_dict()


@app.get("/api/flows")
async def get_flows():
    if not state_store:
        return _not_ready()
    data = state_store.read_model.to_dict()
    return {"flows": data["flows"], "count": len(data["flows"]), "sentiment": data["sentiment"]}


@app.get("/api/positions")
async def get_positions():
    if not state_store:
        return _not_ready()
    data = state_store.read_model.to_dict()
    return {
        "enabled": data["enabled"],
        "positions": data["positions"],
        "openPositions": data["openPositions"],
        "recentOrders": data["recentOrders"],
        "signalBoard": data["signalBoard"],
    }


@app.get("/api/stats")
async def get_stats():
    if not state_store:
        return _not_ready()
    data = state_store.read_model.to_dict()
    return {"stats": data["stats"], "pnlSeries": data["pnlSeries"]}


@app.post("/api/auto-trade/toggle")
async def toggle_auto_trade():
    if not state_store:
        return _not_ready()
    ok = await state_store.toggle_auto_trade()
    model = state_store.read_model
    return {"ok": ok, "enabled": model.enabled, "error": model.last_command_error}


@app.post("/api/auto-trade/simulate")
async def simulate_trade(payload: Dict[str, Any]):
    if not state_store:
        return _not_ready()
    ok = await state_store.place_simulated_trade(payload.get("symbol"), payload.get("side"))
    model = state_store.read_model
    return {"ok": ok, "error": model.last_command_error}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    queue = manager.connect()
    try:
        if state_store:
            await websocket.send_json({"type": "state", "data": state_store.read_model.to_dict()})
        while True:
            model = await queue.get()
            await websocket.send_json({"type": "state", "data": model.to_dict()})
    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(queue)


if __name__ == "__main__":
    import uvicorn
    setup_logging_from_config(config)
    uvicorn.run(
        app,
        host=server_cfg.get('host', '0.0.0.0'),
        port=int(server_cfg.get('port', 8080)),
        log_level="info"
    )
