"""
Live-update channels.

``/ws/execution/{drill_id}`` streams execution events for a drill and accepts
RETRY_STEP / SKIP_STEP. ``/ws/scenario_test/{scenario_id}`` streams test-run
logs and accepts ABORT_RUN. Nothing is replayed on connect; clients fetch
current state through the HTTP API.
"""

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from api.src.dependencies import get_orchestrator
from engine.src.models.events import execution_topic, scenario_test_topic
from engine.src.services.orchestrator import Orchestrator

router = APIRouter(prefix="/ws", tags=["realtime"])

logger = logging.getLogger(__name__)

@router.websocket("/execution/{drill_id}")
async def execution_channel(
    websocket: WebSocket,
    drill_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    await websocket.accept()
    topic = execution_topic(drill_id)
    orchestrator.broadcaster.subscribe(topic, websocket)
    logger.info(f"[WebSocket] Execution client connected for drill {drill_id}")

    try:
        while True:
            raw = await websocket.receive_text()
            await orchestrator.handle_execution_message(drill_id, raw)
    except WebSocketDisconnect:
        logger.info(f"[WebSocket] Execution client disconnected for drill {drill_id}")
    finally:
        orchestrator.broadcaster.unsubscribe(topic, websocket)

@router.websocket("/scenario_test/{scenario_id}")
async def scenario_test_channel(
    websocket: WebSocket,
    scenario_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    await websocket.accept()
    topic = scenario_test_topic(scenario_id)
    orchestrator.broadcaster.subscribe(topic, websocket)
    logger.info(f"[WebSocket] Test run client connected for scenario {scenario_id}")

    try:
        await websocket.send_text(orchestrator.test_runs.greeting(scenario_id).to_json())
        while True:
            raw = await websocket.receive_text()
            await orchestrator.handle_test_run_message(scenario_id, raw)
    except WebSocketDisconnect:
        logger.info(f"[WebSocket] Test run client disconnected for scenario {scenario_id}")
    finally:
        orchestrator.broadcaster.unsubscribe(topic, websocket)
