"""WebSocket handler for real-time generation events.

This module streams a run's events to the frontend and receives commands
(cancel, ping) from clients.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from events import EventType, GenerationEvent
from run_manager import RunManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

# Events after which a run's stream carries nothing new.
_TERMINAL_EVENTS = frozenset(
    {EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_CANCELLED}
)


def _run_manager(websocket: WebSocket) -> RunManager | None:
    return getattr(websocket.app.state, "run_manager", None)


@websocket_router.websocket("/ws/generations/{run_id}")
async def generation_stream(websocket: WebSocket, run_id: str) -> None:
    """Stream a generation run's events.

    Server -> Client: every GenerationEvent of the run, history first.
    Client -> Server: ``{"type": "cancel"}`` and ``{"type": "ping"}``.

    Args:
        websocket: The WebSocket connection.
        run_id: The run to stream events for.
    """
    run_manager = _run_manager(websocket)
    snapshot = await run_manager.get_run(run_id) if run_manager is not None else None
    if run_manager is None or snapshot is None:
        logger.warning("websocket_unknown_run", run_id=run_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown run")
        return

    await websocket.accept()
    logger.info("websocket_connected", run_id=run_id)

    event_bus = run_manager.event_bus

    # Subscribe before reading history so no event falls between the two.
    # Anything in both places is dropped by sequence below.
    queue = event_bus.subscribe(run_id)

    try:
        last_sequence = 0
        history = event_bus.get_event_history(run_id)
        # Runs restored from the store have no history and no live stream.
        stream_finished = not history and snapshot.status.is_terminal
        if history:
            logger.info("replaying_event_history", run_id=run_id, event_count=len(history))
        for event in history:
            try:
                await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_replay", run_id=run_id)
                return
            last_sequence = max(last_sequence, event.sequence)
            stream_finished = stream_finished or event.type in _TERMINAL_EVENTS

        if stream_finished:
            await _send_closed(websocket, run_id)
            return

        async def send_events() -> None:
            """Forward live events, skipping those already replayed."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.STREAM_CLOSED:
                        logger.info("stream_closed_sentinel", run_id=run_id)
                        await _send_closed(websocket, run_id)
                        break
                    if event.sequence <= last_sequence:
                        logger.debug(
                            "event_skipped_duplicate",
                            run_id=run_id,
                            event_type=event.type.value,
                            sequence=event.sequence,
                        )
                        continue
                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", run_id=run_id)
            except Exception as e:
                logger.error("websocket_send_error", run_id=run_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", run_id=run_id)
                        continue
                    command_type = data.get("type")
                    logger.info("command_received", run_id=run_id, command_type=command_type)

                    if command_type == "cancel":
                        await handle_cancel_command(websocket, run_manager, run_id)
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command", run_id=run_id, command_type=command_type
                        )
                        await websocket.send_json(
                            {"type": "error", "message": f"Unknown command: {command_type}"}
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", run_id=run_id)
            except Exception as e:
                logger.error("websocket_receive_error", run_id=run_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        _done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", run_id=run_id)
    except Exception as e:
        logger.error("websocket_error", run_id=run_id, error=str(e))
    finally:
        event_bus.unsubscribe(run_id, queue)
        logger.info("websocket_cleanup_complete", run_id=run_id)


async def _send_closed(websocket: WebSocket, run_id: str) -> None:
    closed = GenerationEvent(type=EventType.STREAM_CLOSED, run_id=run_id)
    with contextlib.suppress(WebSocketDisconnect, RuntimeError):
        await websocket.send_json(closed.model_dump(mode="json"))
        await websocket.close()


async def handle_cancel_command(
    websocket: WebSocket, run_manager: RunManager, run_id: str
) -> None:
    """Cancel a run on behalf of a WebSocket client.

    Failures are reported back to the client; the run's own cancellation
    shows up on the stream as a ``run_cancelled`` event.
    """
    logger.info("cancel_command_processing", run_id=run_id)
    try:
        snapshot = await run_manager.cancel_run(run_id, reason="Cancelled by client")
    except KeyError:
        logger.warning("cancel_command_run_not_found", run_id=run_id)
        await websocket.send_json({"type": "error", "message": f"Run {run_id} not found"})
        return
    except Exception as e:
        logger.error("cancel_command_failed", run_id=run_id, error=str(e))
        await websocket.send_json({"type": "error", "message": str(e)})
        return

    await websocket.send_json(
        {"type": "cancel_acknowledged", "run_id": run_id, "status": snapshot.status.value}
    )
