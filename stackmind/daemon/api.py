"""HTTP API for the StackMind daemon."""

import asyncio
import json

from aiohttp import web
from loguru import logger

from .bus import Event
from .messages import task_to_wire

KEEPALIVE_SECONDS = 15.0
OBSERVER_QUEUE_SIZE = 100


def create_api_app(daemon) -> web.Application:
    """Create the aiohttp application with routes."""

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        if request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            response = await handler(request)
            if response.prepared:
                return response
        response.headers['Access-Control-Allow-Origin'] = daemon.config.api.cors_origin
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, OPTIONS'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
        return response

    app = web.Application(middlewares=[cors_middleware])
    app['daemon'] = daemon

    app.router.add_post('/messages', handle_message)
    app.router.add_get('/events', handle_events)
    app.router.add_get('/tasks/{task_id}', handle_task_status)
    app.router.add_get('/status', handle_status)
    app.router.add_get('/health', handle_health)

    return app


async def handle_message(request: web.Request) -> web.Response:
    """Dispatch one action message."""
    daemon = request.app['daemon']

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response(
            {'success': False, 'error': 'body must be JSON', 'code': 'invalid_request'},
            status=400
        )

    result = await daemon.router.handle(payload)
    if result is None:
        return web.json_response({'accepted': True}, status=202)
    return web.json_response(result)


async def handle_events(request: web.Request) -> web.StreamResponse:
    """
    Server-Sent Events stream of task broadcasts.

    Only events published while the stream is open are delivered; a
    reconnecting observer should ask for task status to catch up.
    Optional ``taskId`` query parameter narrows the stream to one task.
    """
    daemon = request.app['daemon']
    only_task = request.query.get('taskId')

    response = web.StreamResponse(headers={
        'Content-Type': 'text/event-stream',
        'Cache-Control': 'no-cache',
        'Access-Control-Allow-Origin': daemon.config.api.cors_origin,
    })
    await response.prepare(request)

    queue: asyncio.Queue = asyncio.Queue(maxsize=OBSERVER_QUEUE_SIZE)

    def forward(event: Event) -> None:
        if only_task and event.data.get('taskId') != only_task:
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Observer too slow, dropping {event.type}")

    daemon.event_bus.subscribe("task.*", forward)
    logger.debug("Observer attached to event stream")
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                await response.write(b": keepalive\n\n")
                continue
            message = event.to_message()
            chunk = f"event: {message['action']}\ndata: {json.dumps(message)}\n\n"
            await response.write(chunk.encode('utf-8'))
    except ConnectionResetError:
        pass
    finally:
        daemon.event_bus.unsubscribe("task.*", forward)
        logger.debug("Observer detached from event stream")

    return response


async def handle_task_status(request: web.Request) -> web.Response:
    daemon = request.app['daemon']
    task = daemon.pipeline.get_task_status(request.match_info['task_id'])
    if task is None:
        return web.json_response({'task': None}, status=404)
    return web.json_response({'task': task_to_wire(task)})


async def handle_status(request: web.Request) -> web.Response:
    """Get daemon status."""
    daemon = request.app['daemon']
    return web.json_response(await daemon.get_status())


async def handle_health(request: web.Request) -> web.Response:
    """Health check endpoint."""
    daemon = request.app['daemon']
    llm_state = daemon.llm_health()
    return web.json_response({
        'status': 'ok' if llm_state in ('healthy', 'unknown') else 'degraded',
        'llm': llm_state,
        'embeddings_ready': daemon.embedder.is_ready,
    })
