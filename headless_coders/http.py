"""aiohttp glue: serve coders over HTTP with NDJSON event streaming.

No session store and no auth: callers keep the returned `threadId` and send
it back to continue a conversation.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Mapping

from aiohttp import web

from headless_coders.errors import AbortError, ExecutionFailure, UsageError
from headless_coders.events import CoderEvent, to_ndjson_line
from headless_coders.runners.ports import HeadlessCoder
from headless_coders.runners.registry import create_coder, ensure_builtin_coders, registered_coders

log = logging.getLogger("http")

NDJSON_CONTENT_TYPE = "application/x-ndjson"

CODERS_KEY = web.AppKey("coders", dict)


async def stream_events_ndjson(
    request: web.Request, events: AsyncIterator[CoderEvent]
) -> web.StreamResponse:
    """Write each event as one NDJSON line; a failing iterator ends with an error line."""
    response = web.StreamResponse(
        status=200,
        headers={"Content-Type": NDJSON_CONTENT_TYPE, "Cache-Control": "no-store"},
    )
    await response.prepare(request)

    try:
        async for event in events:
            await response.write(to_ndjson_line(event))
    except ConnectionResetError:
        log.info("Client disconnected mid-stream")
        return response
    except Exception as e:
        log.exception("Event stream failed")
        await response.write(to_ndjson_line({"type": "error", "message": str(e) or type(e).__name__}))
    finally:
        aclose = getattr(events, "aclose", None)
        if aclose is not None:
            await aclose()

    await response.write_eof()
    return response


def _get_coder(app: web.Application, provider: str) -> HeadlessCoder:
    coders = app[CODERS_KEY]
    if provider not in coders:
        coders[provider] = create_coder(provider)
    return coders[provider]


async def _handle_agents(request: web.Request) -> web.Response:
    coders = request.app[CODERS_KEY]
    names = sorted(set(coders) | set(registered_coders()))
    return web.json_response({"agents": names})


async def _handle_messages(request: web.Request) -> web.StreamResponse:
    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"error": "Request body must be JSON"}, status=400)
    if not isinstance(body, dict):
        return web.json_response({"error": "Request body must be an object"}, status=400)

    provider = (body.get("provider") or "").strip().lower()
    content = body.get("content")
    if not provider:
        return web.json_response({"error": "provider is required"}, status=400)
    if not content:
        return web.json_response({"error": "content is required"}, status=400)

    try:
        coder = _get_coder(request.app, provider)
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)

    thread_id = body.get("threadId")
    thread = coder.resume_thread(thread_id) if thread_id else coder.start_thread()
    run_options: dict[str, Any] = {}
    if body.get("outputSchema"):
        run_options["output_schema"] = body["outputSchema"]

    if request.query.get("stream") == "true":
        return await stream_events_ndjson(request, thread.run_streamed(content, **run_options))

    try:
        result = await thread.run(content, **run_options)
    except UsageError as e:
        return web.json_response({"error": str(e)}, status=409)
    except AbortError as e:
        return web.json_response({"error": e.reason, "code": e.code, "threadId": thread.id}, status=500)
    except ExecutionFailure as e:
        return web.json_response(
            {"error": e.message, "exitCode": e.exit_code, "threadId": thread.id}, status=502
        )

    return web.json_response(
        {"threadId": result.thread_id, "text": result.text, "json": result.structured, "usage": result.usage}
    )


def create_app(coders: Mapping[str, HeadlessCoder] | None = None) -> web.Application:
    """Build the application. Without `coders`, the built-in backends are served."""
    if coders is None:
        ensure_builtin_coders()
    app = web.Application()
    app[CODERS_KEY] = dict(coders or {})
    app.router.add_get("/agents", _handle_agents)
    app.router.add_post("/messages", _handle_messages)
    return app
