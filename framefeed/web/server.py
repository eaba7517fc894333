from __future__ import annotations

import logging

from aiohttp import web

from .handlers import (
    FRAME_BUFFER_KEY,
    PIPELINE_KEY,
    SOURCE_KEY,
    api_frame,
    api_ping,
    api_status,
)
from ..cv.frame_buffer import FrameBuffer
from ..cv.pipeline import FramePipeline

log = logging.getLogger(__name__)


def make_app(pipeline: FramePipeline, frame_buffer: FrameBuffer, source=None) -> web.Application:
    app = web.Application()
    app[PIPELINE_KEY] = pipeline
    app[FRAME_BUFFER_KEY] = frame_buffer
    if source is not None:
        app[SOURCE_KEY] = source

    app.add_routes([
        # Health check
        web.get("/api/ping", api_ping),

        # Pipeline and capture status
        web.get("/api/status", api_status),

        # Latest displayed frame
        web.get("/api/frame", api_frame),
    ])

    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Serve `app` on the running loop; the caller cleans up the returned runner."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info(f"Preview server listening on http://{host}:{port}")
    return runner
