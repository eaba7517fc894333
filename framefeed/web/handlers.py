import logging

from aiohttp import web

from .. import events
from ..cv.frame_buffer import FrameBuffer
from ..cv.pipeline import FramePipeline

log = logging.getLogger(__name__)

PIPELINE_KEY = web.AppKey("pipeline", FramePipeline)
FRAME_BUFFER_KEY = web.AppKey("frame_buffer", FrameBuffer)
SOURCE_KEY = web.AppKey("source", object)

# ---------- helpers ----------

def _json(data, status=200):
    return web.json_response(data, status=status)


# ---------- API handlers ----------

async def api_ping(request: web.Request):
    return _json({"ok": True})


async def api_status(request: web.Request):
    """Pipeline counters, capture source status and the displayed frame's metadata."""
    pipeline = request.app[PIPELINE_KEY]
    frame_buffer = request.app[FRAME_BUFFER_KEY]
    source = request.app.get(SOURCE_KEY)

    status = pipeline.get_status()
    status["display"] = {
        "has_frame": frame_buffer.has_frame(),
        "frames_displayed": frame_buffer.frames_displayed,
        "frames_ignored": frame_buffer.frames_ignored,
        "frame": frame_buffer.metadata.to_dict() if frame_buffer.metadata else None,
    }
    if source is not None:
        status["capture"] = source.get_status()
    try:
        limit = int(request.query.get("events", "10"))
    except ValueError:
        return _json({"error": "events must be an integer"}, 400)
    status["events"] = events.recent(limit)
    return _json(status)


async def api_frame(request: web.Request):
    """Get the currently displayed frame as a JPEG image."""
    frame_buffer = request.app[FRAME_BUFFER_KEY]

    result = frame_buffer.get_latest_jpeg()
    if result is None:
        log.debug("Frame requested but nothing has been displayed yet")
        return _json({"error": "no frame available"}, 404)

    jpeg_data, metadata = result
    headers = {
        "Cache-Control": "no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }
    for key in ("width", "height", "sequence", "timestamp", "pixel_format"):
        header_key = f"X-Frame-{key.replace('_', '-').title()}"
        headers[header_key] = str(getattr(metadata, key))

    return web.Response(body=jpeg_data, content_type="image/jpeg", headers=headers)
