import argparse
import asyncio
import dataclasses
import logging
import signal

from .core.logging_setup import setup_logger
from .cv.capture import CaptureError, SOURCES, get_source
from .cv.converter import BYTE_ORDERS
from .cv.frame_buffer import FrameBuffer
from .cv.pipeline import FramePipeline
from .cv.pixel_buffer import PixelFormat
from .utils.config import SETTINGS
from .web.server import make_app, start_server

log = logging.getLogger(__name__)


# ---------- run: capture -> pipeline -> preview server ----------

async def run_preview(settings, source_name: str) -> int:
    frame_buffer = FrameBuffer(jpeg_quality=settings.jpeg_quality)
    pipeline = FramePipeline(frame_buffer, settings)
    pipeline.start()

    try:
        source = get_source(source_name, pipeline.on_frame, settings)
    except (CaptureError, ValueError) as e:
        pipeline.stop()
        print(f"[run] {e}")
        return 2

    runner = await start_server(make_app(pipeline, frame_buffer, source), settings.web_host, settings.web_port)

    stop_ev = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_ev.set)
        except NotImplementedError:
            pass

    try:
        # Opening a device can take a while; keep the loop serving meanwhile
        await loop.run_in_executor(None, source.start)
        print(f"[run] {source_name} → http://{settings.web_host}:{settings.web_port}/api/frame (Ctrl+C to stop)")
        await stop_ev.wait()
        return 0
    except CaptureError as e:
        print(f"[run] {e}")
        return 1
    finally:
        await shutdown(source, pipeline, frame_buffer, runner)


async def shutdown(source, pipeline, frame_buffer, runner) -> None:
    """Stop capture and conversion off the loop thread, then release the displayed frame."""
    loop = asyncio.get_running_loop()
    # Both join worker threads; the loop keeps serving meanwhile
    await loop.run_in_executor(None, source.stop)
    await loop.run_in_executor(None, pipeline.stop)
    # Sink state belongs to the loop thread
    frame_buffer.clear()
    await runner.cleanup()


def cmd_run(args):
    overrides = {}
    if args.device is not None:
        overrides["device_index"] = args.device
    if args.format is not None:
        overrides["pixel_format"] = args.format
    if args.host is not None:
        overrides["web_host"] = args.host
    if args.port is not None:
        overrides["web_port"] = args.port
    if args.size is not None:
        overrides["frame_width"], overrides["frame_height"] = args.size
    if args.fps is not None:
        overrides["fps"] = args.fps
    settings = dataclasses.replace(SETTINGS, **overrides)

    setup_logger("DEBUG" if args.verbose else None)
    try:
        rc = asyncio.run(run_preview(settings, args.source))
    except KeyboardInterrupt:
        rc = 0
    raise SystemExit(rc)


def cmd_formats(args):
    for fmt, order in BYTE_ORDERS.items():
        print(f"{fmt.value:8} {order.value}")


# ---------- arg parsing ----------

def _size(value: str):
    try:
        w, h = value.lower().split("x", 1)
        return int(w), int(h)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT, got {value!r}")


def build_parser():
    ap = argparse.ArgumentParser(
        prog="framefeed", description="Live capture → pixel buffer conversion → preview"
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run", help="Capture frames and serve the latest converted one over HTTP")
    r.add_argument("--source", choices=sorted(SOURCES), default="camera")
    r.add_argument("--device", type=int, help=f"capture device index (default {SETTINGS.device_index})")
    r.add_argument(
        "--format",
        choices=[f.value for f in BYTE_ORDERS],
        type=lambda s: PixelFormat.parse(s).value,
        help=f"pixel format to request from the source (default {SETTINGS.pixel_format})",
    )
    r.add_argument("--size", type=_size, help="requested WIDTHxHEIGHT")
    r.add_argument("--fps", type=float)
    r.add_argument("--host", help=f"bind address (default {SETTINGS.web_host})")
    r.add_argument("--port", type=int, help=f"bind port (default {SETTINGS.web_port})")
    r.add_argument("-v", "--verbose", action="store_true", help="log per-frame drops (DEBUG)")
    r.set_defaults(func=cmd_run)

    f = sub.add_parser("formats", help="List supported pixel formats and their byte order")
    f.set_defaults(func=cmd_formats)

    return ap


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
