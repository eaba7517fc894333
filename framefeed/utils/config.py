import os
import platform
from dataclasses import dataclass
from pathlib import Path

DEFAULT_LOGLEVEL = os.environ.get("FRAMEFEED_LOGLEVEL", "INFO")

# Capture source settings (device enumeration is not done here, just an index)
DEFAULT_DEVICE_INDEX = int(os.environ.get("FRAMEFEED_DEVICE", "0"))
DEFAULT_PIXEL_FORMAT = os.environ.get("FRAMEFEED_PIXEL_FORMAT", "BGRA32").upper()
DEFAULT_FRAME_WIDTH = int(os.environ.get("FRAMEFEED_FRAME_WIDTH", "1280"))
DEFAULT_FRAME_HEIGHT = int(os.environ.get("FRAMEFEED_FRAME_HEIGHT", "720"))
DEFAULT_FPS = float(os.environ.get("FRAMEFEED_FPS", "30"))
# Rows of pooled frames are padded to this many bytes, like hardware pixel buffers
DEFAULT_ROW_ALIGNMENT = int(os.environ.get("FRAMEFEED_ROW_ALIGNMENT", "64"))

# Preview web server
WEB_HOST = os.environ.get("FRAMEFEED_WEB_HOST", "0.0.0.0")
WEB_PORT = int(os.environ.get("FRAMEFEED_WEB_PORT", "8788"))
JPEG_QUALITY = int(os.environ.get("FRAMEFEED_JPEG_QUALITY", "80"))

# Pipeline limits
MAX_CANVAS_PIXELS = int(os.environ.get("FRAMEFEED_MAX_CANVAS_PIXELS", str(64 * 1024 * 1024)))
FAILURE_ALERT_THRESHOLD = int(os.environ.get("FRAMEFEED_FAILURE_ALERT_THRESHOLD", "30"))
TAKE_TIMEOUT_S = float(os.environ.get("FRAMEFEED_TAKE_TIMEOUT", "0.25"))

# Platform-aware events path: use /tmp on macOS, /run on Linux
if platform.system() == "Darwin":
    _default_events = "/tmp/framefeed.events"
else:
    _default_events = "/run/framefeed.events"
DEFAULT_EVENTS = Path(os.environ.get("FRAMEFEED_EVENTS", _default_events))


@dataclass
class Settings:
    log_level: str = DEFAULT_LOGLEVEL
    device_index: int = DEFAULT_DEVICE_INDEX
    pixel_format: str = DEFAULT_PIXEL_FORMAT
    frame_width: int = DEFAULT_FRAME_WIDTH
    frame_height: int = DEFAULT_FRAME_HEIGHT
    fps: float = DEFAULT_FPS
    row_alignment: int = DEFAULT_ROW_ALIGNMENT
    web_host: str = WEB_HOST
    web_port: int = WEB_PORT
    jpeg_quality: int = JPEG_QUALITY
    max_canvas_pixels: int = MAX_CANVAS_PIXELS
    failure_alert_threshold: int = FAILURE_ALERT_THRESHOLD
    take_timeout_s: float = TAKE_TIMEOUT_S
    events_path: Path = DEFAULT_EVENTS

SETTINGS = Settings()
