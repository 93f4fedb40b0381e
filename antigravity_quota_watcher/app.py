"""
Antigravity Quota Watcher
=========================

Shows the connection state of the local Antigravity language server as
a system tray icon and keeps polling its user status.

The endpoint is discovered from the language server's command line and
socket table (see ``discovery``); nothing has to be configured.
"""
from __future__ import annotations

import ctypes
import functools
import logging
import sys
import threading
import time
import traceback
from datetime import datetime
from typing import Any

import pystray  # type: ignore[import-untyped]  # no type stubs available
from PIL import Image, ImageDraw, ImageFont

from .discovery import DiscoveryOutcome, PortDiscovery
from .errors import DiscoveryError, NoDiagnosticTool
from .i18n import T
from .quota_client import fetch_user_status

log = logging.getLogger(__name__)

# ── Configuration ──────────────────────────────────────────────
POLL_INTERVAL = 60  # Seconds between status polls
POLL_ERROR = 30  # Polling interval after a failed poll or detection
MAX_POLL_FAILURES = 3  # Consecutive failed polls before the port is re-detected
# ───────────────────────────────────────────────────────────────


def format_tooltip(endpoint: DiscoveryOutcome | None, status: dict[str, Any], updated: datetime | None = None) -> str:
    """Format the connection state as short tooltip text."""
    lines = [T['title']]
    if endpoint is None or 'error' in status:
        lines.append(T['not_connected'])
        if 'error' in status:
            lines.append(status['error'][:80])
        return '\n'.join(lines)

    lines.append(T['connected'].format(port=endpoint.https_port))
    if updated is not None:
        lines.append(T['last_update'].format(clock=updated.strftime('%H:%M')))

    return '\n'.join(lines)


# ── Icon creation ──────────────────────────────────────────────
# Monochrome 64x64 icon: "A" while connected, a dimmed "!" otherwise.

FG = (255, 255, 255, 255)
FG_DIM = (255, 255, 255, 140)
TRANSPARENT = (0, 0, 0, 0)

FONT_NAMES = ('arialbd.ttf', 'arial.ttf', 'DejaVuSans-Bold.ttf', 'Helvetica.ttc')


@functools.lru_cache(maxsize=None)
def load_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """Load the first available bold sans font at given size."""
    for name in FONT_NAMES:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            continue

    return ImageFont.load_default()


def create_status_image(text: str, dim: bool = False) -> Image.Image:
    """Create monochrome centered-text icon."""
    S = 64
    img = Image.new('RGBA', (S, S), TRANSPARENT)
    draw = ImageDraw.Draw(img)
    font = load_font(46)
    bbox = draw.textbbox((0, 0), text, font=font)
    tw, th = bbox[2] - bbox[0], bbox[3] - bbox[1]
    draw.text(((S - tw) / 2 - bbox[0], (S - th) / 2 - bbox[1]), text, fill=FG_DIM if dim else FG, font=font)

    return img


# ── Tray application ──────────────────────────────────────────


class QuotaWatcher:
    """System tray application tracking the Antigravity language server."""

    def __init__(self) -> None:
        """Set up the tray icon with context menu, discovery and polling state."""
        self.running = True
        self.endpoint: DiscoveryOutcome | None = None
        self.status_data: dict[str, Any] = {}
        self.updated: datetime | None = None
        self._poll_failures = 0
        self.tools_missing = False  # Set by NoDiagnosticTool; only a manual re-detect retries
        self._detect_lock = threading.Lock()
        self.discovery = PortDiscovery(notify=self._notify)
        self.icon = pystray.Icon(
            'antigravity_quota_watcher',
            icon=create_status_image('A', dim=True),
            title=T['loading'],
            menu=pystray.Menu(
                pystray.MenuItem(T['title'].replace('&', '&&'), None, enabled=False),
                pystray.MenuItem(T['refresh'], self.on_refresh),
                pystray.MenuItem(T['redetect'], self.on_redetect),
                pystray.MenuItem(T['quit'], self.on_quit),
            ),
        )

    def _notify(self, message: str) -> None:
        self.icon.notify(message, T['title'])

    def on_refresh(self, icon: Any = None, item: Any = None) -> None:
        threading.Thread(target=self.update, daemon=True).start()

    def on_redetect(self, icon: Any = None, item: Any = None) -> None:
        threading.Thread(target=self.detect, kwargs={'manual': True}, daemon=True).start()

    def on_quit(self, icon: Any = None, item: Any = None) -> None:
        self.running = False
        self.icon.stop()

    def _show(self) -> None:
        connected = self.endpoint is not None and 'error' not in self.status_data
        self.icon.icon = create_status_image('A' if connected else '!', dim=not connected)
        self.icon.title = format_tooltip(self.endpoint, self.status_data, self.updated)

    def detect(self, manual: bool = False) -> bool:
        """Discover the language server endpoint and poll it once.

        Only one detection runs at a time; a manual request arriving while
        another detection is in flight is dropped.  A missing diagnostic
        tool stops automatic re-detection, since the discovery engine has
        already shown the remediation message.
        """
        if not self._detect_lock.acquire(blocking=not manual):
            return False

        try:
            self.icon.title = f"{T['title']}\n{T['detecting']}"
            try:
                self.endpoint = self.discovery.discover()
            except DiscoveryError as e:
                log.error('Port detection failed: %s', e)
                self.endpoint = None
                self.status_data = {'error': T['errors'].get(e.kind, T['errors']['discovery_error'])}
                self.tools_missing = isinstance(e, NoDiagnosticTool)
                self._show()
                if manual and not self.tools_missing:
                    self._notify(T['detection_failed'])
                return False

            self.tools_missing = False
            self._poll_failures = 0
            if manual:
                self._notify(T['detection_success'].format(port=self.endpoint.https_port))
        finally:
            self._detect_lock.release()

        self.update()
        return True

    def update(self) -> None:
        """Poll the user status and update the tray icon and tooltip.

        A rejected token or repeated connection failures drop the endpoint
        so the next poll cycle re-runs discovery.
        """
        endpoint = self.endpoint
        if endpoint is None:
            return

        self.status_data = fetch_user_status(endpoint)
        if 'error' in self.status_data:
            self._poll_failures += 1
            if self.status_data.get('auth_error') or self._poll_failures >= MAX_POLL_FAILURES:
                log.info('Dropping endpoint on port %d after failed polls', endpoint.https_port)
                self.endpoint = None
        else:
            self._poll_failures = 0
            self.updated = datetime.now()

        self._show()

    def poll_loop(self) -> None:
        """Detect the endpoint, then poll it until quit, re-detecting after failures."""
        while self.running:
            if self.endpoint is None:
                if not self.tools_missing:
                    self.detect()
            else:
                self.update()

            interval = POLL_ERROR if self.endpoint is None or 'error' in self.status_data else POLL_INTERVAL
            for _ in range(interval):
                if not self.running:
                    break
                time.sleep(1)

    def _on_icon_ready(self, icon: Any) -> None:
        """Called by pystray in a separate thread once the tray icon is set up."""
        try:
            icon.visible = True
            self.poll_loop()
        except Exception:
            log.exception('Watcher thread crashed')
            crash_log(traceback.format_exc())

    def run(self) -> None:
        self.icon.run(setup=self._on_icon_ready)


def crash_log(msg: str) -> None:
    """Show a crash message box on Windows (for windowless builds); log elsewhere."""
    if sys.platform == 'win32':
        ctypes.windll.user32.MessageBoxW(0, msg[:2000], 'Antigravity Quota Watcher - Error', 0x10)
    else:
        log.critical(msg)
