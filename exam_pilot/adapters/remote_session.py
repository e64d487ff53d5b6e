"""Remote-control session backed by a Remotely server."""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
import logging
from threading import Event, Lock, Thread
import time
from typing import Any, Callable
from uuid import uuid4

import requests

from exam_pilot.constants.network_constants import (
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_DELAY_SECONDS,
    REMOTE_REQUEST_TIMEOUT_SECONDS,
)
from exam_pilot.constants.pipeline_constants import POLLING_INTERVAL_SECONDS
from exam_pilot.core.contracts import (
    ConnectionListener,
    NotConnectedError,
    RemoteSessionError,
    ScreenshotListener,
)
from exam_pilot.core.models import ConnectionInfo, ConnectionState, Point, Screenshot, utc_now

logger = logging.getLogger(__name__)


class RemoteConnectError(RemoteSessionError):
    """Raised when a session cannot be established."""


class RemotelyRemoteSession:
    """Drives a device through the Remotely REST API.

    Frames are fetched by a background thread at the polling cadence and
    pushed to listeners. When a fetch fails the session reports itself
    disconnected and retries the connection a bounded number of times with a
    fixed delay between attempts.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        interval_provider: Callable[[], float] | None = None,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        reconnect_delay_s: float = RECONNECT_DELAY_SECONDS,
        request_timeout_s: float = REMOTE_REQUEST_TIMEOUT_SECONDS,
        input_delay_s: float = 0.1,
    ) -> None:
        self._http = session or requests.Session()
        self._interval = interval_provider or (lambda: POLLING_INTERVAL_SECONDS)
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_delay = reconnect_delay_s
        self._timeout = request_timeout_s
        self._input_delay = input_delay_s

        self._lock = Lock()
        self._connected = False
        self._server_url: str | None = None
        self._device_id: str | None = None
        self._api_key: str | None = None
        self._organization_id: str | None = None
        self._session_id: str | None = None
        self._last_screenshot_at: datetime | None = None

        self._screenshot_listeners: list[ScreenshotListener] = []
        self._connection_listeners: list[ConnectionListener] = []
        self._stop = Event()
        self._frame_thread: Thread | None = None

    # --- Listeners ---

    def add_screenshot_listener(self, listener: ScreenshotListener) -> None:
        with self._lock:
            self._screenshot_listeners.append(listener)

    def add_connection_listener(self, listener: ConnectionListener) -> None:
        with self._lock:
            self._connection_listeners.append(listener)

    # --- Connection lifecycle ---

    def connect(
        self,
        server_url: str,
        device_id: str,
        access_key: str,
        organization_id: str | None = None,
    ) -> ConnectionInfo:
        api_key = _parse_access_key(access_key)
        server_url = server_url.rstrip("/")
        logger.info("Connecting to Remotely server %s for device %s", server_url, device_id)

        connection_url = self._open_viewer(server_url, device_id, api_key, organization_id)
        with self._lock:
            self._server_url = server_url
            self._device_id = device_id
            self._api_key = api_key
            self._organization_id = organization_id
            self._session_id = f"viewer_{uuid4().hex[:12]}"
            self._connected = True
            info = ConnectionInfo(session_id=self._session_id, device_id=device_id, connection_url=connection_url)
        logger.info("Remotely session %s established", info.session_id)
        self._start_frame_thread()
        self._notify_connection(True)
        return info

    def disconnect(self) -> None:
        self._stop.set()
        thread = self._frame_thread
        if thread is not None and thread.is_alive():
            thread.join(timeout=self._timeout)
        self._frame_thread = None
        with self._lock:
            was_connected = self._connected
            self._connected = False
            self._session_id = None
        if was_connected:
            logger.info("Disconnected from Remotely server")
            self._notify_connection(False)

    def connection_state(self) -> ConnectionState:
        with self._lock:
            return ConnectionState(
                connected=self._connected,
                device_id=self._device_id,
                session_id=self._session_id,
                last_screenshot_at=self._last_screenshot_at,
            )

    def is_connected(self) -> bool:
        with self._lock:
            return self._connected

    # --- Input injection ---

    def click(self, x: int, y: int) -> None:
        self._require_connected()
        self._send({"type": "MouseMove", "x": x, "y": y})
        time.sleep(self._input_delay)
        self._send({"type": "MouseClick", "x": x, "y": y, "button": "left"})
        logger.info("Clicked at (%d, %d)", x, y)

    def type_text(self, text: str) -> None:
        self._require_connected()
        self._send({"type": "TextInput", "text": text})
        logger.info("Typed %d characters", len(text))

    def drag_drop(self, start: Point, end: Point) -> None:
        self._require_connected()
        self._send({"type": "MouseMove", "x": start.x, "y": start.y})
        time.sleep(self._input_delay)
        self._send({"type": "MouseDown", "x": start.x, "y": start.y, "button": "left"})
        time.sleep(self._input_delay)
        self._send({"type": "MouseMove", "x": end.x, "y": end.y})
        time.sleep(self._input_delay)
        self._send({"type": "MouseUp", "x": end.x, "y": end.y, "button": "left"})
        logger.info("Dragged from (%d, %d) to (%d, %d)", start.x, start.y, end.x, end.y)

    # --- Internals ---

    def _open_viewer(
        self, server_url: str, device_id: str, api_key: str, organization_id: str | None
    ) -> str | None:
        headers = _headers(api_key, organization_id)
        try:
            response = self._http.get(f"{server_url}/api/devices", headers=headers, timeout=self._timeout)
            response.raise_for_status()
            devices = response.json() or []
        except (requests.RequestException, ValueError) as exc:
            raise RemoteConnectError(f"Could not list devices on {server_url}: {exc}") from exc

        if not devices:
            raise RemoteConnectError(
                f"No devices are connected to {server_url}. Install the Remotely agent on the target first."
            )
        if not any(isinstance(d, dict) and d.get("id") == device_id for d in devices):
            available = ", ".join(
                f"{d.get('id')} ({d.get('deviceName', '?')})" for d in devices if isinstance(d, dict)
            )
            raise RemoteConnectError(f"Device {device_id} not found. Available devices: {available}")

        try:
            response = self._http.post(
                f"{server_url}/api/RemoteControl/Viewer/",
                json={"deviceID": device_id},
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteConnectError(f"Failed to open a remote-control session: {exc}") from exc
        body = response.text.strip()
        return body or None

    def _start_frame_thread(self) -> None:
        if self._frame_thread is not None and self._frame_thread.is_alive():
            return
        self._stop = Event()
        self._frame_thread = Thread(target=self._run_frames, args=(self._stop,), name="RemotelyFrames", daemon=True)
        self._frame_thread.start()

    def _run_frames(self, stop: Event) -> None:
        while not stop.wait(self._interval()):
            if not self.is_connected():
                continue
            try:
                frame = self._fetch_frame()
            except requests.RequestException as exc:
                logger.warning("Lost remote session while fetching a frame: %s", exc)
                self._handle_connection_lost(stop)
                continue
            except Exception:
                logger.exception("Unexpected error while fetching a frame")
                continue
            if frame is not None:
                self._dispatch_frame(frame)

    def _fetch_frame(self) -> Screenshot | None:
        with self._lock:
            url = f"{self._server_url}/api/RemoteControl/Screenshot/{self._device_id}"
            headers = _headers(self._api_key or "", self._organization_id)
        response = self._http.get(url, headers=headers, timeout=self._timeout)
        response.raise_for_status()
        content_type = response.headers.get("Content-Type", "")
        if content_type.startswith("image/"):
            return Screenshot(image=response.content, image_format=content_type.split("/", 1)[1])
        try:
            payload: Any = response.json()
        except ValueError:
            logger.warning("Dropping a frame whose body is neither an image nor JSON")
            return None
        if not isinstance(payload, dict):
            logger.warning("Dropping a frame with an unexpected %s payload", type(payload).__name__)
            return None
        image_data = payload.get("imageData")
        if not image_data:
            return None
        try:
            image = base64.b64decode(image_data, validate=True)
        except (binascii.Error, TypeError) as exc:
            logger.warning("Dropping a frame with undecodable image data: %s", exc)
            return None
        return Screenshot(
            image=image,
            image_format=str(payload.get("imageFormat") or "jpeg"),
        )

    def _dispatch_frame(self, frame: Screenshot) -> None:
        with self._lock:
            self._last_screenshot_at = frame.captured_at
            listeners = list(self._screenshot_listeners)
        for listener in listeners:
            try:
                listener(frame)
            except Exception:
                logger.exception("Screenshot listener failed")

    def _handle_connection_lost(self, stop: Event) -> None:
        with self._lock:
            self._connected = False
            server_url, device_id = self._server_url, self._device_id
            api_key, organization_id = self._api_key, self._organization_id
        self._notify_connection(False)
        if not (server_url and device_id and api_key):
            return

        for attempt in range(1, self._max_reconnect_attempts + 1):
            if stop.wait(self._reconnect_delay):
                return
            logger.info("Reconnecting (%d/%d)...", attempt, self._max_reconnect_attempts)
            try:
                self._open_viewer(server_url, device_id, api_key, organization_id)
            except RemoteSessionError as exc:
                logger.warning("Reconnection attempt %d failed: %s", attempt, exc)
                continue
            with self._lock:
                self._connected = True
            logger.info("Reconnected to device %s", device_id)
            self._notify_connection(True)
            return
        logger.error("Giving up on device %s after %d reconnection attempts", device_id, self._max_reconnect_attempts)

    def _notify_connection(self, connected: bool) -> None:
        with self._lock:
            listeners = list(self._connection_listeners)
        for listener in listeners:
            try:
                listener(connected)
            except Exception:
                logger.exception("Connection listener failed")

    def _require_connected(self) -> None:
        if not self.is_connected():
            raise NotConnectedError("No remote-control session is connected.")

    def _send(self, message: dict[str, object]) -> None:
        with self._lock:
            if not self._connected:
                raise NotConnectedError("Remote-control session dropped while sending input.")
            url = f"{self._server_url}/api/RemoteControl/Input/{self._device_id}"
            headers = _headers(self._api_key or "", self._organization_id)
            body = {**message, "viewerConnectionId": self._session_id, "sentAt": utc_now().isoformat()}
        try:
            response = self._http.post(url, json=body, headers=headers, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise RemoteSessionError(f"Remote input {message['type']} rejected: {exc}") from exc


def _parse_access_key(access_key: str) -> str:
    parts = access_key.strip().split(":")
    if len(parts) != 2 or not all(parts):
        raise RemoteConnectError("Access key must be in format keyId:keySecret")
    return f"{parts[0]}:{parts[1]}"


def _headers(api_key: str, organization_id: str | None) -> dict[str, str]:
    headers = {"X-Api-Key": api_key, "Content-Type": "application/json"}
    if organization_id:
        headers["OrganizationID"] = organization_id
    return headers
