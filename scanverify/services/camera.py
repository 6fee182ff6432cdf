# scanverify/services/camera.py
# Camera-backed barcode reader + the station's single scanning session.
#
# OpenCV/pyzbar are imported lazily so the web station (and its tests) can run
# on hosts with no camera stack; opening the reader is the first point that
# needs them.

from __future__ import annotations

import logging
import threading
import time
from enum import IntEnum
from typing import Callable, Optional

log = logging.getLogger(__name__)

cv2 = None
pyzbar = None
CAMERA_DEPS_AVAILABLE = False

FRAME_WIDTH = 640
FRAME_HEIGHT = 480   # 4:3


class ScannerState(IntEnum):
    NOT_STARTED = 1
    SCANNING = 2
    PAUSED = 3


class CameraError(RuntimeError):
    pass


def _camera_deps_required():
    global cv2, pyzbar, CAMERA_DEPS_AVAILABLE
    if CAMERA_DEPS_AVAILABLE:
        return
    try:
        import cv2 as _cv2
        from pyzbar import pyzbar as _pyzbar
    except ImportError as e:
        raise CameraError(
            "Camera scanning requires OpenCV (cv2) and pyzbar. "
            f"(import error: {e})"
        ) from e
    cv2 = _cv2
    pyzbar = _pyzbar
    CAMERA_DEPS_AVAILABLE = True


def decode_frame(frame) -> list[str]:
    """Return every barcode payload pyzbar finds in one BGR frame."""
    _camera_deps_required()
    gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
    out = []
    for sym in pyzbar.decode(gray):
        try:
            out.append(sym.data.decode("utf-8"))
        except UnicodeDecodeError:
            out.append(sym.data.decode("latin-1"))
    return out


def open_capture(device_id: int, fps: int):
    _camera_deps_required()
    cap = cv2.VideoCapture(device_id)
    if not cap.isOpened():
        cap.release()
        raise CameraError(f"Cannot open camera device {device_id}")
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
    cap.set(cv2.CAP_PROP_FPS, fps)
    log.info("Camera %s opened: %sx%s @ %sfps", device_id, FRAME_WIDTH, FRAME_HEIGHT, fps)
    return cap


class CameraReader:
    """
    Owns one capture device and a decode thread.

    State machine: NOT_STARTED → SCANNING ⇄ PAUSED, and stop() from either
    running state returns to NOT_STARTED and releases the device.
    """

    def __init__(self, device_id: int = 0, fps: int = 10,
                 capture_factory: Callable = open_capture,
                 decoder: Callable = decode_frame):
        self.device_id = device_id
        self.fps = max(1, int(fps or 10))
        self._capture_factory = capture_factory
        self._decoder = decoder
        self._cap = None
        self._thread: Optional[threading.Thread] = None
        self._halt: Optional[threading.Event] = None
        self._state = ScannerState.NOT_STARTED
        self._lock = threading.Lock()

    def get_state(self) -> ScannerState:
        return self._state

    def start(self, on_decoded: Callable[[str], None]) -> None:
        with self._lock:
            if self._state != ScannerState.NOT_STARTED:
                raise CameraError(f"Cannot start reader in state {self._state.name}")
            self._cap = self._capture_factory(self.device_id, self.fps)
            # one halt event per run; a thread from an earlier run never resumes
            self._halt = threading.Event()
            self._state = ScannerState.SCANNING
            self._thread = threading.Thread(
                target=self._loop, args=(on_decoded, self._halt, self._cap),
                name="camera-reader", daemon=True,
            )
            self._thread.start()

    def pause(self) -> None:
        if self._state == ScannerState.SCANNING:
            self._state = ScannerState.PAUSED

    def resume(self) -> None:
        if self._state == ScannerState.PAUSED:
            self._state = ScannerState.SCANNING

    def stop(self) -> None:
        with self._lock:
            if self._state == ScannerState.NOT_STARTED:
                raise CameraError("Cannot stop, reader is not running")
            if self._halt is not None:
                self._halt.set()
            t, self._thread = self._thread, None
            cap, self._cap = self._cap, None
            self._state = ScannerState.NOT_STARTED
        # joined outside the lock; the decode callback may call stop() from
        # the reader thread itself
        if t is not None and t is not threading.current_thread():
            t.join(timeout=2.0)
        if cap is not None:
            cap.release()
            log.info("Camera %s released", self.device_id)

    def _loop(self, on_decoded: Callable[[str], None],
              halt: threading.Event, cap) -> None:
        interval = 1.0 / self.fps
        while not halt.is_set():
            t0 = time.monotonic()
            if self._state == ScannerState.PAUSED:
                halt.wait(interval)
                continue
            ok, frame = cap.read()
            if not ok:
                log.error("Failed to read frame from camera %s", self.device_id)
                halt.wait(interval)
                continue
            try:
                codes = self._decoder(frame)
            except Exception:
                log.exception("Barcode decode failed")
                codes = []
            if codes and not halt.is_set():
                on_decoded(codes[0])
            halt.wait(max(0.0, interval - (time.monotonic() - t0)))


class ScannerSession:
    """
    The station's one scanning session, kept for the life of the process.

    The reader object is created on first start and reused afterwards, so
    leaving and re-entering the scanner page only reopens the capture.
    """

    def __init__(self, reader_factory: Callable[[], CameraReader]):
        self._reader_factory = reader_factory
        self.reader: Optional[CameraReader] = None
        self.active = False
        self.scanned_barcode: Optional[str] = None
        self.result_visible = False
        self.restart_pending = False
        self._lock = threading.RLock()
        # bumped on every start/stop; decodes from an older run are dropped
        self._generation = 0

    def start(self) -> bool:
        """Start (or keep) scanning.  Returns False if the camera can't be opened."""
        with self._lock:
            self.result_visible = False
            self.restart_pending = False

            if self.active and self.reader is not None:
                log.debug("Scanner already active, skipping init")
                return True

            if self.reader is None:
                self.reader = self._reader_factory()
                log.info("Created scanner reader")

            try:
                if self.reader.get_state() == ScannerState.SCANNING:
                    log.debug("Scanner already running")
                    self.active = True
                    return True
            except Exception:
                log.debug("Reader state unavailable", exc_info=True)

            self._generation += 1
            generation = self._generation
            try:
                self.reader.start(lambda code: self._on_scan_success(code, generation))
            except Exception as e:
                log.error("Error starting scanner: %s", e)
                self.active = False
                return False
            self.active = True
            log.info("Scanner started")
            return True

    def stop(self) -> None:
        with self._lock:
            log.debug("stop called, active=%s", self.active)
            if self.reader is None or not self.active:
                return
            self._generation += 1
            try:
                if self.reader.get_state() in (ScannerState.SCANNING, ScannerState.PAUSED):
                    self.reader.stop()
                    log.info("Scanner stopped")
            except Exception as e:
                log.warning("Error stopping scanner: %s", e)
            finally:
                self.active = False

    def _on_scan_success(self, barcode: str, generation: Optional[int] = None) -> None:
        # Runs on the reader thread, which stop() may be joining while it
        # holds the lock: poll instead of blocking, and give up once stale.
        while not self._lock.acquire(timeout=0.05):
            if generation is not None and generation != self._generation:
                return
        try:
            if not self.active:
                # decode that raced a stop(); the page is gone
                return
            if generation is not None and generation != self._generation:
                return
            try:
                if self.reader is not None:
                    self.reader.stop()
            except Exception:
                log.debug("Reader already stopped", exc_info=True)
            self.active = False
            self.restart_pending = False
            self.scanned_barcode = barcode
            self.result_visible = True
            log.info("Scanned barcode %s", barcode)
        finally:
            self._lock.release()

    def accept_manual(self, barcode: str) -> None:
        """Keyboard-wedge / typed entry behaves like a camera decode."""
        barcode = (barcode or "").strip()
        if not barcode:
            return
        with self._lock:
            if self.active:
                self._on_scan_success(barcode)
                return
            # a wedge scan during the post-submit delay keeps the camera off
            self.restart_pending = False
            self.scanned_barcode = barcode
            self.result_visible = True

    def clear_result(self) -> None:
        with self._lock:
            self.scanned_barcode = None
            self.result_visible = False

    def schedule_restart(self, scheduler, delay: float) -> None:
        """Resume scanning after `delay` seconds on the background scheduler."""
        from datetime import datetime, timedelta
        from apscheduler.schedulers.base import STATE_RUNNING

        with self._lock:
            self.restart_pending = True
        scheduler.add_job(
            self._resume_if_pending,
            trigger="date",
            run_date=datetime.now() + timedelta(seconds=delay),
            id="scanner_restart",
            replace_existing=True,
        )
        if scheduler.state != STATE_RUNNING:
            scheduler.start()

    def _resume_if_pending(self) -> None:
        with self._lock:
            if not self.restart_pending:
                return
            self.start()

    def cancel_restart(self) -> None:
        with self._lock:
            self.restart_pending = False

    def status(self) -> dict:
        with self._lock:
            state = None
            if self.reader is not None:
                try:
                    state = self.reader.get_state().name
                except Exception:
                    state = None
            return {
                "active": self.active,
                "state": state,
                "barcode": self.scanned_barcode if self.result_visible else None,
                "result_visible": self.result_visible,
                "restart_pending": self.restart_pending,
            }
