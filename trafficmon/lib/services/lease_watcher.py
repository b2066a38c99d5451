import os
import threading
from typing import Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from trafficmon.lib.constants import LEASE_CHANGE_DEBOUNCE_SECONDS


class LeaseObserver(FileSystemEventHandler):
    """Calls on_change once the lease file has been quiet for `debounce` seconds."""

    def __init__(self, lease_file_path: str, on_change: Callable[[], None], debounce: float = LEASE_CHANGE_DEBOUNCE_SECONDS) -> None:
        self.lease_file_path = os.path.abspath(lease_file_path)
        self.on_change = on_change
        self.debounce = debounce
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def _trigger(self):
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce, self.on_change)
            self._timer.daemon = True
            self._timer.start()

    def _is_lease_file(self, path) -> bool:
        if isinstance(path, bytes):
            path = path.decode(errors="replace")
        return os.path.abspath(path) == self.lease_file_path

    def on_created(self, event: FileSystemEvent) -> None:
        if self._is_lease_file(event.src_path):
            self._trigger()

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._is_lease_file(event.src_path):
            self._trigger()

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._is_lease_file(event.dest_path):
            self._trigger()

    def cancel(self) -> None:
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None


def start_lease_watcher(lease_file_path: str, on_change: Callable[[], None]) -> tuple[Observer, LeaseObserver]:
    # dnsmasq rewrites the file by rename, so watch the directory
    handler = LeaseObserver(lease_file_path, on_change)
    observer = Observer()
    observer.schedule(handler, os.path.dirname(handler.lease_file_path) or ".", recursive=False)
    observer.daemon = True
    observer.start()
    return observer, handler
