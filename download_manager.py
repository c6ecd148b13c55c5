import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from llava_runtime.errors import TransferBusyError, TransferError
from llava_runtime.types import DownloadJob, DownloadPhase, ModelDescriptor
from model_library import ModelRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
# fetch(uri, destination, on_progress) -> success; may also raise
Fetcher = Callable[[str, str, ProgressCallback], bool]

PARTIAL_SUFFIX = ".part"


def http_fetch(uri: str, destination: str, on_progress: ProgressCallback,
               timeout: float = 30, chunk_size: int = 1024 * 1024,
               headers: Optional[Dict[str, str]] = None) -> bool:
    """Stream ``uri`` into ``destination``, reporting the completed fraction."""
    headers = dict(headers or {})
    token = os.getenv("HF_API_KEY")
    if token and "Authorization" not in headers:
        headers["Authorization"] = f"Bearer {token}"

    with requests.get(uri, headers=headers, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        total_size = int(response.headers.get("content-length", 0) or 0)
        downloaded = 0
        with open(destination, "wb") as f:
            for chunk in response.iter_content(chunk_size=chunk_size):
                if not chunk:
                    continue
                f.write(chunk)
                downloaded += len(chunk)
                if total_size > 0:
                    on_progress(downloaded / total_size)
    if total_size and downloaded < total_size:
        raise TransferError(f"Connection closed after {downloaded} of {total_size} bytes")
    on_progress(1.0)
    return True


class AssetTransferManager:
    """
    Downloads model artifacts into the registry's models directory.

    Single-flight across the whole registry: while any job is in progress a
    second ``start`` is rejected with ``TransferBusyError``. Bytes land in a
    ``.part`` file next to the destination and are renamed into place only
    once complete, so the destination path is either absent or final.
    """

    def __init__(self, registry: ModelRegistry, fetcher: Optional[Fetcher] = None,
                 ram_gib: Optional[int] = None):
        self.registry = registry
        self.fetcher = fetcher or http_fetch
        self.ram_gib = ram_gib
        self.jobs: Dict[str, DownloadJob] = {}
        self.callbacks: Dict[str, List[Callable]] = {
            "on_progress": [],
            "on_status_change": [],
            "on_complete": [],
            "on_error": [],
        }
        self._lock = threading.Lock()
        self._busy = False
        self._threads: Dict[str, threading.Thread] = {}

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._busy

    def job(self, model_id: str) -> DownloadJob:
        """Current job for ``model_id``; an idle placeholder if never started."""
        existing = self.jobs.get(model_id)
        if existing is not None:
            return existing
        return DownloadJob(descriptor=self.registry.get(model_id))

    def start(self, descriptor: ModelDescriptor,
              on_progress: Optional[ProgressCallback] = None,
              on_complete: Optional[Callable[[bool], None]] = None) -> DownloadJob:
        """Begin downloading ``descriptor`` on a background thread."""
        current = self.registry.get(descriptor.id)
        if current.is_present:
            raise TransferError(f"{current.display_name} is already downloaded")
        reason = self.registry.check_device_fit(current, self.ram_gib)
        if reason:
            raise TransferError(reason)

        with self._lock:
            if self._busy:
                raise TransferBusyError("Another model download is already in progress")
            self._busy = True
            job = DownloadJob(descriptor=current, phase=DownloadPhase.IN_PROGRESS)
            self.jobs[current.id] = job

        logger.info("[DOWNLOAD] Starting %s from %s", current.file_name, current.source_uri)
        self._trigger_callback("on_status_change", job)
        thread = threading.Thread(
            target=self._download_file,
            args=(job, on_progress, on_complete),
            name=f"download-{current.id}",
            daemon=True,
        )
        self._threads[current.id] = thread
        thread.start()
        return job

    def wait(self, model_id: str, timeout: Optional[float] = None) -> DownloadJob:
        """Block until the transfer for ``model_id`` finishes (or ``timeout`` elapses)."""
        thread = self._threads.get(model_id)
        if thread is not None:
            thread.join(timeout)
        return self.job(model_id)

    def _report_progress(self, job: DownloadJob, fraction: float,
                         on_progress: Optional[ProgressCallback]):
        # Never let the fraction move backwards or leave [0, 1]
        fraction = max(job.progress, min(1.0, max(0.0, float(fraction))))
        if fraction == job.progress:
            return
        job.progress = fraction
        if on_progress:
            try:
                on_progress(fraction)
            except Exception as e:
                logger.warning("[DOWNLOAD] Progress callback error: %s", e)
        self._trigger_callback("on_progress", job)

    def _download_file(self, job: DownloadJob, on_progress: Optional[ProgressCallback],
                       on_complete: Optional[Callable[[bool], None]]):
        descriptor = job.descriptor
        destination = self.registry.locate(descriptor.id)
        partial = destination.with_name(destination.name + PARTIAL_SUFFIX)
        success = False
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            ok = self.fetcher(
                descriptor.source_uri,
                str(partial),
                lambda fraction: self._report_progress(job, fraction, on_progress),
            )
            if not ok:
                raise TransferError("Transfer reported failure")
            os.replace(partial, destination)
            success = True

        except (requests.exceptions.RequestException, TransferError, OSError) as e:
            job.error_message = str(e)
        except Exception as e:
            job.error_message = f"Unexpected error: {e}"

        finally:
            _discard(partial)
            if success:
                self.registry.refresh()
                self._report_progress(job, 1.0, on_progress)
                job.phase = DownloadPhase.SUCCEEDED
                logger.info("[DOWNLOAD] %s saved to %s", descriptor.file_name, destination)
            else:
                job.phase = DownloadPhase.FAILED
                logger.error("[DOWNLOAD] %s failed: %s", descriptor.file_name, job.error_message)
            with self._lock:
                self._busy = False

        self._trigger_callback("on_status_change", job)
        self._trigger_callback("on_complete" if success else "on_error", job)
        if on_complete:
            try:
                on_complete(success)
            except Exception as e:
                logger.warning("[DOWNLOAD] Completion callback error: %s", e)

    def register_callback(self, event: str, callback: Callable):
        """Register a callback for download events."""
        if event not in self.callbacks:
            raise ValueError(f"Unknown download event: {event}")
        self.callbacks[event].append(callback)

    def _trigger_callback(self, event: str, job: DownloadJob):
        for callback in self.callbacks.get(event, []):
            try:
                callback(job)
            except Exception as e:
                logger.warning("[DOWNLOAD] Callback error in %s: %s", event, e)


def _discard(path: Path):
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("[DOWNLOAD] Could not remove partial file %s: %s", path, e)
