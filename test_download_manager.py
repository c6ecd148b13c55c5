import threading

import pytest
import requests

import download_manager
from download_manager import AssetTransferManager, http_fetch
from llava_runtime import DownloadPhase, TransferBusyError, TransferError


def writing_fetcher(steps=(0.25, 0.5, 1.0), payload=b"gguf-bytes"):
    def _fetch(uri, destination, on_progress):
        with open(destination, "wb") as f:
            f.write(payload)
        for fraction in steps:
            on_progress(fraction)
        return True
    return _fetch


def test_successful_download_marks_model_present(registry, models_dir):
    seen = []
    finished = []
    transfers = AssetTransferManager(registry, fetcher=writing_fetcher(), ram_gib=8)

    job = transfers.start(registry.get("tiny"), on_progress=seen.append, on_complete=finished.append)
    job = transfers.wait("tiny", timeout=5)

    assert job.phase is DownloadPhase.SUCCEEDED
    assert job.progress == 1.0
    assert seen == [0.25, 0.5, 1.0]
    assert finished == [True]
    assert (models_dir / "tiny-q8.gguf").read_bytes() == b"gguf-bytes"
    assert not (models_dir / "tiny-q8.gguf.part").exists()
    assert registry.get("tiny").is_present
    assert not transfers.is_busy


def test_bytes_land_in_partial_file(registry, models_dir):
    destinations = []

    def _fetch(uri, destination, on_progress):
        destinations.append(destination)
        assert not (models_dir / "tiny-q8.gguf").exists()
        with open(destination, "wb") as f:
            f.write(b"x")
        return True

    transfers = AssetTransferManager(registry, fetcher=_fetch, ram_gib=8)
    transfers.start(registry.get("tiny"))
    transfers.wait("tiny", timeout=5)
    assert destinations == [str(models_dir / "tiny-q8.gguf.part")]


@pytest.mark.parametrize("error", [
    requests.exceptions.ConnectionError("connection reset"),
    OSError("disk full"),
    RuntimeError("boom"),
])
def test_failed_download_leaves_nothing_behind(registry, models_dir, error):
    def _fetch(uri, destination, on_progress):
        with open(destination, "wb") as f:
            f.write(b"half")
        on_progress(0.5)
        raise error

    finished = []
    errors = []
    transfers = AssetTransferManager(registry, fetcher=_fetch, ram_gib=8)
    transfers.register_callback("on_error", errors.append)

    transfers.start(registry.get("tiny"), on_complete=finished.append)
    job = transfers.wait("tiny", timeout=5)

    assert job.phase is DownloadPhase.FAILED
    assert job.error_message
    assert finished == [False]
    assert errors == [job]
    assert list(models_dir.iterdir()) == []
    assert not registry.get("tiny").is_present
    assert not transfers.is_busy


def test_fetcher_reporting_failure(registry, models_dir):
    transfers = AssetTransferManager(registry, fetcher=lambda *args: False, ram_gib=8)
    transfers.start(registry.get("tiny"))
    job = transfers.wait("tiny", timeout=5)
    assert job.phase is DownloadPhase.FAILED
    assert not (models_dir / "tiny-q8.gguf").exists()


def test_single_flight(registry, models_dir):
    release = threading.Event()
    started = threading.Event()

    def _slow_fetch(uri, destination, on_progress):
        started.set()
        release.wait(5)
        with open(destination, "wb") as f:
            f.write(b"x")
        return True

    transfers = AssetTransferManager(registry, fetcher=_slow_fetch, ram_gib=8192)
    transfers.start(registry.get("tiny"))
    assert started.wait(5)
    assert transfers.is_busy
    assert transfers.job("tiny").is_active

    with pytest.raises(TransferBusyError):
        transfers.start(registry.get("huge"))
    assert transfers.job("huge").phase is DownloadPhase.IDLE

    release.set()
    assert transfers.wait("tiny", timeout=5).phase is DownloadPhase.SUCCEEDED
    assert not transfers.is_busy


def test_insufficient_ram_rejected(registry):
    transfers = AssetTransferManager(registry, fetcher=writing_fetcher(), ram_gib=2)
    with pytest.raises(TransferError, match="4096 GB"):
        transfers.start(registry.get("huge"))
    assert not transfers.is_busy
    assert "huge" not in transfers.jobs


def test_present_model_not_downloaded_again(registry, models_dir):
    (models_dir / "tiny-q8.gguf").write_bytes(b"gguf")
    registry.refresh()
    transfers = AssetTransferManager(registry, fetcher=writing_fetcher(), ram_gib=8)
    with pytest.raises(TransferError, match="already downloaded"):
        transfers.start(registry.get("tiny"))


def test_progress_is_monotonic(registry):
    seen = []
    transfers = AssetTransferManager(registry, fetcher=writing_fetcher(steps=(0.5, 0.3, 0.8, 1.7)), ram_gib=8)
    transfers.start(registry.get("tiny"), on_progress=seen.append)
    transfers.wait("tiny", timeout=5)
    assert seen == [0.5, 0.8, 1.0]


def test_idle_job_for_unstarted_model(registry):
    transfers = AssetTransferManager(registry)
    job = transfers.job("huge")
    assert job.phase is DownloadPhase.IDLE
    assert job.progress == 0.0


def test_unknown_event_rejected(registry):
    with pytest.raises(ValueError):
        AssetTransferManager(registry).register_callback("on_anything", print)


class FakeResponse:
    def __init__(self, chunks, content_length=None, status_error=None):
        self.chunks = chunks
        self.headers = {}
        if content_length is not None:
            self.headers["content-length"] = str(content_length)
        self.status_error = status_error

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_error:
            raise self.status_error

    def iter_content(self, chunk_size=1):
        return iter(self.chunks)


def test_http_fetch_streams_to_file(tmp_path, monkeypatch):
    calls = []

    def _get(uri, **kwargs):
        calls.append((uri, kwargs))
        return FakeResponse([b"abcd", b"", b"efgh"], content_length=8)

    monkeypatch.setattr(download_manager.requests, "get", _get)
    monkeypatch.setenv("HF_API_KEY", "hf_secret")
    seen = []
    destination = tmp_path / "model.gguf"

    assert http_fetch("https://example.invalid/m.gguf", str(destination), seen.append, timeout=7)

    assert destination.read_bytes() == b"abcdefgh"
    assert seen == [0.5, 1.0, 1.0]
    uri, kwargs = calls[0]
    assert kwargs["stream"] is True
    assert kwargs["timeout"] == 7
    assert kwargs["headers"]["Authorization"] == "Bearer hf_secret"


def test_http_fetch_without_token(tmp_path, monkeypatch):
    calls = []

    def _get(uri, **kwargs):
        calls.append(kwargs)
        return FakeResponse([b"x"])

    monkeypatch.setattr(download_manager.requests, "get", _get)
    monkeypatch.delenv("HF_API_KEY", raising=False)
    http_fetch("https://example.invalid/m.gguf", str(tmp_path / "m"), lambda f: None)
    assert "Authorization" not in calls[0]["headers"]


def test_http_fetch_truncated_body(tmp_path, monkeypatch):
    monkeypatch.setattr(download_manager.requests, "get",
                        lambda uri, **kwargs: FakeResponse([b"abc"], content_length=10))
    with pytest.raises(TransferError):
        http_fetch("https://example.invalid/m.gguf", str(tmp_path / "m"), lambda f: None)


def test_http_fetch_http_error(tmp_path, monkeypatch):
    error = requests.exceptions.HTTPError("404 Client Error")
    monkeypatch.setattr(download_manager.requests, "get",
                        lambda uri, **kwargs: FakeResponse([], status_error=error))
    with pytest.raises(requests.exceptions.HTTPError):
        http_fetch("https://example.invalid/m.gguf", str(tmp_path / "m"), lambda f: None)
