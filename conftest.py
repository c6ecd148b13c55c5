import threading
from typing import List, Optional

import pytest

from llava_runtime import GenerationSession, ModelDescriptor, ModelLifecycleManager
from model_library import ModelRegistry


class FakeEngine:
    """Scripted stand-in for a llama.cpp context."""

    def __init__(self, script: Optional[List[List[str]]] = None, token_budget: int = 64,
                 begin_results: Optional[List[bool]] = None):
        # One list of fragments per successful begin_completion
        self.script = [list(turn) for turn in (script or [])]
        self.begin_results = list(begin_results or [])
        self.token_budget = token_budget
        self.tokens_emitted = 0
        self.calls: List[str] = []
        self.prompts: List[str] = []
        self.images: List[Optional[bytes]] = []
        self.gate: Optional[threading.Event] = None
        self._fragments: List[str] = []

    def prime_system_prompt(self):
        self.calls.append("prime")

    def begin_completion(self, prompt, image_bytes=None):
        self.calls.append("begin")
        self.prompts.append(prompt)
        self.images.append(image_bytes)
        ok = self.begin_results.pop(0) if self.begin_results else True
        if ok:
            self.tokens_emitted = 0
            self._fragments = self.script.pop(0) if self.script else ["ok###Human:"]
        return ok

    def next_fragment(self):
        if self.gate is not None:
            self.gate.wait(5)
        self.tokens_emitted += 1
        return self._fragments.pop(0) if self._fragments else ""

    def reset(self):
        self.calls.append("reset")
        self.tokens_emitted = 0


class FakeEngineFactory:
    """Hands out the same FakeEngine on every load, recording the arguments."""

    def __init__(self, engine: FakeEngine):
        self.engine = engine
        self.created = []

    def __call__(self, model_path, aux_path, system_prompt, turn_separator):
        self.created.append((model_path, aux_path, system_prompt, turn_separator))
        return self.engine


TINY = ModelDescriptor(
    id="tiny",
    display_name="Tiny Q8",
    file_name="tiny-q8.gguf",
    source_uri="https://example.invalid/tiny-q8.gguf",
    min_ram_gib=0,
)
HUGE = ModelDescriptor(
    id="huge",
    display_name="Huge FP16",
    file_name="huge-f16.gguf",
    source_uri="https://example.invalid/huge-f16.gguf",
    min_ram_gib=4096,
)


@pytest.fixture
def models_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def registry(models_dir):
    return ModelRegistry(str(models_dir), catalog=[TINY, HUGE])


@pytest.fixture
def aux_asset(tmp_path):
    path = tmp_path / "mmproj-model-f16.gguf"
    path.write_bytes(b"projector")
    return path


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def factory(engine):
    return FakeEngineFactory(engine)


@pytest.fixture
def lifecycle(registry, models_dir, aux_asset, factory):
    (models_dir / TINY.file_name).write_bytes(b"gguf")
    registry.refresh()
    manager = ModelLifecycleManager(registry, factory, aux_asset=str(aux_asset))
    manager.select(registry.get("tiny"))
    return manager


@pytest.fixture
def session(lifecycle):
    return GenerationSession(lifecycle)


@pytest.fixture
def phases(session):
    seen = []
    session.register_callback("on_phase_change", seen.append)
    return seen
