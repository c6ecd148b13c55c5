import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from llava_runtime.device_utils import ram_shortfall
from llava_runtime.types import ModelDescriptor, Presence

logger = logging.getLogger(__name__)


DEFAULT_MODELS: List[ModelDescriptor] = [
    ModelDescriptor(
        id="danube-ko-1.8b-f16",
        display_name="Model FP16",
        file_name="danube-ko-1.8B-base-F16.gguf",
        source_uri=(
            "https://huggingface.co/Hongik-Project-2024/danube-ko-1.8B-base-F16.gguf"
            "/resolve/main/danube-ko-1.8B-base-F16.gguf?download=true"
        ),
        min_ram_gib=8,
    ),
    ModelDescriptor(
        id="danube-ko-1.8b-q8",
        display_name="Model Q8 (Lite Version)",
        file_name="danube-ko-1.8B-base-Q8_0.gguf",
        source_uri=(
            "https://huggingface.co/Hongik-Project-2024/danube-ko-1.8B-base-Q8_0.gguf"
            "/resolve/main/danube-ko-1.8B-base-Q8_0.gguf?download=true"
        ),
        min_ram_gib=5,
    ),
]


class ModelRegistry:
    """
    Static catalog of known models plus their presence in the models directory.

    Presence is an existence check only: a truncated or corrupt file counts as
    present. The presence map is shared with the download thread, so every
    access goes through ``self.lock``.
    """

    def __init__(self, models_directory: str, catalog: Optional[Iterable[ModelDescriptor]] = None):
        self.models_directory = Path(models_directory)
        self.lock = threading.RLock()
        self.models: Dict[str, ModelDescriptor] = {}
        for descriptor in (DEFAULT_MODELS if catalog is None else catalog):
            if descriptor.id in self.models:
                raise ValueError(f"Duplicate model id in catalog: {descriptor.id}")
            self.models[descriptor.id] = descriptor
        self.refresh()

    def locate(self, model_id: str) -> Path:
        """Filesystem path where the artifact for ``model_id`` lives (or would live)."""
        return self.models_directory / self.get(model_id).file_name

    def get(self, model_id: str) -> ModelDescriptor:
        with self.lock:
            try:
                return self.models[model_id]
            except KeyError:
                raise KeyError(f"Unknown model id: {model_id}") from None

    def list(self) -> List[ModelDescriptor]:
        with self.lock:
            return list(self.models.values())

    def refresh(self) -> List[ModelDescriptor]:
        """Recompute presence of every catalog entry from the filesystem."""
        with self.lock:
            for model_id, descriptor in self.models.items():
                path = self.models_directory / descriptor.file_name
                presence = Presence.PRESENT if path.is_file() else Presence.ABSENT
                if presence is not descriptor.presence:
                    logger.info("[LIBRARY] %s is now %s", descriptor.display_name, presence.value)
                self.models[model_id] = descriptor.with_presence(presence)
            return list(self.models.values())

    def check_device_fit(self, descriptor: ModelDescriptor, ram_gib: Optional[int] = None) -> Optional[str]:
        """Reason this device cannot host ``descriptor``, or None when it can."""
        return ram_shortfall(descriptor.min_ram_gib, ram_gib) or None
