import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .errors import LoadError, LoadFailure
from .types import EngineFactory, InferenceEngine, ModelDescriptor
from .util_chat import DEFAULT_SYSTEM_PROMPT, DEFAULT_TURN_SEPARATOR

if TYPE_CHECKING:
    from model_library import ModelRegistry

logger = logging.getLogger(__name__)

AUX_ASSET_NAME = "mmproj-model-f16.gguf"


def bundled_aux_asset() -> Path:
    """The projection model shipped inside the package's assets directory."""
    return Path(__file__).resolve().parent / "assets" / AUX_ASSET_NAME


class ModelLifecycleManager:
    """
    Resolves a model descriptor to a loaded inference engine.

    The manager creates engines but does not keep them: the session that
    asked for one owns it from then on and hands it back only to ``reload``.
    """

    def __init__(self, registry: "ModelRegistry", engine_factory: EngineFactory,
                 aux_asset: Optional[str] = None,
                 system_prompt: str = DEFAULT_SYSTEM_PROMPT,
                 turn_separator: str = DEFAULT_TURN_SEPARATOR):
        self.registry = registry
        self.engine_factory = engine_factory
        self.aux_asset = Path(aux_asset) if aux_asset else bundled_aux_asset()
        self.system_prompt = system_prompt
        self.turn_separator = turn_separator
        self.selected: Optional[ModelDescriptor] = None
        self.load_count = 0

    def select(self, descriptor: ModelDescriptor) -> None:
        self.selected = descriptor
        logger.info("[LIFECYCLE] Selected %s", descriptor.display_name)

    def select_and_load(self, descriptor: ModelDescriptor) -> InferenceEngine:
        """Select ``descriptor`` and create a fresh engine for it."""
        self.select(descriptor)

        model_path = self.registry.locate(descriptor.id)
        if not model_path.is_file():
            logger.error("[LIFECYCLE] Model file not found: %s", model_path)
            raise LoadError(LoadFailure.MISSING_ARTIFACT, str(model_path))

        if not self.aux_asset.is_file():
            logger.error("[LIFECYCLE] Projection model not found: %s", self.aux_asset)
            raise LoadError(LoadFailure.MISSING_AUX_ASSET, str(self.aux_asset))

        logger.info("[LIFECYCLE] Loading %s (projection: %s)", model_path, self.aux_asset)
        try:
            engine = self.engine_factory(
                str(model_path), str(self.aux_asset), self.system_prompt, self.turn_separator)
        except Exception as e:
            logger.error("[LIFECYCLE] Failed to initialize %s: %s", descriptor.display_name, e)
            raise LoadError(LoadFailure.ENGINE_INIT_FAILED, str(e), cause=e) from e

        self.load_count += 1
        logger.info("[LIFECYCLE] Model loaded successfully: %s", descriptor.display_name)
        return engine

    def ensure(self, engine: Optional[InferenceEngine] = None) -> InferenceEngine:
        """Return ``engine`` unchanged, or load the selected model when there is none."""
        if engine is not None:
            return engine
        if self.selected is None:
            raise LoadError(LoadFailure.NO_MODEL_SELECTED)
        logger.info("[LIFECYCLE] Loading model on first use...")
        return self.select_and_load(self.selected)

    def reload(self, engine: Optional[InferenceEngine]) -> InferenceEngine:
        """Drop ``engine``'s state and load the selected model again."""
        if self.selected is None:
            raise LoadError(LoadFailure.NO_MODEL_SELECTED)
        if engine is not None:
            engine.reset()
        logger.info("[LIFECYCLE] Reloading %s", self.selected.display_name)
        return self.select_and_load(self.selected)
