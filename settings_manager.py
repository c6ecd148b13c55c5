import copy
import json
import logging
import os
from typing import Dict, Any

from llava_runtime.types import GenerateConfig
from llava_runtime.util_chat import (
    ASSISTANT_MARKER,
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TURN_SEPARATOR,
    HUMAN_MARKER,
)

logger = logging.getLogger(__name__)


class SettingsManager:
    """Manages application settings with JSON persistence."""

    def __init__(self, settings_file: str = "settings.json"):
        self.settings_file = settings_file
        self.default_settings = {
            "paths": {
                "models_directory": "./models",
                # Empty means the projection model bundled with the package
                "aux_asset": "",
            },
            "model_settings": {
                "n_ctx": 2048,
                "n_gpu_layers": 0,
                "n_threads": 0,
                # Token budget of one assistant turn
                "max_tokens": 256,
                "temperature": 0.1,
                "top_p": 0.9,
            },
            "prompts": {
                "system_prompt": DEFAULT_SYSTEM_PROMPT,
                "human_marker": HUMAN_MARKER,
                "assistant_marker": ASSISTANT_MARKER,
                "turn_separator": DEFAULT_TURN_SEPARATOR,
            },
            "session": {
                "max_completion_retries": 1,
            },
            "download_settings": {
                "timeout_seconds": 30,
                "chunk_size": 1024 * 1024,
            },
        }
        self.settings = self.load_settings()

    def load_settings(self) -> Dict[str, Any]:
        """Load settings from file or fall back to defaults."""
        if os.path.exists(self.settings_file):
            try:
                with open(self.settings_file, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                # Merge with defaults to handle new keys
                return self._merge_settings(self.default_settings, loaded)
            except (OSError, ValueError) as e:
                logger.warning("[SETTINGS] Error loading %s: %s", self.settings_file, e)
        return copy.deepcopy(self.default_settings)

    def _merge_settings(self, defaults: Dict, loaded: Dict) -> Dict:
        """Merge loaded settings with defaults, preserving user values."""
        result = copy.deepcopy(defaults)
        for key, value in loaded.items():
            if isinstance(result.get(key), dict) and isinstance(value, dict):
                result[key] = self._merge_settings(result[key], value)
            else:
                result[key] = value
        return result

    def save_settings(self) -> bool:
        """Save current settings to file."""
        try:
            with open(self.settings_file, "w", encoding="utf-8") as f:
                json.dump(self.settings, f, indent=2)
            return True
        except OSError as e:
            logger.error("[SETTINGS] Error saving %s: %s", self.settings_file, e)
            return False

    def get(self, path: str, default: Any = None) -> Any:
        """Get a setting value using dot notation (e.g., 'paths.models_directory')."""
        value = self.settings
        for key in path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, path: str, value: Any):
        """Set a setting value using dot notation."""
        keys = path.split(".")
        target = self.settings
        for key in keys[:-1]:
            if key not in target:
                target[key] = {}
            target = target[key]
        target[keys[-1]] = value

    def reset_to_defaults(self) -> bool:
        """Reset all settings to defaults and save them."""
        self.settings = copy.deepcopy(self.default_settings)
        return self.save_settings()

    def generate_config(self) -> GenerateConfig:
        """Sampling and context options for the inference engine."""
        threads = int(self.get("model_settings.n_threads", 0) or 0)
        return GenerateConfig(
            max_tokens=int(self.get("model_settings.max_tokens", 256)),
            temperature=self.get("model_settings.temperature"),
            top_p=self.get("model_settings.top_p"),
            n_ctx=int(self.get("model_settings.n_ctx", 2048)),
            n_gpu_layers=int(self.get("model_settings.n_gpu_layers", 0)),
            n_threads=threads if threads > 0 else None,
        )
