from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional, Protocol


class Presence(Enum):
    ABSENT = "Absent"
    PRESENT = "Present"


class DownloadPhase(Enum):
    IDLE = "Idle"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class Speaker(Enum):
    USER = "User"
    ASSISTANT = "Assistant"


class LoadingPhase(Enum):
    IDLE = "Idle"
    EMBEDDING_IMAGE = "EmbeddingImage"
    GENERATING_RESPONSE = "GeneratingResponse"
    RELOADING_MODEL = "ReloadingModel"


@dataclass(frozen=True)
class ModelDescriptor:
    """A catalog entry. Only ``presence`` ever changes, via ``with_presence``."""
    id: str
    display_name: str
    file_name: str
    source_uri: str
    min_ram_gib: int = 0
    presence: Presence = Presence.ABSENT

    @property
    def is_present(self) -> bool:
        return self.presence is Presence.PRESENT

    def with_presence(self, presence: Presence) -> "ModelDescriptor":
        return replace(self, presence=presence)


@dataclass
class DownloadJob:
    descriptor: ModelDescriptor
    progress: float = 0.0
    phase: DownloadPhase = DownloadPhase.IDLE
    error_message: str = ""

    @property
    def is_active(self) -> bool:
        return self.phase is DownloadPhase.IN_PROGRESS


@dataclass(frozen=True)
class Message:
    text: str
    speaker: Speaker
    index: int
    image: Optional[bytes] = field(default=None, repr=False)
    # True for the canned notice published instead of a malformed reply
    diagnostic: bool = False

    @property
    def is_user(self) -> bool:
        return self.speaker is Speaker.USER


@dataclass
class GenerateConfig:
    # None means "use engine defaults"
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    n_ctx: int = 2048
    n_gpu_layers: int = 0
    n_threads: Optional[int] = None


class InferenceEngine(Protocol):
    """What the session controller needs from a loaded model context.

    All methods are blocking; the controller runs them off the event loop.
    """
    tokens_emitted: int
    token_budget: int

    def prime_system_prompt(self) -> None: ...
    def begin_completion(self, prompt: str, image_bytes: Optional[bytes] = None) -> bool: ...
    def next_fragment(self) -> str: ...
    def reset(self) -> None: ...


# create(model_path, aux_path, system_prompt, turn_separator)
EngineFactory = Callable[[str, str, str, str], InferenceEngine]
