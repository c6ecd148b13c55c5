import base64
import logging
from typing import Iterator, Optional, Tuple

from llava_runtime.types import GenerateConfig, InferenceEngine
from llava_runtime.util_chat import EOS_MARKER

logger = logging.getLogger(__name__)

# Fragment reported when the model stops on its own end-of-sequence token,
# which llama-cpp-python swallows instead of streaming it as text
EOS_TEXT = EOS_MARKER


class _LlavaCppEngine:
    """
    One llama.cpp context with a LLaVA projection model attached.

    Text-only prompts go through the raw completion API so the transcript's
    own role markers are the whole template. Prompts with an image go through
    the LLaVA chat handler, which embeds the picture before the text.
    """

    def __init__(self, model_path: str, aux_path: str, system_prompt: str,
                 turn_separator: str, cfg: GenerateConfig):
        from llama_cpp import Llama
        from llama_cpp.llama_chat_format import Llava15ChatHandler

        if not model_path.lower().endswith(".gguf"):
            raise ValueError(f"Not a valid GGUF model: {model_path}")

        self.model_path = model_path
        self.system_prompt = system_prompt
        self.turn_separator = turn_separator
        self.cfg = cfg
        self.token_budget = int(cfg.max_tokens or 256)
        self.tokens_emitted = 0
        self._stream: Optional[Iterator[Tuple[str, Optional[str]]]] = None
        self._lookahead: Optional[Tuple[str, Optional[str]]] = None

        logger.debug("[GGUF] Loading %s with n_ctx=%s, n_gpu_layers=%s", model_path, cfg.n_ctx, cfg.n_gpu_layers)
        self._llama = Llama(
            model_path=model_path,
            chat_handler=Llava15ChatHandler(clip_model_path=aux_path, verbose=False),
            n_ctx=cfg.n_ctx,
            n_gpu_layers=cfg.n_gpu_layers,
            n_threads=cfg.n_threads,
            verbose=False,
        )

    def _sampling(self) -> dict:
        kwargs: dict = {"max_tokens": self.token_budget}
        if self.cfg.temperature is not None:
            kwargs["temperature"] = self.cfg.temperature
        if self.cfg.top_p is not None:
            kwargs["top_p"] = self.cfg.top_p
        return kwargs

    def prime_system_prompt(self) -> None:
        # Evaluating the system prompt up front lets llama.cpp reuse it as a cached prefix
        tokens = self._llama.tokenize(self.system_prompt.encode("utf-8"), add_bos=True)
        self._llama.eval(tokens)

    def begin_completion(self, prompt: str, image_bytes: Optional[bytes] = None) -> bool:
        self._close_stream()
        self.tokens_emitted = 0
        text = prompt + self.turn_separator
        try:
            if image_bytes:
                data_uri = "data:image/jpeg;base64," + base64.b64encode(image_bytes).decode("ascii")
                chunks = self._llama.create_chat_completion(
                    messages=[
                        {"role": "system", "content": self.system_prompt},
                        {"role": "user", "content": [
                            {"type": "image_url", "image_url": {"url": data_uri}},
                            {"type": "text", "text": text},
                        ]},
                    ],
                    stream=True,
                    **self._sampling(),
                )
                self._stream = ((c["choices"][0]["delta"].get("content") or "", c["choices"][0].get("finish_reason"))
                                for c in chunks)
            else:
                chunks = self._llama.create_completion(
                    f"{self.system_prompt}\n{text}", stream=True, echo=False, **self._sampling())
                self._stream = ((c["choices"][0]["text"] or "", c["choices"][0].get("finish_reason"))
                                for c in chunks)
            # The prompt is only evaluated on the first pull; surface its errors here
            self._lookahead = next(self._stream, None)
        except (ValueError, RuntimeError) as e:
            logger.warning("[GGUF] Completion could not start: %s", e)
            self._close_stream()
            return False
        return True

    def next_fragment(self) -> str:
        if self._stream is None:
            return EOS_TEXT
        item, self._lookahead = self._lookahead, None
        if item is None:
            item = next(self._stream, None)
        if item is None:
            # Stream ran dry without a finish reason: treat the budget as spent
            self.tokens_emitted = self.token_budget
            return ""
        text, finish_reason = item
        self.tokens_emitted += 1
        if finish_reason == "stop":
            return text + EOS_TEXT
        if finish_reason == "length":
            self.tokens_emitted = self.token_budget
        return text

    def reset(self) -> None:
        self._close_stream()
        self.tokens_emitted = 0
        self._llama.reset()

    def _close_stream(self):
        stream, self._stream, self._lookahead = self._stream, None, None
        close = getattr(stream, "close", None)
        if close is not None:
            close()


class LlamaCppLoader:
    """Engine factory for the model lifecycle manager."""

    def __init__(self, cfg: Optional[GenerateConfig] = None):
        self.cfg = cfg or GenerateConfig()

    def load(self, model_path: str, aux_path: str, system_prompt: str,
             turn_separator: str) -> InferenceEngine:
        return _LlavaCppEngine(model_path, aux_path, system_prompt, turn_separator, self.cfg)
