"""
Generation session controller

Drives one conversation with a locally loaded LLaVA model: builds the
role-tagged transcript, streams each assistant turn until the model's own
turn boundary, discards degenerate output, reloads the model once when the
engine refuses a turn, and resets the conversation without cutting an
answer off mid-stream.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from .errors import CompletionError, SessionBusyError
from .model_lifecycle import ModelLifecycleManager
from .types import InferenceEngine, LoadingPhase, Message, Speaker
from .util_chat import (
    ASSISTANT_MARKER,
    HUMAN_MARKER,
    INVALID_MARKERS,
    BoundaryScanner,
    ScanOutcome,
    assistant_segment,
    boundary_markers_for,
    human_segment,
)

logger = logging.getLogger(__name__)

INVALID_OUTPUT_NOTICE = (
    "The model reached its generation limit. Reset the conversation to continue."
)


class GenerationSession:
    """
    One conversation with one engine.

    Phase transitions are the only busy signal: presentation listens through
    ``register_callback`` and never touches the engine. Engine calls block,
    so they run in worker threads while the session stays on the event loop.
    """

    def __init__(self, lifecycle: ModelLifecycleManager,
                 max_completion_retries: int = 1,
                 human_marker: str = HUMAN_MARKER,
                 assistant_marker: str = ASSISTANT_MARKER,
                 boundary_markers=None,
                 invalid_markers=INVALID_MARKERS):
        self.lifecycle = lifecycle
        self.engine: Optional[InferenceEngine] = None
        self.max_completion_retries = max(0, int(max_completion_retries))
        self.human_marker = human_marker
        self.assistant_marker = assistant_marker
        if boundary_markers is None:
            boundary_markers = boundary_markers_for(human_marker, assistant_marker)
        self.boundary_markers = tuple(boundary_markers)
        self.invalid_markers = tuple(invalid_markers)

        self._transcript = ""
        self._messages: List[Message] = []
        self._pending_image: Optional[bytes] = None
        self._phase = LoadingPhase.IDLE

        self.callbacks: Dict[str, List[Callable]] = {
            "on_phase_change": [],
            "on_message": [],
            "on_fragment": [],
        }

        self._turn_active = False
        self._turn_done = asyncio.Event()
        self._turn_done.set()
        self._reset_pending = False
        self._reset_lock = asyncio.Lock()

    # --- published state ---------------------------------------------------

    @property
    def phase(self) -> LoadingPhase:
        return self._phase

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def pending_image(self) -> Optional[bytes]:
        return self._pending_image

    @property
    def has_image_context(self) -> bool:
        # Derived so it can never disagree with the stored image
        return self._pending_image is not None

    @property
    def is_busy(self) -> bool:
        return self._turn_active or self._reset_pending

    def register_callback(self, event: str, callback: Callable):
        """
        Register a listener for 'on_phase_change', 'on_message' or 'on_fragment'.

        Fragments are released as they stream, before the turn is known to be
        valid. A diagnostic assistant Message replaces everything streamed for
        that turn, so fragment listeners should discard their partial text.
        """
        if event not in self.callbacks:
            raise ValueError(f"Unknown session event: {event}")
        self.callbacks[event].append(callback)

    def _trigger_callback(self, event: str, payload):
        for callback in self.callbacks.get(event, []):
            try:
                callback(payload)
            except Exception as e:
                logger.warning("[SESSION] Callback error in %s: %s", event, e)

    def _set_phase(self, phase: LoadingPhase):
        if phase is self._phase:
            return
        logger.debug("[SESSION] %s -> %s", self._phase.value, phase.value)
        self._phase = phase
        self._trigger_callback("on_phase_change", phase)

    def _turn_phase(self, phase: LoadingPhase):
        # A pending reset owns the phase until it finishes
        if not self._reset_pending:
            self._set_phase(phase)

    def _publish(self, text: str, speaker: Speaker, image: Optional[bytes] = None,
                 diagnostic: bool = False) -> Message:
        message = Message(text=text, speaker=speaker, index=len(self._messages),
                          image=image, diagnostic=diagnostic)
        self._messages.append(message)
        self._trigger_callback("on_message", message)
        return message

    # --- turns -------------------------------------------------------------

    async def submit_turn(self, text: str, image: Optional[bytes] = None) -> Message:
        """
        Run one turn and return the assistant's Message.

        The returned message is either the reply or, when the model produced
        degenerate output, a diagnostic notice (``message.diagnostic``).
        Raises SessionBusyError while a turn or reset is running, LoadError
        when no engine can be loaded and CompletionError when the engine keeps
        refusing the turn after reloads.
        """
        if self.is_busy or self._phase is not LoadingPhase.IDLE:
            raise SessionBusyError("Wait for the current turn to finish before submitting another")

        self._turn_active = True
        self._turn_done.clear()
        try:
            self.engine = await asyncio.to_thread(self.lifecycle.ensure, self.engine)
            return await self._run_turn(text, image, attempt=0)
        finally:
            self._turn_active = False
            self._turn_phase(LoadingPhase.IDLE)
            self._turn_done.set()

    async def _run_turn(self, text: str, image: Optional[bytes], attempt: int) -> Message:
        is_retry = attempt > 0
        engine = self.engine

        if image is not None:
            self._turn_phase(LoadingPhase.EMBEDDING_IMAGE)
            self._pending_image = image
            if not is_retry:
                # A new picture starts a new conversation
                self._transcript = ""
            await asyncio.to_thread(engine.reset)
            await asyncio.to_thread(engine.prime_system_prompt)
        elif not self.has_image_context:
            await asyncio.to_thread(engine.reset)

        if not is_retry:
            self._transcript += human_segment(text, self.human_marker)
            self._publish(text, Speaker.USER, image=image)

        self._turn_phase(LoadingPhase.GENERATING_RESPONSE)

        started = await asyncio.to_thread(engine.begin_completion, self._transcript, self._pending_image)
        if not started:
            if attempt >= self.max_completion_retries:
                logger.error("[SESSION] Engine refused the turn after %d attempt(s)", attempt + 1)
                raise CompletionError(attempt + 1)
            logger.warning("[SESSION] Engine refused the turn; reloading model (retry %d)", attempt + 1)
            self._turn_phase(LoadingPhase.RELOADING_MODEL)
            self.engine = await asyncio.to_thread(self.lifecycle.reload, engine)
            return await self._run_turn(text, image, attempt + 1)

        response, outcome = await self._stream_response(engine)

        if outcome is ScanOutcome.BOUNDARY:
            response = response.strip()
            self._transcript += assistant_segment(response, self.assistant_marker)
            logger.info("[SESSION] Turn complete (%d chars)", len(response))
            return self._publish(response, Speaker.ASSISTANT)

        logger.warning("[SESSION] Discarding invalid output after %d tokens", engine.tokens_emitted)
        return self._publish(INVALID_OUTPUT_NOTICE, Speaker.ASSISTANT, diagnostic=True)

    async def _stream_response(self, engine: InferenceEngine):
        """Pull fragments until a marker or the token budget ends the turn."""
        scanner = BoundaryScanner(self.boundary_markers, self.invalid_markers)
        while engine.tokens_emitted < engine.token_budget:
            fragment = await asyncio.to_thread(engine.next_fragment)
            released, outcome = scanner.feed(fragment)
            if released:
                self._trigger_callback("on_fragment", released)
            if outcome is not ScanOutcome.CONTINUE:
                return scanner.text, outcome
        # Budget spent without a boundary: the reply is unterminated
        return scanner.text, ScanOutcome.INVALID

    # --- reset -------------------------------------------------------------

    async def reset(self) -> None:
        """
        Clear the conversation and reload the model.

        Waits for an in-flight turn to finish first, so an answer is never
        cut off and no new turn can start until the reset is over. Always
        leaves the session Idle; a load failure is re-raised afterwards.
        """
        async with self._reset_lock:
            self._reset_pending = True
            self._set_phase(LoadingPhase.RELOADING_MODEL)
            try:
                await self._turn_done.wait()

                engine, self.engine = self.engine, None
                if engine is not None:
                    await asyncio.to_thread(engine.reset)

                self._messages.clear()
                self._transcript = ""
                self._pending_image = None

                if self.lifecycle.selected is not None:
                    self.engine = await asyncio.to_thread(
                        self.lifecycle.select_and_load, self.lifecycle.selected)
                logger.info("[SESSION] Conversation reset")
            finally:
                self._reset_pending = False
                self._set_phase(LoadingPhase.IDLE)
