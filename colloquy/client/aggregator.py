"""Response aggregation: the per-turn state machine that turns stream events into one final reply.

    idle --start--> streaming --done/interrupted--> resolved
                              --failed/fail/cancel--> rejected

The terminal states are absorbing: a turn resolves or rejects at most once, and any events
after that are ignored.
"""

__all__ = ["state_idle", "state_streaming", "state_resolved", "state_rejected",
           "ResponseAggregator"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import io
from typing import Callable, Optional

from unpythonic import sym
from unpythonic.env import env

from . import config as client_config
from . import streaming
from .errors import CancellationError, ClientError

state_idle = sym("idle")
state_streaming = sym("streaming")
state_resolved = sym("resolved")
state_rejected = sym("rejected")

class ResponseAggregator:
    def __init__(self,
                 on_progress: Optional[Callable] = None,
                 release: Optional[Callable] = None,
                 fallback_text: Optional[str] = None):
        """Accumulate the reply of one turn, and settle it exactly once.

        `on_progress`: 1-argument callable `(delta: str)`, called for each piece of newly generated text.
                       The return value is ignored.

        `release`: 0-argument callable, called exactly once when the turn settles (either way).
                   Typically tears down the connection.

        `fallback_text`: Reply text for a moderation interruption that happened before any text was generated.
        """
        self.on_progress = on_progress
        self.release = release
        self.fallback_text = fallback_text if fallback_text is not None else client_config.moderation_fallback_text
        self.state = state_idle
        self.reply = io.StringIO()
        self.final_text = None
        self.raw = None
        self.interrupted = False
        self.error = None

    @property
    def finished(self) -> bool:
        """Whether the turn has settled (resolved or rejected)."""
        return self.state is state_resolved or self.state is state_rejected

    @property
    def reply_so_far(self) -> str:
        return self.reply.getvalue()

    def start(self) -> None:
        """The stream is open; start accepting events."""
        if self.state is not state_idle:
            raise RuntimeError(f"ResponseAggregator.start: can only start from idle, current state is {self.state}")
        self.state = state_streaming

    def apply(self, event: env) -> bool:
        """Process one stream event (see `client.streaming`). Return whether the turn has now settled."""
        if self.state is not state_streaming:
            if not self.finished:
                raise RuntimeError(f"ResponseAggregator.apply: not started (state {self.state})")
            logger.debug(f"ResponseAggregator.apply: already {self.state}; ignoring {event.kind} event.")
            return True

        if event.kind is streaming.event_partial_text:
            self.reply.write(event.delta)
            if self.on_progress is not None:
                self.on_progress(event.delta)
            return False
        if event.kind is streaming.event_done:
            self._resolve(event.final_text, event.raw, interrupted=False)
        elif event.kind is streaming.event_interrupted:
            self._resolve(event.partial_text or self.fallback_text, event.raw, interrupted=True)
        elif event.kind is streaming.event_failed:
            self.fail(event.error)
        else:
            raise ValueError(f"ResponseAggregator.apply: unknown event kind {event.kind}")
        return True

    def fail(self, error: ClientError) -> None:
        """Reject the turn with `error` (e.g. a timeout or a transport failure detected outside the stream)."""
        if self.finished:
            return
        self.state = state_rejected
        self.error = error
        self._release()

    def cancel(self) -> None:
        """Reject the turn with `CancellationError`. No-op if the turn has already settled."""
        if self.finished:
            return
        logger.info("ResponseAggregator.cancel: turn cancelled by caller.")
        self.fail(CancellationError("Request aborted"))

    def outcome(self) -> env:
        """Return the reply of a resolved turn, or raise the error of a rejected one.

        The returned `unpythonic.env.env` has the attributes `text: str`, `raw: Any`
        (backend-specific final payload), and `interrupted: bool` (whether moderation cut it short).
        """
        if self.state is state_resolved:
            return env(text=self.final_text, raw=self.raw, interrupted=self.interrupted)
        if self.state is state_rejected:
            raise self.error
        raise RuntimeError(f"ResponseAggregator.outcome: turn not settled yet (state {self.state})")

    def _resolve(self, text: str, raw, interrupted: bool) -> None:
        self.state = state_resolved
        self.final_text = text
        self.raw = raw
        self.interrupted = interrupted
        self._release()

    def _release(self) -> None:
        if self.release is not None:
            release, self.release = self.release, None
            release()
