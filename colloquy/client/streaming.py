"""Stream decoders: turn raw frames from a backend into logical stream events.

Each backend frames its streamed reply differently; the decoders hide that, and all produce
the same events (see the constructors below). An event is an `unpythonic.env.env` whose `kind`
attribute is one of the symbols `event_partial_text`, `event_done`, `event_interrupted`,
`event_failed`.

A decoder has two methods:

    `feed(frame) -> List[env]`: Decode one frame. May return zero or more events.
    `close() -> List[env]`:     The connection closed. Returns the terminal event implied by that,
                                or an empty list if a terminal event was already produced.

Decoders keep the per-turn parsing state (the text so far, whether the stop token has been seen),
so use a new decoder instance for each turn.
"""

__all__ = ["event_partial_text", "event_done", "event_interrupted", "event_failed",
           "partial_text", "done", "interrupted", "failed",
           "done_marker", "chathub_record_separator", "chathub_stop_token",
           "snapshot_delta",
           "ChatCompletionDecoder",
           "ConversationSnapshotDecoder",
           "ChatHubDecoder"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import copy
import json
from typing import Any, Dict, List, Optional

from unpythonic import sym
from unpythonic.env import env

from . import config as client_config
from .errors import ClientError, ProtocolError, TransportError

# --------------------------------------------------------------------------------
# Events

event_partial_text = sym("partial_text")  # `delta: str`, newly generated text
event_done = sym("done")  # `final_text: str`, `raw: Any` (backend-specific final payload)
event_interrupted = sym("interrupted")  # `partial_text: str`, `raw: Any`; moderation cut the reply short
event_failed = sym("failed")  # `error: ClientError`

def partial_text(delta: str) -> env:
    return env(kind=event_partial_text, delta=delta)

def done(final_text: str, raw: Any = None) -> env:
    return env(kind=event_done, final_text=final_text, raw=raw)

def interrupted(partial_text: str, raw: Any = None) -> env:
    return env(kind=event_interrupted, partial_text=partial_text, raw=raw)

def failed(error: ClientError) -> env:
    return env(kind=event_failed, error=error)

# --------------------------------------------------------------------------------
# Framing constants

done_marker = "[DONE]"  # SSE data value that ends the stream
chathub_record_separator = "\x1e"
chathub_stop_token = "\n\n[user](#message)"  # the model started writing the user's turn

def snapshot_delta(previous: str, snapshot: str) -> str:
    """Given the previous cumulative snapshot and the current one, return the newly generated text.

    Unchanged and shorter snapshots have no new text; the result is then the empty string.
    """
    if len(snapshot) <= len(previous):
        return ""
    return snapshot[len(previous):]

# --------------------------------------------------------------------------------
# SSE, ready-made deltas (completion API)

class ChatCompletionDecoder:
    def __init__(self, chat_mode: bool, end_token: str = ""):
        """Decoder for the completion API, which streams SSE events each carrying a delta.

        `chat_mode`: `True` for chat completion models (`choices[0].delta.content`),
                     `False` for completion models (`choices[0].text`).

        `end_token`: A token that the model may emit as a separate chunk at the end; never passed on.

        Frames are SSE events with `.event` and `.data` attributes (as yielded by `sseclient`).
        """
        self.chat_mode = chat_mode
        self.end_token = end_token
        self.reply = []
        self.last_payload = None
        self.finished = False

    def feed(self, frame) -> List[env]:
        if self.finished or not frame.data or frame.event == "ping":
            return []
        if frame.data == done_marker:
            return self._finish()
        try:
            payload = json.loads(frame.data)
        except ValueError as exc:
            self.finished = True
            return [failed(ProtocolError(f"ChatCompletionDecoder: could not parse event data as JSON: {exc}", details=frame.data))]
        if not isinstance(payload, dict):
            self.finished = True
            return [failed(ProtocolError(f"ChatCompletionDecoder: expected a JSON object, got {type(payload).__name__}", details=frame.data))]
        if "error" in payload:
            self.finished = True
            error = payload["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            return [failed(ProtocolError(f"Backend reported an error: {message}", details=payload))]
        self.last_payload = payload

        choices = payload.get("choices") or [{}]
        if self.chat_mode:
            token = (choices[0].get("delta") or {}).get("content")
        else:
            token = choices[0].get("text")
        if not token:  # the first event of a chat stream has no content, only the role
            return []
        if self.end_token and token == self.end_token:
            return []
        self.reply.append(token)
        return [partial_text(token)]

    def close(self) -> List[env]:
        # Some backends (e.g. reverse proxies) close the stream without sending the done marker.
        if self.finished:
            return []
        return self._finish()

    def _finish(self) -> List[env]:
        self.finished = True
        return [done("".join(self.reply).strip(), raw=self.last_payload)]

# --------------------------------------------------------------------------------
# SSE, cumulative snapshots (browser session backend)

class ConversationSnapshotDecoder:
    def __init__(self):
        """Decoder for the browser-session backend.

        Each SSE event carries the whole reply generated so far, in `message.content.parts[0]`.
        The delta is computed against the previous snapshot.

        The raw payload of the terminal event is the last assistant event; its `conversation_id`
        and `message.id` identify the reply on the remote side.
        """
        self.last_event = None
        self.text_so_far = ""
        self.finished = False

    def feed(self, frame) -> List[env]:
        if self.finished or not frame.data or frame.event == "ping":
            return []
        if frame.data == done_marker:
            return self._finish()
        try:
            payload = json.loads(frame.data)
        except ValueError as exc:
            logger.warning(f"ConversationSnapshotDecoder.feed: ignoring unparseable event data ({exc}): {frame.data!r}")
            return []
        if not isinstance(payload, dict):
            return []
        if "error" in payload and payload["error"]:
            self.finished = True
            return [failed(ProtocolError(f"Backend reported an error: {payload['error']}", details=payload))]
        message = payload.get("message") or {}
        if (message.get("author") or {}).get("role") != "assistant":  # only the assistant's messages are of interest
            return []
        try:
            snapshot = message["content"]["parts"][0]
        except (KeyError, IndexError, TypeError):
            return []
        self.last_event = payload
        delta = snapshot_delta(self.text_so_far, snapshot)
        if len(snapshot) > len(self.text_so_far):
            self.text_so_far = snapshot
        if not delta:
            return []
        return [partial_text(delta)]

    def close(self) -> List[env]:
        if self.finished:
            return []
        return self._finish()

    def _finish(self) -> List[env]:
        self.finished = True
        if self.last_event is None:
            return [failed(TransportError("Stream ended before any reply was received.", retryable=True))]
        return [done(self.text_so_far.strip(), raw=self.last_event)]

# --------------------------------------------------------------------------------
# WebSocket, ChatHub records (Bing)

class ChatHubDecoder:
    def __init__(self,
                 jailbreak: bool = False,
                 fallback_text: Optional[str] = None):
        """Decoder for the ChatHub WebSocket protocol.

        Each frame is text containing one or more JSON records terminated by `chathub_record_separator`.
        The record `type` selects the behavior:

            1: Update. Carries the cumulative text of the bot's reply. If the text ends with
               `chathub_stop_token`, the model has started writing the user's turn; that is
               the true end of the reply, and further updates in this turn are ignored.

            2: Final. Carries the final message object, the conversation expiry time,
               and possibly an error or moderation indication.

            7: The server closed the connection with an error.

            Any other type carrying an `error` field is a fatal protocol error.

        `jailbreak`: Whether we manage the conversation context ourselves. In this mode, if the
                     final record indicates that the moderation filter interrupted the reply,
                     the text received so far (or `fallback_text`) is used as the reply, as a
                     success rather than a failure.

        The raw payload of the terminal event is `{"message": ..., "conversation_expiry_time": ...}`.
        """
        self.jailbreak = jailbreak
        self.fallback_text = fallback_text if fallback_text is not None else client_config.moderation_fallback_text
        self.reply_so_far = ""
        self.stop_token_found = False
        self.finished = False

    @staticmethod
    def split_records(frame: str) -> List[Any]:
        """Split a frame into records. Records that are not JSON are kept as strings.

        Falsy records (e.g. the empty string after the final separator) are dropped, except `{}`,
        which the server sends to acknowledge the protocol handshake.
        """
        records = []
        for text in frame.split(chathub_record_separator):
            try:
                record = json.loads(text)
            except ValueError:
                record = text
            if record or isinstance(record, dict):
                records.append(record)
        return records

    def feed(self, frame: str) -> List[env]:
        events = []
        for record in self.split_records(frame):
            if self.finished:
                break
            if not isinstance(record, dict):
                logger.debug(f"ChatHubDecoder.feed: ignoring non-JSON record {record!r}")
                continue
            events.extend(self._decode_record(record))
        return events

    def close(self) -> List[env]:
        if self.finished:
            return []
        self.finished = True
        return [failed(TransportError("Connection closed before the reply was complete.", retryable=True))]

    def _decode_record(self, record: Dict) -> List[env]:
        record_type = record.get("type")
        if record_type == 1:
            return self._decode_update(record)
        if record_type == 2:
            self.finished = True
            return [self._decode_final(record)]
        if record_type == 7:
            # {"type": 7, "error": "Connection closed with an error.", "allowReconnect": true}
            self.finished = True
            return [failed(TransportError(record.get("error") or "Connection closed with an error.",
                                          retryable=bool(record.get("allowReconnect", False)),
                                          details=record))]
        if record.get("error"):
            self.finished = True
            return [failed(ProtocolError(f"Event Type('{record_type}'): {record['error']}", details=record))]
        return []  # pings (type 6), invocation-completed (type 3), ...

    def _decode_update(self, record: Dict) -> List[env]:
        if self.stop_token_found:
            return []
        try:
            messages = record["arguments"][0]["messages"]
        except (KeyError, IndexError, TypeError):
            return []
        if not messages or messages[0].get("author") != "bot":
            return []
        updated_text = messages[0].get("text")
        if not updated_text or updated_text == self.reply_so_far:
            return []
        if updated_text.strip().endswith(chathub_stop_token):
            self.stop_token_found = True
            updated_text = updated_text.replace(chathub_stop_token, "").strip()
        delta = snapshot_delta(self.reply_so_far, updated_text)
        if len(updated_text) > len(self.reply_so_far) or self.stop_token_found:
            self.reply_so_far = updated_text
        if not delta:
            return []
        return [partial_text(delta)]

    def _decode_final(self, record: Dict) -> env:
        item = record.get("item") or {}
        result = item.get("result") or {}
        conversation_expiry_time = item.get("conversationExpiryTime")

        if result.get("value") == "InvalidSession":
            return failed(ProtocolError(f"{result['value']}: {result.get('message')}", details=record))

        messages = item.get("messages") or []
        event_message = copy.deepcopy(messages[-1]) if messages else None
        raw = {"message": event_message,
               "conversation_expiry_time": conversation_expiry_time}

        if result.get("error"):
            logger.debug(f"ChatHubDecoder: final record has an error: {result.get('value')}: {result.get('message')}")
            if self.reply_so_far and event_message:
                self._substitute_text(event_message, self.reply_so_far)
                return done(self.reply_so_far, raw=raw)
            return failed(ProtocolError(f"{result.get('value')}: {result.get('message')}", details=record))

        if not event_message:
            return failed(ProtocolError("No message was generated.", details=record))
        if event_message.get("author") != "bot":
            return failed(ProtocolError("Unexpected message author.", details=record))

        if self.jailbreak and self._moderation_triggered(messages):
            text = self.reply_so_far or self.fallback_text
            self._substitute_text(event_message, text)
            event_message.pop("suggestedResponses", None)  # the moderation filter's suggestions are useless
            return interrupted(text, raw=raw)

        if self.stop_token_found:
            self._substitute_text(event_message, self.reply_so_far)
            return done(self.reply_so_far, raw=raw)
        return done(event_message.get("text") or "", raw=raw)

    def _moderation_triggered(self, messages: List[Dict]) -> bool:
        first = messages[0]
        return bool(self.stop_token_found or
                    first.get("topicChangerText") or
                    first.get("offense") == "OffenseTrigger" or
                    (len(messages) > 1 and messages[1].get("contentOrigin") == "Apology"))

    @staticmethod
    def _substitute_text(message: Dict, text: str) -> None:
        message["text"] = text
        try:
            message["adaptiveCards"][0]["body"][0]["text"] = text
        except (KeyError, IndexError, TypeError):
            pass
