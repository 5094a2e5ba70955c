"""Chat clients: one conversational API over three different LLM backends.

  - `ChatGPTClient`: the official completion API (chat completion and legacy completion models).
    We keep the conversation history ourselves, and build a token-budgeted prompt for every turn.
  - `ChatGPTBrowserClient`: the unofficial browser-session API (through a reverse proxy).
    The backend keeps the conversation; we mirror it locally.
  - `BingAIClient`: the ChatHub WebSocket API. The backend keeps the conversation, unless in
    jailbreak mode, where we keep it ourselves and inject it as context.

All clients have the same `send_message` call shape, and return the same kind of result::

    client = make_client("chatgpt", api_key=...)
    result = client.send_message("Hello!", on_progress=print)
    result = client.send_message("What did I just say?",
                                 conversation_id=result.conversation_id,
                                 parent_message_id=result.message_id)

For a pull-style API, see `stream_message`, which returns a `ReplyStream`.
"""

__all__ = ["end_of_stream",
           "ConversationSession",
           "ChatGPTClient", "ChatGPTBrowserClient", "BingAIClient",
           "backends", "make_client",
           "ReplyStream"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import queue
import secrets
import threading
import time
import types
from typing import Any, Callable, Dict, Iterable, Optional, Union
import uuid

from unpythonic import sym, timer
from unpythonic.env import env

from . import chattree
from . import chatutil
from . import config as client_config
from . import streaming
from .aggregator import ResponseAggregator
from .chatstore import ConversationStore
from .errors import BackendHandshakeError, ClientError, ConfigurationError, ProtocolError, ResponseTimeoutError
from .tokencount import TokenCounter
from .transport import ChatHubTransport, HTTPTransport

# Sent to `on_progress` once, after the last delta of a successful reply. Not content.
end_of_stream = sym("end_of_stream")

# --------------------------------------------------------------------------------
# Shared orchestration

class ConversationSession:
    namespace_name = None  # key prefix in the conversation store; set by each backend
    defaults = {}  # the backend's options and their defaults

    def __init__(self,
                 store: Optional[ConversationStore] = None,
                 transport: Optional[Any] = None,
                 **options):
        """Base class for chat clients.

        `store`: Where to keep conversations. Default is a new in-memory `ConversationStore`.
                 Each backend uses its own namespace in the store, so one store can be shared
                 by several clients.

        `transport`: Override the transport (mainly for testing). Default depends on the backend.

        `options`: Overrides for `self.defaults`. These become the base options of this client,
                   and cannot be changed later. To change an option for one call only, pass
                   `client_options` to `send_message`.

        Raises `ConfigurationError` on unknown options, and if the resulting settings are invalid.
        """
        self._check_option_names(options)
        self.options = types.MappingProxyType({**self.defaults, **options})
        if store is None:
            store = ConversationStore()
        self.store = store.namespace(self.namespace_name)
        self.transport = transport if transport is not None else self._make_transport()
        self._make_settings(None)  # validate now, not mid-conversation

    def _check_option_names(self, options: Dict) -> None:
        unknown = sorted(set(options) - set(self.defaults))
        if unknown:
            raise ConfigurationError(f"{type(self).__name__}: unknown option(s) {', '.join(repr(name) for name in unknown)}; valid: {', '.join(sorted(self.defaults))}")

    def _make_transport(self) -> Any:
        return HTTPTransport(proxy=self.options["proxy"])

    def _make_settings(self, client_options: Optional[Dict]) -> env:
        """Build the settings for one call: base options, overridden by `client_options`.

        Returns a fresh `unpythonic.env.env`; the client's own options are never modified.
        """
        client_options = client_options or {}
        self._check_option_names(client_options)
        settings = env(**{**self.options, **client_options})
        self._finalize_settings(settings)
        return settings

    def _finalize_settings(self, settings: env) -> None:
        """Hook: validate `settings` and add derived settings to it, in place."""

    def send_message(self, text: str, **kwargs) -> env:
        raise NotImplementedError

    def stream_message(self, text: str, **kwargs) -> "ReplyStream":
        """Like `send_message`, but run the turn in a background thread, and return a `ReplyStream`.

        Iterate over the `ReplyStream` to get the reply text as it is generated; then call its `result`
        method to get the same result `send_message` would have returned (or raise its error).

        `kwargs` are passed to `send_message`, except `on_progress` and `abort`, which the stream provides.
        """
        return ReplyStream(self, text, **kwargs)

    def get_conversation(self, conversation_id: str) -> Optional[Dict]:
        """Return (a copy of) the locally stored conversation `conversation_id`, or `None`."""
        return self.store.get(conversation_id)

    def clear_conversations(self) -> None:
        """Delete all conversations of this backend from the store."""
        logger.info(f"{type(self).__name__}.clear_conversations: clearing namespace '{self.namespace_name}'.")
        self.store.clear()

    def _consume(self,
                 frames: Iterable,
                 decoder: Any,
                 abort: Optional[threading.Event] = None,
                 on_progress: Optional[Callable] = None,
                 timeout: Optional[float] = None) -> env:
        """Drive one turn: feed `frames` through `decoder` into a `ResponseAggregator`, until the turn settles.

        `frames`: Raw frames from the transport. If it has a `close` method (e.g. a generator), it is
                  closed as soon as the turn settles, tearing down the connection.

        `timeout`: Seconds. If no reply data (a delta or a terminal event) arrives for this long, the turn
                   fails with `ResponseTimeoutError`, even if the backend keeps sending other frames
                   (e.g. keepalive pings). Default `client.config.response_timeout`.

                   This is checked when a frame arrives; when no frames arrive at all, the transport's
                   own read timeout fires instead.

        Returns the aggregator's outcome (see `ResponseAggregator.outcome`), or raises its error.
        """
        if timeout is None:
            timeout = client_config.response_timeout
        frames = iter(frames)
        def release():
            close = getattr(frames, "close", None)
            if close is not None:
                close()
        def progress(delta):
            logger.debug(f"{type(self).__name__}: delta {delta!r}")
            if on_progress is not None:
                on_progress(delta)
        aggregator = ResponseAggregator(on_progress=progress, release=release)
        aggregator.start()
        last_data_time = time.monotonic()
        try:
            for frame in frames:
                if abort is not None and abort.is_set():
                    aggregator.cancel()
                    break
                events = decoder.feed(frame)
                for event in events:
                    if aggregator.apply(event):
                        break
                if aggregator.finished:
                    break
                if events:
                    last_data_time = time.monotonic()
                elif time.monotonic() - last_data_time > timeout:
                    logger.warning(f"{type(self).__name__}._consume: no reply data in {timeout} seconds; giving up.")
                    aggregator.fail(ResponseTimeoutError(f"No reply data received in {timeout} seconds."))
                    break
            else:  # connection closed
                if abort is not None and abort.is_set():
                    aggregator.cancel()
                else:
                    for event in decoder.close():
                        aggregator.apply(event)
        except ClientError as exc:
            aggregator.fail(exc)
        finally:
            if not aggregator.finished:  # e.g. KeyboardInterrupt; at least close the connection
                aggregator.cancel()
        return aggregator.outcome()

    def _notify_end_of_stream(self, on_progress: Optional[Callable]) -> None:
        if on_progress is not None:
            on_progress(end_of_stream)

# --------------------------------------------------------------------------------
# Completion API

class ChatGPTClient(ConversationSession):
    namespace_name = "chatgpt"
    defaults = client_config.chatgpt_defaults

    def __init__(self,
                 api_key: Optional[str] = None,
                 store: Optional[ConversationStore] = None,
                 transport: Optional[HTTPTransport] = None,
                 encode: Optional[Callable] = None,
                 **options):
        """Client for the completion API. See `client.config.chatgpt_defaults` for the options.

        `api_key`: The API key. Sent as a bearer token, or as an `api-key` header if `azure=True`
                   and `reverse_proxy_url` is set.

        `encode`: Optional tokenizer override, `str -> sequence of tokens`. Default is the tiktoken
                  encoder for the model. See `client.tokencount.TokenCounter`.

        The model decides the prompt format: models whose name starts with "gpt-" use chat mode
        (see `chatutil.build_prompt`); the rest use flat mode.
        """
        self.api_key = api_key
        self.encode = encode
        super().__init__(store=store, transport=transport, **options)

    def _finalize_settings(self, settings: env) -> None:
        model = settings.model
        settings.chat_mode = model.startswith("gpt-")
        if model.startswith("text-chat") or model.startswith("text-davinci-002-render"):  # unofficial chat models, ChatML delimiters
            settings.start_token = "<|im_start|>"
            settings.end_token = "<|im_end|>"
        else:
            settings.start_token = "||>"
            settings.end_token = ""

        max_context_tokens = settings.max_context_tokens
        if max_context_tokens is None:
            max_context_tokens = 4095 if settings.chat_mode else 4097  # Davinci models have a context size of 4097
        settings.budget = chatutil.make_budget(max_context_tokens,
                                               settings.max_response_tokens,
                                               settings.max_prompt_tokens)

        if not settings.stop:
            settings.stop = chatutil.make_stop_sequences(settings.start_token,
                                                         settings.end_token,
                                                         settings.user_label)

        if settings.reverse_proxy_url:
            settings.url = settings.reverse_proxy_url
        elif settings.chat_mode:
            settings.url = settings.chat_completions_url
        else:
            settings.url = settings.completions_url

    def _make_headers(self, settings: env) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            if settings.azure and settings.reverse_proxy_url:
                headers["api-key"] = self.api_key
            else:
                headers["Authorization"] = f"Bearer {self.api_key}"
        if settings.headers:
            headers.update(settings.headers)
        return headers

    def send_message(self,
                     text: str,
                     *,
                     conversation_id: Optional[str] = None,
                     parent_message_id: Optional[str] = None,
                     should_generate_title: bool = False,
                     on_progress: Optional[Callable] = None,
                     abort: Optional[threading.Event] = None,
                     client_options: Optional[Dict] = None) -> env:
        """Send `text` as the user's next message, and return the assistant's reply.

        `conversation_id`: The conversation to continue. If `None`, start a new one.

        `parent_message_id`: The message `text` replies to; typically the `message_id` of the
                             previous result. Choosing an earlier message branches the conversation.
                             If `None`, `text` starts a new branch with no history.

        `should_generate_title`: If `True`, and this is the first turn of the conversation,
                                 name the conversation using a separate one-shot completion.
                                 A failure to do so is logged, and does not affect the turn.

        `on_progress`: 1-argument callable `(delta: str)`, called for each piece of the reply as it
                       arrives, and then once with `end_of_stream` when the reply is complete.

        `abort`: Optional `threading.Event`. Set it (from another thread) to cancel the turn,
                 which then raises `CancellationError`.

        `client_options`: Overrides for this call only; see `client.config.chatgpt_defaults`.

        Returns an `unpythonic.env.env` with the following attributes:

            `text: str`: The reply.
            `conversation_id: str`
            `parent_message_id: str`: ID of the user message that was sent.
            `message_id: str`: ID of the reply message. Pass this as `parent_message_id` to continue.
            `details: Any`: The last raw payload received from the backend.
            `title: str`: Only if a title was generated.
            `conversation: dict`: Only if the option `return_conversation` is set.

        Raises a `client.errors.ClientError` on failure. On failure, nothing is stored.
        """
        settings = self._make_settings(client_options)
        if conversation_id is None:
            conversation_id = chattree.make_id()
        if parent_message_id is None:
            parent_message_id = chattree.make_id()

        conversation = self.store.get(conversation_id) or chattree.create_conversation()
        is_first_turn = not conversation["messages"]
        graph = chattree.MessageGraph(conversation["messages"])
        user_message = graph.append(chattree.create_message("user", text, parent_message_id))

        token_counter = TokenCounter(settings.model, encode=self.encode)
        prompt = chatutil.build_prompt(graph.linearize(user_message["id"]),
                                       token_counter=token_counter,
                                       budget=settings.budget,
                                       chat_mode=settings.chat_mode,
                                       prompt_prefix=settings.prompt_prefix,
                                       user_label=settings.user_label,
                                       assistant_label=settings.assistant_label,
                                       start_token=settings.start_token,
                                       end_token=settings.end_token)
        if settings.keep_necessary_messages_only:
            conversation["messages"] = prompt.context

        payload = {"model": settings.model,
                   "temperature": settings.temperature,
                   "top_p": settings.top_p,
                   "presence_penalty": settings.presence_penalty,
                   "stop": settings.stop,
                   "max_tokens": prompt.max_tokens,
                   "stream": True}
        if settings.chat_mode:
            payload["messages"] = prompt.prompt
        else:
            payload["prompt"] = prompt.prompt
        if settings.debug:
            logger.info(f"ChatGPTClient.send_message: request payload: {payload}")

        logger.info(f"ChatGPTClient.send_message: conversation '{conversation_id}': sending {prompt.token_count} prompt tokens to model '{settings.model}' (max {prompt.max_tokens} response tokens).")
        with timer() as tim:
            reply = self._consume(self.transport.stream_events(settings.url, self._make_headers(settings), payload, abort),
                                  streaming.ChatCompletionDecoder(settings.chat_mode, settings.end_token),
                                  abort=abort,
                                  on_progress=on_progress,
                                  timeout=settings.response_timeout)
        logger.info(f"ChatGPTClient.send_message: conversation '{conversation_id}': reply received in {tim.dt:0.2f}s.")
        self._notify_end_of_stream(on_progress)

        reply_message = chattree.create_message("assistant", reply.text, user_message["id"])
        conversation["messages"].append(reply_message)
        self.store.set(conversation_id, conversation)

        title = None
        if should_generate_title and is_first_turn:
            title = self._generate_title(text, reply.text, abort)
            if title:
                conversation["title"] = title
                self.store.set(conversation_id, conversation)

        result = env(text=reply.text,
                     conversation_id=conversation_id,
                     parent_message_id=user_message["id"],
                     message_id=reply_message["id"],
                     details=reply.raw)
        if title:
            result.title = title
        if settings.return_conversation:
            result.conversation = conversation
        return result

    def complete(self,
                 prompt: Union[str, list],
                 *,
                 abort: Optional[threading.Event] = None,
                 **model_options) -> str:
        """One-shot, non-streaming completion. No conversation is involved.

        `prompt`: Text, or for chat models, optionally a list of chat messages `[{"role": ..., "content": ...}, ...]`.
                  Text sent to a chat model becomes a single user message.

        `model_options`: Sent as-is in the request (e.g. `model`, `temperature`). The model defaults to this client's model.

        Returns the stripped text of the completion.
        """
        model = model_options.pop("model", self.options["model"])
        chat_mode = model.startswith("gpt-")
        payload = {"model": model, **model_options}
        if chat_mode:
            payload["messages"] = prompt if isinstance(prompt, list) else [{"role": "user", "content": prompt}]
        else:
            payload["prompt"] = prompt
        settings = self._make_settings(None)
        if settings.reverse_proxy_url:
            url = settings.reverse_proxy_url
        else:
            url = settings.chat_completions_url if chat_mode else settings.completions_url

        response = self.transport.post_json(url, self._make_headers(settings), payload, abort)
        try:
            choice = response["choices"][0]
            text = choice["message"]["content"] if chat_mode else choice["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProtocolError("ChatGPTClient.complete: unexpected response format.", details=response) from exc
        if not isinstance(text, str):  # e.g. `null` content when the content filter triggers
            raise ProtocolError("ChatGPTClient.complete: response contains no text.", details=response)
        return text.strip()

    def _generate_title(self, user_text: str, reply_text: str, abort: Optional[threading.Event]) -> Optional[str]:
        """Name a conversation from its first exchange. Return the title, or `None` on failure."""
        try:
            with timer() as tim:
                title = self.complete(chatutil.format_title_request(user_text, reply_text),
                                      abort=abort,
                                      **client_config.title_generation_defaults)
        except ClientError as exc:
            logger.warning(f"ChatGPTClient._generate_title: title generation failed, continuing without a title. Reason: {type(exc)}: {exc}")
            return None
        title = chatutil.clean_title(title)
        logger.info(f"ChatGPTClient._generate_title: generated title '{title}' in {tim.dt:0.2f}s.")
        return title or None

# --------------------------------------------------------------------------------
# Browser-session API

class ChatGPTBrowserClient(ConversationSession):
    namespace_name = "chatgpt-browser"
    defaults = client_config.chatgpt_browser_defaults

    def __init__(self,
                 store: Optional[ConversationStore] = None,
                 transport: Optional[HTTPTransport] = None,
                 **options):
        """Client for the browser-session API, through a reverse proxy. See `client.config.chatgpt_browser_defaults`.

        Authenticates with `access_token` (bearer) and/or `cookies`.

        The backend keeps the conversation and assigns the conversation and message IDs.
        We keep a local mirror of each conversation, stored under the backend's conversation ID.
        """
        super().__init__(store=store, transport=transport, **options)

    def _make_headers(self, settings: env) -> Dict[str, str]:
        headers = {"Content-Type": "application/json",
                   "Accept": "text/event-stream"}
        if settings.access_token:
            headers["Authorization"] = f"Bearer {settings.access_token}"
        if settings.cookies:
            headers["Cookie"] = settings.cookies
        if settings.headers:
            headers.update(settings.headers)
        return headers

    def send_message(self,
                     text: str,
                     *,
                     conversation_id: Optional[str] = None,
                     parent_message_id: Optional[str] = None,
                     should_generate_title: bool = False,
                     on_progress: Optional[Callable] = None,
                     abort: Optional[threading.Event] = None,
                     client_options: Optional[Dict] = None) -> env:
        """Send `text` as the user's next message, and return the assistant's reply.

        Same parameters and result as `ChatGPTClient.send_message`, except that a new conversation
        gets its ID from the backend, and `details` is the last event of the stream.
        """
        settings = self._make_settings(client_options)
        if parent_message_id is None:
            parent_message_id = chattree.make_id()
        conversation = self.store.get(conversation_id) if conversation_id is not None else None
        user_message = chattree.create_message("user", text, parent_message_id)

        payload = {"action": "next",
                   "messages": [{"id": user_message["id"],
                                 "role": "user",
                                 "content": {"content_type": "text",
                                             "parts": [text]}}],
                   "parent_message_id": parent_message_id,
                   "model": settings.model}
        if conversation_id is not None:
            payload["conversation_id"] = conversation_id
        if settings.debug:
            logger.info(f"ChatGPTBrowserClient.send_message: request payload: {payload}")

        logger.info(f"ChatGPTBrowserClient.send_message: conversation '{conversation_id or '(new)'}': sending message.")
        with timer() as tim:
            reply = self._consume(self.transport.stream_events(settings.reverse_proxy_url, self._make_headers(settings), payload, abort),
                                  streaming.ConversationSnapshotDecoder(),
                                  abort=abort,
                                  on_progress=on_progress,
                                  timeout=settings.response_timeout)
        logger.info(f"ChatGPTBrowserClient.send_message: reply received in {tim.dt:0.2f}s.")
        self._notify_end_of_stream(on_progress)

        raw = reply.raw
        is_new_conversation = conversation_id is None
        conversation_id = raw.get("conversation_id") or conversation_id
        if conversation_id is None:
            raise ProtocolError("ChatGPTBrowserClient.send_message: backend did not report a conversation ID.", details=raw)
        message_id = raw["message"].get("id") or chattree.make_id()

        if conversation is None:
            conversation = self.store.get(conversation_id) or chattree.create_conversation()
        conversation["messages"].append(user_message)
        conversation["messages"].append(chattree.create_message("assistant", reply.text, user_message["id"],
                                                                message_id=message_id,
                                                                details=raw["message"]))
        self.store.set(conversation_id, conversation)

        title = None
        if should_generate_title and is_new_conversation:
            title = self._generate_title(settings, conversation_id, message_id)
            if title:
                conversation["title"] = title
                self.store.set(conversation_id, conversation)

        result = env(text=reply.text,
                     conversation_id=conversation_id,
                     parent_message_id=user_message["id"],
                     message_id=message_id,
                     details=raw)
        if title:
            result.title = title
        return result

    def _generate_title(self, settings: env, conversation_id: str, message_id: str) -> Optional[str]:
        """Ask the backend to name the conversation. Return the title, or `None` on failure."""
        url = f"{settings.reverse_proxy_url.rstrip('/')}/gen_title/{conversation_id}"
        try:
            response = self.transport.post_json(url,
                                                self._make_headers(settings),
                                                {"message_id": message_id,
                                                 "model": settings.model})
            title = response["title"]
        except ClientError as exc:
            logger.warning(f"ChatGPTBrowserClient._generate_title: title generation failed, continuing without a title. Reason: {type(exc)}: {exc}")
            return None
        except (KeyError, TypeError):
            logger.warning(f"ChatGPTBrowserClient._generate_title: unexpected response format, continuing without a title: {response!r}")
            return None
        if not isinstance(title, str):
            logger.warning(f"ChatGPTBrowserClient._generate_title: response contains no title, continuing without a title: {response!r}")
            return None
        return chatutil.clean_title(title) or None

# --------------------------------------------------------------------------------
# ChatHub API

# Tone style -> the corresponding entry in the request's option sets.
tone_option_sets = {"creative": "h3imaginative",
                    "precise": "h3precise",
                    "fast": "galileo"}
default_tone_option_set = "harmonyv3"

# Magic ID under which the backend accepts injected page context.
context_message_id = "discover-web--page-ping-mriduna-----"

class BingAIClient(ConversationSession):
    namespace_name = "bing"
    defaults = client_config.bing_defaults

    def __init__(self,
                 store: Optional[ConversationStore] = None,
                 transport: Optional[ChatHubTransport] = None,
                 http_transport: Optional[HTTPTransport] = None,
                 **options):
        """Client for the ChatHub WebSocket API. See `client.config.bing_defaults`.

        `transport`: For the chat itself. Default is a new `ChatHubTransport`.

        `http_transport`: For the conversation-creation handshake. Default is a new `HTTPTransport`.

        Authenticates with `user_token` (the `_U` cookie), or with the full cookie string `cookies`.

        There is no token budget for this backend; the server keeps the context.
        """
        self.http_transport = http_transport
        super().__init__(store=store, transport=transport, **options)
        if self.http_transport is None:
            self.http_transport = HTTPTransport(proxy=self.options["proxy"])

    def _make_transport(self) -> ChatHubTransport:
        return ChatHubTransport(proxy=self.options["proxy"])

    def _finalize_settings(self, settings: env) -> None:
        settings.tone_option_set = tone_option_sets.get(settings.tone_style, default_tone_option_set)

    def create_new_conversation(self, client_options: Optional[Dict] = None) -> Dict:
        """Open a new remote conversation.

        Returns the backend's response, which contains at least `conversationSignature`,
        `conversationId` and `clientId`.

        Raises `BackendHandshakeError` if the backend refuses, or sends something we cannot parse.
        """
        settings = self._make_settings(client_options)
        headers = {"accept": "application/json",
                   "accept-language": "en-US,en;q=0.9",
                   "content-type": "application/json",
                   "x-ms-client-request-id": str(uuid.uuid4()),
                   "x-ms-useragent": "azsdk-js-api-client-factory/1.0.0-beta.1 core-rest-pipeline/1.10.0 OS/Win32"}
        if settings.cookies:
            headers["cookie"] = settings.cookies
        elif settings.user_token:
            headers["cookie"] = f"_U={settings.user_token}"
        url = f"{settings.host}/turing/conversation/create"

        logger.info(f"BingAIClient.create_new_conversation: handshake with {url}.")
        try:
            response = self.http_transport.get_json(url, headers, check_status=False)
        except ProtocolError as exc:
            raise BackendHandshakeError("Could not parse the conversation creation response.", code=exc.code, details=exc.details) from exc
        if not isinstance(response, dict):
            raise BackendHandshakeError("Unexpected conversation creation response.", details=response)
        if not all(response.get(key) for key in ("conversationSignature", "conversationId", "clientId")):
            result = response.get("result") or {}
            raise BackendHandshakeError(result.get("message") or "Conversation creation failed.",
                                        remote_kind=result.get("value"),
                                        details=response)
        return response

    def send_message(self,
                     text: str,
                     *,
                     conversation_id: Optional[str] = None,
                     conversation_signature: Optional[str] = None,
                     client_id: Optional[str] = None,
                     invocation_id: int = 0,
                     jailbreak_conversation_id: Union[str, bool, None] = None,
                     parent_message_id: Optional[str] = None,
                     context: Optional[str] = None,
                     on_progress: Optional[Callable] = None,
                     abort: Optional[threading.Event] = None,
                     client_options: Optional[Dict] = None) -> env:
        """Send `text` as the user's next message, and return the assistant's reply.

        `conversation_id`, `conversation_signature`, `client_id`, `invocation_id`:
            The remote session credentials, from the previous result. If any of the first three is missing,
            a new remote conversation is created (see `create_new_conversation`).

        `jailbreak_conversation_id`: If given, use jailbreak mode: keep the conversation locally under this key,
                                     open a new remote conversation each turn, and inject the whole transcript
                                     (with `system_message` from the options) as context. Pass `True` to start
                                     a new jailbroken conversation; the generated key is returned in the result.

        `parent_message_id`: Jailbreak mode only. The local message to continue from; typically the `message_id`
                             of the previous result.

        `context`: Optional text (e.g. a web page) to give to the model as context.

        `on_progress`, `abort`, `client_options`: As in `ChatGPTClient.send_message`.

        Returns an `unpythonic.env.env` with `text`, `conversation_id`, `parent_message_id`, `message_id`,
        `details` (the final bot message), plus `conversation_signature`, `client_id`, `invocation_id`
        (for the next turn), `conversation_expiry_time`, `interrupted` (whether moderation cut the reply short;
        jailbreak mode only), and in jailbreak mode, `jailbreak_conversation_id`.
        """
        settings = self._make_settings(client_options)

        jailbreak = jailbreak_conversation_id is not None and jailbreak_conversation_id is not False
        if jailbreak_conversation_id is True:
            jailbreak_conversation_id = chattree.make_id()

        if jailbreak or not (conversation_signature and conversation_id and client_id):
            created = self.create_new_conversation(client_options)
            conversation_signature = created["conversationSignature"]
            conversation_id = created["conversationId"]
            client_id = created["clientId"]

        if parent_message_id is None:
            parent_message_id = chattree.make_id()
        user_message = chattree.create_message("user", text, parent_message_id)

        conversation = None
        previous_messages = None
        if jailbreak:
            conversation = self.store.get(jailbreak_conversation_id) or chattree.create_conversation()
            history = chattree.linearize(conversation["messages"], parent_message_id)
            system_message = settings.system_message if invocation_id == 0 else None
            transcript = chatutil.format_chathub_transcript(history + [user_message],
                                                            system_message=system_message,
                                                            context=context)
            previous_messages = [self._make_context_message(transcript)]
            message = {"author": "user",
                       "text": "Continue the conversation in context. Assistant:",
                       "messageType": "SearchQuery"}
        else:
            if context:
                previous_messages = [self._make_context_message(context)]
            message = {"author": "user",
                       "text": text,
                       "messageType": "Chat"}

        arguments = {"source": "cib",
                     "optionsSets": ["nlu_direct_response_filter",
                                     "deepleo",
                                     "enable_debug_commands",
                                     "disable_emoji_spoken_text",
                                     "responsible_ai_policy_235",
                                     "enablemm",
                                     settings.tone_option_set,
                                     "dtappid",
                                     "cricinfo",
                                     "cricinfov2",
                                     "dv3sugg",
                                     "nojbfedge"],
                     "sliceIds": ["222dtappid",
                                  "225cricinfo",
                                  "224locals0"],
                     "traceId": secrets.token_hex(16),
                     "isStartOfSession": invocation_id == 0,
                     "message": message,
                     "conversationSignature": conversation_signature,
                     "participant": {"id": client_id},
                     "conversationId": conversation_id}
        if previous_messages:
            arguments["previousMessages"] = previous_messages
        request = {"arguments": [arguments],
                   "invocationId": str(invocation_id),
                   "target": "chat",
                   "type": 4}
        if settings.debug:
            logger.info(f"BingAIClient.send_message: request: {request}")

        logger.info(f"BingAIClient.send_message: conversation '{conversation_id}', invocation {invocation_id}{' (jailbreak)' if jailbreak else ''}: sending message.")
        with timer() as tim:
            reply = self._consume(self.transport.stream_frames(settings.chathub_url, request, abort),
                                  streaming.ChatHubDecoder(jailbreak=jailbreak),
                                  abort=abort,
                                  on_progress=on_progress,
                                  timeout=settings.response_timeout)
        logger.info(f"BingAIClient.send_message: reply received in {tim.dt:0.2f}s{' (interrupted by moderation)' if reply.interrupted else ''}.")
        self._notify_end_of_stream(on_progress)

        bot_message = reply.raw["message"]
        message_id = bot_message.get("messageId") if not jailbreak else None
        if message_id is None:
            message_id = chattree.make_id()

        if jailbreak:
            conversation["messages"].append(user_message)
            conversation["messages"].append(chattree.create_message("assistant", reply.text, user_message["id"],
                                                                    message_id=message_id))
            self.store.set(jailbreak_conversation_id, conversation)

        result = env(text=reply.text,
                     conversation_id=conversation_id,
                     parent_message_id=user_message["id"],
                     message_id=message_id,
                     details=bot_message,
                     conversation_signature=conversation_signature,
                     client_id=client_id,
                     invocation_id=invocation_id + 1,
                     conversation_expiry_time=reply.raw["conversation_expiry_time"],
                     interrupted=reply.interrupted)
        if jailbreak:
            result.jailbreak_conversation_id = jailbreak_conversation_id
        return result

    def _make_context_message(self, description: str) -> Dict:
        return {"author": "user",
                "description": description,
                "contextType": "WebPage",
                "messageType": "Context",
                "messageId": context_message_id}

# --------------------------------------------------------------------------------
# Backend registry

backends = {"chatgpt": ChatGPTClient,
            "chatgpt-browser": ChatGPTBrowserClient,
            "bing": BingAIClient}

def make_client(kind: str, **kwargs) -> ConversationSession:
    """Create a client for the backend `kind` (a key of `backends`), passing `kwargs` to its constructor."""
    try:
        cls = backends[kind]
    except KeyError:
        raise ValueError(f"Unknown backend '{kind}'; valid: {', '.join(repr(key) for key in backends)}.") from None
    return cls(**kwargs)

# --------------------------------------------------------------------------------
# Pull-style streaming

class ReplyStream:
    def __init__(self, session: ConversationSession, text: str, **kwargs):
        """One turn running in a background thread. Usually obtained from `ConversationSession.stream_message`.

        Iterating yields the pieces of the reply as they arrive, and ends when the turn ends
        (whether it succeeded or not). Then call `result()`.
        """
        for name in ("on_progress", "abort"):
            if name in kwargs:
                raise TypeError(f"ReplyStream: `{name}` is provided by the stream itself")
        self.session = session
        self.abort = threading.Event()
        self.chunks = queue.Queue()
        self._result = None
        self._error = None
        self._finished = threading.Event()
        self.thread = threading.Thread(target=self._run,
                                       args=(text,),
                                       kwargs=kwargs,
                                       name="colloquy-reply-stream",
                                       daemon=True)
        self.thread.start()

    def _run(self, text: str, **kwargs) -> None:
        def on_progress(delta):
            if delta is not end_of_stream:
                self.chunks.put(delta)
        try:
            self._result = self.session.send_message(text, on_progress=on_progress, abort=self.abort, **kwargs)
        except Exception as exc:  # handed over to the consumer thread by `result()`
            self._error = exc
        finally:
            self._finished.set()
            self.chunks.put(end_of_stream)

    def __iter__(self):
        while True:
            chunk = self.chunks.get()
            if chunk is end_of_stream:
                self.chunks.put(end_of_stream)  # so that iterating again also terminates
                return
            yield chunk

    def cancel(self) -> None:
        """Cancel the turn. `result()` will then raise `CancellationError`, unless the turn had already finished."""
        self.abort.set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def result(self, timeout: Optional[float] = None) -> env:
        """Wait for the turn to finish, and return its result (as from `send_message`), or raise its error.

        `timeout`: Seconds to wait. If the turn is still running after that, raise `TimeoutError`.
        """
        if not self._finished.wait(timeout):
            raise TimeoutError(f"ReplyStream.result: turn still running after {timeout} seconds")
        self.thread.join()
        if self._error is not None:
            raise self._error
        return self._result
