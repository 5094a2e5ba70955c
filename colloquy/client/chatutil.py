"""Prompt building: turning a linearized conversation into a prompt that fits the token budget.

There are two prompt formats:

  - Chat mode (chat completion models, e.g. "gpt-3.5-turbo"): two system messages, the instructions,
    and a single message containing the whole transcript. Sending the transcript as one message,
    instead of one message per turn, keeps the AI in character more reliably.

  - Flat mode (legacy completion models): a single string.

In both, each turn of the transcript is rendered as `{start_token}{label}:\\n{text}{end_token}\\n`,
and the prompt ends with a suffix that prompts the assistant to respond.
"""

__all__ = ["make_budget",
           "format_current_date",
           "format_prompt_prefix",
           "format_message",
           "make_stop_sequences",
           "build_prompt",
           "format_chathub_transcript",
           "format_title_request", "clean_title"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import datetime
import re
from typing import Dict, List, Optional

from unpythonic.env import env

from ..common import utils as common_utils

from .errors import ConfigurationError, PromptTooLargeError
from .tokencount import TokenCounter

# Fixed cost of the chat framing metadata, added once after all messages have been counted.
chat_framing_tokens = 2

# --------------------------------------------------------------------------------
# Token budget

def make_budget(max_context_tokens: int,
                max_response_tokens: int,
                max_prompt_tokens: Optional[int] = None) -> env:
    """Validate and return the token budget.

    `max_context_tokens`: The model's context size (prompt + response).
    `max_response_tokens`: Tokens to reserve for the response.
    `max_prompt_tokens`: If `None` (default), everything that is not reserved for the response.

    Returns an `unpythonic.env.env` with the three values as attributes.

    Raises `ConfigurationError` if the budget does not add up. This is meant to be called
    when the settings are set up, so that a bad configuration fails fast, not mid-conversation.
    """
    if max_prompt_tokens is None:
        max_prompt_tokens = max_context_tokens - max_response_tokens
    for name, value in (("max_context_tokens", max_context_tokens),
                        ("max_response_tokens", max_response_tokens),
                        ("max_prompt_tokens", max_prompt_tokens)):
        if not isinstance(value, int) or value <= 0:
            raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    if max_prompt_tokens + max_response_tokens > max_context_tokens:
        raise ConfigurationError(f"max_prompt_tokens + max_response_tokens ({max_prompt_tokens} + {max_response_tokens} = {max_prompt_tokens + max_response_tokens}) must be less than or equal to max_context_tokens ({max_context_tokens})")
    return env(max_context_tokens=max_context_tokens,
               max_response_tokens=max_response_tokens,
               max_prompt_tokens=max_prompt_tokens)

# --------------------------------------------------------------------------------
# Prompt pieces

_months = ["January", "February", "March", "April", "May", "June",
           "July", "August", "September", "October", "November", "December"]
def format_current_date(d: Optional[datetime.date] = None) -> str:
    """Return today's date (or `d`) as e.g. "October 19, 2026".

    Locale-independent on purpose; the model is told the date in English.
    """
    if d is None:
        d = datetime.date.today()
    return f"{_months[d.month - 1]} {d.day}, {d.year}"

def format_prompt_prefix(prompt_prefix: Optional[str],
                         start_token: str,
                         end_token: str) -> str:
    """Format the instructions block that opens the prompt.

    `prompt_prefix`: Custom instructions, or `None` (or blank) for the default instructions,
                     which include the current date.
    """
    prompt_prefix = (prompt_prefix or "").strip()
    if prompt_prefix:
        if not end_token or not prompt_prefix.endswith(end_token):
            prompt_prefix = f"{prompt_prefix}{end_token}\n\n"
        return f"{start_token}Instructions:\n{prompt_prefix}"
    return (f"{start_token}Instructions:\n"
            f"You are ChatGPT, a large language model trained by OpenAI. Respond conversationally.\n"
            f"Current date: {format_current_date()}{end_token}\n\n")

def format_message(message: Dict,
                   user_label: str,
                   assistant_label: str,
                   start_token: str,
                   end_token: str) -> str:
    """Render one message of the transcript. Anything not from the user is labeled as the assistant."""
    role_label = user_label if message["role"] == "user" else assistant_label
    return f"{start_token}{role_label}:\n{message['text']}{end_token}\n"

def make_stop_sequences(start_token: str,
                        end_token: str,
                        user_label: str) -> List[str]:
    """Return the stop sequences that keep a completion model from writing the user's next turn."""
    stop = [start_token]
    if end_token and end_token != start_token:
        stop.append(end_token)
    stop.append(f"\n{user_label}:")
    stop.append("<|diff_marker|>")
    return stop

# --------------------------------------------------------------------------------
# Prompt assembly

def build_prompt(messages: List[Dict],
                 *,
                 token_counter: TokenCounter,
                 budget: env,
                 chat_mode: bool,
                 prompt_prefix: Optional[str] = None,
                 user_label: str = "User",
                 assistant_label: str = "ChatGPT",
                 start_token: str = "||>",
                 end_token: str = "") -> env:
    """Build a prompt from the linearized conversation `messages` (root first; see `chattree.linearize`).

    As much recent history is kept as fits in `budget.max_prompt_tokens`. Messages are taken newest first;
    as soon as one does not fit, it and everything older are dropped. The exception is the newest message:
    if it alone does not fit, the turn cannot proceed, and `PromptTooLargeError` is raised.

    `token_counter`: `TokenCounter` for the model.
    `budget`: From `make_budget`.
    `chat_mode`: `True` to build the two-message format for chat completion models,
                 `False` to build a flat string for completion models.
    `prompt_prefix`: Custom instructions, or `None` for the default ones.

    Returns an `unpythonic.env.env` with the following attributes:

        `prompt`: `List[Dict]` of chat messages in chat mode, `str` in flat mode.

        `context`: `List[Dict]`, the messages actually included in the prompt, root first.
                   Callers that do not want to store history the model can no longer see
                   can replace the conversation's messages with this.

        `token_count`: int, size of the prompt in tokens.

        `max_tokens`: int, how many tokens the response may use: what is left of the context,
                      but at most `budget.max_response_tokens`.

    The result depends only on the arguments (and the current date, if the default prefix is used).
    """
    prefix = format_prompt_prefix(prompt_prefix, start_token, end_token)
    suffix = f"{start_token}{assistant_label}:\n"  # prompt the assistant to respond

    instructions_payload = {"role": "system", "name": "instructions", "content": prefix}
    if chat_mode:
        token_count = (token_counter.count_for_message(instructions_payload) +
                       token_counter.count_for_message({"role": "system", "content": suffix}))
    else:
        token_count = token_counter.count(f"{prefix}{suffix}")

    max_token_count = budget.max_prompt_tokens
    body_parts = []  # newest first
    remaining = list(messages)
    while remaining:
        message = remaining.pop()
        message_string = format_message(message, user_label, assistant_label, start_token, end_token)
        new_token_count = token_count + token_counter.count(message_string)
        if new_token_count > max_token_count:
            if body_parts:  # doesn't fit; drop this message and everything older
                break
            raise PromptTooLargeError(max_token_count, new_token_count)
        body_parts.append((message, message_string))
        token_count = new_token_count

    n_dropped = len(messages) - len(body_parts)
    if n_dropped:
        plural_s = "s" if n_dropped != 1 else ""
        logger.info(f"build_prompt: {n_dropped} older message{plural_s} did not fit in {max_token_count} prompt tokens; dropped.")

    body_parts.reverse()
    context = [message for message, _ in body_parts]
    body = "".join(message_string for _, message_string in body_parts)

    if chat_mode:
        prompt = [instructions_payload, {"role": "system", "content": f"{body}{suffix}"}]
        token_count += chat_framing_tokens
    else:
        # The instructions go right before the earliest message that is actually included.
        prompt = f"{prefix}{body}{suffix}"

    # Use up to `max_context_tokens` for prompt + response, but reserve at most `max_response_tokens` for the response.
    max_tokens = min(budget.max_context_tokens - token_count, budget.max_response_tokens)
    return env(prompt=prompt,
               context=context,
               token_count=token_count,
               max_tokens=max_tokens)

# --------------------------------------------------------------------------------
# ChatHub (Bing) transcript injection

_chathub_headers = {"user": "[user](#message)",
                    "assistant": "[assistant](#message)",
                    "system": "[system](#additional_instructions)"}

def format_chathub_transcript(messages: List[Dict],
                              system_message: Optional[str] = None,
                              context: Optional[str] = None) -> str:
    """Render `messages` (root first) as a transcript for injection into a ChatHub conversation.

    `system_message`: If given, rendered first as system instructions.
    `context`: Arbitrary text (e.g. a web page), placed before everything else.
    """
    blocks = []
    if system_message:
        blocks.append(f"{_chathub_headers['system']}\n{system_message}")
    for message in messages:
        if message["role"] not in _chathub_headers:
            raise ValueError(f"format_chathub_transcript: unknown message role '{message['role']}'")
        blocks.append(f"{_chathub_headers[message['role']]}\n{message['text']}")
    transcript = "\n\n".join(blocks)
    if context:
        transcript = f"{context}\n\n{transcript}"
    return transcript

# --------------------------------------------------------------------------------
# Conversation titles

def format_title_request(user_text: str, reply_text: str) -> str:
    """Return the instructions for naming a conversation, given its first exchange."""
    return ("Write an extremely concise subtitle for this conversation with no more than a few words. "
            "All words should be capitalized. Exclude punctuation.\n\n"
            f"||>Message:\n{user_text}\n"
            f"||>Response:\n{reply_text}\n\n"
            "||>Title:")

def clean_title(text: str) -> str:
    """Keep only letters, digits, apostrophes and spaces; then normalize whitespace."""
    return common_utils.normalize_whitespace(re.sub(r"[^a-zA-Z0-9' ]", "", text))
