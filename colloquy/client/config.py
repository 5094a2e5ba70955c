"""Configuration for the colloquy chat client.

Used by `client.llmclient`, `client.transport` and `client.minichat`.

The per-backend dicts below are the defaults for the keyword options of the corresponding
client classes in `client.llmclient`. Anything passed to the constructor overrides these,
and anything passed as `client_options` to `send_message` overrides both, for that call only.
"""

from .. import config as global_config

client_userdata_dir = global_config.userdata_dir / "client"

# Persistent conversation store (JSON), used by `minichat`. Each backend gets its own namespace in it.
conversation_store_file = client_userdata_dir / "conversations.json"

# Will be used if it exists, ignored if not. Plain text, the key only.
api_key_file = client_userdata_dir / "api_key.txt"

# --------------------------------------------------------------------------------
# Streaming

# Seconds of inactivity (no data from the backend) after which a streaming request is abandoned.
response_timeout = 300

# Seconds to wait for the TCP/TLS connection itself.
connect_timeout = 30

# The ChatHub WebSocket backend drops idle connections unless pinged.
chathub_ping_interval = 15  # seconds

# Substituted as the reply when the moderation filter interrupts a reply before any text was generated.
moderation_fallback_text = "[Error: The moderation filter triggered. Try again with different wording.]"

# --------------------------------------------------------------------------------
# Backends

chatgpt_defaults = {
    "model": "gpt-3.5-turbo",
    "temperature": 0.8,
    "top_p": 1,
    "presence_penalty": 1,
    "stop": None,  # `None` = generate from the prompt tokens and labels, see `chatutil.make_stop_sequences`.
    "max_context_tokens": None,  # `None` = 4095 for chat models, 4097 for completion models (Davinci).
    "max_response_tokens": 1024,
    "max_prompt_tokens": None,  # `None` = `max_context_tokens - max_response_tokens`.
    "user_label": "User",
    "assistant_label": "ChatGPT",
    "prompt_prefix": None,  # `None` = default instructions, including the current date.
    "completions_url": "https://api.openai.com/v1/completions",
    "chat_completions_url": "https://api.openai.com/v1/chat/completions",
    "reverse_proxy_url": None,  # If set, overrides both URLs above.
    "azure": False,  # Send the key as `api-key` instead of a bearer token (only with `reverse_proxy_url`).
    "headers": None,  # Extra HTTP headers.
    "proxy": None,
    "response_timeout": None,  # Seconds without reply data before the turn fails. `None` = `response_timeout` above.
    "keep_necessary_messages_only": False,  # Drop history that no longer fits in the prompt from the stored conversation.
    "return_conversation": False,
    "debug": False,
}

# One-shot completion used for naming a new conversation after its first turn.
title_generation_defaults = {
    "model": "gpt-3.5-turbo",
    "temperature": 0,
    "presence_penalty": 0,
    "frequency_penalty": 0,
}

chatgpt_browser_defaults = {
    "model": "text-davinci-002-render-sha",
    "reverse_proxy_url": "https://bypass.churchless.tech/api/conversation",
    "access_token": None,
    "cookies": None,
    "headers": None,
    "proxy": None,
    "response_timeout": None,
    "debug": False,
}

bing_defaults = {
    "host": "https://www.bing.com",
    "chathub_url": "wss://sydney.bing.com/sydney/ChatHub",
    "user_token": None,  # The `_U` cookie.
    "cookies": None,  # Full cookie header; overrides `user_token`.
    "proxy": None,
    "tone_style": "balanced",  # "balanced", "creative", "precise", "fast"
    "response_timeout": None,
    "system_message": ("You're an AI assistant named Sydney. Instead of introducing yourself as Bing, "
                       "you introduce yourself as Sydney. You write in a casual, friendly tone. "
                       "Answer using the same language as the user."),
    "debug": False,
}
