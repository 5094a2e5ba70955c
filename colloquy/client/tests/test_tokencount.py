"""Unit tests for colloquy.client.tokencount.

The tokenizer is replaced by whitespace splitting (one word = one token), so that the
accounting rules can be tested without tiktoken's data files.
"""

import pytest

from colloquy.client import tokencount
from colloquy.client.tokencount import TokenCounter


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def counter():
    return TokenCounter("gpt-3.5-turbo", encode=str.split)


@pytest.fixture
def encoder_requests(monkeypatch):
    """Record which encodings `TokenCounter` asks for, without loading any."""
    requests = []
    class FakeEncoding:
        def encode(self, text, allowed_special=()):
            return text.split()
    def fake_get_encoding(name, is_model_name=False, extra_special_tokens=()):
        requests.append((name, is_model_name, extra_special_tokens))
        if is_model_name and name == "unknown-model":
            raise KeyError(name)
        return FakeEncoding()
    monkeypatch.setattr(tokencount, "get_encoding", fake_get_encoding)
    return requests


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------

class TestCount:
    def test_text(self, counter):
        assert counter.count("one two three") == 3
        assert counter.count("") == 0

    def test_message(self, counter):
        # 3 per message, plus each field's tokens.
        assert counter.count_for_message({"role": "system", "content": "be brief"}) == 3 + 1 + 2

    def test_message_with_name(self, counter):
        # A field named "name" costs one extra token.
        message = {"role": "system", "name": "instructions", "content": "be brief"}
        assert counter.count_for_message(message) == 3 + 1 + (1 + 1) + 2

    def test_old_snapshot_accounting(self):
        counter = TokenCounter("gpt-3.5-turbo-0301", encode=str.split)
        message = {"role": "system", "name": "instructions", "content": "be brief"}
        assert counter.count_for_message(message) == 4 + 1 + (1 - 1) + 2


# ---------------------------------------------------------------------------
# Encoding selection
# ---------------------------------------------------------------------------

class TestEncodingSelection:
    def test_chat_models(self, encoder_requests):
        counter = TokenCounter("gpt-4")
        assert encoder_requests == [("cl100k_base", False, ())]
        assert counter.count("a b") == 2

    def test_unofficial_chat_models_get_chatml_tokens(self, encoder_requests):
        TokenCounter("text-davinci-002-render-sha")
        TokenCounter("text-chat-davinci-002-20221122")
        for name, is_model_name, extra_special_tokens in encoder_requests:
            assert name == tokencount.fallback_encoding_name
            assert dict(extra_special_tokens) == {"<|im_start|>": 100264, "<|im_end|>": 100265}

    def test_by_model_name(self, encoder_requests):
        TokenCounter("text-davinci-003")
        assert encoder_requests == [("text-davinci-003", True, ())]

    def test_unknown_model_falls_back(self, encoder_requests):
        TokenCounter("unknown-model")
        assert encoder_requests == [("unknown-model", True, ()),
                                    (tokencount.fallback_encoding_name, False, ())]
