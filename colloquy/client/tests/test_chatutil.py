"""Unit tests for colloquy.client.chatutil (token budget, prompt building, transcript formats).

Token counts use whitespace splitting (one word = one token); see `test_tokencount`.
"""

import datetime

import pytest

from colloquy.client import chattree, chatutil
from colloquy.client.errors import ConfigurationError, PromptTooLargeError
from colloquy.client.tokencount import TokenCounter


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def counter():
    return TokenCounter("gpt-3.5-turbo", encode=str.split)


@pytest.fixture
def budget():
    return chatutil.make_budget(max_context_tokens=100, max_response_tokens=20, max_prompt_tokens=50)


def make_history(n_messages, words_per_message=14):
    """A linear conversation of `n_messages`, alternating user/assistant, starting with the user.

    With the default labels and no end token, each rendered message costs `words_per_message + 1` tokens
    (the "||>User:" / "||>ChatGPT:" label is one word).
    """
    messages = []
    parent = None
    for k in range(n_messages):
        role = "user" if k % 2 == 0 else "assistant"
        text = " ".join(f"w{k}_{j}" for j in range(words_per_message))
        message = chattree.create_message(role, text, parent, message_id=f"m{k}")
        messages.append(message)
        parent = message["id"]
    return messages


def build(messages, counter, budget, chat_mode, prompt_prefix="Be brief."):
    return chatutil.build_prompt(messages,
                                 token_counter=counter,
                                 budget=budget,
                                 chat_mode=chat_mode,
                                 prompt_prefix=prompt_prefix)


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

class TestMakeBudget:
    def test_default_prompt_size(self):
        budget = chatutil.make_budget(4095, 1024)
        assert budget.max_prompt_tokens == 4095 - 1024

    def test_explicit(self):
        budget = chatutil.make_budget(100, 20, 50)
        assert (budget.max_context_tokens, budget.max_response_tokens, budget.max_prompt_tokens) == (100, 20, 50)

    def test_overcommitted_raises(self):
        with pytest.raises(ConfigurationError):
            chatutil.make_budget(100, 20, 90)

    @pytest.mark.parametrize("args", [(100, 0), (0, 20), (100, 20, -5), (100, 150)])
    def test_non_positive_raises(self, args):
        with pytest.raises(ConfigurationError):
            chatutil.make_budget(*args)


# ---------------------------------------------------------------------------
# Prompt pieces
# ---------------------------------------------------------------------------

class TestFormatCurrentDate:
    def test_format(self):
        assert chatutil.format_current_date(datetime.date(2026, 10, 19)) == "October 19, 2026"
        assert chatutil.format_current_date(datetime.date(2023, 1, 5)) == "January 5, 2023"


class TestFormatPromptPrefix:
    def test_custom(self):
        assert chatutil.format_prompt_prefix("Be brief.", "||>", "") == "||>Instructions:\nBe brief.\n\n"

    def test_custom_with_end_token(self):
        prefix = chatutil.format_prompt_prefix("Be brief.", "<|im_start|>", "<|im_end|>")
        assert prefix == "<|im_start|>Instructions:\nBe brief.<|im_end|>\n\n"

    def test_end_token_not_repeated(self):
        prefix = chatutil.format_prompt_prefix("Be brief.<|im_end|>", "<|im_start|>", "<|im_end|>")
        assert prefix == "<|im_start|>Instructions:\nBe brief.<|im_end|>"

    @pytest.mark.parametrize("prompt_prefix", [None, "", "   "])
    def test_default(self, prompt_prefix):
        prefix = chatutil.format_prompt_prefix(prompt_prefix, "||>", "")
        assert prefix.startswith("||>Instructions:\nYou are ChatGPT, a large language model trained by OpenAI.")
        assert f"Current date: {chatutil.format_current_date()}" in prefix


class TestFormatMessage:
    def test_labels(self):
        user = chattree.create_message("user", "Hello!", None)
        assistant = chattree.create_message("assistant", "Hi!", None)
        assert chatutil.format_message(user, "User", "ChatGPT", "||>", "") == "||>User:\nHello!\n"
        assert chatutil.format_message(assistant, "User", "ChatGPT", "<|im_start|>", "<|im_end|>") == "<|im_start|>ChatGPT:\nHi!<|im_end|>\n"


class TestMakeStopSequences:
    def test_plain(self):
        assert chatutil.make_stop_sequences("||>", "", "User") == ["||>", "\nUser:", "<|diff_marker|>"]

    def test_chatml(self):
        stop = chatutil.make_stop_sequences("<|im_start|>", "<|im_end|>", "User")
        assert stop == ["<|im_start|>", "<|im_end|>", "\nUser:", "<|diff_marker|>"]


# ---------------------------------------------------------------------------
# Prompt assembly
# ---------------------------------------------------------------------------

class TestBuildPromptFlat:
    def test_truncates_to_three_most_recent(self, counter, budget):
        messages = make_history(10)
        prompt = build(messages, counter, budget, chat_mode=False)
        # prefix + suffix = 4 tokens; 3 messages * 15 = 45; a 4th would make 64 > 50.
        assert [message["id"] for message in prompt.context] == ["m7", "m8", "m9"]
        assert prompt.token_count == 49
        assert prompt.max_tokens == 20

    def test_prefix_right_before_earliest_included_message(self, counter, budget):
        messages = make_history(10)
        prompt = build(messages, counter, budget, chat_mode=False)
        assert prompt.prompt.startswith("||>Instructions:\nBe brief.\n\n||>ChatGPT:\nw7_0 ")
        assert prompt.prompt.endswith("w9_13\n||>ChatGPT:\n")

    def test_no_unnecessary_truncation(self, counter, budget):
        messages = make_history(3)
        prompt = build(messages, counter, budget, chat_mode=False)
        assert prompt.context == messages

    def test_newest_message_too_large_raises(self, counter, budget):
        messages = make_history(3)
        messages.append(chattree.create_message("user", " ".join(["word"] * 60), "m2", message_id="huge"))
        with pytest.raises(PromptTooLargeError) as excinfo:
            build(messages, counter, budget, chat_mode=False)
        assert excinfo.value.max_tokens == 50
        assert excinfo.value.token_count == 4 + 61
        assert excinfo.value.overflow == 15

    def test_prefix_alone_fills_budget(self, counter):
        budget = chatutil.make_budget(max_context_tokens=100, max_response_tokens=20, max_prompt_tokens=4)
        messages = [chattree.create_message("user", " ".join(["word"] * 60), None, message_id="only")]
        with pytest.raises(PromptTooLargeError) as excinfo:
            build(messages, counter, budget, chat_mode=False)  # prefix + suffix = 4 tokens
        assert excinfo.value.max_tokens == 4
        assert excinfo.value.token_count == 4 + 61

    def test_max_tokens_at_most_max_response_tokens(self, counter):
        budget = chatutil.make_budget(max_context_tokens=50, max_response_tokens=20, max_prompt_tokens=30)
        prompt = build(make_history(2), counter, budget, chat_mode=False)
        assert prompt.token_count == 19
        assert prompt.max_tokens == 20  # 50 - 19 = 31, but at most 20

    def test_deterministic(self, counter, budget):
        messages = make_history(10)
        assert build(messages, counter, budget, chat_mode=False).prompt == build(messages, counter, budget, chat_mode=False).prompt


class TestBuildPromptChat:
    def test_structure(self, counter, budget):
        messages = make_history(1)
        prompt = build(messages, counter, budget, chat_mode=True)
        instructions, transcript = prompt.prompt
        assert instructions == {"role": "system", "name": "instructions", "content": "||>Instructions:\nBe brief.\n\n"}
        assert transcript["role"] == "system"
        assert transcript["content"].startswith("||>User:\nw0_0 ")
        assert transcript["content"].endswith("\n||>ChatGPT:\n")

    def test_truncation_and_framing_cost(self, counter, budget):
        messages = make_history(10)
        prompt = build(messages, counter, budget, chat_mode=True)
        # instructions payload: 3 + role 1 + name (1 + 1) + prefix 3 = 9; suffix payload: 3 + 1 + 1 = 5.
        # 14 + 2 * 15 = 44; a 3rd message would make 59 > 50. Framing adds 2 at the end.
        assert [message["id"] for message in prompt.context] == ["m8", "m9"]
        assert prompt.token_count == 46
        assert prompt.max_tokens == 20

    def test_deterministic(self, counter, budget):
        messages = make_history(10)
        assert build(messages, counter, budget, chat_mode=True).prompt == build(messages, counter, budget, chat_mode=True).prompt


# ---------------------------------------------------------------------------
# ChatHub transcripts and titles
# ---------------------------------------------------------------------------

class TestFormatChathubTranscript:
    @pytest.fixture
    def messages(self):
        return [chattree.create_message("user", "Hi", None, message_id="u1"),
                chattree.create_message("assistant", "Hello", "u1", message_id="a1")]

    def test_with_system_message(self, messages):
        transcript = chatutil.format_chathub_transcript(messages, system_message="Be Sydney.")
        assert transcript == ("[system](#additional_instructions)\nBe Sydney.\n\n"
                              "[user](#message)\nHi\n\n"
                              "[assistant](#message)\nHello")

    def test_context_goes_first(self, messages):
        transcript = chatutil.format_chathub_transcript(messages, context="Some web page.")
        assert transcript.startswith("Some web page.\n\n[user](#message)\nHi")


class TestTitles:
    def test_request_mentions_both_messages(self):
        request = chatutil.format_title_request("What is Python?", "A programming language.")
        assert "||>Message:\nWhat is Python?\n" in request
        assert "||>Response:\nA programming language.\n" in request
        assert request.endswith("||>Title:")

    @pytest.mark.parametrize("raw, cleaned", [("Greetings, Earthling!  ", "Greetings Earthling"),
                                              ('"Python\'s   Zen"\n', "Python's Zen"),
                                              ("...", "")])
    def test_clean_title(self, raw, cleaned):
        assert chatutil.clean_title(raw) == cleaned
