"""Token counting for prompt budgeting.

The counts follow OpenAI's accounting rules closely enough for budgeting purposes;
they are not guaranteed to match the backend's billing exactly.
"""

__all__ = ["get_encoding", "TokenCounter"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from typing import Callable, Dict, Optional, Sequence, Tuple

import tiktoken

from unpythonic import memoize

# Encoding used when the model name is not known to tiktoken.
fallback_encoding_name = "p50k_base"  # what "text-davinci-003" uses

# ChatML delimiters of the unofficial chat models. Not part of the public encodings.
chatml_special_tokens = (("<|im_start|>", 100264),
                         ("<|im_end|>", 100265))

@memoize
def get_encoding(name: str,
                 is_model_name: bool = False,
                 extra_special_tokens: Tuple[Tuple[str, int], ...] = ()) -> tiktoken.Encoding:
    """Return a tiktoken encoding. Cached, because building an encoding is expensive.

    `name`: Encoding name (e.g. "cl100k_base"), or a model name if `is_model_name=True`.

    `is_model_name`: If `True`, look up the encoding by model name. Raises `KeyError` if the model is unknown.

    `extra_special_tokens`: Additional special tokens as `((text, token_id), ...)`, to build a derived encoding.
                            A tuple, so that the arguments stay hashable for the cache.
    """
    if is_model_name:
        encoding = tiktoken.encoding_for_model(name)
    else:
        encoding = tiktoken.get_encoding(name)
    if not extra_special_tokens:
        return encoding
    # https://github.com/openai/tiktoken#extending-tiktoken
    return tiktoken.Encoding(name=f"{encoding.name}_extended",
                             pat_str=encoding._pat_str,
                             mergeable_ranks=encoding._mergeable_ranks,
                             special_tokens={**encoding._special_tokens,
                                             **dict(extra_special_tokens)})

def _make_encoder(model: str) -> Callable[[str], Sequence[int]]:
    if model.startswith("gpt-"):
        encoding = get_encoding("cl100k_base")
    elif model.startswith("text-chat") or model.startswith("text-davinci-002-render"):
        encoding = get_encoding(fallback_encoding_name, False, chatml_special_tokens)
    else:
        try:
            encoding = get_encoding(model, True)
        except KeyError:
            logger.info(f"TokenCounter: no tokenizer known for model '{model}', using '{fallback_encoding_name}'.")
            encoding = get_encoding(fallback_encoding_name)
    def encode(text: str) -> Sequence[int]:
        return encoding.encode(text, allowed_special="all")
    return encode

class TokenCounter:
    def __init__(self, model: str, encode: Optional[Callable[[str], Sequence[int]]] = None):
        """Count tokens in text and in structured chat messages, for `model`.

        `encode`: Optional. `str -> sequence of tokens`. If not given, a tiktoken encoder is chosen
                  based on `model`. Mainly useful for testing without the tokenizer data files.
        """
        self.model = model
        self.encode = encode if encode is not None else _make_encoder(model)

        # Per-message overhead of the chat format. The old snapshot counts the role/name framing differently.
        if model.startswith("gpt-3.5-turbo-0301"):
            self.tokens_per_message = 4  # every message follows <im_start>{role/name}\n{content}<im_end>\n
            self.tokens_per_name = -1  # if there's a name, the role is omitted
        else:
            self.tokens_per_message = 3
            self.tokens_per_name = 1

    def count(self, text: str) -> int:
        """Return the number of tokens in `text`. Special tokens are encoded as such."""
        return len(self.encode(text))

    def count_for_message(self, message: Dict[str, str]) -> int:
        """Return the number of tokens in a chat message `{"role": ..., "content": ..., "name": ...}`.

        Each field costs its token count; a field literally named "name" gets the model's name adjustment.
        The fixed framing overhead of the whole prompt (2 tokens) is NOT included here; see `chatutil.build_prompt`.
        """
        total = self.tokens_per_message
        for key, value in message.items():
            total += self.count(value)
            if key == "name":
                total += self.tokens_per_name
        return total
