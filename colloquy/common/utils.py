"""Miscellaneous general utilities."""

__all__ = ["create_directory",
           "normalize_whitespace"]

import pathlib
from typing import Union

# --------------------------------------------------------------------------------
# File utilities

def create_directory(path: Union[str, pathlib.Path]) -> None:
    p = pathlib.Path(path).expanduser().resolve()
    pathlib.Path.mkdir(p, parents=True, exist_ok=True)

# --------------------------------------------------------------------------------
# String utilities

def normalize_whitespace(s: str) -> str:
    """Normalize whitespace in a string, by replacing any consecutive whitespace by a single space.
    """
    # https://stackoverflow.com/questions/46501292/normalize-whitespace-with-python
    return " ".join(s.strip().split())
