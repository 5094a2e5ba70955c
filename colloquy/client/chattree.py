"""Conversation records, and the message graph inside them.

A conversation stores its messages as a flat, append-only list, where each message links to its
parent by ID. Several messages may share a parent, so a conversation may branch; starting from any
message, the branch up to that point is obtained by walking up the parent chain (`linearize`).

For easy JSON-ability, messages and conversations are plain dicts:

    message = {"id": str,                         # unique ID of this message
               "parent_message_id": Optional[str],  # or `None` for a root message
               "role": str,                       # one of "user", "assistant", "system"
               "text": str,
               "details": Any}                    # optional; raw backend data for an assistant message

    conversation = {"messages": [message, ...],   # in creation order, not necessarily in parent order
                    "created_at": int,            # nanoseconds since epoch
                    "title": str}                 # optional; set when the backend generates one
"""

__all__ = ["roles",
           "make_id",
           "create_message", "create_conversation",
           "linearize",
           "MessageGraph"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import collections
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional

roles = ("user", "assistant", "system")

def make_id() -> str:
    """Return a new opaque ID for a message or a conversation.

    UUID4 strings, because some backends validate the format of the IDs we send them.
    """
    return str(uuid.uuid4())

def create_message(role: str,
                   text: str,
                   parent_message_id: Optional[str],
                   message_id: Optional[str] = None,
                   details: Any = None) -> Dict:
    """Create a new message record.

    `role`: One of "user", "assistant", "system".

    `parent_message_id`: ID of the message this one replies to, or `None` for a root message.
                         The parent does not need to exist in the conversation; a dangling
                         parent link just ends the linearized branch there.

    `message_id`: If `None` (default), a new ID is generated. Backends that assign their
                  own message IDs pass them here.

    `details`: Optional raw backend data, e.g. the final event of the stream that produced the message.
    """
    if role not in roles:
        raise ValueError(f"Unknown role '{role}'; valid: one of {', '.join(repr(r) for r in roles)}.")
    message = {"id": message_id if message_id is not None else make_id(),
               "parent_message_id": parent_message_id,
               "role": role,
               "text": text}
    if details is not None:
        message["details"] = details
    return message

def create_conversation() -> Dict:
    """Create a new, empty conversation record."""
    return {"messages": [],
            "created_at": time.time_ns()}

def linearize(messages: Iterable[Dict], leaf_id: Optional[str]) -> List[Dict]:
    """Walking up from `leaf_id`, return the branch ending at that message, root first.

    The walk stops when a message has no parent, or when the parent is not found in `messages`.
    A broken chain is not an error; the result is then the part of the branch below the break.

    If `leaf_id` itself is `None` or not found, the result is empty.
    """
    return MessageGraph(messages).linearize(leaf_id)

class MessageGraph:
    def __init__(self, messages: Iterable[Dict]):
        """Indexed view of the messages of one conversation.

        `messages`: The conversation's message list. Appending through `append` updates both
                    the list (if it is a list) and the index.

        Lookups by ID are O(1), so linearizing a branch is O(depth).

        If the same ID occurs more than once, the first occurrence wins, as in a linear scan.
        """
        self.messages = messages if isinstance(messages, list) else list(messages)
        self.index = {}
        self.children = collections.defaultdict(list)
        for message in self.messages:
            self._index(message)

    def _index(self, message: Dict) -> None:
        if message["id"] not in self.index:
            self.index[message["id"]] = message
        self.children[message["parent_message_id"]].append(message["id"])

    def append(self, message: Dict) -> Dict:
        """Add `message` to the conversation. Returns `message`, for convenience."""
        self.messages.append(message)
        self._index(message)
        return message

    def get_message(self, message_id: str) -> Optional[Dict]:
        """Return the message with ID `message_id`, or `None` if there is no such message."""
        return self.index.get(message_id, None)

    def get_children(self, message_id: str) -> List[str]:
        """Return the IDs of the replies to `message_id`, in creation order. Several replies = a branch point."""
        return list(self.children.get(message_id, []))

    def get_root_ids(self) -> List[str]:
        """Return the IDs of messages whose parent is `None` or missing from the conversation."""
        return [message["id"] for message in self.messages
                if message["parent_message_id"] is None or message["parent_message_id"] not in self.index]

    def get_leaf_ids(self) -> List[str]:
        """Return the IDs of messages that have no replies, i.e. the tips of all branches."""
        return [message["id"] for message in self.messages if not self.children.get(message["id"])]

    def linearize(self, leaf_id: Optional[str]) -> List[Dict]:
        """Like the module-level `linearize`, but using the index."""
        linearized_history = collections.deque()
        seen = set()
        message_id = leaf_id
        while message_id is not None:
            if message_id in seen:  # a cycle can only come from a hand-edited store, but let's not hang on one
                logger.warning(f"MessageGraph.linearize: parent chain of '{leaf_id}' loops back to '{message_id}'; stopping there.")
                break
            seen.add(message_id)
            message = self.index.get(message_id, None)
            if message is None:
                break
            linearized_history.appendleft(message)
            message_id = message["parent_message_id"]
        return list(linearized_history)
