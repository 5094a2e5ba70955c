"""Key-value store for conversation records, with optional persistence (as JSON).

Each backend uses its own namespace, so several backends can share one physical store
without key collisions::

    store = PersistentConversationStore(path)
    chatgpt_conversations = store.namespace("chatgpt")
    bing_conversations = store.namespace("bing")

Concurrency: `get` and `set` are atomic, but there is no read-modify-write protection across them.
Two turns running concurrently on the same conversation key may lose an update (last writer wins).
Turns on different keys are safe.
"""

__all__ = ["ConversationStore", "PersistentConversationStore"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import atexit
import copy
import json
import pathlib
import threading
from typing import Dict, List, Optional, Union

from ..common import utils as common_utils

class ConversationStore:
    def __init__(self):
        """In-memory conversation store.

        Records are deep-copied both on the way in and on the way out, so a caller
        holding a record never aliases what is in the store.

        For a persistent version, see `PersistentConversationStore`.
        """
        self.records = {}
        self.lock = threading.RLock()

    def get(self, key: str) -> Optional[Dict]:
        """Return a copy of the conversation stored at `key`, or `None` if absent."""
        with self.lock:
            record = self.records.get(key, None)
            return copy.deepcopy(record) if record is not None else None

    def set(self, key: str, conversation: Dict) -> None:
        """Store a copy of `conversation` at `key`, replacing any existing record."""
        with self.lock:
            self.records[key] = copy.deepcopy(conversation)
            self._changed()

    def delete(self, key: str) -> None:
        """Delete the conversation stored at `key`, if any."""
        with self.lock:
            if self.records.pop(key, None) is not None:
                self._changed()

    def keys(self) -> List[str]:
        with self.lock:
            return list(self.records.keys())

    def clear(self) -> None:
        """Delete all conversations."""
        with self.lock:
            self.records.clear()
            self._changed()

    def namespace(self, name: str) -> "NamespacedStore":
        """Return a view of this store where all keys live under the prefix `name`."""
        return NamespacedStore(self, name)

    def _changed(self) -> None:
        """Hook: called (with the lock held) after every mutation."""

class NamespacedStore:
    def __init__(self, store: ConversationStore, name: str):
        """A namespace inside `store`. Same API as `ConversationStore`.

        Keys are stored in the underlying store as "name:key". `clear` clears this namespace only.
        """
        self.store = store
        self.name = name
        self.prefix = f"{name}:"

    def get(self, key: str) -> Optional[Dict]:
        return self.store.get(f"{self.prefix}{key}")

    def set(self, key: str, conversation: Dict) -> None:
        self.store.set(f"{self.prefix}{key}", conversation)

    def delete(self, key: str) -> None:
        self.store.delete(f"{self.prefix}{key}")

    def keys(self) -> List[str]:
        return [key[len(self.prefix):] for key in self.store.keys() if key.startswith(self.prefix)]

    def clear(self) -> None:
        with self.store.lock:
            for key in self.keys():
                self.store.records.pop(f"{self.prefix}{key}")
            self.store._changed()

    def namespace(self, name: str) -> "NamespacedStore":
        return NamespacedStore(self.store, f"{self.prefix}{name}")

class PersistentConversationStore(ConversationStore):
    def __init__(self,
                 datastore_file: Union[str, pathlib.Path],
                 autosave: bool = True):
        """Exactly like `ConversationStore`, but with persistent storage as JSON.

        `datastore_file`: Where to store the data.

        `autosave`: If `True`, the file is rewritten after every change.
                    If `False`, it is written only at app exit (or when you call `save`).
        """
        super().__init__()
        self.datastore_file = pathlib.Path(datastore_file)
        self.autosave = autosave

        # Load persisted state, if any.
        self._load()

        # Persist at shutdown. Each mutation completes before it is visible, so whatever
        # the state is at shutdown, it is always safe to persist it.
        atexit.register(self.save)

    def _changed(self) -> None:
        if self.autosave:
            self.save()

    def save(self) -> None:
        """Save the store to its file, so that it can be reloaded later with `_load`."""
        with self.lock:
            absolute_path = self.datastore_file.expanduser().resolve()
            logger.debug(f"PersistentConversationStore.save: Saving datastore to '{str(self.datastore_file)}' (resolved to '{str(absolute_path)}').")

            common_utils.create_directory(absolute_path.parent)

            # Write-then-rename, so that a crash mid-write cannot destroy the previous version.
            tmp_path = absolute_path.with_name(f"{absolute_path.name}.tmp")
            with open(tmp_path, "w", encoding="utf-8") as json_file:
                json.dump(self.records, json_file, indent=2)
            tmp_path.replace(absolute_path)

    def _load(self) -> None:
        """Load the store from its file. Loading replaces the current in-memory contents.

        This is called automatically at instantiation time.
        """
        with self.lock:
            absolute_path = self.datastore_file.expanduser().resolve()
            logger.info(f"PersistentConversationStore._load: Loading datastore from '{str(self.datastore_file)}' (resolved to '{str(absolute_path)}').")

            try:
                with open(absolute_path, "r", encoding="utf-8") as json_file:
                    data = json.load(json_file)
            except FileNotFoundError:
                logger.info(f"PersistentConversationStore._load: No datastore at '{str(absolute_path)}' yet; will create one on first save.")
            except (OSError, ValueError) as exc:
                logger.warning(f"PersistentConversationStore._load: While loading datastore from '{str(absolute_path)}': {type(exc)}: {exc}")
                logger.info(f"PersistentConversationStore._load: Will create new datastore at '{str(absolute_path)}' on first save.")
            else:
                self.records.clear()
                self.records.update(data)
                plural_s = "s" if len(data) != 1 else ""
                logger.info(f"PersistentConversationStore._load: Datastore loaded successfully ({len(data)} conversation{plural_s}).")
