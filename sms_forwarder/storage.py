import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Iterable, Optional, Tuple, Union

from pydantic import ValidationError

from sms_forwarder.errors import InvalidInputError, NotFoundError, PersistenceError
from sms_forwarder.metrics import record_persistence_failure
from sms_forwarder.schemas import MessageRecord
from sms_forwarder.utils import truncate_token

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


# =============================================================================
# Backing File Helpers
# =============================================================================

def read_json_collection(path: PathLike) -> Optional[list]:
    """
    Read a persisted collection.

    Returns:
        The stored list, or None if the file is absent, unreadable, not valid
        JSON, or does not hold a list.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No existing file at {path}, starting fresh")
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {path}, starting fresh: {e}")
        return None
    if not isinstance(data, list):
        logger.warning(f"Unexpected content in {path} ({type(data).__name__}), starting fresh")
        return None
    return data


def write_json_collection(path: PathLike, items: list) -> None:
    """
    Persist the whole collection, replacing the file atomically.

    The data is written to a temporary file in the same directory, flushed to
    disk, then renamed over the target so the next start sees either the old
    or the new collection, never a partial one.

    Raises:
        PersistenceError: if any step fails
    """
    path = Path(path)
    directory = path.parent
    tmp_path = None
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(items, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e
    finally:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                logger.debug(f"Could not remove temporary file {tmp_path}")


class _JsonFileBacked:
    """
    Shared load/flush lifecycle for a collection mirrored to one JSON file.

    Mutations take the lock, change the in-memory collection, then flush the
    whole collection. A failed flush is logged and counted; the in-memory
    state stays authoritative for the rest of the process lifetime.
    """

    store_name = "collection"

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self.loaded = False
        self._lock = asyncio.Lock()

    def _serialize(self) -> list:
        raise NotImplementedError

    async def _flush(self) -> bool:
        items = self._serialize()
        try:
            await asyncio.to_thread(write_json_collection, self.path, items)
        except PersistenceError as e:
            logger.error(f"Error saving {self.store_name}: {e}")
            record_persistence_failure(self.store_name)
            return False
        logger.debug(f"Saved {len(items)} {self.store_name} to {self.path}")
        return True


# =============================================================================
# Message Store
# =============================================================================

class MessageStore(_JsonFileBacked):
    """
    Durable, most-recent-first collection of inbound SMS records.

    Records are only changed through append, mark_read and mark_replied.
    Readers get copies, so a later mutation never shows through a list they
    already hold.
    """

    store_name = "messages"

    def __init__(self, path: PathLike):
        super().__init__(path)
        self._messages: list[MessageRecord] = []

    def load_or_init(self) -> int:
        """
        Load persisted messages. Missing or corrupt state means no history yet.

        Returns:
            Number of messages loaded
        """
        data = read_json_collection(self.path)
        messages: list[MessageRecord] = []
        if data is not None:
            try:
                messages = [MessageRecord.model_validate(item) for item in data]
            except ValidationError as e:
                logger.warning(f"Invalid message records in {self.path}, starting fresh: {e.error_count()} errors")
                messages = []
        self._messages = messages
        self.loaded = True
        logger.info(f"Message store loaded: {len(self._messages)} messages")
        return len(self._messages)

    def _serialize(self) -> list:
        return [m.model_dump(by_alias=True) for m in self._messages]

    def _find(self, message_id: str) -> MessageRecord:
        for message in self._messages:
            if message.id == message_id:
                return message
        raise NotFoundError("Message", message_id)

    async def append(self, record: MessageRecord) -> MessageRecord:
        """
        Insert a record at the head and persist.

        Duplicate ids are not checked; a redelivered callback is stored again.
        """
        async with self._lock:
            stored = record.model_copy()
            self._messages.insert(0, stored)
            await self._flush()
        logger.info(f"Message stored: id={stored.id}, from={stored.from_number}")
        return stored.model_copy()

    async def mark_read(self, message_id: str) -> MessageRecord:
        """
        Raises:
            NotFoundError: if no message has this id
        """
        async with self._lock:
            message = self._find(message_id)
            message.read = True
            await self._flush()
            return message.model_copy()

    async def mark_replied(self, message_id: str) -> MessageRecord:
        """
        Mark a message replied, which also marks it read.

        Raises:
            NotFoundError: if no message has this id
        """
        async with self._lock:
            message = self._find(message_id)
            message.replied = True
            message.read = True
            await self._flush()
            return message.model_copy()

    def all(self) -> list[MessageRecord]:
        """Snapshot of all messages, most recent first."""
        return [m.model_copy() for m in self._messages]

    def counts(self) -> Tuple[int, int]:
        """
        Returns:
            Tuple of (total, unread)
        """
        unread = sum(1 for m in self._messages if not m.read)
        return len(self._messages), unread

    def __len__(self) -> int:
        return len(self._messages)


# =============================================================================
# Device Token Registry
# =============================================================================

class DeviceTokenRegistry(_JsonFileBacked):
    """Durable set of push tokens, kept in registration order."""

    store_name = "push_tokens"

    def __init__(self, path: PathLike):
        super().__init__(path)
        self._tokens: list[str] = []

    def load_or_init(self) -> int:
        data = read_json_collection(self.path)
        tokens: list[str] = []
        for item in data or []:
            if isinstance(item, str) and item and item not in tokens:
                tokens.append(item)
        if data is not None and len(tokens) != len(data):
            logger.warning(f"Dropped {len(data) - len(tokens)} invalid or duplicate push tokens from {self.path}")
        self._tokens = tokens
        self.loaded = True
        logger.info(f"Push token registry loaded: {len(self._tokens)} tokens")
        return len(self._tokens)

    def _serialize(self) -> list:
        return list(self._tokens)

    async def register(self, token: Any) -> bool:
        """
        Register a push token. Registering a known token is a no-op.

        Returns:
            True if the token was added, False if it was already registered

        Raises:
            InvalidInputError: if the token is missing or blank
        """
        if not isinstance(token, str) or not token.strip():
            raise InvalidInputError("Push token is required")
        async with self._lock:
            if token in self._tokens:
                logger.debug(f"Push token already registered: {truncate_token(token)}")
                return False
            self._tokens.append(token)
            await self._flush()
        logger.info(f"Push token registered: {truncate_token(token)}")
        return True

    async def remove(self, token: str) -> bool:
        return await self.remove_many([token]) == 1

    async def remove_many(self, tokens: Iterable[str]) -> int:
        """
        Remove every listed token that is registered, with a single flush.

        Returns:
            Number of tokens removed
        """
        doomed = set(tokens)
        async with self._lock:
            kept = [t for t in self._tokens if t not in doomed]
            removed = len(self._tokens) - len(kept)
            if removed == 0:
                return 0
            self._tokens = kept
            await self._flush()
        logger.info(f"Removed {removed} push tokens, {len(kept)} remaining")
        return removed

    def snapshot(self) -> list[str]:
        return list(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, token: object) -> bool:
        return token in self._tokens
