"""
Tests for the message store and device token registry.

Tests cover:
- Most-recent-first ordering
- Read/replied flags and the replied-implies-read rule
- Not-found lookups leave the store unchanged
- Reload after restart sees every acknowledged mutation
- Missing and corrupt backing files
- Failed writes keep the in-memory mutation (log-and-continue)
- Idempotent token registration and removal
- Overlapping mutations are all persisted
"""

import asyncio
import json
import os
import random

import pytest

from sms_forwarder.errors import InvalidInputError, NotFoundError, PersistenceError
from sms_forwarder.schemas import MessageRecord
from sms_forwarder.storage import (
    DeviceTokenRegistry,
    MessageStore,
    read_json_collection,
    write_json_collection,
)


def make_record(message_id: str, body: str = "hi") -> MessageRecord:
    return MessageRecord(
        id=message_id,
        from_number="+15551234567",
        to="+15550001111",
        body=body,
        timestamp="2025-01-15T10:00:00.000Z",
    )


def find_message(store: MessageStore, message_id: str) -> MessageRecord:
    return next(m for m in store.all() if m.id == message_id)


@pytest.fixture
def store(tmp_path) -> MessageStore:
    store = MessageStore(tmp_path / "messages.json")
    store.load_or_init()
    return store


@pytest.fixture
def registry(tmp_path) -> DeviceTokenRegistry:
    registry = DeviceTokenRegistry(tmp_path / "push-tokens.json")
    registry.load_or_init()
    return registry


class TestMessageStoreOrdering:

    @pytest.mark.asyncio
    async def test_all_returns_reverse_insertion_order(self, store):
        for i in range(5):
            await store.append(make_record(f"SM{i}"))

        assert [m.id for m in store.all()] == ["SM4", "SM3", "SM2", "SM1", "SM0"]

    @pytest.mark.asyncio
    async def test_new_record_starts_unread(self, store):
        stored = await store.append(make_record("SM1"))

        assert stored.read is False
        assert stored.replied is False
        assert store.counts() == (1, 1)

    @pytest.mark.asyncio
    async def test_snapshot_is_not_affected_by_later_mutation(self, store):
        await store.append(make_record("SM1"))
        snapshot = store.all()

        await store.mark_read("SM1")
        await store.append(make_record("SM2"))

        assert len(snapshot) == 1
        assert snapshot[0].read is False

    @pytest.mark.asyncio
    async def test_duplicate_id_is_stored_again(self, store):
        """Redelivered callbacks are not deduplicated."""
        await store.append(make_record("SM1"))
        await store.append(make_record("SM1"))

        assert store.counts() == (2, 2)


class TestMessageStoreFlags:

    @pytest.mark.asyncio
    async def test_mark_read(self, store):
        await store.append(make_record("SM1"))

        updated = await store.mark_read("SM1")

        assert updated.read is True
        assert updated.replied is False
        assert store.counts() == (1, 0)

    @pytest.mark.asyncio
    async def test_mark_replied_implies_read(self, store):
        await store.append(make_record("SM1"))

        updated = await store.mark_replied("SM1")

        assert updated.replied is True
        assert updated.read is True

    @pytest.mark.asyncio
    async def test_read_then_replied(self, store):
        await store.append(make_record("SM1"))

        await store.mark_read("SM1")
        await store.mark_replied("SM1")

        message = find_message(store, "SM1")
        assert message.read is True
        assert message.replied is True

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, store):
        await store.append(make_record("SM1"))

        await store.mark_read("SM1")
        await store.mark_read("SM1")

        assert store.counts() == (1, 0)
        assert find_message(store, "SM1").replied is False

    @pytest.mark.asyncio
    async def test_only_target_message_changes(self, store):
        await store.append(make_record("SM1"))
        await store.append(make_record("SM2"))

        await store.mark_read("SM1")

        assert find_message(store, "SM1").read is True
        assert find_message(store, "SM2").read is False
        assert store.counts() == (2, 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["mark_read", "mark_replied"])
    async def test_unknown_id_raises_not_found(self, store, operation):
        await store.append(make_record("SM1"))
        before = [m.model_dump() for m in store.all()]

        with pytest.raises(NotFoundError):
            await getattr(store, operation)("SM-missing")

        assert [m.model_dump() for m in store.all()] == before
        assert store.counts() == (1, 1)


class TestMessageStorePersistence:

    @pytest.mark.asyncio
    async def test_restart_sees_appended_record(self, tmp_path, store):
        await store.append(make_record("SM1", body="persist me"))

        restarted = MessageStore(tmp_path / "messages.json")
        restarted.load_or_init()

        messages = restarted.all()
        assert len(messages) == 1
        assert messages[0].id == "SM1"
        assert messages[0].body == "persist me"

    @pytest.mark.asyncio
    async def test_restart_sees_flag_changes_and_order(self, tmp_path, store):
        await store.append(make_record("SM1"))
        await store.append(make_record("SM2"))
        await store.mark_replied("SM1")

        restarted = MessageStore(tmp_path / "messages.json")
        restarted.load_or_init()

        assert [m.id for m in restarted.all()] == ["SM2", "SM1"]
        assert find_message(restarted, "SM1").read is True
        assert find_message(restarted, "SM1").replied is True

    @pytest.mark.asyncio
    async def test_file_uses_wire_field_names(self, tmp_path, store):
        await store.append(make_record("SM1"))

        with open(tmp_path / "messages.json", encoding="utf-8") as f:
            data = json.load(f)

        assert data[0]["from"] == "+15551234567"
        assert data[0]["type"] == "sms"
        assert "from_number" not in data[0]

    def test_missing_file_starts_empty(self, tmp_path):
        store = MessageStore(tmp_path / "absent.json")

        assert store.load_or_init() == 0
        assert store.all() == []
        assert store.loaded is True

    @pytest.mark.parametrize("content", ["{not json", '{"id": "SM1"}', '[{"body": "no id"}]'])
    def test_corrupt_file_starts_empty(self, tmp_path, content):
        path = tmp_path / "messages.json"
        path.write_text(content, encoding="utf-8")

        store = MessageStore(path)

        assert store.load_or_init() == 0
        assert store.counts() == (0, 0)

    @pytest.mark.asyncio
    async def test_failed_write_keeps_in_memory_mutation(self, store, monkeypatch, caplog):
        def broken_write(path, items):
            raise PersistenceError("disk full")

        monkeypatch.setattr("sms_forwarder.storage.write_json_collection", broken_write)

        stored = await store.append(make_record("SM1"))
        await store.mark_read("SM1")

        assert stored.id == "SM1"
        assert store.counts() == (1, 0)
        assert "Error saving messages" in caplog.text


class TestJsonCollectionFile:

    def test_write_then_read(self, tmp_path):
        path = tmp_path / "tokens.json"

        write_json_collection(path, ["a", "b"])

        assert read_json_collection(path) == ["a", "b"]

    def test_write_leaves_no_temporary_files(self, tmp_path):
        path = tmp_path / "tokens.json"

        write_json_collection(path, ["a"])
        write_json_collection(path, ["a", "b"])

        assert os.listdir(tmp_path) == ["tokens.json"]

    def test_write_into_missing_directory_creates_it(self, tmp_path):
        path = tmp_path / "state" / "messages.json"

        write_json_collection(path, [])

        assert read_json_collection(path) == []

    def test_unwritable_target_raises_persistence_error(self, tmp_path):
        # A directory in the target's place cannot be replaced by a file
        path = tmp_path / "messages.json"
        path.mkdir()
        (path / "keep").write_text("x")

        with pytest.raises(PersistenceError):
            write_json_collection(path, [])

        assert sorted(os.listdir(tmp_path)) == ["messages.json"]

    def test_non_list_content_reads_as_none(self, tmp_path):
        path = tmp_path / "tokens.json"
        path.write_text('{"token": "x"}', encoding="utf-8")

        assert read_json_collection(path) is None


class TestDeviceTokenRegistry:

    @pytest.mark.asyncio
    async def test_register_is_idempotent(self, registry):
        assert await registry.register("ExponentPushToken[aaa]") is True
        assert await registry.register("ExponentPushToken[aaa]") is False

        assert len(registry) == 1
        assert registry.snapshot() == ["ExponentPushToken[aaa]"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", ["", "   ", None, 42])
    async def test_register_rejects_invalid_token(self, registry, token):
        await registry.register("ExponentPushToken[aaa]")

        with pytest.raises(InvalidInputError):
            await registry.register(token)

        assert registry.snapshot() == ["ExponentPushToken[aaa]"]

    @pytest.mark.asyncio
    async def test_remove(self, registry):
        await registry.register("t1")
        await registry.register("t2")

        assert await registry.remove("t1") is True
        assert await registry.remove("t1") is False

        assert registry.snapshot() == ["t2"]
        assert "t1" not in registry

    @pytest.mark.asyncio
    async def test_remove_many_ignores_unknown_tokens(self, registry):
        for token in ["t1", "t2", "t3"]:
            await registry.register(token)

        removed = await registry.remove_many(["t3", "t1", "unknown"])

        assert removed == 2
        assert registry.snapshot() == ["t2"]

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self, registry):
        await registry.register("t1")
        snapshot = registry.snapshot()

        await registry.register("t2")

        assert snapshot == ["t1"]

    @pytest.mark.asyncio
    async def test_restart_sees_registrations_and_removals(self, tmp_path, registry):
        await registry.register("t1")
        await registry.register("t2")
        await registry.remove("t1")

        restarted = DeviceTokenRegistry(tmp_path / "push-tokens.json")
        restarted.load_or_init()

        assert restarted.snapshot() == ["t2"]

    def test_load_drops_invalid_and_duplicate_entries(self, tmp_path):
        path = tmp_path / "push-tokens.json"
        path.write_text(json.dumps(["t1", "", 7, "t1", "t2", None]), encoding="utf-8")

        registry = DeviceTokenRegistry(path)

        assert registry.load_or_init() == 2
        assert registry.snapshot() == ["t1", "t2"]

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "push-tokens.json"
        path.write_text("[", encoding="utf-8")

        registry = DeviceTokenRegistry(path)

        assert registry.load_or_init() == 0


class TestConcurrentMutations:

    @pytest.mark.asyncio
    async def test_overlapping_appends_and_flag_changes_all_persist(self, tmp_path, store):
        for i in range(10):
            await store.append(make_record(f"SM-old-{i}"))

        operations = [store.append(make_record(f"SM-new-{i}")) for i in range(50)]
        operations += [store.mark_read(f"SM-old-{i}") for i in range(0, 10, 2)]
        operations += [store.mark_replied(f"SM-old-{i}") for i in range(1, 10, 2)]
        random.Random(7).shuffle(operations)

        await asyncio.gather(*operations)

        restarted = MessageStore(tmp_path / "messages.json")
        restarted.load_or_init()
        messages = {m.id: m for m in restarted.all()}

        assert len(restarted) == 60
        assert set(messages) == {f"SM-old-{i}" for i in range(10)} | {f"SM-new-{i}" for i in range(50)}
        for i in range(10):
            assert messages[f"SM-old-{i}"].read is True
            assert messages[f"SM-old-{i}"].replied is (i % 2 == 1)
        assert restarted.counts() == (60, 50)

    @pytest.mark.asyncio
    async def test_overlapping_registrations_all_persist(self, tmp_path, registry):
        for token in ["ExponentPushToken[stale-a]", "ExponentPushToken[stale-b]"]:
            await registry.register(token)
        tokens = [f"ExponentPushToken[{i}]" for i in range(50)]

        results = await asyncio.gather(
            *(registry.register(t) for t in tokens),
            registry.remove_many(["ExponentPushToken[stale-a]", "ExponentPushToken[stale-b]"]),
            *(registry.register(t) for t in tokens[:10]),
        )

        assert results[:50] == [True] * 50
        assert results[50] == 2
        assert results[51:] == [False] * 10

        restarted = DeviceTokenRegistry(tmp_path / "push-tokens.json")
        restarted.load_or_init()

        assert sorted(restarted.snapshot()) == sorted(tokens)
