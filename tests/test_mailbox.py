"""
Tests for the cross-context mailboxes.
"""

import asyncio
import threading

import pytest

from sessionkit.oauth.mailbox import FileMailbox, Mailbox, StorageMailbox
from sessionkit.storage.memory import MemoryStorage


class TestStorageMailbox:
    """Mailbox over an observable key/value storage"""

    @pytest.mark.asyncio
    async def test_read_is_single_consumer(self):
        mailbox = StorageMailbox("slot")
        await mailbox.write("payload")

        assert await mailbox.read_and_clear() == "payload"
        assert await mailbox.read_and_clear() is None

    @pytest.mark.asyncio
    async def test_concurrent_reads_deliver_once(self):
        mailbox = StorageMailbox("slot")
        await mailbox.write("payload")

        results = await asyncio.gather(mailbox.read_and_clear(), mailbox.read_and_clear())

        assert sorted(results, key=str) == [None, "payload"]

    @pytest.mark.asyncio
    async def test_on_change_fires_on_write_only(self):
        storage = MemoryStorage()
        mailbox = StorageMailbox("slot", storage)
        calls = []
        unsubscribe = mailbox.on_change(lambda: calls.append("changed"))

        await storage.set_item("other", "x")
        await mailbox.write("payload")
        await mailbox.read_and_clear()
        unsubscribe()
        await mailbox.write("again")

        assert calls == ["changed"]

    def test_satisfies_protocol(self):
        assert isinstance(StorageMailbox("slot"), Mailbox)


class TestFileMailbox:
    """Mailbox kept as a file in a shared directory"""

    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path, logger):
        mailbox = FileMailbox(tmp_path / "mailbox", logger)

        await mailbox.write('{"result": 1}')
        assert mailbox.path.exists()

        assert await mailbox.read_and_clear() == '{"result": 1}'
        assert await mailbox.read_and_clear() is None
        assert list((tmp_path / "mailbox").iterdir()) == []

    @pytest.mark.asyncio
    async def test_write_replaces_unread_payload(self, tmp_path, logger):
        mailbox = FileMailbox(tmp_path, logger)
        await mailbox.write("first")
        await mailbox.write("second")
        assert await mailbox.read_and_clear() == "second"

    @pytest.mark.asyncio
    async def test_two_instances_share_the_slot(self, tmp_path, logger):
        writer = FileMailbox(tmp_path, logger)
        reader = FileMailbox(tmp_path, logger)

        await writer.write("payload")

        assert await reader.read_and_clear() == "payload"
        assert await writer.read_and_clear() is None

    @pytest.mark.asyncio
    async def test_watcher_reports_writes(self, tmp_path, logger):
        mailbox = FileMailbox(tmp_path, logger)
        changed = threading.Event()
        unsubscribe = mailbox.on_change(changed.set)
        try:
            assert mailbox.is_watching
            await FileMailbox(tmp_path, logger).write("payload")
            assert await asyncio.to_thread(changed.wait, 5.0)
        finally:
            unsubscribe()
            mailbox.stop()

        assert mailbox.is_watching is False
        mailbox.stop()

    def test_satisfies_protocol(self, tmp_path, logger):
        assert isinstance(FileMailbox(tmp_path, logger), Mailbox)
