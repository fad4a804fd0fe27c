"""Tests for the Migrator engine."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, patch

import pytest

from dynamo_migrator import migrate
from dynamo_migrator.exceptions import PreflightError, TransportError, ValidationError
from dynamo_migrator.migrator import Migrator, SyncMigrator
from dynamo_migrator.models import MigrationConfig, Mode, put_request
from dynamo_migrator.repository import Repository
from tests.fixtures.tables import FakeTableClient, all_unprocessed, make_items


def identity(item, counters, log):
    return item


def numbered_items(count: int) -> list[dict]:
    return [{"Id": f"id{i}", "X": i} for i in range(count)]


def stream_config(**kwargs) -> MigrationConfig:
    kwargs.setdefault("transform", identity)
    return MigrationConfig(table_name="tableA", **kwargs)


@pytest.fixture
def client() -> FakeTableClient:
    return FakeTableClient({"tableA": numbered_items(30), "tableB": []})


@pytest.fixture
def engine(client, fast_retry) -> Migrator:
    return Migrator(client=client, write_retry_policy=fast_retry)


class TestStreamMode:
    """Filter, transform and write back one page at a time."""

    @pytest.mark.asyncio
    async def test_two_pages(self, engine, client) -> None:
        """30 items are read in two scans and written back unchanged."""
        result = await engine.run(stream_config())

        assert len(client.scan_calls) == 2
        assert client.scan_calls[0][1] is None
        assert client.scan_calls[1][1] == {"Id": "id24"}
        assert result.pages == 2
        assert result.total_items == 30
        assert result.migrated_items == 30
        assert result.dead_letters == []
        assert [len(r) for _, r in client.write_calls] == [25, 5]

    @pytest.mark.asyncio
    async def test_filter(self, engine, client) -> None:
        """Only selected items are transformed and written."""

        def transform(item, counters, log):
            return {**item, "migrated": True}

        result = await engine.run(
            stream_config(
                filter_item=lambda item, counters, log: item["X"] > 10,
                transform=transform,
            )
        )

        assert result.total_items == 30
        assert result.migrated_items == 19
        assert result.filtered_out == 11
        written = [r["PutRequest"]["Item"]["X"] for _, reqs in client.write_calls for r in reqs]
        assert written == list(range(11, 30))
        migrated = [i for i in client.items("tableA") if i.get("migrated")]
        assert len(migrated) == 19

    @pytest.mark.asyncio
    async def test_nothing_selected_writes_nothing(self, engine, client) -> None:
        result = await engine.run(stream_config(filter_item=lambda item, counters, log: False))

        assert result.migrated_items == 0
        assert client.write_calls == []

    @pytest.mark.asyncio
    async def test_counter_conservation(self, engine) -> None:
        result = await engine.run(
            stream_config(filter_item=lambda item, counters, log: item["X"] % 3 == 0)
        )
        assert result.total_items == result.migrated_items + result.filtered_out
        assert result.migrated_items == 10

    @pytest.mark.asyncio
    async def test_exact_page_multiple(self, fast_retry) -> None:
        """A full last page is followed by one empty scan."""
        client = FakeTableClient({"tableA": make_items(25)})
        result = await Migrator(client=client, write_retry_policy=fast_retry).run(
            stream_config()
        )

        assert len(client.scan_calls) == 2
        assert result.pages == 2
        assert result.total_items == 25
        assert len(client.write_calls) == 1

    @pytest.mark.asyncio
    async def test_empty_table(self, fast_retry) -> None:
        client = FakeTableClient({"tableA": []})
        result = await Migrator(client=client, write_retry_policy=fast_retry).run(
            stream_config()
        )

        assert len(client.scan_calls) == 1
        assert result.pages == 1
        assert result.total_items == 0
        assert client.write_calls == []

    @pytest.mark.asyncio
    async def test_async_callbacks(self, engine, client) -> None:
        """Async filters are awaited; async transforms of a page run concurrently."""
        running = 0
        peak = 0

        async def keep_even(item, counters, log):
            return item["X"] % 2 == 0

        async def transform(item, counters, log):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0)
            running -= 1
            return {**item, "async": True}

        result = await engine.run(stream_config(filter_item=keep_even, transform=transform))

        assert result.migrated_items == 15
        assert peak > 1
        assert all(i.get("async") for i in client.items("tableA") if i["X"] % 2 == 0)

    @pytest.mark.asyncio
    async def test_custom_counters_and_log(self, engine, caplog) -> None:
        def transform(item, counters, log):
            if item["X"] > 27:
                counters["high"] += 1
                log("we found a high one!")
            return item

        with caplog.at_level(logging.INFO, logger="dynamo_migrator"):
            result = await engine.run(stream_config(transform=transform, custom_counters=["high"]))

        assert result.counters["high"] == 2
        assert "1: we found a high one!" in [r.getMessage() for r in caplog.records]
        assert '"high": 2' in caplog.text

    @pytest.mark.asyncio
    async def test_transform_returning_none(self, engine, client) -> None:
        with pytest.raises(ValidationError, match="returned None"):
            await engine.run(stream_config(transform=lambda item, counters, log: None))
        assert client.write_calls == []

    @pytest.mark.asyncio
    async def test_start_cursor_resumes(self, engine, client) -> None:
        result = await engine.run(stream_config(start_cursor={"Id": "id24"}))

        assert client.scan_calls[0][1] == {"Id": "id24"}
        assert result.total_items == 5
        assert result.pages == 1

    @pytest.mark.asyncio
    async def test_delays(self, engine) -> None:
        with patch("dynamo_migrator.migrator.sleep_ms", new=AsyncMock()) as sleep:
            await engine.run(stream_config(scan_delay_ms=200, start_delay_ms=1000))
        delays = [call.args[0] for call in sleep.await_args_list]
        assert delays == [1000, 200, 200]


class TestPreflight:
    @pytest.mark.asyncio
    async def test_provisioned_table_aborts_before_scanning(self, fast_retry) -> None:
        client = FakeTableClient({"tableA": numbered_items(5)}, billing_mode="PROVISIONED")

        with pytest.raises(PreflightError):
            await Migrator(client=client, write_retry_policy=fast_retry).run(stream_config())
        assert client.scan_calls == []
        assert client.write_calls == []

    @pytest.mark.asyncio
    async def test_force(self, fast_retry) -> None:
        client = FakeTableClient({"tableA": numbered_items(5)}, billing_mode="PROVISIONED")

        result = await Migrator(client=client, write_retry_policy=fast_retry).run(
            stream_config(force=True)
        )
        assert result.migrated_items == 5


class TestBatchMode:
    @pytest.mark.asyncio
    async def test_fan_out(self, engine, client) -> None:
        """The handler writes each page to two tables and counts lookups."""
        seen_pages = []

        async def handle_batch(items, counters, log, write):
            seen_pages.append(len(items))
            await write("tableA", [{**item, "v": 2} for item in items])
            lookups = [{"Id": f"lookup-{item['Id']}"} for item in items]
            counters["lookups"] += len(lookups)
            await write("tableB", lookups)

        result = await engine.run(
            MigrationConfig(
                table_name="tableA",
                mode=Mode.BATCH,
                batch_handler=handle_batch,
                custom_counters=["lookups"],
            )
        )

        assert seen_pages == [25, 5]
        assert result.counters["lookups"] == 30
        assert len(client.items("tableB")) == 30
        assert all(item["v"] == 2 for item in client.items("tableA"))

    @pytest.mark.asyncio
    async def test_handler_gets_selected_items(self, engine) -> None:
        received = []

        def handle_batch(items, counters, log, write):
            received.extend(items)

        result = await engine.run(
            MigrationConfig(
                table_name="tableA",
                mode="batch",
                batch_handler=handle_batch,
                filter_item=lambda item, counters, log: item["X"] < 3,
            )
        )

        assert [i["X"] for i in received] == [0, 1, 2]
        assert result.migrated_items == 3

    @pytest.mark.asyncio
    async def test_write_failures_collected(self, engine, client, tmp_path) -> None:
        client.write_outcomes.extend([all_unprocessed] * 8)

        async def handle_batch(items, counters, log, write):
            await write("tableB", items)

        result = await engine.run(
            MigrationConfig(
                table_name="tableA",
                mode=Mode.BATCH,
                batch_handler=handle_batch,
                dead_letter_dir=tmp_path,
            )
        )

        assert result.failed_batches == 1
        assert result.dead_letters[0].table_name == "tableB"
        assert result.dead_letter_path is not None

    @pytest.mark.asyncio
    async def test_sync_handler_writes_finish_with_the_page(self, engine, client) -> None:
        """A sync handler fires its writes without awaiting them."""

        def handle_batch(items, counters, log, write):
            write("tableA", [{**item, "v": 2} for item in items])
            write("tableB", [{"Id": f"lookup-{item['Id']}"} for item in items])

        result = await engine.run(
            MigrationConfig(table_name="tableA", mode=Mode.BATCH, batch_handler=handle_batch)
        )

        assert result.failed_batches == 0
        assert [(table, len(requests)) for table, requests in client.write_calls] == [
            ("tableA", 25),
            ("tableB", 25),
            ("tableA", 5),
            ("tableB", 5),
        ]
        assert len(client.items("tableB")) == 30
        assert all(item["v"] == 2 for item in client.items("tableA"))

    @pytest.mark.asyncio
    async def test_sync_handler_write_failures_collected(self, engine, client) -> None:
        client.write_outcomes.extend([all_unprocessed] * 8)

        def handle_batch(items, counters, log, write):
            write("tableB", items)

        result = await engine.run(
            MigrationConfig(
                table_name="tableA",
                mode=Mode.BATCH,
                batch_handler=handle_batch,
                save_dead_letters=False,
            )
        )

        assert result.failed_batches == 1
        assert result.dead_letters[0].table_name == "tableB"
        assert len(result.dead_letters[0].requests) == 25
        assert len(client.items("tableB")) == 5

    @pytest.mark.asyncio
    async def test_write_returns_dead_letters(self, engine, client) -> None:
        client.write_outcomes.extend([all_unprocessed] * 8)
        returned = []

        async def handle_batch(items, counters, log, write):
            returned.append(await write("tableB", items))

        result = await engine.run(
            MigrationConfig(
                table_name="tableA",
                mode=Mode.BATCH,
                batch_handler=handle_batch,
                save_dead_letters=False,
            )
        )

        assert [len(entries) for entries in returned] == [1, 0]
        assert result.dead_letters == returned[0]


class TestErrors:
    @pytest.mark.asyncio
    async def test_filter_error_propagates(self, engine, client) -> None:
        def bad_filter(item, counters, log):
            raise KeyError("missing attribute")

        with pytest.raises(KeyError):
            await engine.run(stream_config(filter_item=bad_filter))
        assert client.write_calls == []

    @pytest.mark.asyncio
    async def test_batch_handler_error_propagates(self, engine) -> None:
        async def handle_batch(items, counters, log, write):
            raise RuntimeError("handler broke")

        with pytest.raises(RuntimeError, match="handler broke"):
            await engine.run(
                MigrationConfig(table_name="tableA", mode=Mode.BATCH, batch_handler=handle_batch)
            )

    @pytest.mark.asyncio
    async def test_sync_handler_error_drops_its_writes(self, engine, client) -> None:
        def handle_batch(items, counters, log, write):
            write("tableB", items)
            raise RuntimeError("handler broke")

        with pytest.raises(RuntimeError, match="handler broke"):
            await engine.run(
                MigrationConfig(table_name="tableA", mode=Mode.BATCH, batch_handler=handle_batch)
            )
        assert client.write_calls == []
        assert client.items("tableB") == []

    @pytest.mark.asyncio
    async def test_sync_transform_error_after_async_ones(self, engine, client) -> None:
        started = []

        async def mark(item):
            started.append(item["Id"])
            return item

        def transform(item, counters, log):
            if item["X"] == 3:
                raise ValueError("bad item")
            return mark(item)

        with pytest.raises(ValueError, match="bad item"):
            await engine.run(stream_config(transform=transform))
        assert started == []
        assert client.write_calls == []

    @pytest.mark.asyncio
    async def test_failed_transform_cancels_the_others(self, engine, client) -> None:
        cancelled = []

        async def transform(item, counters, log):
            if item["X"] == 0:
                try:
                    await asyncio.sleep(10)
                except asyncio.CancelledError:
                    cancelled.append(item["Id"])
                    raise
            if item["X"] == 1:
                raise ValueError("bad item")
            return item

        with pytest.raises(ValueError, match="bad item"):
            await asyncio.wait_for(engine.run(stream_config(transform=transform)), timeout=5)
        assert cancelled == ["id0"]
        assert client.write_calls == []

    @pytest.mark.asyncio
    async def test_scan_error_aborts(self, engine, client) -> None:
        client.scan_errors.append(TransportError("scan failed"))

        with pytest.raises(TransportError):
            await engine.run(stream_config())
        assert client.write_calls == []


class TestDeadLetters:
    @pytest.mark.asyncio
    async def test_saved_to_file(self, engine, client, tmp_path) -> None:
        client.write_outcomes.extend([all_unprocessed] * 8)

        result = await engine.run(stream_config(dead_letter_dir=tmp_path))

        assert result.failed_batches == 1
        # the second page is still written
        assert result.pages == 2
        assert result.dead_letter_path is not None
        assert result.dead_letter_path.parent == tmp_path
        saved = json.loads(result.dead_letter_path.read_text())
        assert len(saved) == 1
        assert saved[0]["table_name"] == "tableA"
        assert len(saved[0]["requests"]) == 25

    @pytest.mark.asyncio
    async def test_not_saved_when_disabled(self, engine, client, tmp_path) -> None:
        client.write_outcomes.extend([all_unprocessed] * 8)

        result = await engine.run(
            stream_config(dead_letter_dir=tmp_path, save_dead_letters=False)
        )

        assert result.failed_batches == 1
        assert result.dead_letter_path is None
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_no_file_without_failures(self, engine, tmp_path) -> None:
        result = await engine.run(stream_config(dead_letter_dir=tmp_path))
        assert result.dead_letter_path is None
        assert list(tmp_path.iterdir()) == []


class TestLogging:
    @pytest.mark.asyncio
    async def test_page_prefix(self, engine, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="dynamo_migrator"):
            await engine.run(stream_config())
        messages = [r.getMessage() for r in caplog.records]
        assert "0: starting batch!" in messages
        assert "1: finished batch!" in messages
        assert "* Finished migration *" in messages

    @pytest.mark.asyncio
    async def test_quiet(self, engine, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="dynamo_migrator"):
            await engine.run(stream_config(quiet=True))
        assert caplog.records == []


class TestLifecycle:
    def test_default_client_is_repository(self) -> None:
        migrator = Migrator(region="us-east-1")
        assert isinstance(migrator.client, Repository)
        assert migrator.client.region == "us-east-1"

    @pytest.mark.asyncio
    async def test_context_manager_closes_client(self, client) -> None:
        async with Migrator(client=client):
            pass
        assert client.closed

    @pytest.mark.asyncio
    async def test_migrate(self, client, fast_retry) -> None:
        result = await migrate(stream_config(), client=client, write_retry_policy=fast_retry)
        assert result.migrated_items == 30
        assert client.closed


class TestSyncMigrator:
    def test_run(self, client, fast_retry) -> None:
        with SyncMigrator(client=client, write_retry_policy=fast_retry) as migrator:
            result = migrator.run(stream_config())
        assert result.pages == 2
        assert result.migrated_items == 30
        assert client.closed

    def test_async_transform(self, client, fast_retry) -> None:
        async def transform(item, counters, log):
            return {**item, "sync": True}

        with SyncMigrator(client=client, write_retry_policy=fast_retry) as migrator:
            migrator.run(stream_config(transform=transform))
        assert all(i["sync"] for i in client.items("tableA"))

    def test_written_requests(self, client, fast_retry) -> None:
        with SyncMigrator(client=client, write_retry_policy=fast_retry) as migrator:
            migrator.run(stream_config(filter_item=lambda item, counters, log: item["X"] == 0))
        assert client.write_calls == [("tableA", [put_request({"Id": "id0", "X": 0})])]
