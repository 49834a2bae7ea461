"""Tests for ArchiveOrchestrator — the two-phase dedup/archive workflow."""

import asyncio
from unittest.mock import MagicMock

import pytest

from butler.engine.orchestrator import ArchiveOrchestrator, ArchiveResult, RunState
from butler.mail.errors import AlreadyRunningError, AuthError, TransportError
from butler.mail.types import FolderRef
from tests.helpers import ARCHIVE, DUPLICATES, FakeMailStore, make_record


# ── Helpers ─────────────────────────────────────────────────────────────────────


def messages(result: ArchiveResult) -> list[str]:
    """Log lines without their timestamps."""
    return [line.split(": ", 1)[1] for line in result.log]


def thread_mailbox(**kwargs: object) -> FakeMailStore:
    """Inbox with one replied-to original, its reply, and an unrelated message."""
    inbox = [
        make_record("reply", message_id="<b@x>", in_reply_to=("<a@x>",), subject="Re: Plans"),
        make_record("orig", message_id="<a@x>", subject="Plans"),
        make_record("other", message_id="<c@x>", subject="Lunch?"),
    ]
    return FakeMailStore({"inbox": inbox}, **kwargs)  # type: ignore[arg-type]


def duplicate_mailbox(**kwargs: object) -> FakeMailStore:
    inbox = [
        make_record("d1", message_id="<x@x>", subject="Invoice"),
        make_record("d2", message_id="<x@x>", subject="Invoice"),
        make_record("d3", message_id="<x@x>", subject="Invoice"),
        make_record("d4", message_id="<x@x>", subject="Invoice"),
    ]
    return FakeMailStore({"inbox": inbox}, **kwargs)  # type: ignore[arg-type]


# ── Dry run ─────────────────────────────────────────────────────────────────────


class TestDryRun:
    async def test_reports_without_moving(self) -> None:
        store = thread_mailbox()
        result = await ArchiveOrchestrator(store).run(dry_run=True)

        assert result.success is True
        assert result.dry_run is True
        assert result.final_state == RunState.DRY_RUN_COMPLETE
        assert result.total_scanned == 3
        assert result.found_count == 1
        assert result.found_subjects == ["Plans"]
        assert store.moves == []

    async def test_idempotent(self) -> None:
        store = FakeMailStore({"inbox": [
            *thread_mailbox().contents["inbox"],
            *duplicate_mailbox().contents["inbox"],
        ]})
        orchestrator = ArchiveOrchestrator(store)
        first = await orchestrator.run(dry_run=True)
        second = await orchestrator.run(dry_run=True)

        assert first.found_count == second.found_count == 1
        assert first.duplicate_count == second.duplicate_count == 3
        assert first.to_archive_by_folder == second.to_archive_by_folder

    async def test_not_persisted(self) -> None:
        sink = MagicMock()
        await ArchiveOrchestrator(thread_mailbox(), result_sink=sink).run(dry_run=True)
        sink.save_run_result.assert_not_called()

    async def test_log_narrates_dry_run(self) -> None:
        result = await ArchiveOrchestrator(thread_mailbox()).run(dry_run=True)
        lines = messages(result)
        assert lines[0] == "Starting email processing (DRY RUN)"
        assert "Found 3 messages" in lines
        assert "1 messages have been replied to" in lines
        assert "Found 1 unique message references (In-Reply-To + References)" in lines

    async def test_empty_mailbox_succeeds(self) -> None:
        result = await ArchiveOrchestrator(FakeMailStore()).run(dry_run=True)
        assert result.success is True
        assert result.total_scanned == 0
        assert "No messages to process" in messages(result)


# ── Live run ────────────────────────────────────────────────────────────────────


class TestLiveRun:
    async def test_archives_replied_to_message(self) -> None:
        store = thread_mailbox()
        result = await ArchiveOrchestrator(store).run()

        assert result.success is True
        assert result.final_state == RunState.DONE
        assert result.archived_count == 1
        assert result.archived_subjects == ["Plans"]
        assert store.ids_in(ARCHIVE.id) == ["orig"]
        assert store.ids_in("inbox") == ["reply", "other"]
        assert "Done. Archived 1 messages, moved 0 duplicates, 0 total errors" in messages(result)

    async def test_duplicates_moved_before_archive(self) -> None:
        store = duplicate_mailbox(named={"Duplicates": DUPLICATES})
        result = await ArchiveOrchestrator(store).run()

        assert result.duplicate_count == 3
        assert result.duplicates_moved_count == 3
        assert store.ids_in(DUPLICATES.id) == ["d2", "d3", "d4"]
        assert store.ids_in("inbox") == ["d1"]
        assert result.duplicate_groups[0].count == 4

    async def test_refetches_after_duplicate_moves(self) -> None:
        # The only copy of the replied-to message that survives dedup is the
        # keeper; archiving must use its state from the second fetch.
        inbox = [
            make_record("reply", message_id="<r@x>", in_reply_to=("<a@x>",)),
            make_record("a1", message_id="<a@x>"),
            make_record("a2", message_id="<a@x>"),
        ]
        store = FakeMailStore({"inbox": inbox}, named={"Duplicates": DUPLICATES})
        result = await ArchiveOrchestrator(store).run()

        assert result.success is True
        assert store.ids_in(DUPLICATES.id) == ["a2"]
        assert store.ids_in(ARCHIVE.id) == ["a1"]
        assert result.errors == 0
        inbox_reads = [c for c in store.list_calls if c[0] == "inbox"]
        assert len(inbox_reads) == 2
        assert "Re-fetching after duplicate removal..." in messages(result)

    async def test_refetch_happens_even_without_duplicates(self) -> None:
        store = thread_mailbox()
        await ArchiveOrchestrator(store).run()
        assert len([c for c in store.list_calls if c[0] == "inbox"]) == 2

    async def test_nothing_to_archive_skips_archive_lookup(self) -> None:
        store = FakeMailStore({"inbox": [make_record("solo", message_id="<s@x>")]})
        result = await ArchiveOrchestrator(store).run()

        assert result.success is True
        assert result.archived_count == 0
        assert store.resolve_calls == []

    async def test_per_item_move_failure_is_isolated(self) -> None:
        inbox = [
            make_record("reply", in_reply_to=("<a@x>",), references=("<b@x>",)),
            make_record("a", message_id="<a@x>", subject="A"),
            make_record("b", message_id="<b@x>", subject="B"),
        ]
        store = FakeMailStore({"inbox": inbox})
        store.move_errors["a"] = TransportError("timed out")
        result = await ArchiveOrchestrator(store).run()

        assert result.success is True
        assert result.archived_count == 1
        assert result.errors == 1
        assert store.ids_in(ARCHIVE.id) == ["b"]
        assert any(line.startswith('Failed to archive "A"') for line in messages(result))

    async def test_auth_failure_on_move_flags_result(self) -> None:
        store = thread_mailbox()
        store.move_errors["orig"] = AuthError()
        result = await ArchiveOrchestrator(store).run()

        assert result.auth_required is True
        assert result.errors == 1

    async def test_expired_token_on_initial_scan_fails_run(self) -> None:
        store = thread_mailbox()
        store.folder_errors["inbox"] = AuthError()
        sink = MagicMock()
        result = await ArchiveOrchestrator(store, result_sink=sink).run()

        assert result.success is False
        assert result.auth_required is True
        assert result.error == AuthError.DEFAULT_MESSAGE
        assert result.final_state == RunState.FAILED
        assert messages(result)[-1] == f"Error: {AuthError.DEFAULT_MESSAGE}"
        assert store.moves == []
        assert sink.save_run_result.call_args.args[1]["auth_required"] is True

    async def test_expired_token_on_dry_run_fails_run(self) -> None:
        store = thread_mailbox()
        store.folder_errors["inbox"] = AuthError()
        result = await ArchiveOrchestrator(store).run(dry_run=True)

        assert result.success is False
        assert result.auth_required is True

    async def test_expired_token_on_refetch_fails_run(self) -> None:
        store = thread_mailbox()
        scan_page = store.list_messages
        calls = 0

        async def expire_after_first_scan(folder: FolderRef, page_size: int, offset: int) -> list:
            nonlocal calls
            calls += 1
            if calls > 1:
                raise AuthError()
            return await scan_page(folder, page_size, offset)

        store.list_messages = expire_after_first_scan  # type: ignore[method-assign]
        result = await ArchiveOrchestrator(store).run()

        assert calls == 2
        assert result.success is False
        assert result.auth_required is True
        assert result.archived_count == 0
        assert store.ids_in(ARCHIVE.id) == []

    async def test_persists_live_result(self) -> None:
        sink = MagicMock()
        result = await ArchiveOrchestrator(thread_mailbox(), result_sink=sink).run()

        sink.save_run_result.assert_called_once()
        kind, payload = sink.save_run_result.call_args.args
        assert kind == "archive"
        assert payload["archived_count"] == 1
        assert payload["final_state"] == "done"
        assert payload["log"] == list(result.log)

    async def test_sink_failure_does_not_fail_run(self) -> None:
        sink = MagicMock()
        sink.save_run_result.side_effect = RuntimeError("disk full")
        result = await ArchiveOrchestrator(thread_mailbox(), result_sink=sink).run()
        assert result.success is True

    async def test_per_folder_breakdowns(self) -> None:
        inbox = [make_record("reply", references=("<a@x>", "<p@x>"))]
        projects = FolderRef("p-id", "Projects")
        store = FakeMailStore(
            {
                "inbox": [*inbox, make_record("a", message_id="<a@x>")],
                "p-id": [make_record("p", message_id="<p@x>")],
            },
            subfolders=[projects],
        )
        result = await ArchiveOrchestrator(store).run(include_subfolders=True)

        assert {(r.folder, r.count) for r in result.archived_by_folder} == {("Inbox", 1), ("Projects", 1)}
        assert [s.folder for s in result.folder_stats] == ["Inbox", "Projects"]


# ── Scenarios ───────────────────────────────────────────────────────────────────


class TestScenarios:
    async def test_duplicates_folder_absent_is_skipped(self) -> None:
        store = duplicate_mailbox()
        result = await ArchiveOrchestrator(store).run()

        assert result.success is True
        assert result.duplicate_count == 3
        assert result.duplicates_moved_count == 0
        assert result.error is None
        assert store.moves == []
        assert store.create_calls == []
        assert any("folder not found - skipping duplicate handling" in m for m in messages(result))

    async def test_duplicates_lookup_error_is_skipped(self) -> None:
        store = duplicate_mailbox()
        store.find_error = TransportError("FindFolder timed out")
        result = await ArchiveOrchestrator(store).run()

        assert result.success is True
        assert result.duplicates_moved_count == 0

    async def test_archive_resolution_failure_fails_run(self) -> None:
        store = thread_mailbox(distinguished={})
        result = await ArchiveOrchestrator(store).run()

        assert result.success is False
        assert result.final_state == RunState.FAILED
        assert result.error is not None
        assert result.error.startswith("Could not get archive folder:")
        assert len(result.log) > 0
        assert store.moves == []

    async def test_archive_resolution_failure_is_persisted(self) -> None:
        sink = MagicMock()
        await ArchiveOrchestrator(thread_mailbox(distinguished={}), result_sink=sink).run()
        payload = sink.save_run_result.call_args.args[1]
        assert payload["success"] is False


# ── Single flight ───────────────────────────────────────────────────────────────


class TestSingleFlight:
    async def test_second_run_rejected_while_running(self) -> None:
        store = thread_mailbox()
        gate = asyncio.Event()
        original = store.list_messages

        async def slow_list(*args: object) -> list:
            await gate.wait()
            return await original(*args)  # type: ignore[arg-type]

        store.list_messages = slow_list  # type: ignore[method-assign]
        orchestrator = ArchiveOrchestrator(store)
        first = asyncio.create_task(orchestrator.run(dry_run=True))
        await asyncio.sleep(0)

        assert orchestrator.state == RunState.SCANNING
        with pytest.raises(AlreadyRunningError):
            await orchestrator.run(dry_run=True)

        gate.set()
        result = await first
        assert result.success is True
        assert orchestrator.state == RunState.IDLE

    async def test_state_reset_after_unexpected_error(self) -> None:
        store = thread_mailbox()

        async def explode(*args: object) -> list:
            raise ValueError("bad page")

        store.list_messages = explode  # type: ignore[method-assign]
        orchestrator = ArchiveOrchestrator(store)
        result = await orchestrator.run()

        assert result.success is False
        assert result.error == "bad page"
        assert messages(result)[-1] == "Error: bad page"
        assert orchestrator.state == RunState.IDLE
        assert orchestrator.last_state == RunState.FAILED
        assert (await orchestrator.run(dry_run=True)).success is False

    async def test_state_reset_after_cancellation(self) -> None:
        store = thread_mailbox()

        async def cancelled(*args: object) -> list:
            raise asyncio.CancelledError()

        store.list_messages = cancelled  # type: ignore[method-assign]
        orchestrator = ArchiveOrchestrator(store)
        with pytest.raises(asyncio.CancelledError):
            await orchestrator.run()
        assert orchestrator.state == RunState.IDLE
