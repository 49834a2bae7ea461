"""Tests for PagedFolderFetcher and MultiFolderAggregator."""

import pytest

from butler.engine.aggregator import MultiFolderAggregator, ScanLimits
from butler.engine.fetcher import PagedFolderFetcher
from butler.mail.errors import AuthError, TransportError
from butler.mail.types import INBOX, FolderRef
from tests.helpers import FakeMailStore, make_record


def records(prefix: str, n: int) -> list:
    return [make_record(f"{prefix}{i}") for i in range(n)]


# ── PagedFolderFetcher ──────────────────────────────────────────────────────────


class TestPagedFolderFetcher:
    async def test_non_positive_page_size_makes_no_call(self) -> None:
        store = FakeMailStore({"inbox": records("m", 3)})
        assert await PagedFolderFetcher(store).fetch(INBOX, 0, 0) == []
        assert store.list_calls == []

    async def test_returns_page_in_store_order(self) -> None:
        store = FakeMailStore({"inbox": records("m", 5)})
        page = await PagedFolderFetcher(store).fetch(INBOX, 2, 1)
        assert [r.id for r in page] == ["m1", "m2"]


# ── ScanLimits ──────────────────────────────────────────────────────────────────


class TestScanLimits:
    def test_single_folder_gets_global_cap(self) -> None:
        assert ScanLimits().per_folder_cap(1) == 2000

    def test_share_is_clamped_to_minimum(self) -> None:
        assert ScanLimits().per_folder_cap(100) == 50

    def test_share_divides_global_cap(self) -> None:
        assert ScanLimits().per_folder_cap(10) == 200

    def test_zero_folders_treated_as_one(self) -> None:
        assert ScanLimits(global_cap=300).per_folder_cap(0) == 300


# ── MultiFolderAggregator ───────────────────────────────────────────────────────


class TestFolderSet:
    async def test_inbox_only_by_default(self) -> None:
        store = FakeMailStore(subfolders=[FolderRef("f1", "Projects")])
        assert await MultiFolderAggregator(store).folder_set(False) == [INBOX]

    async def test_subfolders_capped(self) -> None:
        subs = [FolderRef(f"f{i}", f"Sub {i}") for i in range(10)]
        store = FakeMailStore(subfolders=subs)
        folders = await MultiFolderAggregator(store, ScanLimits(max_folders=4)).folder_set(True)
        assert folders == [INBOX, *subs[:3]]

    async def test_subfolder_listing_failure_is_not_fatal(self) -> None:
        store = FakeMailStore()
        store.subfolder_error = TransportError("down")
        assert await MultiFolderAggregator(store).folder_set(True) == [INBOX]


class TestFetchAll:
    async def test_pages_until_short_page(self) -> None:
        store = FakeMailStore({"inbox": records("m", 25)})
        result = await MultiFolderAggregator(store, ScanLimits(page_size=10)).fetch_all()

        assert [r.id for r in result.messages] == [f"m{i}" for i in range(25)]
        assert [(c[1], c[2]) for c in store.list_calls] == [(10, 0), (10, 10), (10, 20)]
        assert result.folder_stats[0].fetched == 25

    async def test_global_cap_bounds_messages(self) -> None:
        store = FakeMailStore({"inbox": records("m", 120)})
        limits = ScanLimits(global_cap=45, min_per_folder=1, page_size=20)
        result = await MultiFolderAggregator(store, limits).fetch_all()

        assert len(result.messages) == 45
        assert result.folder_stats[0].truncated is True
        # The last page is shrunk to what the cap still allows.
        assert store.list_calls[-1][1] == 5

    async def test_per_folder_cap_across_subfolders(self) -> None:
        subs = [FolderRef("f1", "One"), FolderRef("f2", "Two")]
        store = FakeMailStore(
            {"inbox": records("i", 100), "f1": records("a", 100), "f2": records("b", 100)},
            subfolders=subs,
        )
        limits = ScanLimits(global_cap=90, min_per_folder=10, page_size=50)
        result = await MultiFolderAggregator(store, limits).fetch_all(include_subfolders=True)

        assert [s.included for s in result.folder_stats] == [30, 30, 30]
        assert len(result.messages) == 90

    async def test_dedupes_by_id_first_occurrence_wins(self) -> None:
        shared = make_record("shared")
        store = FakeMailStore(
            {"inbox": [shared, make_record("x")], "f1": [shared, make_record("y")]},
            subfolders=[FolderRef("f1", "Projects")],
        )
        result = await MultiFolderAggregator(store).fetch_all(include_subfolders=True)

        assert [r.id for r in result.messages] == ["shared", "x", "y"]
        assert result.messages[0].source_folder == "Inbox"
        stats = {s.folder: s for s in result.folder_stats}
        assert stats["Projects"].fetched == 2
        assert stats["Projects"].included == 1

    async def test_folder_error_is_isolated(self) -> None:
        store = FakeMailStore(
            {"inbox": records("i", 3), "f2": records("b", 2)},
            subfolders=[FolderRef("f1", "Broken"), FolderRef("f2", "Fine")],
        )
        store.folder_errors["f1"] = TransportError("timed out")
        result = await MultiFolderAggregator(store).fetch_all(include_subfolders=True)

        assert [r.id for r in result.messages] == ["i0", "i1", "i2", "b0", "b1"]
        broken = result.folder_stats[1]
        assert broken.folder == "Broken"
        assert broken.error == "timed out"
        assert broken.included == 0

    async def test_auth_failure_propagates(self) -> None:
        store = FakeMailStore({"inbox": records("i", 3)})
        store.folder_errors["inbox"] = AuthError()
        with pytest.raises(AuthError):
            await MultiFolderAggregator(store).fetch_all()

    async def test_auth_failure_in_subfolder_propagates(self) -> None:
        store = FakeMailStore(
            {"inbox": records("i", 2), "f1": records("a", 2)},
            subfolders=[FolderRef("f1", "Work")],
        )
        store.folder_errors["f1"] = AuthError()
        with pytest.raises(AuthError):
            await MultiFolderAggregator(store).fetch_all(include_subfolders=True)

    async def test_auth_failure_listing_subfolders_propagates(self) -> None:
        store = FakeMailStore({"inbox": records("i", 2)})
        store.subfolder_error = AuthError()
        with pytest.raises(AuthError):
            await MultiFolderAggregator(store).fetch_all(include_subfolders=True)

    async def test_records_without_id_are_dropped(self) -> None:
        store = FakeMailStore({"inbox": [make_record("a"), make_record(""), make_record("b")]})
        result = await MultiFolderAggregator(store).fetch_all()

        assert [r.id for r in result.messages] == ["a", "b"]
        assert result.folder_stats[0].fetched == 3
        assert result.folder_stats[0].included == 2

    async def test_empty_mailbox(self) -> None:
        result = await MultiFolderAggregator(FakeMailStore()).fetch_all()
        assert result.messages == []
        assert result.folder_stats[0].fetched == 0

    async def test_stops_visiting_folders_once_cap_reached(self) -> None:
        store = FakeMailStore(
            {"inbox": records("i", 60), "f1": records("a", 10)},
            subfolders=[FolderRef("f1", "One")],
        )
        limits = ScanLimits(global_cap=40, min_per_folder=40, page_size=40)
        result = await MultiFolderAggregator(store, limits).fetch_all(include_subfolders=True)

        assert len(result.messages) == 40
        assert all(call[0] == "inbox" for call in store.list_calls)
