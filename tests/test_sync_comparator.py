"""Tests for three-way reconciliation."""

from pathlib import Path

import pytest

from pydrivesync.models import FileEntry
from pydrivesync.sync.comparator import (
    ChangeType,
    Reconciler,
    SyncAction,
    count_actions,
    is_within,
)
from pydrivesync.sync.lister import RemoteFile
from pydrivesync.sync.scanner import LocalFile
from pydrivesync.sync.state import ItemState, SyncItem

CONFIG_ID = 1


def local_file(path: str, md5: str, size: int = 10, mtime: float = 100.0) -> LocalFile:
    return LocalFile(
        path=Path("/sync") / path,
        relative_path=path,
        size=size,
        mtime=mtime,
        md5=md5,
    )


def remote_file(
    path: str,
    md5: str,
    file_id: str = "",
    modified_time: str = "2025-01-01T00:00:00.000Z",
    size: int = 10,
) -> RemoteFile:
    entry = FileEntry(
        id=file_id or f"id-{path}",
        name=path.rsplit("/", 1)[-1],
        md5_checksum=md5,
        file_size=size,
        modified_time=modified_time,
    )
    return RemoteFile(entry=entry, relative_path=path)


def baseline_item(local: LocalFile, remote: RemoteFile) -> SyncItem:
    return SyncItem(
        config_id=CONFIG_ID,
        path=local.relative_path,
        local=local.fingerprint,
        remote=remote.fingerprint,
        base_local=local.fingerprint,
        base_remote=remote.fingerprint,
        state=ItemState.SYNCED,
    )


def decide(items=None, local=None, remote=None, unreadable=()):
    decisions = Reconciler(CONFIG_ID).reconcile(
        {i.path: i for i in items or []},
        {f.relative_path: f for f in local or []},
        {f.relative_path: f for f in remote or []},
        unreadable=unreadable,
    )
    return {d.relative_path: d for d in decisions}


class TestNewPaths:
    """Paths without a baseline."""

    def test_new_local_file_is_uploaded(self):
        d = decide(local=[local_file("a.txt", "m1")])["a.txt"]
        assert d.change == ChangeType.LOCAL_ADDED
        assert d.action == SyncAction.UPLOAD
        assert d.item.state == ItemState.PENDING
        assert d.item.base_local is None

    def test_new_remote_file_is_downloaded(self):
        d = decide(remote=[remote_file("a.txt", "m1")])["a.txt"]
        assert d.change == ChangeType.REMOTE_ADDED
        assert d.action == SyncAction.DOWNLOAD

    def test_added_on_both_sides_identical(self):
        d = decide(
            local=[local_file("a.txt", "m1")], remote=[remote_file("a.txt", "m1")]
        )["a.txt"]
        assert d.action == SyncAction.RECORD
        assert d.item.state == ItemState.SYNCED
        assert d.item.base_local == d.item.local
        assert d.item.base_remote == d.item.remote

    def test_added_on_both_sides_different(self):
        d = decide(
            local=[local_file("a.txt", "m1")], remote=[remote_file("a.txt", "m2")]
        )["a.txt"]
        assert d.change == ChangeType.CONFLICT
        assert d.action == SyncAction.CONFLICT
        assert d.item.state == ItemState.CONFLICT

    def test_remote_without_md5_never_matches(self):
        d = decide(
            local=[local_file("a.txt", "m1")], remote=[remote_file("a.txt", "")]
        )["a.txt"]
        assert d.action == SyncAction.CONFLICT

    def test_item_without_baseline_is_treated_as_new(self):
        pending = SyncItem(CONFIG_ID, "a.txt", state=ItemState.ERROR, last_error="x")
        d = decide(items=[pending], local=[local_file("a.txt", "m1")])["a.txt"]
        assert d.action == SyncAction.UPLOAD


class TestTrackedPaths:
    """Paths with a baseline."""

    @pytest.fixture
    def base(self):
        local = local_file("a.txt", "m0")
        remote = remote_file("a.txt", "m0")
        return baseline_item(local, remote), local, remote

    def test_unchanged_is_skipped(self, base):
        item, local, remote = base
        d = decide([item], [local], [remote])["a.txt"]
        assert d.change == ChangeType.UNCHANGED
        assert d.action == SyncAction.SKIP
        assert d.item == item

    def test_local_modified(self, base):
        item, _, remote = base
        d = decide([item], [local_file("a.txt", "m1", size=11)], [remote])["a.txt"]
        assert d.change == ChangeType.LOCAL_MODIFIED
        assert d.action == SyncAction.UPLOAD
        assert d.item.base_local == item.base_local

    def test_remote_modified(self, base):
        item, local, _ = base
        changed = remote_file("a.txt", "m1", modified_time="2025-02-01T00:00:00.000Z")
        d = decide([item], [local], [changed])["a.txt"]
        assert d.change == ChangeType.REMOTE_MODIFIED
        assert d.action == SyncAction.DOWNLOAD

    def test_remote_replaced_by_new_object(self, base):
        item, local, _ = base
        replaced = remote_file("a.txt", "m0", file_id="other-id")
        d = decide([item], [local], [replaced])["a.txt"]
        assert d.action == SyncAction.DOWNLOAD

    def test_modified_on_both_sides_is_conflict(self, base):
        item, _, _ = base
        d = decide(
            [item],
            [local_file("a.txt", "m1", size=11)],
            [remote_file("a.txt", "m2", modified_time="2025-02-01T00:00:00.000Z")],
        )["a.txt"]
        assert d.change == ChangeType.CONFLICT
        assert d.action == SyncAction.CONFLICT

    def test_modified_on_both_sides_identically(self, base):
        item, _, _ = base
        d = decide(
            [item],
            [local_file("a.txt", "m1", size=11)],
            [remote_file("a.txt", "m1", modified_time="2025-02-01T00:00:00.000Z")],
        )["a.txt"]
        assert d.action == SyncAction.RECORD
        assert d.item.state == ItemState.SYNCED

    def test_touched_without_content_change(self, base):
        item, _, remote = base
        touched = local_file("a.txt", "m0", mtime=200.0)
        d = decide([item], [touched], [remote])["a.txt"]
        assert d.action == SyncAction.RECORD
        assert d.item.base_local == touched.fingerprint

    def test_deleted_locally(self, base):
        item, _, remote = base
        d = decide([item], [], [remote])["a.txt"]
        assert d.change == ChangeType.LOCAL_DELETED
        assert d.action == SyncAction.DELETE_REMOTE

    def test_deleted_remotely(self, base):
        item, local, _ = base
        d = decide([item], [local], [])["a.txt"]
        assert d.change == ChangeType.REMOTE_DELETED
        assert d.action == SyncAction.DELETE_LOCAL

    def test_deleted_locally_modified_remotely(self, base):
        item, _, _ = base
        changed = remote_file("a.txt", "m1", modified_time="2025-02-01T00:00:00.000Z")
        d = decide([item], [], [changed])["a.txt"]
        assert d.action == SyncAction.CONFLICT

    def test_modified_locally_deleted_remotely(self, base):
        item, _, _ = base
        d = decide([item], [local_file("a.txt", "m1", size=11)], [])["a.txt"]
        assert d.action == SyncAction.CONFLICT

    def test_deleted_on_both_sides_is_forgotten(self, base):
        item, _, _ = base
        d = decide([item], [], [])["a.txt"]
        assert d.action == SyncAction.FORGET
        assert d.item is None

    def test_remote_without_md5_uses_modified_time(self):
        local = local_file("a.txt", "m0")
        remote = remote_file("a.txt", "")
        item = baseline_item(local, remote)

        same = decide([item], [local], [remote])["a.txt"]
        assert same.action == SyncAction.SKIP

        later = remote_file("a.txt", "", modified_time="2025-03-01T00:00:00.000Z")
        changed = decide([item], [local], [later])["a.txt"]
        assert changed.action == SyncAction.DOWNLOAD


class TestUnreadablePaths:
    """Paths the local scan could not read."""

    @pytest.fixture
    def base(self):
        local = local_file("a.txt", "m0")
        remote = remote_file("a.txt", "m0")
        return baseline_item(local, remote), local, remote

    def test_unreadable_file_keeps_remote(self, base):
        item, _, remote = base
        d = decide([item], [], [remote], unreadable=["a.txt"])["a.txt"]

        assert d.action == SyncAction.SKIP
        assert d.change == ChangeType.UNCHANGED
        assert d.item.state == ItemState.ERROR
        assert d.item.last_error == "Local path is unreadable"
        assert d.item.base_local == item.base_local
        assert d.item.base_remote == item.base_remote

    def test_unreadable_file_with_remote_change_waits(self, base):
        item, _, _ = base
        newer = remote_file("a.txt", "m1", modified_time="2025-02-01T00:00:00.000Z")

        d = decide([item], [], [newer], unreadable=["a.txt"])["a.txt"]

        assert d.action == SyncAction.SKIP
        assert d.item.remote == newer.fingerprint
        assert d.item.base_remote == item.base_remote

    def test_paths_below_unreadable_directory(self):
        local = local_file("sub/b.txt", "m0")
        remote = remote_file("sub/b.txt", "m0")

        d = decide(
            [baseline_item(local, remote)],
            [],
            [remote, remote_file("sub/new.txt", "m2")],
            unreadable=["sub"],
        )

        assert d["sub/b.txt"].action == SyncAction.SKIP
        assert d["sub/b.txt"].item.state == ItemState.ERROR
        assert d["sub/new.txt"].action == SyncAction.SKIP

    def test_sibling_with_shared_prefix_is_reconciled(self):
        d = decide(local=[local_file("subway.txt", "m1")], unreadable=["sub"])
        assert d["subway.txt"].action == SyncAction.UPLOAD

    def test_is_within(self):
        assert is_within("sub", ["sub"])
        assert is_within("sub/deep/b.txt", ["sub"])
        assert not is_within("subway.txt", ["sub"])
        assert is_within("a.txt", ["."])
        assert not is_within("a.txt", [])


class TestReconcile:
    """Properties of a whole reconciliation."""

    def test_one_decision_per_path_sorted(self):
        local = local_file("b.txt", "m0")
        remote = remote_file("b.txt", "m0")
        decisions = Reconciler(CONFIG_ID).reconcile(
            {"b.txt": baseline_item(local, remote)},
            {"c.txt": local_file("c.txt", "m1"), "b.txt": local},
            {"a.txt": remote_file("a.txt", "m2"), "b.txt": remote},
        )
        assert [d.relative_path for d in decisions] == ["a.txt", "b.txt", "c.txt"]

    def test_deterministic(self):
        args = (
            {},
            {"a.txt": local_file("a.txt", "m1")},
            {"a.txt": remote_file("a.txt", "m2")},
        )
        first = Reconciler(CONFIG_ID).reconcile(*args)
        second = Reconciler(CONFIG_ID).reconcile(*args)
        assert first == second

    def test_count_actions(self):
        decisions = Reconciler(CONFIG_ID).reconcile(
            {},
            {"a.txt": local_file("a.txt", "m1"), "b.txt": local_file("b.txt", "m1")},
            {"c.txt": remote_file("c.txt", "m2")},
        )
        assert count_actions(decisions) == {"upload": 2, "download": 1}

    def test_end_to_end_scenario_classification(self):
        a_local = local_file("a.txt", "ma")
        a_remote = remote_file("a.txt", "ma")
        b_local = local_file("b.txt", "mb-old")
        b_remote_old = remote_file("b.txt", "mb-old")
        b_remote_new = remote_file(
            "b.txt", "mb-new", modified_time="2025-02-01T00:00:00.000Z"
        )

        d = decide(
            items=[baseline_item(a_local, a_remote), baseline_item(b_local, b_remote_old)],
            local=[a_local, b_local],
            remote=[a_remote, b_remote_new, remote_file("c.txt", "mc")],
        )

        assert d["a.txt"].action == SyncAction.SKIP
        assert d["b.txt"].change == ChangeType.REMOTE_MODIFIED
        assert d["c.txt"].change == ChangeType.REMOTE_ADDED
