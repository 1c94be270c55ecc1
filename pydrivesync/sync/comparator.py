"""Three-way reconciliation of local, remote and baseline state."""

from collections import Counter
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .lister import RemoteFile
from .scanner import LocalFile
from .state import ItemState, SyncItem


class ChangeType(str, Enum):
    """What happened to a path since the last successful transfer."""

    UNCHANGED = "unchanged"
    LOCAL_ADDED = "local_added"
    LOCAL_MODIFIED = "local_modified"
    LOCAL_DELETED = "local_deleted"
    REMOTE_ADDED = "remote_added"
    REMOTE_MODIFIED = "remote_modified"
    REMOTE_DELETED = "remote_deleted"
    CONFLICT = "conflict"


class SyncAction(str, Enum):
    """Actions that can be taken during sync."""

    UPLOAD = "upload"
    """Upload local file to remote"""

    DOWNLOAD = "download"
    """Download remote file to local"""

    DELETE_LOCAL = "delete_local"
    """Delete local file"""

    DELETE_REMOTE = "delete_remote"
    """Delete remote file"""

    CONFLICT = "conflict"
    """Both sides changed, handed to the conflict resolver"""

    SKIP = "skip"
    """Skip file (no action needed)"""

    RECORD = "record"
    """Adopt the current fingerprints as the new baseline without a transfer"""

    FORGET = "forget"
    """Path is gone on both sides, drop its item"""


TRANSFER_ACTIONS = frozenset(
    {
        SyncAction.UPLOAD,
        SyncAction.DOWNLOAD,
        SyncAction.DELETE_LOCAL,
        SyncAction.DELETE_REMOTE,
    }
)


@dataclass
class SyncDecision:
    """Represents a decision about how to sync a file."""

    relative_path: str
    """Relative path of the file"""

    change: ChangeType
    """Classification of the change"""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    local_file: Optional[LocalFile]
    """Local file (if exists)"""

    remote_file: Optional[RemoteFile]
    """Remote file (if exists)"""

    item: Optional[SyncItem]
    """Item to persist for this path (None when the item is forgotten)"""


class Reconciler:
    """Compares baseline, local and remote snapshots path by path.

    The reconciler is pure: it never touches the filesystem, the store or
    the network, and the same inputs always produce the same decisions.
    """

    def __init__(self, config_id: int):
        self.config_id = config_id

    def reconcile(
        self,
        items: Mapping[str, SyncItem],
        local_files: Mapping[str, LocalFile],
        remote_files: Mapping[str, RemoteFile],
        unreadable: Collection[str] = (),
    ) -> list[SyncDecision]:
        """Produce exactly one decision per known path.

        Args:
            items: Stored items (baselines) by relative path
            local_files: Local snapshot by relative path
            remote_files: Remote snapshot by relative path
            unreadable: Local files and directories the scan could not read;
                paths at or below them keep their baseline and are skipped

        Returns:
            Decisions sorted by relative path
        """
        all_paths = set(items) | set(local_files) | set(remote_files)
        decisions = []
        for path in sorted(all_paths):
            item, remote = items.get(path), remote_files.get(path)
            if is_within(path, unreadable):
                decisions.append(self._unreadable(path, item, remote))
            else:
                decisions.append(
                    self._decide(path, item, local_files.get(path), remote)
                )
        return decisions

    def _unreadable(
        self, path: str, item: Optional[SyncItem], remote: Optional[RemoteFile]
    ) -> SyncDecision:
        updated = SyncItem(
            config_id=self.config_id,
            path=path,
            local=item.local if item else None,
            remote=remote.fingerprint if remote else None,
            base_local=item.base_local if item else None,
            base_remote=item.base_remote if item else None,
            state=ItemState.ERROR,
            last_error="Local path is unreadable",
        )
        return SyncDecision(
            relative_path=path,
            change=ChangeType.UNCHANGED,
            action=SyncAction.SKIP,
            reason="Local path is unreadable",
            local_file=None,
            remote_file=remote,
            item=updated,
        )

    def _decide(
        self,
        path: str,
        item: Optional[SyncItem],
        local: Optional[LocalFile],
        remote: Optional[RemoteFile],
    ) -> SyncDecision:
        def decision(
            change: ChangeType, action: SyncAction, reason: str
        ) -> SyncDecision:
            return SyncDecision(
                relative_path=path,
                change=change,
                action=action,
                reason=reason,
                local_file=local,
                remote_file=remote,
                item=self._updated_item(path, item, local, remote, action),
            )

        if item is None or not item.has_baseline:
            if local and not remote:
                return decision(
                    ChangeType.LOCAL_ADDED, SyncAction.UPLOAD, "New local file"
                )
            if remote and not local:
                return decision(
                    ChangeType.REMOTE_ADDED, SyncAction.DOWNLOAD, "New remote file"
                )
            if local and remote:
                if self._same_content(local, remote):
                    return decision(
                        ChangeType.UNCHANGED,
                        SyncAction.RECORD,
                        "Added on both sides with identical content",
                    )
                return decision(
                    ChangeType.CONFLICT,
                    SyncAction.CONFLICT,
                    "Added on both sides with different content",
                )
            return decision(
                ChangeType.UNCHANGED, SyncAction.FORGET, "Untracked and absent"
            )

        if not local and not remote:
            return decision(
                ChangeType.UNCHANGED, SyncAction.FORGET, "Deleted on both sides"
            )

        if local is None and remote is not None:
            if self._remote_changed(item, remote):
                return decision(
                    ChangeType.CONFLICT,
                    SyncAction.CONFLICT,
                    "Deleted locally but modified remotely",
                )
            return decision(
                ChangeType.LOCAL_DELETED,
                SyncAction.DELETE_REMOTE,
                "Deleted locally",
            )

        if remote is None and local is not None:
            if self._local_changed(item, local):
                return decision(
                    ChangeType.CONFLICT,
                    SyncAction.CONFLICT,
                    "Modified locally but deleted remotely",
                )
            return decision(
                ChangeType.REMOTE_DELETED,
                SyncAction.DELETE_LOCAL,
                "Deleted remotely",
            )

        local_changed = self._local_changed(item, local)
        remote_changed = self._remote_changed(item, remote)

        if local_changed and remote_changed:
            if self._same_content(local, remote):
                return decision(
                    ChangeType.UNCHANGED,
                    SyncAction.RECORD,
                    "Modified on both sides with identical content",
                )
            return decision(
                ChangeType.CONFLICT, SyncAction.CONFLICT, "Modified on both sides"
            )
        if local_changed:
            return decision(
                ChangeType.LOCAL_MODIFIED, SyncAction.UPLOAD, "Modified locally"
            )
        if remote_changed:
            return decision(
                ChangeType.REMOTE_MODIFIED, SyncAction.DOWNLOAD, "Modified remotely"
            )

        if item.base_local != local.fingerprint or item.base_remote != remote.fingerprint:
            # Touched without a content change, refresh the baseline
            return decision(
                ChangeType.UNCHANGED, SyncAction.RECORD, "Metadata changed only"
            )
        return decision(ChangeType.UNCHANGED, SyncAction.SKIP, "In sync")

    @staticmethod
    def _local_changed(item: SyncItem, local: LocalFile) -> bool:
        return item.base_local is None or local.md5 != item.base_local.md5

    @staticmethod
    def _remote_changed(item: SyncItem, remote: RemoteFile) -> bool:
        base = item.base_remote
        if base is None:
            return True
        fingerprint = remote.fingerprint
        return (
            fingerprint.file_id != base.file_id
            or fingerprint.content_key != base.content_key
        )

    @staticmethod
    def _same_content(local: LocalFile, remote: RemoteFile) -> bool:
        return bool(remote.md5) and local.md5 == remote.md5

    def _updated_item(
        self,
        path: str,
        item: Optional[SyncItem],
        local: Optional[LocalFile],
        remote: Optional[RemoteFile],
        action: SyncAction,
    ) -> Optional[SyncItem]:
        if action == SyncAction.FORGET:
            return None

        updated = SyncItem(
            config_id=self.config_id,
            path=path,
            local=local.fingerprint if local else None,
            remote=remote.fingerprint if remote else None,
            base_local=item.base_local if item else None,
            base_remote=item.base_remote if item else None,
        )
        if action in (SyncAction.SKIP, SyncAction.RECORD):
            updated.base_local = updated.local
            updated.base_remote = updated.remote
            updated.state = ItemState.SYNCED
        elif action == SyncAction.CONFLICT:
            updated.state = ItemState.CONFLICT
        else:
            updated.state = ItemState.PENDING
        return updated


def is_within(path: str, prefixes: Collection[str]) -> bool:
    """Check whether a relative path equals or lies below one of the prefixes.

    Examples:
        >>> is_within("sub/b.txt", ["sub"])
        True
        >>> is_within("subway.txt", ["sub"])
        False
    """
    return any(
        prefix in ("", ".") or path == prefix or path.startswith(prefix + "/")
        for prefix in prefixes
    )

def count_actions(decisions: list[SyncDecision]) -> dict[str, int]:
    """Count decisions per action, e.g. ``{"upload": 2, "skip": 5}``."""
    return dict(Counter(d.action.value for d in decisions))
