"""Conflict resolution and transfer planning.

A conflict is a path that changed on both sides since the last successful
transfer (including delete-vs-modify). The resolver turns it into an
ordered :class:`TransferJob` according to the configured strategy; it
never prompts, because the engine runs unattended.
"""

import hashlib
import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional

from ..utils import compute_md5
from .comparator import SyncAction, SyncDecision
from .lister import RemoteFile

logger = logging.getLogger(__name__)


class ConflictStrategy(str, Enum):
    """How conflicting changes are resolved."""

    RENAME = "rename"
    """Keep both versions; the remote one is saved under a conflict name"""

    LOCAL_WINS = "local-wins"
    """Overwrite the remote version with the local one"""

    REMOTE_WINS = "remote-wins"
    """Overwrite the local version with the remote one"""


def parse_conflict_strategy(value: Optional[str]) -> ConflictStrategy:
    """Parse a conflict strategy name.

    Accepts the canonical names plus ``_`` and no-separator spellings; an
    empty value means the default ``rename``.

    Examples:
        >>> parse_conflict_strategy("local_wins")
        <ConflictStrategy.LOCAL_WINS: 'local-wins'>
        >>> parse_conflict_strategy("")
        <ConflictStrategy.RENAME: 'rename'>

    Raises:
        ValueError: If the name is unknown
    """
    normalized = (value or "").strip().lower()
    if normalized in ("", "rename"):
        return ConflictStrategy.RENAME
    if normalized in ("local-wins", "local_wins", "localwins"):
        return ConflictStrategy.LOCAL_WINS
    if normalized in ("remote-wins", "remote_wins", "remotewins"):
        return ConflictStrategy.REMOTE_WINS
    raise ValueError(
        f"unknown conflict strategy: {value} (valid: rename, local-wins, remote-wins)"
    )


@dataclass
class TransferStep:
    """One transfer within a job."""

    action: SyncAction
    """UPLOAD, DOWNLOAD, DELETE_LOCAL or DELETE_REMOTE"""

    relative_path: str
    """Local path written or read, and the item updated on success"""

    file_id: Optional[str] = None
    """Remote object to download, overwrite or delete (None creates a new one)"""

    remote_file: Optional[RemoteFile] = None
    """Remote file being downloaded, used to record its fingerprint"""


@dataclass
class TransferJob:
    """Ordered transfer steps for one reconciled path."""

    decision: SyncDecision
    steps: list[TransferStep] = field(default_factory=list)

    strategy: Optional[ConflictStrategy] = None
    """Strategy applied, set for conflict resolutions only"""

    resolution: str = ""
    """Human-readable outcome of the conflict resolution"""

    @property
    def relative_path(self) -> str:
        return self.decision.relative_path

    @property
    def is_conflict(self) -> bool:
        return self.strategy is not None

    @classmethod
    def from_decision(cls, decision: SyncDecision) -> "TransferJob":
        """Build the job for a plain (non-conflict) transfer decision."""
        remote = decision.remote_file
        file_id = remote.id if remote else None
        step = TransferStep(
            action=decision.action,
            relative_path=decision.relative_path,
            file_id=file_id,
            remote_file=remote if decision.action == SyncAction.DOWNLOAD else None,
        )
        return cls(decision=decision, steps=[step])


def conflict_copy_name(relative_path: str, remote: RemoteFile, attempt: int = 1) -> str:
    """Name of the local copy that keeps the remote side of a conflict.

    The name embeds the first 8 hex digits of the remote md5 (or of a hash of
    the file ID and modification time when Drive reports no md5), so the
    same conflicting pair always gets the same name.

    Examples:
        ``docs/report.pdf`` -> ``docs/report.conflict-1a2b3c4d.pdf``
    """
    token = remote.md5
    if not token:
        token = hashlib.sha256(
            f"{remote.id}:{remote.modified_time}".encode()
        ).hexdigest()
    tag = token[:8]
    if attempt > 1:
        tag = f"{tag}-{attempt}"

    path = PurePosixPath(relative_path)
    name = f"{path.stem}.conflict-{tag}{path.suffix}"
    return str(path.with_name(name))


class ConflictResolver:
    """Turns conflict decisions into transfer jobs."""

    def __init__(
        self,
        strategy: ConflictStrategy = ConflictStrategy.RENAME,
        local_root: Optional[Path] = None,
        taken_paths: Optional[Collection[str]] = None,
    ):
        """Initialize the resolver.

        Args:
            strategy: Conflict strategy to apply
            local_root: Sync root, used to check conflict copy names
            taken_paths: Relative paths already known locally or remotely
        """
        self.strategy = strategy
        self.local_root = local_root
        self.taken_paths = set(taken_paths or ())

    def resolve(self, decision: SyncDecision) -> TransferJob:
        """Plan the transfers resolving one conflict.

        Args:
            decision: Decision with action CONFLICT

        Returns:
            TransferJob whose steps run in order
        """
        path = decision.relative_path
        local = decision.local_file
        remote = decision.remote_file
        job = TransferJob(decision=decision, strategy=self.strategy)

        if local is not None and remote is not None:
            if self.strategy == ConflictStrategy.LOCAL_WINS:
                job.steps = [TransferStep(SyncAction.UPLOAD, path, file_id=remote.id)]
                job.resolution = "local version uploaded over remote"
            elif self.strategy == ConflictStrategy.REMOTE_WINS:
                job.steps = [
                    TransferStep(
                        SyncAction.DOWNLOAD, path, file_id=remote.id, remote_file=remote
                    )
                ]
                job.resolution = "remote version downloaded over local"
            else:
                copy_path = self._free_copy_path(path, remote)
                job.steps = [
                    TransferStep(
                        SyncAction.DOWNLOAD,
                        copy_path,
                        file_id=remote.id,
                        remote_file=remote,
                    ),
                    TransferStep(SyncAction.UPLOAD, path, file_id=remote.id),
                    TransferStep(SyncAction.UPLOAD, copy_path),
                ]
                job.resolution = f"remote version kept as {copy_path}"

        elif remote is not None:
            # Deleted locally, modified remotely
            if self.strategy == ConflictStrategy.LOCAL_WINS:
                job.steps = [
                    TransferStep(SyncAction.DELETE_REMOTE, path, file_id=remote.id)
                ]
                job.resolution = "remote version deleted"
            else:
                job.steps = [
                    TransferStep(
                        SyncAction.DOWNLOAD, path, file_id=remote.id, remote_file=remote
                    )
                ]
                job.resolution = "remote version restored locally"

        elif local is not None:
            # Modified locally, deleted remotely
            if self.strategy == ConflictStrategy.REMOTE_WINS:
                job.steps = [TransferStep(SyncAction.DELETE_LOCAL, path)]
                job.resolution = "local version deleted"
            else:
                job.steps = [TransferStep(SyncAction.UPLOAD, path)]
                job.resolution = "local version restored remotely"

        logger.info(f"Conflict on {path} ({self.strategy.value}): {job.resolution}")
        return job

    def _free_copy_path(self, path: str, remote: RemoteFile) -> str:
        """First conflict copy name not taken by different content."""
        attempt = 1
        while True:
            candidate = conflict_copy_name(path, remote, attempt)
            if not self._is_taken(candidate, remote):
                self.taken_paths.add(candidate)
                return candidate
            attempt += 1

    def _is_taken(self, candidate: str, remote: RemoteFile) -> bool:
        if self.local_root is not None:
            local_path = self.local_root / candidate
            if local_path.exists():
                # A leftover copy of the same remote content can be reused
                if remote.md5 and local_path.is_file():
                    try:
                        return compute_md5(local_path) != remote.md5
                    except OSError:
                        return True
                return True
        return candidate in self.taken_paths
