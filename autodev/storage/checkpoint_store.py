"""Append-only, content-addressed checkpoint storage.

Pure storage: no policy lives here. Checkpoints are created, read, verified
and garbage-collected; they are never mutated. When a directory is given,
each checkpoint is persisted as one JSON file and reloaded at start-up.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from autodev.core.exceptions import CheckpointError
from autodev.core.models import AgentState, Checkpoint

logger = logging.getLogger("autodev.storage.checkpoint_store")


def compute_digest(
    state: AgentState,
    state_metadata: dict[str, Any],
    metadata: dict[str, Any],
) -> str:
    """SHA-256 over the canonical JSON form of a checkpoint's content."""
    canonical = json.dumps(
        {
            "state": state.model_dump(mode="json"),
            "state_metadata": state_metadata,
            "metadata": metadata,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class CheckpointStore:
    """Holds checkpoints keyed by id, ordered by creation time.

    Writes are serialized by an internal lock; readers always get deep
    copies so no caller can alias stored data.
    """

    def __init__(self, storage_dir: Optional[Path] = None, max_checkpoints: Optional[int] = None):
        self.storage_dir = Path(storage_dir) if storage_dir is not None else None
        self.max_checkpoints = max_checkpoints
        self._lock = threading.Lock()
        self._checkpoints: dict[str, Checkpoint] = {}
        self._order: list[str] = []
        if self.storage_dir is not None:
            self._load_existing()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def create(
        self,
        state: AgentState,
        state_metadata: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        label: str = "",
    ) -> Checkpoint:
        """Snapshot ``state`` plus metadata and return the stored checkpoint.

        Raises:
            CheckpointError: If the content cannot be serialized or persisted.
        """
        state_metadata = copy.deepcopy(state_metadata or {})
        metadata = copy.deepcopy(metadata or {})
        try:
            digest = compute_digest(state, state_metadata, metadata)
        except (TypeError, ValueError) as e:
            raise CheckpointError(f"Checkpoint content is not serializable: {e}") from e

        created_at = datetime.now(UTC)
        with self._lock:
            checkpoint_id = self._unique_id(digest, created_at)
            checkpoint = Checkpoint(
                id=checkpoint_id,
                label=label,
                state=state,
                state_metadata=state_metadata,
                metadata=metadata,
                digest=digest,
                created_at=created_at,
            )
            if self.storage_dir is not None:
                self._persist(checkpoint)
            self._checkpoints[checkpoint_id] = checkpoint
            self._order.append(checkpoint_id)

        logger.debug("Checkpoint %s created (%s, label=%r)", checkpoint_id, state, label)
        return copy.deepcopy(checkpoint)

    def prune(
        self,
        keep: Optional[int] = None,
        max_age_seconds: Optional[float] = None,
        protect: Iterable[str] = (),
    ) -> list[str]:
        """Drop checkpoints beyond the count bound or older than the age bound.

        Ids in ``protect`` are never removed. Returns the removed ids.
        """
        keep = keep if keep is not None else self.max_checkpoints
        protected = set(protect)
        removed: list[str] = []
        with self._lock:
            candidates: list[str] = []
            if max_age_seconds is not None:
                cutoff = datetime.now(UTC) - timedelta(seconds=max_age_seconds)
                candidates.extend(
                    cid for cid in self._order if self._checkpoints[cid].created_at < cutoff
                )
            if keep is not None and len(self._order) > keep:
                candidates.extend(self._order[: len(self._order) - keep])

            for cid in dict.fromkeys(candidates):
                if cid in protected or cid not in self._checkpoints:
                    continue
                self._remove_file(cid)
                del self._checkpoints[cid]
                self._order.remove(cid)
                removed.append(cid)

        if removed:
            logger.info("Pruned %d checkpoint(s): %s", len(removed), ", ".join(removed))
        return removed

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get(self, checkpoint_id: str) -> Optional[Checkpoint]:
        with self._lock:
            checkpoint = self._checkpoints.get(checkpoint_id)
        return copy.deepcopy(checkpoint) if checkpoint is not None else None

    def latest(self, n: int = 1) -> list[Checkpoint]:
        """Most recent ``n`` checkpoints, newest first."""
        if n <= 0:
            return []
        with self._lock:
            ids = self._order[-n:]
            items = [self._checkpoints[cid] for cid in reversed(ids)]
        return copy.deepcopy(items)

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._order)

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)

    def __contains__(self, checkpoint_id: object) -> bool:
        with self._lock:
            return checkpoint_id in self._checkpoints

    @staticmethod
    def verify(checkpoint: Checkpoint) -> bool:
        """True when the stored digest matches the checkpoint's content."""
        try:
            digest = compute_digest(
                checkpoint.state, checkpoint.state_metadata, checkpoint.metadata
            )
        except (TypeError, ValueError):
            return False
        return digest == checkpoint.digest

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _unique_id(self, digest: str, created_at: datetime) -> str:
        base = f"cp-{digest[:16]}-{created_at.strftime('%Y%m%dT%H%M%S%f')}"
        candidate = base
        suffix = 1
        while candidate in self._checkpoints:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    def _path_for(self, checkpoint_id: str) -> Path:
        assert self.storage_dir is not None
        return self.storage_dir / f"{checkpoint_id}.json"

    def _persist(self, checkpoint: Checkpoint) -> None:
        target = self._path_for(checkpoint.id)
        tmp = target.with_suffix(".json.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(checkpoint.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, target)
        except OSError as e:
            raise CheckpointError(f"Failed to persist checkpoint {checkpoint.id}: {e}") from e

    def _remove_file(self, checkpoint_id: str) -> None:
        if self.storage_dir is None:
            return
        try:
            self._path_for(checkpoint_id).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete checkpoint file %s: %s", checkpoint_id, e)

    def _load_existing(self) -> None:
        assert self.storage_dir is not None
        if not self.storage_dir.is_dir():
            return
        loaded: list[Checkpoint] = []
        for path in sorted(self.storage_dir.glob("cp-*.json")):
            try:
                loaded.append(Checkpoint.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning("Skipping unreadable checkpoint file %s: %s", path.name, e)
        loaded.sort(key=lambda cp: cp.created_at)
        for cp in loaded:
            self._checkpoints[cp.id] = cp
            self._order.append(cp.id)
        if loaded:
            logger.info("Loaded %d checkpoint(s) from %s", len(loaded), self.storage_dir)
