"""
dagmesh Snapshot Manager
========================

Holds point-in-time copies of mesh state for recovery, with bounded
retention and an integrity hash over the serialized content.

Design decisions
----------------
* **By value** -- DAG runtime records, executions and subscriptions are deep
  copies, so later mutation of live state never leaks into a snapshot.
* **Handles stay private** -- live agent objects are kept on the snapshot's
  private attribute and never serialized; a snapshot loaded from disk
  carries agent summaries only.
* **Atomic writes** -- ``save`` writes a temporary file next to the target
  and ``os.replace()``s it; blocking I/O runs in ``asyncio.to_thread()``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from dagmesh.models import AgentSummary, DAGInstance, OrchestrationResult, Snapshot

logger = logging.getLogger("dagmesh.checkpoint")

__snapshot_version__ = 1


def compute_integrity_hash(snapshot: Snapshot) -> str:
    """sha256 over the snapshot content, excluding the hash field itself."""
    content = snapshot.model_dump(exclude={"integrity_hash"})
    encoded = json.dumps(content, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def verify_integrity(snapshot: Snapshot) -> bool:
    return bool(snapshot.integrity_hash) and snapshot.integrity_hash == compute_integrity_hash(snapshot)


class SnapshotManager:
    """In-memory snapshot store, oldest evicted first beyond ``max_snapshots``.

    Files written by ``save`` live in ``<snapshot_dir>/<snapshot_id>.json``.
    """

    def __init__(self, max_snapshots: int = 20, snapshot_dir: Optional[str | Path] = None):
        if max_snapshots < 1:
            raise ValueError("max_snapshots must be at least 1")
        self.max_snapshots = max_snapshots
        self.snapshot_dir = Path(snapshot_dir).expanduser() if snapshot_dir else None
        self._snapshots: "OrderedDict[str, Snapshot]" = OrderedDict()

    def create(
        self,
        agents: List[AgentSummary],
        handles: Dict[str, Any],
        dags: Dict[str, DAGInstance],
        executions: Dict[str, OrchestrationResult],
        subscriptions: Dict[str, List[str]],
    ) -> Snapshot:
        snapshot = Snapshot(
            agents=[a.model_copy(deep=True) for a in agents],
            dags={k: v.model_copy(deep=True) for k, v in dags.items()},
            executions={k: v.model_copy(deep=True) for k, v in executions.items()},
            subscriptions={k: list(v) for k, v in subscriptions.items()},
        )
        snapshot._handles = dict(handles)
        snapshot.integrity_hash = compute_integrity_hash(snapshot)
        self._store(snapshot)
        logger.info(
            f"Snapshot {snapshot.id} created ({len(snapshot.agents)} agents, {len(snapshot.dags)} DAGs)"
        )
        return snapshot

    def _store(self, snapshot: Snapshot) -> None:
        self._snapshots[snapshot.id] = snapshot
        self._snapshots.move_to_end(snapshot.id)
        while len(self._snapshots) > self.max_snapshots:
            evicted, _ = self._snapshots.popitem(last=False)
            logger.debug(f"Snapshot {evicted} evicted")

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        return self._snapshots.get(snapshot_id)

    def list(self) -> List[Snapshot]:
        """Snapshots in creation order, oldest first."""
        return list(self._snapshots.values())

    def delete(self, snapshot_id: str) -> bool:
        return self._snapshots.pop(snapshot_id, None) is not None

    def __len__(self) -> int:
        return len(self._snapshots)

    # ------------------------------------------------------------------
    # File store
    # ------------------------------------------------------------------

    def _path_for(self, snapshot_id: str, directory: Optional[Path]) -> Path:
        base = directory or self.snapshot_dir
        if base is None:
            raise ValueError("No snapshot directory configured")
        return base / f"{snapshot_id}.json"

    async def save(self, snapshot_id: str, directory: Optional[str | Path] = None) -> Path:
        """Write a snapshot to disk atomically.

        Raises:
            KeyError: If the snapshot is unknown.
            ValueError: If no directory is given or configured.
        """
        snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None:
            raise KeyError(snapshot_id)
        target = self._path_for(snapshot_id, Path(directory).expanduser() if directory else None)
        envelope = {
            "__snapshot_version__": __snapshot_version__,
            "__timestamp__": datetime.now().isoformat(),
            "snapshot": snapshot.model_dump(),
        }

        def _atomic_write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = str(target) + ".tmp"
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(envelope, f, indent=2, default=str)
                os.replace(tmp_path, str(target))
            except BaseException:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise

        await asyncio.to_thread(_atomic_write)
        logger.info("Snapshot saved: %s", target.name)
        return target

    async def load(self, path: str | Path) -> Snapshot:
        """Read a snapshot file into the store. The result carries no agent handles.

        Raises:
            OSError, ValueError: If the file is missing or not a snapshot.
        """
        source = Path(path).expanduser()

        def _load() -> Snapshot:
            with open(source, encoding="utf-8") as fh:
                data = json.load(fh)
            if data.get("__snapshot_version__") != __snapshot_version__:
                raise ValueError(f"Unsupported snapshot version in {source.name}")
            return Snapshot.model_validate(data["snapshot"])

        snapshot = await asyncio.to_thread(_load)
        if not verify_integrity(snapshot):
            logger.warning(f"Snapshot {snapshot.id} loaded from {source.name} fails its integrity check")
        self._store(snapshot)
        logger.info("Snapshot loaded: %s", source.name)
        return snapshot
