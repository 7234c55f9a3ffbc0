"""
MeshAuditLog: JSONL-based audit logging for mesh activity.

Writes one JSON object per line to {audit_dir}/{mesh_id}/audit.jsonl
Every event includes: timestamp, event_type, mesh_id, source, and event-specific data.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from dagmesh.models import TraceEvent

logger = logging.getLogger("dagmesh.audit")


class MeshAuditLog:
    """
    Audit logger for mesh trace events.

    Writes JSONL format to {base_dir}/{mesh_id}/audit.jsonl
    """

    def __init__(self, mesh_id: str, base_dir: Optional[Path] = None):
        """
        Args:
            mesh_id: Identifier of the mesh being audited
            base_dir: Base directory for logs (defaults to ~/dagmesh-logs)
        """
        self.mesh_id = mesh_id
        self.base_dir = Path(base_dir).expanduser() if base_dir else Path.home() / "dagmesh-logs"
        self.log_dir = self.base_dir / mesh_id

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            logger.error(f"Failed to create log directory {self.log_dir}: {e}")
            raise

        self.log_path = self.log_dir / "audit.jsonl"
        try:
            self.file_handle = open(self.log_path, 'a', encoding='utf-8')
        except Exception as e:
            logger.error(f"Failed to open audit log file {self.log_path}: {e}")
            raise

    def _write_event(self, event_type: str, source: str, data: Optional[Dict[str, Any]] = None) -> None:
        record = {
            "timestamp": datetime.now().isoformat(),
            "event_type": event_type,
            "mesh_id": self.mesh_id,
            "source": source,
        }
        if data:
            record.update(data)

        if self.file_handle.closed:
            return
        try:
            self.file_handle.write(json.dumps(record, default=str) + '\n')
            self.file_handle.flush()
        except Exception as e:
            logger.error(f"Failed to write audit event {event_type}: {e}")

    def record(self, event: TraceEvent) -> None:
        """Append a mesh trace event."""
        self._write_event(event.event_type, event.source, event.payload)

    def workflow_finished(self, workflow_id: str, status: str, execution_time: float, errors: list) -> None:
        """
        Log the outcome of an orchestrated workflow.

        Args:
            workflow_id: Mesh workflow id
            status: completed | failed | cancelled
            execution_time: Wall time in seconds
            errors: Error messages collected during the run
        """
        self._write_event(
            event_type="workflow_finished",
            source="orchestrator",
            data={
                "workflow_id": workflow_id,
                "status": status,
                "execution_time": execution_time,
                "errors": errors,
            },
        )

    def snapshot_restored(self, snapshot_id: str, success: bool, errors: list) -> None:
        self._write_event(
            event_type="snapshot_restored",
            source="mesh",
            data={"snapshot_id": snapshot_id, "success": success, "errors": errors},
        )

    def close(self) -> None:
        try:
            if self.file_handle and not self.file_handle.closed:
                self.file_handle.close()
        except Exception as e:
            logger.error(f"Failed to close audit log file: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
