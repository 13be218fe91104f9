"""Checkpoint stores for pausing and resuming workflow sessions."""

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .models import WorkflowState

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """Raised when a checkpoint cannot be written or read."""
    pass


class CheckpointNotFoundError(CheckpointError):
    """Raised when a requested checkpoint does not exist."""
    pass


class CheckpointStore:
    """
    Persists WorkflowState snapshots keyed by session and stage.

    Writes for the same session are serialized; different sessions never
    block each other.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            if session_id not in self._locks:
                self._locks[session_id] = threading.Lock()
            return self._locks[session_id]

    def save(self, state: WorkflowState) -> str:
        """Persist ``state`` and return the checkpoint's location."""
        with self._lock_for(state.session_id):
            try:
                payload = json.dumps(state.to_dict(), indent=2, default=str)
            except (TypeError, ValueError) as e:
                raise CheckpointError(f"Could not serialize session {state.session_id}: {e}") from e
            location = self._write(state.session_id, int(state.current_stage), payload)
        logger.info("Checkpoint saved for session %s at stage %s", state.session_id, state.current_stage.label)
        return location

    def load(self, session_id: str, stage: Optional[int] = None) -> WorkflowState:
        """
        Load a session's checkpoint.

        Args:
            session_id: Session to load
            stage: Specific stage; latest when omitted

        Raises:
            CheckpointNotFoundError: If no matching checkpoint exists
            CheckpointError: If the checkpoint is unreadable
        """
        with self._lock_for(session_id):
            stages = self.list_stages(session_id)
            if not stages or (stage is not None and stage not in stages):
                raise CheckpointNotFoundError(f"No checkpoint for session {session_id}")
            payload = self._read(session_id, stage if stage is not None else max(stages))
        return self._decode(payload, session_id)

    @staticmethod
    def _decode(payload: str, source: str) -> WorkflowState:
        try:
            return WorkflowState.from_dict(json.loads(payload))
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"Checkpoint {source} is corrupt: {e}") from e

    def list_stages(self, session_id: str) -> List[int]:
        raise NotImplementedError

    def _write(self, session_id: str, stage: int, payload: str) -> str:
        raise NotImplementedError

    def _read(self, session_id: str, stage: int) -> str:
        raise NotImplementedError


class InMemoryCheckpointStore(CheckpointStore):
    """Keeps serialized checkpoints in a dict; useful for tests and notebooks."""

    def __init__(self):
        super().__init__()
        self._payloads: Dict[str, Dict[int, str]] = {}

    def list_stages(self, session_id: str) -> List[int]:
        return sorted(self._payloads.get(session_id, {}))

    def _write(self, session_id: str, stage: int, payload: str) -> str:
        self._payloads.setdefault(session_id, {})[stage] = payload
        return f"memory://{session_id}/{stage}"

    def _read(self, session_id: str, stage: int) -> str:
        return self._payloads[session_id][stage]


class FileCheckpointStore(CheckpointStore):
    """
    JSON checkpoints on disk named ``checkpoint-{session}-{stage}.json``.

    Files are written to a unique temporary name and atomically renamed.
    Stores opened on the same directory share their per-session locks.
    """

    _shared_locks: Dict[str, threading.Lock] = {}
    _shared_guard = threading.Lock()

    def __init__(self, directory: Path = Path("./checkpoints")):
        super().__init__()
        self.directory = Path(directory)

    def _lock_for(self, session_id: str) -> threading.Lock:
        key = f"{self.directory.resolve()}::{session_id}"
        with FileCheckpointStore._shared_guard:
            return FileCheckpointStore._shared_locks.setdefault(key, threading.Lock())

    def path_for(self, session_id: str, stage: int) -> Path:
        return self.directory / f"checkpoint-{session_id}-{stage}.json"

    def list_stages(self, session_id: str) -> List[int]:
        if not self.directory.exists():
            return []
        pattern = re.compile(rf"^checkpoint-{re.escape(session_id)}-(\d+)\.json$")
        stages = []
        for path in self.directory.iterdir():
            match = pattern.match(path.name)
            if match:
                stages.append(int(match.group(1)))
        return sorted(stages)

    def _write(self, session_id: str, stage: int, payload: str) -> str:
        path = self.path_for(session_id, stage)
        tmp_path = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.directory, prefix=path.name + ".", suffix=".tmp", delete=False
            ) as f:
                tmp_path = f.name
                f.write(payload)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise CheckpointError(f"Could not write checkpoint {path}: {e}") from e
        return str(path)

    def _read(self, session_id: str, stage: int) -> str:
        return self.read_file(self.path_for(session_id, stage))

    @staticmethod
    def read_file(path: Path) -> str:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError as e:
            raise CheckpointNotFoundError(f"Checkpoint {path} not found") from e
        except OSError as e:
            raise CheckpointError(f"Could not read checkpoint {path}: {e}") from e

    def load_file(self, path: Path) -> WorkflowState:
        """Load a checkpoint from an explicit file path."""
        return self._decode(self.read_file(Path(path)), str(path))
