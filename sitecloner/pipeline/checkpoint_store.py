"""One JSON checkpoint file per job under <data_dir>/checkpoints/."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from sitecloner.errors import CorruptStateError, ValidationError
from sitecloner.models.checkpoint import Checkpoint, checkpoint_adapter
from sitecloner.utils.files import atomic_write_json

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class CheckpointStore:
    def __init__(self, checkpoints_dir: Path):
        self.checkpoints_dir = Path(checkpoints_dir)

    def path_for(self, job_id: str) -> Path:
        if not job_id or not JOB_ID_PATTERN.match(job_id):
            raise ValidationError(f"Invalid job id: {job_id!r}")
        return self.checkpoints_dir / f"{job_id}.json"

    def save(self, checkpoint: Checkpoint) -> None:
        """Write a checkpoint, replacing any previous one for the same job."""
        atomic_write_json(self.path_for(checkpoint.job_id), checkpoint.model_dump(mode="json"))
        logger.debug("Saved %s checkpoint for %s", checkpoint.phase, checkpoint.job_id)

    def load(self, job_id: str) -> Checkpoint | None:
        path = self.path_for(job_id)
        if not path.exists():
            return None
        try:
            return checkpoint_adapter.validate_json(path.read_bytes())
        except (OSError, PydanticValidationError) as e:
            raise CorruptStateError(f"Checkpoint for {job_id} is unreadable: {e}") from e

    def exists(self, job_id: str) -> bool:
        return self.path_for(job_id).exists()

    def delete(self, job_id: str) -> bool:
        path = self.path_for(job_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Deleted checkpoint for %s", job_id)
        return True

    def list_job_ids(self) -> list[str]:
        if not self.checkpoints_dir.exists():
            return []
        return sorted(p.stem for p in self.checkpoints_dir.glob("*.json"))
