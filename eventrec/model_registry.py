"""On-disk registry of trained model versions.

Layout under ``model_dir``:

    CURRENT                     ← name of the published version (one line)
    versions/<version>/         ← TwoStageRecommender.save() output
    .staging-<version>/         ← in-progress training run, never read

A run writes everything into its staging directory, renames it into
``versions/`` and only then swaps ``CURRENT`` (temp file + ``os.replace``).
Readers therefore see either the previous complete version or the new
complete version, never a mixture.
"""
import json
import logging
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from eventrec.config import RecommenderConfig
from eventrec.exceptions import ModelsNotTrainedError
from eventrec.models.two_stage_recommender import SUMMARY_FILE, TwoStageRecommender

logger = logging.getLogger(__name__)

CURRENT_FILE = "CURRENT"
VERSIONS_DIR = "versions"
STAGING_PREFIX = ".staging-"


def new_version_name() -> str:
    """Sortable, collision-free version name: UTC timestamp + short random suffix."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


class ModelRegistry:
    """Versioned model directory with an atomically swapped ``CURRENT`` pointer.

    Args:
        model_dir: Root directory for all versions.
        keep_versions: Published versions kept after pruning (current included).
    """

    def __init__(self, model_dir: Path, keep_versions: int = 3) -> None:
        self.model_dir = Path(model_dir)
        self.keep_versions = max(1, keep_versions)

    @property
    def versions_dir(self) -> Path:
        return self.model_dir / VERSIONS_DIR

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def current_version(self) -> Optional[str]:
        pointer = self.model_dir / CURRENT_FILE
        if not pointer.is_file():
            return None
        version = pointer.read_text().strip()
        return version or None

    def version_dir(self, version: str) -> Path:
        return self.versions_dir / version

    def list_versions(self) -> List[str]:
        if not self.versions_dir.is_dir():
            return []
        return sorted(p.name for p in self.versions_dir.iterdir() if p.is_dir())

    def models_exist(self) -> bool:
        """True iff a published version with both model artifacts is on disk."""
        version = self.current_version()
        if version is None:
            return False
        return TwoStageRecommender.artifacts_present(self.version_dir(version))

    def load_current(self, config: Optional[RecommenderConfig] = None) -> TwoStageRecommender:
        """Load the published version.

        Raises:
            ModelsNotTrainedError: nothing has been published yet.
        """
        version = self.current_version()
        if version is None or not self.models_exist():
            raise ModelsNotTrainedError(f"No trained models in {self.model_dir}")
        return TwoStageRecommender.load(self.version_dir(version), config=config, version=version)

    def read_summary(self, version: Optional[str] = None) -> Optional[Dict]:
        """Training summary stored alongside a version (current by default)."""
        version = version or self.current_version()
        if version is None:
            return None
        path = self.version_dir(version) / SUMMARY_FILE
        if not path.is_file():
            return None
        with open(path) as f:
            return json.load(f)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def stage(self, version: str) -> Path:
        """Create an empty staging directory for a training run."""
        staging = self.model_dir / f"{STAGING_PREFIX}{version}"
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        return staging

    def discard(self, staging: Path) -> None:
        """Remove a staging directory left by a failed or cancelled run."""
        shutil.rmtree(staging, ignore_errors=True)
        logger.info(f"Discarded staging directory {staging}")

    def publish(self, staging: Path, version: str) -> Path:
        """Move a complete staging directory into place and point CURRENT at it."""
        if not TwoStageRecommender.artifacts_present(staging):
            raise FileNotFoundError(f"Staging directory {staging} is missing model artifacts")

        self.versions_dir.mkdir(parents=True, exist_ok=True)
        target = self.version_dir(version)
        os.replace(staging, target)

        tmp = self.model_dir / f"{CURRENT_FILE}.tmp"
        with open(tmp, "w") as f:
            f.write(version + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.model_dir / CURRENT_FILE)

        logger.info(f"Published model version {version}")
        self.prune()
        return target

    def prune(self) -> List[str]:
        """Delete the oldest published versions beyond ``keep_versions``."""
        current = self.current_version()
        versions = self.list_versions()
        stale = [v for v in versions[: max(0, len(versions) - self.keep_versions)] if v != current]
        for version in stale:
            shutil.rmtree(self.version_dir(version), ignore_errors=True)
            logger.info(f"Pruned model version {version}")
        return stale

    def __repr__(self) -> str:
        return f"ModelRegistry({self.model_dir}, current={self.current_version()!r})"
