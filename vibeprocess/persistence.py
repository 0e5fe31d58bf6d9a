"""Persistence backends for orchestrator state."""

from abc import ABC, abstractmethod
import logging
import os
import tempfile
from typing import Dict, Optional

import yaml

logger = logging.getLogger(__name__)


class StatePersistence(ABC):
    """Interface for loading and saving the state document."""

    @abstractmethod
    def load(self) -> Optional[Dict[str, object]]:
        """Load the stored state document.

        Returns:
            The stored document, or None if nothing has been stored yet.
        """
        return None

    @abstractmethod
    def save(self, document: Dict[str, object]) -> None:
        """Store the state document.

        Args:
            document: Plain document built by ``State.to_document``
        """


class NoopPersistence(StatePersistence):
    """Persistence that keeps nothing."""

    def load(self) -> Optional[Dict[str, object]]:
        return None

    def save(self, document: Dict[str, object]) -> None:
        return None


class YamlStatePersistence(StatePersistence):
    """Persistence backed by a YAML file."""

    def __init__(self, path: str) -> None:
        """Initialize YAML persistence.

        Args:
            path: State file path
        """
        self.path = os.path.expanduser(path)

    def load(self) -> Optional[Dict[str, object]]:
        """Load the state file.

        A missing or unparsable file yields None so that the caller starts
        from defaults.
        """
        if not os.path.isfile(self.path):
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                document = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return None
        if not isinstance(document, dict):
            logger.warning("Ignoring malformed state file %s", self.path)
            return None
        return document

    def save(self, document: Dict[str, object]) -> None:
        """Write the state file atomically with owner-only permissions.

        Raises:
            OSError: If the file cannot be written
            yaml.YAMLError: If the document cannot be serialized
        """
        state_dir = os.path.dirname(self.path) or '.'
        os.makedirs(state_dir, exist_ok=True)
        data = yaml.safe_dump(document, default_flow_style=False)

        fd, tmp_path = tempfile.mkstemp(dir=state_dir, prefix='.state-')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(data)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug("Saved state to %s", self.path)
