"""
Collector credentials in config.toml.

Registration writes ``server_url``, ``collector_id`` and ``api_key`` into the
``[collector]`` table of the user's config file. The file is rewritten with
tomlkit so comments and the other sections survive, replaced atomically,
and left readable by the owner only.
"""

import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import tomlkit
from tomlkit.exceptions import TOMLKitError

from aiobscura.config import get_config_path
from aiobscura.exceptions import ConfigError

logger = logging.getLogger(__name__)

CREDENTIAL_KEYS = ("collector_id", "api_key")


@dataclass
class StoredCredential:
    server_url: str
    collector_id: str
    api_key: str
    workspace_id: Optional[str] = None


class CredentialStore:
    """Reads and writes collector credentials in one TOML config file."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or get_config_path()

    def _load_document(self) -> tomlkit.TOMLDocument:
        if not self.config_path.exists():
            return tomlkit.document()
        try:
            return tomlkit.parse(self.config_path.read_text(encoding="utf-8"))
        except TOMLKitError as e:
            raise ConfigError(f"Invalid TOML in {self.config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read {self.config_path}: {e}") from e

    def get(self) -> Optional[StoredCredential]:
        """Credentials currently in the config file, if complete."""
        collector = self._load_document().get("collector")
        if collector is None:
            return None
        if not all(collector.get(key) for key in CREDENTIAL_KEYS):
            return None
        return StoredCredential(
            server_url=str(collector.get("server_url", "")),
            collector_id=str(collector["collector_id"]),
            api_key=str(collector["api_key"]),
            workspace_id=collector.get("workspace_id"),
        )

    def has_credentials(self) -> bool:
        return self.get() is not None

    def store(
        self,
        server_url: str,
        collector_id: str,
        api_key: str,
        workspace_id: Optional[str] = None,
        force: bool = False,
    ) -> None:
        """
        Write credentials and enable the collector.

        Raises:
            ConfigError: If credentials already exist and ``force`` is False,
                or the file cannot be written
        """
        doc = self._load_document()
        collector = doc.get("collector")
        if collector is not None and all(collector.get(key) for key in CREDENTIAL_KEYS):
            if not force:
                raise ConfigError(
                    f"Collector credentials already exist in {self.config_path} "
                    "(use --force to overwrite)"
                )
        if collector is None:
            collector = tomlkit.table()
            doc["collector"] = collector

        collector["enabled"] = True
        collector["server_url"] = server_url
        collector["collector_id"] = collector_id
        collector["api_key"] = api_key
        if workspace_id:
            collector["workspace_id"] = workspace_id

        self._write(tomlkit.dumps(doc))
        logger.info(f"Stored collector credentials in {self.config_path}")

    def _write(self, content: str) -> None:
        """Atomic replace: temp file in the same directory, chmod 600, rename."""
        directory = self.config_path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=".config.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_name, stat.S_IRUSR | stat.S_IWUSR)
                os.replace(tmp_name, self.config_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ConfigError(f"Cannot write {self.config_path}: {e}") from e
