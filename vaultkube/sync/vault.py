"""
Vault item fetcher over the Bitwarden CLI (``bw``).

The CLI is treated as an opaque transport: an unlocked session is expected
in ``BW_SESSION`` (or VAULTKUBE_BW_SESSION). Every failure surfaces as
FetchError, which aborts the run.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess

from vaultkube.config import VaultConfig
from vaultkube.sync.errors import FetchError
from vaultkube.sync.models import VaultItem

logger = logging.getLogger(__name__)


class BitwardenCLI:
    """Fetches items with ``bw list items``."""

    def __init__(self, config: VaultConfig) -> None:
        self.config = config

    def _env(self) -> dict[str, str]:
        env = {**os.environ}
        if self.config.session:
            env["BW_SESSION"] = self.config.session
        return env

    def _run(self, *args: str) -> str:
        cmd = [self.config.bw_path, *args, "--nointeraction"]
        try:
            proc = subprocess.run(  # noqa: S603
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.fetch_timeout,
                env=self._env(),
                check=False,
            )
        except FileNotFoundError as e:
            raise FetchError(f"Vault CLI not found: {self.config.bw_path}") from e
        except subprocess.TimeoutExpired as e:
            raise FetchError(
                f"Vault CLI timed out after {self.config.fetch_timeout:.0f}s: bw {args[0]}"
            ) from e
        if proc.returncode != 0:
            raise FetchError(f"bw {args[0]} failed ({proc.returncode}): {proc.stderr.strip()}")
        return proc.stdout

    def fetch(self) -> list[VaultItem]:
        """Return every item visible to the session."""
        if self.config.sync_before_fetch:
            self._run("sync")
        args = ["list", "items"]
        if self.config.organization_id:
            args += ["--organizationid", self.config.organization_id]
        raw = self._run(*args)
        try:
            data = json.loads(raw or "[]")
        except ValueError as e:
            raise FetchError(f"Vault CLI returned invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise FetchError("Vault CLI returned an unexpected payload (expected a list)")
        items = [VaultItem.from_dict(d) for d in data if isinstance(d, dict)]
        logger.info("Fetched %d vault items", len(items))
        return items
