"""Secret lookup for receiver credentials.

Values are read from an environment variable of the given name, falling back
to a file of that name under the secrets directory (Docker/Kubernetes style
``/run/secrets/<name>``).
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

logger = logging.getLogger(__name__)

_SECRET_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")


class SecretStore:
    def __init__(self, secrets_dir: str | os.PathLike | None = None, environ=None) -> None:
        self.secrets_dir = Path(secrets_dir) if secrets_dir else None
        self._environ = os.environ if environ is None else environ

    def get(self, name: str) -> str | None:
        if not name or not _SECRET_NAME_RE.match(name):
            return None
        value = self._environ.get(name)
        if value:
            return value.strip()
        if self.secrets_dir is None:
            return None
        path = self.secrets_dir / name
        try:
            text = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError:
            logger.exception("Failed reading secret file %s", path)
            return None
        return text or None
