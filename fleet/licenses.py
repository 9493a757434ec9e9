from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .errors import LicenseError


logger = logging.getLogger(__name__)

LICENSE_SUFFIX = ".license"


@dataclass(frozen=True)
class License:
    instance_id: str
    secret: str


class LicenseStore:
    """Read-only lookup over `<instance_id>.license` files in one directory.

    The directory is rescanned on every call so newly issued licenses are seen
    while the daemon runs.
    """

    def __init__(self, path: str):
        self.path = path

    def _scan(self) -> dict[str, str]:
        try:
            entries = sorted(os.listdir(self.path))
        except FileNotFoundError:
            return {}
        found: dict[str, str] = {}
        for entry in entries:
            if not entry.endswith(LICENSE_SUFFIX):
                continue
            instance_id = entry[: -len(LICENSE_SUFFIX)]
            try:
                with open(os.path.join(self.path, entry), encoding="utf-8") as fh:
                    secret = fh.read().strip()
            except OSError as e:
                logger.warning("Cannot read license %s: %s", entry, e)
                continue
            if secret:
                found[instance_id] = secret
        return found

    def has_license(self, instance_id: str) -> bool:
        return instance_id in self._scan()

    def list_licensed_ids(self) -> list[str]:
        return list(self._scan())

    def get(self, instance_id: str) -> License:
        secret = self._scan().get(instance_id)
        if secret is None:
            raise LicenseError(f"No license for instance '{instance_id}'")
        return License(instance_id=instance_id, secret=secret)
