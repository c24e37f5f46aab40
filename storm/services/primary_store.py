from __future__ import annotations

import base64
import binascii
import os
from pathlib import Path, PurePosixPath

from storm.errors import InvalidResourceId


class PrimaryStore:
    """
    Adapter over the primary storage tier.

    Every account owns a directory tree under <root>/accounts/<account_id>.
    Items are addressed by resource ids: unpadded URL-safe base64 of the
    item's path relative to that tree.
    """

    def __init__(self, root_path: str | None = None):
        configured = root_path or os.getenv("STORM_PRIMARY_ROOT") or "./primary_storage"
        self.root = Path(configured).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def encode_id(relative_path: str) -> str:
        normalized = str(PurePosixPath("/") / relative_path.lstrip("/"))
        return base64.urlsafe_b64encode(normalized.encode("utf-8")).decode("ascii").rstrip("=")

    @staticmethod
    def decode_id(resource_id: str) -> str:
        raw = str(resource_id or "").strip()
        if not raw:
            raise InvalidResourceId("Resource id is blank")
        padded = raw + "=" * (-len(raw) % 4)
        try:
            decoded = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        except (binascii.Error, UnicodeError, ValueError):
            raise InvalidResourceId(f"Resource id '{raw}' is malformed")
        if not decoded.startswith("/"):
            raise InvalidResourceId(f"Resource id '{raw}' is malformed")
        return decoded

    def account_root(self, account_id: int) -> Path:
        folder = self.root / "accounts" / str(int(account_id))
        folder.mkdir(parents=True, exist_ok=True)
        return folder

    def resolve(self, account_id: int, resource_id: str) -> Path:
        """Map a resource id to a path inside the account's tree (existence not checked)."""
        relative = self.decode_id(resource_id)
        base = self.account_root(account_id)
        target = (base / relative.lstrip("/")).resolve()
        if target != base and base not in target.parents:
            raise InvalidResourceId("Resource id points outside the account tree")
        return target

    def create_folder(self, account_id: int, relative_path: str) -> str:
        folder = self.account_root(account_id) / relative_path.lstrip("/")
        folder.mkdir(parents=True, exist_ok=True)
        return self.encode_id(relative_path)

    def write_file(self, account_id: int, relative_path: str, content: bytes = b"") -> str:
        file_path = self.account_root(account_id) / relative_path.lstrip("/")
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(content)
        return self.encode_id(relative_path)
