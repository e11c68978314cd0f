"""Workspace modifier: the ``self_modify`` provider.

Snapshots, applies and restores text resources under the workspace root.
Writes never leave the root and never follow symlinks. The improvement
engine snapshots the target resources before it checkpoints, so a
rollback can put every byte back.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from autodev.core.exceptions import ProviderError
from autodev.modules.base import Capability, CapabilityProvider, ModuleRequest, ModuleResponse


class WorkspaceModifier(CapabilityProvider):
    """Applies full-content FileChanges to files below ``root``."""

    name = "workspace"
    capabilities = frozenset({Capability.SELF_MODIFY})
    idempotent_operations = frozenset({"snapshot", "restore", "read"})

    def __init__(self, root: str | Path):
        super().__init__()
        self.root = Path(root).resolve()

    def invoke(self, request: ModuleRequest) -> ModuleResponse:
        handlers = {
            "snapshot": self._snapshot,
            "apply": self._apply,
            "restore": self._restore,
            "read": self._read,
        }
        handler = handlers.get(request.operation)
        if handler is None:
            raise ProviderError(f"Unsupported self_modify operation: {request.operation}")
        return handler(request.payload)

    def health(self) -> bool:
        return self.root.is_dir() and os.access(self.root, os.W_OK)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _snapshot(self, payload: dict[str, Any]) -> ModuleResponse:
        resources: dict[str, Optional[str]] = {}
        for rel in payload.get("paths", []):
            target = self._resolve(rel)
            resources[rel] = self._read_text(target) if target.exists() else None
        return ModuleResponse(data={"resources": resources})

    def _apply(self, payload: dict[str, Any]) -> ModuleResponse:
        changes = payload.get("changes", [])
        written: list[str] = []
        deleted: list[str] = []
        for change in changes:
            rel = change["path"]
            content = change.get("content")
            target = self._resolve(rel)
            if content is None:
                self._delete(target)
                deleted.append(rel)
            else:
                self._write(target, content)
                written.append(rel)
        self.logger.info("Applied %d write(s), %d delete(s)", len(written), len(deleted))
        return ModuleResponse(data={"written": written, "deleted": deleted})

    def _restore(self, payload: dict[str, Any]) -> ModuleResponse:
        resources: dict[str, Optional[str]] = payload.get("resources", {})
        for rel, content in resources.items():
            target = self._resolve(rel)
            if content is None:
                self._delete(target)
            else:
                self._write(target, content)
        self.logger.info("Restored %d resource(s)", len(resources))
        return ModuleResponse(data={"restored": sorted(resources)})

    def _read(self, payload: dict[str, Any]) -> ModuleResponse:
        target = self._resolve(payload["path"])
        if not target.exists():
            raise ProviderError(f"File not found: {payload['path']}")
        return ModuleResponse(data={"content": self._read_text(target)})

    # ------------------------------------------------------------------
    # Filesystem helpers
    # ------------------------------------------------------------------

    def _resolve(self, rel: str) -> Path:
        if not isinstance(rel, str) or not rel or "\x00" in rel:
            raise ProviderError(f"Invalid resource path: {rel!r}")
        candidate = Path(rel)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        parent = candidate.parent.resolve()
        try:
            parent.relative_to(self.root)
        except ValueError:
            raise ProviderError(f"Resolved path escapes workspace: {candidate}") from None
        target = parent / candidate.name
        if target.is_symlink():
            raise ProviderError(f"Refusing to write through symlink: {target}")
        return target

    @staticmethod
    def _read_text(target: Path) -> str:
        try:
            return target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ProviderError(f"Failed to read {target}: {e}") from e

    def _write(self, target: Path, content: str) -> None:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".autodev-tmp")
            tmp.write_text(content, encoding="utf-8")
            os.replace(tmp, target)
        except OSError as e:
            raise ProviderError(f"Failed to write {target}: {e}") from e
        self.logger.debug("Wrote %d bytes to %s", len(content), target)

    @staticmethod
    def _delete(target: Path) -> None:
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            raise ProviderError(f"Failed to delete {target}: {e}") from e
