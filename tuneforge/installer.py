"""Converge catalog destinations to their rendered content.

Each destination is published through a temp file in the same directory
followed by ``os.replace``, so a reader sees either the old bytes or the
new bytes, never a truncated file. The temp file is opened with
``O_EXCL|O_NOFOLLOW`` and checked to be the regular file we opened before
anything is written to it.
"""

from __future__ import annotations

import errno
import logging
import os
import secrets
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from .catalog import Catalog, ConfigArtifact, NotDefined, Probe, target_path
from .cleanup import Teardown
from .config_store import ConfigurationState
from .lib.env import TEMP_MARKER
from .lib.privilege import Principal, Privilege, default_owners

logger = logging.getLogger(__name__)

FILE_MODE = 0o644
DIR_MODE = 0o755


class InstallError(RuntimeError):
    def __init__(self, path: str, stage: str, message: str):
        super().__init__(f"{path}: {stage} failed: {message}")
        self.path = path
        self.stage = stage


class SecurityError(InstallError):
    """A symlink (or other non-regular file) where our temp file should be."""


class BootRebuildError(RuntimeError):
    pass


class InstallOutcome(str, Enum):
    INSTALLED = "installed"
    SKIPPED = "skipped"
    DRY_RUN = "dry-run"


@dataclass
class BatchResult:
    outcomes: Dict[str, InstallOutcome] = field(default_factory=dict)
    errors: Dict[str, InstallError] = field(default_factory=dict)
    changed: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> Dict[str, object]:
        return {
            "outcomes": {k: v.value for k, v in self.outcomes.items()},
            "errors": {k: str(v) for k, v in self.errors.items()},
            "changed": list(self.changed),
            "removed": list(self.removed),
            "warnings": list(self.warnings),
            "failed": self.failed,
        }


@dataclass(frozen=True)
class InstalledFile:
    path: str
    exists: bool
    content: Optional[bytes] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    mode: Optional[int] = None
    is_symlink: bool = False


def inspect(path: Path) -> InstalledFile:
    """Observe a destination without following a symlink at it."""

    try:
        st = os.lstat(path)
    except (FileNotFoundError, NotADirectoryError):
        return InstalledFile(path=str(path), exists=False)
    if stat.S_ISLNK(st.st_mode):
        return InstalledFile(path=str(path), exists=True, uid=st.st_uid, gid=st.st_gid, is_symlink=True)
    content = None
    if stat.S_ISREG(st.st_mode):
        try:
            content = path.read_bytes()
        except PermissionError:
            content = None
    return InstalledFile(
        path=str(path),
        exists=True,
        content=content,
        uid=st.st_uid,
        gid=st.st_gid,
        mode=stat.S_IMODE(st.st_mode),
    )


def temp_token() -> str:
    return secrets.token_hex(6)


def temp_path_for(target: Path) -> Path:
    return target.with_name(f".{target.name}.{TEMP_MARKER}.{temp_token()}")


def is_temp_name(name: str) -> bool:
    return name.startswith(".") and f".{TEMP_MARKER}." in name


def _unlink_quiet(path: Path) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def sweep_temp_files(catalog: Catalog, root: str | Path = "/") -> List[Path]:
    """Delete temp files orphaned by a crashed run in every catalog directory."""

    removed: List[Path] = []
    for directory in catalog.directories(root):
        try:
            entries = list(os.scandir(directory))
        except (FileNotFoundError, NotADirectoryError, PermissionError):
            continue
        for entry in entries:
            if not is_temp_name(entry.name):
                continue
            if entry.is_dir(follow_symlinks=False):
                continue
            try:
                os.unlink(entry.path)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Cannot remove orphaned temp file %s: %s", entry.path, e)
                continue
            removed.append(Path(entry.path))
            logger.info("Removed orphaned temp file %s", entry.path)
    return removed


class Installer:
    def __init__(
        self,
        catalog: Catalog,
        state: ConfigurationState,
        *,
        probe: Probe,
        root: str | Path = "/",
        owners: Optional[Mapping[Privilege, Principal]] = None,
        dry_run: bool = False,
        teardown: Optional[Teardown] = None,
    ):
        self.catalog = catalog
        self.state = state
        self.probe = probe
        self.root = Path(root)
        self.owners = dict(owners) if owners is not None else default_owners()
        self.dry_run = dry_run
        self.teardown = teardown
        self.warnings: List[str] = []

    def target(self, destination: str) -> Path:
        return target_path(self.root, destination)

    # -- install -------------------------------------------------------------

    def install(self, destination: str) -> InstallOutcome:
        """Converge one destination. Raises InstallError / SecurityError."""

        try:
            artifact = self.catalog.get(destination)
            content = self.catalog.render_bytes(destination, self.state)
        except NotDefined as e:
            raise InstallError(destination, "render", "no content defined for this path") from e

        applicable, reason = artifact.applicability.evaluate(self.probe, self.state)
        if not applicable:
            logger.warning("Skipping %s (%s)", destination, reason)
            return InstallOutcome.SKIPPED

        target = self.target(destination)
        owner = self.owners[artifact.privilege]

        if self.dry_run:
            logger.info("Would write %s (%d bytes, %s)", target, len(content), artifact.privilege.value)
            return InstallOutcome.DRY_RUN

        self._ensure_parent(artifact, target.parent, owner)
        self._publish(artifact, target, content)
        self._set_owner(artifact, target, owner)
        logger.info("Installed %s", target)
        return InstallOutcome.INSTALLED

    def _ensure_parent(self, artifact: ConfigArtifact, parent: Path, owner: Principal) -> None:
        missing: List[Path] = []
        p = parent
        while not p.exists() and p != p.parent:
            missing.append(p)
            p = p.parent
        try:
            parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
        except OSError as e:
            raise InstallError(artifact.destination, "mkdir", str(e)) from e
        if artifact.privilege is Privilege.USER:
            for d in reversed(missing):
                try:
                    os.chown(d, owner.uid, owner.gid, follow_symlinks=False)
                except OSError as e:
                    self._warn(f"{d}: cannot chown to {owner.name}: {e}")

    def _publish(self, artifact: ConfigArtifact, target: Path, content: bytes) -> None:
        dest = artifact.destination
        tmp = temp_path_for(target)
        flags = os.O_WRONLY | os.O_CREAT | os.O_EXCL | os.O_NOFOLLOW | getattr(os, "O_CLOEXEC", 0)
        try:
            fd = os.open(tmp, flags, 0o600)
        except FileExistsError as e:
            if tmp.is_symlink():
                raise SecurityError(dest, "tempfile", f"symlink planted at temporary path {tmp}") from e
            raise InstallError(dest, "tempfile", f"temporary path already exists: {tmp}") from e
        except OSError as e:
            if e.errno == errno.ELOOP:
                raise SecurityError(dest, "tempfile", f"symlink planted at temporary path {tmp}") from e
            raise InstallError(dest, "tempfile", str(e)) from e

        token = self.teardown.register(f"remove temp file {tmp}", lambda: _unlink_quiet(tmp)) if self.teardown else None
        stage = "tempfile"
        try:
            try:
                self._check_regular(dest, fd, tmp)
                stage = "write"
                view = memoryview(content)
                while view:
                    n = os.write(fd, view)
                    view = view[n:]
                os.fsync(fd)
                stage = "chmod"
                os.fchmod(fd, FILE_MODE)
            finally:
                os.close(fd)
            stage = "rename"
            os.replace(tmp, target)
        except InstallError:
            _unlink_quiet(tmp)
            raise
        except OSError as e:
            _unlink_quiet(tmp)
            raise InstallError(dest, stage, str(e)) from e
        except BaseException:
            _unlink_quiet(tmp)
            raise
        finally:
            if token is not None and self.teardown is not None:
                self.teardown.unregister(token)
        self._fsync_dir(target.parent)

    @staticmethod
    def _check_regular(dest: str, fd: int, tmp: Path) -> None:
        fst = os.fstat(fd)
        lst = os.lstat(tmp)
        if stat.S_ISLNK(lst.st_mode) or not stat.S_ISREG(lst.st_mode):
            raise SecurityError(dest, "tempfile", f"{tmp} is not a regular file")
        if (fst.st_dev, fst.st_ino) != (lst.st_dev, lst.st_ino):
            raise SecurityError(dest, "tempfile", f"{tmp} was replaced after creation")

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        try:
            fd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
        except OSError:
            return
        try:
            os.fsync(fd)
        except OSError:
            pass
        finally:
            os.close(fd)

    def _set_owner(self, artifact: ConfigArtifact, target: Path, owner: Principal) -> None:
        try:
            st = os.lstat(target)
            if (st.st_uid, st.st_gid) != (owner.uid, owner.gid):
                os.chown(target, owner.uid, owner.gid, follow_symlinks=False)
        except OSError as e:
            # Content is already published; ownership is fixed on the next run.
            self._warn(f"{target}: installed but cannot chown to {owner.name}: {e}")

    def _warn(self, message: str) -> None:
        logger.warning("%s", message)
        self.warnings.append(message)

    def install_all(
        self,
        destinations: Optional[Iterable[str]] = None,
        *,
        privilege: Optional[Privilege] = None,
    ) -> BatchResult:
        """Install in catalog order; one failure never stops the batch."""

        batch = BatchResult()
        start = len(self.warnings)
        for artifact in self.catalog.select(privilege=privilege, destinations=destinations):
            dest = artifact.destination
            try:
                before = inspect(self.target(dest)).content
            except OSError:
                before = None
            try:
                outcome = self.install(dest)
            except SecurityError as e:
                logger.error("SECURITY: %s", e)
                batch.errors[dest] = e
                continue
            except InstallError as e:
                logger.error("%s", e)
                batch.errors[dest] = e
                continue
            batch.outcomes[dest] = outcome
            if outcome is InstallOutcome.INSTALLED and before != self.catalog.render_bytes(dest, self.state):
                batch.changed.append(dest)
        batch.warnings.extend(self.warnings[start:])
        return batch

    # -- uninstall -----------------------------------------------------------

    def remove(self, destination: str) -> bool:
        """Remove one installed destination. Returns False when absent."""

        self.catalog.get(destination)
        target = self.target(destination)
        try:
            found = inspect(target)
        except OSError as e:
            raise InstallError(destination, "remove", str(e)) from e
        if not found.exists:
            return False
        if found.is_symlink:
            raise InstallError(destination, "remove", f"refusing to remove symlink at {target}")
        if found.mode is None:
            raise InstallError(destination, "remove", f"{target} is not a regular file")
        if self.dry_run:
            logger.info("Would remove %s", target)
            return True
        try:
            os.unlink(target)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise InstallError(destination, "remove", str(e)) from e
        logger.info("Removed %s", target)
        return True

    def remove_all(
        self,
        destinations: Optional[Iterable[str]] = None,
        *,
        privilege: Optional[Privilege] = None,
    ) -> BatchResult:
        batch = BatchResult()
        for artifact in reversed(self.catalog.select(privilege=privilege, destinations=destinations)):
            dest = artifact.destination
            try:
                if self.remove(dest):
                    batch.removed.append(dest)
            except InstallError as e:
                logger.error("%s", e)
                batch.errors[dest] = e
        return batch
