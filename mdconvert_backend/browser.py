"""Headless Chromium provisioning.

Two provisioners exist: the local one defers to the Chromium build Playwright
installs; the serverless one downloads a minimal Chromium pack once per
process into a scratch directory. The executable path is the only
process-wide state the renderer keeps, and it is resolved at most once at a
time (single flight); a failed resolution leaves the cache empty so a later
request can retry.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import shutil
import stat
import tarfile
import tempfile
import time
from pathlib import Path
from typing import Any, Optional, Sequence

import httpx

from .config import CHROMIUM_DOWNLOAD_TIMEOUT


logger = logging.getLogger(__name__)

SERVERLESS_CHROMIUM_ARGS = (
    "--disable-background-networking",
    "--disable-dev-shm-usage",
    "--disable-extensions",
    "--disable-gpu",
    "--mute-audio",
    "--no-first-run",
    "--no-sandbox",
    "--no-zygote",
    "--single-process",
)

_EXECUTABLE_NAMES = ("chromium", "headless_shell", "chrome")


class BrowserProvisioner(abc.ABC):
    name = "base"
    launch_args: Sequence[str] = ()

    @abc.abstractmethod
    async def resolve_executable_path(self) -> Optional[str]:
        """Return the Chromium executable to launch, or None for Playwright's default."""

    def describe(self) -> dict[str, Any]:
        return {"name": self.name, "launch_args": list(self.launch_args)}


class LocalProvisioner(BrowserProvisioner):
    """Use the Chromium build installed by ``playwright install chromium``."""

    name = "local"

    async def resolve_executable_path(self) -> Optional[str]:
        return None


def _is_bad_tar_member(member: tarfile.TarInfo) -> bool:
    # Tar Slip defenses.
    name = member.name
    if not name or name.strip() == "":
        return True
    if name.startswith("/") or name.startswith("\\"):
        return True
    if ":" in name:
        return True
    if any(p == ".." for p in Path(name).parts):
        return True
    # Only plain files and directories; no links or device nodes.
    return not (member.isfile() or member.isdir())


def _extract_pack(archive: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, mode="r:*") as tar:
        members = tar.getmembers()
        bad = [m.name for m in members if _is_bad_tar_member(m)]
        if bad:
            raise ValueError(f"Unsafe entries in Chromium pack: {bad[:5]}")
        if hasattr(tarfile, "data_filter"):
            tar.extractall(dest, members=members, filter="data")
        else:
            tar.extractall(dest, members=members)


def _find_executable(root: Path) -> Optional[Path]:
    for name in _EXECUTABLE_NAMES:
        for candidate in sorted(root.rglob(name)):
            if candidate.is_file():
                return candidate
    return None


class ServerlessProvisioner(BrowserProvisioner):
    """Download and unpack a Chromium build suited to serverless runtimes."""

    name = "serverless"
    launch_args = SERVERLESS_CHROMIUM_ARGS

    def __init__(self, pack_url: str, install_dir: Path, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.pack_url = pack_url
        self.install_dir = install_dir
        self._client = client

    def describe(self) -> dict[str, Any]:
        info = super().describe()
        info.update({"pack_url": self.pack_url, "install_dir": str(self.install_dir)})
        return info

    async def resolve_executable_path(self) -> Optional[str]:
        if not self.pack_url:
            raise RuntimeError("MDCONVERT_CHROMIUM_PACK_URL is not configured")

        existing = _find_executable(self.install_dir) if self.install_dir.exists() else None
        if existing is not None:
            logger.info("Reusing unpacked Chromium at %s", existing)
            return str(existing)

        # Unpack into a sibling staging directory and move it into place only
        # once complete, so install_dir never holds a partial pack.
        self.install_dir.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".chromium-staging-", dir=self.install_dir.parent))
        try:
            archive = staging / "chromium-pack.tar"
            unpacked = staging / "pack"
            await self._download(archive)
            await asyncio.to_thread(_extract_pack, archive, unpacked)

            executable = _find_executable(unpacked)
            if executable is None:
                raise RuntimeError("Chromium pack did not contain a browser executable")
            executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            relative = executable.relative_to(unpacked)

            if self.install_dir.exists():
                shutil.rmtree(self.install_dir)
            unpacked.rename(self.install_dir)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        return str(self.install_dir / relative)

    async def _download(self, dest: Path) -> None:
        logger.info("Downloading Chromium pack from %s", self.pack_url)
        client = self._client or httpx.AsyncClient(timeout=CHROMIUM_DOWNLOAD_TIMEOUT, follow_redirects=True)
        try:
            async with client.stream("GET", self.pack_url) as response:
                response.raise_for_status()
                with dest.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
        finally:
            if self._client is None:
                await client.aclose()


class ExecutablePathCache:
    """Lazily resolved, process-wide browser executable path (single flight).

    The resolution runs in its own task. Callers await it through
    ``asyncio.shield``, so a caller that times out or is cancelled leaves the
    resolution running for everyone else.
    """

    def __init__(self, provisioner: BrowserProvisioner) -> None:
        self._provisioner = provisioner
        self._lock = asyncio.Lock()
        self._resolved = False
        self._path: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def cached_path(self) -> Optional[str]:
        return self._path

    @property
    def is_resolving(self) -> bool:
        return self._task is not None and not self._task.done()

    async def get(self) -> Optional[str]:
        if self._resolved:
            return self._path
        async with self._lock:
            if self._resolved:
                return self._path
            if self._task is None:
                self._task = asyncio.ensure_future(self._resolve())
                self._task.add_done_callback(self._forget_failure)
            task = self._task
        return await asyncio.shield(task)

    async def _resolve(self) -> Optional[str]:
        started = time.monotonic()
        try:
            path = await self._provisioner.resolve_executable_path()
        except Exception:
            logger.exception("Failed to resolve Chromium path after %.0fms", (time.monotonic() - started) * 1000)
            raise
        self._path = path
        self._resolved = True
        logger.info(
            "Chromium path resolved (%s) in %.0fms",
            path or "playwright default",
            (time.monotonic() - started) * 1000,
        )
        return path

    def _forget_failure(self, task: asyncio.Task) -> None:
        # A failed or cancelled resolution is not memoized; the next caller retries.
        if task.cancelled() or task.exception() is not None:
            self._task = None


class BrowserLauncher:
    """Launches one headless Chromium per render using the configured provisioner."""

    def __init__(self, provisioner: BrowserProvisioner) -> None:
        self.provisioner = provisioner
        self.executable_path = ExecutablePathCache(provisioner)

    async def launch(self, playwright: Any) -> Any:
        executable_path = await self.executable_path.get()
        return await playwright.chromium.launch(
            headless=True,
            executable_path=executable_path,
            args=list(self.provisioner.launch_args),
        )

    def diagnostics(self) -> dict[str, Any]:
        return {
            "provisioner": self.provisioner.describe(),
            "cached_executable_path": self.executable_path.cached_path,
            "resolution_in_flight": self.executable_path.is_resolving,
        }


def build_provisioner(mode: str, *, pack_url: str = "", install_dir: Optional[Path] = None) -> BrowserProvisioner:
    """Pick the provisioner once, at startup."""
    mode = (mode or "local").strip().lower()
    if mode == "local":
        return LocalProvisioner()
    if mode == "serverless":
        return ServerlessProvisioner(pack_url, install_dir or Path(os.getcwd()) / ".chromium")
    raise ValueError(f"Unknown browser mode: {mode!r}")
