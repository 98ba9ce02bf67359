from __future__ import annotations

import asyncio
import io
import os
import tarfile
from pathlib import Path
from typing import Optional

import httpx
import pytest

from mdconvert_backend.browser import (
    SERVERLESS_CHROMIUM_ARGS,
    BrowserLauncher,
    BrowserProvisioner,
    ExecutablePathCache,
    LocalProvisioner,
    ServerlessProvisioner,
    _is_bad_tar_member,
    build_provisioner,
)


class CountingProvisioner(BrowserProvisioner):
    name = "counting"

    def __init__(self, failures: int = 0, delay: float = 0.01) -> None:
        self.calls = 0
        self.failures = failures
        self.delay = delay

    async def resolve_executable_path(self) -> Optional[str]:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise RuntimeError("download failed")
        return "/opt/chromium/chrome"


def test_concurrent_requests_share_one_resolution() -> None:
    provisioner = CountingProvisioner()
    cache = ExecutablePathCache(provisioner)

    async def run():
        return await asyncio.gather(*(cache.get() for _ in range(5)))

    paths = asyncio.run(run())

    assert paths == ["/opt/chromium/chrome"] * 5
    assert provisioner.calls == 1
    assert cache.cached_path == "/opt/chromium/chrome"
    assert cache.is_resolving is False


def test_failed_resolution_is_not_memoized() -> None:
    provisioner = CountingProvisioner(failures=1)
    cache = ExecutablePathCache(provisioner)

    async def run():
        with pytest.raises(RuntimeError):
            await cache.get()
        assert cache.cached_path is None
        return await cache.get()

    assert asyncio.run(run()) == "/opt/chromium/chrome"
    assert provisioner.calls == 2


def test_callers_timing_out_do_not_restart_resolution() -> None:
    provisioner = CountingProvisioner(delay=0.2)
    cache = ExecutablePathCache(provisioner)

    async def run():
        impatient = await asyncio.gather(
            *(asyncio.wait_for(cache.get(), 0.05) for _ in range(2)), return_exceptions=True
        )
        assert all(isinstance(result, asyncio.TimeoutError) for result in impatient)
        assert cache.is_resolving is True
        return await cache.get()

    assert asyncio.run(run()) == "/opt/chromium/chrome"
    assert provisioner.calls == 1
    assert cache.is_resolving is False


def test_launcher_passes_path_and_args_to_playwright() -> None:
    launched = {}

    class FakeChromium:
        async def launch(self, **kwargs):
            launched.update(kwargs)
            return "browser"

    class FakePlaywright:
        chromium = FakeChromium()

    launcher = BrowserLauncher(CountingProvisioner())

    assert asyncio.run(launcher.launch(FakePlaywright())) == "browser"
    assert launched == {"headless": True, "executable_path": "/opt/chromium/chrome", "args": []}
    assert launcher.diagnostics()["cached_executable_path"] == "/opt/chromium/chrome"


def test_local_provisioner_defers_to_playwright() -> None:
    assert asyncio.run(LocalProvisioner().resolve_executable_path()) is None


def test_build_provisioner(tmp_path: Path) -> None:
    assert isinstance(build_provisioner("local"), LocalProvisioner)

    serverless = build_provisioner("Serverless", pack_url="https://example.com/chromium.tar", install_dir=tmp_path)
    assert isinstance(serverless, ServerlessProvisioner)
    assert tuple(serverless.launch_args) == SERVERLESS_CHROMIUM_ARGS
    assert serverless.describe()["install_dir"] == str(tmp_path)

    with pytest.raises(ValueError):
        build_provisioner("lambda")


def _tar_bytes(entries: dict[str, bytes], symlink: Optional[str] = None) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, data in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        if symlink:
            link = tarfile.TarInfo(symlink)
            link.type = tarfile.SYMTYPE
            link.linkname = "/etc/passwd"
            tar.addfile(link)
    return buffer.getvalue()


def _serving(body: bytes) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)))


def test_serverless_provisioner_downloads_and_unpacks(tmp_path: Path) -> None:
    install_dir = tmp_path / "chromium"
    body = _tar_bytes({"chromium-pack/chromium": b"#!/bin/sh\n", "chromium-pack/lib/libfoo.so": b"\x7fELF"})

    async def run():
        async with _serving(body) as client:
            provisioner = ServerlessProvisioner("https://example.com/chromium.tar.gz", install_dir, client=client)
            return await provisioner.resolve_executable_path()

    path = asyncio.run(run())

    assert path == str(install_dir / "chromium-pack" / "chromium")
    assert os.access(path, os.X_OK)
    # Only the unpacked pack remains; the archive and staging area are gone.
    assert sorted(p.name for p in tmp_path.iterdir()) == ["chromium"]
    assert sorted(p.name for p in install_dir.iterdir()) == ["chromium-pack"]


def test_serverless_provisioner_replaces_incomplete_install(tmp_path: Path) -> None:
    install_dir = tmp_path / "chromium"
    (install_dir / "lib").mkdir(parents=True)
    (install_dir / "lib" / "leftover.so").write_bytes(b"")
    body = _tar_bytes({"headless_shell": b"#!/bin/sh\n"})

    async def run():
        async with _serving(body) as client:
            provisioner = ServerlessProvisioner("https://example.com/chromium.tar", install_dir, client=client)
            return await provisioner.resolve_executable_path()

    assert asyncio.run(run()) == str(install_dir / "headless_shell")
    assert not (install_dir / "lib").exists()


def test_serverless_provisioner_reuses_unpacked_browser(tmp_path: Path) -> None:
    executable = tmp_path / "headless_shell"
    executable.write_bytes(b"")

    provisioner = ServerlessProvisioner("https://example.com/chromium.tar", tmp_path)
    assert asyncio.run(provisioner.resolve_executable_path()) == str(executable)


def test_serverless_provisioner_refuses_unsafe_archives(tmp_path: Path) -> None:
    install_dir = tmp_path / "chromium"
    body = _tar_bytes({"chromium": b""}, symlink="evil")

    async def run():
        async with _serving(body) as client:
            provisioner = ServerlessProvisioner("https://example.com/chromium.tar", install_dir, client=client)
            await provisioner.resolve_executable_path()

    with pytest.raises(ValueError):
        asyncio.run(run())

    # Nothing half-unpacked is left for a later request to pick up.
    assert not install_dir.exists()
    assert list(tmp_path.iterdir()) == []


def test_serverless_provisioner_requires_pack_url(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        asyncio.run(ServerlessProvisioner("", tmp_path).resolve_executable_path())


@pytest.mark.parametrize("name", ["../escape", "/abs/path", "C:evil", "a/../../b", ""])
def test_bad_tar_member_names(name: str) -> None:
    assert _is_bad_tar_member(tarfile.TarInfo(name)) is True


def test_plain_tar_member_is_fine() -> None:
    assert _is_bad_tar_member(tarfile.TarInfo("chromium-pack/chromium")) is False
