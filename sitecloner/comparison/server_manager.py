"""Start and stop the generated Next.js site for comparison."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import httpx
from pydantic import BaseModel

from sitecloner.errors import ServerUnavailableError

logger = logging.getLogger(__name__)

NPM_INSTALL_TIMEOUT_SECONDS = 300.0


class ServerStatus(BaseModel):
    running: bool
    url: Optional[str] = None
    pid: Optional[int] = None


class ServerManager:
    """Owns at most one dev-server child process."""

    def __init__(
        self,
        port: int = 3002,
        start_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 1.0,
    ):
        self.port = port
        self.start_timeout_seconds = start_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._process: asyncio.subprocess.Process | None = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    async def _reachable(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                r = await client.get(self.url)
            return r.status_code < 500
        except httpx.HTTPError:
            return False

    async def check_status(self) -> ServerStatus:
        if await self._reachable():
            pid = self._process.pid if self._process else None
            return ServerStatus(running=True, url=self.url, pid=pid)
        return ServerStatus(running=False)

    async def start(self, website_id: str, websites_dir: str | Path) -> str:
        """Ensure the generated site for website_id is being served; return its URL."""
        generated_dir = Path(websites_dir) / website_id / "generated"
        if not (generated_dir / "package.json").exists():
            raise ServerUnavailableError(
                f"Generated site not scaffolded: {generated_dir / 'package.json'} missing"
            )

        if await self._reachable():
            logger.info("Generated site already running at %s", self.url)
            return self.url

        if not (generated_dir / "node_modules").exists():
            await self._npm_install(generated_dir)

        logger.info("Starting generated site at %s", self.url)
        env = {**os.environ, "PORT": str(self.port)}
        self._process = await asyncio.create_subprocess_exec(
            "npm", "run", "dev", "--", "--port", str(self.port),
            cwd=str(generated_dir),
            env=env,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )

        attempts = max(1, int(self.start_timeout_seconds / self.poll_interval_seconds))
        for attempt in range(attempts):
            if self._process.returncode is not None:
                code = self._process.returncode
                self._process = None
                raise ServerUnavailableError(f"Dev server exited early with code {code}")
            if await self._reachable():
                logger.info("Generated site ready after %d checks", attempt + 1)
                return self.url
            await asyncio.sleep(self.poll_interval_seconds)

        await self.stop()
        raise ServerUnavailableError(
            f"Generated site did not respond on port {self.port} "
            f"within {self.start_timeout_seconds:.0f}s"
        )

    async def _npm_install(self, generated_dir: Path) -> None:
        logger.info("Installing dependencies in %s", generated_dir)
        proc = await asyncio.create_subprocess_exec(
            "npm", "install",
            cwd=str(generated_dir),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=NPM_INSTALL_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ServerUnavailableError("npm install timed out") from e
        if proc.returncode != 0:
            raise ServerUnavailableError(
                f"Failed to install dependencies: {stderr.decode(errors='replace').strip()[-500:]}"
            )

    async def stop(self) -> None:
        """Terminate the dev server if this manager started it."""
        proc, self._process = self._process, None
        if proc is None or proc.returncode is not None:
            return
        logger.info("Stopping generated site (pid %d)", proc.pid)
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()

    async def __aenter__(self) -> "ServerManager":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()
