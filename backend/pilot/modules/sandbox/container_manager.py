"""
Sandbox Container Manager

One disposable Docker container per session:
1. Setup creates a sandbox → container `pilot-session-<session_id>`
2. Agent tools exec commands and move files in and out of it
3. The dev server runs detached inside it, reachable on a mapped host port
4. Cleanup (explicit, sweep, or orphan reaper) stops and force-removes it

The session → handle cache is the only place sandbox handles live; everyone
else goes through the manager's operations. Docker SDK calls block, so each
one runs in the default thread pool.
"""

import asyncio
import functools
import io
import posixpath
import shlex
import tarfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

import docker
import docker.errors

from pilot.core.config import settings
from pilot.core.exceptions import (
    CommandExecutionError,
    DockerUnavailableError,
    FileTransferError,
    PortUnavailableError,
    SandboxCreationError,
    SandboxFileNotFoundError,
    SandboxNotFoundError,
)
from pilot.core.logging_config import logger
from pilot.core.outcomes import OutcomeReport, StepOutcome
from pilot.services.docker_client_helper import get_docker_client

PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use")


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {"stdout": self.stdout, "stderr": self.stderr, "exitCode": self.exit_code}


@dataclass
class FileEntry:
    name: str
    type: str  # "file" or "directory"
    size: int
    path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "type": self.type, "size": self.size, "path": self.path}


@dataclass
class BackgroundProcess:
    """
    Detached process launched inside a sandbox (the dev server).

    Not awaited and not restarted; it lives until the sandbox is destroyed.
    The record exists so log capture has somewhere to attach.
    """
    command: str
    working_dir: str
    log_path: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "workingDir": self.working_dir,
            "logPath": self.log_path,
            "startedAt": self.started_at.isoformat(),
        }


@dataclass
class SandboxHandle:
    """Live sandbox bound to exactly one session"""
    session_id: str
    container_id: str
    container_name: str
    container: Any
    port_mappings: Dict[int, int] = field(default_factory=dict)  # container_port -> host_port
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dev_server: Optional[BackgroundProcess] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "containerId": self.container_id,
            "containerName": self.container_name,
            "portMappings": {str(cp): hp for cp, hp in self.port_mappings.items()},
            "createdAt": self.created_at.isoformat(),
            "devServer": self.dev_server.to_dict() if self.dev_server else None,
        }


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


def parse_ls_output(output: str, directory: str) -> List[FileEntry]:
    """
    Parse `ls -la` output into entries.

    Columns: mode, links, owner, group, size, month, day, time/year, name.
    The first line is the `total` summary.
    """
    entries: List[FileEntry] = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 9:
            continue
        name = " ".join(parts[8:])
        mode = parts[0]
        if mode.startswith("l") and " -> " in name:
            name = name.split(" -> ", 1)[0]
        if name in (".", ".."):
            continue
        try:
            size = int(parts[4])
        except ValueError:
            size = 0
        entries.append(FileEntry(
            name=name,
            type="directory" if mode.startswith("d") else "file",
            size=size,
            path=posixpath.normpath(posixpath.join(directory, name)),
        ))
    return entries


class ContainerManager:
    """
    Manages Docker sandboxes for sessions.

    Key Features:
    - Lazy, single build of the sandbox image
    - Resource ceilings (memory, CPU) on every container
    - Post-start verification that the container is really running
    - Best-effort destroy and orphan reaping that never raise
    """

    def __init__(self, docker_client: Optional[docker.DockerClient] = None,
                 image: Optional[str] = None,
                 name_prefix: Optional[str] = None):
        self._docker = docker_client
        self.image = image or settings.SANDBOX_IMAGE
        self.name_prefix = name_prefix or settings.CONTAINER_NAME_PREFIX
        self._lock = threading.Lock()
        self._sandboxes: Dict[str, SandboxHandle] = {}
        self._image_lock: Optional[asyncio.Lock] = None
        self._image_ready = False

    @property
    def docker(self) -> docker.DockerClient:
        if self._docker is None:
            client = get_docker_client()
            if client is None:
                raise DockerUnavailableError()
            self._docker = client
        return self._docker

    async def _run(self, func, *args, **kwargs):
        return await asyncio.get_event_loop().run_in_executor(
            None, functools.partial(func, *args, **kwargs)
        )

    def container_name(self, session_id: str) -> str:
        return f"{self.name_prefix}{session_id}"

    # ------------------------------------------------------------------
    # Cache access
    # ------------------------------------------------------------------

    def get_handle(self, session_id: str) -> SandboxHandle:
        with self._lock:
            handle = self._sandboxes.get(session_id)
        if handle is None:
            raise SandboxNotFoundError(session_id)
        return handle

    def has_sandbox(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sandboxes

    def active_sessions(self) -> List[str]:
        with self._lock:
            return list(self._sandboxes)

    def _evict(self, session_id: str) -> Optional[SandboxHandle]:
        with self._lock:
            return self._sandboxes.pop(session_id, None)

    # ------------------------------------------------------------------
    # Image
    # ------------------------------------------------------------------

    async def ensure_image(self) -> None:
        """Build the sandbox image once if the daemon does not have it"""
        if self._image_ready:
            return
        if self._image_lock is None:
            self._image_lock = asyncio.Lock()
        async with self._image_lock:
            if self._image_ready:
                return
            try:
                await self._run(self.docker.images.get, self.image)
            except docker.errors.ImageNotFound:
                logger.info(f"[ContainerManager] Image {self.image} not found, building from "
                            f"{settings.SANDBOX_DOCKERFILE}...")
                start = time.perf_counter()
                try:
                    await self._run(
                        self.docker.images.build,
                        path=settings.SANDBOX_BUILD_CONTEXT,
                        dockerfile=settings.SANDBOX_DOCKERFILE,
                        tag=self.image,
                        rm=True,
                    )
                except (docker.errors.BuildError, docker.errors.APIError) as e:
                    raise SandboxCreationError(f"Failed to build image {self.image}: {e}")
                logger.log_performance("sandbox image build", (time.perf_counter() - start) * 1000,
                                       threshold_ms=120000)
            self._image_ready = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _remove_by_name(self, name: str) -> bool:
        try:
            existing = self.docker.containers.get(name)
        except docker.errors.NotFound:
            return False
        existing.remove(force=True)
        return True

    async def create_sandbox(self, session_id: str,
                             port_mappings: Optional[Dict[int, int]] = None) -> SandboxHandle:
        """
        Start a sandbox for the session and cache its handle.

        Args:
            session_id: Session the sandbox is bound to
            port_mappings: container_port -> host_port

        Raises:
            PortUnavailableError: a requested host port is bound on the host
            SandboxCreationError: start failed or the container is not running
        """
        port_mappings = dict(port_mappings or {})
        await self.ensure_image()

        name = self.container_name(session_id)
        try:
            if await self._run(self._remove_by_name, name):
                logger.info(f"[ContainerManager] Removed stale container {name}")
        except docker.errors.APIError as e:
            logger.warning(f"[ContainerManager] Could not remove stale container {name}: {e}")

        environment = {"NODE_ENV": "development", "TERM": "xterm-256color"}
        if settings.GITHUB_TOKEN:
            environment["GITHUB_TOKEN"] = settings.GITHUB_TOKEN
            environment["GH_TOKEN"] = settings.GITHUB_TOKEN

        try:
            container = await self._run(
                self.docker.containers.run,
                image=self.image,
                name=name,
                detach=True,
                tty=True,
                stdin_open=True,
                working_dir=settings.WORKSPACE_DIR,
                environment=environment,

                # Resource limits
                mem_limit=settings.CONTAINER_MEMORY_LIMIT,
                memswap_limit=settings.CONTAINER_MEMORY_LIMIT,
                cpu_period=settings.CONTAINER_CPU_PERIOD,
                cpu_quota=settings.CONTAINER_CPU_QUOTA,

                network_mode=settings.CONTAINER_NETWORK_MODE,
                ports={f"{cp}/tcp": hp for cp, hp in port_mappings.items()},

                command="tail -f /dev/null",
                labels={
                    "pilot": "true",
                    "session_id": session_id,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        except docker.errors.APIError as e:
            message = str(e)
            # A failed start leaves the created container behind
            try:
                await self._run(self._remove_by_name, name)
            except docker.errors.APIError:
                pass
            if any(marker in message.lower() for marker in PORT_CONFLICT_MARKERS):
                conflicting = next(
                    (hp for hp in port_mappings.values() if f":{hp}" in message),
                    next(iter(port_mappings.values()), 0),
                )
                raise PortUnavailableError(conflicting, session_id)
            raise SandboxCreationError(f"Container creation failed: {e}", session_id)

        await self._run(container.reload)
        if container.status != "running":
            status = container.status
            try:
                await self._run(container.remove, force=True)
            except docker.errors.APIError:
                pass
            raise SandboxCreationError(
                f"Container {name} started but is not running (status: {status}). "
                f"This may indicate Docker is out of disk space or memory.",
                session_id,
            )

        handle = SandboxHandle(
            session_id=session_id,
            container_id=container.id,
            container_name=name,
            container=container,
            port_mappings=port_mappings,
        )
        with self._lock:
            self._sandboxes[session_id] = handle

        logger.log_container_event(session_id, "created", container.id, port_mappings=port_mappings)
        return handle

    async def destroy_sandbox(self, session_id: str) -> StepOutcome:
        """Stop then force-remove; never raises"""
        step = f"destroy_sandbox:{session_id}"
        handle = self._evict(session_id)
        try:
            container = handle.container if handle else await self._run(
                self.docker.containers.get, self.container_name(session_id)
            )
        except docker.errors.NotFound:
            return StepOutcome.skipped(step, "no sandbox")
        except Exception as e:
            logger.warning(f"[ContainerManager] Lookup for {session_id} failed: {e}")
            return StepOutcome.degraded(step, e)

        try:
            await self._run(container.stop, timeout=settings.CONTAINER_STOP_TIMEOUT)
        except docker.errors.NotFound:
            return StepOutcome.ok(step)
        except Exception as e:
            # Removal below is forced, so a failed graceful stop is not fatal
            logger.warning(f"[ContainerManager] Graceful stop failed for {session_id}: {e}")

        try:
            await self._run(container.remove, force=True)
        except docker.errors.NotFound:
            pass
        except Exception as e:
            logger.error(f"[ContainerManager] Failed to remove sandbox for {session_id}: {e}")
            return StepOutcome.degraded(step, e)

        logger.log_container_event(session_id, "destroyed", getattr(container, "id", None))
        return StepOutcome.ok(step)

    async def reap_orphans(self) -> OutcomeReport:
        """
        Stop and remove every container following the session naming
        convention, cached or not. One failure never blocks the rest.
        """
        report = OutcomeReport("reap_orphans")
        try:
            containers = await self._run(
                self.docker.containers.list, all=True, filters={"name": self.name_prefix}
            )
        except Exception as e:
            report.add(StepOutcome.fatal("list_containers", e))
            report.log()
            return report

        for container in containers:
            name = container.name
            if not name.startswith(self.name_prefix):
                continue
            step = f"reap:{name}"
            try:
                try:
                    await self._run(container.stop, timeout=settings.ORPHAN_STOP_TIMEOUT)
                except docker.errors.APIError as e:
                    logger.debug(f"[ContainerManager] Stop failed for {name}: {e}")
                await self._run(container.remove, force=True)
                self._evict(name[len(self.name_prefix):])
                report.add(StepOutcome.ok(step))
            except docker.errors.NotFound:
                report.add(StepOutcome.ok(step))
            except Exception as e:
                report.add(StepOutcome.degraded(step, e))

        report.log()
        return report

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def exec(self, session_id: str, argv: Union[str, Sequence[str]],
                   working_dir: Optional[str] = None,
                   environment: Optional[Dict[str, str]] = None) -> ExecResult:
        """
        Run a command to completion inside the session's sandbox.

        stdout and stderr are captured separately. A non-zero exit code is
        returned, not raised.
        """
        handle = self.get_handle(session_id)
        cmd = argv if isinstance(argv, str) else list(argv)

        def _exec_sync() -> ExecResult:
            api = self.docker.api
            exec_id = api.exec_create(
                handle.container_id,
                cmd,
                stdout=True,
                stderr=True,
                workdir=working_dir or settings.WORKSPACE_DIR,
                environment=environment,
            )
            stdout, stderr = api.exec_start(exec_id["Id"], demux=True)
            exit_code = api.exec_inspect(exec_id["Id"]).get("ExitCode")
            return ExecResult(
                stdout=_decode(stdout),
                stderr=_decode(stderr),
                exit_code=-1 if exit_code is None else exit_code,
            )

        try:
            return await self._run(_exec_sync)
        except docker.errors.NotFound:
            self._evict(session_id)
            raise SandboxNotFoundError(session_id)
        except docker.errors.APIError as e:
            raise CommandExecutionError(f"Command failed to run: {e}", session_id)

    async def exec_shell(self, session_id: str, command: str,
                         working_dir: Optional[str] = None,
                         environment: Optional[Dict[str, str]] = None) -> ExecResult:
        return await self.exec(session_id, ["sh", "-c", command], working_dir, environment)

    async def start_background(self, session_id: str, command: str,
                               working_dir: Optional[str] = None,
                               log_path: Optional[str] = None,
                               environment: Optional[Dict[str, str]] = None) -> BackgroundProcess:
        """Launch a detached process and record it on the sandbox handle"""
        handle = self.get_handle(session_id)
        working_dir = working_dir or settings.REPO_DIR
        log_path = log_path or settings.DEV_SERVER_LOG

        script = (f"cd {shlex.quote(working_dir)} && "
                  f"nohup {command} > {shlex.quote(log_path)} 2>&1 &")
        result = await self.exec_shell(session_id, script, environment=environment)
        if not result.success:
            raise CommandExecutionError(
                f"Failed to launch background process: {result.stderr or result.stdout}", session_id
            )

        process = BackgroundProcess(command=command, working_dir=working_dir, log_path=log_path)
        handle.dev_server = process
        logger.log_container_event(session_id, f"background process started: {command}")
        return process

    async def read_background_log(self, session_id: str, lines: int = 100) -> str:
        handle = self.get_handle(session_id)
        if handle.dev_server is None:
            return ""
        result = await self.exec(session_id, ["tail", "-n", str(lines), handle.dev_server.log_path])
        return result.stdout

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def read_file(self, session_id: str, path: str) -> str:
        """Read one file through a tar archive"""
        handle = self.get_handle(session_id)

        def _read_sync() -> bytes:
            bits, _stat = handle.container.get_archive(path)
            buffer = io.BytesIO(b"".join(bits))
            with tarfile.open(fileobj=buffer, mode="r") as tar:
                for member in tar.getmembers():
                    if member.isfile():
                        extracted = tar.extractfile(member)
                        return extracted.read() if extracted else b""
            raise FileTransferError(f"{path} is not a regular file", session_id)

        try:
            data = await self._run(_read_sync)
        except docker.errors.NotFound:
            raise SandboxFileNotFoundError(path, session_id)
        except (docker.errors.APIError, tarfile.TarError) as e:
            raise FileTransferError(f"Failed to read {path}: {e}", session_id)
        return data.decode("utf-8", errors="replace")

    async def write_file(self, session_id: str, path: str, content: Union[str, bytes]) -> None:
        """Write one file through a tar archive; the parent directory must exist"""
        handle = self.get_handle(session_id)
        data = content.encode("utf-8") if isinstance(content, str) else content
        directory, filename = posixpath.split(path)

        def _write_sync() -> bool:
            tar_buffer = io.BytesIO()
            with tarfile.open(fileobj=tar_buffer, mode="w") as tar:
                info = tarfile.TarInfo(name=filename)
                info.size = len(data)
                info.mtime = int(time.time())
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
            tar_buffer.seek(0)
            return handle.container.put_archive(directory or "/", tar_buffer.read())

        try:
            ok = await self._run(_write_sync)
        except docker.errors.NotFound:
            raise SandboxFileNotFoundError(directory, session_id)
        except docker.errors.APIError as e:
            raise FileTransferError(f"Failed to write {path}: {e}", session_id)
        if not ok:
            raise FileTransferError(f"Docker rejected archive for {path}", session_id)

    async def list_directory(self, session_id: str, path: Optional[str] = None) -> List[FileEntry]:
        path = path or settings.WORKSPACE_DIR
        result = await self.exec(session_id, ["ls", "-la", "--color=never", path])
        if not result.success:
            if "No such file" in result.stderr:
                raise SandboxFileNotFoundError(path, session_id)
            raise CommandExecutionError(f"ls failed: {result.stderr.strip()}", session_id)
        return parse_ls_output(result.stdout, path)
