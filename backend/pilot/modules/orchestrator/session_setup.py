"""
Session Setup Orchestrator

clone → detect → install → build → inject → run → poll-ready, one stage at a
time per session. Fatal stages (sandbox, clone, readiness) end the session in
`failed`; install, build and injection problems are recorded as warnings and
setup continues. Nothing escapes setup_repository(): every failure comes back
as SetupResult(success=False, error=...).
"""

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from pilot.core.config import settings
from pilot.core.exceptions import (
    InvalidRepositoryUrlError,
    InvalidStateTransitionError,
    PortUnavailableError,
    SessionNotFoundError,
    SetupError,
)
from pilot.core.logging_config import logger, set_session_id
from pilot.core.outcomes import OutcomeReport, StepOutcome
from pilot.modules.build.build_detector import BuildConfig, BuildDetector, dev_server_command
from pilot.modules.injection.direct_injection import DirectPickerInjection, InjectionResult
from pilot.modules.orchestrator.readiness import ReadinessProbe
from pilot.modules.sandbox.container_manager import ContainerManager
from pilot.modules.sandbox.port_allocator import PortAllocator
from pilot.services.progress_store import ProgressSeverity, ProgressStore
from pilot.services.session_store import BuildStatus, SessionData, SessionStore

GITHUB_REPO_PATTERN = re.compile(r"github\.com[/:]([^/]+/[^/]+?)(?:\.git)?/?$")
BARE_SLUG_PATTERN = re.compile(r"^([\w.-]+/[\w.-]+?)(?:\.git)?$")


def parse_repo_slug(repo_url: str) -> Tuple[str, str]:
    """Return ("owner/repo", "repo") for a GitHub URL or a bare owner/repo slug"""
    value = repo_url.strip()
    match = GITHUB_REPO_PATTERN.search(value) or BARE_SLUG_PATTERN.match(value)
    if not match:
        raise InvalidRepositoryUrlError(repo_url)
    slug = match.group(1)
    return slug, slug.split("/")[1]


@dataclass
class SetupResult:
    success: bool
    session_id: str
    message: str
    error: Optional[str] = None
    repo_name: Optional[str] = None
    framework: Optional[str] = None
    preview_port: Optional[int] = None
    preview_url: Optional[str] = None
    preview_ready: bool = False
    injection: Optional[InjectionResult] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "sessionId": self.session_id,
            "message": self.message,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.success:
            data.update({
                "repoName": self.repo_name,
                "framework": self.framework,
                "previewPort": self.preview_port,
                "previewUrl": self.preview_url,
                "previewReady": self.preview_ready,
                "warnings": self.warnings,
                "injection": self.injection.to_dict() if self.injection else None,
            })
        return data


class SessionSetupOrchestrator:
    """Top-level workflow; every collaborator is injected"""

    def __init__(self,
                 session_store: SessionStore,
                 progress_store: ProgressStore,
                 container_manager: ContainerManager,
                 port_allocator: PortAllocator,
                 build_detector: BuildDetector,
                 injector: DirectPickerInjection,
                 readiness_probe: Optional[ReadinessProbe] = None,
                 preview_host: Optional[str] = None):
        self.session_store = session_store
        self.progress_store = progress_store
        self.container_manager = container_manager
        self.port_allocator = port_allocator
        self.build_detector = build_detector
        self.injector = injector
        self.readiness_probe = readiness_probe or ReadinessProbe()
        self.preview_host = preview_host or settings.PREVIEW_HOST
        self._tasks: Set[asyncio.Task] = set()
        self._execution_sessions: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Progress helpers
    # ------------------------------------------------------------------

    def _emit(self, execution_id: Optional[str], text: str,
              severity: ProgressSeverity = ProgressSeverity.INFO) -> None:
        if execution_id:
            self.progress_store.append(execution_id, text, severity)

    def _complete(self, execution_id: Optional[str], success: bool) -> None:
        if execution_id:
            self.progress_store.complete(execution_id, success)

    def _mark_failed(self, session_id: str, error: str) -> None:
        try:
            self.session_store.update_session(session_id, build_status=BuildStatus.FAILED, error=error)
        except (SessionNotFoundError, InvalidStateTransitionError) as e:
            logger.warning(f"[SessionSetup] Could not mark {session_id} failed: {e}")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def setup_repository(self, repo_url: str,
                               session_id: Optional[str] = None,
                               execution_id: Optional[str] = None) -> SetupResult:
        session_id = session_id or uuid.uuid4().hex
        set_session_id(session_id)
        logger.info(f"[SessionSetup] Starting repo setup for {session_id}: {repo_url}")

        try:
            slug, repo_name = parse_repo_slug(repo_url)
            self.session_store.create_session(session_id)
            self.session_store.update_session(session_id, repo_url=repo_url, repo_name=repo_name)
        except Exception as e:
            self._emit(execution_id, f"Setup failed: {e}", ProgressSeverity.ERROR)
            self._complete(execution_id, False)
            return SetupResult(success=False, session_id=session_id,
                               message=f"Failed to set up repository: {e}", error=str(e))

        try:
            result = await self._run_setup(session_id, slug, repo_name, execution_id)
        except Exception as e:
            error = str(e)
            if isinstance(e, SetupError):
                logger.error(f"[SessionSetup] {session_id} failed at {e.stage}: {error}")
            else:
                logger.log_error_with_context(e, "setup_repository", session=session_id)
            self._mark_failed(session_id, error)
            self._emit(execution_id, f"Setup failed: {error}", ProgressSeverity.ERROR)
            self._complete(execution_id, False)
            return SetupResult(success=False, session_id=session_id, repo_name=repo_name,
                               message=f"Failed to set up repository: {error}", error=error)

        self._complete(execution_id, True)
        return result

    async def _provision_sandbox(self, session_id: str) -> int:
        """Claim a host port and start the sandbox, moving on when the port is taken"""
        bound: Set[int] = set()
        for _ in range(max(1, settings.PORT_CLAIM_RETRIES)):
            port = self.port_allocator.claim(exclude=bound)
            try:
                handle = await self.container_manager.create_sandbox(
                    session_id, {settings.PREVIEW_CONTAINER_PORT: port}
                )
                # Once the session records the port the reservation is redundant
                self.session_store.update_session(
                    session_id,
                    container_id=handle.container_id,
                    preview_port=port,
                    build_status=BuildStatus.CLONING,
                )
                return port
            except PortUnavailableError:
                logger.warning(f"[SessionSetup] Host port {port} already bound, trying next port")
                bound.add(port)
            finally:
                self.port_allocator.release(port)

        raise SetupError(f"No free host port after {settings.PORT_CLAIM_RETRIES} attempts",
                         stage="provision")

    async def _best_effort(self, session_id: str, execution_id: Optional[str],
                           label: str, command: str, warnings: List[str]) -> None:
        self._emit(execution_id, f"{label}: {command}")
        result = await self.container_manager.exec_shell(session_id, command,
                                                         working_dir=settings.REPO_DIR)
        if not result.success:
            detail = (result.stderr or result.stdout).strip()[-500:]
            warning = f"{label} exited with code {result.exit_code}"
            logger.warning(f"[SessionSetup] {session_id}: {warning}: {detail}")
            warnings.append(warning)
            self._emit(execution_id, f"{warning}; continuing")

    async def _run_setup(self, session_id: str, slug: str, repo_name: str,
                         execution_id: Optional[str]) -> SetupResult:
        warnings: List[str] = []

        # idle → cloning
        self._emit(execution_id, "Creating sandbox container")
        port = await self._provision_sandbox(session_id)

        self._emit(execution_id, f"Cloning {slug}")
        clone = await self.container_manager.exec(
            session_id,
            ["gh", "repo", "clone", slug, settings.REPO_DIR, "--", "--depth=1"],
            working_dir=settings.WORKSPACE_DIR,
        )
        if not clone.success:
            raise SetupError(f"Failed to clone repository: {clone.stderr.strip() or clone.stdout.strip()}",
                             stage="clone")

        # cloning → building
        self.session_store.update_session(session_id, build_status=BuildStatus.BUILDING)
        self._emit(execution_id, "Detecting build configuration")
        config: BuildConfig = await self.build_detector.detect(session_id)
        self.session_store.update_session(session_id, framework=config.framework.value)
        self._emit(execution_id, f"Detected {config.framework.value} ({config.package_manager.value})")

        await self._best_effort(session_id, execution_id, "Installing dependencies",
                                config.install_command, warnings)
        if config.build_command:
            await self._best_effort(session_id, execution_id, "Building project",
                                    config.build_command, warnings)

        self._emit(execution_id, "Injecting component picker")
        injection = await self.injector.inject(session_id, config.framework)
        if injection.success:
            self.session_store.update_session(session_id, picker_injected=True)
        else:
            warnings.append(f"Picker injection failed: {injection.error}")
            self._emit(execution_id, f"Picker injection failed: {injection.error}; continuing")

        container_port = settings.PREVIEW_CONTAINER_PORT
        dev_command = dev_server_command(config, container_port)
        self._emit(execution_id, f"Starting dev server: {dev_command}")
        await self.container_manager.start_background(
            session_id,
            dev_command,
            working_dir=settings.REPO_DIR,
            log_path=settings.DEV_SERVER_LOG,
            environment={
                "PORT": str(container_port),
                "HOST": "0.0.0.0",
                "HOSTNAME": "0.0.0.0",
                "BROWSER": "none",
            },
        )

        preview_url = f"http://{self.preview_host}:{port}"
        self._emit(execution_id, "Waiting for dev server to respond")
        if not await self.readiness_probe.wait_until_ready(f"{preview_url}/"):
            log_tail = ""
            try:
                log_tail = (await self.container_manager.read_background_log(session_id, 20)).strip()
            except Exception as e:
                logger.debug(f"[SessionSetup] Could not read dev server log: {e}")
            if log_tail:
                logger.warning(f"[SessionSetup] Dev server log for {session_id}:\n{log_tail}")
            raise SetupError(
                f"Dev server did not become ready on port {port} after "
                f"{self.readiness_probe.attempts} attempts (timed out)",
                stage="readiness",
            )

        # building → running
        self.session_store.update_session(session_id, build_status=BuildStatus.RUNNING,
                                          preview_ready=True)
        message = (f"Successfully set up {repo_name}. The dev server is running on port {port}. "
                   f"You can now browse files and preview the application.")
        self._emit(execution_id, message, ProgressSeverity.SUCCESS)
        logger.log_session_event(session_id, "setup completed", status=BuildStatus.RUNNING.value,
                                 preview_port=port)

        return SetupResult(
            success=True,
            session_id=session_id,
            message=message,
            repo_name=repo_name,
            framework=config.framework.value,
            preview_port=port,
            preview_url=preview_url,
            preview_ready=True,
            injection=injection,
            warnings=warnings,
        )

    def start_tracked_setup(self, repo_url: str) -> Dict[str, Any]:
        """
        Run setup in the background under a progress execution.

        A second call with the same input while the first is still running
        attaches to the existing execution instead of starting another.
        """
        dedup_key = ProgressStore.hash_input({"repoUrl": repo_url})
        existing = self.progress_store.lookup_by_dedup_key(dedup_key)
        if existing and not self.progress_store.is_completed(existing):
            return {
                "executionId": existing,
                "sessionId": self._execution_sessions.get(existing),
                "attached": True,
            }

        execution_id = uuid.uuid4().hex
        session_id = uuid.uuid4().hex
        self.progress_store.create(execution_id, dedup_key=dedup_key)
        self._execution_sessions[execution_id] = session_id

        task = asyncio.create_task(self.setup_repository(repo_url, session_id, execution_id))
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            self._execution_sessions.pop(execution_id, None)

        task.add_done_callback(_done)
        return {"executionId": execution_id, "sessionId": session_id, "attached": False}

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _teardown(self, session: SessionData) -> OutcomeReport:
        report = OutcomeReport(f"teardown:{session.session_id}")
        if session.picker_injected and self.container_manager.has_sandbox(session.session_id):
            report.extend(await self.injector.rollback(session.session_id))
        report.add(await self.container_manager.destroy_sandbox(session.session_id))
        if self.session_store.delete_session(session.session_id):
            report.add(StepOutcome.ok("delete_session"))
        report.log()
        return report

    async def cleanup_session(self, session_id: str) -> OutcomeReport:
        session = self.session_store.peek_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return await self._teardown(session)

    async def cleanup_stale_sessions(self, max_inactivity: Optional[float] = None) -> List[str]:
        """Sweep idle sessions and tear down their sandboxes"""
        stale = self.session_store.pop_stale(max_inactivity)
        for session in stale:
            try:
                await self._teardown(session)
            except Exception as e:
                logger.log_error_with_context(e, "cleanup_stale_sessions", session=session.session_id)
        return [s.session_id for s in stale]

    async def reap_orphans(self) -> OutcomeReport:
        return await self.container_manager.reap_orphans()
