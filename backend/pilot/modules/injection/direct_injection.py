"""
Direct picker injection and rollback.

inject() copies the picker asset into the repo's public/ folder and adds a
script tag to the framework's entry point. The untouched file is first
copied to `<file>.pilot-backup` inside the sandbox and every modified path
is listed in a manifest, so rollback() can put the repository back
byte-for-byte without the orchestrator holding any copy in memory.
"""

import json
import posixpath
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from pilot.core.config import settings
from pilot.core.exceptions import InjectionError, PilotError
from pilot.core.logging_config import logger
from pilot.core.outcomes import OutcomeReport, StepOutcome
from pilot.modules.build.frameworks import Framework
from pilot.modules.injection.strategies import PICKER_MARKER, EntryPointRule, strategy_for
from pilot.modules.picker.picker_support import PICKER_ASSET_NAME, load_picker_asset

BACKUP_SUFFIX = ".pilot-backup"
MANIFEST_NAME = ".pilot-modifications.json"


@dataclass
class InjectionResult:
    success: bool
    files_modified: List[str] = field(default_factory=list)
    entry_point: Optional[str] = None
    already_injected: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "filesModified": self.files_modified,
            "entryPoint": self.entry_point,
            "alreadyInjected": self.already_injected,
            "error": self.error,
        }


class DirectPickerInjection:
    def __init__(self, container_manager,
                 repo_dir: Optional[str] = None,
                 workspace_dir: Optional[str] = None):
        self.container_manager = container_manager
        self.repo_dir = repo_dir or settings.REPO_DIR
        self.workspace_dir = workspace_dir or settings.WORKSPACE_DIR

    @property
    def picker_dir(self) -> str:
        return f"{self.repo_dir}/public/picker"

    @property
    def manifest_path(self) -> str:
        return posixpath.join(self.workspace_dir, MANIFEST_NAME)

    async def _read_if_exists(self, session_id: str, path: str) -> Optional[str]:
        try:
            return await self.container_manager.read_file(session_id, path)
        except PilotError:
            return None

    async def _locate(self, session_id: str,
                      chain: Tuple[EntryPointRule, ...]) -> Tuple[Optional[EntryPointRule], Optional[str], Optional[str], Optional[str]]:
        """
        Walk the strategy chain.

        Returns (rule, path, original, modified). `modified` is None when the
        file already carries the marker.
        """
        for rule in chain:
            for candidate in rule.candidates:
                path = f"{self.repo_dir}/{candidate}"
                content = await self._read_if_exists(session_id, path)
                if content is None:
                    continue
                if PICKER_MARKER in content:
                    return rule, path, content, None
                modified = rule.insert(content)
                if modified is None:
                    logger.debug(f"[DirectInjection] No anchor in {path}, trying next candidate")
                    continue
                return rule, path, content, modified
        return None, None, None, None

    async def _run_checked(self, session_id: str, argv: List[str]) -> None:
        result = await self.container_manager.exec(session_id, argv)
        if not result.success:
            raise InjectionError(f"{' '.join(argv)} failed: {result.stderr.strip() or result.exit_code}")

    async def inject(self, session_id: str, framework: Union[Framework, str]) -> InjectionResult:
        """Never raises; failures come back as InjectionResult(success=False)"""
        try:
            framework = Framework(framework)
        except ValueError:
            framework = Framework.UNKNOWN

        logger.info(f"[DirectInjection] Starting picker injection for {session_id} ({framework.value})")
        try:
            rule, path, _original, modified = await self._locate(session_id, strategy_for(framework))
            if rule is None:
                raise InjectionError("Could not find an entry point to inject picker")
            if modified is None:
                logger.info(f"[DirectInjection] Picker already injected in {path}")
                return InjectionResult(success=True, entry_point=rule.name, already_injected=True)

            await self._run_checked(session_id, ["mkdir", "-p", self.picker_dir])
            await self.container_manager.write_file(
                session_id, f"{self.picker_dir}/{PICKER_ASSET_NAME}", load_picker_asset()
            )

            await self._run_checked(session_id, ["cp", "-p", path, f"{path}{BACKUP_SUFFIX}"])
            await self.container_manager.write_file(session_id, path, modified)

            manifest = {
                "modifiedAt": datetime.now(timezone.utc).isoformat(),
                "files": [path],
                "sessionId": session_id,
            }
            try:
                await self.container_manager.write_file(
                    session_id, self.manifest_path, json.dumps(manifest, indent=2)
                )
            except PilotError:
                # Without a manifest rollback could never find the backup
                await self.container_manager.exec(session_id, ["mv", f"{path}{BACKUP_SUFFIX}", path])
                raise

        except Exception as e:
            logger.error(f"[DirectInjection] Failed to inject picker for {session_id}: {e}")
            return InjectionResult(success=False, error=str(e))

        logger.info(f"[DirectInjection] Injected via {rule.name} into {path}")
        return InjectionResult(success=True, files_modified=[path], entry_point=rule.name)

    async def _read_manifest(self, session_id: str) -> List[str]:
        raw = await self._read_if_exists(session_id, self.manifest_path)
        if raw is None:
            return []
        try:
            files = json.loads(raw).get("files", [])
        except (json.JSONDecodeError, AttributeError):
            logger.warning(f"[DirectInjection] Unreadable manifest for {session_id}")
            return []
        return [f for f in files if isinstance(f, str)]

    async def rollback(self, session_id: str) -> OutcomeReport:
        """Restore backups and remove picker artefacts; each step independent"""
        report = OutcomeReport(f"rollback_injection:{session_id}")

        try:
            files = await self._read_manifest(session_id)
        except Exception as e:
            files = []
            report.add(StepOutcome.degraded("read_manifest", e))
        if not files:
            report.add(StepOutcome.skipped("restore_files", "no manifest"))

        for path in files:
            step = f"restore:{path}"
            backup = f"{path}{BACKUP_SUFFIX}"
            try:
                check = await self.container_manager.exec(session_id, ["test", "-f", backup])
                if check.exit_code != 0:
                    report.add(StepOutcome.skipped(step, "no backup"))
                    continue
                restored = await self.container_manager.exec(session_id, ["mv", backup, path])
                if restored.success:
                    report.add(StepOutcome.ok(step))
                else:
                    report.add(StepOutcome.degraded(step, restored.stderr.strip() or restored.exit_code))
            except Exception as e:
                report.add(StepOutcome.degraded(step, e))

        for step, argv in (
            ("remove_picker_dir", ["rm", "-rf", self.picker_dir]),
            ("remove_manifest", ["rm", "-f", self.manifest_path]),
        ):
            try:
                result = await self.container_manager.exec(session_id, argv)
                report.add(StepOutcome.ok(step) if result.success
                           else StepOutcome.degraded(step, result.stderr.strip() or result.exit_code))
            except Exception as e:
                report.add(StepOutcome.degraded(step, e))

        report.log()
        return report
