"""
Build Detector - infer framework, package manager and commands for a cloned repo

Detection is advisory: any read or parse failure returns DEFAULT_BUILD_CONFIG
instead of raising, so setup can still try `npm install` / `npm run dev`.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from pilot.core.config import settings
from pilot.core.logging_config import logger
from pilot.modules.build.frameworks import (
    DEV_SCRIPT_PRIORITY,
    FRAMEWORK_SIGNATURES,
    LOCK_FILES,
    Framework,
    PackageManager,
    profile_for,
)

PORT_FLAG_PATTERN = re.compile(r"--port[=\s]+(\d+)")


@dataclass(frozen=True)
class BuildConfig:
    framework: Framework
    package_manager: PackageManager
    install_command: str
    build_command: Optional[str]
    dev_command: str
    default_port: int
    dev_script: str = "dev"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "framework": self.framework.value,
            "packageManager": self.package_manager.value,
            "installCommand": self.install_command,
            "buildCommand": self.build_command,
            "devCommand": self.dev_command,
            "defaultPort": self.default_port,
        }


DEFAULT_BUILD_CONFIG = BuildConfig(
    framework=Framework.UNKNOWN,
    package_manager=PackageManager.NPM,
    install_command="npm install",
    build_command=None,
    dev_command="npm run dev",
    default_port=3000,
)


def detect_framework(manifest: Mapping[str, Any]) -> Framework:
    dependencies: Dict[str, Any] = {}
    for key in ("dependencies", "devDependencies"):
        section = manifest.get(key)
        if isinstance(section, dict):
            dependencies.update(section)
    for dependency, framework in FRAMEWORK_SIGNATURES:
        if dependency in dependencies:
            return framework
    return Framework.UNKNOWN


def choose_dev_script(scripts: Mapping[str, Any], framework: Framework) -> str:
    for name in DEV_SCRIPT_PRIORITY:
        if name in scripts:
            return name
    return profile_for(framework).default_script


def parse_port(script_body: Optional[str], framework: Framework) -> int:
    if script_body:
        match = PORT_FLAG_PATTERN.search(script_body)
        if match:
            return int(match.group(1))
    return profile_for(framework).default_port


def build_config_from_manifest(manifest: Mapping[str, Any],
                               package_manager: PackageManager) -> BuildConfig:
    """Pure part of detection: everything except the lock file probe"""
    framework = detect_framework(manifest)
    scripts = manifest.get("scripts")
    if not isinstance(scripts, dict):
        scripts = {}

    dev_script = choose_dev_script(scripts, framework)
    pm = package_manager.value
    script_body = scripts.get(dev_script)
    return BuildConfig(
        framework=framework,
        package_manager=package_manager,
        install_command=f"{pm} install",
        build_command=f"{pm} run build" if "build" in scripts else None,
        dev_command=f"{pm} run {dev_script}",
        default_port=parse_port(script_body if isinstance(script_body, str) else None, framework),
        dev_script=dev_script,
    )


def dev_server_command(config: BuildConfig, port: int) -> str:
    """Dev command plus the arguments that bind it to 0.0.0.0:<port>"""
    bind_args = profile_for(config.framework).bind_args.format(port=port)
    if not bind_args:
        return config.dev_command
    if config.package_manager == PackageManager.NPM:
        return f"{config.dev_command} -- {bind_args}"
    return f"{config.dev_command} {bind_args}"


class BuildDetector:
    """Reads package.json and lock files from the session's sandbox"""

    def __init__(self, container_manager, repo_dir: Optional[str] = None):
        self.container_manager = container_manager
        self.repo_dir = repo_dir or settings.REPO_DIR

    async def detect_package_manager(self, session_id: str) -> PackageManager:
        for lock_file, manager in LOCK_FILES:
            result = await self.container_manager.exec(
                session_id, ["test", "-f", f"{self.repo_dir}/{lock_file}"]
            )
            if result.exit_code == 0:
                return manager
        return PackageManager.NPM

    async def detect(self, session_id: str) -> BuildConfig:
        try:
            raw = await self.container_manager.read_file(session_id, f"{self.repo_dir}/package.json")
            manifest = json.loads(raw)
            if not isinstance(manifest, dict):
                raise ValueError("package.json is not a JSON object")
            package_manager = await self.detect_package_manager(session_id)
            config = build_config_from_manifest(manifest, package_manager)
        except Exception as e:
            logger.warning(f"[BuildDetector] Detection failed for {session_id}, using defaults: {e}")
            return DEFAULT_BUILD_CONFIG

        logger.info(
            f"[BuildDetector] {session_id}: {config.framework.value} via {config.package_manager.value}, "
            f"dev='{config.dev_command}', port={config.default_port}"
        )
        return config
