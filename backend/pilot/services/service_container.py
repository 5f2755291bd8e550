"""
Explicit wiring of every store and manager.

One ServiceContainer per FastAPI app (or per test). Nothing in the package
keeps module-level singletons of these objects.
"""

from dataclasses import dataclass
from typing import Optional

import docker

from pilot.modules.build.build_detector import BuildDetector
from pilot.modules.injection.direct_injection import DirectPickerInjection
from pilot.modules.orchestrator.readiness import ReadinessProbe
from pilot.modules.orchestrator.session_setup import SessionSetupOrchestrator
from pilot.modules.picker.picker_support import PickerSupport
from pilot.modules.sandbox.container_manager import ContainerManager
from pilot.modules.sandbox.port_allocator import PortAllocator
from pilot.services.progress_store import ProgressStore
from pilot.services.sandbox_cleanup import SessionReaper
from pilot.services.session_store import SessionStore


@dataclass
class ServiceContainer:
    session_store: SessionStore
    progress_store: ProgressStore
    container_manager: ContainerManager
    port_allocator: PortAllocator
    build_detector: BuildDetector
    injector: DirectPickerInjection
    picker_support: PickerSupport
    orchestrator: SessionSetupOrchestrator
    reaper: SessionReaper


def create_services(docker_client: Optional[docker.DockerClient] = None,
                    container_manager: Optional[ContainerManager] = None,
                    readiness_probe: Optional[ReadinessProbe] = None) -> ServiceContainer:
    """
    Build a fresh, fully wired set of services.

    The Docker client is resolved lazily on first use, so creating services
    never requires a reachable daemon.
    """
    session_store = SessionStore()
    progress_store = ProgressStore()
    container_manager = container_manager or ContainerManager(docker_client)
    port_allocator = PortAllocator(session_store)
    build_detector = BuildDetector(container_manager)
    injector = DirectPickerInjection(container_manager)
    orchestrator = SessionSetupOrchestrator(
        session_store=session_store,
        progress_store=progress_store,
        container_manager=container_manager,
        port_allocator=port_allocator,
        build_detector=build_detector,
        injector=injector,
        readiness_probe=readiness_probe,
    )
    return ServiceContainer(
        session_store=session_store,
        progress_store=progress_store,
        container_manager=container_manager,
        port_allocator=port_allocator,
        build_detector=build_detector,
        injector=injector,
        picker_support=PickerSupport(container_manager),
        orchestrator=orchestrator,
        reaper=SessionReaper(orchestrator),
    )
