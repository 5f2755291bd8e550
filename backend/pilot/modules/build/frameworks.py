"""
Supported frontend frameworks and their per-framework data.

Adding a framework means adding an enum member, a signature row and a
profile row; nothing else branches on framework names.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple


class Framework(str, Enum):
    """Frameworks recognised from package.json dependencies"""
    NEXTJS = "Next.js"
    VITE = "Vite"
    REMIX = "Remix"
    CREATE_REACT_APP = "Create React App"
    NUXT = "Nuxt"
    GATSBY = "Gatsby"
    ANGULAR = "Angular"
    VUE = "Vue"
    SVELTE = "Svelte"
    UNKNOWN = "Unknown"


class PackageManager(str, Enum):
    NPM = "npm"
    YARN = "yarn"
    PNPM = "pnpm"


# Ordered: first dependency found wins. Meta-frameworks come before the
# libraries they build on (Next.js ships react, Nuxt ships vue).
FRAMEWORK_SIGNATURES: List[Tuple[str, Framework]] = [
    ("next", Framework.NEXTJS),
    ("vite", Framework.VITE),
    ("remix", Framework.REMIX),
    ("@remix-run/react", Framework.REMIX),
    ("react-scripts", Framework.CREATE_REACT_APP),
    ("nuxt", Framework.NUXT),
    ("gatsby", Framework.GATSBY),
    ("@angular/core", Framework.ANGULAR),
    ("vue", Framework.VUE),
    ("svelte", Framework.SVELTE),
]

# Lock file probes, in priority order; npm is the fallback
LOCK_FILES: List[Tuple[str, PackageManager]] = [
    ("pnpm-lock.yaml", PackageManager.PNPM),
    ("yarn.lock", PackageManager.YARN),
]

# Preferred script names, in priority order
DEV_SCRIPT_PRIORITY = ["dev", "start", "serve", "preview"]

HOST_PORT_ARGS = "--host 0.0.0.0 --port {port}"
SHORT_HOST_PORT_ARGS = "-H 0.0.0.0 -p {port}"


@dataclass(frozen=True)
class FrameworkProfile:
    default_port: int
    default_script: str
    # Extra dev-server arguments that make it listen on all interfaces at
    # the given port; empty when the framework reads HOST/PORT from env.
    bind_args: str = ""


FRAMEWORK_PROFILES: Dict[Framework, FrameworkProfile] = {
    Framework.NEXTJS: FrameworkProfile(3000, "dev", SHORT_HOST_PORT_ARGS),
    Framework.VITE: FrameworkProfile(5173, "dev", HOST_PORT_ARGS),
    Framework.REMIX: FrameworkProfile(3000, "dev"),
    Framework.CREATE_REACT_APP: FrameworkProfile(3000, "start"),
    Framework.NUXT: FrameworkProfile(3000, "dev", HOST_PORT_ARGS),
    Framework.GATSBY: FrameworkProfile(3000, "dev", SHORT_HOST_PORT_ARGS),
    Framework.ANGULAR: FrameworkProfile(4200, "start", HOST_PORT_ARGS),
    Framework.VUE: FrameworkProfile(8080, "start", HOST_PORT_ARGS),
    Framework.SVELTE: FrameworkProfile(3000, "dev", HOST_PORT_ARGS),
    Framework.UNKNOWN: FrameworkProfile(3000, "dev"),
}


def profile_for(framework: Framework) -> FrameworkProfile:
    return FRAMEWORK_PROFILES[framework]
