"""
Per-framework entry points for picker injection.

Each framework maps to an ordered chain of EntryPointRules. A rule lists
candidate files (first existing one wins) and an insertion function that
returns the rewritten content, or None when the file has no usable anchor,
in which case the next candidate and then the next rule are tried. Every
chain ends with the generic HTML template rule.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from pilot.modules.build.frameworks import Framework

PICKER_MARKER = "__pilot_picker_injected__"
PICKER_SCRIPT_SRC = "/picker/react-component-picker.js"

_HEAD_OPEN = re.compile(r"<head>", re.IGNORECASE)
_HEAD_CLOSE = re.compile(r"</head>", re.IGNORECASE)
_HTML_OPEN = re.compile(r"<html([^>]*)>", re.IGNORECASE)
_BODY_OPEN = re.compile(r"<body>", re.IGNORECASE)
_NEXT_HEAD = re.compile(r"<Head>")


def _sub_once(pattern: "re.Pattern[str]", replacement: Callable[["re.Match[str]"], str],
              content: str) -> Optional[str]:
    if not pattern.search(content):
        return None
    return pattern.sub(replacement, content, count=1)


def insert_into_app_layout(content: str) -> Optional[str]:
    """App Router layout: after <head>, or synthesize a head inside <html>"""
    tag = (f"        {{/* {PICKER_MARKER} - Auto-injected by Pilot */}}\n"
           f"        <script src=\"{PICKER_SCRIPT_SRC}\" defer />")
    modified = _sub_once(_HEAD_OPEN, lambda m: f"{m.group(0)}\n{tag}", content)
    if modified is not None:
        return modified
    return _sub_once(
        _HTML_OPEN,
        lambda m: f"{m.group(0)}\n      <head>\n{tag}\n      </head>",
        content,
    )


def insert_into_pages_document(content: str) -> Optional[str]:
    """Pages Router _document: after the next/document <Head> component"""
    tag = (f"          {{/* {PICKER_MARKER} */}}\n"
           f"          <script src=\"{PICKER_SCRIPT_SRC}\" defer />")
    return _sub_once(_NEXT_HEAD, lambda m: f"{m.group(0)}\n{tag}", content)


def insert_into_html(content: str) -> Optional[str]:
    """Plain HTML: before </head>, else after <body>, else appended"""
    tag = (f"    <!-- {PICKER_MARKER} -->\n"
           f"    <script src=\"{PICKER_SCRIPT_SRC}\" defer></script>")
    modified = _sub_once(_HEAD_CLOSE, lambda m: f"{tag}\n  {m.group(0)}", content)
    if modified is not None:
        return modified
    modified = _sub_once(_BODY_OPEN, lambda m: f"{m.group(0)}\n{tag}", content)
    if modified is not None:
        return modified
    return f"{content}\n{tag}"


@dataclass(frozen=True)
class EntryPointRule:
    name: str
    candidates: Tuple[str, ...]  # relative to the repository root
    insert: Callable[[str], Optional[str]]


APP_ROUTER_LAYOUT = EntryPointRule(
    name="next-app-router",
    candidates=("app/layout.tsx", "app/layout.jsx", "src/app/layout.tsx", "src/app/layout.jsx"),
    insert=insert_into_app_layout,
)

PAGES_ROUTER_DOCUMENT = EntryPointRule(
    name="next-pages-router",
    candidates=("pages/_document.tsx", "pages/_document.jsx",
                "src/pages/_document.tsx", "src/pages/_document.jsx"),
    insert=insert_into_pages_document,
)

HTML_TEMPLATE = EntryPointRule(
    name="html-template",
    candidates=("public/index.html", "index.html", "src/index.html"),
    insert=insert_into_html,
)

DEFAULT_CHAIN: Tuple[EntryPointRule, ...] = (HTML_TEMPLATE,)

INJECTION_STRATEGIES: Dict[Framework, Tuple[EntryPointRule, ...]] = {
    Framework.NEXTJS: (APP_ROUTER_LAYOUT, PAGES_ROUTER_DOCUMENT, HTML_TEMPLATE),
    Framework.VITE: DEFAULT_CHAIN,
    Framework.CREATE_REACT_APP: DEFAULT_CHAIN,
}


def strategy_for(framework: Framework) -> Tuple[EntryPointRule, ...]:
    return INJECTION_STRATEGIES.get(framework, DEFAULT_CHAIN)
