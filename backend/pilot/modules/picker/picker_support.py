"""
Component picker support

The picker is a browser script served from /picker/ and loaded into the
preview iframe. This module decides whether a session's app can host it
(React detection from inside the sandbox), hands out the loader tag or the
inline source, and describes the postMessage protocol.
"""

import json
from pathlib import Path
from typing import Any, Dict

from pilot.core.config import settings
from pilot.core.logging_config import logger
from pilot.schemas.picker import FROM_IFRAME_MESSAGES, TO_IFRAME_MESSAGES

PICKER_STATIC_DIR = Path(__file__).resolve().parent.parent.parent / "static" / "picker"
PICKER_ASSET_NAME = "react-component-picker.js"

# Runs with node inside the sandbox; prints one JSON line
REACT_DETECTION_SCRIPT = """
const http = require('http');
const req = http.request(
  { hostname: 'localhost', port: %(port)d, path: '/', method: 'GET',
    headers: { 'User-Agent': 'Pilot-Picker-Detector' } },
  (res) => {
    let data = '';
    res.on('data', (chunk) => { data += chunk; });
    res.on('end', () => {
      const hasRoot = data.includes('data-reactroot') || data.includes('id="root"') || data.includes('id="__next"');
      const hasScript = data.includes('react') || data.includes('React');
      console.log(JSON.stringify({ hasReact: hasRoot || hasScript,
        confidence: hasRoot ? 'high' : (hasScript ? 'medium' : 'low') }));
    });
  });
req.on('error', (error) => console.log(JSON.stringify({ hasReact: false, error: error.message })));
req.setTimeout(5000, () => { req.destroy(); console.log(JSON.stringify({ hasReact: false, error: 'timeout' })); });
req.end();
"""


def load_picker_asset() -> str:
    return (PICKER_STATIC_DIR / PICKER_ASSET_NAME).read_text(encoding="utf-8")


def get_injection_script(base_url: str = "") -> str:
    """Loader tag for the host page to insert into the iframe document"""
    return f"""
      <script id="__pilot-picker-injector">
        (function() {{
          if (window.__pilotPickerInjected) {{
            return;
          }}
          window.__pilotPickerInjected = true;

          var script = document.createElement('script');
          script.src = '{base_url}/picker/{PICKER_ASSET_NAME}';
          script.id = '__pilot-picker-script';
          script.onerror = function() {{
            window.parent.postMessage({{
              type: 'picker-load-error',
              error: 'Failed to load picker script'
            }}, '*');
          }};
          document.head.appendChild(script);
        }})();
      </script>
    """


def get_inline_picker_script() -> str:
    try:
        return load_picker_asset()
    except OSError as e:
        logger.error(f"[PickerSupport] Error reading picker script: {e}")
        return ""


def get_post_message_config() -> Dict[str, Any]:
    return {
        "messageTypes": {
            "fromIframe": list(FROM_IFRAME_MESSAGES),
            "toIframe": list(TO_IFRAME_MESSAGES),
        },
        "targetOrigin": "*",
    }


class PickerSupport:
    """React detection inside a session's sandbox"""

    def __init__(self, container_manager):
        self.container_manager = container_manager

    async def detect_react(self, session_id: str, port: int = None) -> Dict[str, Any]:
        port = port or settings.PREVIEW_CONTAINER_PORT
        try:
            result = await self.container_manager.exec(
                session_id, ["node", "-e", REACT_DETECTION_SCRIPT % {"port": port}]
            )
        except Exception as e:
            logger.error(f"[PickerSupport] Error detecting React for {session_id}: {e}")
            return {"hasReact": False, "error": str(e)}

        lines = result.stdout.strip().splitlines()
        try:
            parsed = json.loads(lines[-1]) if lines else {}
        except json.JSONDecodeError:
            logger.warning(f"[PickerSupport] Unparseable detection output: {lines[-1]!r}")
            return {"hasReact": False}

        info: Dict[str, Any] = {"hasReact": parsed.get("hasReact") is True, "mode": "development"}
        if "confidence" in parsed:
            info["confidence"] = parsed["confidence"]
        if "error" in parsed:
            info["error"] = parsed["error"]
        return info

    async def is_supported(self, session_id: str, port: int = None) -> Dict[str, Any]:
        react_info = await self.detect_react(session_id, port)
        if not react_info["hasReact"]:
            return {
                "supported": False,
                "reason": "React not detected. Component picker requires a React application.",
                "details": react_info,
            }
        return {"supported": True, "details": react_info}
