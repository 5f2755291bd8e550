"""
Pydantic schemas for the component picker postMessage protocol
"""

from pydantic import BaseModel, Field

FROM_IFRAME_MESSAGES = (
    "component-selected",
    "picker-ready",
    "picker-error",
    "picker-cancelled",
    "picker-load-error",
)
TO_IFRAME_MESSAGES = ("activate-picker", "deactivate-picker", "inject-script")


class PickerScriptRequest(BaseModel):
    inline: bool = Field(False, description="Return the full picker source instead of a loader tag")


class PickerScriptResponse(BaseModel):
    script: str
    inline: bool
    timestamp: str
