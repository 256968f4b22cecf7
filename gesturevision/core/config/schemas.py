"""Schema of the configuration document.

Field names are snake_case in Python and camelCase on disk and on the wire.
Unknown keys are dropped during validation; documents are dumped with
``exclude_unset`` so optional keys that were absent stay absent.
"""

from __future__ import annotations

from typing import Annotated, Any, List, Optional, Union
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Discriminator,
    Field,
    StrictBool,
    StrictStr,
    Tag,
    ValidationInfo,
    field_validator,
)

from ..naming import normalize_name

ALLOWED_FPS_VALUES = (5, 10, 15, 20, 30)


def _require_number(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError("Expected number")
    return value


Number = Annotated[float, BeforeValidator(_require_number)]


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RoiConfig(_Model):
    x: Number = Field(ge=0, le=100)
    y: Number = Field(ge=0, le=100)
    width: Number = Field(ge=1, le=100)
    height: Number = Field(ge=1, le=100)

    @field_validator("width")
    @classmethod
    def _width_fits(cls, value: float, info: ValidationInfo) -> float:
        x = info.data.get("x")
        if x is not None and x + value > 100:
            raise ValueError("Left Offset + Width cannot exceed 100.")
        return value

    @field_validator("height")
    @classmethod
    def _height_fits(cls, value: float, info: ValidationInfo) -> float:
        y = info.data.get("y")
        if y is not None and y + value > 100:
            raise ValueError("Top Offset + Height cannot exceed 100.")
        return value


class ActionConfig(_Model):
    plugin_id: StrictStr = Field(alias="pluginId")
    settings: Any = None


class RtspSource(_Model):
    name: StrictStr = Field(min_length=1)
    url: StrictStr
    source_on_demand: Optional[StrictBool] = Field(default=None, alias="sourceOnDemand")
    roi: Optional[RoiConfig] = None

    @field_validator("url")
    @classmethod
    def _rtsp_url(cls, value: str) -> str:
        if not value.startswith("rtsp://"):
            raise ValueError("URL must start with rtsp://")
        if not urlparse(value).netloc:
            raise ValueError("Invalid url")
        return value


class GestureBinding(_Model):
    gesture: StrictStr = Field(min_length=1)
    confidence: Number = Field(ge=0, le=100)
    duration: Number = Field(gt=0)
    action_config: Optional[ActionConfig] = Field(alias="actionConfig")


class PoseBinding(_Model):
    pose: StrictStr = Field(min_length=1)
    duration: Number = Field(gt=0)
    action_config: Optional[ActionConfig] = Field(alias="actionConfig")
    confidence: Optional[Number] = Field(default=None, ge=0, le=100)


def _binding_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "PoseBinding" if "pose" in value and "gesture" not in value else "GestureBinding"
    return "PoseBinding" if isinstance(value, PoseBinding) else "GestureBinding"


Binding = Annotated[
    Union[
        Annotated[GestureBinding, Tag("GestureBinding")],
        Annotated[PoseBinding, Tag("PoseBinding")],
    ],
    Discriminator(_binding_kind),
]

TuningConfidence = Optional[Number]


class FullConfiguration(_Model):
    global_cooldown: Number = Field(alias="globalCooldown", ge=0)
    rtsp_sources: List[RtspSource] = Field(alias="rtspSources")
    gesture_configs: List[Binding] = Field(alias="gestureConfigs")
    target_fps_preference: int = Field(alias="targetFpsPreference")
    telemetry_enabled: Optional[StrictBool] = Field(default=None, alias="telemetryEnabled")
    enable_custom_hand_gestures: StrictBool = Field(alias="enableCustomHandGestures")
    enable_pose_processing: StrictBool = Field(alias="enablePoseProcessing")
    enable_built_in_hand_gestures: StrictBool = Field(alias="enableBuiltInHandGestures")
    low_light_brightness: Optional[Number] = Field(default=None, alias="lowLightBrightness", ge=0, le=5000)
    low_light_contrast: Optional[Number] = Field(default=None, alias="lowLightContrast", ge=0, le=5000)
    hand_detection_confidence: TuningConfidence = Field(default=None, alias="handDetectionConfidence", ge=0.1, le=0.9)
    hand_presence_confidence: TuningConfidence = Field(default=None, alias="handPresenceConfidence", ge=0.1, le=0.9)
    hand_tracking_confidence: TuningConfidence = Field(default=None, alias="handTrackingConfidence", ge=0.1, le=0.9)
    pose_detection_confidence: TuningConfidence = Field(default=None, alias="poseDetectionConfidence", ge=0.1, le=0.9)
    pose_presence_confidence: TuningConfidence = Field(default=None, alias="posePresenceConfidence", ge=0.1, le=0.9)
    pose_tracking_confidence: TuningConfidence = Field(default=None, alias="poseTrackingConfidence", ge=0.1, le=0.9)
    migration_version: Optional[Number] = Field(default=None, alias="_migrationVersion")

    @field_validator("target_fps_preference", mode="before")
    @classmethod
    def _coerce_fps(cls, value: Any) -> int:
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                value = None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value not in ALLOWED_FPS_VALUES:
            raise ValueError(
                "Target FPS must be one of: " + ", ".join(str(v) for v in ALLOWED_FPS_VALUES)
            )
        return int(value)

    @field_validator("rtsp_sources")
    @classmethod
    def _unique_source_names(cls, sources: List[RtspSource]) -> List[RtspSource]:
        seen = set()
        for source in sources:
            key = normalize_name(source.name)
            if key in seen:
                raise ValueError(f"Duplicate RTSP source name: {source.name}")
            seen.add(key)
        return sources


DEFAULT_CONFIG = {
    "globalCooldown": 2.0,
    "rtspSources": [],
    "gestureConfigs": [],
    "targetFpsPreference": 15,
    "telemetryEnabled": False,
    "enableCustomHandGestures": False,
    "enablePoseProcessing": False,
    "enableBuiltInHandGestures": True,
    "lowLightBrightness": 100,
    "lowLightContrast": 100,
    "handDetectionConfidence": 0.5,
    "handPresenceConfidence": 0.5,
    "handTrackingConfidence": 0.4,
    "poseDetectionConfidence": 0.5,
    "posePresenceConfidence": 0.5,
    "poseTrackingConfidence": 0.4,
}
