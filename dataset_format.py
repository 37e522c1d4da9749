from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SensorCategory(Enum):
    CAMERA = "camera"
    LIDAR = "lidar"
    RADAR = "radar"


@dataclass(frozen=True)
class ExtractedFileNameInfo:
    log_name: str
    channel: str
    stamp_us: int
    extension: str = ""


@dataclass(frozen=True)
class Scene:
    token: str
    scene_id: int
    name: str
    first_sample_token: str = ""
    last_sample_token: str = ""
    description: str = ""

    def __post_init__(self):
        assert self.token, "Scene token cannot be empty"
        assert self.scene_id >= 0, "Scene id must be non-negative"


@dataclass(frozen=True)
class Sample:
    token: str
    scene_token: str
    timestamp_us: int
    prev: str = ""
    next: str = ""

    def __post_init__(self):
        assert self.token, "Sample token cannot be empty"
        assert self.timestamp_us >= 0, "Timestamp must be non-negative"


@dataclass(frozen=True)
class SampleData:
    token: str
    sample_token: str
    file_name: str
    timestamp_us: int
    is_key_frame: bool
    calibrated_sensor_token: str
    ego_pose_token: str = ""

    def __post_init__(self):
        assert self.token, "SampleData token cannot be empty"
        assert self.file_name, "File name cannot be empty"
        assert self.timestamp_us >= 0, "Timestamp must be non-negative"


@dataclass(frozen=True)
class Annotation:
    token: str
    sample_token: str
    instance_token: str
    translation: List[float]
    size: List[float]
    rotation: List[float]
    category_name: str = "unknown"

    def __post_init__(self):
        """Validate annotation data."""
        assert len(self.translation) == 3, "Translation must be [x, y, z]"
        assert len(self.size) == 3, "Size must be [width, length, height]"
        assert len(self.rotation) == 4, "Rotation must be quaternion [w, x, y, z]"


@dataclass(frozen=True)
class EgoPose:
    token: str
    timestamp_us: int
    translation: List[float]
    rotation: List[float]

    def __post_init__(self):
        """Validate ego pose data."""
        assert len(self.translation) == 3, "Translation must be [x, y, z]"
        assert len(self.rotation) == 4, "Rotation must be quaternion [w, x, y, z]"
        assert self.timestamp_us >= 0, "Timestamp must be non-negative"


@dataclass(frozen=True)
class Sensor:
    token: str
    name: str
    modality: str = ""

    @property
    def frame_name(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class CalibratedSensor:
    token: str
    sensor_token: str
    translation: List[float]
    rotation: List[float]
    camera_intrinsic: List[List[float]] = field(default_factory=list)

    def __post_init__(self):
        """Validate calibration data."""
        assert len(self.translation) == 3, "Translation must be [x, y, z]"
        assert len(self.rotation) == 4, "Rotation must be quaternion [w, x, y, z]"
        if self.camera_intrinsic:
            assert len(self.camera_intrinsic) == 3, "Camera intrinsic must be 3x3 matrix"


@dataclass(frozen=True)
class SceneRecord:
    """Everything a scene converter needs, resolved once at submit time."""
    scene: Scene
    samples: dict
    annotations: dict
    sample_data: List[SampleData]
    ego_poses: List[EgoPose]

    def summary(self) -> str:
        annotation_count = sum(len(anns) for anns in self.annotations.values())
        return (f"scene {self.scene.scene_id} ({self.scene.name}): "
                f"{len(self.samples)} samples, {len(self.sample_data)} sample data, "
                f"{annotation_count} annotations, {len(self.ego_poses)} ego poses")


def sensor_topic(sensor_name: str, category: SensorCategory) -> str:
    frame = sensor_name.lower()
    if category is SensorCategory.CAMERA:
        return f"{frame}/raw"
    return frame


def optional_token(value: Optional[str]) -> str:
    return value or ""
