"""Message types written to the per-scene logs, plus builders for the derived ones.

Every message is a dataclass carrying a ``SCHEMA_NAME`` and a JSON schema so
the log writer can register it once per log.
"""

import base64
import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Union

import numpy as np
from scipy.spatial.transform import Rotation

from dataset_format import EgoPose

MARKER_LINE_WIDTH = 0.1
ANNOTATION_LIFETIME_S = 1.0 / 25.0  # annotations are 25Hz

LINE_LIST = 5
ACTION_ADD = 0

# Corner indices of the 12 box edges, corners numbered as in box_corners().
BOX_EDGES = (
    (0, 1), (0, 3), (0, 4), (4, 5), (4, 7), (1, 5),
    (5, 6), (6, 7), (1, 2), (3, 7), (2, 3), (2, 6),
)

_NUMBER = {"type": "number"}
_INTEGER = {"type": "integer"}
_STRING = {"type": "string"}
_BYTES = {"type": "string", "contentEncoding": "base64"}


def _object(**properties):
    return {"type": "object", "properties": properties}


def _array(items):
    return {"type": "array", "items": items}


_VECTOR3 = _object(x=_NUMBER, y=_NUMBER, z=_NUMBER)
_QUATERNION = _object(x=_NUMBER, y=_NUMBER, z=_NUMBER, w=_NUMBER)
_COLOR = _object(r=_NUMBER, g=_NUMBER, b=_NUMBER, a=_NUMBER)
_HEADER = _object(stamp_us=_INTEGER, frame_id=_STRING)
_POSE = _object(position=_VECTOR3, orientation=_QUATERNION)
_TRANSFORM = _object(header=_HEADER, child_frame_id=_STRING,
                     translation=_VECTOR3, rotation=_QUATERNION)
_BOX = _object(center=_VECTOR3, size=_VECTOR3, orientation=_QUATERNION,
               token=_STRING, category_name=_STRING, color=_COLOR)


@dataclass
class Vector3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def from_list(cls, values):
        return cls(float(values[0]), float(values[1]), float(values[2]))

    def as_array(self):
        return np.array([self.x, self.y, self.z], dtype=np.float64)


@dataclass
class Quaternion:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0

    @classmethod
    def from_wxyz(cls, values):
        return cls(x=float(values[1]), y=float(values[2]), z=float(values[3]), w=float(values[0]))


@dataclass
class ColorRGBA:
    r: float
    g: float
    b: float
    a: float = 1.0


@dataclass
class Header:
    stamp_us: int = 0
    frame_id: str = ""


@dataclass
class Pose:
    position: Vector3 = field(default_factory=Vector3)
    orientation: Quaternion = field(default_factory=Quaternion)


@dataclass
class Odometry:
    SCHEMA_NAME: ClassVar[str] = "nuscenes2mcap.Odometry"
    SCHEMA: ClassVar[dict] = _object(header=_HEADER, child_frame_id=_STRING, pose=_POSE)

    header: Header
    child_frame_id: str
    pose: Pose


@dataclass
class TransformStamped:
    header: Header
    child_frame_id: str
    translation: Vector3 = field(default_factory=Vector3)
    rotation: Quaternion = field(default_factory=Quaternion)


@dataclass
class TFMessage:
    SCHEMA_NAME: ClassVar[str] = "nuscenes2mcap.TFMessage"
    SCHEMA: ClassVar[dict] = _object(transforms=_array(_TRANSFORM))

    transforms: List[TransformStamped] = field(default_factory=list)


@dataclass
class Box:
    center: Vector3
    size: Vector3
    orientation: Quaternion
    token: str
    category_name: str
    color: ColorRGBA


@dataclass
class BoxList:
    SCHEMA_NAME: ClassVar[str] = "nuscenes2mcap.BoxList"
    SCHEMA: ClassVar[dict] = _object(header=_HEADER, boxes=_array(_BOX))

    header: Header
    boxes: List[Box] = field(default_factory=list)


@dataclass
class Marker:
    header: Header
    ns: str
    id: int
    type: int
    action: int
    pose: Pose
    scale: Vector3
    color: ColorRGBA
    lifetime_s: float
    points: List[Vector3] = field(default_factory=list)
    colors: List[ColorRGBA] = field(default_factory=list)


@dataclass
class MarkerArray:
    SCHEMA_NAME: ClassVar[str] = "nuscenes2mcap.MarkerArray"
    SCHEMA: ClassVar[dict] = _object(markers=_array(_object(
        header=_HEADER, ns=_STRING, id=_INTEGER, type=_INTEGER, action=_INTEGER,
        pose=_POSE, scale=_VECTOR3, color=_COLOR, lifetime_s=_NUMBER,
        points=_array(_VECTOR3), colors=_array(_COLOR))))

    markers: List[Marker] = field(default_factory=list)


@dataclass
class Image:
    SCHEMA_NAME: ClassVar[str] = "nuscenes2mcap.Image"
    SCHEMA: ClassVar[dict] = _object(header=_HEADER, height=_INTEGER, width=_INTEGER,
                                     encoding=_STRING, step=_INTEGER, data=_BYTES)

    height: int
    width: int
    encoding: str
    step: int
    data: bytes
    header: Header = field(default_factory=Header)


@dataclass
class PointField:
    name: str
    offset: int
    datatype: str = "float32"


@dataclass
class PointCloud:
    SCHEMA_NAME: ClassVar[str] = "nuscenes2mcap.PointCloud"
    SCHEMA: ClassVar[dict] = _object(
        header=_HEADER, point_count=_INTEGER, point_step=_INTEGER,
        fields=_array(_object(name=_STRING, offset=_INTEGER, datatype=_STRING)), data=_BYTES)

    point_count: int
    point_step: int
    fields: List[PointField]
    data: bytes
    header: Header = field(default_factory=Header)


@dataclass
class RadarObject:
    pose: Vector3
    dyn_prop: int = 0
    rcs: float = 0.0
    vx: float = 0.0
    vy: float = 0.0
    vx_comp: float = 0.0
    vy_comp: float = 0.0
    is_quality_valid: int = 0
    ambig_state: int = 0
    x_rms: int = 0
    y_rms: int = 0
    invalid_state: int = 0
    pdh0: int = 0
    vx_rms: int = 0
    vy_rms: int = 0


@dataclass
class RadarObjects:
    SCHEMA_NAME: ClassVar[str] = "nuscenes2mcap.RadarObjects"
    SCHEMA: ClassVar[dict] = _object(header=_HEADER, objects=_array(_object(
        pose=_VECTOR3, dyn_prop=_INTEGER, rcs=_NUMBER, vx=_NUMBER, vy=_NUMBER,
        vx_comp=_NUMBER, vy_comp=_NUMBER, is_quality_valid=_INTEGER,
        ambig_state=_INTEGER, x_rms=_INTEGER, y_rms=_INTEGER, invalid_state=_INTEGER,
        pdh0=_INTEGER, vx_rms=_INTEGER, vy_rms=_INTEGER)))

    objects: List[RadarObject] = field(default_factory=list)
    header: Header = field(default_factory=Header)


SensorPayload = Union[Image, PointCloud, RadarObjects]


@dataclass
class MessageEnvelope:
    """A decoded sensor payload tagged with where and when it goes in the log."""
    topic: str
    frame_id: str
    stamp_us: int
    payload: SensorPayload

    def stamped(self) -> SensorPayload:
        self.payload.header = Header(stamp_us=self.stamp_us, frame_id=self.frame_id)
        return self.payload


def _jsonable(value: Any) -> Any:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def to_json_dict(message) -> Dict[str, Any]:
    return _jsonable(dataclasses.asdict(message))


def make_transform(frame_id: str, child_frame_id: str, translation, rotation_wxyz,
                   stamp_us: int = 0) -> TransformStamped:
    return TransformStamped(
        header=Header(stamp_us=stamp_us, frame_id=frame_id),
        child_frame_id=child_frame_id,
        translation=Vector3.from_list(translation),
        rotation=Quaternion.from_wxyz(rotation_wxyz),
    )


def make_identity_transform(frame_id: str, child_frame_id: str, stamp_us: int = 0) -> TransformStamped:
    return TransformStamped(header=Header(stamp_us=stamp_us, frame_id=frame_id),
                            child_frame_id=child_frame_id)


def ego_pose_to_odometry(ego_pose: EgoPose) -> Odometry:
    return Odometry(
        header=Header(stamp_us=ego_pose.timestamp_us, frame_id="odom"),
        child_frame_id="base_link",
        pose=Pose(position=Vector3.from_list(ego_pose.translation),
                  orientation=Quaternion.from_wxyz(ego_pose.rotation)),
    )


def ego_pose_to_transform(ego_pose: EgoPose) -> TransformStamped:
    return make_transform("odom", "base_link", ego_pose.translation, ego_pose.rotation,
                          stamp_us=ego_pose.timestamp_us)


def sensor_transforms(calibrated_sensors: List[tuple]) -> List[TransformStamped]:
    """Fixed transforms: base_link to every sensor, then identity map to odom."""
    transforms = []
    for calibrated, sensor in calibrated_sensors:
        transforms.append(make_transform("base_link", sensor.frame_name,
                                         calibrated.translation, calibrated.rotation))
    transforms.append(make_identity_transform("map", "odom"))
    return transforms


def make_tf_message(ego_pose: EgoPose, constant_transforms: List[TransformStamped]) -> TFMessage:
    message = TFMessage(transforms=[ego_pose_to_transform(ego_pose)])
    for transform in constant_transforms:
        message.transforms.append(dataclasses.replace(
            transform, header=Header(stamp_us=ego_pose.timestamp_us,
                                     frame_id=transform.header.frame_id)))
    return message


def box_corners(box: Box) -> np.ndarray:
    """Eight corners of ``box`` in the map frame, shape (8, 3)."""
    width = box.size.x
    depth = box.size.y
    height = box.size.z
    min_point = np.array([-depth / 2.0, -width / 2.0, -height / 2.0])
    max_point = np.array([depth / 2.0, width / 2.0, height / 2.0])

    corners = np.array([
        [min_point[0], min_point[1], min_point[2]],
        [min_point[0], min_point[1], max_point[2]],
        [max_point[0], min_point[1], max_point[2]],
        [max_point[0], min_point[1], min_point[2]],
        [min_point[0], max_point[1], min_point[2]],
        [min_point[0], max_point[1], max_point[2]],
        [max_point[0], max_point[1], max_point[2]],
        [max_point[0], max_point[1], min_point[2]],
    ])
    o = box.orientation
    rotation = Rotation.from_quat([o.x, o.y, o.z, o.w])
    return rotation.apply(corners) + box.center.as_array()


def make_marker(box: Box, marker_id: int, stamp_us: int,
                lifetime_s: float = ANNOTATION_LIFETIME_S) -> Marker:
    corners = box_corners(box)
    marker = Marker(
        header=Header(stamp_us=stamp_us, frame_id="map"),
        ns="annotations",
        id=marker_id,
        type=LINE_LIST,
        action=ACTION_ADD,
        pose=Pose(),
        scale=Vector3(x=MARKER_LINE_WIDTH),
        color=box.color,
        lifetime_s=lifetime_s,
    )
    for start, end in BOX_EDGES:
        marker.points.append(Vector3.from_list(corners[start]))
        marker.points.append(Vector3.from_list(corners[end]))
        marker.colors.extend([box.color, box.color])
    return marker


def make_marker_array(boxes: List[Box], stamp_us: int,
                      lifetime_s: Optional[float] = None) -> MarkerArray:
    if lifetime_s is None:
        lifetime_s = ANNOTATION_LIFETIME_S
    return MarkerArray(markers=[make_marker(box, marker_id, stamp_us, lifetime_s)
                                for marker_id, box in enumerate(boxes)])


def make_box_list(boxes: List[Box], stamp_us: int) -> BoxList:
    return BoxList(header=Header(stamp_us=stamp_us, frame_id="map"), boxes=list(boxes))
