import os
import dataclasses
import logging
from abc import ABC, abstractmethod
from types import MappingProxyType
from typing import Dict, List, Optional, Tuple

from dataset_format import (
    Annotation,
    CalibratedSensor,
    EgoPose,
    Sample,
    SampleData,
    Scene,
    Sensor,
    optional_token,
)
from utils import load_json_table, parse_scene_id

log = logging.getLogger(__name__)

REQUIRED_TABLES = ("scene", "sample", "sample_data", "ego_pose", "calibrated_sensor", "sensor")
OPTIONAL_TABLES = ("sample_annotation", "instance", "category")


class MetadataParseError(ValueError):
    """A metadata table is unreadable or holds a malformed record."""


class MissingSceneError(LookupError):
    """The requested scene is not present in the metadata."""


class BaseMetadataReader(ABC):
    @abstractmethod
    def scenes_all(self) -> List[str]:
        pass

    @abstractmethod
    def scene_info(self, scene_token: str) -> Optional[Scene]:
        pass

    @abstractmethod
    def scene_samples(self, scene_token: str) -> Dict[str, Sample]:
        pass

    @abstractmethod
    def scene_sample_data(self, scene_token: str) -> List[SampleData]:
        pass

    @abstractmethod
    def scene_annotations(self, scene_token: str) -> Dict[str, List[Annotation]]:
        pass

    @abstractmethod
    def ego_poses(self, scene_token: str) -> List[EgoPose]:
        pass

    @abstractmethod
    def calibrated_sensor(self, calibrated_sensor_token: str) -> CalibratedSensor:
        pass

    @abstractmethod
    def scene_calibrated_sensors(self, scene_token: str) -> List[Tuple[CalibratedSensor, Sensor]]:
        pass


def _parse_records(table_name, records, parse):
    parsed = []
    for index, record in enumerate(records):
        try:
            parsed.append(parse(record))
        except (KeyError, TypeError, ValueError, AssertionError) as e:
            raise MetadataParseError(
                f"Malformed record #{index} in {table_name}.json: {e!r}") from e
    return parsed


class MetadataIndex(BaseMetadataReader):
    """Read-only index over the nuScenes metadata tables.

    Build with ``MetadataIndex.load(meta_dir)``. Every map is filled during
    load and never written afterwards, so one instance can be shared by any
    number of scene worker threads.
    """

    def __init__(self, scenes, samples, sample_data, ego_poses, calibrated_sensors,
                 sensors, annotations):
        self._scene_order = [scene.token for scene in scenes]
        self._scenes = MappingProxyType({scene.token: scene for scene in scenes})
        self._samples = MappingProxyType({sample.token: sample for sample in samples})
        self._ego_poses = MappingProxyType({pose.token: pose for pose in ego_poses})
        self._calibrated_sensors = MappingProxyType({cs.token: cs for cs in calibrated_sensors})
        self._sensors = MappingProxyType({sensor.token: sensor for sensor in sensors})

        scene_samples: Dict[str, List[str]] = {}
        for sample in samples:
            scene_samples.setdefault(sample.scene_token, []).append(sample.token)

        sample_data_by_sample: Dict[str, List[SampleData]] = {}
        for sd in sample_data:
            sample_data_by_sample.setdefault(sd.sample_token, []).append(sd)

        annotations_by_sample: Dict[str, List[Annotation]] = {}
        for annotation in annotations:
            annotations_by_sample.setdefault(annotation.sample_token, []).append(annotation)

        self._scene_samples = MappingProxyType({k: tuple(v) for k, v in scene_samples.items()})
        self._sample_data = MappingProxyType({k: tuple(v) for k, v in sample_data_by_sample.items()})
        self._annotations = MappingProxyType({k: tuple(v) for k, v in annotations_by_sample.items()})

        self._check_sample_chains()
        self._check_key_frames(sample_data)

    @classmethod
    def load(cls, meta_dir: str) -> "MetadataIndex":
        meta_dir = os.path.abspath(meta_dir)
        if not os.path.isdir(meta_dir):
            raise FileNotFoundError(f"Metadata directory not found: {meta_dir}")

        log.info(f"Loading metadata from {meta_dir}")
        tables = {}
        for name in REQUIRED_TABLES + OPTIONAL_TABLES:
            path = os.path.join(meta_dir, f"{name}.json")
            try:
                tables[name] = load_json_table(path, required=name in REQUIRED_TABLES) or []
            except ValueError as e:
                raise MetadataParseError(f"Could not parse {name}.json: {e}") from e

        scenes = _parse_records(
            "scene", list(enumerate(tables["scene"])),
            lambda item: _scene_from_record(item[1], item[0]))
        scenes = _assign_scene_ids(scenes)
        samples = _parse_records("sample", tables["sample"], _sample_from_record)
        sample_data = _parse_records("sample_data", tables["sample_data"], _sample_data_from_record)
        ego_poses = _parse_records("ego_pose", tables["ego_pose"], _ego_pose_from_record)
        calibrated_sensors = _parse_records(
            "calibrated_sensor", tables["calibrated_sensor"], _calibrated_sensor_from_record)
        sensors = _parse_records("sensor", tables["sensor"], _sensor_from_record)

        categories = {
            record["token"]: record["name"]
            for record in _parse_records("category", tables["category"], _require("token", "name"))
        }
        instance_categories = {
            record["token"]: categories.get(record.get("category_token"), "unknown")
            for record in _parse_records("instance", tables["instance"], _require("token"))
        }
        annotations = _parse_records(
            "sample_annotation", tables["sample_annotation"],
            lambda record: _annotation_from_record(record, instance_categories))

        index = cls(scenes, samples, sample_data, ego_poses, calibrated_sensors, sensors, annotations)
        log.info(f"Loaded {len(scenes)} scenes, {len(samples)} samples, "
                 f"{len(sample_data)} sample data, {len(annotations)} annotations")
        return index

    def _check_sample_chains(self):
        for scene in self._scenes.values():
            visited = set()
            token = scene.first_sample_token
            while token:
                if token in visited:
                    raise MetadataParseError(
                        f"Sample chain of scene {scene.name} loops back to sample {token}")
                visited.add(token)
                sample = self._samples.get(token)
                if sample is None:
                    break
                token = sample.next

    def _check_key_frames(self, sample_data):
        for sd in sample_data:
            if not sd.is_key_frame:
                continue
            sample = self._samples.get(sd.sample_token)
            if sample is not None and sample.timestamp_us != sd.timestamp_us:
                log.warning(f"Key frame {sd.token} timestamp {sd.timestamp_us} differs "
                            f"from its sample timestamp {sample.timestamp_us}")

    def scenes_all(self) -> List[str]:
        return list(self._scene_order)

    def scene_info(self, scene_token: str) -> Optional[Scene]:
        return self._scenes.get(scene_token)

    def scene_by_id(self, scene_id: int) -> Optional[Scene]:
        for token in self._scene_order:
            scene = self._scenes[token]
            if scene.scene_id == scene_id:
                return scene
        return None

    def scene_samples(self, scene_token: str) -> Dict[str, Sample]:
        return {token: self._samples[token] for token in self._scene_samples.get(scene_token, ())}

    def scene_sample_data(self, scene_token: str) -> List[SampleData]:
        records = []
        for sample_token in self._scene_samples.get(scene_token, ()):
            records.extend(self._sample_data.get(sample_token, ()))
        records.sort(key=lambda sd: sd.timestamp_us)
        return records

    def scene_annotations(self, scene_token: str) -> Dict[str, List[Annotation]]:
        return {
            sample_token: list(self._annotations.get(sample_token, ()))
            for sample_token in self._scene_samples.get(scene_token, ())
        }

    def ego_poses(self, scene_token: str) -> List[EgoPose]:
        poses = {}
        for sd in self.scene_sample_data(scene_token):
            pose = self._ego_poses.get(sd.ego_pose_token)
            if pose is not None:
                poses[pose.token] = pose
        return sorted(poses.values(), key=lambda pose: pose.timestamp_us)

    def calibrated_sensor(self, calibrated_sensor_token: str) -> CalibratedSensor:
        try:
            return self._calibrated_sensors[calibrated_sensor_token]
        except KeyError:
            raise KeyError(f"Unknown calibrated sensor token: {calibrated_sensor_token}") from None

    def sensor(self, sensor_token: str) -> Sensor:
        try:
            return self._sensors[sensor_token]
        except KeyError:
            raise KeyError(f"Unknown sensor token: {sensor_token}") from None

    def sensor_for(self, calibrated_sensor_token: str) -> Sensor:
        return self.sensor(self.calibrated_sensor(calibrated_sensor_token).sensor_token)

    def scene_calibrated_sensors(self, scene_token: str) -> List[Tuple[CalibratedSensor, Sensor]]:
        seen = {}
        for sd in self.scene_sample_data(scene_token):
            if sd.calibrated_sensor_token in seen:
                continue
            calibrated = self.calibrated_sensor(sd.calibrated_sensor_token)
            seen[sd.calibrated_sensor_token] = (calibrated, self.sensor(calibrated.sensor_token))
        return sorted(seen.values(), key=lambda pair: pair[1].name)


def _require(*keys):
    def check(record):
        for key in keys:
            if key not in record:
                raise KeyError(key)
        return record
    return check


def _assign_scene_ids(scenes):
    """Keep ids parsed from scene names, number the other scenes after the largest one."""
    by_id = {}
    for scene in scenes:
        if parse_scene_id(scene.name, None) is None:
            continue
        other = by_id.get(scene.scene_id)
        if other is not None:
            raise MetadataParseError(
                f"Scenes {other.name} and {scene.name} share scene id {scene.scene_id}")
        by_id[scene.scene_id] = scene

    next_id = max(by_id, default=-1) + 1
    assigned = []
    for scene in scenes:
        if parse_scene_id(scene.name, None) is None:
            log.warning(f"Scene {scene.name!r} has no number in its name, using id {next_id}")
            scene = dataclasses.replace(scene, scene_id=next_id)
            next_id += 1
        assigned.append(scene)
    return assigned


def _scene_from_record(record, position):
    return Scene(
        token=record["token"],
        scene_id=parse_scene_id(record.get("name"), position),
        name=record.get("name", ""),
        first_sample_token=optional_token(record.get("first_sample_token")),
        last_sample_token=optional_token(record.get("last_sample_token")),
        description=record.get("description", ""),
    )


def _sample_from_record(record):
    return Sample(
        token=record["token"],
        scene_token=record["scene_token"],
        timestamp_us=int(record["timestamp"]),
        prev=optional_token(record.get("prev")),
        next=optional_token(record.get("next")),
    )


def _sample_data_from_record(record):
    return SampleData(
        token=record["token"],
        sample_token=record["sample_token"],
        file_name=record["filename"],
        timestamp_us=int(record["timestamp"]),
        is_key_frame=bool(record.get("is_key_frame", False)),
        calibrated_sensor_token=record["calibrated_sensor_token"],
        ego_pose_token=optional_token(record.get("ego_pose_token")),
    )


def _ego_pose_from_record(record):
    return EgoPose(
        token=record["token"],
        timestamp_us=int(record["timestamp"]),
        translation=[float(v) for v in record["translation"]],
        rotation=[float(v) for v in record["rotation"]],
    )


def _calibrated_sensor_from_record(record):
    return CalibratedSensor(
        token=record["token"],
        sensor_token=record["sensor_token"],
        translation=[float(v) for v in record["translation"]],
        rotation=[float(v) for v in record["rotation"]],
        camera_intrinsic=record.get("camera_intrinsic") or [],
    )


def _sensor_from_record(record):
    return Sensor(
        token=record["token"],
        name=record["channel"],
        modality=record.get("modality", ""),
    )


def _annotation_from_record(record, instance_categories):
    return Annotation(
        token=record["token"],
        sample_token=record["sample_token"],
        instance_token=record["instance_token"],
        translation=[float(v) for v in record["translation"]],
        size=[float(v) for v in record["size"]],
        rotation=[float(v) for v in record["rotation"]],
        category_name=instance_categories.get(record["instance_token"], "unknown"),
    )
