import os
import logging
from typing import Dict, List, Optional

from dataset_format import SceneRecord, SensorCategory, sensor_topic
from interpolation import AnnotationInterpolator
from messages import (
    ego_pose_to_odometry,
    make_box_list,
    make_marker_array,
    make_tf_message,
    sensor_transforms,
)
from pipeline import DecodeFile, DecodePipeline, DecodeTask
from readers import BaseMetadataReader, MissingSceneError
from sensor_files import classify_file, extract_file_info
from utils import remove_if_exists
from writers import McapLogWriter

log = logging.getLogger(__name__)

ODOM_TOPIC = "/odom"
TF_TOPIC = "/tf"
BOXES_TOPIC = "boxes"
BOXES_VIZ_TOPIC = "boxes_viz"


class SceneConverter:
    """Converts one scene into one log.

    ``submit`` resolves everything the scene needs from the metadata index,
    ``run`` writes ego poses, annotation boxes and decoded sensor files.
    """

    SUBMITTED = "submitted"
    CONVERTING = "converting"
    COMPLETE = "complete"

    def __init__(self, metadata: BaseMetadataReader, decode_workers: int = 4,
                 queue_maxsize: int = 64, poll_interval_s: float = 0.05,
                 box_categories=None, decoders=None, writer_factory=McapLogWriter):
        self.metadata = metadata
        self.decode_workers = decode_workers
        self.queue_maxsize = queue_maxsize
        self.poll_interval_s = poll_interval_s
        self.box_categories = frozenset(box_categories) if box_categories else None
        self.decoders = decoders
        self.writer_factory = writer_factory
        self.state = None
        self.scene_token = None
        self.record: Optional[SceneRecord] = None
        self.progress = None
        self.skipped_files = 0

    @property
    def scene_id(self) -> int:
        return self.record.scene.scene_id

    def submit(self, scene_token: str, progress=None):
        scene = self.metadata.scene_info(scene_token)
        if scene is None:
            raise MissingSceneError(f"Scene {scene_token} not found in metadata")

        self.scene_token = scene_token
        self.record = SceneRecord(
            scene=scene,
            samples=self.metadata.scene_samples(scene_token),
            annotations=self.metadata.scene_annotations(scene_token),
            sample_data=self.metadata.scene_sample_data(scene_token),
            ego_poses=self.metadata.ego_poses(scene_token),
        )
        self.progress = progress
        if progress is not None:
            progress.add_to_process(len(self.record.sample_data))
        self.state = self.SUBMITTED
        log.debug(f"Submitted {self.record.summary()}")

    def run(self, dataset_root: str, output_dir: str) -> str:
        if self.state != self.SUBMITTED:
            raise RuntimeError("run() called before submit()")
        self.state = self.CONVERTING

        log_path = os.path.join(output_dir, f"{self.scene_id}.mcap")
        log.info(f"Converting scene {self.record.scene.name} -> {log_path}")

        try:
            with self.writer_factory() as writer:
                writer.open(log_path)
                self._convert_ego_poses(writer)
                classified = self._classify_sample_data()
                self._convert_annotations(writer, classified)
                self._convert_sample_data(writer, dataset_root, classified)
        except BaseException:
            # A truncated log still reads as a valid one.
            remove_if_exists(log_path)
            raise

        self.state = self.COMPLETE
        log.info(f"Scene {self.record.scene.name} done"
                 + (f", {self.skipped_files} files skipped" if self.skipped_files else ""))
        return log_path

    def _classify_sample_data(self):
        classified = []
        for sample_data in self.record.sample_data:
            category = classify_file(sample_data.file_name)
            if category is None:
                self._skip(1)
                continue
            sensor = self.metadata.sensor_for(sample_data.calibrated_sensor_token)
            classified.append((sample_data, category, sensor))
        return classified

    def _skip(self, count):
        self.skipped_files += count
        if self.progress is not None:
            self.progress.add_to_processed(count)

    def _convert_ego_poses(self, writer):
        constant_transforms = sensor_transforms(
            self.metadata.scene_calibrated_sensors(self.scene_token))
        for ego_pose in self.record.ego_poses:
            odometry = ego_pose_to_odometry(ego_pose)
            writer.write(ODOM_TOPIC, ego_pose.timestamp_us, odometry)
            writer.write(TF_TOPIC, ego_pose.timestamp_us, make_tf_message(ego_pose, constant_transforms))

    def _convert_annotations(self, writer, classified):
        interpolator = AnnotationInterpolator(self.record.samples, self.record.annotations)
        for sample_data, category, _ in classified:
            if self.box_categories is not None and category not in self.box_categories:
                continue
            boxes = interpolator.boxes_for(sample_data)
            writer.write(BOXES_TOPIC, sample_data.timestamp_us,
                         make_box_list(boxes, sample_data.timestamp_us))
            writer.write(BOXES_VIZ_TOPIC, sample_data.timestamp_us,
                         make_marker_array(boxes, sample_data.timestamp_us))

    def _decode_tasks(self, dataset_root, classified) -> List[DecodeTask]:
        tasks: Dict[str, DecodeTask] = {}
        for sample_data, category, sensor in classified:
            info = extract_file_info(sample_data.file_name)
            if info is None:
                self._skip(1)
                continue
            task = tasks.get(sensor.name)
            if task is None:
                task = DecodeTask(topic=sensor_topic(sensor.name, category),
                                  frame_id=sensor.frame_name, category=category)
                tasks[sensor.name] = task
            task.files.append(DecodeFile(path=os.path.join(dataset_root, sample_data.file_name),
                                         stamp_us=sample_data.timestamp_us, info=info))
        return list(tasks.values())

    def _convert_sample_data(self, writer, dataset_root, classified):
        on_file_done = self.progress.add_to_processed if self.progress is not None else None
        pipeline = DecodePipeline(writer, workers=self.decode_workers,
                                  queue_maxsize=self.queue_maxsize,
                                  poll_interval_s=self.poll_interval_s,
                                  decoders=self.decoders, on_file_done=on_file_done)
        tasks = self._decode_tasks(dataset_root, classified)
        written = pipeline.run(tasks)
        self.skipped_files += pipeline.skipped_files
        log.debug(f"Scene {self.record.scene.name}: {written} sensor messages from {len(tasks)} sensors")


def sensor_categories(names) -> Optional[frozenset]:
    """Map CLI names (``lidar``, ``camera``, ``radar``, ``all``) to categories."""
    if not names or "all" in names:
        return None
    return frozenset(SensorCategory(name) for name in names)
