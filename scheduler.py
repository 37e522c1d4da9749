import os
import queue
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tqdm import tqdm

from readers import MetadataIndex, MissingSceneError
from scene_converter import SceneConverter
from sensor_files import sample_sets_in_directory
from utils import ensure_directory

log = logging.getLogger(__name__)


@dataclass
class ConversionConfig:
    scene_workers: int = 1
    decode_workers: int = 4
    queue_maxsize: int = 64
    poll_interval_s: float = 0.05
    box_categories: Optional[frozenset] = None
    show_progress: bool = True

    def __post_init__(self):
        if self.scene_workers < 1:
            raise ValueError(f"scene_workers must be positive, got {self.scene_workers}")
        if self.decode_workers < 1:
            raise ValueError(f"decode_workers must be positive, got {self.decode_workers}")
        if self.queue_maxsize < 1:
            raise ValueError(f"queue_maxsize must be positive, got {self.queue_maxsize}")


@dataclass
class ConversionSummary:
    converted: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped_files: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


class FileProgress:
    """Thread-safe count of files to process and processed, shown with tqdm."""

    def __init__(self, enabled: bool = True):
        self._lock = threading.Lock()
        self.to_process = 0
        self.processed = 0
        self._bar = tqdm(total=0, unit="file", desc="Converting", disable=not enabled)

    def add_to_process(self, count: int):
        with self._lock:
            self.to_process += count
            self._bar.total = self.to_process
            self._bar.refresh()

    def add_to_processed(self, count: int):
        with self._lock:
            self.processed += count
            self._bar.update(count)

    def close(self):
        self._bar.close()


def _convert_scene(metadata, scene_token, dataset_path, output_path, config, progress):
    converter = SceneConverter(
        metadata,
        decode_workers=config.decode_workers,
        queue_maxsize=config.queue_maxsize,
        poll_interval_s=config.poll_interval_s,
        box_categories=config.box_categories,
    )
    converter.submit(scene_token, progress)
    log_path = converter.run(dataset_path, output_path)
    return log_path, converter.skipped_files


def convert_scenes(metadata: MetadataIndex, scene_tokens: List[str], dataset_path: str,
                   output_path: str, config: ConversionConfig) -> ConversionSummary:
    """Convert ``scene_tokens`` on ``config.scene_workers`` threads, one log per scene."""
    summary = ConversionSummary()
    summary_lock = threading.Lock()
    pending = queue.Queue()
    for token in scene_tokens:
        pending.put(token)

    progress = FileProgress(enabled=config.show_progress)

    def worker():
        while True:
            try:
                scene_token = pending.get_nowait()
            except queue.Empty:
                return
            try:
                log_path, skipped = _convert_scene(metadata, scene_token, dataset_path,
                                                   output_path, config, progress)
            except Exception as e:
                log.error(f"Scene {scene_token} failed: {e}", exc_info=True)
                with summary_lock:
                    summary.failed[scene_token] = str(e)
            else:
                with summary_lock:
                    summary.converted[scene_token] = log_path
                    summary.skipped_files += skipped

    worker_count = min(config.scene_workers, max(1, len(scene_tokens)))
    threads = [threading.Thread(target=worker, name=f"scene-worker-{i}", daemon=True)
               for i in range(worker_count)]
    try:
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
    finally:
        progress.close()
    return summary


def convert_directory(meta_path: str, dataset_path: str, output_path: str,
                      config: Optional[ConversionConfig] = None,
                      scene_number: Optional[int] = None) -> ConversionSummary:
    """Convert every scene (or only ``scene_number``) of a dataset into ``output_path``.

    Metadata load errors propagate. Failures of individual scenes are collected
    in the returned summary.
    """
    if config is None:
        config = ConversionConfig()

    metadata = MetadataIndex.load(meta_path)
    ensure_directory(output_path)

    sample_sets = sample_sets_in_directory(dataset_path)
    log.info(f"Found {len(sample_sets)} sensor directories in {dataset_path}")
    for name, category, _ in sample_sets:
        log.debug(f"  {name}: {category.value}")

    if scene_number is not None:
        scene = metadata.scene_by_id(scene_number)
        if scene is None:
            error = MissingSceneError(f"Scene number {scene_number} not found in metadata")
            log.error(str(error))
            summary = ConversionSummary()
            summary.failed[f"scene-{scene_number}"] = str(error)
            return summary
        scene_tokens = [scene.token]
    else:
        scene_tokens = metadata.scenes_all()

    log.info(f"Converting {len(scene_tokens)} scenes with {config.scene_workers} workers")
    summary = convert_scenes(metadata, scene_tokens, os.path.abspath(dataset_path),
                             os.path.abspath(output_path), config)
    log.info(f"Converted {len(summary.converted)} scenes, {len(summary.failed)} failed, "
             f"{summary.skipped_files} files skipped")
    return summary
