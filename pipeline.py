import queue
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from dataset_format import ExtractedFileNameInfo, SensorCategory
from decoders import DECODERS, Decoder
from messages import MessageEnvelope

log = logging.getLogger(__name__)


class ClosableQueue:
    """Bounded queue with a close flag.

    Producers push until they are done and then close it. The consumer treats
    a queue as finished once it is closed and empty.
    """

    def __init__(self, maxsize: int, activity: Optional[threading.Event] = None):
        self._queue = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._activity = activity if activity is not None else threading.Event()

    def put(self, item, abort: Optional[threading.Event] = None, poll_interval: float = 0.05) -> bool:
        """Push ``item``, waiting for room. Returns False if ``abort`` was set first."""
        if self._closed.is_set():
            raise ValueError("put() on a closed queue")
        while True:
            if abort is not None and abort.is_set():
                return False
            try:
                self._queue.put(item, timeout=poll_interval)
            except queue.Full:
                continue
            self._activity.set()
            return True

    def pop_ready(self) -> list:
        """Pop the items that are ready now, without waiting."""
        items = []
        for _ in range(self._queue.qsize()):
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return items

    def close(self):
        self._closed.set()
        self._activity.set()

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def empty(self) -> bool:
        return self._queue.empty()


@dataclass
class DecodeFile:
    path: str
    stamp_us: int
    info: Optional[ExtractedFileNameInfo] = None


@dataclass
class DecodeTask:
    """All files of one sensor in one scene, written to one topic."""
    topic: str
    frame_id: str
    category: SensorCategory
    files: List[DecodeFile] = field(default_factory=list)


class DecodePipeline:
    """Decodes sensor files on a worker pool and drains them into one log writer.

    Every task gets its own bounded queue. The calling thread runs the drain
    loop, which visits the queues round-robin until all of them are closed and
    empty.
    """

    def __init__(self, writer, workers: int = 4, queue_maxsize: int = 64,
                 poll_interval_s: float = 0.05,
                 decoders: Optional[Dict[SensorCategory, Decoder]] = None,
                 on_file_done: Optional[Callable[[int], None]] = None):
        if workers < 1:
            raise ValueError(f"workers must be positive, got {workers}")
        if queue_maxsize < 1:
            raise ValueError(f"queue_maxsize must be positive, got {queue_maxsize}")
        self.writer = writer
        self.workers = workers
        self.queue_maxsize = queue_maxsize
        self.poll_interval_s = poll_interval_s
        self.decoders = decoders if decoders is not None else DECODERS
        self.on_file_done = on_file_done
        self.skipped_files = 0
        self._skipped_lock = threading.Lock()

    def run(self, tasks: List[DecodeTask]) -> int:
        """Decode every task and write the results. Returns the number of messages written."""
        if not tasks:
            return 0

        activity = threading.Event()
        abort = threading.Event()
        queues = [ClosableQueue(self.queue_maxsize, activity) for _ in tasks]

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="decode") as pool:
            futures = [pool.submit(self._produce, task, task_queue, abort)
                       for task, task_queue in zip(tasks, queues)]
            try:
                written = self.drain(queues, activity)
            except BaseException:
                abort.set()
                raise

        for task, future in zip(tasks, futures):
            error = future.exception()
            if error is not None:
                log.error(f"Decoding {task.topic} failed: {error}")
                raise error
        return written

    def _produce(self, task: DecodeTask, task_queue: ClosableQueue, abort: threading.Event):
        decoder = self.decoders[task.category]
        try:
            for decode_file in task.files:
                if abort.is_set():
                    return
                payload = decoder(decode_file.path, decode_file.info)
                if payload is None:
                    log.warning(f"{task.topic}: skipping {decode_file.path}")
                    with self._skipped_lock:
                        self.skipped_files += 1
                else:
                    envelope = MessageEnvelope(topic=task.topic, frame_id=task.frame_id,
                                               stamp_us=decode_file.stamp_us, payload=payload)
                    if not task_queue.put(envelope, abort, self.poll_interval_s):
                        return
                if self.on_file_done is not None:
                    self.on_file_done(1)
        finally:
            task_queue.close()

    def drain(self, queues: List[ClosableQueue], activity: threading.Event) -> int:
        written = 0
        while True:
            activity.clear()
            open_queues = 0
            for task_queue in queues:
                closed = task_queue.is_closed()
                items = task_queue.pop_ready()
                for envelope in items:
                    self.writer.write(envelope.topic, envelope.stamp_us, envelope.stamped())
                    written += 1
                if not (closed and task_queue.empty()):
                    open_queues += 1
            if open_queues == 0:
                log.debug(f"All {len(queues)} queues drained, {written} messages written")
                return written
            activity.wait(self.poll_interval_s)
