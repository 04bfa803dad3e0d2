import queue
import threading
from typing import List, Optional

from core.db import DB
from core.events import E, log_event
from core.generation_worker import (
    load_queue_settings,
    process_pending_generation_tasks,
    run_generation_task,
)
from core.log import get_logger

logger = get_logger(__name__)

_TASK_QUEUE: "queue.Queue[str]" = queue.Queue()
_WORKER_LOCK = threading.Lock()
_WORKER_STARTED = False
_WORKER_THREADS: List[threading.Thread] = []


def submit_generation_task(task_id: str) -> None:
    """投递任务 ID 后立即返回，由 worker 线程执行。"""
    _TASK_QUEUE.put(str(task_id))
    log_event(logger, E.GENERATION_TASK_ENQUEUE, task_id=task_id, queued=_TASK_QUEUE.qsize())


def queue_size() -> int:
    return _TASK_QUEUE.qsize()


def workers_started() -> bool:
    return _WORKER_STARTED


def _sweep_pending(batch_size: int) -> int:
    session = DB.get_session()
    try:
        result = process_pending_generation_tasks(session=session, limit=batch_size)
        return int(result.get("total", 0) or 0)
    finally:
        session.close()


def _worker_loop(worker_index: int) -> None:
    settings = load_queue_settings()
    while True:
        task_id: Optional[str] = None
        try:
            task_id = _TASK_QUEUE.get(timeout=settings.idle_sleep_seconds)
        except queue.Empty:
            task_id = None

        try:
            if task_id:
                run_generation_task(task_id)
            else:
                # 空闲时扫描库中的 pending 任务，兜底重启前未执行的任务
                _sweep_pending(settings.batch_size)
        except Exception:
            logger.exception("生成队列 worker 异常 worker=%s task_id=%s", worker_index, task_id or "")
        finally:
            if task_id:
                _TASK_QUEUE.task_done()


def start_generation_workers() -> int:
    global _WORKER_STARTED
    with _WORKER_LOCK:
        if _WORKER_STARTED:
            return len(_WORKER_THREADS)
        worker_count = load_queue_settings().workers
        for idx in range(worker_count):
            t = threading.Thread(
                target=_worker_loop,
                args=(idx + 1,),
                daemon=True,
                name=f"generation-worker-{idx + 1}",
            )
            t.start()
            _WORKER_THREADS.append(t)
        _WORKER_STARTED = True
        log_event(logger, E.SYSTEM_QUEUE_START, workers=worker_count)
        return len(_WORKER_THREADS)
