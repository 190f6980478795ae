import json
import logging
import signal
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from billing_sync.core.config import settings
from billing_sync.core.errors import SyncAlreadyRunning, SyncError
from billing_sync.core.logging_config import configure_logging
from billing_sync.services.sync_entities import SYNC_ENTITY_TYPES
from billing_sync.services.sync_service import SyncService


logger = logging.getLogger(__name__)

CRON_CALLER = 'cronJob'


@dataclass
class ScheduledTask:
    task: str
    interval_seconds: float
    enabled: bool = True
    last_started: float | None = None

    def is_due(self, now: float) -> bool:
        return self.enabled and (self.last_started is None or now - self.last_started >= self.interval_seconds)


def load_tasks(path: str | Path) -> list[ScheduledTask]:
    """
    Read the task file: [{"task": "fiscal_invoice", "interval_seconds": 600, "enabled": true}, ...].
    Unknown task names and non-positive intervals are skipped with a warning.
    """
    raw = json.loads(Path(path).read_text(encoding='utf-8'))
    if not isinstance(raw, list):
        raise ValueError(f'{path}: expected a JSON list of tasks')
    tasks: list[ScheduledTask] = []
    for item in raw:
        name = str((item or {}).get('task') or '').strip().lower()
        if name not in SYNC_ENTITY_TYPES:
            logger.warning('sync worker: unknown task %r ignored', name)
            continue
        try:
            interval = float(item.get('interval_seconds'))
        except (TypeError, ValueError):
            interval = 0.0
        if interval <= 0:
            logger.warning('sync worker: task %s has no valid interval_seconds, ignored', name)
            continue
        tasks.append(ScheduledTask(task=name, interval_seconds=interval, enabled=bool(item.get('enabled', True))))
    return tasks


class Scheduler:
    def __init__(self, tasks: list[ScheduledTask]) -> None:
        self.tasks = tasks
        self._threads: dict[str, threading.Thread] = {}

    def running(self, name: str) -> bool:
        thread = self._threads.get(name)
        return thread is not None and thread.is_alive()

    def tick(self, now: float | None = None) -> list[str]:
        """Start every due task whose previous run has finished; returns the started names."""
        now = time.monotonic() if now is None else now
        started: list[str] = []
        for task in self.tasks:
            if not task.is_due(now):
                continue
            if self.running(task.task):
                logger.info('sync worker: %s still running, skipping tick', task.task)
                continue
            task.last_started = now
            thread = threading.Thread(target=_run_task, args=(task.task,), name=f'sync-{task.task}', daemon=True)
            self._threads[task.task] = thread
            thread.start()
            started.append(task.task)
        return started

    def join(self, timeout: float | None = None) -> None:
        for thread in list(self._threads.values()):
            thread.join(timeout)


def _run_task(name: str) -> None:
    try:
        summary = SyncService.run(name, CRON_CALLER)
        logger.info('sync worker: %s done (%s inserted, %s failed)', name, summary.inserted, summary.failed)
    except SyncAlreadyRunning:
        logger.info('sync worker: %s already running elsewhere in this process', name)
    except SyncError as exc:
        # waits for the next tick
        logger.error('sync worker: %s failed: %s', name, exc)
    except Exception:
        logger.exception('sync worker: %s crashed', name)


def main() -> None:
    configure_logging()
    stop = {"flag": False}

    def _shutdown_handler(signum, _frame):  # type: ignore[no-untyped-def]
        logger.info("sync worker received signal %s, stopping...", signum)
        stop["flag"] = True

    signal.signal(signal.SIGTERM, _shutdown_handler)
    signal.signal(signal.SIGINT, _shutdown_handler)

    scheduler = Scheduler(load_tasks(settings.sync_tasks_file))
    logger.info("sync worker started with %d task(s) from %s", len(scheduler.tasks), settings.sync_tasks_file)
    try:
        SyncService.worker_bootstrap_cleanup()
    except Exception:
        logger.exception("sync worker bootstrap cleanup failed")
    while not stop["flag"]:
        scheduler.tick()
        time.sleep(max(0.5, float(settings.sync_worker_tick_seconds or 5.0)))

    scheduler.join(timeout=30)
    logger.info("sync worker stopped")


if __name__ == "__main__":
    main()
