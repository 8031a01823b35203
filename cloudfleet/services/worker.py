import os
import queue
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, List, Optional, Set

from cloudfleet.config import Settings
from cloudfleet.database import models
from cloudfleet.database.database import utcnow
from cloudfleet.database.models import TaskAction, TaskPriority, TaskStatus
from cloudfleet.database.models.enums import TERMINAL_TASK_STATUSES
from cloudfleet.logging_config import get_logger
from cloudfleet.repositories.interfaces import IInstanceRepository, ITaskRepository
from cloudfleet.services.exceptions import ValidationError
from cloudfleet.services.instance_service import InstanceService
from cloudfleet.services.task_service import InstanceOutcome, TaskService
from cloudfleet.services.validation import UploadDeletion, validate_upload_deletion
from cloudfleet.utils.context import CallContext

logger = get_logger(__name__)

InstanceHandler = Callable[[CallContext, int], InstanceOutcome]


class TaskProcessor:
    """
    태스크 하나를 처음부터 끝까지 처리합니다.

    처리 순서:
        1. 태스크 잠금 획득 (다른 워커가 처리 중이면 건너뜀)
        2. 대상 인스턴스 전체를 한 번에 점유 (실패하면 다음 폴링에서 다시 시도)
        3. 시도 횟수 증가, pending -> running
        4. 인스턴스별 작업을 제한된 스레드 풀로 병렬 실행
        5. 결과 집계, 점유/잠금 해제, 웹훅 전송
    """

    def __init__(self, task_service: TaskService, instance_service: InstanceService,
                 task_repo: ITaskRepository, instance_repo: IInstanceRepository, settings: Settings,
                 stop_event: Optional[threading.Event] = None):
        self.task_service = task_service
        self.instance_service = instance_service
        self.task_repo = task_repo
        self.instance_repo = instance_repo
        self.settings = settings
        self.stop_event = stop_event or threading.Event()

    def process(self, task_id: int) -> bool:
        """
        태스크를 처리합니다. 어떤 예외도 호출한 워커 스레드로 전파하지 않습니다.

        Returns:
            이번 호출에서 태스크를 실제로 진행했으면 True.
        """
        if not self.task_repo.acquire_lock(task_id, self.settings.task_lock_timeout):
            logger.debug("task_lock_busy", task_id=task_id)
            return False

        done = threading.Event()
        heartbeat = threading.Thread(target=self._keep_lock, args=(task_id, done),
                                     name=f"task-{task_id}-lock", daemon=True)
        heartbeat.start()
        try:
            return self._process_locked(task_id)
        except Exception as e:
            logger.exception("task_processing_error", task_id=task_id)
            try:
                if self._fail_task(task_id, f"internal error: {e}"):
                    self.task_service.send_webhook(task_id)
            except Exception:
                logger.exception("task_failure_cleanup_error", task_id=task_id)
            return True
        finally:
            done.set()
            heartbeat.join()
            self.task_repo.release_lock(task_id)

    def _keep_lock(self, task_id: int, done: threading.Event) -> None:
        # 처리가 잠금 만료 시간보다 길어져도 잠금과 인스턴스 점유가 유지되도록 주기적으로 연장합니다.
        interval = self.settings.task_lock_timeout / 3
        while not done.wait(interval):
            try:
                self.task_repo.extend_lock(task_id, self.settings.task_lock_timeout)
            except Exception:
                logger.exception("task_lock_extend_failed", task_id=task_id)

    def _fail_task(self, task_id: int, error: str) -> bool:
        """
        태스크를 failed로 끝내고, 생성 태스크라면 끝나지 않은 인스턴스를 정리합니다.

        pending/provisioning/created 상태로 남은 인스턴스는 프로바이더 서버를 삭제한 뒤 terminated가 됩니다.
        ready에 도달한 인스턴스는 그대로 둡니다.

        Returns:
            이번 호출로 태스크가 failed가 되었으면 True.
        """
        if not self.task_service.fail(task_id, error):
            return False
        task = self.task_repo.find_by_id(task_id)
        if task is None or task.action != TaskAction.CREATE_INSTANCES:
            return True

        instance_ids = self.task_repo.get_instance_ids(task_id)
        if not self.instance_repo.claim(instance_ids, task_id):
            logger.warning("task_cleanup_deferred", task_id=task_id, reason="instances locked by another task")
            return True
        try:
            abandoned = [i for i in instance_ids if self.instance_service.abandon_instance(i, error)]
        finally:
            self.instance_repo.release(instance_ids, task_id)
        if abandoned:
            self.task_service.append_log(task_id, f"discarded unfinished instances: {abandoned}")
        return True

    def _process_locked(self, task_id: int) -> bool:
        task = self.task_repo.find_by_id(task_id)
        if task is None or task.status in TERMINAL_TASK_STATUSES:
            return False

        deletion = None
        if task.action == TaskAction.DELETE_UPLOAD:
            try:
                deletion = validate_upload_deletion(task.payload, self.settings.upload_dir)
            except ValidationError as e:
                self.task_service.fail(task_id, str(e))
                self.task_service.send_webhook(task_id)
                return True
            if utcnow() < deletion.deletion_timestamp:
                # 예정 시각 전이면 시도 횟수를 쓰지 않고 pending으로 남깁니다.
                return False

        instance_ids = self.task_repo.get_instance_ids(task_id)
        if not self.instance_repo.claim(instance_ids, task_id):
            logger.info("task_deferred", task_id=task_id, reason="instances locked by another task")
            return False

        try:
            attempts = self.task_repo.increment_attempts(task_id)
            if attempts > self.settings.max_task_attempts:
                self._fail_task(task_id, f"exceeded maximum attempts ({self.settings.max_task_attempts})")
                return True
            if task.status == TaskStatus.PENDING and not self.task_service.mark_running(task_id):
                # pending 상태에서 terminate 된 경우
                return False

            log = logger.bind(task_id=task_id, action=task.action.value, attempt=attempts)
            log.info("task_processing_started", instances=len(instance_ids))
            self.task_service.append_log(task_id, f"attempt {attempts} started")

            if deletion is not None:
                self._delete_upload(task_id, deletion)
            else:
                self._run_instances(task, instance_ids)
            log.info("task_processing_finished")
        finally:
            self.instance_repo.release(instance_ids, task_id)
            self.task_service.send_webhook(task_id)
        return True

    # ------------------------------------------------------------------
    # 인스턴스 작업
    # ------------------------------------------------------------------
    def _handler_for(self, task: models.Task) -> InstanceHandler:
        if task.action == TaskAction.CREATE_INSTANCES:
            return self.instance_service.provision_instance
        if task.action == TaskAction.TERMINATE_INSTANCES:
            return self.instance_service.terminate_instance
        raise ValidationError(f"unsupported task action: {task.action}")

    def _run_instances(self, task: models.Task, instance_ids: List[int]) -> None:
        handler = self._handler_for(task)
        outcomes: List[InstanceOutcome] = []

        fanout = max(1, min(self.settings.task_fanout, len(instance_ids)))
        with ThreadPoolExecutor(max_workers=fanout, thread_name_prefix=f"task-{task.id}") as pool:
            futures = [pool.submit(self._run_one, task.id, handler, instance_id) for instance_id in instance_ids]
            for future in as_completed(futures):
                outcomes.append(future.result())
        outcomes.sort(key=lambda o: o.instance_id)

        skipped = [o for o in outcomes if o.skipped]
        if skipped and not self.task_service.is_cancelled(task.id):
            # 워커 종료로 시작하지 못한 인스턴스는 다음 시도에서 이어서 처리합니다.
            self.task_service.append_log(task.id, f"worker stopping, {len(skipped)} instances left for the next attempt")
            return
        if skipped:
            self.task_service.append_log(task.id, f"skipped {len(skipped)} instances after termination")

        self.task_service.finalize(task.id, [o for o in outcomes if not o.skipped])

    def _run_one(self, task_id: int, handler: InstanceHandler, instance_id: int) -> InstanceOutcome:
        # 취소는 인스턴스 작업을 시작하기 전에만 확인합니다. 이미 보낸 호출은 끝까지 기다립니다.
        if self.stop_event.is_set() or self.task_service.is_cancelled(task_id):
            return InstanceOutcome(instance_id, success=False, skipped=True)

        ctx = CallContext(timeout=self.settings.provision_timeout)
        try:
            outcome = handler(ctx, instance_id)
        except Exception as e:
            logger.exception("instance_operation_error", task_id=task_id, instance_id=instance_id)
            outcome = InstanceOutcome(instance_id, success=False, error=f"internal error: {e}")

        if not outcome.success:
            self.task_service.append_log(task_id, f"instance {instance_id} failed: {outcome.error}")
        elif outcome.payload_error:
            self.task_service.append_log(task_id, f"instance {instance_id} payload failed: {outcome.payload_error}")
        else:
            self.task_service.append_log(task_id, f"instance {instance_id} done")
        return outcome

    # ------------------------------------------------------------------
    # 업로드 삭제
    # ------------------------------------------------------------------
    def _delete_upload(self, task_id: int, deletion: UploadDeletion) -> None:
        path = deletion.upload_path
        try:
            if os.path.isdir(path):
                shutil.rmtree(path)
            elif os.path.exists(path):
                os.remove(path)
            else:
                self.task_service.append_log(task_id, f"{path} was already removed")
        except OSError as e:
            self.task_service.fail(task_id, f"failed to delete {path}: {e}")
            return
        logger.info("upload_deleted", task_id=task_id, path=path)
        self.task_service.complete(task_id, {"upload_path": path})


class WorkerPool:
    """
    우선순위별 디스패처와 워커 스레드로 태스크를 처리합니다.

    디스패처는 poll_interval마다 처리 가능한 태스크를 조회해 우선순위별 큐에 넣고,
    워커는 high_priority_ratio 비율로 높은/낮은 우선순위 큐에 나뉘어 배정됩니다.
    """

    QUEUE_SIZE = 100

    def __init__(self, processor: TaskProcessor, task_repo: ITaskRepository, settings: Settings):
        self.processor = processor
        self.task_repo = task_repo
        self.settings = settings
        self.stop_event = processor.stop_event
        self.queues = {
            TaskPriority.HIGH: queue.Queue(maxsize=self.QUEUE_SIZE),
            TaskPriority.LOW: queue.Queue(maxsize=self.QUEUE_SIZE),
        }
        self._inflight: Set[int] = set()
        self._inflight_lock = threading.Lock()
        self._threads: List[threading.Thread] = []

    def worker_split(self):
        """(높은 우선순위 워커 수, 낮은 우선순위 워커 수)"""
        high = int(self.settings.worker_count * self.settings.high_priority_ratio)
        return high, self.settings.worker_count - high

    def start(self) -> None:
        recovered = self.task_repo.recover_stale()
        if recovered:
            logger.info(f"[RECOVERED] {recovered} stale tasks were released for rescheduling", count=recovered)

        self.stop_event.clear()
        for priority in (TaskPriority.HIGH, TaskPriority.LOW):
            self._spawn(f"dispatcher-{priority.name.lower()}", self._dispatch, priority)

        high, low = self.worker_split()
        # 한쪽 워커가 없으면 다른 쪽 워커가 두 큐를 모두 처리합니다.
        high_queues = [TaskPriority.HIGH] if low else [TaskPriority.HIGH, TaskPriority.LOW]
        low_queues = [TaskPriority.LOW] if high else [TaskPriority.HIGH, TaskPriority.LOW]
        for i in range(high):
            self._spawn(f"worker-high-{i + 1}", self._work, high_queues)
        for i in range(low):
            self._spawn(f"worker-low-{i + 1}", self._work, low_queues)
        logger.info("worker_pool_started", workers=self.settings.worker_count, high_priority=high, low_priority=low)

    def stop(self, timeout: Optional[float] = None) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        logger.info("worker_pool_stopped")

    def _spawn(self, name: str, target, *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def poll_once(self, priority: TaskPriority) -> int:
        """처리 가능한 태스크를 조회해 큐에 넣습니다. 새로 넣은 개수를 반환합니다."""
        tasks = self.task_repo.get_schedulable(priority, self.settings.max_task_attempts, self.QUEUE_SIZE)
        queued = 0
        for task in tasks:
            with self._inflight_lock:
                if task.id in self._inflight:
                    continue
                self._inflight.add(task.id)
            self.queues[priority].put(task.id)
            queued += 1
        return queued

    def _dispatch(self, priority: TaskPriority) -> None:
        while not self.stop_event.is_set():
            try:
                queued = self.poll_once(priority)
                if queued:
                    logger.debug("tasks_queued", priority=priority.name.lower(), count=queued)
            except Exception:
                logger.exception("task_dispatch_error", priority=priority.name.lower())
            self.stop_event.wait(self.settings.poll_interval)

    def _next_task(self, priorities: List[TaskPriority]) -> Optional[int]:
        for priority in priorities[:-1]:
            try:
                return self.queues[priority].get_nowait()
            except queue.Empty:
                continue
        try:
            return self.queues[priorities[-1]].get(timeout=self.settings.poll_interval)
        except queue.Empty:
            return None

    def _work(self, priorities: List[TaskPriority]) -> None:
        while not self.stop_event.is_set():
            task_id = self._next_task(priorities)
            if task_id is None:
                continue
            try:
                self.processor.process(task_id)
            finally:
                with self._inflight_lock:
                    self._inflight.discard(task_id)
