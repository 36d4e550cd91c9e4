"""
槽位监管器

每个槽位一个实例，负责 FFmpeg 会话的状态机：
- 启动进程，读取诊断输出并分类
- 首次进度输出时进入 running
- 异常退出按退避策略重启，额度耗尽进入 error
- 停止、被其他槽位抢占目标时拆除会话

进程输出由读取线程投递到收件箱，状态转换只在派发线程的
_handle() 中（或调用方持锁时）发生。事件在释放锁之后再发布。
"""

import time
import queue
import threading
import logging
from typing import Callable, List, NamedTuple, Optional, Any

from .arbiter import DestinationArbiter, ClaimToken, normalize_destination, mask_destination
from .broadcaster import LogBroadcaster
from .classifier import DiagnosticClassifier
from .config import RelayConfig
from .errors import SpawnError
from .events import DiagnosticEvent, FailureCategory, Level, StateChange
from .ffmpeg import FFmpegRunner
from .policy import ArgumentTemplate, Resolution
from .session import Session, SessionState, failure_to_dict
from .source import SourceDescriptor

logger = logging.getLogger(__name__)

LINE = "line"
EXIT = "exit"
RETRY = "retry"


class _Message(NamedTuple):
    kind: str
    generation: int
    payload: Any = None


class SlotSupervisor:
    """槽位监管器"""

    def __init__(
        self,
        slot_id: str,
        config: RelayConfig,
        runner: FFmpegRunner,
        arbiter: DestinationArbiter,
        classifier: Optional[DiagnosticClassifier] = None,
        broadcaster: Optional[LogBroadcaster] = None
    ):
        """初始化监管器

        Args:
            slot_id: 槽位 ID
            config: 转播配置
            runner: FFmpeg 运行器
            arbiter: 目标仲裁器
            classifier: 诊断分类器
            broadcaster: 日志广播器
        """
        self.slot_id = slot_id
        self.config = config
        self.runner = runner
        self.arbiter = arbiter
        self.classifier = classifier or DiagnosticClassifier()
        self.broadcaster = broadcaster

        self.lock = threading.RLock()
        self.state = SessionState.IDLE
        self.session: Optional[Session] = None
        self.last_message = ""
        self.last_failure: Optional[DiagnosticEvent] = None

        self._last_restart_count = 0
        self._generation = 0
        self._inbox: "queue.Queue[Optional[_Message]]" = queue.Queue()
        self._retry_timer: Optional[threading.Timer] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._listeners: List[Callable[[StateChange], None]] = []

        # 待发布的事件，释放锁后由 _flush() 统一发送
        self._outbox: list = []
        self._publish_lock = threading.Lock()

    def add_listener(self, listener: Callable[[StateChange], None]):
        """注册状态变更监听器（持久化钩子）"""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # 对外操作
    # ------------------------------------------------------------------

    def launch(
        self,
        source: SourceDescriptor,
        destination: str,
        template: ArgumentTemplate,
        claim: ClaimToken,
        resolution: Optional[Resolution] = None
    ) -> Optional[Session]:
        """启动新会话（idle -> starting）

        调用方需先通过仲裁器取得目标占用。

        Args:
            source: 源描述
            destination: 推流目标
            template: 参数模板
            claim: 目标占用令牌
            resolution: 探测到的分辨率

        Returns:
            新会话；目标在启动前已被抢占时返回 None
        """
        with self.lock:
            if self.session is not None:
                same_destination = (
                    normalize_destination(self.session.destination) == normalize_destination(destination)
                )
                self._set_state(SessionState.STOPPING, "Stopping existing ffmpeg process for restart",
                                level=Level.WARN)
                self._teardown_locked(self.session, SessionState.IDLE, "Previous session stopped",
                                      release=not same_destination)

            holder = self.arbiter.holder(destination)
            if holder != self.slot_id:
                self._emit(DiagnosticEvent(
                    level=Level.WARN,
                    message=f"Destination was claimed by slot {holder} before start",
                    category=FailureCategory.DESTINATION,
                    detail="Destination claimed by another slot",
                ))
                self._set_state(SessionState.IDLE, "Start cancelled: destination taken",
                                category=FailureCategory.DESTINATION)
                session = None
            else:
                session = Session.create(
                    slot_id=self.slot_id,
                    source=source,
                    destination=destination,
                    template=template,
                    claim=claim,
                    generation=self._next_generation(),
                    max_restarts=self.config.max_restarts,
                    recent_lines=self.config.recent_lines,
                    resolution=resolution,
                )
                self.session = session
                self.last_failure = None
                self._set_state(SessionState.STARTING,
                                f"Starting FFmpeg - mode: {template.mode.value}"
                                + (f" ({resolution})" if resolution else " (resolution unknown)"))
                self._ensure_dispatcher()
                self._spawn_locked(session)
        self._flush()
        return session

    def stop(self, reason: str = "manual") -> bool:
        """停止会话（running|starting|restarting -> idle）

        发送 SIGTERM 后立即拆除会话和目标占用，强制结束由定时器完成。

        Args:
            reason: 停止原因

        Returns:
            是否有会话被停止；空闲槽位返回 False
        """
        with self.lock:
            session = self.session
            if session is None:
                if self.state == SessionState.ERROR:
                    self._set_state(SessionState.IDLE, "Error state cleared")
                stopped = False
            else:
                self._set_state(SessionState.STOPPING, f"Stop requested ({reason})")
                self._teardown_locked(session, SessionState.IDLE, "Stream stopped", level=Level.SUCCESS)
                stopped = True
        self._flush()
        return stopped

    def evict(self, destination: str) -> bool:
        """目标被其他槽位抢占（任意状态 -> idle）

        Args:
            destination: 被抢占的目标

        Returns:
            是否拆除了会话
        """
        with self.lock:
            session = self.session
            if session is None or normalize_destination(session.destination) != normalize_destination(destination):
                evicted = False
            else:
                holder = self.arbiter.holder(destination)
                event = DiagnosticEvent(
                    level=Level.WARN,
                    message=f"Destination {mask_destination(destination)} taken over by slot {holder}",
                    category=FailureCategory.DESTINATION,
                    detail="Destination claimed by another slot",
                )
                session.last_failure = event
                self._emit(event)
                # 占用已转移给新槽位，不再释放
                self._teardown_locked(session, SessionState.IDLE, "Evicted: destination claimed by another slot",
                                      category=FailureCategory.DESTINATION, release=False)
                evicted = True
        self._flush()
        return evicted

    def is_active(self) -> bool:
        with self.lock:
            return self.session is not None

    def status(self, include_log: bool = False) -> dict:
        """获取槽位状态

        Args:
            include_log: 是否包含最近诊断行

        Returns:
            状态字典
        """
        with self.lock:
            result = {
                "slot_id": self.slot_id,
                "restart_count": self._last_restart_count,
                "max_restarts": self.config.max_restarts,
            }
            if self.session is not None:
                result.update(self.session.to_dict(include_log=include_log))
            result["state"] = self.state.value
            result["status"] = self.state.value
            result["process_running"] = self.session.is_process_alive() if self.session else False
            result["message"] = self.last_message
            if "last_failure" not in result:
                result["last_failure"] = failure_to_dict(self.last_failure)
            return result

    def shutdown(self, timeout: float = 2.0):
        """停止会话并结束派发线程"""
        self.stop(reason="shutdown")
        self._inbox.put(None)
        dispatcher = self._dispatcher
        if dispatcher is not None and dispatcher is not threading.current_thread():
            dispatcher.join(timeout=timeout)

    # ------------------------------------------------------------------
    # 线程
    # ------------------------------------------------------------------

    def _ensure_dispatcher(self):
        if self._dispatcher is None or not self._dispatcher.is_alive():
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop,
                daemon=True,
                name=f"RelaySlot-{self.slot_id}"
            )
            self._dispatcher.start()

    def _dispatch_loop(self):
        """派发循环：按顺序处理收件箱中的消息"""
        while True:
            message = self._inbox.get()
            if message is None:
                break
            try:
                self._handle(message)
            except Exception as e:
                logger.exception(f"Slot {self.slot_id}: error handling {message.kind}: {e}")

    def _read_output(self, generation: int, process):
        """读取线程：逐行投递 stderr，结束后投递退出码"""
        try:
            for line in process.stderr:
                self._inbox.put(_Message(LINE, generation, line))
        except (OSError, ValueError) as e:
            logger.debug(f"Slot {self.slot_id}: stderr closed: {e}")
        finally:
            code = process.wait()
            self._inbox.put(_Message(EXIT, generation, code))

    # ------------------------------------------------------------------
    # 状态转换
    # ------------------------------------------------------------------

    def _handle(self, message: _Message):
        with self.lock:
            session = self.session
            if session is not None and message.generation == session.generation:
                if message.kind == LINE:
                    self._on_line_locked(session, message.payload)
                elif message.kind == EXIT:
                    self._on_exit_locked(session, message.payload)
                elif message.kind == RETRY:
                    self._on_retry_locked(session)
        self._flush()

    def _on_line_locked(self, session: Session, line: str):
        session.remember(line)
        event = self.classifier.classify(line)
        if event is None:
            return
        event = event.for_slot(self.slot_id)
        self._emit(event)

        if event.progress:
            session.last_progress = event.stats
            if self.state == SessionState.STARTING:
                session.started_at = time.time()
                self._set_state(SessionState.RUNNING, "Stream started successfully", level=Level.SUCCESS)
        elif event.is_failure:
            session.last_failure = event

    def _on_exit_locked(self, session: Session, code: Optional[int]):
        if self.state not in (SessionState.STARTING, SessionState.RUNNING):
            return

        runtime = int(time.time() - session.spawned_at) if session.spawned_at else 0
        if code == 0:
            self._emit(DiagnosticEvent(
                level=Level.SUCCESS,
                message=f"FFmpeg finished successfully (code: 0, runtime: {runtime}s)",
            ))
            self._teardown_locked(session, SessionState.IDLE, "FFmpeg exited normally")
            return

        if code is not None and code < 0:
            event = DiagnosticEvent(
                level=Level.ERROR,
                message=f"FFmpeg killed by signal {-code} (runtime: {runtime}s)",
                category=FailureCategory.HOST,
                detail="Process killed by signal",
            )
            session.last_failure = event
        else:
            event = DiagnosticEvent(
                level=Level.ERROR,
                message=f"FFmpeg exited with error (code: {code}, runtime: {runtime}s)",
                detail=f"Exit code {code}",
            )
            if session.last_failure is None:
                session.last_failure = event
        self._emit(event)
        self._after_failure_locked(session)

    def _after_failure_locked(self, session: Session):
        """异常退出或可重试的启动失败后：退避重启或进入 error"""
        category = session.last_failure.category if session.last_failure else None
        if session.can_restart():
            attempt = session.restart_count + 1
            delay = self.config.get_backoff_delay(attempt)
            self._set_state(
                SessionState.RESTARTING,
                f"Restarting in {delay:.0f}s (attempt {attempt}/{session.max_restarts})",
                category=category,
                level=Level.WARN,
            )
            self._schedule_retry(session, delay)
        else:
            self._teardown_locked(
                session,
                SessionState.ERROR,
                f"Restart limit reached ({session.max_restarts}), giving up",
                category=category,
                level=Level.ERROR,
            )

    def _on_retry_locked(self, session: Session):
        if self.state != SessionState.RESTARTING:
            return
        self._retry_timer = None
        session.restart_count += 1

        if not self.arbiter.reclaim(session.destination, self.slot_id):
            event = DiagnosticEvent(
                level=Level.WARN,
                message="Destination claimed by another slot during restart",
                category=FailureCategory.DESTINATION,
                detail="Destination claimed by another slot",
            )
            session.last_failure = event
            self._emit(event)
            self._teardown_locked(session, SessionState.IDLE, "Restart cancelled: destination taken",
                                  category=FailureCategory.DESTINATION, release=False)
            return

        session.generation = self._next_generation()
        session.process = None
        self._set_state(
            SessionState.STARTING,
            f"Restarting FFmpeg (attempt {session.restart_count}/{session.max_restarts})",
        )
        self._spawn_locked(session)

    def _spawn_locked(self, session: Session) -> bool:
        try:
            command = self.runner.build_command(self.slot_id, session.template, session.source, session.destination)
            process = self.runner.start_process(command)
        except SpawnError as e:
            event = DiagnosticEvent(
                level=Level.ERROR,
                message=f"FFmpeg failed to start: {e.message}",
                detail=e.message,
            )
            session.last_failure = event
            self._emit(event)
            if e.retryable:
                self._after_failure_locked(session)
            else:
                self._teardown_locked(session, SessionState.ERROR, f"Cannot start FFmpeg: {e.message}",
                                      level=Level.ERROR)
            return False

        session.attach_process(process, command)
        self._emit(DiagnosticEvent(
            level=Level.INFO,
            message=f"Command: {self.runner.get_command_line_string(command)[:500]}",
        ))
        reader = threading.Thread(
            target=self._read_output,
            args=(session.generation, process),
            daemon=True,
            name=f"RelayReader-{self.slot_id}-{session.generation}"
        )
        reader.start()
        return True

    def _schedule_retry(self, session: Session, delay: float):
        message = _Message(RETRY, session.generation)
        if delay <= 0:
            self._inbox.put(message)
            return
        self._retry_timer = threading.Timer(delay, self._inbox.put, args=(message,))
        self._retry_timer.daemon = True
        self._retry_timer.start()

    def _teardown_locked(
        self,
        session: Session,
        final_state: SessionState,
        message: str,
        category: Optional[FailureCategory] = None,
        level: Level = Level.INFO,
        release: bool = True
    ):
        """拆除会话：取消重启、终止进程、释放目标占用"""
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

        if session.is_process_alive():
            self.runner.terminate(session.process, self.config.stop_grace_period)
            logger.info(f"Slot {self.slot_id}: sent termination to FFmpeg (PID {session.get_pid()})")

        if release:
            self.arbiter.release(session.destination, self.slot_id)

        if session.last_failure is not None:
            self.last_failure = session.last_failure
        self._last_restart_count = session.restart_count

        # 使旧进程的迟到消息失效
        self._next_generation()
        self.session = None
        self._set_state(final_state, message, category=category, level=level)

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _set_state(
        self,
        state: SessionState,
        message: str,
        category: Optional[FailureCategory] = None,
        level: Level = Level.INFO
    ):
        previous = self.state
        self.state = state
        self.last_message = message
        if self.session is not None:
            self.session.state = state

        if level == Level.ERROR:
            logger.error(f"Slot {self.slot_id}: {previous.value} -> {state.value} ({message})")
        else:
            logger.info(f"Slot {self.slot_id}: {previous.value} -> {state.value} ({message})")
        self._outbox.append(StateChange(self.slot_id, state.value, message, category))
        self._outbox.append(DiagnosticEvent(level=level, message=message, category=category, slot_id=self.slot_id))

    def _emit(self, event: DiagnosticEvent):
        if event.slot_id is None:
            event = event.for_slot(self.slot_id)
        if event.is_failure:
            logger.warning(f"Slot {self.slot_id}: {event.message}")
        self._outbox.append(event)

    def _flush(self):
        """在锁外发布积压的事件和状态变更（保持顺序）"""
        with self._publish_lock:
            with self.lock:
                pending, self._outbox = self._outbox, []
            for item in pending:
                if isinstance(item, StateChange):
                    for listener in list(self._listeners):
                        try:
                            listener(item)
                        except Exception as e:
                            logger.exception(f"Slot {self.slot_id}: change listener failed: {e}")
                if self.broadcaster is not None:
                    self.broadcaster.publish(item)
