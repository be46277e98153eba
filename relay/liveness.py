"""
心跳检测模块

每个会话一个 LivenessMonitor:

    alive ──(探测: 发送 ping)──> awaiting-pong ──(收到 pong)──> alive

发送下一次探测时若仍在等待上一轮的 pong，则认为对端已失联，
调用 on_dead 终止会话。
"""

import asyncio
import logging
from typing import Callable, Optional

from websockets.exceptions import ConnectionClosed

logger = logging.getLogger('ws-relay-liveness')


class LivenessMonitor:
    """
    会话心跳监控

    Attributes:
        connection: WebSocket 连接
        interval: 探测间隔（秒）
        alive: 上次探测后是否收到过 pong
        probes: 已发送的探测次数
        timed_out: 是否因未响应而终止会话
    """

    def __init__(self, connection, interval: float = 30.0,
                 on_dead: Optional[Callable[[], None]] = None):
        self.connection = connection
        self.interval = interval
        self.on_dead = on_dead
        self.alive = True
        self.probes = 0
        self.timed_out = False
        self.stop_count = 0
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """启动定时探测"""
        if self._task is None and not self._stopped:
            self._task = asyncio.ensure_future(self._run())

    def stop(self) -> bool:
        """
        取消定时器（幂等）

        Returns:
            bool: 本次调用是否真正执行了取消
        """
        if self._stopped:
            return False
        self._stopped = True
        self.stop_count += 1
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
        return True

    def _on_pong(self, waiter: asyncio.Future):
        if waiter.cancelled():
            return
        # 连接关闭时 waiter 以异常结束，这里取出异常避免未检索告警
        if waiter.exception() is None:
            self.alive = True

    async def _run(self):
        while not self._stopped:
            await asyncio.sleep(self.interval)
            if self._stopped:
                return

            if not self.alive:
                logger.warning(f"心跳超时（{self.interval}秒未收到 pong），终止会话")
                self.timed_out = True
                if self.on_dead is not None:
                    self.on_dead()
                return

            self.alive = False
            try:
                waiter = await self.connection.ping()
            except ConnectionClosed:
                logger.debug("发送 ping 时连接已关闭")
                return
            self.probes += 1
            waiter.add_done_callback(self._on_pong)
