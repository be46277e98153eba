"""
中继服务器模块 - 服务器生命周期管理

此模块包含 RelayServer 类，负责在单个端口上同时提供 WebSocket 中继和
链接页面，为每个通过闸门的连接创建独立的 RelaySession，并处理优雅关闭。

主要组件:
- RelayServer: 管理监听、会话集合、伴随进程、资源监控和关闭流程

使用示例:
    >>> config = load_relay_config('config.yaml')
    >>> server = RelayServer(config)
    >>> await server.start()
    >>> await server.serve_forever()
"""

import asyncio
import logging
import signal
from typing import Optional, Set

from websockets.asyncio.server import serve

from config import RelayConfig
from doh import DoHResolver
from resource_monitor import ResourceMonitor

from .agent import AgentProcess
from .bridge import OpenConnection
from .gate import ConnectionGate
from .handshake import HandshakeProcessor
from .page import LinkPage
from .session import RelaySession

logger = logging.getLogger('ws-relay-server')


class RelayServer:
    """
    WebSocket 中继服务器

    工作流程:
    1. 绑定监听端口（失败时抛出 OSError）
    2. 闸门校验每个升级请求，普通请求返回链接页面
    3. 为每个连接创建 RelaySession 并在独立协程中运行
    4. 收到 SIGINT/SIGTERM 后关闭监听和所有会话

    Attributes:
        config: 中继配置
        resolver: DoH 解析器
        processor: 握手处理器
        gate: 连接闸门
        sessions: 活跃会话集合
        agent: 伴随进程（未配置为 None）
        monitor: 资源监控器（未启用为 None）
    """

    def __init__(
        self,
        config: RelayConfig,
        resolver: Optional[DoHResolver] = None,
        open_connection: Optional[OpenConnection] = None
    ):
        self.config = config
        self.resolver = resolver or DoHResolver(config.doh_server, timeout=config.doh_timeout)
        self.processor = HandshakeProcessor(config, self.resolver)
        self.gate = ConnectionGate(config, LinkPage(config))
        self.open_connection = open_connection

        self.sessions: Set[RelaySession] = set()
        self.agent = AgentProcess(config.agent_command) if config.agent_command else None
        self.monitor = (
            ResourceMonitor(session_count=lambda: len(self.sessions))
            if config.monitor_interval > 0 else None
        )

        self._server = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def port(self) -> Optional[int]:
        """实际监听的端口（配置端口为 0 时由系统分配）"""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def handle_connection(self, connection):
        """
        处理通过闸门的 WebSocket 连接

        Args:
            connection: websockets 服务端连接
        """
        session = RelaySession(connection, self.config, self.processor, self.open_connection)
        self.sessions.add(session)
        try:
            await session.run()
        finally:
            self.sessions.discard(session)

    async def start(self):
        """
        启动服务器

        Raises:
            OSError: 无法绑定监听端口
        """
        self._stop_event = asyncio.Event()
        self._server = await serve(
            self.handle_connection,
            self.config.host,
            self.config.port,
            process_request=self.gate.process_request,
            ping_interval=None,
            compression=None,
            max_size=None,
        )
        logger.info(f"WebSocket 中继运行于 {self.config.host}:{self.port}")
        logger.info(f"WebSocket 路径: {self.config.expected_path}")
        logger.info(f"DoH 服务: {self.config.doh_server}")

        if self.agent is not None:
            await self.agent.start()
        if self.monitor is not None:
            self._monitor_task = asyncio.ensure_future(self.monitor.run(self.config.monitor_interval))

    def request_stop(self):
        """请求停止（信号处理器调用）"""
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"当前平台不支持信号处理器: {sig.name}")

    async def serve_forever(self):
        """运行直到收到停止信号，然后优雅关闭"""
        self._install_signal_handlers()
        try:
            await self._stop_event.wait()
            logger.info("收到停止信号，正在关闭")
        finally:
            await self.stop()

    async def stop(self):
        """
        优雅关闭

        关闭监听和所有会话（关闭码 1001），最多等待 shutdown_timeout 秒，
        超时后中止剩余会话。
        """
        if self._server is None:
            return
        server, self._server = self._server, None

        server.close()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=self.config.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{len(self.sessions)} 个会话未在 {self.config.shutdown_timeout} 秒内关闭，强制终止")
            for session in list(self.sessions):
                session.terminate()
            await server.wait_closed()

        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            logger.info("\n" + self.monitor.generate_report())

        if self.agent is not None:
            await self.agent.stop()
        await self.resolver.close()
        logger.info("中继服务器已停止")
