"""
中继会话模块

本模块定义了 RelaySession 类，负责处理一个 WebSocket 连接从接受到关闭的
完整生命周期：读取握手消息、校验身份、解析目标、发送确认、建立出站
TCP 连接、双向转发，以及失败时按原因关闭会话。
"""

import asyncio
import itertools
import logging
from enum import Enum, IntEnum
from typing import Optional

from websockets.exceptions import ConnectionClosed

from config import RelayConfig
from doh import ResolutionError
from logger import add_context

from .bridge import OpenConnection, SessionBridge, UpstreamError
from .handshake import HandshakeError, HandshakeProcessor, ResolvedDestination
from .liveness import LivenessMonitor

logger = logging.getLogger('ws-relay-session')


class CloseCode(IntEnum):
    """
    WebSocket 关闭码

    - NORMAL: 任意一侧正常结束
    - GOING_AWAY: 服务器关闭
    - PROTOCOL_ERROR: 握手消息不合法或身份不匹配
    - INTERNAL_ERROR: 未预期的内部错误
    - RESOLUTION_FAILED: DoH 解析失败
    - UPSTREAM_ERROR: 出站连接失败或上游出错
    """
    NORMAL = 1000
    GOING_AWAY = 1001
    PROTOCOL_ERROR = 1002
    INTERNAL_ERROR = 1011
    RESOLUTION_FAILED = 4001
    UPSTREAM_ERROR = 4002


class SessionState(str, Enum):
    HANDSHAKE = 'handshake'
    CONNECTING = 'connecting'
    BRIDGING = 'bridging'
    CLOSED = 'closed'


class SessionClosed(Exception):
    """等待期间 WebSocket 已关闭，挂起的操作被取消"""


class RelaySession:
    """
    中继会话 - 一个 WebSocket 连接对应至多一个出站 TCP 连接

    工作流程:
    1. 读取第一条消息并解析为连接请求
    2. 校验身份和命令
    3. 域名目标通过 DoH 解析为 IP
    4. 发送两字节确认
    5. 连接目标，写入首段负载
    6. 双向转发直到任意一侧结束
    7. 关闭两侧并停止心跳

    Attributes:
        session_id: 会话编号
        peer: 客户端地址字符串
        state: 当前状态
        request: 连接请求（握手后设置）
        destination: 解析后的目标（解析后设置）
        bridge: 字节桥（连接时设置）
        monitor: 心跳监控
        close_code: 服务器主动关闭时使用的关闭码
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        connection,
        config: RelayConfig,
        processor: HandshakeProcessor,
        open_connection: Optional[OpenConnection] = None
    ):
        self.connection = connection
        self.config = config
        self.processor = processor
        self.open_connection = open_connection

        self.session_id = next(self._ids)
        peer = getattr(connection, 'remote_address', None)
        self.peer = f"{peer[0]}:{peer[1]}" if peer else "unknown"

        self.state = SessionState.HANDSHAKE
        self.request = None
        self.destination: Optional[ResolvedDestination] = None
        self.bridge: Optional[SessionBridge] = None
        self.monitor = LivenessMonitor(connection, config.heartbeat_interval, on_dead=self.terminate)
        self.close_code: Optional[int] = None
        self._closed = False

    async def run(self):
        """
        会话主流程

        所有错误都在会话内处理：记录日志并以对应关闭码关闭会话。
        """
        add_context(session_id=self.session_id, peer=self.peer)
        logger.info(f"来自 {self.peer} 的连接")
        self.monitor.start()

        try:
            await self._serve()
        except ConnectionClosed as e:
            logger.debug(f"客户端已断开: {e}")
        except SessionClosed:
            logger.debug(f"会话在 {self.state.value} 阶段被关闭，放弃挂起的操作")
        except HandshakeError as e:
            logger.warning(f"握手失败: {e}")
            await self.close(CloseCode.PROTOCOL_ERROR, "protocol error")
        except ResolutionError as e:
            logger.warning(f"域名解析失败: {e}")
            await self.close(CloseCode.RESOLUTION_FAILED, "resolution failed")
        except UpstreamError as e:
            logger.warning(f"上游连接错误: {e}")
            await self.close(CloseCode.UPSTREAM_ERROR, "upstream connection error")
        except asyncio.CancelledError:
            logger.debug("会话被取消")
            raise
        except Exception as e:
            logger.error(f"会话错误: {e}", exc_info=True)
            await self.close(CloseCode.INTERNAL_ERROR, "internal error")
        finally:
            await self.close()
            self._log_summary()

    async def _serve(self):
        message = await self.connection.recv()
        request = self.processor.parse(message)
        self.request = request
        logger.info(f"CONNECT -> {request.target}")

        self.destination = await self._until_closed(self.processor.resolve(request))
        await self.connection.send(self.processor.ack(request))

        self.state = SessionState.CONNECTING
        self.bridge = SessionBridge(
            self.connection,
            self.destination,
            first_payload=bytes(message[request.payload_offset:]),
            connect_timeout=self.config.connect_timeout,
            open_connection=self.open_connection,
        )
        await self._until_closed(self.bridge.connect())

        self.state = SessionState.BRIDGING
        logger.info(f"CONNECTED -> {self.destination}")
        await self.bridge.run()

    async def _until_closed(self, coro):
        """
        等待 coro 完成，同时监视 WebSocket 是否关闭

        WebSocket 先关闭时取消 coro 并抛出 SessionClosed，coro 的结果被丢弃。
        """
        task = asyncio.ensure_future(coro)
        closed = asyncio.ensure_future(self.connection.wait_closed())
        try:
            await asyncio.wait({task, closed}, return_when=asyncio.FIRST_COMPLETED)
            if task.done():
                return task.result()
            raise SessionClosed()
        finally:
            closed.cancel()
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug(f"取消的操作以异常结束: {e}")

    def terminate(self):
        """
        强制终止会话（心跳超时）

        直接中止底层传输，不发送关闭帧；挂起的读取随之以连接关闭结束。
        """
        logger.warning(f"终止会话: {self.peer}")
        self.monitor.stop()
        transport = getattr(self.connection, 'transport', None)
        if transport is not None:
            transport.abort()

    async def close(self, code: int = CloseCode.NORMAL, reason: str = ''):
        """
        关闭会话（幂等）

        停止心跳、关闭上游连接、关闭 WebSocket，三者只执行一次。

        Args:
            code: WebSocket 关闭码
            reason: 关闭原因
        """
        if self._closed:
            return
        self._closed = True
        self.state = SessionState.CLOSED
        self.close_code = code

        self.monitor.stop()
        if self.bridge is not None:
            await self.bridge.close()
        await self.connection.close(code, reason)

    @property
    def closed(self) -> bool:
        return self._closed

    def _log_summary(self):
        if self.bridge is not None:
            logger.info(
                f"会话结束: {self.peer}, 目标={self.destination}, "
                f"上行={self.bridge.bytes_up} 字节, 下行={self.bridge.bytes_down} 字节"
            )
        else:
            logger.info(f"会话结束: {self.peer}, 关闭码={self.close_code}")
