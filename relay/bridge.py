"""
会话桥接模块

SessionBridge 负责打开到目标的出站 TCP 连接，并在 WebSocket 与 TCP
套接字之间双向转发原始字节:

    WebSocket 消息 ──> TCP 写入（不保留消息边界）
    TCP 读取块     ──> WebSocket 二进制消息

任意一侧结束后另一侧随即停止，两端资源只释放一次。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple

from websockets.exceptions import ConnectionClosed

from .handshake import ResolvedDestination

logger = logging.getLogger('ws-relay-bridge')

OpenConnection = Callable[..., Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

READ_SIZE = 65536


class UpstreamError(OSError):
    """出站连接失败或转发过程中上游套接字出错"""


class SessionBridge:
    """
    WebSocket <-> TCP 字节桥

    Attributes:
        connection: 已完成握手的 WebSocket 连接
        destination: 解析后的目标
        first_payload: 握手消息中携带的首段负载
        reader: 上游读取器（连接后设置）
        writer: 上游写入器（连接后设置）
        bytes_up: 客户端 -> 上游的字节数
        bytes_down: 上游 -> 客户端的字节数
        ended_by: 先结束的一侧（"client" 或 "upstream"）
    """

    def __init__(
        self,
        connection,
        destination: ResolvedDestination,
        first_payload: bytes = b'',
        connect_timeout: float = 10.0,
        open_connection: Optional[OpenConnection] = None
    ):
        self.connection = connection
        self.destination = destination
        self.first_payload = first_payload
        self.connect_timeout = connect_timeout
        self._open_connection = open_connection or asyncio.open_connection

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.bytes_up = 0
        self.bytes_down = 0
        self.ended_by: Optional[str] = None
        self.closed = False

    async def connect(self):
        """
        连接目标并写入首段负载

        首段负载在启动双向转发之前写入，保证它是上游收到的第一批字节。

        Raises:
            UpstreamError: 连接被拒绝、超时或写入失败
        """
        host, port = self.destination.host, self.destination.port
        logger.debug(f"连接上游: {self.destination}, timeout={self.connect_timeout}")

        try:
            self.reader, self.writer = await asyncio.wait_for(
                self._open_connection(host, port),
                timeout=self.connect_timeout
            )
        except asyncio.TimeoutError:
            raise UpstreamError(f"连接 {self.destination} 超时（{self.connect_timeout}秒）") from None
        except OSError as e:
            raise UpstreamError(f"连接 {self.destination} 失败: {e}") from e

        if self.first_payload:
            try:
                self.writer.write(self.first_payload)
                await self.writer.drain()
            except OSError as e:
                raise UpstreamError(f"写入首段负载失败: {e}") from e
            self.bytes_up += len(self.first_payload)
            logger.debug(f"首段负载已写入: {len(self.first_payload)} 字节")

    async def run(self):
        """
        双向转发，直到任意一侧结束

        Raises:
            UpstreamError: 上游读写出错
        """
        to_upstream = asyncio.ensure_future(self._client_to_upstream())
        to_client = asyncio.ensure_future(self._upstream_to_client())
        pumps = {to_upstream: 'client', to_client: 'upstream'}

        try:
            done, _ = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            self.ended_by = pumps[next(iter(done))]
        finally:
            for task in pumps:
                task.cancel()
            results = await asyncio.gather(*pumps, return_exceptions=True)

        logger.debug(f"转发结束: ended_by={self.ended_by}, up={self.bytes_up}, down={self.bytes_down}")
        for result in results:
            if isinstance(result, Exception):
                raise result

    async def _client_to_upstream(self):
        try:
            async for message in self.connection:
                data = message.encode('utf-8') if isinstance(message, str) else message
                self.writer.write(data)
                await self.writer.drain()
                self.bytes_up += len(data)
        except ConnectionClosed as e:
            logger.debug(f"WebSocket 异常关闭: {e}")
        except OSError as e:
            raise UpstreamError(f"写入上游失败: {e}") from e

    async def _upstream_to_client(self):
        while True:
            try:
                data = await self.reader.read(READ_SIZE)
            except OSError as e:
                raise UpstreamError(f"读取上游失败: {e}") from e
            if not data:
                logger.debug(f"上游连接已关闭（读取到空数据）: {self.destination}")
                return
            try:
                await self.connection.send(data)
            except ConnectionClosed:
                return
            self.bytes_down += len(data)

    async def close(self):
        """
        关闭上游连接（幂等）
        """
        if self.closed:
            return
        self.closed = True

        if self.writer is not None:
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except OSError as e:
                logger.debug(f"关闭上游连接时出错: {e}")
