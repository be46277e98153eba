"""
握手处理模块

HandshakeProcessor 把会话的第一条消息转换为连接请求，校验客户端身份和
命令，并在目标为域名时通过 DoH 解析为 IP 字面量。出站连接只使用
ResolvedDestination 中的字面量 IP，域名不会直接进入套接字层。
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional, Union

from config import RelayConfig
from doh import DoHResolver
from protocol import (
    AddressKind,
    Command,
    ConnectionRequest,
    ProtocolError,
    build_ack,
    decode_request,
)

logger = logging.getLogger('ws-relay-handshake')


class HandshakeError(ProtocolError):
    """握手被拒绝（身份不匹配、命令不受支持、消息格式错误）"""


@dataclass(frozen=True)
class ResolvedDestination:
    """
    已解析的目标地址

    Attributes:
        kind: 原始地址种类
        host: IP 字面量
        port: 目标端口
        domain: 经 DoH 解析前的域名（非域名目标为 None）
    """
    kind: AddressKind
    host: str
    port: int
    domain: Optional[str] = None

    def __str__(self):
        host = f"[{self.host}]" if ':' in self.host else self.host
        if self.domain:
            return f"{self.domain}({host}):{self.port}"
        return f"{host}:{self.port}"


class HandshakeProcessor:
    """
    握手处理器

    Attributes:
        config: 中继配置
        resolver: DoH 解析器
    """

    def __init__(self, config: RelayConfig, resolver: DoHResolver):
        self.config = config
        self.resolver = resolver
        self._expected_identity = config.expected_identity

    def parse(self, message: Union[bytes, str]) -> ConnectionRequest:
        """
        解析并校验第一条消息

        Args:
            message: WebSocket 收到的第一条消息

        Returns:
            ConnectionRequest: 通过校验的连接请求

        Raises:
            HandshakeError: 消息为文本帧、格式错误、身份不匹配或命令不是 TCP
        """
        if not isinstance(message, (bytes, bytearray, memoryview)):
            raise HandshakeError("握手消息必须是二进制帧")

        try:
            request = decode_request(bytes(message), self.config.address_types)
        except HandshakeError:
            raise
        except ProtocolError as e:
            raise HandshakeError(str(e)) from e

        if not hmac.compare_digest(request.identity, self._expected_identity):
            raise HandshakeError("客户端身份不匹配")

        if request.command != Command.TCP:
            raise HandshakeError(f"不支持的命令: {request.command.name}")

        return request

    async def resolve(self, request: ConnectionRequest) -> ResolvedDestination:
        """
        将请求的目标转换为 IP 字面量

        Args:
            request: 连接请求

        Returns:
            ResolvedDestination: 解析后的目标

        Raises:
            ResolutionError: 域名解析失败
        """
        if request.address_kind != AddressKind.DOMAIN:
            return ResolvedDestination(request.address_kind, request.address, request.port)

        host = await self.resolver.resolve(request.address)
        logger.debug(f"域名已解析: {request.address} -> {host}")
        return ResolvedDestination(request.address_kind, host, request.port, domain=request.address)

    @staticmethod
    def ack(request: ConnectionRequest) -> bytes:
        """握手确认消息"""
        return build_ack(request.version)
