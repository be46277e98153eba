"""
WebSocket 中继 - 核心协议模块
定义握手消息的常量、命令、地址类型和编解码函数。

版本: 1.0.0

功能概述:
本模块提供了中继握手协议的核心定义。客户端在 WebSocket 建立后发送的
第一条二进制消息描述了目标地址，服务器解析后回复两字节确认，之后
该 WebSocket 只承载原始字节流。

主要功能:
1. 协议常量定义 - 版本号、身份标识长度、最小头部长度
2. 命令和地址类型枚举
3. 字节游标 - 带边界检查的顺序读取
4. 握手消息解码 / 编码、确认消息构建

消息格式:
┌──────┬──────────┬──────────┬────────┬──────┬────────┬──────────┬──────────┬──────────┐
│ 版本 │ 身份标识 │ 附加长度 │ 附加块 │ 命令 │ 端口   │ 地址类型 │ 地址     │ 首段负载 │
│ 1    │ 16       │ 1        │ N      │ 1    │ 2      │ 1        │ 可变长度 │ 剩余字节 │
└──────┴──────────┴──────────┴────────┴──────┴────────┴──────────┴──────────┴──────────┘

确认消息: 版本(1) + 0x00(1)

所有多字节字段使用大端序（网络字节序）。
"""

import ipaddress
import logging
import struct
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Mapping, Optional, Tuple, Union

logger = logging.getLogger('ws-relay-protocol')


# ============================================================================
# 协议常量
# ============================================================================

PROTOCOL_VERSION = 0
IDENTITY_SIZE = 16
# 版本(1) + 身份(16) + 附加长度(1) + 命令(1) + 端口(2) + 地址类型(1)
MIN_HEADER_SIZE = 22
MAX_DOMAIN_LENGTH = 255


# ============================================================================
# 异常
# ============================================================================

class ProtocolError(ValueError):
    """握手消息不合法（版本、身份、命令或地址错误）"""


class DecodeError(ProtocolError):
    """读取越界：消息在字段中途被截断"""


# ============================================================================
# 命令和地址类型
# ============================================================================

class Command(IntEnum):
    """
    握手命令

    协议声明了三种命令，中继只支持 TCP：
    - TCP: 建立 TCP 隧道
    - UDP: UDP 转发（拒绝）
    - MUX: 多路复用（拒绝）
    """
    TCP = 0x01
    UDP = 0x02
    MUX = 0x03


class AddressKind(str, Enum):
    """目标地址的编码种类"""
    IPV4 = 'ipv4'
    DOMAIN = 'domain'
    IPV6 = 'ipv6'


# 地址类型码点 -> 地址种类，可通过配置覆盖
DEFAULT_ADDRESS_TYPES: Dict[int, AddressKind] = {
    0x01: AddressKind.IPV4,
    0x03: AddressKind.DOMAIN,
    0x04: AddressKind.IPV6,
}


# ============================================================================
# 字节游标
# ============================================================================

class ByteCursor:
    """
    不可变字节缓冲区上的读取游标

    每次读取都会推进偏移量并检查边界，越界时抛出 DecodeError，
    不会静默读出缓冲区之外的数据。

    Attributes:
        data: 被读取的字节数据
        offset: 当前读取位置
    """

    def __init__(self, data: bytes, offset: int = 0):
        self.data = bytes(data)
        self.offset = offset

    @property
    def remaining(self) -> int:
        """剩余未读字节数"""
        return len(self.data) - self.offset

    def _require(self, size: int, field: str):
        if size < 0 or self.remaining < size:
            raise DecodeError(
                f"{field} 需要 {size} 字节，偏移 {self.offset} 处仅剩 {self.remaining} 字节"
            )

    def read_u8(self, field: str = 'u8') -> int:
        self._require(1, field)
        value = self.data[self.offset]
        self.offset += 1
        return value

    def read_u16be(self, field: str = 'u16') -> int:
        self._require(2, field)
        value, = struct.unpack_from('>H', self.data, self.offset)
        self.offset += 2
        return value

    def read_bytes(self, size: int, field: str = 'bytes') -> bytes:
        self._require(size, field)
        value = self.data[self.offset:self.offset + size]
        self.offset += size
        return value

    def rest(self) -> bytes:
        """返回剩余字节（不推进偏移量）"""
        return self.data[self.offset:]


# ============================================================================
# 地址解析
# ============================================================================

def format_ipv6(packed: bytes) -> str:
    """
    将 16 字节 IPv6 地址格式化为标准文本

    8 个大端 16 位分组以冒号连接，最长的连续零分组压缩为 "::"
    （RFC 5952），例如 2001:0db8:0000:...:0001 -> 2001:db8::1。

    Args:
        packed: 16 字节原始地址

    Returns:
        str: 压缩后的 IPv6 文本
    """
    if len(packed) != 16:
        raise DecodeError(f"IPv6 地址长度错误: {len(packed)}")
    return ipaddress.IPv6Address(packed).compressed


def parse_address(
    cursor: ByteCursor,
    address_types: Optional[Mapping[int, AddressKind]] = None
) -> Tuple[int, AddressKind, str]:
    """
    从游标处解析地址类型和地址

    Args:
        cursor: 位于地址类型字节处的游标
        address_types: 码点到地址种类的映射，默认 DEFAULT_ADDRESS_TYPES

    Returns:
        Tuple[int, AddressKind, str]: (地址类型码点, 地址种类, 地址文本)

    Raises:
        ProtocolError: 地址类型不支持或域名为空 / 非 UTF-8
        DecodeError: 地址字节被截断
    """
    table = address_types if address_types is not None else DEFAULT_ADDRESS_TYPES
    atyp = cursor.read_u8('地址类型')
    kind = table.get(atyp)
    if kind is None:
        raise ProtocolError(f"不支持的地址类型: {atyp}")

    if kind == AddressKind.IPV4:
        host = str(ipaddress.IPv4Address(cursor.read_bytes(4, 'IPv4 地址')))
    elif kind == AddressKind.DOMAIN:
        length = cursor.read_u8('域名长度')
        if length == 0:
            raise ProtocolError("域名为空")
        raw = cursor.read_bytes(length, '域名')
        try:
            host = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"域名不是合法的 UTF-8: {e}") from e
    else:
        host = format_ipv6(cursor.read_bytes(16, 'IPv6 地址'))

    return atyp, kind, host


def encode_address(
    kind: AddressKind,
    host: str,
    address_types: Optional[Mapping[int, AddressKind]] = None
) -> bytes:
    """
    按地址种类编码地址（含地址类型字节）

    Args:
        kind: 地址种类
        host: 地址文本
        address_types: 码点到地址种类的映射

    Returns:
        bytes: 地址类型(1) + 地址字节
    """
    table = address_types if address_types is not None else DEFAULT_ADDRESS_TYPES
    codes = {value: code for code, value in table.items()}
    if kind not in codes:
        raise ProtocolError(f"地址种类没有对应的码点: {kind}")

    if kind == AddressKind.IPV4:
        body = ipaddress.IPv4Address(host).packed
    elif kind == AddressKind.IPV6:
        body = ipaddress.IPv6Address(host).packed
    else:
        raw = host.encode('utf-8')
        if not 0 < len(raw) <= MAX_DOMAIN_LENGTH:
            raise ProtocolError(f"域名长度超出范围: {len(raw)}")
        body = struct.pack('>B', len(raw)) + raw
    return struct.pack('>B', codes[kind]) + body


# ============================================================================
# 握手消息
# ============================================================================

@dataclass(frozen=True)
class ConnectionRequest:
    """
    客户端握手请求（每个会话解析一次，之后不可变）

    Attributes:
        version: 协议版本
        identity: 16 字节客户端身份标识
        addon: 附加块原始字节（未使用）
        command: 命令
        port: 目标端口
        address_type: 地址类型码点
        address_kind: 地址种类
        address: 地址文本（IP 字面量或域名）
        payload_offset: 首段负载在握手消息中的起始偏移
    """
    version: int
    identity: bytes
    addon: bytes
    command: Command
    port: int
    address_type: int
    address_kind: AddressKind
    address: str
    payload_offset: int

    @property
    def target(self) -> str:
        """日志用的目标地址字符串"""
        if self.address_kind == AddressKind.IPV6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


def decode_request(
    message: bytes,
    address_types: Optional[Mapping[int, AddressKind]] = None
) -> ConnectionRequest:
    """
    解码握手消息

    按固定顺序读取：版本 -> 身份 -> 附加长度 -> 附加块 -> 命令 -> 端口 ->
    地址类型 -> 地址，剩余部分为首段负载。身份是否匹配、命令是否受支持
    由调用方判断。

    Args:
        message: 第一条二进制消息
        address_types: 码点到地址种类的映射

    Returns:
        ConnectionRequest: 解析结果

    Raises:
        ProtocolError: 消息过短、版本不支持、命令未知、地址不合法
    """
    if len(message) < MIN_HEADER_SIZE:
        raise DecodeError(f"握手消息过短: {len(message)} < {MIN_HEADER_SIZE}")

    cursor = ByteCursor(message)
    version = cursor.read_u8('版本')
    if version != PROTOCOL_VERSION:
        raise ProtocolError(f"不支持的协议版本: {version}")

    identity = cursor.read_bytes(IDENTITY_SIZE, '身份标识')
    addon_len = cursor.read_u8('附加长度')
    addon = cursor.read_bytes(addon_len, '附加块')

    command_byte = cursor.read_u8('命令')
    try:
        command = Command(command_byte)
    except ValueError:
        raise ProtocolError(f"未知命令: {command_byte}") from None

    port = cursor.read_u16be('端口')
    atyp, kind, address = parse_address(cursor, address_types)

    logger.debug(
        f"解码握手: version={version}, addon_len={addon_len}, command={command.name}, "
        f"port={port}, atyp={atyp}, address={address}, payload={cursor.remaining} 字节"
    )

    return ConnectionRequest(
        version=version,
        identity=identity,
        addon=addon,
        command=command,
        port=port,
        address_type=atyp,
        address_kind=kind,
        address=address,
        payload_offset=cursor.offset,
    )


def encode_request(
    identity: bytes,
    port: int,
    kind: AddressKind,
    host: str,
    command: Union[Command, int] = Command.TCP,
    addon: bytes = b'',
    payload: bytes = b'',
    version: int = PROTOCOL_VERSION,
    address_types: Optional[Mapping[int, AddressKind]] = None
) -> bytes:
    """
    构建握手消息（客户端侧使用，也用于测试）

    Returns:
        bytes: 完整的握手消息，末尾附带首段负载
    """
    if len(identity) != IDENTITY_SIZE:
        raise ProtocolError(f"身份标识必须为 {IDENTITY_SIZE} 字节")
    header = struct.pack('>B', version) + identity
    header += struct.pack('>B', len(addon)) + addon
    header += struct.pack('>BH', int(command), port)
    return header + encode_address(kind, host, address_types) + payload


def build_ack(version: int = PROTOCOL_VERSION) -> bytes:
    """构建两字节握手确认: 版本 + 附加长度 0"""
    return struct.pack('>BB', version, 0)
