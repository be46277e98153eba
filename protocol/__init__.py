"""
WebSocket 中继协议包

本包提供了中继握手协议的定义和实现，包括：
- 协议常量、命令和地址类型
- 带边界检查的字节游标
- 握手消息编解码和确认消息

使用示例：
    from protocol import decode_request, encode_request, AddressKind

    # 构建握手消息
    data = encode_request(identity, 443, AddressKind.DOMAIN, 'example.com')

    # 解码握手消息
    request = decode_request(data)
    payload = data[request.payload_offset:]
"""

from .core import (
    # 协议常量
    PROTOCOL_VERSION,
    IDENTITY_SIZE,
    MIN_HEADER_SIZE,
    MAX_DOMAIN_LENGTH,

    # 异常
    ProtocolError,
    DecodeError,

    # 命令和地址类型
    Command,
    AddressKind,
    DEFAULT_ADDRESS_TYPES,

    # 解析工具
    ByteCursor,
    format_ipv6,
    parse_address,
    encode_address,

    # 握手消息
    ConnectionRequest,
    decode_request,
    encode_request,
    build_ack,
)
