"""
WebSocket 中继统一模块

本模块整合了中继服务器的核心功能：

- 连接闸门（路径和认证校验）
- 握手处理（身份校验、DoH 解析、确认）
- 会话桥接（WebSocket <-> TCP 双向转发）
- 心跳检测
- 服务器生命周期

使用示例：
    from relay import RelayServer
    server = RelayServer(config)
    await server.start()
    await server.serve_forever()
"""

# 延迟导入，避免导入包时加载 websockets 等依赖
_EXPORTS = {
    'RelayServer': '.server',
    'RelaySession': '.session',
    'CloseCode': '.session',
    'SessionBridge': '.bridge',
    'UpstreamError': '.bridge',
    'HandshakeProcessor': '.handshake',
    'HandshakeError': '.handshake',
    'ResolvedDestination': '.handshake',
    'ConnectionGate': '.gate',
    'LivenessMonitor': '.liveness',
    'LinkPage': '.page',
    'AgentProcess': '.agent',
}


def __getattr__(name):
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    from importlib import import_module
    return getattr(import_module(module_name, __name__), name)


__all__ = list(_EXPORTS)
