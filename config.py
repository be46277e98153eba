"""
WebSocket 中继 - 配置管理模块
加载配置文件和环境变量，构建只读的中继配置。

版本: 1.0.0

功能概述:
本模块提供了配置管理功能，包括：
1. 中继配置数据类（进程启动时构建一次，之后只读）
2. YAML 配置文件加载
3. 环境变量覆盖（WEB_USERNAME、WEB_PASSWORD、UUID、PORT、DOH_SERVER 等）
4. 配置校验

配置文件格式:
    relay:
      port: 7860
      uuid: 37a0bd7c-8b9f-4693-8916-bd1e2da0a817
      doh_server: https://dns.nextdns.io/7df33f
      address_types: {1: ipv4, 3: domain, 4: ipv6}
    logging:
      level: INFO

优先级: 环境变量 > 配置文件 > 默认值
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import yaml

from protocol import DEFAULT_ADDRESS_TYPES, IDENTITY_SIZE, AddressKind

logger = logging.getLogger('ws-relay-config')

DEFAULT_UUID = '37a0bd7c-8b9f-4693-8916-bd1e2da0a817'
DEFAULT_DOH_SERVER = 'https://dns.nextdns.io/7df33f'


class ConfigError(ValueError):
    """配置值不合法"""


# ============================================================================
# 配置数据类
# ============================================================================

@dataclass(frozen=True)
class RelayConfig:
    """
    中继配置数据类

    进程启动时构建一次，以引用方式传给连接闸门、握手处理器和 DoH 解析器，
    各组件不直接读取环境变量。

    Attributes:
        host: 监听地址（默认: "0.0.0.0"）
        port: 监听端口（默认: 7860）
        uuid: 客户端身份标识（带连字符的原始形式）
        web_username: 基本认证用户名（默认: "admin"）
        web_password: 基本认证密码（默认: "password"）
        doh_server: DNS-over-HTTPS 服务地址
        ws_path: 固定的 WebSocket 路径（为空时使用 "/" + 去连字符的 uuid）
        gate_auth: 代理路径是否也要求基本认证（默认: False）
        page_auth: 链接页面是否要求基本认证（默认: True）
        doh_timeout: DoH 请求超时（秒，默认: 10）
        connect_timeout: 出站 TCP 连接超时（秒，默认: 10）
        heartbeat_interval: 心跳间隔（秒，默认: 30）
        shutdown_timeout: 优雅关闭等待时间（秒，默认: 10）
        agent_command: 启动时运行的伴随进程命令（可选）
        monitor_interval: 资源监控间隔（秒，0 表示关闭）
        link_scheme: 分享链接的协议名（默认: "vless"）
        address_types: 地址类型码点 -> 地址种类
    """
    host: str = "0.0.0.0"
    port: int = 7860
    uuid: str = DEFAULT_UUID
    web_username: str = "admin"
    web_password: str = "password"
    doh_server: str = DEFAULT_DOH_SERVER
    ws_path: Optional[str] = None
    gate_auth: bool = False
    page_auth: bool = True
    doh_timeout: float = 10.0
    connect_timeout: float = 10.0
    heartbeat_interval: float = 30.0
    shutdown_timeout: float = 10.0
    agent_command: Optional[str] = None
    monitor_interval: float = 0.0
    link_scheme: str = "vless"
    address_types: Mapping[int, AddressKind] = field(
        default_factory=lambda: dict(DEFAULT_ADDRESS_TYPES)
    )

    def __post_init__(self):
        self.validate()

    @property
    def identity_hex(self) -> str:
        """去掉连字符的身份标识"""
        return self.uuid.replace('-', '').lower()

    @property
    def expected_identity(self) -> bytes:
        """16 字节身份标识"""
        return bytes.fromhex(self.identity_hex)

    @property
    def expected_path(self) -> str:
        """WebSocket 升级请求必须匹配的路径"""
        if self.ws_path:
            return self.ws_path if self.ws_path.startswith('/') else f"/{self.ws_path}"
        return f"/{self.identity_hex}"

    def validate(self):
        """
        校验配置

        Raises:
            ConfigError: 任一配置值不合法
        """
        try:
            identity = bytes.fromhex(self.identity_hex)
        except ValueError:
            raise ConfigError(f"UUID 不是合法的十六进制: {self.uuid}") from None
        if len(identity) != IDENTITY_SIZE:
            raise ConfigError(f"UUID 必须为 {IDENTITY_SIZE} 字节: {self.uuid}")

        if not 0 <= self.port <= 65535:
            raise ConfigError(f"端口超出范围: {self.port}")

        for name in ('doh_timeout', 'connect_timeout', 'heartbeat_interval', 'shutdown_timeout'):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} 必须为正数")
        if self.monitor_interval < 0:
            raise ConfigError("monitor_interval 不能为负数")

        if not self.doh_server.startswith(('https://', 'http://')):
            raise ConfigError(f"DOH_SERVER 必须是 HTTP(S) 地址: {self.doh_server}")

        kinds = list(self.address_types.values())
        if sorted(kinds) != sorted(AddressKind):
            raise ConfigError(f"地址类型表必须为每种地址各配置一个码点: {dict(self.address_types)}")
        for code in self.address_types:
            if not 0 <= code <= 255:
                raise ConfigError(f"地址类型码点超出范围: {code}")


# ============================================================================
# 配置文件管理函数
# ============================================================================

def load_config(config_file: Optional[str]) -> Dict[str, Any]:
    """
    加载配置文件

    从 YAML 格式的配置文件中加载配置数据

    Args:
        config_file: 配置文件路径

    Returns:
        Dict[str, Any]: 配置数据字典，如果文件不存在或为空则返回空字典

    Raises:
        ConfigError: 文件格式错误
    """
    if not config_file:
        return {}
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug(f"配置文件不存在: {config_file}")
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"配置文件格式错误: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"配置文件顶层必须是映射: {config_file}")
    return data


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _parse_address_types(raw: Mapping[Any, Any]) -> Dict[int, AddressKind]:
    table = {}
    for code, kind in raw.items():
        try:
            table[int(code)] = AddressKind(str(kind).lower())
        except ValueError:
            raise ConfigError(f"地址类型表项不合法: {code}: {kind}") from None
    return table


# 环境变量 -> (配置字段, 类型转换)
ENV_OVERRIDES = {
    'HOST': ('host', str),
    'PORT': ('port', int),
    'UUID': ('uuid', str),
    'WEB_USERNAME': ('web_username', str),
    'WEB_PASSWORD': ('web_password', str),
    'DOH_SERVER': ('doh_server', str),
    'WS_PATH': ('ws_path', str),
    'GATE_AUTH': ('gate_auth', _parse_bool),
    'PAGE_AUTH': ('page_auth', _parse_bool),
    'DOH_TIMEOUT': ('doh_timeout', float),
    'CONNECT_TIMEOUT': ('connect_timeout', float),
    'HEARTBEAT_INTERVAL': ('heartbeat_interval', float),
    'SHUTDOWN_TIMEOUT': ('shutdown_timeout', float),
    'AGENT_COMMAND': ('agent_command', str),
    'MONITOR_INTERVAL': ('monitor_interval', float),
}

FILE_FIELDS = {
    'host': str,
    'port': int,
    'uuid': str,
    'web_username': str,
    'web_password': str,
    'doh_server': str,
    'ws_path': str,
    'gate_auth': _parse_bool,
    'page_auth': _parse_bool,
    'doh_timeout': float,
    'connect_timeout': float,
    'heartbeat_interval': float,
    'shutdown_timeout': float,
    'agent_command': str,
    'monitor_interval': float,
    'link_scheme': str,
}


def load_relay_config(
    config_file: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None
) -> RelayConfig:
    """
    构建中继配置

    读取配置文件的 relay 段，再用环境变量覆盖。

    Args:
        config_file: YAML 配置文件路径（可选）
        env: 环境变量映射，默认 os.environ

    Returns:
        RelayConfig: 校验通过的配置

    Raises:
        ConfigError: 配置值不合法
    """
    env = os.environ if env is None else env
    section = load_config(config_file).get('relay') or {}
    if not isinstance(section, dict):
        raise ConfigError("relay 配置段必须是映射")

    values: Dict[str, Any] = {}
    try:
        for name, convert in FILE_FIELDS.items():
            if section.get(name) is not None:
                values[name] = convert(section[name])
        if section.get('address_types'):
            values['address_types'] = _parse_address_types(section['address_types'])

        for env_name, (name, convert) in ENV_OVERRIDES.items():
            raw = env.get(env_name)
            if raw is not None and raw != '':
                values[name] = convert(raw)
    except (TypeError, ValueError) as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(f"配置值类型错误: {e}") from e

    config = RelayConfig(**values)
    logger.debug(
        f"配置已加载: port={config.port}, path={config.expected_path}, "
        f"doh={config.doh_server}, gate_auth={config.gate_auth}"
    )
    return config
