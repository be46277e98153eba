"""
连接闸门模块

在读取任何协议字节之前校验 WebSocket 升级请求:
1. 路径必须等于配置的期望路径（忽略查询串），否则 404
2. 启用 gate_auth 时还需基本认证: 缺失或错误 401，格式错误 400

被拒绝的请求只收到 HTTP 响应，连接随后释放，不会创建会话。
普通（非升级）请求交给链接页面处理。
"""

import hmac
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Optional

from websockets.exceptions import InvalidHeader
from websockets.headers import parse_authorization_basic

from config import RelayConfig

logger = logging.getLogger('ws-relay-gate')

AUTH_REALM = 'Basic realm="Node"'


@dataclass(frozen=True)
class GateRejection:
    """
    拒绝结果

    Attributes:
        status: HTTP 状态码（400 / 401 / 404）
        reason: 日志用的拒绝原因
    """
    status: int
    reason: str


def check_credentials(authorization: Optional[str], username: str, password: str) -> Optional[GateRejection]:
    """
    校验 Authorization 头中的基本认证

    Returns:
        Optional[GateRejection]: 通过返回 None
    """
    if not authorization:
        return GateRejection(401, "缺少认证信息")
    try:
        user, secret = parse_authorization_basic(authorization)
    except InvalidHeader as e:
        return GateRejection(400, f"认证头格式错误: {e}")

    user_ok = hmac.compare_digest(user.encode('utf-8'), username.encode('utf-8'))
    secret_ok = hmac.compare_digest(secret.encode('utf-8'), password.encode('utf-8'))
    if not (user_ok and secret_ok):
        return GateRejection(401, f"用户名或密码错误: user={user}")
    return None


def check_basic_auth(headers, username: str, password: str) -> Optional[GateRejection]:
    """从请求头中取出 Authorization 并校验"""
    values = headers.get_all('Authorization')
    if len(values) > 1:
        return GateRejection(400, "存在多个 Authorization 头")
    return check_credentials(values[0] if values else None, username, password)


def reject(connection, rejection: GateRejection):
    """
    构建拒绝响应

    Args:
        connection: websockets 服务端连接
        rejection: 拒绝结果

    Returns:
        Response: HTTP 错误响应
    """
    response = connection.respond(rejection.status, f"{HTTPStatus(rejection.status).phrase}\n")
    if rejection.status == 401:
        response.headers['WWW-Authenticate'] = AUTH_REALM
    return response


def is_upgrade_request(headers) -> bool:
    """请求是否为 WebSocket 升级"""
    return any(value.strip().lower() == 'websocket' for value in headers.get_all('Upgrade'))


class ConnectionGate:
    """
    连接闸门

    Attributes:
        config: 中继配置
        page: 处理普通 HTTP 请求的页面（可选）
        rejected: 已拒绝的升级请求数
    """

    def __init__(self, config: RelayConfig, page=None):
        self.config = config
        self.page = page
        self.expected_path = config.expected_path
        self.rejected = 0

    def check(self, path: str, authorization: Optional[str] = None) -> Optional[GateRejection]:
        """
        校验升级请求

        Args:
            path: 请求路径（可带查询串）
            authorization: Authorization 头（可选）

        Returns:
            Optional[GateRejection]: 通过返回 None
        """
        pathname = path.split('?', 1)[0]
        if pathname != self.expected_path:
            return GateRejection(404, f"路径不匹配: {pathname}")

        if self.config.gate_auth:
            return check_credentials(authorization, self.config.web_username, self.config.web_password)
        return None

    def process_request(self, connection, request):
        """
        websockets 的 process_request 钩子

        Returns:
            Optional[Response]: 返回 None 时继续 WebSocket 握手
        """
        if not is_upgrade_request(request.headers):
            if self.page is None:
                return connection.respond(404, "Not Found\n")
            return self.page.respond(connection, request)

        values = request.headers.get_all('Authorization')
        if len(values) > 1:
            rejection = GateRejection(400, "存在多个 Authorization 头")
        else:
            rejection = self.check(request.path, values[0] if values else None)

        if rejection is None:
            return None

        self.rejected += 1
        logger.warning(f"拒绝升级请求 {connection.remote_address}: {rejection.status} {rejection.reason}")
        return reject(connection, rejection)
