"""
WebSocket 中继 - DNS-over-HTTPS 解析模块

通过 HTTPS JSON 接口将域名解析为 IPv4 字面量:

    GET {DOH_SERVER}?name={domain}&type=A
    Accept: application/dns-json

    {"Status": 0, "Answer": [{"type": 1, "data": "93.184.216.34"}]}

每次解析都是一次全新的请求，不缓存、不重试；重试策略由调用方决定。
"""

import asyncio
import ipaddress
import json
import logging
from typing import Optional

import aiohttp

logger = logging.getLogger('ws-relay-doh')

DNS_TYPE_A = 1


class ResolutionError(Exception):
    """DoH 解析失败（状态码、响应格式、无 A 记录或传输错误）"""


class DoHResolver:
    """
    DNS-over-HTTPS 解析器

    Attributes:
        endpoint: DoH 服务地址
        timeout: 单次请求超时（秒）
    """

    def __init__(self, endpoint: str, timeout: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None):
        """
        初始化解析器

        Args:
            endpoint: DoH 服务地址（不含查询参数）
            timeout: 单次请求超时（秒）
            session: 复用的 aiohttp 会话（可选，为空时首次解析时创建）
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def resolve(self, domain: str) -> str:
        """
        解析域名

        Args:
            domain: 域名（非空）

        Returns:
            str: 第一条 A 记录的 IPv4 地址

        Raises:
            ResolutionError: 任何解析失败
        """
        if not domain:
            raise ResolutionError("域名为空")

        params = {'name': domain, 'type': 'A'}
        headers = {'Accept': 'application/dns-json'}
        logger.debug(f"DoH 查询: {self.endpoint} name={domain}")

        try:
            async with self._get_session().get(
                self.endpoint,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise ResolutionError(f"DoH 返回状态码 {resp.status}: {domain}")
                body = await resp.read()
        except asyncio.TimeoutError:
            raise ResolutionError(f"DoH 请求超时（{self.timeout}秒）: {domain}") from None
        except aiohttp.ClientError as e:
            raise ResolutionError(f"DoH 请求失败: {domain}: {e}") from e

        address = self._pick_address(body, domain)
        logger.info(f"[DoH] {domain} -> {address}")
        return address

    @staticmethod
    def _pick_address(body: bytes, domain: str) -> str:
        """
        从响应体中取出第一条 A 记录

        Args:
            body: 响应体原始字节
            domain: 查询的域名（用于错误信息）

        Returns:
            str: IPv4 地址
        """
        try:
            data = json.loads(body.decode('utf-8'))
        except ValueError as e:
            raise ResolutionError(f"DoH 响应不是合法 JSON: {domain}: {e}") from e

        answers = data.get('Answer') if isinstance(data, dict) else None
        if not isinstance(answers, list) or not answers:
            raise ResolutionError(f"DoH 响应没有应答记录: {domain}")

        for answer in answers:
            if isinstance(answer, dict) and answer.get('type') == DNS_TYPE_A:
                value = answer.get('data')
                try:
                    if not isinstance(value, str):
                        raise ValueError(value)
                    return str(ipaddress.IPv4Address(value))
                except ValueError:
                    raise ResolutionError(f"A 记录不是合法 IPv4 地址: {domain}: {value!r}") from None

        raise ResolutionError(f"未找到 A 记录: {domain}")

    async def close(self):
        """关闭自建的 aiohttp 会话"""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
