"""
测试公共组件

提供 WebSocket 连接、上游 TCP 连接和 DoH 解析器的替身，
会话和桥接测试通过它们观察中继的行为（发送了什么、连接了哪里、关闭码）。
"""

import asyncio

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from config import RelayConfig
from doh import ResolutionError
from protocol import AddressKind, encode_request

IDENTITY = bytes.fromhex('37a0bd7c8b9f46938916bd1e2da0a817')

_EOF = object()


async def wait_until(predicate, timeout: float = 2.0):
    """轮询直到条件成立，超时抛出 AssertionError"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("等待条件超时")
        await asyncio.sleep(0.005)


def handshake(port: int = 80, kind: AddressKind = AddressKind.IPV4, host: str = '127.0.0.1',
              payload: bytes = b'', identity: bytes = IDENTITY, **kwargs) -> bytes:
    """构建使用默认身份的握手消息"""
    return encode_request(identity, port, kind, host, payload=payload, **kwargs)


class FakeTransport:
    def __init__(self, connection):
        self.connection = connection
        self.aborted = False

    def abort(self):
        self.aborted = True
        self.connection._mark_closed(abnormal=True)


class FakeWebSocket:
    """
    websockets 服务端连接的替身

    Attributes:
        sent: 服务器发出的消息
        close_calls: close() 调用记录 (code, reason)
        answer_pings: 是否自动回复 pong
    """

    def __init__(self, answer_pings: bool = True):
        self.remote_address = ('127.0.0.1', 50000)
        self.transport = FakeTransport(self)
        self.answer_pings = answer_pings
        self.sent = []
        self.close_calls = []
        self.pings = 0
        self._incoming = asyncio.Queue()
        self._closed = asyncio.Event()
        self._abnormal = False

    def feed(self, message):
        """模拟客户端发送一条消息"""
        self._incoming.put_nowait(message)

    def remote_close(self):
        """模拟客户端正常关闭"""
        self._mark_closed(abnormal=False)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _mark_closed(self, abnormal: bool):
        if self._closed.is_set():
            return
        self._abnormal = abnormal
        self._closed.set()
        self._incoming.put_nowait(_EOF)

    def _closed_error(self):
        if self._abnormal:
            return ConnectionClosedError(None, None)
        return ConnectionClosedOK(None, None)

    async def recv(self):
        message = await self._incoming.get()
        if message is _EOF:
            self._incoming.put_nowait(_EOF)
            raise self._closed_error()
        return message

    async def send(self, message):
        if self.closed:
            raise self._closed_error()
        self.sent.append(message)

    async def ping(self):
        if self.closed:
            raise self._closed_error()
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code: int = 1000, reason: str = ''):
        self.close_calls.append((code, reason))
        self._mark_closed(abnormal=False)

    async def wait_closed(self):
        await self._closed.wait()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            try:
                yield await self.recv()
            except ConnectionClosedOK:
                return


class FakeWriter:
    def __init__(self, upstream):
        self.upstream = upstream
        self.closed = False

    def write(self, data: bytes):
        if self.closed:
            raise ConnectionResetError("写入已关闭的连接")
        self.upstream.written.append(bytes(data))

    async def drain(self):
        pass

    def close(self):
        if not self.closed:
            self.closed = True
            self.upstream.close_count += 1

    async def wait_closed(self):
        pass


class FakeUpstream:
    """
    出站 TCP 连接的替身，可作为 open_connection 传入

    Attributes:
        calls: open_connection 的 (host, port) 调用记录
        written: 写入上游的数据块
        error: 设置后 open_connection 抛出该异常
    """

    def __init__(self, error: Exception = None):
        self.calls = []
        self.written = []
        self.error = error
        self.close_count = 0
        self.reader = None
        self.writer = None

    async def __call__(self, host, port):
        self.calls.append((host, port))
        if self.error is not None:
            raise self.error
        self.reader = asyncio.StreamReader()
        self.writer = FakeWriter(self)
        return self.reader, self.writer

    @property
    def data(self) -> bytes:
        return b''.join(self.written)


class FakeResolver:
    """
    DoH 解析器的替身

    Attributes:
        answers: 域名 -> IP 或异常
        calls: 查询过的域名
        hold: 设置后解析阻塞直到该事件被触发
    """

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.calls = []
        self.hold = None
        self.closed = False

    async def resolve(self, domain: str) -> str:
        self.calls.append(domain)
        if self.hold is not None:
            await self.hold.wait()
        answer = self.answers.get(domain)
        if answer is None:
            raise ResolutionError(f"未找到 A 记录: {domain}")
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def close(self):
        self.closed = True


@pytest.fixture
def relay_config():
    """测试用配置（默认身份，较短的心跳间隔）"""
    return RelayConfig(heartbeat_interval=5.0, connect_timeout=1.0, doh_timeout=1.0)
