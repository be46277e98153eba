"""
连接闸门和链接页面测试

使用 websockets 自带的 Request / ServerProtocol 构造请求和响应，
不需要真实套接字。
"""

from websockets.datastructures import Headers
from websockets.headers import build_authorization_basic
from websockets.http11 import Request
from websockets.server import ServerProtocol

from config import RelayConfig
from relay.gate import ConnectionGate, check_credentials
from relay.page import LinkPage

EXPECTED_PATH = '/37a0bd7c8b9f46938916bd1e2da0a817'


class FakeHTTPConnection:
    """只提供 respond / remote_address 的连接替身"""

    def __init__(self):
        self.remote_address = ('127.0.0.1', 40000)
        self.protocol = ServerProtocol()

    def respond(self, status, text):
        return self.protocol.reject(status, text)


def upgrade_request(path, *extra):
    headers = Headers([
        ('Host', 'relay.example:7860'),
        ('Upgrade', 'websocket'),
        ('Connection', 'Upgrade'),
        ('Sec-WebSocket-Key', 'dGhlIHNhbXBsZSBub25jZQ=='),
        ('Sec-WebSocket-Version', '13'),
    ] + list(extra))
    return Request(path, headers)


def page_request(*extra):
    return Request('/', Headers([('Host', 'relay.example:7860')] + list(extra)))


def make_gate(**overrides):
    config = RelayConfig(**overrides)
    return ConnectionGate(config, LinkPage(config))


def test_expected_path_accepted():
    gate = make_gate()
    assert gate.check(EXPECTED_PATH) is None
    assert gate.check(EXPECTED_PATH + '?ed=2048') is None
    assert gate.process_request(FakeHTTPConnection(), upgrade_request(EXPECTED_PATH)) is None
    assert gate.rejected == 0


def test_wrong_path_rejected_with_404():
    gate = make_gate()
    response = gate.process_request(FakeHTTPConnection(), upgrade_request('/wrong'))
    assert response.status_code == 404
    assert gate.rejected == 1
    assert gate.check(EXPECTED_PATH + '/').status == 404


def test_fixed_ws_path():
    gate = make_gate(ws_path='tunnel')
    assert gate.check('/tunnel') is None
    assert gate.check(EXPECTED_PATH).status == 404


def test_gate_auth_required_when_enabled():
    """启用 gate_auth 后: 缺失或错误 401，格式错误 400，正确放行"""
    gate = make_gate(gate_auth=True, web_username='alice', web_password='s3cret')
    connection = FakeHTTPConnection()

    response = gate.process_request(connection, upgrade_request(EXPECTED_PATH))
    assert response.status_code == 401
    assert response.headers['WWW-Authenticate'] == 'Basic realm="Node"'

    wrong = ('Authorization', build_authorization_basic('alice', 'nope'))
    assert gate.process_request(connection, upgrade_request(EXPECTED_PATH, wrong)).status_code == 401

    malformed = ('Authorization', 'Basic !!!not-base64')
    assert gate.process_request(connection, upgrade_request(EXPECTED_PATH, malformed)).status_code == 400

    right = ('Authorization', build_authorization_basic('alice', 's3cret'))
    assert gate.process_request(connection, upgrade_request(EXPECTED_PATH, right)) is None
    assert gate.process_request(connection, upgrade_request(EXPECTED_PATH, right, right)).status_code == 400

    assert gate.rejected == 4


def test_gate_auth_off_ignores_credentials():
    gate = make_gate()
    wrong = ('Authorization', build_authorization_basic('mallory', 'guess'))
    assert gate.process_request(FakeHTTPConnection(), upgrade_request(EXPECTED_PATH, wrong)) is None


def test_check_credentials():
    assert check_credentials(None, 'admin', 'password').status == 401
    assert check_credentials('Bearer abc', 'admin', 'password').status == 400
    assert check_credentials(build_authorization_basic('admin', 'password'), 'admin', 'password') is None


def test_page_requires_basic_auth():
    gate = make_gate()
    response = gate.process_request(FakeHTTPConnection(), page_request())
    assert response.status_code == 401
    assert response.headers['WWW-Authenticate'] == 'Basic realm="Node"'


def test_page_shows_share_link():
    gate = make_gate()
    auth = ('Authorization', build_authorization_basic('admin', 'password'))
    response = gate.process_request(FakeHTTPConnection(), page_request(auth))

    assert response.status_code == 200
    assert response.headers['Content-Type'] == 'text/html; charset=utf-8'
    body = response.body.decode('utf-8')
    assert 'vless://37a0bd7c-8b9f-4693-8916-bd1e2da0a817@relay.example:7860' in body
    assert 'path=%2F37a0bd7c8b9f46938916bd1e2da0a817&amp;security=none' in body
    assert gate.rejected == 0


def test_page_without_auth_when_disabled():
    gate = make_gate(page_auth=False)
    response = gate.process_request(FakeHTTPConnection(), page_request())
    assert response.status_code == 200


def test_build_link():
    page = LinkPage(RelayConfig(ws_path='/ws', link_scheme='vless'))
    assert page.build_link('node.example:443') == (
        'vless://37a0bd7c-8b9f-4693-8916-bd1e2da0a817@node.example:443'
        '?path=%2Fws&security=none&encryption=none&type=ws#node-ws-node.example:443'
    )


def test_page_escapes_host_header():
    page = LinkPage(RelayConfig())
    html = page.render('<script>x</script>')
    assert '<script>x</script>' not in html
    assert '&lt;script&gt;' in html


def test_authority_form_path_rejected():
    """以 // 开头的请求目标不会被当作主机名加路径"""
    gate = make_gate()
    assert gate.check('//evil' + EXPECTED_PATH).status == 404
    assert gate.check('//evil' + EXPECTED_PATH + '?ed=2048').status == 404
    response = gate.process_request(FakeHTTPConnection(), upgrade_request('//evil' + EXPECTED_PATH))
    assert response.status_code == 404
