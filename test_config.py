"""
配置加载测试
"""

import pytest

from config import ConfigError, RelayConfig, load_config, load_relay_config
from logger import LogConfig
from protocol import AddressKind


def test_defaults():
    config = load_relay_config(env={})
    assert config.port == 7860
    assert config.web_username == 'admin'
    assert config.web_password == 'password'
    assert config.doh_server == 'https://dns.nextdns.io/7df33f'
    assert config.expected_path == '/37a0bd7c8b9f46938916bd1e2da0a817'
    assert config.expected_identity == bytes.fromhex('37a0bd7c8b9f46938916bd1e2da0a817')
    assert not config.gate_auth
    assert config.page_auth
    assert config.address_types == {1: AddressKind.IPV4, 3: AddressKind.DOMAIN, 4: AddressKind.IPV6}


def test_environment_overrides():
    env = {
        'PORT': '8443',
        'UUID': 'AAAAAAAA-BBBB-CCCC-DDDD-EEEEEEEEEEEE',
        'WEB_USERNAME': 'ops',
        'WEB_PASSWORD': 'hunter2',
        'DOH_SERVER': 'https://cloudflare-dns.com/dns-query',
        'GATE_AUTH': 'true',
        'HEARTBEAT_INTERVAL': '15',
        'WS_PATH': '',
    }
    config = load_relay_config(env=env)
    assert config.port == 8443
    assert config.identity_hex == 'aaaaaaaabbbbccccddddeeeeeeeeeeee'
    assert config.expected_path == '/aaaaaaaabbbbccccddddeeeeeeeeeeee'
    assert config.web_username == 'ops'
    assert config.gate_auth is True
    assert config.heartbeat_interval == 15.0
    assert config.ws_path is None


def test_file_values_and_environment_precedence(tmp_path):
    """环境变量优先于配置文件"""
    path = tmp_path / 'config.yaml'
    path.write_text(
        "relay:\n"
        "  port: 9000\n"
        "  ws_path: /tunnel\n"
        "  page_auth: false\n"
        "  address_types: {1: ipv4, 2: domain, 3: ipv6}\n"
        "logging:\n"
        "  level: DEBUG\n",
        encoding='utf-8'
    )
    config = load_relay_config(str(path), env={'PORT': '9100'})
    assert config.port == 9100
    assert config.expected_path == '/tunnel'
    assert config.page_auth is False
    assert config.address_types[2] == AddressKind.DOMAIN

    log_config = LogConfig.from_mapping(load_config(str(path)).get('logging'), env={})
    assert log_config.level == 'DEBUG'


def test_missing_file_is_empty(tmp_path):
    assert load_config(str(tmp_path / 'absent.yaml')) == {}
    assert load_config(None) == {}


def test_malformed_yaml_raises(tmp_path):
    path = tmp_path / 'bad.yaml'
    path.write_text("relay: [unclosed\n", encoding='utf-8')
    with pytest.raises(ConfigError):
        load_config(str(path))


@pytest.mark.parametrize('env', [
    {'UUID': 'not-a-uuid'},
    {'UUID': '37a0bd7c'},
    {'PORT': 'http'},
    {'PORT': '70000'},
    {'DOH_TIMEOUT': '0'},
    {'DOH_SERVER': 'dns.example'},
])
def test_invalid_values_rejected(env):
    with pytest.raises(ConfigError):
        load_relay_config(env=env)


def test_address_table_needs_every_kind():
    with pytest.raises(ConfigError):
        RelayConfig(address_types={1: AddressKind.IPV4, 3: AddressKind.DOMAIN})
