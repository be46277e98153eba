#!/usr/bin/env python3
"""
WebSocket 中继服务端

版本: 1.0.0

协议:
1. 客户端向 /<uuid>（或配置的路径）发起 WebSocket 升级
2. 第一条二进制消息携带身份、目标地址和可选的首段负载
3. 服务器校验身份，必要时通过 DoH 解析域名，回复两字节确认
4. 之后 WebSocket 与目标 TCP 连接之间双向透明转发

功能:
- 同一端口提供链接页面（HTTP Basic 认证）
- 每个连接独立的心跳检测
- 可选的伴随进程和资源监控
"""

import argparse
import asyncio
import logging

from config import ConfigError, load_config, load_relay_config
from logger import LogConfig, LoggerManager
from relay import RelayServer

logger = logging.getLogger('ws-relay-server')


async def run_server(config):
    """
    启动服务器并运行到收到停止信号

    Args:
        config: 中继配置

    Raises:
        OSError: 无法绑定监听端口
    """
    server = RelayServer(config)
    await server.start()
    await server.serve_forever()


def main(argv=None):
    """主函数"""
    parser = argparse.ArgumentParser(description='WebSocket 中继服务端')
    parser.add_argument('--config', '-c', default='config.yaml', help='配置文件路径')
    parser.add_argument('--debug', '-d', action='store_true', help='启用调试模式')
    args = parser.parse_args(argv)

    # 加载配置文件并初始化日志
    try:
        config_data = load_config(args.config)
        LoggerManager().initialize(LogConfig.from_mapping(config_data.get('logging')))
        config = load_relay_config(args.config)
    except ConfigError as e:
        logging.basicConfig()
        logger.error(f"配置错误: {e}")
        return 1

    # 设置调试级别
    if args.debug:
        LoggerManager().set_level(logging.DEBUG)

    if config.web_password == 'password':
        logger.warning("正在使用默认的 WEB_PASSWORD，请在部署前修改")

    try:
        asyncio.run(run_server(config))
    except OSError as e:
        logger.error(f"无法监听 {config.host}:{config.port}: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("服务端已停止")

    return 0


if __name__ == '__main__':
    exit(main())
