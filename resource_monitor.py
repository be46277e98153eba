"""
资源监控模块 - 监控中继进程自身的资源使用情况

功能:
1. 采样进程的内存、文件描述符和网络连接数
2. 对照活跃会话数检测套接字泄漏
3. 超过阈值时记录告警
4. 生成诊断报告
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Callable, Dict, List, Optional

import psutil

logger = logging.getLogger('ws-relay-monitor')


class ResourceMonitor:
    """资源监控器"""

    def __init__(self, session_count: Callable[[], int], pid: Optional[int] = None,
                 thresholds: Optional[Dict[str, float]] = None):
        """
        初始化资源监控器

        参数:
            session_count: 返回当前活跃会话数的函数
            pid: 要监控的进程，默认当前进程
            thresholds: 覆盖默认告警阈值
        """
        self.session_count = session_count
        self.process = psutil.Process(pid or os.getpid())
        self.history: List[Dict] = []

        # 告警阈值
        self.thresholds = {
            'memory_mb': 500,        # 内存阈值: 500MB
            'num_fds': 1000,         # 文件描述符阈值
            'leak_slack': 16,        # 连接数超过 2 * 会话数 + 此值视为泄漏
        }
        if thresholds:
            self.thresholds.update(thresholds)

    def sample(self) -> Dict:
        """
        采样一次

        返回:
            Dict: 统计信息
        """
        with self.process.oneshot():
            memory_info = self.process.memory_info()
            num_fds = self.process.num_fds() if hasattr(self.process, 'num_fds') else 0
        try:
            connections = len(self.process.net_connections(kind='inet'))
        except psutil.AccessDenied:
            connections = 0

        return {
            'timestamp': datetime.now(),
            'memory_mb': memory_info.rss / 1024 / 1024,
            'num_fds': num_fds,
            'connections': connections,
            'sessions': self.session_count(),
        }

    def check_thresholds(self, stats: Dict) -> List[str]:
        """
        检查是否超过阈值

        参数:
            stats: 统计信息

        返回:
            List[str]: 告警信息列表
        """
        warnings = []

        if stats['memory_mb'] > self.thresholds['memory_mb']:
            warnings.append(f"内存使用过高: {stats['memory_mb']:.2f} MB > {self.thresholds['memory_mb']} MB")

        if stats['num_fds'] > self.thresholds['num_fds']:
            warnings.append(f"文件描述符过多: {stats['num_fds']} > {self.thresholds['num_fds']}")

        # 每个会话至多两个套接字（WebSocket + 上游），再加监听套接字等余量
        limit = 2 * stats['sessions'] + self.thresholds['leak_slack']
        if stats['connections'] > limit:
            warnings.append(f"连接数超出会话数: {stats['connections']} > {limit}，可能存在套接字泄漏")

        return warnings

    def monitor_once(self) -> Dict:
        """
        执行一次监控检查并记录告警

        返回:
            Dict: 监控结果
        """
        stats = self.sample()
        stats['warnings'] = self.check_thresholds(stats)
        self.history.append(stats)

        logger.debug(
            f"资源: 内存={stats['memory_mb']:.2f}MB, fds={stats['num_fds']}, "
            f"连接={stats['connections']}, 会话={stats['sessions']}"
        )
        for warning in stats['warnings']:
            logger.warning(warning)
        return stats

    async def run(self, interval: float):
        """
        持续监控

        参数:
            interval: 检查间隔 (秒)
        """
        logger.info(f"资源监控已启动，间隔 {interval} 秒")
        while True:
            try:
                self.monitor_once()
            except psutil.Error as e:
                logger.warning(f"资源采样失败: {e}")
            await asyncio.sleep(interval)

    def generate_report(self) -> str:
        """
        生成诊断报告

        返回:
            str: 报告内容
        """
        if not self.history:
            return "没有历史数据"

        memory_values = [h['memory_mb'] for h in self.history]
        connection_values = [h['connections'] for h in self.history]
        session_values = [h['sessions'] for h in self.history]
        warning_count = sum(len(h['warnings']) for h in self.history)

        report = [
            "=" * 60,
            "资源监控诊断报告",
            "=" * 60,
            f"监控开始时间: {self.history[0]['timestamp']}",
            f"监控结束时间: {self.history[-1]['timestamp']}",
            f"检查次数: {len(self.history)}",
            f"内存: 最大 {max(memory_values):.2f} MB, 增长 {memory_values[-1] - memory_values[0]:.2f} MB",
            f"连接数: 最大 {max(connection_values)}, 最终 {connection_values[-1]}",
            f"会话数: 最大 {max(session_values)}, 最终 {session_values[-1]}",
            f"告警次数: {warning_count}",
            "=" * 60,
        ]
        return "\n".join(report)
