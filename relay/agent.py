"""
伴随进程模块

服务器启动时可选地以 shell 方式运行一个后台命令（例如 ./agent.sh），
记录其退出状态，服务器关闭时终止它。启动失败只记录日志，不影响中继。
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger('ws-relay-agent')


class AgentProcess:
    """
    伴随进程

    Attributes:
        command: shell 命令
        process: 运行中的子进程
        returncode: 退出码（未退出为 None）
    """

    def __init__(self, command: str, stop_timeout: float = 5.0):
        self.command = command
        self.stop_timeout = stop_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self._watcher: Optional[asyncio.Task] = None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    async def start(self) -> bool:
        """
        启动伴随进程

        Returns:
            bool: 是否启动成功
        """
        try:
            self.process = await asyncio.create_subprocess_shell(
                self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"启动伴随进程失败: {self.command}: {e}")
            return False

        logger.info(f"伴随进程已启动: pid={self.process.pid}, command={self.command}")
        self._watcher = asyncio.ensure_future(self._watch())
        return True

    async def _watch(self):
        returncode = await self.process.wait()
        if returncode == 0:
            logger.info(f"伴随进程已退出: pid={self.process.pid}")
        else:
            logger.warning(f"伴随进程异常退出: pid={self.process.pid}, returncode={returncode}")

    async def stop(self):
        """终止伴随进程（超时后强制结束）"""
        if self.process is None or self.process.returncode is not None:
            return

        logger.info(f"终止伴随进程: pid={self.process.pid}")
        try:
            self.process.terminate()
            await asyncio.wait_for(self.process.wait(), timeout=self.stop_timeout)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            logger.warning(f"伴随进程未在 {self.stop_timeout} 秒内退出，强制结束")
            self.process.kill()
            await self.process.wait()

        if self._watcher is not None:
            await self._watcher
