"""
端口管理工具
用于检查端口占用情况、自动选择可用端口以及等待服务就绪
"""

import os
import signal
import socket
import subprocess
import sys
import time
from typing import Optional

import requests

from utils import manga_logger as log


class PortManager:
    """端口管理器"""

    @staticmethod
    def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
        """尝试绑定端口，能绑定即视为可用"""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((host, port))
            except OSError:
                return False
        return True

    @staticmethod
    def find_available_port(start_port: int = 8000, end_port: int = 8100, host: str = "127.0.0.1") -> Optional[int]:
        """
        查找可用端口

        Returns:
            Optional[int]: 可用端口号，如果没有找到则返回None
        """
        for port in range(start_port, end_port + 1):
            if PortManager.is_port_available(port, host):
                return port
        return None

    @staticmethod
    def get_port_process_pid(port: int) -> Optional[int]:
        """获取占用端口的进程PID（依赖 lsof，Windows 下不支持）"""
        if sys.platform == "win32":
            return None
        try:
            result = subprocess.run(
                ["lsof", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"],
                capture_output=True,
                text=True,
                timeout=10
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning(f"查询端口 {port} 占用进程失败: {e}")
            return None
        pids = result.stdout.split()
        return int(pids[0]) if pids else None

    @staticmethod
    def kill_port_process(port: int) -> bool:
        """终止占用端口的进程"""
        pid = PortManager.get_port_process_pid(port)
        if pid is None:
            return False
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            log.error(f"终止进程 {pid} 失败: {e}")
            return False
        log.info(f"已终止占用端口 {port} 的进程 {pid}")
        return True

    @staticmethod
    def wait_for_server(url: str, timeout: float = 15.0, interval: float = 0.5) -> bool:
        """轮询健康检查接口，直到服务可访问或超时"""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                if requests.get(url, timeout=1).status_code == 200:
                    return True
            except requests.RequestException:
                pass
            time.sleep(interval)
        log.warning(f"等待服务就绪超时: {url}")
        return False
