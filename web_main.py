#!/usr/bin/env python3
"""
漫画阅读器 - Web 服务启动器

使用方法:
    python web_main.py                    # 启动Web服务器，默认端口5000
    python web_main.py --port 8080       # 指定端口
    python web_main.py --host 0.0.0.0    # 指定主机地址
    python web_main.py --debug           # 开发模式
"""

import argparse
import sys
import threading

import uvicorn

from web.utils.port_manager import PortManager
from utils import manga_logger as log


def parse_arguments(argv=None):
    """解析命令行参数"""
    parser = argparse.ArgumentParser(
        description="MangaDex 漫画阅读器后端",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  python web_main.py                    # 默认配置启动
  python web_main.py --port 8080       # 指定端口8080
  python web_main.py --host 0.0.0.0    # 允许外部访问
  python web_main.py --debug           # 开发模式，自动重载
        """
    )

    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="服务器主机地址 (默认: 127.0.0.1)"
    )

    parser.add_argument(
        "--port",
        type=int,
        default=5000,
        help="服务器端口 (默认: 5000)"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="启用调试模式，代码变更时自动重载"
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="工作进程数量 (默认: 1)"
    )

    parser.add_argument(
        "--auto-port",
        action="store_true",
        help="自动选择可用端口"
    )

    parser.add_argument(
        "--kill-port",
        action="store_true",
        help="如果端口被占用，自动杀死占用进程"
    )

    return parser.parse_args(argv)


def resolve_port(args) -> int:
    """按参数处理端口占用，返回最终使用的端口"""
    if PortManager.is_port_available(args.port, args.host):
        return args.port

    if args.auto_port:
        port = PortManager.find_available_port(args.port, args.port + 100, args.host)
        if port is None:
            raise SystemExit(f"❌ 无法找到可用端口 (范围: {args.port}-{args.port + 100})")
        print(f"🔍 自动选择可用端口: {port}")
        return port

    if args.kill_port and PortManager.kill_port_process(args.port):
        print(f"✅ 成功释放端口 {args.port}")
        return args.port

    raise SystemExit(f"❌ 端口 {args.port} 被占用\n"
                     f"💡 提示: 使用 --kill-port 参数自动杀死占用进程，或使用 --auto-port 自动选择可用端口")


def announce_when_ready(host: str, port: int):
    """后台等待服务就绪后输出访问地址"""
    display_host = "127.0.0.1" if host == "0.0.0.0" else host

    def wait():
        if PortManager.wait_for_server(f"http://{display_host}:{port}/health"):
            print(f"✅ 服务已就绪: http://{display_host}:{port}")

    threading.Thread(target=wait, daemon=True).start()


def main(argv=None):
    """主函数"""
    print("🌐 MangaDex 漫画阅读器 - 后端启动器")
    print("=" * 50)

    args = parse_arguments(argv)
    if args.debug:
        log.set_level("DEBUG")
    port = resolve_port(args)

    print(f"🚀 启动Web服务器...")
    print(f"   主机地址: {args.host}")
    print(f"   端口: {port}")
    print(f"   调试模式: {'开启' if args.debug else '关闭'}")
    print("=" * 50)
    print("按 Ctrl+C 停止服务器")

    announce_when_ready(args.host, port)
    try:
        uvicorn.run(
            "web.app:app",
            host=args.host,
            port=port,
            reload=args.debug,
            workers=args.workers if not args.debug else 1,
            access_log=args.debug
        )
    except KeyboardInterrupt:
        print("\n👋 服务器已停止")
    except OSError as e:
        log.error(f"服务器启动失败: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
