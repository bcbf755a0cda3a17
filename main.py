#!/usr/bin/env python3
"""
BrowserPilot - Main Entry Point

Usage:
    # Run API server
    python main.py server

    # Run the selective proxy on its own
    python main.py proxy

    # Kill Chromium processes left behind by a previous run (server stopped)
    python main.py cleanup
"""

import sys
import asyncio
import argparse

from api.config import config
from api.logging_config import logger


def run_server(host: str = "0.0.0.0", port: int = 3456, reload: bool = False):
    """Run the FastAPI server."""
    import uvicorn

    logger.info(f"Starting server on {host}:{port}")
    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


async def run_proxy(host: str, port: int):
    """Serve the selective proxy until interrupted."""
    from core.proxy import RouteTable, SelectiveProxy

    route_table = RouteTable(
        tunnel_domains=list(config.TUNNEL_DOMAINS),
        tunnel_host=config.TUNNEL_PROXY_HOST,
        tunnel_port=config.TUNNEL_PROXY_PORT,
    )
    proxy = SelectiveProxy(route_table, host=host, port=port)
    await proxy.start()
    if proxy.existing:
        logger.info(f"A proxy is already listening on {host}:{port}, nothing to do")
        return

    logger.info(f"Tunnel domains: {', '.join(route_table.tunnel_domains) or '(none)'}")
    try:
        await asyncio.Event().wait()
    finally:
        await proxy.stop()
        logger.info(f"Proxy stats: {proxy.stats}")


async def server_is_up(host: str, port: int, timeout: float = 2.0) -> bool:
    """True when a BrowserPilot server answers /health on host:port."""
    import aiohttp

    if host in ("0.0.0.0", "::", ""):
        host = "127.0.0.1"
    try:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(f"http://{host}:{port}/health") as resp:
                return resp.status == 200
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
        return False


def run_cleanup(host: str, port: int, force: bool = False) -> int:
    """
    Kill every Chromium started with the service profile prefix.

    Outside a running server no browser is attributed to a task, so this
    would also kill a live server's browsers. Refuses (returns -1) when a
    server answers on host:port, unless forced.
    """
    from core.cleanup import cleanup_orphaned_browsers

    if not force and asyncio.run(server_is_up(host, port)):
        logger.warning(
            f"A server is running on {host}:{port}; its browsers would be killed. "
            "Stop it first or pass --force."
        )
        return -1

    killed = cleanup_orphaned_browsers(set())
    logger.info(f"Killed {killed} orphaned browser processes")
    return killed


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="BrowserPilot - headless browser task execution service"
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Server command
    server_parser = subparsers.add_parser('server', help='Run API server')
    server_parser.add_argument('--host', default=config.HOST, help='Host to bind to')
    server_parser.add_argument('--port', type=int, default=config.PORT, help='Port to bind to')
    server_parser.add_argument('--reload', action='store_true', help='Enable auto-reload')

    # Proxy command
    proxy_parser = subparsers.add_parser('proxy', help='Run the selective proxy standalone')
    proxy_parser.add_argument('--host', default=config.LOCAL_PROXY_HOST, help='Host to bind to')
    proxy_parser.add_argument('--port', type=int, default=config.LOCAL_PROXY_PORT, help='Port to bind to')

    # Cleanup command
    cleanup_parser = subparsers.add_parser(
        'cleanup',
        help='Kill every browser using the service profile prefix (refuses while a server is up)',
    )
    cleanup_parser.add_argument('--host', default=config.HOST, help='Server host to check')
    cleanup_parser.add_argument('--port', type=int, default=config.PORT, help='Server port to check')
    cleanup_parser.add_argument('--force', action='store_true', help='Kill even if a server answers')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    problems = config.validate()
    for problem in problems:
        logger.warning(f"Config: {problem}")

    if args.command == 'server':
        run_server(args.host, args.port, args.reload)

    elif args.command == 'proxy':
        try:
            asyncio.run(run_proxy(args.host, args.port))
        except KeyboardInterrupt:
            logger.info("Proxy stopped")

    elif args.command == 'cleanup':
        killed = run_cleanup(args.host, args.port, args.force)
        sys.exit(1 if killed < 0 else 0)


if __name__ == "__main__":
    main()
