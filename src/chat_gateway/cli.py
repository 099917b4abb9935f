from __future__ import annotations

import argparse
import asyncio
import json

from chat_gateway.core.config import Settings, get_settings
from chat_gateway.core.container import GatewayContainer
from chat_gateway.core.logging import setup_logging
from chat_gateway.core.models import HealthStatus


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Chat gateway CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("health-check", help="Run one aggregate health check and print it as JSON")
    sub.add_parser("prune-alerts", help="Delete alert records and log rows past retention")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


async def _health_check(settings: Settings) -> int:
    container = GatewayContainer(settings.model_copy(update={"restore_connections_on_start": False}))
    await container.start(background=False)
    try:
        snapshot = await container.monitor.run()
    finally:
        await container.shutdown()
    print(json.dumps(snapshot.model_dump(mode="json"), ensure_ascii=False, indent=2))
    return 1 if snapshot.overall == HealthStatus.UNHEALTHY else 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)
    if args.command == "health-check":
        return asyncio.run(_health_check(settings))
    if args.command == "prune-alerts":
        container = GatewayContainer(settings)
        records, logs = container.alerts.prune()
        print(json.dumps({"records": records, "log_rows": logs}))
        return 0
    if args.command == "serve":
        import uvicorn

        uvicorn.run("chat_gateway.main:build_default_app", factory=True, host=args.host, port=args.port)
        return 0
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
