"""Entry point for `python -m moltkeeper` / `moltkeeper`.

Subcommands:
    moltkeeper          Run the control-plane service (default)
    moltkeeper serve    Same as above
    moltkeeper sync     Run one sync to remote storage and exit
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys


def _serve() -> None:
    from moltkeeper.app import MoltkeeperApp

    asyncio.run(MoltkeeperApp().run())


def _sync() -> None:
    from moltkeeper.app import MoltkeeperApp

    result = asyncio.run(MoltkeeperApp().sync_once())
    print(json.dumps(result.to_dict(), indent=2))
    sys.exit(0 if result.success else 1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="moltkeeper",
        description="Control plane for a sandboxed OpenClaw gateway",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the admin API and supervise the gateway")
    sub.add_parser("sync", help="Sync agent state to remote storage once")

    args = parser.parse_args()

    match args.command:
        case "sync":
            _sync()
        case _:
            _serve()


if __name__ == "__main__":
    main()
