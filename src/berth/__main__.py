"""Entry point for `python -m berth`.

Subcommands:
    berth health                    Serve /health and /healthz
    berth run <folder> <prompt>     Run one prompt in the group's container
    berth send <folder> <text>      Queue a follow-up turn for a running container
    berth close <folder>            Ask a running container to exit
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def _health(host: str | None, port: int | None) -> None:
    from berth.http_server import SettingsHealthDeps, start_health_server

    async def serve() -> None:
        runner = await start_health_server(SettingsHealthDeps(), host, port)
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


def _run(folder: str, prompt: str, session_id: str | None) -> None:
    from berth.config import get_settings
    from berth.container_runner import run_container_agent
    from berth.types import ContainerInput, ContainerOutput

    group = next(
        (g for g in get_settings().registered_groups().values() if g.folder == folder),
        None,
    )
    if group is None:
        print(f"Error: no group registered with folder {folder!r}", file=sys.stderr)
        sys.exit(1)

    async def on_output(output: ContainerOutput) -> None:
        if output.status == "success":
            if output.result:
                print(output.result, flush=True)
        else:
            print(f"[{output.status}] {output.result or ''}", file=sys.stderr, flush=True)

    input_data = ContainerInput(
        prompt=prompt,
        group_folder=group.folder,
        chat_jid=group.jid,
        is_main=False,
        session_id=session_id,
    )
    final = asyncio.run(
        run_container_agent(group, input_data, lambda proc, name: None, on_output)
    )
    if final.error:
        print(f"[{final.status}] {final.error}", file=sys.stderr)
    if final.new_session_id:
        print(f"session: {final.new_session_id}", file=sys.stderr)
    sys.exit(0 if final.status == "success" else 1)


def _send(folder: str, text: str) -> None:
    from berth.ipc import send_ipc_message

    path = asyncio.run(send_ipc_message(folder, text))
    print(path.name)


def _close(folder: str) -> None:
    from berth.ipc import request_close

    request_close(folder)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="berth",
        description="Run agent sessions in isolated containers",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    health = sub.add_parser("health", help="Serve the health endpoint")
    health.add_argument("--host", default=None, help="Bind address (default: [health] host)")
    health.add_argument("--port", type=int, default=None, help="Port (default: [health] port)")

    run = sub.add_parser("run", help="Run one prompt in a group's container")
    run.add_argument("folder")
    run.add_argument("prompt")
    run.add_argument("--session", default=None, help="Session id to resume")

    send = sub.add_parser("send", help="Queue a follow-up message")
    send.add_argument("folder")
    send.add_argument("text")

    close = sub.add_parser("close", help="Ask the group's container to exit")
    close.add_argument("folder")

    args = parser.parse_args()

    match args.command:
        case "health":
            _health(args.host, args.port)
        case "run":
            _run(args.folder, args.prompt, args.session)
        case "send":
            _send(args.folder, args.text)
        case "close":
            _close(args.folder)


if __name__ == "__main__":
    main()
