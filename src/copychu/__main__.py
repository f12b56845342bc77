# copychu/__main__.py
from __future__ import annotations

import argparse
import json
import sys

"""
Copychu orchestrator CLI

Commands:

  1) Start the orchestrator server (blocking)
       python -m copychu serve --workspace ./copychu_data --port 3000

  2) Quota record, for stage workers that are not written in Python
       python -m copychu quota status [--json]
       python -m copychu quota record generateImage

     Both read COPYCHU_QUOTA__PATH / COPYCHU_WORKSPACE, which the orchestrator
     passes to every stage process, so they hit the same durable record.
"""


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from copychu.config.loader import load_settings
    from copychu.server.app_factory import create_app

    cfg = load_settings(args.workspace)
    host = args.host or cfg.server.host
    port = args.port if args.port is not None else cfg.server.port

    app = create_app(workspace=args.workspace, cfg=cfg, log_level=args.log_level)
    print(f"http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=args.uvicorn_log_level)
    return 0


def _quota(args: argparse.Namespace) -> int:
    from copychu.contracts.errors.errors import QuotaPersistenceError
    from copychu.tools.quota import get_quota_guard

    guard = get_quota_guard()
    if args.quota_cmd == "status":
        if args.json:
            print(json.dumps(guard.snapshot(), indent=2))
        else:
            print(guard.summary())
        return 0

    if args.quota_cmd == "record":
        try:
            result = guard.record_call(args.label)
        except QuotaPersistenceError as exc:
            print(f"quota record not saved: {exc}", file=sys.stderr)
            return 1
        print(json.dumps(result.to_dict()))
        return 0

    return 2


def main(argv: list[str] | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]

    parser = argparse.ArgumentParser(prog="copychu")
    sub = parser.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the orchestrator server (blocking).")
    serve.add_argument("--workspace", default=None)
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--log-level", default="info")
    serve.add_argument("--uvicorn-log-level", default="warning")

    quota = sub.add_parser("quota", help="Inspect or update the daily API call budget.")
    quota_sub = quota.add_subparsers(dest="quota_cmd", required=True)
    status = quota_sub.add_parser("status", help="Print today's usage.")
    status.add_argument("--json", action="store_true")
    record = quota_sub.add_parser("record", help="Count one call against today's budget.")
    record.add_argument("label", help="Name of the calling function, e.g. generateImage.")

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        return _serve(args)
    if args.cmd == "quota":
        return _quota(args)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
