from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from dashboards_bridge import config_store, pusher, settings
from dashboards_bridge.baseline import BaselineError
from dashboards_bridge.context import SyncContext
from dashboards_bridge.git_ops import GitError
from dashboards_bridge.grafana_client import GrafanaError
from dashboards_bridge.poller import Poller, PollerError
from dashboards_bridge.puller import pull_and_commit
from dashboards_bridge.webhook import WebhookError, WebhookHandler, create_app

logger = logging.getLogger("grafana_gitops")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Keep Grafana dashboards in sync with a git repository")
    parser.add_argument("--config", type=Path, default=settings.CONFIG_PATH, help="Path to the configuration file")
    parser.add_argument("--log-level", help="Override log.level from the configuration")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("pull", help="Pull Grafana into the repository and commit")

    push_parser = subparsers.add_parser("push", help="Push repository changes to Grafana")
    push_parser.add_argument(
        "--delete-removed", action="store_true", help="Delete dashboards whose files were removed"
    )
    push_parser.add_argument("--push-all", action="store_true", help="Push every file once and exit")
    push_parser.add_argument("--single-shot", action="store_true", help="Poll once and exit")

    serve_parser = subparsers.add_parser("serve", help="Run the configured pusher (poller or webhook)")
    serve_parser.add_argument(
        "--delete-removed", action="store_true", help="Delete dashboards whose files were removed"
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_serve(ctx: SyncContext, delete_removed: bool, single_shot: bool = False) -> None:
    pusher_options = ctx.options.pusher
    if pusher_options is None or ctx.options.git is None:
        logger.info("The pusher needs both the git and pusher sections in the configuration, not starting")
        return
    if pusher_options.mode == "webhook":
        import uvicorn

        handler = WebhookHandler(ctx, delete_removed)
        uvicorn.run(create_app(handler), host=pusher_options.interface, port=pusher_options.port)
        return
    Poller(ctx, delete_removed, single_shot).run_forever()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        options = config_store.load_options(args.config)
    except config_store.ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    configure_logging(args.log_level or options.log_level)

    ctx = SyncContext.from_options(options)
    try:
        if args.command == "pull":
            result = pull_and_commit(ctx)
            logger.info("Pulled %d changed definitions", len(result.changes))
        elif args.command == "push" and args.push_all:
            result = pusher.push_all(ctx)
            return 1 if result.failed else 0
        elif args.command == "push":
            run_serve(ctx, args.delete_removed, args.single_shot)
        else:
            run_serve(ctx, args.delete_removed)
    except (GrafanaError, GitError, BaselineError, PollerError, WebhookError) as exc:
        logger.error("%s", exc)
        return 1
    finally:
        ctx.client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
