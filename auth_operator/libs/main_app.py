"""
Main Application Module

Process entry point: parses arguments, loads configuration, wires the
operator context, starts the authorization webhook and runs kopf.
"""

import argparse
import logging
import sys
import threading
from typing import Optional

import kopf
import uvicorn
from prometheus_client import start_http_server

from .authorizer.app import create_app
from .core.auth import ClusterAuth
from .core.config import ConfigManager
from .core.exceptions import AuthenticationError, ConfigurationError
from .core.utils import disable_ssl_warnings, setup_logging
from . import controllers
from .controllers.context import OperatorContext

logger = logging.getLogger(__name__)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auth-operator",
        description="Generate RBAC from RoleDefinitions and BindDefinitions and serve "
                    "WebhookAuthorizer decisions",
    )
    parser.add_argument("--config", help="Path to the YAML configuration file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--namespace", help="Restrict kopf to one namespace (default: cluster-wide)")
    parser.add_argument("--no-webhook", action="store_true", help="Do not start the authorization webhook")
    parser.add_argument("--webhook-port", type=int, help="Port of the authorization webhook")
    return parser


def start_webhook_server(ctx: OperatorContext, host: str, port: int,
                         cert_file: Optional[str] = None, key_file: Optional[str] = None) -> threading.Thread:
    """
    Serve the authorization webhook from a daemon thread

    Returns:
        The server thread
    """
    app = create_app(ctx.decision_engine, ctx.policy_index)
    server_config = uvicorn.Config(
        app, host=host, port=port,
        ssl_certfile=cert_file, ssl_keyfile=key_file,
        log_level="warning", access_log=False,
    )
    server = uvicorn.Server(server_config)
    thread = threading.Thread(target=server.run, name="authorization-webhook", daemon=True)
    thread.start()
    scheme = "https" if cert_file else "http"
    logger.info(f"Authorization webhook listening on {scheme}://{host}:{port}")
    return thread


def main():
    """Main entry point"""
    parser = create_argument_parser()
    args = parser.parse_args()

    config_manager = ConfigManager()
    try:
        config_manager.load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    debug = args.debug or config_manager.get_value('global.debug', False)
    setup_logging(debug)

    skip_tls = config_manager.get_value('cluster.skip_tls', False)
    if skip_tls:
        disable_ssl_warnings()

    try:
        api_client = ClusterAuth(skip_tls=skip_tls).configure_auth(
            config_manager.get_value('cluster.api_url'),
            config_manager.get_value('cluster.token'),
        )
    except AuthenticationError as e:
        logger.error(f"Authentication failed: {e}")
        sys.exit(1)

    ctx = OperatorContext.build(config_manager, api_client)
    logger.debug(f"Registered handlers from {controllers.__name__}")

    if not args.no_webhook and config_manager.get_value('webhook.enabled', True):
        start_webhook_server(
            ctx,
            host=config_manager.get_value('webhook.host'),
            port=args.webhook_port or config_manager.get_value('webhook.port'),
            cert_file=config_manager.get_value('webhook.cert_file'),
            key_file=config_manager.get_value('webhook.key_file'),
        )

    metrics_port = config_manager.get_value('metrics.port', 0)
    if metrics_port:
        # Also served by the webhook on /metrics
        start_http_server(metrics_port)
        logger.info(f"Metrics listening on :{metrics_port}")

    try:
        kopf.run(
            standalone=True,
            clusterwide=not args.namespace,
            namespaces=[args.namespace] if args.namespace else None,
            memo=kopf.Memo(context=ctx),
        )
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(1)


if __name__ == "__main__":
    main()
