"""eldim command line - load config, connect backends, serve HTTPS

    eldim -c /etc/eldim/eldim.yml -j

Any configuration or startup problem is logged and exits with status 1.
"""

import ssl

import structlog
import typer
import uvicorn

from eldim.config.settings import DEFAULT_CONFIG_PATH, load_config
from eldim.errors import ConfigurationError
from eldim.main import build_coordinator, configure_logging, create_app
from eldim.version import __version__

logger = structlog.get_logger()

app = typer.Typer(add_completion=False, help="eldim - encrypted off-site backup relay")


@app.command()
def serve(
    config_path: str = typer.Option(
        DEFAULT_CONFIG_PATH, "-c", "--config", help="Path to the configuration file"
    ),
    json_logs: bool = typer.Option(False, "-j", "--json", help="Output logs in JSON"),
) -> None:
    """Start the eldim HTTPS server"""
    configure_logging(json_logs)
    logger.info("Starting eldim", version=__version__, json_logs=json_logs, config=config_path)

    try:
        config = load_config(config_path)
        logger.info("Validating parameters")
        roster = config.validate_config()
        logger.info("Configuration file validated", clients=len(roster))
        coordinator = build_coordinator(config, roster)
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=e.message)
        raise typer.Exit(code=1)

    web = create_app(config, coordinator)

    logger.info("Serving", port=config.listenport, tls_chain=config.tlschain)
    try:
        uvicorn.run(
            web,
            host="::",
            port=config.listenport,
            ssl_certfile=config.tlschain,
            ssl_keyfile=config.tlskey,
            ssl_version=ssl.PROTOCOL_TLS_SERVER,
            server_header=False,
            date_header=False,
            timeout_keep_alive=180,
            log_level="warning",
        )
    except (OSError, ssl.SSLError) as e:
        logger.error("Failed to start HTTP Server", error=str(e))
        raise typer.Exit(code=1)

    logger.info("eldim quitting")


def main():
    app()


if __name__ == "__main__":
    main()
