"""
p12relay.cli
~~~~~~~~~~~~
Command line entry point.  Every flag can also be given as a
``P12RELAY_<FLAG>`` environment variable (or in a ``.env`` file), except
the passphrase, which is only ever read from a hidden terminal prompt.
"""

from __future__ import annotations

import click
from dotenv import load_dotenv

from . import __version__
from .config import ENV_PREFIX, ConfigError, load_config
from .core import run_proxy
from .logger import AccessLog, setup_logging
from .tls import IdentityError, client_context


def _env(flag: str) -> str:
    return f"{ENV_PREFIX}_{flag}"


@click.command(
    context_settings={"help_option_names": ["-h", "--help"]},
    epilog="Usage: p12relay --cert /path/to/my.p12 [options]  or  p12relay --no-mtls [options]",
)
@click.option("--cert", "cert_path", envvar=_env("CERT"), default="", help="Path to the .p12 certificate file")
@click.option(
    "--cacert",
    "cacert_path",
    envvar=_env("CACERT"),
    default="",
    help="Path to the CA certificate file for server verification",
)
@click.option("--host", "listen_host", envvar=_env("HOST"), default="0.0.0.0", show_default=True, help="Address to listen on")
@click.option("--port", "listen_port", envvar=_env("PORT"), type=int, default=5000, show_default=True, help="Port to listen on")
@click.option("--insecure", envvar=_env("INSECURE"), is_flag=True, help="Skip verification of the target server's certificate")
@click.option("--no-mtls", envvar=_env("NO_MTLS"), is_flag=True, help="Run without mutual TLS (no .p12 required)")
@click.option(
    "--log-level",
    envvar=_env("LOG_LEVEL"),
    default="info",
    show_default=True,
    help="Log level (debug, info, warn, error)",
)
@click.option("--plain", envvar=_env("PLAIN"), is_flag=True, help="Disable pretty printing (colors, etc.)")
@click.option(
    "--timeout",
    envvar=_env("TIMEOUT"),
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Timeout in seconds for requests to the origin (default: none)",
)
@click.option("--log-file", "log_path", envvar=_env("LOG_FILE"), default="", help="Also write JSON-lines access records here")
@click.version_option(__version__, prog_name="p12relay")
def main(**options) -> None:
    """p12relay is a forward proxy for mTLS origins using password-encrypted .p12 certificates."""
    try:
        cfg = load_config(**options)
    except ConfigError as e:
        raise click.UsageError(str(e)) from None

    log = setup_logging(cfg.level, pretty=not cfg.plain)
    access = AccessLog(log, cfg.log_path or None)

    passphrase = None
    if not cfg.no_mtls:
        passphrase = click.prompt(
            f"Enter passphrase for {cfg.cert_path}",
            hide_input=True,
            default="",
            show_default=False,
            prompt_suffix=": ",
        )

    try:
        ssl_context = client_context(cfg, passphrase)
    except IdentityError as e:
        raise click.ClickException(f"Error loading TLS identity: {e}") from None

    try:
        run_proxy(cfg, ssl_context, access)
    except OSError as e:
        raise click.ClickException(f"cannot listen on {cfg.listen_host}:{cfg.listen_port}: {e}") from None


def cli() -> None:
    load_dotenv()
    main()
