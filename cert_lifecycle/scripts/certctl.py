#!/usr/bin/env python3
"""Bootstrap, issue, and renew the reverse proxy's TLS certificate."""

import argparse
import sys
from pathlib import Path

from cert_lifecycle.lib.cert_utils import parse_alt_names
from cert_lifecycle.lib.config import LifecycleConfig, resolve_config, resolve_domain
from cert_lifecycle.lib.errors import CertLifecycleError, ConfigError
from cert_lifecycle.lib.logging_config import LOGGER, configure
from cert_lifecycle.lib.models import IssuanceRequest, LifecycleResult
from cert_lifecycle.lib.orchestrator import LifecycleOrchestrator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="certctl",
        description="Manage the reverse proxy TLS certificate (self-signed bootstrap, Let's Encrypt)",
    )
    parser.add_argument("--project-dir", type=Path, help="Compose project directory (default: cwd)")
    parser.add_argument("--certs-dir", type=Path, help="Certificate directory (default: nginx/certs)")
    parser.add_argument("--webroot-dir", type=Path, help="ACME webroot (default: certbot/www)")
    parser.add_argument("--logs-dir", type=Path, help="ACME log directory (default: certbot/logs)")
    parser.add_argument("--config", type=Path, help="JSON configuration file")
    parser.add_argument("--verbose", action="store_true", help="Log external commands")

    commands = parser.add_subparsers(dest="command", required=True)

    bootstrap = commands.add_parser("bootstrap", help="Generate a self-signed certificate if none exists")
    bootstrap.add_argument("domain", nargs="?", help="Primary domain (or LETSENCRYPT_DOMAIN)")
    bootstrap.add_argument("alt_names", nargs="?", default="", help="Extra SAN names, comma-separated")
    bootstrap.add_argument("days", nargs="?", help="Validity in days (default: 365)")
    bootstrap.add_argument("--force", action="store_true", help="Replace an existing certificate")

    issue = commands.add_parser("issue", help="Issue a Let's Encrypt certificate and install it")
    issue.add_argument("domain", nargs="?", help="Primary domain (or LETSENCRYPT_DOMAIN)")
    issue.add_argument("email", nargs="?", help="Contact email (or LETSENCRYPT_EMAIL)")
    issue.add_argument("alt_domains", nargs="*", help="Additional domains on the same certificate")
    issue.add_argument(
        "--staging",
        action="store_const",
        const=True,
        help="Use the Let's Encrypt staging endpoint (or LETSENCRYPT_STAGING=true)",
    )

    renew = commands.add_parser("renew", help="Renew due certificates and install the domain's")
    renew.add_argument("domain", nargs="?", help="Primary domain (or LETSENCRYPT_DOMAIN)")

    return parser


def _config_from_args(args: argparse.Namespace) -> LifecycleConfig:
    overrides = {
        "project_dir": args.project_dir,
        "certs_dir": args.certs_dir,
        "webroot_dir": args.webroot_dir,
        "logs_dir": args.logs_dir,
        "staging": getattr(args, "staging", None),
    }
    return resolve_config(overrides, config_file=args.config)


def _report(result: LifecycleResult) -> None:
    LOGGER.info("Final state: %s", result.state.value)
    if result.renewal is not None and result.renewal.is_noop:
        LOGGER.info("Renewal: nothing was due")
    if result.bundle is not None:
        LOGGER.info("  Domain: %s", result.bundle.domain)
        LOGGER.info("  Issuer: %s", result.bundle.issuer.value)
        LOGGER.info("  Expires: %s", result.bundle.not_after.isoformat())
        LOGGER.info("  Serial: %s", result.bundle.serial)
        LOGGER.info("  Cert: %s", result.bundle.fullchain_path)


def run_command(args: argparse.Namespace, orchestrator: LifecycleOrchestrator) -> LifecycleResult:
    """Dispatch a parsed subcommand to the orchestrator.

    Raises:
        CertLifecycleError: On any lifecycle failure
    """
    config = orchestrator.config
    domain = resolve_domain(args.domain)

    if args.command == "bootstrap":
        return orchestrator.bootstrap(
            domain,
            extra_names=parse_alt_names(args.alt_names),
            days=args.days,
            force=args.force,
        )

    if args.command == "issue":
        email = args.email or config.contact_email
        if not email:
            raise ConfigError("a contact email is required (argument or LETSENCRYPT_EMAIL)")
        request = IssuanceRequest.create(
            primary_domain=domain,
            contact_email=email,
            alternative_names=args.alt_domains,
            use_staging_endpoint=config.staging,
        )
        result = orchestrator.issue(request)
        LOGGER.info("Done: browse to https://%s (by name, not IP)", request.primary_domain)
        return result

    return orchestrator.renew(domain)


def main(argv: list[str] | None = None) -> int:
    """Run one certctl subcommand.

    Returns:
        Exit code (0 for success, the error's exit code otherwise)
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure(verbose=args.verbose, command=args.command)

    try:
        config = _config_from_args(args)
        orchestrator = LifecycleOrchestrator.from_config(config)
        result = run_command(args, orchestrator)
        _report(result)
        return 0

    except CertLifecycleError as e:
        LOGGER.error("%s failed: %s", args.command, e.diagnostic())
        return e.exit_code

    except Exception as e:
        LOGGER.error("%s failed unexpectedly: %s", args.command, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
