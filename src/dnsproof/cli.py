"""Command-line entry point."""

import sys

import click

from dnsproof import _logging
from dnsproof.config import Settings
from dnsproof.exceptions import DnsproofError
from dnsproof.models import ChallengeType
from dnsproof.service import run_authorization


@click.group()
@click.option("--email", help="ACME account email.")
@click.option("--s3-bucket", help="Bucket holding account state.")
@click.option("--s3-kms-key-id", help="KMS key for SSE-KMS.")
@click.option("--directory-url", help="ACME directory URL.")
@click.option("--staging/--no-staging", default=None, help="Use the Let's Encrypt staging CA.")
@click.option("--log-level", default=None, help="Logging level (default INFO).")
@click.pass_context
def main(ctx: click.Context, **options: object) -> None:
    """Prove control of DNS names to an ACME certificate authority."""
    overrides = {name: value for name, value in options.items() if value is not None}
    settings = Settings(**overrides)
    _logging.configure(settings.log_level.upper())
    ctx.obj = settings


@main.command()
@click.option("--domain", required=True, help="Domain to be authorized.")
@click.option(
    "--challenge",
    type=click.Choice([c.value for c in ChallengeType]),
    default=ChallengeType.DNS_01.value,
    show_default=True,
    help="Challenge type.",
)
@click.pass_obj
def authz(settings: Settings, domain: str, challenge: str) -> None:
    """Authorize DOMAIN and save the authorization."""
    if not settings.email or not settings.s3_bucket:
        raise click.UsageError("--email and --s3-bucket are required")
    try:
        authorization = run_authorization(settings, domain=domain, challenge=challenge)
    except DnsproofError as e:
        click.echo(f"error: {e}", err=True)
        for note in getattr(e, "__notes__", []):
            click.echo(f"  {note}", err=True)
        sys.exit(1)
    click.echo(f"{authorization.identifier.value}: {authorization.status}")


if __name__ == "__main__":
    main()
