"""Slack slash-command trigger running authorizations as Lambda functions.

Two functions are deployed. The dispatcher answers Slack within its
timeout by handing the payload to the executor with an asynchronous
invocation; the executor runs the authorization and reports back on the
command's ``response_url``.
"""

import base64
import json
import shlex
from collections.abc import Callable, Mapping
from typing import Any
from urllib.parse import parse_qs

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel

from dnsproof import _logging
from dnsproof._logging import get_logger
from dnsproof.config import Settings
from dnsproof.exceptions import DnsproofError
from dnsproof.models import Authorization, ChallengeType
from dnsproof.service import run_authorization

logger = get_logger(__name__)


class DispatchError(DnsproofError):
    """The inbound command was refused or could not be handed off."""


class SlashCommand(BaseModel):
    """Slack slash-command payload (the fields dnsproof uses)."""

    token: str = ""
    team_domain: str = ""
    channel_name: str = ""
    user_id: str = ""
    user_name: str = ""
    command: str = ""
    text: str = ""
    response_url: str = ""


class CommandResponse(BaseModel):
    """Immediate reply shown in Slack."""

    response_type: str = "in_channel"
    text: str


def format_user_name(user_name: str) -> str:
    return f"<@{user_name}>"


def _event_body(event: Mapping[str, Any] | str | bytes) -> Mapping[str, Any]:
    """Extract the form fields from an API Gateway event or a raw body."""
    if isinstance(event, (str, bytes)):
        body: Any = event
    elif "body" in event:
        body = event["body"] or ""
        if event.get("isBase64Encoded"):
            body = base64.b64decode(body)
    else:
        return event

    if isinstance(body, bytes):
        body = body.decode("utf-8")
    return {name: values[0] for name, values in parse_qs(body).items()}


def parse_slash_command(event: Mapping[str, Any] | str | bytes) -> SlashCommand:
    """Parse a slash command from a Lambda event.

    Raises:
        DispatchError: If the payload is not a slash command.
    """
    try:
        return SlashCommand.model_validate(_event_body(event))
    except ValueError as e:
        raise DispatchError(f"failed to parse the command: {e}") from e


def dispatch(
    event: Mapping[str, Any],
    settings: Settings,
    lambda_client: Any = None,
) -> dict[str, Any]:
    """Check the command token and start the executor without waiting for it.

    Returns:
        The Slack response acknowledging the request.

    Raises:
        DispatchError: Misconfiguration, token mismatch or invocation failure.
    """
    if not settings.executor_func_name:
        raise DispatchError("Please set DNSPROOF_EXECUTOR_FUNC_NAME environment variable.")

    command = parse_slash_command(event)
    if not settings.slack_token or command.token != settings.slack_token:
        raise DispatchError("Who are you? Token does not match.")

    lambda_client = lambda_client if lambda_client is not None else boto3.client("lambda")
    try:
        lambda_client.invoke(
            FunctionName=settings.executor_func_name,
            InvocationType="Event",
            Payload=json.dumps(dict(event)).encode("utf-8"),
        )
    except (ClientError, BotoCoreError) as e:
        raise DispatchError(f"failed to invoke the executor: {e}") from e

    logger.info(
        "Command dispatched",
        extra={
            "user": command.user_name,
            "text": command.text,
            "executor": settings.executor_func_name,
        },
    )
    return CommandResponse(
        text=f"{format_user_name(command.user_name)} Your request has been accepted."
    ).model_dump()


def parse_authz_text(text: str) -> tuple[str, str]:
    """Parse ``authz <domain> [challenge]`` into (domain, challenge).

    Raises:
        DispatchError: If the text is not an authz command.
    """
    args = shlex.split(text)
    if not args or args[0] != "authz" or len(args) not in (2, 3):
        raise DispatchError(f"usage: authz <domain> [challenge], got {text!r}")
    challenge = args[2] if len(args) == 3 else ChallengeType.DNS_01.value
    return args[1], challenge


def execute(
    event: Mapping[str, Any],
    settings: Settings,
    run: Callable[..., Authorization] = run_authorization,
    http: httpx.Client | None = None,
) -> Authorization | None:
    """Run the authorization requested by a dispatched command.

    The outcome is posted to the command's ``response_url``; a failed run
    is reported there and not raised, since nobody waits on this function.
    """
    command = parse_slash_command(event)
    authorization: Authorization | None = None
    try:
        domain, challenge = parse_authz_text(command.text)
        authorization = run(settings, domain=domain, challenge=challenge)
        text = f"{format_user_name(command.user_name)} {domain} is {authorization.status}."
    except DnsproofError as e:
        logger.error(
            "Authorization run failed",
            extra={"user": command.user_name, "stage": e.stage, "error": str(e)},
        )
        text = f"{format_user_name(command.user_name)} authorization failed: {e}"

    if command.response_url:
        _respond(command.response_url, text, http)
    return authorization


def _respond(url: str, text: str, http: httpx.Client | None) -> None:
    payload = CommandResponse(text=text).model_dump()
    try:
        if http is None:
            response = httpx.post(url, json=payload, timeout=10)
        else:
            response = http.post(url, json=payload)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error("Failed to post command response", extra={"url": url, "error": str(e)})


def dispatcher_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """AWS Lambda entry point of the dispatcher function."""
    settings = Settings()
    _logging.configure(settings.log_level.upper())
    return dispatch(event, settings)


def executor_handler(event: dict[str, Any], context: Any) -> dict[str, Any] | None:
    """AWS Lambda entry point of the executor function."""
    settings = Settings()
    _logging.configure(settings.log_level.upper())
    authorization = execute(event, settings)
    return authorization.model_dump(mode="json") if authorization else None
