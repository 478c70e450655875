"""Model transports: direct streaming HTTP and the agent CLI subprocess."""

from script_agent.callbacks import ChatCallback
from script_agent.config import Config
from script_agent.exceptions import ConfigurationError
from script_agent.transport.base import (
    Conversation,
    OutcomeStatus,
    TextRelay,
    Transport,
    TransportOutcome,
)
from script_agent.transport.cli_process import (
    SubprocessTransport,
    StderrCallback,
    check_cli_connection,
    find_cli,
)
from script_agent.transport.direct import DirectTransport
from script_agent.types import AuthCredentials, AuthType, CancellationToken

TRANSPORT_KINDS = (DirectTransport.kind, SubprocessTransport.kind)


def select_transport_kind(config: Config, credentials: AuthCredentials) -> str:
    """Pick the transport kind for a connection attempt.

    ``auto`` prefers the CLI for system/none credentials when it is
    installed and falls back to direct HTTP otherwise.
    """
    mode = config.transport.mode
    if mode in TRANSPORT_KINDS:
        return mode
    if mode != "auto":
        raise ConfigurationError(f"Unknown transport mode: {mode}")
    if credentials.type in (AuthType.SYSTEM, AuthType.NONE) and find_cli(config.transport.cli_path):
        return SubprocessTransport.kind
    return DirectTransport.kind


def create_transport(
    kind: str,
    config: Config,
    credentials: AuthCredentials | None = None,
    cancel_token: CancellationToken | None = None,
    callback: ChatCallback | None = None,
    on_stderr: StderrCallback | None = None,
) -> Transport:
    """Build a transport of ``kind`` from configuration."""
    if kind == DirectTransport.kind:
        return DirectTransport.from_config(
            config,
            credentials=credentials,
            cancel_token=cancel_token,
            callback=callback,
        )
    if kind == SubprocessTransport.kind:
        return SubprocessTransport.from_config(
            config,
            cancel_token=cancel_token,
            callback=callback,
            on_stderr=on_stderr,
        )
    raise ConfigurationError(f"Unknown transport kind: {kind}")


__all__ = [
    "Conversation",
    "DirectTransport",
    "OutcomeStatus",
    "SubprocessTransport",
    "TextRelay",
    "Transport",
    "TransportOutcome",
    "check_cli_connection",
    "create_transport",
    "find_cli",
    "select_transport_kind",
]
