"""
Flasher Configuration
=====================

One immutable value holding every setting of an invocation. The command
line builds it once and passes it explicitly to the transport, the
workspace resolver, the transfer orchestrator and the post-operation step.
"""

from dataclasses import dataclass, field
from typing import Optional

from stmflasher.comms.serial import DEFAULT_BAUD_RATE, DEFAULT_TIMEOUT
from stmflasher.comms.transfer import DEFAULT_RETRIES
from stmflasher.workspace import WorkspaceSpec


@dataclass(frozen=True)
class FlasherConfig:
    """
    Settings for one flasher run.

    Attributes:
        port: Serial device path
        baud_rate: Serial baud rate
        timeout: Per-read deadline in seconds
        workspace: Memory selectors
        verify: Read back and compare every written chunk
        retries: Re-writes allowed per chunk after a failed verify
        send_init: Send INIT during the handshake (off to resume)
        reset_after: Reset the device after the operation
        force_binary: Treat input as raw binary, never as Intel HEX
        verbose: Verbose diagnostics
    """
    port: Optional[str] = None
    baud_rate: int = DEFAULT_BAUD_RATE
    timeout: float = DEFAULT_TIMEOUT
    workspace: WorkspaceSpec = field(default_factory=WorkspaceSpec)
    verify: bool = False
    retries: int = DEFAULT_RETRIES
    send_init: bool = True
    reset_after: bool = True
    force_binary: bool = False
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError(f"Retry count must not be negative: {self.retries}")
        if self.timeout <= 0:
            raise ValueError(f"Timeout must be positive: {self.timeout}")
