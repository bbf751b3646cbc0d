"""
stmflash - STM32 Serial Bootloader Command-Line Interface
=========================================================

This module implements the command-line interface of the flasher. It
connects to the USART bootloader of an STM32 device and reads, writes,
erases or protects its memory.

Every device command runs the same sequence:

1. Open the serial port (8E1) and perform the bootloader handshake
2. Identify the device and resolve the selected workspace on it
3. Run the operation
4. Start execution (``--go``) or reset the device, unless ``--no-reset``
   was given or the operation makes the device reset itself

Usage Examples
--------------
List available serial ports:
    $ stmflash ports

Show what is connected:
    $ stmflash -p /dev/ttyUSB0 info

Write and verify a firmware image, then run it from flash start:
    $ stmflash -p /dev/ttyUSB0 -b 115200 --go 0 write -v firmware.hex

Dump 4 KiB of RAM after the bootloader's area to stdout:
    $ stmflash -p /dev/ttyUSB0 -M r -S +0:4096 read - > ram.bin

Erase pages 4-11:
    $ stmflash -p /dev/ttyUSB0 -s 4:8 erase

Hardware Setup
--------------
Before using stmflash, ensure:
1. The target boots from system memory (BOOT0 high)
2. The bootloader USART (usually USART1) is wired to a 3.3V adapter
3. The serial port has proper permissions (dialout group on Linux)

Exit Codes
----------
0 - Success
1 - Connection, protocol, device or transfer error
2 - Invalid arguments, selectors or image files
3 - Internal error
"""

import logging
import signal
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterator, Optional

import click

from stmflasher import __version__
from stmflasher.cli.errors import ExitCode, handle_cli_exception
from stmflasher.comms import (
    DEFAULT_BAUD_RATE,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    VALID_BAUD_RATES,
    BootloaderSession,
    MemoryTransfer,
    SerialTransport,
    find_usb_port,
    format_port_list,
    list_serial_ports,
    reset_device,
)
from stmflasher.config import FlasherConfig
from stmflasher.devices import get_supported_devices
from stmflasher.errors import FlasherError, InvalidSelectorError
from stmflasher.formats import STDIO_NAME, open_image_sink, open_image_source
from stmflasher.workspace import (
    FULL_FLASH_PAGES,
    MemoryType,
    ResolvedWorkspace,
    WorkspaceSpec,
    parse_address_selector,
    parse_execute_address,
    parse_page_selector,
    resolve_workspace,
)

# Configure logging
logger = logging.getLogger(__name__)

# Operation run on a connected session with the resolved workspace
Operation = Callable[[BootloaderSession, ResolvedWorkspace, FlasherConfig], None]


# =============================================================================
# CLI Context and Utilities
# =============================================================================

class Context:
    """
    Shared context for CLI commands.

    Stores the connection options, the workspace selectors and the
    post-operation flags given to the command group.
    """

    def __init__(self) -> None:
        self.port: Optional[str] = None
        self.baud: int = DEFAULT_BAUD_RATE
        self.verbose: bool = False
        self.timeout: float = DEFAULT_TIMEOUT
        self.send_init: bool = True
        self.reset_after: bool = True
        self.workspace: WorkspaceSpec = WorkspaceSpec()
        # Diagnostics go to stderr while data is written to stdout
        self.err_output: bool = False

    def setup_logging(self) -> None:
        """Configure logging based on verbosity."""
        level = logging.DEBUG if self.verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(levelname)s: %(message)s" if self.verbose else "%(message)s",
        )

    def echo(self, message: str = "", nl: bool = True) -> None:
        click.echo(message, nl=nl, err=self.err_output)

    def config(self, **overrides) -> FlasherConfig:
        """Build the FlasherConfig for this invocation."""
        settings = dict(
            port=self.port,
            baud_rate=self.baud,
            timeout=self.timeout,
            workspace=self.workspace,
            send_init=self.send_init,
            reset_after=self.reset_after,
            verbose=self.verbose,
        )
        settings.update(overrides)
        return FlasherConfig(**settings)


pass_context = click.make_pass_decorator(Context, ensure=True)


def progress_bar(current: int, total: int, err: bool = False) -> None:
    """Simple text progress bar for memory transfers."""
    if total == 0:
        return
    percent = current * 100 // total
    filled = percent // 2
    bar = "=" * filled + "-" * (50 - filled)
    click.echo(f"\r[{bar}] {percent:3d}% ({current}/{total} bytes)", nl=False, err=err)
    if current >= total:
        click.echo(err=err)  # Newline at end


def format_device_info(session: BootloaderSession) -> list[str]:
    """Describe the connected device and its memory map."""
    dev = session.device
    lines = [
        "MCU info",
        f"Device ID     : 0x{session.product_id:04X} ({dev.name})",
        f"Bootloader Ver: 0x{session.bootloader_version:02X}",
        f"Option 1      : 0x{session.option1:02X}",
        f"Option 2      : 0x{session.option2:02X}",
        f"- RAM up to   :{dev.ram_size // 1024:4d}KiB at 0x{dev.ram_start:08X}",
        f"              :  ({dev.ram_reserved_size}b to "
        f"0x{dev.ram_bootloader_reserved:08X} reserved by bootloader)",
        f"- System mem  :{dev.system_memory_size // 1024:4d}KiB at "
        f"0x{dev.system_memory_start:08X}",
        f"- Option mem  :  {dev.option_bytes_size:4d}B at 0x{dev.option_bytes_start:08X}",
        f"- Flash up to :{dev.flash_size // 1024:4d}KiB at 0x{dev.flash_start:08X}",
        f"- Flash org.  : {dev.flash_sector_count} sectors x "
        f"{dev.flash_pages_per_sector} pages x {dev.flash_page_size} bytes",
    ]
    if dev.has_eeprom:
        lines.append(
            f"- EEPROM      :{dev.eeprom_size // 1024:4d}KiB at 0x{dev.eeprom_start:08X}"
        )
    lines.append("")
    lines.append("Note: specified RAM/Flash sizes are maximum for this chip type.")
    lines.append("      Your chip may have less memory amount!")
    return lines


@contextmanager
def cancel_on_interrupt(ctx: Context, transfer: MemoryTransfer) -> Iterator[MemoryTransfer]:
    """Turn Ctrl+C into a cancel request between chunks."""
    def handler(signum, frame) -> None:
        ctx.echo("\nCancelling after the current block...")
        transfer.cancel()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield transfer
    finally:
        signal.signal(signal.SIGINT, previous)


# =============================================================================
# Option Callbacks
# =============================================================================

def _memory_callback(ctx, param, value: str) -> MemoryType:
    try:
        return MemoryType.from_code(value)
    except InvalidSelectorError as e:
        raise click.BadParameter(str(e))


def _address_callback(ctx, param, value: Optional[str]):
    if value is None:
        return None
    try:
        return parse_address_selector(value)
    except InvalidSelectorError as e:
        raise click.BadParameter(str(e))


def _pages_callback(ctx, param, value: Optional[str]):
    if value is None:
        return None
    try:
        return parse_page_selector(value)
    except InvalidSelectorError as e:
        raise click.BadParameter(str(e))


def _execute_callback(ctx, param, value: Optional[str]):
    if value is None:
        return None
    try:
        return parse_execute_address(value)
    except InvalidSelectorError as e:
        raise click.BadParameter(str(e))


# =============================================================================
# Session Runner
# =============================================================================

def finish(
    ctx: Context,
    session: BootloaderSession,
    config: FlasherConfig,
    workspace: ResolvedWorkspace,
    self_resetting: bool = False,
) -> None:
    """Start execution or reset the device after an operation."""
    if self_resetting:
        # The device resets itself after protect/unprotect
        if workspace.execute is not None:
            logger.warning("Device resets itself, not starting execution")
        return

    if workspace.execute is not None:
        ctx.echo(f"Starting execution at address 0x{workspace.execute:08X}... ", nl=False)
        session.go(workspace.execute)
        ctx.echo("Done.")
    elif config.reset_after:
        ctx.echo("Resetting device... ", nl=False)
        reset_device(session)
        ctx.echo("Done.")


def run_session(
    ctx: Context,
    operation: Optional[Operation],
    spec: Optional[WorkspaceSpec] = None,
    self_resetting: bool = False,
    show_info: bool = False,
    error_type: Optional[str] = None,
    **overrides,
) -> None:
    """
    Connect, resolve the workspace, run operation and finish.

    The serial port is released whatever the outcome.
    """
    config = ctx.config(workspace=spec or ctx.workspace, **overrides)

    port_device = config.port or find_usb_port()
    if not port_device:
        click.echo("Error: No serial port specified and auto-detect failed.", err=True)
        click.echo("Use --port option or 'stmflash ports' to find available ports.", err=True)
        raise SystemExit(ExitCode.DEVICE_ERROR)
    config = replace(config, port=port_device)

    try:
        ctx.echo(f"Connecting to {port_device} ({config.baud_rate} 8E1)...")
        session = BootloaderSession(SerialTransport.from_config(config))
        try:
            session.connect(send_init=config.send_init)
            if show_info or ctx.verbose:
                for line in format_device_info(session):
                    ctx.echo(line)

            workspace = resolve_workspace(session.device, config.workspace)
            if ctx.verbose:
                ctx.echo(workspace.describe())

            if operation is not None:
                operation(session, workspace, config)
            finish(ctx, session, config, workspace, self_resetting)
        finally:
            session.close()

    except FlasherError as e:
        ctx.echo()
        handle_cli_exception(e, ctx.verbose, error_type)


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-p", "--port",
    type=str,
    default=None,
    help="Serial port device (auto-detect if not specified)",
)
@click.option(
    "-b", "--baud",
    type=click.Choice([str(b) for b in VALID_BAUD_RATES]),
    default=str(DEFAULT_BAUD_RATE),
    help=f"Baud rate (default: {DEFAULT_BAUD_RATE})",
)
@click.option(
    "-V", "--verbose",
    is_flag=True,
    help="Enable verbose output",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=DEFAULT_TIMEOUT,
    help=f"Read timeout in seconds (default: {DEFAULT_TIMEOUT:g})",
)
@click.option(
    "-M", "--memory",
    default="f",
    callback=_memory_callback,
    help="Memory type: f(lash), r(am), e(eprom) or a(ny) (default: f)",
)
@click.option(
    "-S", "--address",
    default=None,
    callback=_address_callback,
    metavar="[+]ADDRESS[:LENGTH]",
    help="Start address and length; '+' makes the address relative",
)
@click.option(
    "-s", "--pages",
    default=None,
    callback=_pages_callback,
    metavar="START_PAGE[:COUNT]",
    help="Flash page range",
)
@click.option(
    "-g", "--go",
    "execute",
    default=None,
    callback=_execute_callback,
    metavar="[+]ADDRESS",
    help="Start execution at ADDRESS afterwards (0 = flash start)",
)
@click.option(
    "-c", "--no-init",
    is_flag=True,
    help="Resume a connection without sending INIT",
)
@click.option(
    "-K", "--no-reset",
    is_flag=True,
    help="Do not reset the device afterwards",
)
@click.version_option(version=__version__, prog_name="stmflash")
@pass_context
def main(
    ctx: Context,
    port: Optional[str],
    baud: str,
    verbose: bool,
    timeout: float,
    memory: MemoryType,
    address,
    pages,
    execute,
    no_init: bool,
    no_reset: bool,
) -> None:
    """
    Program STM32 microcontrollers through the serial bootloader.

    Selectors and post-operation options go before the command:

      stmflash -p /dev/ttyUSB0 -s 0:16 erase

    Use 'stmflash ports' to list available serial ports.
    """
    ctx.port = port
    ctx.baud = int(baud)
    ctx.verbose = verbose
    ctx.timeout = timeout
    ctx.send_init = not no_init
    ctx.reset_after = not no_reset
    ctx.setup_logging()

    selectors = {"memory_type": memory}
    if address is not None:
        start, relative, length = address
        selectors.update(address=start, relative=relative, length=length)
    if pages is not None:
        start_page, page_count = pages
        selectors.update(start_page=start_page, page_count=page_count)
    if execute is not None:
        if memory not in (MemoryType.FLASH, MemoryType.RAM):
            raise click.UsageError("Can execute code only from flash or RAM")
        selectors.update(execute=execute[0], execute_relative=execute[1])
    if memory is MemoryType.ANY:
        logger.warning(
            "Using entire address space. You can damage bootloader's RAM in this mode!"
        )

    spec = WorkspaceSpec(**selectors)
    try:
        spec.check()
    except InvalidSelectorError as e:
        raise click.UsageError(str(e))
    ctx.workspace = spec


# =============================================================================
# Ports Command
# =============================================================================

@main.command()
@click.option(
    "--detailed", "-d",
    is_flag=True,
    help="Show detailed port information",
)
def ports(detailed: bool) -> None:
    """
    List available serial ports.

    Shows all serial ports detected on the system. USB-serial adapters
    are marked with their vendor (e.g., FTDI, Silicon Labs).

    Example:
        stmflash ports
        stmflash ports --detailed
    """
    port_list = list_serial_ports()

    if not port_list:
        click.echo("No serial ports found.")
        click.echo("\nTips:")
        click.echo("  - Connect your USB-serial adapter")
        click.echo("  - On Linux, ensure you have permission (dialout group)")
        return

    click.echo("Available serial ports:")
    click.echo(format_port_list(port_list, verbose=detailed))

    auto_port = find_usb_port()
    if auto_port:
        click.echo(f"\nSuggested port: {auto_port}")
    else:
        click.echo("\nNo USB-serial adapter auto-detected.")


@main.command()
def devices() -> None:
    """List the devices the flasher supports."""
    for dev in get_supported_devices():
        click.echo(
            f"  0x{dev.product_id:03X}  {dev.name:30} "
            f"{dev.flash_size // 1024:5d}KiB flash, {dev.flash_page_size}b pages"
        )


# =============================================================================
# Info Command
# =============================================================================

@main.command()
@pass_context
def info(ctx: Context) -> None:
    """
    Show the connected device and its memory map.

    Example:
        stmflash -p /dev/ttyUSB0 info
    """
    run_session(ctx, None, show_info=True)


# =============================================================================
# Read Command
# =============================================================================

@main.command()
@click.argument("output", type=click.Path(dir_okay=False, allow_dash=True))
@pass_context
def read(ctx: Context, output: str) -> None:
    """
    Read memory to a file.

    OUTPUT is written as Intel HEX if it ends in '.hex', raw binary
    otherwise. Use '-' to write binary to stdout.

    Example:
        stmflash -p /dev/ttyUSB0 read dump.bin
        stmflash -p /dev/ttyUSB0 -M r read ram.hex
    """
    if output == STDIO_NAME:
        ctx.err_output = True

    def operation(session: BootloaderSession, workspace: ResolvedWorkspace,
                  config: FlasherConfig) -> None:
        sink = open_image_sink(output, base_address=workspace.start)
        transfer = MemoryTransfer.from_config(
            session, config,
            progress=lambda done, total: progress_bar(done, total, err=ctx.err_output),
        )
        ctx.echo(f"Reading 0x{workspace.start:08X}-0x{workspace.end:08X}")
        try:
            with cancel_on_interrupt(ctx, transfer):
                count = transfer.read(workspace, sink)
        finally:
            sink.close()
        ctx.echo(f"Read {count} bytes. Done.")

    run_session(ctx, operation, error_type="Read")


# =============================================================================
# Write Command
# =============================================================================

@main.command()
@click.argument("file", type=click.Path(dir_okay=False, allow_dash=True))
@click.option(
    "-v", "--verify",
    is_flag=True,
    help="Verify every block after writing",
)
@click.option(
    "-n", "--retries",
    type=click.IntRange(min=0),
    default=DEFAULT_RETRIES,
    help=f"Rewrites per block when verify fails (default: {DEFAULT_RETRIES})",
)
@click.option(
    "-f", "--binary",
    "force_binary",
    is_flag=True,
    help="Force binary input (do not try Intel HEX)",
)
@pass_context
def write(ctx: Context, file: str, verify: bool, retries: int, force_binary: bool) -> None:
    """
    Write a file to memory.

    FILE is parsed as Intel HEX, or as raw binary if it is not valid
    HEX. Use '-' to read binary from stdin. Flash pages covered by the
    write are erased first.

    Example:
        stmflash -p /dev/ttyUSB0 write -v firmware.hex
        stmflash -p /dev/ttyUSB0 -M r -S +0 --go +0 write code.bin
    """
    try:
        source = open_image_source(file, force_binary=force_binary)
    except FlasherError as e:
        handle_cli_exception(e, ctx.verbose, "Write")

    try:
        spec = ctx.workspace
        size = source.size()
        if size is not None:
            spec = spec.with_length(size)
            logger.debug("Input file size is %d bytes", size)

        def operation(session: BootloaderSession, workspace: ResolvedWorkspace,
                      config: FlasherConfig) -> None:
            transfer = MemoryTransfer.from_config(session, config, progress=progress_bar)
            if workspace.is_flash:
                ctx.echo("Erasing flash and writing "
                         f"0x{workspace.start:08X}-0x{workspace.end:08X}")
            else:
                ctx.echo(f"Writing 0x{workspace.start:08X}-0x{workspace.end:08X}")
            with cancel_on_interrupt(ctx, transfer):
                count = transfer.write(workspace, source)
            verified = "and verified " if config.verify else ""
            ctx.echo(f"Wrote {verified}{count} bytes. Done.")

        run_session(
            ctx, operation, spec=spec, error_type="Write",
            verify=verify, retries=retries, force_binary=force_binary,
        )
    finally:
        source.close()


# =============================================================================
# Erase Command
# =============================================================================

@main.command()
@click.option(
    "-E", "--full",
    is_flag=True,
    help="Erase the whole flash",
)
@pass_context
def erase(ctx: Context, full: bool) -> None:
    """
    Erase flash pages.

    Without selectors, or with --full, the whole flash is erased.

    Example:
        stmflash -p /dev/ttyUSB0 -s 4:8 erase
        stmflash -p /dev/ttyUSB0 erase --full
    """
    spec = ctx.workspace
    if spec.memory_type is not MemoryType.FLASH:
        raise click.UsageError("Only flash can be erased")
    if full:
        partial_pages = bool(spec.page_count) and spec.page_count < FULL_FLASH_PAGES
        if spec.has_address_selector or (spec.start_page or 0) > 0 or partial_pages:
            raise click.UsageError(
                "You cannot specify a page count and full erase at the same time"
            )
        spec = replace(spec, start_page=0, page_count=FULL_FLASH_PAGES)

    def operation(session: BootloaderSession, workspace: ResolvedWorkspace,
                  config: FlasherConfig) -> None:
        ctx.echo("Erasing flash... ", nl=False)
        MemoryTransfer.from_config(session, config).erase(workspace)
        ctx.echo("Done.")

    run_session(ctx, operation, spec=spec, error_type="Erase")


# =============================================================================
# Protection Commands
# =============================================================================

def _protection(ctx: Context, method: str, title: str) -> None:
    """Run one of the self-resetting protection commands."""
    def operation(session: BootloaderSession, workspace: ResolvedWorkspace,
                  config: FlasherConfig) -> None:
        ctx.echo(f"{title}... ", nl=False)
        getattr(session, method)()
        ctx.echo("Done.")

    run_session(ctx, operation, self_resetting=True)


@main.command("unprotect-write")
@pass_context
def unprotect_write(ctx: Context) -> None:
    """Disable flash write protection. The device resets itself."""
    _protection(ctx, "write_unprotect", "Write-unprotecting flash")


@main.command("protect-write")
@pass_context
def protect_write(ctx: Context) -> None:
    """Enable flash write protection. The device resets itself."""
    _protection(ctx, "write_protect", "Write-protecting flash")


@main.command("protect-read")
@pass_context
def protect_read(ctx: Context) -> None:
    """Enable flash read protection. The device resets itself."""
    _protection(ctx, "read_protect", "Read-protecting flash")


@main.command("unprotect-read")
@pass_context
def unprotect_read(ctx: Context) -> None:
    """
    Disable flash read protection.

    The device mass-erases its flash and resets itself.
    """
    _protection(ctx, "read_unprotect", "Read-unprotecting flash")


# =============================================================================
# Go and Reset Commands
# =============================================================================

@main.command("go")
@click.argument("address", callback=_execute_callback, metavar="[+]ADDRESS")
@pass_context
def go_command(ctx: Context, address) -> None:
    """
    Start execution at ADDRESS.

    A leading '+' makes ADDRESS relative to the selected memory type;
    0 means the start of flash.

    Example:
        stmflash -p /dev/ttyUSB0 go 0x08000000
        stmflash -p /dev/ttyUSB0 -M r go +0
    """
    if ctx.workspace.memory_type not in (MemoryType.FLASH, MemoryType.RAM):
        raise click.UsageError("Can execute code only from flash or RAM")
    spec = replace(ctx.workspace, execute=address[0], execute_relative=address[1])
    run_session(ctx, None, spec=spec, error_type="Go")


@main.command()
@pass_context
def reset(ctx: Context) -> None:
    """
    Reset the device.

    The reset is done by uploading a small program to RAM that requests
    a system reset.
    """
    if not ctx.reset_after or ctx.workspace.execute is not None:
        raise click.UsageError("Cannot use --no-reset or --go with reset")
    run_session(ctx, None, error_type="Reset")


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    main()
