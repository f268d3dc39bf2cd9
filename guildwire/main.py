"""Main entry point for guildwire.

Initializes logging in two phases (defaults then config-driven),
builds the ConnectionSupervisor, installs the process-fault handlers
and runs until SIGTERM/SIGINT, a fatal fault, or until every connection
has ended. Exits non-zero after a fatal fault or when no guild could
stay connected.

Key functions:
    main: Async entry point -- logging, config, supervisor, fault
        handlers and signal handlers. Returns the process exit code.
    run: Synchronous wrapper that calls asyncio.run(main()).
"""

import asyncio
import signal
import sys

import structlog

from . import __version__
from .logging_config import setup_logging


async def main() -> int:
    """Main async entry point."""
    # Phase 1: defaults, cache_logger_on_first_use=False
    setup_logging()
    logger = structlog.get_logger("guildwire")

    logger.info("guildwire_starting", version=__version__)

    # Import here to ensure logging is configured first
    from .config import get_config
    from .crash import CrashNotifier, FaultHandlerRegistry
    from .exceptions import ConfigurationError, DuplicateCommandError
    from .supervisor import ConnectionSupervisor

    try:
        config = get_config()
        config.validate()
    except ConfigurationError as e:
        logger.error("config_invalid", error=str(e), setting=getattr(e, "setting_name", None))
        return 1

    # Phase 2: reconfigure with real config, cache_logger_on_first_use=True
    setup_logging(config)

    try:
        supervisor = ConnectionSupervisor(config)
    except (ConfigurationError, DuplicateCommandError) as e:
        logger.error("supervisor_setup_failed", error=str(e), setting=getattr(e, "setting_name", None))
        return 1

    loop = asyncio.get_running_loop()
    faults = FaultHandlerRegistry(on_terminate=supervisor.request_stop)
    faults.register(CrashNotifier(supervisor.snapshot, config.guilds))
    faults.install(loop)

    def handle_shutdown(sig):
        logger.info("shutdown_signal_received", signal=sig.name)
        supervisor.request_stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            # Windows: add_signal_handler not supported.
            # Fall back to signal.signal for SIGINT (Ctrl+C).
            if sig == signal.SIGINT:
                signal.signal(
                    signal.SIGINT,
                    lambda s, f: loop.call_soon_threadsafe(handle_shutdown, signal.SIGINT),
                )

    exit_code = 0
    try:
        await supervisor.run()
    except Exception as e:
        # Owners are notified while the connections are still open
        await faults.report(e, is_terminating=True)
        exit_code = 1
    else:
        if faults.fatal is not None:
            exit_code = 1
        elif supervisor.every_connection_failed:
            logger.error("all_connections_failed", guilds=len(config.guilds))
            exit_code = 1
    finally:
        await supervisor.stop()
        faults.uninstall(loop)
        logger.info("guildwire_stopped", exit_code=exit_code)
    return exit_code


def run():
    """Synchronous entry point for the ``guildwire`` console script."""
    try:
        exit_code = asyncio.run(main())
    except KeyboardInterrupt:
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    run()
