"""Wait for a TCP port to accept connections."""

import asyncio
import logging
from contextlib import suppress

log = logging.getLogger(__name__)


class PortNotReadyError(TimeoutError):
    """Raised when a port does not accept connections in time."""

    def __init__(self, host: str, port: int, timeout: float) -> None:
        super().__init__(f"{host}:{port} not ready within {timeout} seconds")
        self.host = host
        self.port = port


async def wait_for_port(
    port: int,
    *,
    host: str = "127.0.0.1",
    timeout: float,
    interval: float = 0.1,
) -> None:
    """Poll until a connection to host:port succeeds.

    Args:
        port: TCP port to probe
        host: Host to probe
        timeout: Maximum wait time in seconds
        interval: Fixed delay between attempts

    Raises:
        PortNotReadyError: If no connection succeeded within timeout. The last
            connection error, if any, is attached as the cause.

    """
    last_error: OSError | None = None
    try:
        async with asyncio.timeout(timeout):
            while True:
                try:
                    _, writer = await asyncio.open_connection(host, port)
                except OSError as e:
                    last_error = e
                    await asyncio.sleep(interval)
                    continue

                writer.close()
                with suppress(OSError):
                    await writer.wait_closed()
                log.debug("Port %s:%d is accepting connections", host, port)
                return
    except TimeoutError as e:
        raise PortNotReadyError(host, port, timeout) from last_error or e
